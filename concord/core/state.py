"""Domain records for elements, edits, conflicts and resolutions."""

import hashlib
import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

SYSTEM_ACTOR = "system"


def utc_now() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


class EditStatus(str, Enum):
    """Lifecycle status of a submitted edit."""

    PENDING = "pending"
    COMMITTED = "committed"
    SUPERSEDED = "superseded"
    REJECTED = "rejected"
    AWAITING_MANUAL_RESOLUTION = "awaiting_manual_resolution"


TERMINAL_EDIT_STATUSES = frozenset(
    {EditStatus.COMMITTED, EditStatus.SUPERSEDED, EditStatus.REJECTED}
)


class ConflictClassification(str, Enum):
    """How competing edits relate to each other."""

    COMPATIBLE = "compatible"  # No real conflict
    MERGEABLE = "mergeable"  # Disjoint regions, structurally combinable
    CONTRADICTORY = "contradictory"  # Overlapping, needs a decision


class ConflictStatus(str, Enum):
    """Status of a conflict record."""

    OPEN = "open"
    AWAITING_MANUAL_RESOLUTION = "awaiting_manual_resolution"
    RESOLVED = "resolved"


class StrategyName(str, Enum):
    """Built-in resolution strategies."""

    LAST_WRITE_WINS = "last_write_wins"
    MANUAL_MERGE = "manual_merge"
    AUTO_MERGE = "auto_merge"
    HIERARCHICAL = "hierarchical"
    CONSENSUS_REQUIRED = "consensus_required"


class EditPayload(BaseModel):
    """
    Proposed change to an element.

    Exactly one shape applies: ``regions`` (structural paths to new values),
    ``delete``, or a full ``content`` replacement.
    """

    model_config = ConfigDict(frozen=True)

    content: Any = None
    regions: dict[str, Any] | None = None
    delete: bool = False

    @model_validator(mode="after")
    def _check_shape(self) -> "EditPayload":
        if self.regions is not None and not self.regions:
            raise ValueError("regions must not be empty when given")
        if self.delete and (self.regions is not None or self.content is not None):
            raise ValueError("a delete payload carries no content or regions")
        return self

    def fingerprint(self) -> str:
        """Stable digest used to tally identical hand-authored payloads."""
        encoded = json.dumps(self.model_dump(mode="json"), sort_keys=True, default=str)
        return hashlib.sha256(encoded.encode("utf-8")).hexdigest()[:16]


class Element(BaseModel):
    """Addressable unit of document content."""

    model_config = ConfigDict(frozen=True)

    element_id: str
    document_id: str = "default"
    element_class: str | None = None
    current_version: int = Field(default=0, ge=0)
    content: Any = None
    deleted: bool = False
    updated_at: datetime = Field(default_factory=utc_now)


class Edit(BaseModel):
    """A proposed change to an element, based on an observed version."""

    model_config = ConfigDict(frozen=True)

    edit_id: str
    element_id: str
    author_id: str
    base_version: int = Field(ge=0)
    payload: EditPayload
    submitted_at: datetime
    status: EditStatus = EditStatus.PENDING
    committed_version: int | None = None
    synthesized_from: list[str] = Field(default_factory=list)
    withdrawn: bool = False
    status_reason: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_EDIT_STATUSES

    @property
    def sort_key(self) -> tuple[datetime, str]:
        return (self.submitted_at, self.edit_id)


class ManualOutcome(BaseModel):
    """A human choice: one existing edit, or a hand-authored merged payload."""

    model_config = ConfigDict(frozen=True)

    edit_id: str | None = None
    merged_payload: EditPayload | None = None

    @model_validator(mode="after")
    def _exactly_one(self) -> "ManualOutcome":
        if (self.edit_id is None) == (self.merged_payload is None):
            raise ValueError("exactly one of edit_id or merged_payload is required")
        return self

    def key(self) -> str:
        if self.edit_id is not None:
            return f"edit:{self.edit_id}"
        return f"merged:{self.merged_payload.fingerprint()}"


class Policy(BaseModel):
    """Resolution policy for a document or element class."""

    model_config = ConfigDict(frozen=True)

    strategy: str = StrategyName.LAST_WRITE_WINS.value
    fallback_strategy: str | None = None
    manual_resolution_timeout: float | None = Field(
        default=None,
        gt=0,
        description="Seconds a conflict may await manual input before the timeout action",
    )
    timeout_action: str = Field(default="escalate", pattern="^(escalate|last_write_wins)$")
    precedence_table: dict[str, int] = Field(default_factory=dict)
    approvers: list[str] = Field(default_factory=list)
    quorum: int = Field(default=1, ge=1)


class Conflict(BaseModel):
    """Detected incompatibility between competing edits of one element."""

    model_config = ConfigDict(frozen=True)

    conflict_id: str
    element_id: str
    competing_edit_ids: list[str] = Field(min_length=1)
    detected_at: datetime
    classification: ConflictClassification
    status: ConflictStatus = ConflictStatus.OPEN
    reason: str | None = None
    errors: list[str] = Field(default_factory=list)
    policy: Policy | None = None
    awaiting_strategy: str | None = None
    awaiting_since: datetime | None = None
    escalated: bool = False
    approvals: dict[str, ManualOutcome] = Field(default_factory=dict)
    resolution_id: str | None = None

    @property
    def is_resolved(self) -> bool:
        return self.status == ConflictStatus.RESOLVED


class Resolution(BaseModel):
    """Immutable record of the decision that settled a conflict."""

    model_config = ConfigDict(frozen=True)

    resolution_id: str
    conflict_id: str
    strategy_used: str
    outcome_edit_id: str | None = None
    merged_payload: EditPayload | None = None
    decided_by: str = SYSTEM_ACTOR
    decided_at: datetime
    committed_version: int | None = None
    superseded_edit_ids: list[str] = Field(default_factory=list)
