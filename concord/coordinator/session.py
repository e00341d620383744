"""
Resolution Session Coordinator for Concord

The only component that transitions edit, conflict and resolution state and
mutates elements. Each operation runs under the target element's lock and
applies its changes through a ``UnitOfWork``, so the element commit, the
edit statuses and the resolution record become durable together or not at
all. Events are published only after a transaction succeeds.
"""

import asyncio
import time
from collections.abc import Callable, Sequence
from contextlib import AsyncExitStack
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from loguru import logger
from pydantic import BaseModel, ConfigDict

from concord.conflict.detector import ConflictDetector, Detection
from concord.conflict.ledger import ConflictLedger
from concord.conflict.regions import apply_payload
from concord.conflict.resolver import StrategyEngine
from concord.conflict.strategies import (
    ConflictContext,
    PendingManualInput,
    ResolutionDecision,
    StrategyRegistry,
)
from concord.coordinator.events import (
    ConflictAwaitingManual,
    ConflictDetected,
    ConflictEscalated,
    ConflictResolved,
    EditCommitted,
    EditWithdrawn,
    EventBus,
)
from concord.coordinator.transaction import UnitOfWork
from concord.core.config import Settings, get_settings
from concord.core.exceptions import (
    InvalidPolicyError,
    InvalidTransitionError,
    UnresolvableConflictError,
    VersionMismatchError,
)
from concord.core.ids import IdFactory
from concord.core.policy import PolicyBook
from concord.core.state import (
    SYSTEM_ACTOR,
    Conflict,
    ConflictStatus,
    Edit,
    EditPayload,
    EditStatus,
    Element,
    ManualOutcome,
    Policy,
    Resolution,
    StrategyName,
    utc_now,
)
from concord.elements.model import ElementModel
from concord.monitoring.metrics import EngineMetrics
from concord.persistence.journal import JournalSnapshot, MemoryJournal, TransactionJournal
from concord.timeline.change_log import ChangeLog

RETRIES_EXHAUSTED = "commit_retries_exhausted"
WITHDRAWN = "withdrawn"


@dataclass
class EditHandle:
    """Caller's view of a submitted edit."""

    edit_id: str
    element_id: str
    status: EditStatus
    conflict_id: str | None = None
    committed_version: int | None = None

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "edit_id": self.edit_id,
            "element_id": self.element_id,
            "status": self.status.value,
            "conflict_id": self.conflict_id,
            "committed_version": self.committed_version,
        }


@dataclass
class ResolutionOutcome:
    """Result of a resolution attempt."""

    conflict_id: str
    status: str  # "resolved" | "awaiting_manual"
    resolution: Resolution | None = None
    committed_version: int | None = None
    reason: str | None = None

    @property
    def resolved(self) -> bool:
        return self.status == "resolved"

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "conflict_id": self.conflict_id,
            "status": self.status,
            "resolution": self.resolution.model_dump(mode="json") if self.resolution else None,
            "committed_version": self.committed_version,
            "reason": self.reason,
        }


class EditSubmission(BaseModel):
    """One edit of a batch handed to ``submit_edits``."""

    model_config = ConfigDict(frozen=True)

    element_id: str
    author_id: str
    base_version: int
    payload: EditPayload
    submitted_at: datetime | None = None


class ResolutionCoordinator:
    """
    Orchestrates detection, resolution and commit of concurrent edits.

    Example:
        >>> coordinator = ResolutionCoordinator()
        >>> await coordinator.create_element("para-1", content={"text": "Hello"})
        >>> handle = await coordinator.submit_edit(
        ...     "para-1", author_id="alice", base_version=0,
        ...     payload={"regions": {"/text": "Hello, world"}},
        ... )
        >>> handle.status
        <EditStatus.COMMITTED: 'committed'>
    """

    def __init__(
        self,
        policy_book: PolicyBook | None = None,
        journal: TransactionJournal | None = None,
        bus: EventBus | None = None,
        registry: StrategyRegistry | None = None,
        settings: Settings | None = None,
        id_factory: IdFactory | None = None,
        clock: Callable[[], datetime] | None = None,
        metrics: EngineMetrics | None = None,
        elements: ElementModel | None = None,
    ) -> None:
        """Initialize the coordinator.

        Args:
            policy_book: Resolution policies. Loaded from ``concord_policy_file``
                when omitted and configured, otherwise last-write-wins everywhere.
            journal: Durable transaction journal. Defaults to ``MemoryJournal``.
            bus: Outbound event channel.
            registry: Strategy registry; extend it to add strategies.
            settings: Optional settings override.
            id_factory: Identifier generator.
            clock: Source of timestamps for submissions and decisions.
            metrics: Metrics collector.
            elements: Element store.
        """
        self.settings = settings or get_settings()

        if policy_book is None and self.settings.concord_policy_file:
            policy_book = PolicyBook.from_file(self.settings.concord_policy_file)
        self.policy_book = policy_book or PolicyBook()

        self.journal = journal or MemoryJournal()
        self.bus = bus or EventBus(max_queue_size=self.settings.concord_event_buffer)
        self.engine = StrategyEngine(registry)
        self.detector = ConflictDetector()
        self.ids = id_factory or IdFactory()
        self.metrics = metrics or EngineMetrics()
        self.max_commit_attempts = self.settings.concord_max_commit_attempts

        self.elements = elements or ElementModel()
        self.change_log = ChangeLog()
        self.ledger = ConflictLedger()

        self._clock = clock or utc_now
        self._locks: dict[str, asyncio.Lock] = {}

    # =========================================================================
    # Internals
    # =========================================================================

    def _lock_for(self, element_id: str) -> asyncio.Lock:
        lock = self._locks.get(element_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[element_id] = lock
        return lock

    def _uow(self) -> UnitOfWork:
        return UnitOfWork(self.elements, self.change_log, self.ledger, self.journal)

    def _handle(self, edit_id: str) -> EditHandle:
        edit = self.change_log.get(edit_id)
        conflict = self.ledger.conflict_for_edit(edit_id)
        return EditHandle(
            edit_id=edit.edit_id,
            element_id=edit.element_id,
            status=edit.status,
            conflict_id=conflict.conflict_id if conflict else None,
            committed_version=edit.committed_version,
        )

    def _new_edit(
        self,
        element_id: str,
        author_id: str,
        base_version: int,
        payload: EditPayload | dict,
        submitted_at: datetime | None = None,
    ) -> Edit:
        if isinstance(payload, dict):
            payload = EditPayload.model_validate(payload)

        current = self.elements.get_current_version(element_id)
        if base_version < 0 or base_version > current:
            raise InvalidTransitionError(
                f"Base version {base_version} is not a version of {element_id} (current {current})"
            )

        return Edit(
            edit_id=self.ids.edit_id(),
            element_id=element_id,
            author_id=author_id,
            base_version=base_version,
            payload=payload,
            submitted_at=submitted_at or self._clock(),
        )

    def _tombstone(self, element_id: str) -> Edit | None:
        """Committed edit that deleted the element, if it is deleted."""
        if not self.elements.get(element_id).deleted:
            return None
        deletions = [
            e
            for e in self.change_log.history(element_id)
            if e.status == EditStatus.COMMITTED and e.payload.delete
        ]
        if not deletions:
            return None
        return max(deletions, key=lambda e: e.committed_version or 0)

    def _absorb(self, snapshot: JournalSnapshot) -> None:
        for element in snapshot.elements:
            self.elements.restore(element)
        for edit in snapshot.edits:
            self.change_log.restore(edit)

        resolutions = {r.conflict_id: r for r in snapshot.resolutions}
        for conflict in snapshot.conflicts:
            self.ledger.restore(conflict, resolutions.get(conflict.conflict_id))

    async def _refresh(self, element_id: str) -> None:
        """Reload one element's records after another writer committed it."""
        snapshot = await self.journal.load_element(element_id)
        self._absorb(snapshot)
        logger.debug(
            f"Refreshed {element_id} at version {self.elements.get_current_version(element_id)}"
        )

    def _lookup(self, edit_id: str, extra: dict[str, Edit]) -> Edit:
        return extra.get(edit_id) or self.change_log.get(edit_id)

    def _reclassify(self, conflict: Conflict, extra: Sequence[Edit] = ()) -> Conflict:
        """Classify a conflict's edits again against the element's current state."""
        staged = {e.edit_id: e for e in extra}
        pending = [
            edit
            for edit in (self._lookup(i, staged) for i in conflict.competing_edit_ids)
            if not edit.is_terminal
        ]
        if not pending:
            return conflict

        element = self.elements.get(conflict.element_id)
        committed = self.change_log.committed_between(
            conflict.element_id,
            min(p.base_version for p in pending),
            element.current_version,
        )
        detection = self.detector.classify(
            pending, element, committed, self._tombstone(conflict.element_id)
        )
        ids = list(detection.competing_edit_ids)
        ids += [i for i in conflict.competing_edit_ids if i not in ids]
        return conflict.model_copy(
            update={"competing_edit_ids": ids, "classification": detection.classification}
        )

    def _context(self, conflict: Conflict, acting_user: str = SYSTEM_ACTOR) -> ConflictContext:
        edits = [self.change_log.get(i) for i in conflict.competing_edit_ids]
        return ConflictContext(
            conflict=conflict,
            element=self.elements.get(conflict.element_id),
            pending=[e for e in edits if not e.is_terminal],
            committed=[e for e in edits if e.status == EditStatus.COMMITTED],
            acting_user=acting_user,
        )

    def _policy_for(self, conflict: Conflict) -> Policy:
        if conflict.policy is not None:
            return conflict.policy
        return self.policy_book.policy_for_element(self.elements.get(conflict.element_id))

    # =========================================================================
    # Submission
    # =========================================================================

    async def create_element(
        self,
        element_id: str,
        content: Any = None,
        document_id: str = "default",
        element_class: str | None = None,
    ) -> Element:
        """Introduce a new element at version 0."""
        element = Element(
            element_id=element_id,
            document_id=document_id,
            element_class=element_class,
            content=content,
            updated_at=self._clock(),
        )
        async with self._lock_for(element_id):
            uow = self._uow()
            uow.create_element(element)
            await uow.commit()

        logger.info(f"Created element {element_id} in document {document_id}")
        return element

    async def submit_edit(
        self,
        element_id: str,
        author_id: str,
        base_version: int,
        payload: EditPayload | dict,
        submitted_at: datetime | None = None,
    ) -> EditHandle:
        """
        Record an edit, detect conflicts and commit or resolve.

        Args:
            element_id: Target element
            author_id: Submitting editor
            base_version: Element version the edit was made against
            payload: Proposed change
            submitted_at: Submission time; defaults to the coordinator clock

        Returns:
            EditHandle with the edit's status after evaluation

        Raises:
            NotFoundError: Unknown element
            InvalidTransitionError: ``base_version`` is not a version of the element
            PersistenceError: The journal rejected the change; nothing was applied
        """
        async with self._lock_for(element_id):
            edit = self._new_edit(element_id, author_id, base_version, payload, submitted_at)
            logger.debug(f"Submitting {edit.edit_id} from {author_id} on {element_id}@{base_version}")
            handle = await self._evaluate(edit, recorded=False)

        self.metrics.increment_counter("edits_submitted")
        return handle

    async def submit_edits(
        self,
        submissions: Sequence[EditSubmission | dict],
    ) -> list[EditHandle]:
        """
        Record a batch of simultaneously arrived edits, then evaluate them.

        All edits are in the change log before any is evaluated, so edits that
        race on the same base version see each other. Evaluation follows
        ``(submitted_at, edit_id)`` order.

        Returns:
            Handles in the order of ``submissions``
        """
        batch = [
            s if isinstance(s, EditSubmission) else EditSubmission.model_validate(s)
            for s in submissions
        ]
        if not batch:
            return []

        async with AsyncExitStack() as stack:
            for element_id in sorted({s.element_id for s in batch}):
                await stack.enter_async_context(self._lock_for(element_id))

            edits = [
                self._new_edit(s.element_id, s.author_id, s.base_version, s.payload, s.submitted_at)
                for s in batch
            ]
            uow = self._uow()
            for edit in edits:
                uow.record_edit(edit)
            await uow.commit()
            self.metrics.increment_counter("edits_submitted", len(edits))
            logger.info(f"Recorded batch of {len(edits)} edits")

            for edit in sorted(edits, key=lambda e: e.sort_key):
                current = self.change_log.get(edit.edit_id)
                if current.is_terminal or self.ledger.conflict_for_edit(edit.edit_id):
                    continue
                await self._evaluate(current, recorded=True)

            return [self._handle(e.edit_id) for e in edits]

    async def delete_element(
        self,
        element_id: str,
        author_id: str,
        base_version: int,
        submitted_at: datetime | None = None,
    ) -> EditHandle:
        """Submit a deletion; it is detected and resolved like any other edit."""
        return await self.submit_edit(
            element_id,
            author_id,
            base_version,
            EditPayload(delete=True),
            submitted_at=submitted_at,
        )

    async def _evaluate(self, edit: Edit, recorded: bool) -> EditHandle:
        """Detect, then commit or open a conflict, retrying lost commit races."""
        element_id = edit.element_id
        detection: Detection | None = None

        for attempt in range(1, self.max_commit_attempts + 1):
            element = self.elements.get(element_id)
            detection = self.detector.detect(
                edit,
                element,
                self.change_log.pending_for(element_id),
                self.change_log.committed_between(
                    element_id, edit.base_version, element.current_version
                ),
                self._tombstone(element_id),
            )

            if detection.is_conflict:
                conflict_id = await self._open_conflict(edit, recorded, detection)
                await self._resolve_locked(conflict_id)
                return self._handle(edit.edit_id)

            try:
                await self._commit_edit(edit, recorded, element)
                return self._handle(edit.edit_id)
            except VersionMismatchError as e:
                self.metrics.increment_counter("commit_retries")
                logger.warning(
                    f"Commit of {edit.edit_id} lost a race "
                    f"(attempt {attempt}/{self.max_commit_attempts}): {e}"
                )
                await self._refresh(element_id)

        await self._escalate_exhausted(edit, recorded, detection)
        return self._handle(edit.edit_id)

    async def _commit_edit(self, edit: Edit, recorded: bool, element: Element) -> None:
        uow = self._uow()
        if not recorded:
            uow.record_edit(edit)

        try:
            content, deleted = apply_payload(element.content, edit.payload)
        except ValueError as e:
            logger.warning(f"Rejecting {edit.edit_id}: payload does not apply ({e})")
            uow.transition_edit(edit.edit_id, EditStatus.REJECTED, reason=f"payload_not_applicable: {e}")
            await uow.commit()
            self.metrics.increment_counter("edits_rejected")
            return

        version = uow.commit_element(element.element_id, content, deleted=deleted)
        uow.transition_edit(edit.edit_id, EditStatus.COMMITTED, committed_version=version)

        started = time.perf_counter()
        await uow.commit()
        self.metrics.record_commit_latency(time.perf_counter() - started)
        self.metrics.increment_counter("edits_committed")

        logger.info(f"Committed {edit.edit_id} on {element.element_id} as version {version}")
        self.bus.publish(
            EditCommitted(edit_id=edit.edit_id, element_id=element.element_id, new_version=version)
        )

    def _joinable_conflict(self, edit: Edit) -> Conflict | None:
        for other in self.change_log.pending_for(edit.element_id):
            if other.edit_id == edit.edit_id or other.base_version != edit.base_version:
                continue
            conflict = self.ledger.open_conflict_for_edit(other.edit_id)
            if conflict is not None:
                return conflict
        return None

    async def _open_conflict(self, edit: Edit, recorded: bool, detection: Detection) -> str:
        """Create a conflict for the edit, or add it to an open one it races with."""
        uow = self._uow()
        if not recorded:
            edit = uow.record_edit(edit)

        joined = self._joinable_conflict(edit)
        if joined is not None:
            ids = [*joined.competing_edit_ids]
            if edit.edit_id not in ids:
                ids.append(edit.edit_id)
            conflict = self._reclassify(
                joined.model_copy(update={"competing_edit_ids": ids}), extra=[edit]
            )
            logger.info(f"Edit {edit.edit_id} joins open conflict {conflict.conflict_id}")
        else:
            conflict = Conflict(
                conflict_id=self.ids.conflict_id(),
                element_id=edit.element_id,
                competing_edit_ids=detection.competing_edit_ids,
                detected_at=self._clock(),
                classification=detection.classification,
                reason=detection.reason,
            )
            logger.info(
                f"Conflict {conflict.conflict_id} on {edit.element_id}: "
                f"{conflict.classification.value} ({detection.reason}) "
                f"between {', '.join(conflict.competing_edit_ids)}"
            )

        uow.put_conflict(conflict)
        await uow.commit()

        if joined is None:
            self.metrics.record_conflict(conflict.classification.value)
        self.bus.publish(
            ConflictDetected(
                conflict_id=conflict.conflict_id,
                element_id=conflict.element_id,
                competing_edit_ids=conflict.competing_edit_ids,
                classification=conflict.classification,
            )
        )
        return conflict.conflict_id

    async def _escalate_exhausted(
        self, edit: Edit, recorded: bool, detection: Detection
    ) -> None:
        uow = self._uow()
        if not recorded:
            uow.record_edit(edit)

        element = self.elements.get(edit.element_id)
        competing = list(detection.competing_edit_ids)
        if len(competing) < 2:
            # The edit that holds the current version won the last race.
            latest = self.change_log.committed_between(
                element.element_id, element.current_version - 1, element.current_version
            )
            competing += [e.edit_id for e in latest if e.edit_id not in competing]

        conflict = Conflict(
            conflict_id=self.ids.conflict_id(),
            element_id=edit.element_id,
            competing_edit_ids=competing,
            detected_at=self._clock(),
            classification=detection.classification,
            status=ConflictStatus.AWAITING_MANUAL_RESOLUTION,
            reason=RETRIES_EXHAUSTED,
            policy=self.policy_book.policy_for_element(element),
            awaiting_strategy=StrategyName.MANUAL_MERGE.value,
            awaiting_since=self._clock(),
        )
        uow.put_conflict(conflict)
        uow.transition_edit(edit.edit_id, EditStatus.AWAITING_MANUAL_RESOLUTION, reason=RETRIES_EXHAUSTED)
        await uow.commit()

        self.metrics.record_conflict(conflict.classification.value)
        self.metrics.increment_counter("conflicts_awaiting_manual")
        logger.warning(
            f"Edit {edit.edit_id} exhausted {self.max_commit_attempts} commit attempts; "
            f"awaiting manual resolution in {conflict.conflict_id}"
        )
        self.bus.publish(
            ConflictAwaitingManual(
                conflict_id=conflict.conflict_id,
                element_id=conflict.element_id,
                competing_edit_ids=conflict.competing_edit_ids,
                classification=conflict.classification,
                reason=RETRIES_EXHAUSTED,
            )
        )

    # =========================================================================
    # Resolution
    # =========================================================================

    async def resolve_conflict(
        self,
        conflict_id: str,
        policy: Policy | None = None,
    ) -> ResolutionOutcome:
        """
        Run the strategy engine for a conflict and apply its decision.

        Strategy and policy errors never escape: the conflict is parked in
        ``AwaitingManualResolution`` with the error recorded.

        Raises:
            NotFoundError: Unknown conflict
            InvalidTransitionError: The conflict is already resolved
            PersistenceError: The journal rejected the change; nothing was applied
        """
        conflict = self.ledger.get(conflict_id)
        async with self._lock_for(conflict.element_id):
            return await self._resolve_locked(conflict_id, policy)

    async def _resolve_locked(
        self,
        conflict_id: str,
        policy: Policy | None = None,
        acting_user: str = SYSTEM_ACTOR,
        record_policy: bool = True,
    ) -> ResolutionOutcome:
        conflict = self.ledger.get(conflict_id)

        for attempt in range(1, self.max_commit_attempts + 1):
            conflict = self.ledger.get(conflict_id)
            if conflict.is_resolved:
                raise InvalidTransitionError(f"Conflict {conflict_id} is already resolved")

            conflict = self._reclassify(conflict)
            effective = policy or self._policy_for(conflict)
            if record_policy:
                conflict = conflict.model_copy(update={"policy": effective})
            context = self._context(conflict, acting_user)

            try:
                outcome = self.engine.resolve(context, effective)
            except (InvalidPolicyError, UnresolvableConflictError) as e:
                logger.warning(f"Conflict {conflict_id} needs a person: {e}")
                return await self._park(
                    conflict,
                    reason=str(e),
                    strategy=StrategyName.MANUAL_MERGE.value,
                    error=f"{e.__class__.__name__}: {e}",
                )

            if isinstance(outcome, PendingManualInput):
                return await self._park(conflict, reason=outcome.reason, strategy=outcome.strategy_used)

            try:
                return await self._apply_decision(conflict, context, outcome)
            except UnresolvableConflictError as e:
                return await self._park(
                    conflict,
                    reason=str(e),
                    strategy=StrategyName.MANUAL_MERGE.value,
                    error=f"{e.__class__.__name__}: {e}",
                )
            except VersionMismatchError as e:
                self.metrics.increment_counter("commit_retries")
                logger.warning(
                    f"Resolution of {conflict_id} lost a commit race "
                    f"(attempt {attempt}/{self.max_commit_attempts}): {e}"
                )
                await self._refresh(conflict.element_id)

        return await self._park(
            conflict, reason=RETRIES_EXHAUSTED, strategy=StrategyName.MANUAL_MERGE.value
        )

    async def _park(
        self,
        conflict: Conflict,
        reason: str,
        strategy: str,
        error: str | None = None,
    ) -> ResolutionOutcome:
        """Move a conflict and its pending edits to ``AwaitingManualResolution``."""
        previous = self.ledger.get(conflict.conflict_id)

        errors = list(conflict.errors)
        if error and error not in errors:
            errors.append(error)

        parked = conflict.model_copy(
            update={
                "status": ConflictStatus.AWAITING_MANUAL_RESOLUTION,
                "reason": reason,
                "errors": errors,
                "awaiting_strategy": strategy,
                "awaiting_since": conflict.awaiting_since or self._clock(),
            }
        )

        uow = self._uow()
        uow.put_conflict(parked)
        for edit_id in parked.competing_edit_ids:
            if self.change_log.get(edit_id).status == EditStatus.PENDING:
                uow.transition_edit(edit_id, EditStatus.AWAITING_MANUAL_RESOLUTION, reason=reason)
        await uow.commit()

        changed = (
            previous.status != ConflictStatus.AWAITING_MANUAL_RESOLUTION
            or previous.competing_edit_ids != parked.competing_edit_ids
            or previous.reason != reason
        )
        if changed:
            self.metrics.increment_counter("conflicts_awaiting_manual")
            logger.info(f"Conflict {parked.conflict_id} awaits manual resolution: {reason}")
            self.bus.publish(
                ConflictAwaitingManual(
                    conflict_id=parked.conflict_id,
                    element_id=parked.element_id,
                    competing_edit_ids=parked.competing_edit_ids,
                    classification=parked.classification,
                    reason=reason,
                    errors=errors,
                )
            )

        return ResolutionOutcome(
            conflict_id=parked.conflict_id,
            status="awaiting_manual",
            reason=reason,
        )

    def _stage_content(self, uow: UnitOfWork, element: Element, payload: EditPayload) -> int:
        try:
            content, deleted = apply_payload(element.content, payload)
        except ValueError as e:
            raise UnresolvableConflictError(
                f"Payload cannot be applied to {element.element_id}: {e}"
            ) from e
        return uow.commit_element(element.element_id, content, deleted=deleted)

    async def _apply_decision(
        self,
        conflict: Conflict,
        context: ConflictContext,
        decision: ResolutionDecision,
    ) -> ResolutionOutcome:
        """Commit a decision: element content, edit statuses and resolution record."""
        element = self.elements.get(conflict.element_id)
        pending_ids = {e.edit_id for e in context.pending}
        uow = self._uow()

        winner_id = decision.outcome_edit_id
        committed_version: int | None = None
        new_commit: str | None = None

        if decision.merged_payload is not None:
            synthesized = uow.record_edit(
                Edit(
                    edit_id=self.ids.edit_id(),
                    element_id=element.element_id,
                    author_id=decision.decided_by,
                    base_version=element.current_version,
                    payload=decision.merged_payload,
                    submitted_at=self._clock(),
                    synthesized_from=[e.edit_id for e in context.live_pending],
                )
            )
            committed_version = self._stage_content(uow, element, synthesized.payload)
            uow.transition_edit(
                synthesized.edit_id,
                EditStatus.COMMITTED,
                reason=f"synthesized by {decision.strategy_used}",
                committed_version=committed_version,
            )
            winner_id = new_commit = synthesized.edit_id

        elif winner_id in pending_ids:
            winner = self.change_log.get(winner_id)
            if winner.withdrawn:
                raise InvalidTransitionError(f"Edit {winner_id} was withdrawn and cannot win")
            committed_version = self._stage_content(uow, element, winner.payload)
            uow.transition_edit(
                winner_id,
                EditStatus.COMMITTED,
                reason=f"won by {decision.strategy_used}",
                committed_version=committed_version,
            )
            new_commit = winner_id

        elif winner_id is not None:
            if winner_id not in conflict.competing_edit_ids:
                raise InvalidTransitionError(f"Edit {winner_id} is not part of {conflict.conflict_id}")
            winner = self.change_log.get(winner_id)
            if winner.status != EditStatus.COMMITTED:
                raise InvalidTransitionError(f"Edit {winner_id} is {winner.status.value}")
            committed_version = element.current_version

        superseded: list[str] = []
        rejected: list[str] = []
        for edit in context.pending:
            if edit.edit_id == winner_id:
                continue
            if edit.withdrawn:
                uow.transition_edit(edit.edit_id, EditStatus.REJECTED, reason=WITHDRAWN)
                rejected.append(edit.edit_id)
            else:
                uow.transition_edit(
                    edit.edit_id,
                    EditStatus.SUPERSEDED,
                    reason=f"superseded by {winner_id}" if winner_id else "superseded",
                )
                superseded.append(edit.edit_id)

        resolution = Resolution(
            resolution_id=self.ids.resolution_id(),
            conflict_id=conflict.conflict_id,
            strategy_used=decision.strategy_used,
            outcome_edit_id=winner_id,
            merged_payload=decision.merged_payload,
            decided_by=decision.decided_by,
            decided_at=self._clock(),
            committed_version=committed_version,
            superseded_edit_ids=superseded,
        )
        uow.put_conflict(conflict)
        uow.attach_resolution(resolution)
        await uow.commit()

        self.metrics.record_resolution(
            decision.strategy_used, len(superseded), committed=new_commit is not None
        )
        self.metrics.increment_counter("edits_rejected", len(rejected))
        logger.info(
            f"Resolved {conflict.conflict_id} by {decision.strategy_used}"
            f"{f' (fallback from {decision.fallback_from})' if decision.fallback_from else ''}: "
            f"outcome={winner_id}, version={committed_version}, superseded={len(superseded)}"
        )

        if new_commit is not None:
            self.bus.publish(
                EditCommitted(
                    edit_id=new_commit,
                    element_id=conflict.element_id,
                    new_version=committed_version,
                )
            )
        self.bus.publish(ConflictResolved(conflict_id=conflict.conflict_id, resolution=resolution))

        return ResolutionOutcome(
            conflict_id=conflict.conflict_id,
            status="resolved",
            resolution=resolution,
            committed_version=committed_version,
        )

    # =========================================================================
    # Human input
    # =========================================================================

    def _check_outcome(self, conflict: Conflict, outcome: ManualOutcome) -> None:
        if outcome.edit_id is None:
            return
        if outcome.edit_id not in conflict.competing_edit_ids:
            raise InvalidTransitionError(
                f"Edit {outcome.edit_id} is not part of {conflict.conflict_id}"
            )
        edit = self.change_log.get(outcome.edit_id)
        if edit.withdrawn:
            raise InvalidTransitionError(f"Edit {outcome.edit_id} was withdrawn")
        if edit.is_terminal and edit.status != EditStatus.COMMITTED:
            raise InvalidTransitionError(f"Edit {outcome.edit_id} is {edit.status.value}")

    async def apply_manual_decision(
        self,
        conflict_id: str,
        outcome: ManualOutcome | dict,
        decided_by: str,
    ) -> ResolutionOutcome:
        """
        Complete a conflict with a human decision.

        For consensus conflicts the decision counts as ``decided_by``'s
        approval and the conflict resolves once the quorum agrees.

        Args:
            conflict_id: Conflict to settle
            outcome: Chosen competing edit or a hand-authored merged payload
            decided_by: Person deciding

        Raises:
            NotFoundError: Unknown conflict
            InvalidTransitionError: Conflict resolved, or outcome not eligible
        """
        if isinstance(outcome, dict):
            outcome = ManualOutcome.model_validate(outcome)

        conflict = self.ledger.get(conflict_id)
        async with self._lock_for(conflict.element_id):
            conflict = self.ledger.get(conflict_id)
            if conflict.is_resolved:
                raise InvalidTransitionError(f"Conflict {conflict_id} is already resolved")
            self._check_outcome(conflict, outcome)

            policy = self._policy_for(conflict)
            if policy.strategy == StrategyName.CONSENSUS_REQUIRED.value:
                return await self._approve_locked(conflict, decided_by, outcome, policy)

            decision = ResolutionDecision(
                strategy_used=StrategyName.MANUAL_MERGE.value,
                outcome_edit_id=outcome.edit_id,
                merged_payload=outcome.merged_payload,
                decided_by=decided_by,
                rationale="Manual decision",
            )

            for attempt in range(1, self.max_commit_attempts + 1):
                conflict = self._reclassify(self.ledger.get(conflict_id))
                conflict = conflict.model_copy(update={"policy": policy})
                try:
                    return await self._apply_decision(
                        conflict, self._context(conflict, decided_by), decision
                    )
                except VersionMismatchError as e:
                    self.metrics.increment_counter("commit_retries")
                    logger.warning(
                        f"Manual decision on {conflict_id} lost a commit race "
                        f"(attempt {attempt}/{self.max_commit_attempts}): {e}"
                    )
                    await self._refresh(conflict.element_id)

            return await self._park(
                conflict, reason=RETRIES_EXHAUSTED, strategy=StrategyName.MANUAL_MERGE.value
            )

    async def record_approval(
        self,
        conflict_id: str,
        approver_id: str,
        outcome: ManualOutcome | dict,
    ) -> ResolutionOutcome:
        """Register a designated approver's vote on a consensus conflict."""
        if isinstance(outcome, dict):
            outcome = ManualOutcome.model_validate(outcome)

        conflict = self.ledger.get(conflict_id)
        async with self._lock_for(conflict.element_id):
            conflict = self.ledger.get(conflict_id)
            if conflict.is_resolved:
                raise InvalidTransitionError(f"Conflict {conflict_id} is already resolved")
            self._check_outcome(conflict, outcome)

            policy = self._policy_for(conflict)
            if policy.strategy != StrategyName.CONSENSUS_REQUIRED.value:
                raise InvalidTransitionError(
                    f"Conflict {conflict_id} is governed by {policy.strategy}, not consensus"
                )
            return await self._approve_locked(conflict, approver_id, outcome, policy)

    async def _approve_locked(
        self,
        conflict: Conflict,
        approver_id: str,
        outcome: ManualOutcome,
        policy: Policy,
    ) -> ResolutionOutcome:
        if approver_id not in policy.approvers:
            raise InvalidTransitionError(
                f"{approver_id} is not a designated approver of {conflict.conflict_id}"
            )

        approvals = {**conflict.approvals, approver_id: outcome}
        uow = self._uow()
        uow.put_conflict(conflict.model_copy(update={"approvals": approvals, "policy": policy}))
        await uow.commit()
        logger.info(
            f"Approval from {approver_id} on {conflict.conflict_id} "
            f"({len(approvals)}/{policy.quorum} needed)"
        )

        return await self._resolve_locked(conflict.conflict_id, policy, acting_user=approver_id)

    async def withdraw_edit(self, edit_id: str) -> EditHandle:
        """
        Withdraw a non-terminal edit on behalf of its author.

        An edit outside any conflict is rejected outright. An edit inside an
        open conflict stays in it as a losing option and is rejected when the
        conflict resolves.

        Raises:
            NotFoundError: Unknown edit
            InvalidTransitionError: The edit is already terminal
        """
        edit = self.change_log.get(edit_id)
        async with self._lock_for(edit.element_id):
            edit = self.change_log.get(edit_id)
            if edit.is_terminal:
                raise InvalidTransitionError(
                    f"Edit {edit_id} is already {edit.status.value}; cannot withdraw"
                )

            conflict = self.ledger.open_conflict_for_edit(edit_id)
            uow = self._uow()
            if conflict is None:
                uow.transition_edit(edit_id, EditStatus.REJECTED, reason=WITHDRAWN)
            else:
                uow.withdraw_edit(edit_id)
            await uow.commit()

            logger.info(f"Edit {edit_id} withdrawn by {edit.author_id}")
            self.bus.publish(
                EditWithdrawn(
                    edit_id=edit_id,
                    element_id=edit.element_id,
                    rejected=conflict is None,
                )
            )

            if conflict is None:
                self.metrics.increment_counter("edits_rejected")
            elif not self._context(self.ledger.get(conflict.conflict_id)).live_pending:
                await self._settle_abandoned(conflict.conflict_id, edit.author_id)

            return self._handle(edit_id)

    async def _settle_abandoned(self, conflict_id: str, decided_by: str) -> None:
        """
        Close a conflict whose every pending edit was withdrawn.

        A committed competitor stays in effect and is recorded as the outcome.
        """
        conflict = self.ledger.get(conflict_id)
        policy = self._policy_for(conflict)
        context = self._context(conflict, decided_by)
        kept = max(context.committed, key=lambda e: e.committed_version or 0, default=None)
        decision = ResolutionDecision(
            strategy_used=conflict.awaiting_strategy or policy.strategy,
            outcome_edit_id=kept.edit_id if kept else None,
            decided_by=decided_by,
            rationale="All pending edits were withdrawn",
        )
        await self._apply_decision(conflict, context, decision)

    # =========================================================================
    # Timeouts
    # =========================================================================

    async def sweep_timeouts(self, now: datetime | None = None) -> list[ResolutionOutcome]:
        """
        Apply the policy timeout action to conflicts awaiting manual input
        longer than ``manual_resolution_timeout``.

        ``escalate`` flags the conflict once and emits ``ConflictEscalated``;
        ``last_write_wins`` resolves it automatically.
        """
        now = now or self._clock()
        outcomes: list[ResolutionOutcome] = []

        for candidate in self.ledger.list_conflicts(ConflictStatus.AWAITING_MANUAL_RESOLUTION):
            policy = candidate.policy
            if policy is None or policy.manual_resolution_timeout is None:
                continue
            if candidate.awaiting_since is None:
                continue
            if now - candidate.awaiting_since < timedelta(seconds=policy.manual_resolution_timeout):
                continue

            async with self._lock_for(candidate.element_id):
                conflict = self.ledger.get(candidate.conflict_id)
                if conflict.status != ConflictStatus.AWAITING_MANUAL_RESOLUTION:
                    continue

                if policy.timeout_action == StrategyName.LAST_WRITE_WINS.value:
                    logger.warning(
                        f"Conflict {conflict.conflict_id} timed out; applying last write wins"
                    )
                    outcome = await self._resolve_locked(
                        conflict.conflict_id,
                        Policy(strategy=StrategyName.LAST_WRITE_WINS.value),
                        record_policy=False,
                    )
                elif conflict.escalated:
                    continue
                else:
                    outcome = await self._escalate(conflict, policy)
                outcomes.append(outcome)

        return outcomes

    async def _escalate(self, conflict: Conflict, policy: Policy) -> ResolutionOutcome:
        reason = (
            f"Awaiting manual resolution longer than {policy.manual_resolution_timeout:g}s"
        )
        uow = self._uow()
        uow.put_conflict(conflict.model_copy(update={"escalated": True}))
        await uow.commit()

        self.metrics.increment_counter("escalations")
        logger.warning(f"Escalated {conflict.conflict_id}: {reason}")
        self.bus.publish(
            ConflictEscalated(
                conflict_id=conflict.conflict_id,
                element_id=conflict.element_id,
                reason=reason,
            )
        )
        return ResolutionOutcome(
            conflict_id=conflict.conflict_id,
            status="awaiting_manual",
            reason="escalated",
        )

    # =========================================================================
    # Queries and lifecycle
    # =========================================================================

    def get_element(self, element_id: str) -> Element:
        return self.elements.get(element_id)

    def list_elements(self, document_id: str | None = None) -> list[Element]:
        return self.elements.list_elements(document_id)

    def get_edit(self, edit_id: str) -> Edit:
        return self.change_log.get(edit_id)

    def get_handle(self, edit_id: str) -> EditHandle:
        return self._handle(edit_id)

    def get_conflict(self, conflict_id: str) -> Conflict:
        return self.ledger.get(conflict_id)

    def get_resolution(self, resolution_id: str) -> Resolution:
        return self.ledger.get_resolution(resolution_id)

    def resolution_for(self, conflict_id: str) -> Resolution | None:
        return self.ledger.resolution_for(conflict_id)

    def list_conflicts(self, status: ConflictStatus | None = None) -> list[Conflict]:
        return self.ledger.list_conflicts(status)

    def history(self, element_id: str) -> list[Edit]:
        """Every edit of an element in submission order."""
        self.elements.get(element_id)
        return self.change_log.history(element_id)

    async def restore(self) -> None:
        """Rebuild in-memory state from the journal. Safe to call repeatedly."""
        snapshot = await self.journal.load_snapshot()
        self._absorb(snapshot)

        logger.info(
            f"Restored {len(snapshot.elements)} elements, {len(snapshot.edits)} edits, "
            f"{len(snapshot.conflicts)} conflicts from the journal"
        )

    async def close(self) -> None:
        await self.journal.close()
