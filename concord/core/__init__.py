"""Core module - domain records, configuration, policy, errors and logging."""

from concord.core.config import Settings, get_settings
from concord.core.exceptions import (
    ConcordError,
    InvalidPolicyError,
    InvalidTransitionError,
    NotFoundError,
    PersistenceError,
    UnresolvableConflictError,
    VersionMismatchError,
)
from concord.core.policy import PolicyBook
from concord.core.state import (
    Conflict,
    ConflictClassification,
    ConflictStatus,
    Edit,
    EditPayload,
    EditStatus,
    Element,
    ManualOutcome,
    Policy,
    Resolution,
    StrategyName,
)

__all__ = [
    "ConcordError",
    "Conflict",
    "ConflictClassification",
    "ConflictStatus",
    "Edit",
    "EditPayload",
    "EditStatus",
    "Element",
    "InvalidPolicyError",
    "InvalidTransitionError",
    "ManualOutcome",
    "NotFoundError",
    "PersistenceError",
    "Policy",
    "PolicyBook",
    "Resolution",
    "Settings",
    "StrategyName",
    "UnresolvableConflictError",
    "VersionMismatchError",
    "get_settings",
]
