"""
Resolution Session Coordinator for Concord

Provides the transactional front door of the engine:
- ResolutionCoordinator: Submission, resolution, manual decisions, withdrawal
- UnitOfWork: All-or-nothing application of one transaction
- EventBus: Outbound typed events
- TimeoutSweeper: Periodic manual-resolution timeout checks
"""

from concord.coordinator.events import (
    ConflictAwaitingManual,
    ConflictDetected,
    ConflictEscalated,
    ConflictResolved,
    EditCommitted,
    EditWithdrawn,
    EngineEvent,
    EventBus,
    EventType,
    Subscription,
)
from concord.coordinator.session import (
    EditHandle,
    EditSubmission,
    ResolutionCoordinator,
    ResolutionOutcome,
)
from concord.coordinator.sweeper import TimeoutSweeper
from concord.coordinator.transaction import UnitOfWork

__all__ = [
    # Events
    "ConflictAwaitingManual",
    "ConflictDetected",
    "ConflictEscalated",
    "ConflictResolved",
    "EditCommitted",
    "EditWithdrawn",
    "EngineEvent",
    "EventBus",
    "EventType",
    "Subscription",
    # Coordinator
    "EditHandle",
    "EditSubmission",
    "ResolutionCoordinator",
    "ResolutionOutcome",
    "TimeoutSweeper",
    "UnitOfWork",
]
