"""
Outbound engine events.

The coordinator publishes typed events onto an ``EventBus``; collaborators
subscribe and receive them through their own bounded queues. The coordinator
never holds references to subscriber objects.
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Iterable
from datetime import datetime
from enum import Enum
from typing import Literal

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from concord.core.state import ConflictClassification, Resolution, utc_now


class EventType(str, Enum):
    """Event names relayed to co-authoring clients."""

    CONFLICT_DETECTED = "ConflictDetected"
    CONFLICT_RESOLVED = "ConflictResolved"
    EDIT_COMMITTED = "EditCommitted"
    CONFLICT_AWAITING_MANUAL = "ConflictAwaitingManual"
    CONFLICT_ESCALATED = "ConflictEscalated"
    EDIT_WITHDRAWN = "EditWithdrawn"


class EngineEvent(BaseModel):
    """Base event."""

    model_config = ConfigDict(frozen=True)

    event_type: EventType
    occurred_at: datetime = Field(default_factory=utc_now)


class ConflictDetected(EngineEvent):
    event_type: Literal[EventType.CONFLICT_DETECTED] = EventType.CONFLICT_DETECTED
    conflict_id: str
    element_id: str
    competing_edit_ids: list[str]
    classification: ConflictClassification


class ConflictResolved(EngineEvent):
    event_type: Literal[EventType.CONFLICT_RESOLVED] = EventType.CONFLICT_RESOLVED
    conflict_id: str
    resolution: Resolution


class EditCommitted(EngineEvent):
    event_type: Literal[EventType.EDIT_COMMITTED] = EventType.EDIT_COMMITTED
    edit_id: str
    element_id: str
    new_version: int


class ConflictAwaitingManual(EngineEvent):
    event_type: Literal[EventType.CONFLICT_AWAITING_MANUAL] = EventType.CONFLICT_AWAITING_MANUAL
    conflict_id: str
    element_id: str
    competing_edit_ids: list[str]
    classification: ConflictClassification
    reason: str
    errors: list[str] = Field(default_factory=list)


class ConflictEscalated(EngineEvent):
    event_type: Literal[EventType.CONFLICT_ESCALATED] = EventType.CONFLICT_ESCALATED
    conflict_id: str
    element_id: str
    reason: str


class EditWithdrawn(EngineEvent):
    event_type: Literal[EventType.EDIT_WITHDRAWN] = EventType.EDIT_WITHDRAWN
    edit_id: str
    element_id: str
    rejected: bool


class Subscription:
    """A subscriber's view of the bus: an async iterator over its queue."""

    def __init__(
        self,
        bus: EventBus,
        queue: asyncio.Queue[EngineEvent],
        event_types: frozenset[EventType] | None,
    ) -> None:
        self._bus = bus
        self._queue = queue
        self.event_types = event_types
        self.dropped = 0

    def accepts(self, event: EngineEvent) -> bool:
        return self.event_types is None or event.event_type in self.event_types

    async def get(self) -> EngineEvent:
        return await self._queue.get()

    def drain(self) -> list[EngineEvent]:
        """Return every queued event without waiting."""
        events = []
        while not self._queue.empty():
            events.append(self._queue.get_nowait())
        return events

    def close(self) -> None:
        self._bus.unsubscribe(self)

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> EngineEvent:
        return await self._queue.get()


class EventBus:
    """
    Fan-out channel for engine events.

    Usage:
        bus = EventBus()
        subscription = bus.subscribe({EventType.EDIT_COMMITTED})
        bus.publish(EditCommitted(edit_id="e1", element_id="p1", new_version=1))
        event = await subscription.get()
    """

    def __init__(self, max_queue_size: int = 1000, history_size: int = 1000) -> None:
        self._max_queue_size = max_queue_size
        self._subscriptions: list[Subscription] = []
        self._history: deque[EngineEvent] = deque(maxlen=history_size)

    def subscribe(self, event_types: Iterable[EventType] | None = None) -> Subscription:
        types = frozenset(event_types) if event_types is not None else None
        subscription = Subscription(self, asyncio.Queue(maxsize=self._max_queue_size), types)
        self._subscriptions.append(subscription)
        logger.debug(f"Event subscriber added. Total: {len(self._subscriptions)}")
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)
            logger.debug(f"Event subscriber removed. Total: {len(self._subscriptions)}")

    def publish(self, event: EngineEvent) -> None:
        """Deliver an event to every matching subscriber without blocking."""
        self._history.append(event)

        for subscription in list(self._subscriptions):
            if not subscription.accepts(event):
                continue
            queue = subscription._queue
            if queue.full():
                queue.get_nowait()
                subscription.dropped += 1
                logger.warning(
                    f"Subscriber queue full; dropped oldest event ({subscription.dropped} total)"
                )
            queue.put_nowait(event)

    def recent(self, limit: int | None = None) -> list[EngineEvent]:
        events = list(self._history)
        if limit is not None:
            return events[-limit:]
        return events

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)
