"""Engine events and their subscribers.

The engine reports what it does as a stream of ``EngineEvent`` values:
run loop start and stop, task dispatch and outcome, conflict pauses,
phase transitions and restores. Subscribers pick the event types they
care about; the CLI uses this to print a live trace while ``start`` runs.

Events are delivered after the state change they describe has been
persisted, in the order the engine emitted them.
"""

from __future__ import annotations

import inspect
import itertools
import logging
from collections import deque
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from conductor.schemas.state import utcnow

logger = logging.getLogger(__name__)


class EventType(StrEnum):
    ENGINE_STARTED = "engine_started"
    ENGINE_STOPPED = "engine_stopped"
    TICK_COMPLETED = "tick_completed"
    TASK_DISPATCHED = "task_dispatched"
    TASK_COMPLETED = "task_completed"
    TASK_FAILED = "task_failed"
    TASK_SLOW = "task_slow"
    RESULT_DISCARDED = "result_discarded"
    CONFLICT_DETECTED = "conflict_detected"
    WORKFLOW_PAUSED = "workflow_paused"
    WORKFLOW_RESUMED = "workflow_resumed"
    MILESTONE_COMPLETED = "milestone_completed"
    MILESTONE_FAILED = "milestone_failed"
    PHASE_ADVANCED = "phase_advanced"
    PHASE_ROLLED_BACK = "phase_rolled_back"
    STATE_RESTORED = "state_restored"
    WORKFLOW_COMPLETED = "workflow_completed"
    LESSON_RECURRING = "lesson_recurring"
    ERROR = "error"


class EngineEvent(BaseModel):
    """One thing the engine did. ``sequence`` is unique per emitter."""

    sequence: int = 0
    type: EventType
    at: datetime = Field(default_factory=utcnow)
    data: dict[str, Any] = Field(default_factory=dict)


Subscriber = Callable[[EngineEvent], Any]


@dataclass(frozen=True, eq=False)
class Subscription:
    """A subscriber and the event types it receives (all when empty)."""

    subscriber: Subscriber
    types: frozenset[EventType]

    def wants(self, event: EngineEvent) -> bool:
        return not self.types or event.type in self.types


class EngineEventEmitter:
    """Fans engine events out to subscribers and keeps a bounded backlog.

    Subscribers may be plain callables or coroutine functions. A failing
    subscriber is logged and skipped; it never fails the engine operation
    that emitted the event.
    """

    def __init__(self, backlog: int = 1000) -> None:
        self._subscriptions: list[Subscription] = []
        self._backlog: deque[EngineEvent] = deque(maxlen=backlog)
        self._sequence = itertools.count(1)

    def subscribe(self, subscriber: Subscriber, types: Iterable[EventType] = ()) -> Subscription:
        """Deliver events of *types* (every type when empty) to *subscriber*."""
        subscription = Subscription(subscriber, frozenset(types))
        self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def history(self, *types: EventType) -> list[EngineEvent]:
        """Backlogged events, oldest first, optionally only of *types*."""
        if not types:
            return list(self._backlog)
        return [e for e in self._backlog if e.type in types]

    async def emit(self, event_type: EventType, **data: Any) -> EngineEvent:
        event = EngineEvent(sequence=next(self._sequence), type=event_type, data=data)
        self._backlog.append(event)
        for subscription in [s for s in self._subscriptions if s.wants(event)]:
            try:
                outcome = subscription.subscriber(event)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                logger.exception("Subscriber failed on %s event #%d", event.type, event.sequence)
        return event
