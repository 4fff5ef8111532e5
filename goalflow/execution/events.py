"""Append-only progress event stream.

Events are consumed by logging and UI layers; the engine never reads its
own stream back.
"""

from collections.abc import Callable
from datetime import datetime
from typing import Any, Literal, TypeVar

from loguru import logger
from pydantic import BaseModel, Field

from goalflow.core.state import utcnow


class Event(BaseModel):
    """Base class for progress events."""

    kind: str
    goal_id: str | None = None
    timestamp: datetime = Field(default_factory=utcnow)


class SubTaskUnblocked(Event):
    kind: Literal["subtask_unblocked"] = "subtask_unblocked"
    subtask_id: str


class SubTaskFailed(Event):
    kind: Literal["subtask_failed"] = "subtask_failed"
    subtask_id: str
    reason: str


class WaveCompleted(Event):
    kind: Literal["wave_completed"] = "wave_completed"
    wave_index: int
    completed: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)
    held: list[str] = Field(default_factory=list)


class UnassignableReported(Event):
    kind: Literal["unassignable_reported"] = "unassignable_reported"
    subtask_id: str
    missing_capability: str


class CycleReported(Event):
    kind: Literal["cycle_reported"] = "cycle_reported"
    cycle: list[str]
    repaired_by: str | None = None


class ReplanningDecision(Event):
    kind: Literal["replanning_decision"] = "replanning_decision"
    origin_id: str
    action: str
    approved: bool
    blast_radius: list[str] = Field(default_factory=list)


class GoalCancelled(Event):
    kind: Literal["goal_cancelled"] = "goal_cancelled"
    cancelled: list[str] = Field(default_factory=list)


EventCallback = Callable[[Event], None]
EventT = TypeVar("EventT", bound=Event)


class EventStream:
    """
    Append-only event log with subscribers.

    Example:
        >>> stream = EventStream(goal_id="g-1")
        >>> stream.subscribe(lambda e: print(e.kind))
        >>> stream.emit(SubTaskUnblocked(subtask_id="B"))
        subtask_unblocked
    """

    def __init__(self, goal_id: str | None = None) -> None:
        self.goal_id = goal_id
        self._events: list[Event] = []
        self._callbacks: list[EventCallback] = []

    def subscribe(self, callback: EventCallback) -> None:
        """Add a callback invoked for every new event."""
        self._callbacks.append(callback)

    def unsubscribe(self, callback: EventCallback) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def emit(self, event: Event) -> Event:
        """Append an event and notify subscribers."""
        if event.goal_id is None:
            event = event.model_copy(update={"goal_id": self.goal_id})
        self._events.append(event)
        logger.debug(f"Event {event.kind}: {event.model_dump(exclude={'kind', 'timestamp', 'goal_id'})}")

        for callback in self._callbacks:
            try:
                callback(event)
            except Exception as e:
                logger.warning(f"Event callback error: {e}")

        return event

    @property
    def events(self) -> list[Event]:
        return list(self._events)

    def of_type(self, event_type: type[EventT]) -> list[EventT]:
        """Get all events of one type, in emission order."""
        return [e for e in self._events if isinstance(e, event_type)]

    def __len__(self) -> int:
        return len(self._events)

    def to_list(self) -> list[dict[str, Any]]:
        return [e.model_dump(mode="json") for e in self._events]
