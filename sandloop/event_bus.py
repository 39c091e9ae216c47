import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List

from loguru import logger
from pydantic import BaseModel, Field


class LoopEvent(BaseModel):
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    event_type: str
    task_id: str
    iteration: int = 0
    payload: Dict[str, Any] = Field(default_factory=dict)


class EventBus:
    """A lightweight, synchronous event bus for the run transcript side channel."""

    def __init__(self):
        self._subscribers: List[Callable[[LoopEvent], None]] = []

    def subscribe(self, callback: Callable[[LoopEvent], None]) -> None:
        """Register a callback to be executed when an event is emitted."""
        self._subscribers.append(callback)

    def unsubscribe(self, callback: Callable[[LoopEvent], None]) -> None:
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    def emit(
        self,
        event_type: str,
        task_id: str,
        iteration: int = 0,
        payload: Dict[str, Any] | None = None,
    ) -> LoopEvent:
        """Construct and broadcast a LoopEvent to all subscribers."""
        event = LoopEvent(
            event_type=event_type,
            task_id=task_id,
            iteration=iteration,
            payload=payload or {},
        )

        for subscriber in list(self._subscribers):
            try:
                subscriber(event)
            except Exception as e:
                logger.warning(f"[BUS] Subscriber failed on {event_type}: {e}")

        return event
