import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List

from loguru import logger
from pydantic import BaseModel, Field


class SloppyEvent(BaseModel):
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    event_type: str
    source: str
    session_id: str | None = None
    payload: Dict[str, Any] = Field(default_factory=dict)


class EventBus:
    """A lightweight, synchronous, one-way sink for progress events."""

    def __init__(self):
        self._subscribers: List[Callable[[SloppyEvent], None]] = []

    def subscribe(self, callback: Callable[[SloppyEvent], None]) -> None:
        """Register a callback to be executed when an event is emitted."""
        self._subscribers.append(callback)

    def unsubscribe(self, callback: Callable[[SloppyEvent], None]) -> None:
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    def emit(
        self,
        event_type: str,
        source: str,
        payload: Dict[str, Any] | None = None,
        session_id: str | None = None,
    ) -> SloppyEvent:
        """Construct and broadcast a SloppyEvent to all subscribers."""
        event = SloppyEvent(
            event_type=event_type,
            source=source,
            session_id=session_id,
            payload=payload or {},
        )

        for subscriber in list(self._subscribers):
            try:
                subscriber(event)
            except Exception as e:
                # A broken subscriber never reaches the pipeline
                logger.warning(f"[EVENTS] Subscriber failed on {event_type}: {e}")

        return event


# Global singleton instance for easy imports across the project
bus = EventBus()
