import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List

from loguru import logger
from pydantic import BaseModel, Field


class PilotEvent(BaseModel):
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    event_type: str
    document: str
    payload: Dict[str, Any] = Field(default_factory=dict)


class EventBus:
    """A lightweight, synchronous event bus carrying protocol document changes."""

    def __init__(self):
        self._subscribers: List[Callable[[PilotEvent], None]] = []

    def subscribe(self, callback: Callable[[PilotEvent], None]) -> None:
        """Register a callback to be executed when an event is emitted."""
        self._subscribers.append(callback)

    def emit(self, event_type: str, document: str, payload: Dict[str, Any] | None = None) -> None:
        """Construct and broadcast a PilotEvent to all subscribers."""
        event = PilotEvent(
            event_type=event_type,
            document=document,
            payload=payload or {},
        )

        for subscriber in self._subscribers:
            try:
                subscriber(event)
            except Exception as e:
                # A failing subscriber must not take the engine down with it
                logger.warning(f"[BUS] Subscriber failed on {event_type}/{document}: {e}")
