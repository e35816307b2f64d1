"""Domain events emitted by the governance core for any subscriber to render."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Callable
from uuid import uuid4

from pydantic import Field

from common.logging import LoggerMixin
from common.models import BaseModel


class EventType(str, Enum):
    """Types of domain events."""

    ACTION_ENQUEUED = "action_enqueued"
    ACTION_APPROVED = "action_approved"
    ACTION_REJECTED = "action_rejected"
    ACTION_REMOVED = "action_removed"
    ACTION_EXECUTED = "action_executed"
    ACTION_FAILED = "action_failed"
    REQUEST_CREATED = "request_created"
    REQUEST_REVIEWED = "request_reviewed"
    REQUEST_CANCELLED = "request_cancelled"
    ROLLED_BACK = "rolled_back"
    SETTINGS_UPDATED = "settings_updated"
    EXPERIMENT_STARTED = "experiment_started"


class DomainEvent(BaseModel):
    """A single domain event."""

    event_id: str = Field(default_factory=lambda: str(uuid4()))
    event_type: EventType
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    subject_id: str | None = Field(default=None, description="Action, request or entry ID")
    payload: dict[str, Any] = Field(default_factory=dict)


EventHandler = Callable[[DomainEvent], None]


class EventBus(LoggerMixin):
    """In-process publish/subscribe for domain events.

    Handlers run synchronously in publish order. A failing handler is logged
    and never interrupts the command that published the event.
    """

    def __init__(self) -> None:
        self._handlers: list[EventHandler] = []
        self._history: list[DomainEvent] = []
        self.history_limit = 1000

    def subscribe(self, handler: EventHandler) -> Callable[[], None]:
        """Register a handler and return a callable that unsubscribes it."""
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    def publish(
        self,
        event_type: EventType,
        subject_id: str | None = None,
        **payload: Any,
    ) -> DomainEvent:
        event = DomainEvent(event_type=event_type, subject_id=subject_id, payload=payload)

        self._history.append(event)
        if len(self._history) > self.history_limit:
            del self._history[: len(self._history) - self.history_limit]

        for handler in list(self._handlers):
            try:
                handler(event)
            except Exception as e:
                self.logger.error(
                    "event_handler_failed",
                    event_type=event.event_type,
                    error=str(e),
                )

        return event

    def recent(self, event_type: EventType | None = None) -> list[DomainEvent]:
        """Recently published events, oldest first."""
        if event_type is None:
            return list(self._history)
        return [e for e in self._history if e.event_type == event_type]
