"""In-process domain event bus.

Lifecycle and approval transitions publish here *after* their transaction
commits. Subscribers (notification fan-out, the RabbitMQ relay, sign-in
bookkeeping) run synchronously in registration order; a failing subscriber is
logged and skipped, it never undoes the transition that emitted the event.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from threading import RLock
from typing import Any, Callable, Dict, List

from .dates import utcnow

logger = logging.getLogger(__name__)

BOOKING_CREATED = "booking.created"
BOOKING_APPROVED = "booking.approved"
BOOKING_REJECTED = "booking.rejected"
BOOKING_CANCELLED = "booking.cancelled"
BOOKING_COMPLETED = "booking.completed"
BOOKING_UPDATED = "booking.updated"
USER_REGISTERED = "user.registered"
USER_APPROVED = "user.approved"
USER_REJECTED = "user.rejected"
USER_DEACTIVATED = "user.deactivated"
SIGNED_IN = "session.signed_in"
SIGNED_OUT = "session.signed_out"
TOKEN_REFRESHED = "session.token_refreshed"

WILDCARD = "*"


@dataclass(frozen=True)
class DomainEvent:
    name: str
    payload: Dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=utcnow)

    def to_message(self) -> Dict[str, Any]:
        return {"event": self.name, "occurred_at": self.occurred_at.isoformat(), **self.payload}


Handler = Callable[[DomainEvent], None]


class EventBus:
    def __init__(self) -> None:
        self._handlers: Dict[str, List[Handler]] = {}
        self._lock = RLock()

    def subscribe(self, name: str, handler: Handler) -> Callable[[], None]:
        """Register ``handler`` for ``name`` (or ``"*"`` for every event).

        Returns a callable that removes the registration.
        """

        with self._lock:
            self._handlers.setdefault(name, []).append(handler)

        def unsubscribe() -> None:
            with self._lock:
                handlers = self._handlers.get(name, [])
                if handler in handlers:
                    handlers.remove(handler)

        return unsubscribe

    def is_subscribed(self, name: str, handler: Handler) -> bool:
        with self._lock:
            return handler in self._handlers.get(name, [])

    def publish(self, name: str, **payload: Any) -> DomainEvent:
        event = DomainEvent(name=name, payload=payload)
        with self._lock:
            handlers = list(self._handlers.get(name, [])) + list(self._handlers.get(WILDCARD, []))
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception("Handler %r failed for event %s %s", handler, name, payload)
        return event

    def clear(self) -> None:
        with self._lock:
            self._handlers.clear()


event_bus = EventBus()
