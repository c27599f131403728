"""Event system -- publish/subscribe for license lifecycle events.

Every lifecycle mutation (generate, revoke, renew, transfer, blacklist,
security policy change) and every scheduled-task state change is
published on an :class:`EventBus`.  The bus keeps a bounded history that
serves as the in-process audit trail, and subscribers can forward events
to durable audit storage or external systems.

Example::

    bus = EventBus()

    def on_revoked(event: Event) -> None:
        print(f"License {event.data['license_id']} revoked by {event.data['by']}")

    bus.subscribe(EventType.LICENSE_REVOKED, on_revoked)
    bus.publish(EventType.LICENSE_REVOKED, {"license_id": "lic-1", "by": "admin"})
"""

from __future__ import annotations

import enum
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from edulicense import parse_int_env

logger = logging.getLogger(__name__)


class EventType(enum.Enum):
    """All event types emitted by edulicense."""

    # License lifecycle
    LICENSE_GENERATED = "license.generated"
    LICENSE_ACTIVATED = "license.activated"
    LICENSE_VALIDATED = "license.validated"
    LICENSE_VALIDATION_FAILED = "license.validation_failed"
    LICENSE_REVOKED = "license.revoked"
    LICENSE_RENEWED = "license.renewed"
    LICENSE_TRANSFERRED = "license.transferred"
    LICENSE_EXPIRED = "license.expired"
    LICENSE_BLACKLISTED = "license.blacklisted"
    LICENSE_UNBLACKLISTED = "license.unblacklisted"

    # Security policy
    SECURITY_UPDATED = "security.updated"

    # Scheduled tasks
    TASK_FAILED = "task.failed"
    TASK_RECOVERED = "task.recovered"

    # Operator alerts
    ALERT_SENT = "alert.sent"


@dataclass
class Event:
    """A single event in the system."""

    type: EventType
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)
    source: str = ""  # e.g. "service" or "scheduler"

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-serialisable dictionary."""
        return {
            "type": self.type.value,
            "data": self.data,
            "timestamp": self.timestamp,
            "source": self.source,
        }


EventHandler = Callable[[Event], None]

_DEFAULT_MAX_HISTORY = 1000


class EventBus:
    """Thread-safe publish/subscribe event bus.

    Handlers are called synchronously in the publishing thread.  If a
    handler raises, the exception is logged but does not prevent other
    handlers from running.

    History size defaults to 1000 events and is configurable via the
    ``EDULICENSE_EVENT_HISTORY`` environment variable.
    """

    def __init__(self, max_history: int | None = None) -> None:
        self._handlers: dict[EventType, list[EventHandler]] = {}
        self._wildcard_handlers: list[EventHandler] = []
        self._lock = threading.Lock()
        self._history: list[Event] = []
        self._max_history = max(
            1,
            max_history if max_history is not None else parse_int_env("EDULICENSE_EVENT_HISTORY", _DEFAULT_MAX_HISTORY),
        )

    def subscribe(self, event_type: EventType | None, handler: EventHandler) -> None:
        """Register a handler for *event_type*, or for all events when ``None``.

        Subscribing the same handler twice is a no-op.
        """
        with self._lock:
            targets = self._wildcard_handlers if event_type is None else self._handlers.setdefault(event_type, [])
            if any(existing is handler for existing in targets):
                logger.debug("Duplicate subscription for %s, skipping", event_type)
                return
            targets.append(handler)

    def unsubscribe(self, event_type: EventType | None, handler: EventHandler) -> None:
        """Remove a previously registered handler.

        Silently does nothing if the handler is not found.
        """
        with self._lock:
            if event_type is None:
                self._wildcard_handlers = [h for h in self._wildcard_handlers if h is not handler]
            else:
                entries = self._handlers.get(event_type, [])
                self._handlers[event_type] = [h for h in entries if h is not handler]

    def publish(
        self,
        event_or_type: Event | EventType,
        data: dict[str, Any] | None = None,
        source: str = "",
    ) -> Event:
        """Record an event and dispatch it to matching handlers.

        Accepts either a pre-built :class:`Event` or an :class:`EventType`
        plus a data dict.  Returns the published event.
        """
        if isinstance(event_or_type, EventType):
            event = Event(type=event_or_type, data=data or {}, source=source)
        else:
            event = event_or_type

        with self._lock:
            self._history.append(event)
            if len(self._history) > self._max_history:
                self._history = self._history[-self._max_history :]
            handlers = list(self._handlers.get(event.type, [])) + list(self._wildcard_handlers)

        # Call outside the lock to avoid deadlocks.
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception("Event handler %r failed for %s", handler, event.type.value)
        return event

    def recent_events(
        self,
        event_type: EventType | None = None,
        limit: int = 50,
        *,
        license_id: str | None = None,
    ) -> list[Event]:
        """Return recent events, newest first.

        :param event_type: Filter by exact type, or ``None`` for all.
        :param limit: Maximum number of events to return.
        :param license_id: Only events whose data names this license.
        """
        with self._lock:
            events = list(self._history)

        if event_type is not None:
            events = [e for e in events if e.type == event_type]
        if license_id is not None:
            events = [e for e in events if e.data.get("license_id") == license_id]

        events.reverse()
        return events[:limit]

    def clear_history(self) -> None:
        with self._lock:
            self._history.clear()
