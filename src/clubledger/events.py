"""In-process notifications for ledger state changes.

The fee computer, roster, status ledger, and reconciler publish here after
their transaction commits.  Subscribers such as member
notifications react without the ledger importing them.
"""

from __future__ import annotations

import enum
import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from typing import Any, Optional

logger = logging.getLogger(__name__)


class EventType(enum.Enum):
    FEES_RECALCULATED = "fees.recalculated"
    ROSTER_CHANGED = "roster.changed"

    PAYMENT_SUCCEEDED = "payment.succeeded"
    PAYMENT_REFUNDED = "payment.refunded"
    PAYMENT_CANCELLED = "payment.cancelled"
    PAYMENT_SYNCED = "payment.synced"

    RECONCILIATION_COMPLETED = "reconciliation.completed"


@dataclass
class Event:
    type: EventType
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)
    source: str = ""

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["type"] = self.type.value
        return payload


EventHandler = Callable[[Event], None]

# Subscription key for handlers that want every event type.
ALL_EVENTS = None


class EventBus:
    """Synchronous publish/subscribe with a bounded history.

    Handlers run in the publisher's thread after the bus lock is released.
    A handler that raises is logged and skipped; the publisher never sees
    the error, so a broken notifier cannot undo a committed payment update.
    """

    def __init__(self, *, max_history: int = 1000) -> None:
        self._lock = threading.Lock()
        self._subscribers: dict[Optional[EventType], list[EventHandler]] = {}
        self._history: deque[Event] = deque(maxlen=max_history)

    def subscribe(self, event_type: Optional[EventType], handler: EventHandler) -> None:
        """Call *handler* for *event_type* (``ALL_EVENTS`` for everything).

        Subscribing the same handler twice is a no-op.
        """
        with self._lock:
            bucket = self._subscribers.setdefault(event_type, [])
            if handler not in bucket:
                bucket.append(handler)

    def unsubscribe(self, event_type: Optional[EventType], handler: EventHandler) -> None:
        with self._lock:
            bucket = self._subscribers.get(event_type)
            if bucket and handler in bucket:
                bucket.remove(handler)

    def publish(
        self,
        event_type: EventType,
        data: Optional[dict[str, Any]] = None,
        source: str = "",
    ) -> Event:
        event = Event(type=event_type, data=dict(data or {}), source=source)
        with self._lock:
            self._history.append(event)
            targets = self._subscribers.get(event_type, []) + self._subscribers.get(ALL_EVENTS, [])

        for handler in targets:
            try:
                handler(event)
            except Exception:
                logger.exception("Subscriber %r raised on %s", handler, event_type.value)
        return event

    def recent_events(self, event_type: Optional[EventType] = None, limit: int = 50) -> list[Event]:
        """Newest-first slice of the history, optionally one type only."""
        with self._lock:
            snapshot = list(self._history)
        matching = [e for e in reversed(snapshot) if event_type is None or e.type is event_type]
        return matching[:limit]
