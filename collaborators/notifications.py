"""
notifications.py
-----------------
One-way, fire-and-forget notification contract.

The engine only *emits* events. Delivery (email, socket, in-app) belongs to
the sink. Billing state must never depend on a notification succeeding, so
services talk to the sink through `Notifier`, which resolves channel hints
from config and swallows (and logs) every delivery failure.

Sinks:
    - QueuedNotificationSink: buffers events; a separate drain step hands
      them to a delivery callable with its own retry budget.
    - LoggingNotificationSink: writes each event to the log. CLI default.
"""

import logging
import threading
from abc import ABC, abstractmethod
from collections import deque
from typing import Callable

from core.models import NotificationEvent
from config.config_loader import get_notification_channels

logger = logging.getLogger(__name__)


# Event keys emitted by the engine.
BILL_GENERATED = "billing.bill_generated"
PAYMENT_SUCCESS = "billing.payment_success"
BUDGET_EXCEEDED = "billing.budget_exceeded"
RENEWAL_CANCELLED = "billing.renewal_cancelled"
PENDING_REMINDER = "billing.pending_reminder"
SUBSCRIPTION_CREATED = "subscription.created"


class NotificationSink(ABC):

    @abstractmethod
    def notify(self, user_id: str, event_key: str, data: dict, channels: list[str], priority: str = "NORMAL") -> None:
        ...


class QueuedNotificationSink(NotificationSink):
    """
    Thread-safe in-memory outbox.

    Usage:
        sink = QueuedNotificationSink()
        ...engine runs...
        sink.drain(deliver_fn)
    """

    def __init__(self):
        self._queue: deque[NotificationEvent] = deque()
        self._lock = threading.Lock()

    def notify(self, user_id, event_key, data, channels, priority="NORMAL") -> None:
        event = NotificationEvent(
            user_id=user_id, event_key=event_key, data=dict(data),
            channels=list(channels), priority=priority,
        )
        with self._lock:
            self._queue.append(event)

    @property
    def events(self) -> list[NotificationEvent]:
        with self._lock:
            return list(self._queue)

    def keys(self) -> list[str]:
        return [e.event_key for e in self.events]

    def drain(self, deliver: Callable[[NotificationEvent], None], max_attempts: int = 3) -> list[NotificationEvent]:
        """
        Delivers and removes every queued event.

        Each event is attempted up to max_attempts times. Events that still
        fail are dropped from the queue and returned to the caller.
        """
        with self._lock:
            pending = list(self._queue)
            self._queue.clear()

        undelivered = []
        for event in pending:
            for attempt in range(1, max_attempts + 1):
                try:
                    deliver(event)
                    break
                except Exception as exc:
                    logger.warning(
                        f"Delivery of {event.event_key} to user {event.user_id} failed "
                        f"(attempt {attempt}/{max_attempts}): {exc}"
                    )
            else:
                undelivered.append(event)
        return undelivered


class LoggingNotificationSink(NotificationSink):

    def notify(self, user_id, event_key, data, channels, priority="NORMAL") -> None:
        logger.info(f"[notify:{priority}] user={user_id} event={event_key} channels={channels} data={data}")


class Notifier:
    """
    Best-effort front for a NotificationSink.

    emit() never raises. A missing sink makes every emit a no-op.
    """

    def __init__(self, sink: NotificationSink | None = None):
        self.sink = sink

    def emit(self, user_id: str, event_key: str, data: dict | None = None, priority: str = "NORMAL") -> bool:
        """Returns True if the sink accepted the event."""
        if self.sink is None:
            return False
        try:
            channels = get_notification_channels(event_key)
            self.sink.notify(user_id, event_key, data or {}, channels, priority)
            return True
        except Exception:
            logger.exception(f"Notification {event_key} for user {user_id} failed; continuing.")
            return False
