"""Notification bus for transient status events.

This module provides:
- NotificationKind: Enum for the kinds of status events
- Notification: A single status event
- Subscription: A bounded per-subscriber queue
- NotificationBus: Fan-out of notifications to subscribers, plus a short history

Publishing never blocks: when a subscriber's queue is full its oldest
notification is dropped to make room.
"""

import queue
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from ..logging_config import get_logger

logger = get_logger(__name__)


class NotificationKind(str, Enum):
    """Type of a notification."""
    INDEXING_STARTED = "indexing_started"
    INDEXING_PROGRESS = "indexing_progress"
    INDEXING_COMPLETE = "indexing_complete"
    INDEXING_CANCELLED = "indexing_cancelled"
    INDEXING_FAILED = "indexing_failed"
    TOOL_STARTED = "tool_started"
    TOOL_COMPLETE = "tool_complete"
    THOUGHT = "thought"
    INFO = "info"
    ERROR = "error"


@dataclass
class Notification:
    """A status event published by a background task."""
    kind: NotificationKind
    message: str
    source: Optional[str] = None  # Collection name, tool name, ...
    data: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: float = field(default_factory=time.time)


class Subscription:
    """A bounded queue of notifications for one consumer."""

    def __init__(self, bus: "NotificationBus", maxsize: int):
        self._bus = bus
        self._queue: "queue.Queue[Notification]" = queue.Queue(maxsize=maxsize)
        self.dropped = 0
        self.closed = False

    def _offer(self, notification: Notification) -> None:
        while True:
            try:
                self._queue.put_nowait(notification)
                return
            except queue.Full:
                try:
                    self._queue.get_nowait()
                    self.dropped += 1
                except queue.Empty:
                    pass

    def get(self, timeout: Optional[float] = None) -> Optional[Notification]:
        """Return the next notification, or None if none arrives in time."""
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> List[Notification]:
        """Return every queued notification without blocking."""
        items = []
        while True:
            try:
                items.append(self._queue.get_nowait())
            except queue.Empty:
                return items

    def close(self) -> None:
        self._bus.unsubscribe(self)


class NotificationBus:
    """Delivers notifications from background work to the UI and agent loop."""

    def __init__(self, history_size: int = 50):
        self._lock = threading.Lock()
        self._subscriptions: List[Subscription] = []
        self._history: deque = deque(maxlen=history_size)

    def publish(self, notification: Notification) -> None:
        """Deliver ``notification`` to every subscriber without blocking."""
        logger.debug("notification %s: %s", notification.kind.value, notification.message)
        with self._lock:
            self._history.append(notification)
            subscriptions = list(self._subscriptions)
        for subscription in subscriptions:
            subscription._offer(notification)

    def notify(
        self,
        kind: NotificationKind,
        message: str,
        source: Optional[str] = None,
        **data: Any,
    ) -> Notification:
        """Build and publish a notification."""
        notification = Notification(kind=kind, message=message, source=source, data=data)
        self.publish(notification)
        return notification

    def subscribe(self, maxsize: int = 256) -> Subscription:
        subscription = Subscription(self, maxsize)
        with self._lock:
            self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)
        subscription.closed = True

    def get_recent(self, limit: int = 10) -> List[Notification]:
        """Recent notifications, most recent last."""
        with self._lock:
            items = list(self._history)
        return items[-limit:]

    def latest(self) -> Optional[Notification]:
        with self._lock:
            return self._history[-1] if self._history else None
