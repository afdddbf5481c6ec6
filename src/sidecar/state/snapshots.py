"""Render-state snapshots and their delivery channel.

The orchestrator publishes a snapshot on every state transition. Delivery to
subscribers happens on a background thread that always hands over the most
recent snapshot, so a slow renderer sees fewer snapshots rather than slowing
the agent loop down.
"""

import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Tuple

from ..logging_config import get_logger
from .conversation import Turn
from .notifications import Notification

logger = get_logger(__name__)


class AgentState(str, Enum):
    """States of the agent loop."""
    IDLE = "idle"
    AWAITING_MODEL = "awaiting_model"
    DISPATCHING_TOOLS = "dispatching_tools"
    CANCELLING = "cancelling"


@dataclass(frozen=True)
class RenderSnapshot:
    """Everything a front end needs to draw the current screen."""
    revision: int
    state: AgentState
    turns: Tuple[Turn, ...]
    notification: Optional[Notification] = None
    active_processes: int = 0

    @property
    def pending(self) -> bool:
        return self.state != AgentState.IDLE


class SnapshotChannel:
    """Latest-value channel from the agent loop to renderers."""

    def __init__(self):
        self._lock = threading.Lock()
        self._wake = threading.Event()
        self._stop = threading.Event()
        self._latest: Optional[RenderSnapshot] = None
        self._delivered_revision = -1
        self._completed = threading.Condition()
        self._completed_revision = -1
        self._subscribers: List[Callable[[RenderSnapshot], None]] = []
        self._thread: Optional[threading.Thread] = None

    def publish(self, snapshot: RenderSnapshot) -> None:
        """Store ``snapshot`` as the latest and wake the delivery thread. Never blocks on subscribers."""
        with self._lock:
            if self._latest is None or snapshot.revision >= self._latest.revision:
                self._latest = snapshot
            self._ensure_thread()
        self._wake.set()

    @property
    def latest(self) -> Optional[RenderSnapshot]:
        with self._lock:
            return self._latest

    def subscribe(self, callback: Callable[[RenderSnapshot], None]) -> None:
        with self._lock:
            if callback not in self._subscribers:
                self._subscribers.append(callback)

    def unsubscribe(self, callback: Callable[[RenderSnapshot], None]) -> None:
        with self._lock:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Block until every subscriber has seen the latest snapshot."""
        with self._lock:
            target = self._latest.revision if self._latest is not None else -1
        with self._completed:
            return self._completed.wait_for(lambda: self._completed_revision >= target, timeout)

    def close(self) -> None:
        self._stop.set()
        self._wake.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=1.0)

    def _ensure_thread(self) -> None:
        if self._thread is None or not self._thread.is_alive():
            self._stop.clear()
            self._thread = threading.Thread(target=self._deliver_loop, name="snapshot-delivery", daemon=True)
            self._thread.start()

    def _deliver_loop(self) -> None:
        while not self._stop.is_set():
            self._wake.wait(timeout=0.5)
            self._wake.clear()
            with self._lock:
                snapshot = self._latest
                subscribers = list(self._subscribers)
            if snapshot is None or snapshot.revision <= self._delivered_revision:
                continue
            self._delivered_revision = snapshot.revision
            for callback in subscribers:
                try:
                    callback(snapshot)
                except Exception:
                    logger.exception("Snapshot subscriber failed")
            with self._completed:
                self._completed_revision = snapshot.revision
                self._completed.notify_all()
