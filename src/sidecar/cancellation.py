"""Cooperative cancellation tokens shared between the agent loop and workers."""

import threading
from typing import Callable, Optional

from .errors import Cancelled


class CancellationToken:
    """A thread-safe, one-shot cancellation flag.

    Child tokens are cancelled when their parent is, but cancelling a child
    leaves the parent untouched. Callbacks registered with ``on_cancel`` run
    once, on the thread that cancels.
    """

    def __init__(self, parent: Optional["CancellationToken"] = None):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[], None]] = []
        self._reason: Optional[str] = None
        if parent is not None:
            parent.on_cancel(lambda: self.cancel(parent.reason or "cancelled"))

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._reason = reason
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback()

    def on_cancel(self, callback: Callable[[], None]) -> None:
        """Run ``callback`` on cancellation, immediately if already cancelled."""
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until cancelled or ``timeout`` elapses. Returns the flag."""
        return self._event.wait(timeout)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise Cancelled(f"Operation cancelled ({self._reason})")

    def child(self) -> "CancellationToken":
        return CancellationToken(parent=self)
