"""
Per-attempt cancellation token.

A token is created by the playback loop when an attempt starts, signaled at
most once (skip, stop, external disconnect) and completed when the attempt
ends. Cancelling a completed token is a no-op, so a stale skip that races with
natural completion cannot affect the next attempt.
"""

import logging
import threading
from typing import Callable, List, Optional

from streambot.broadcast_core.errors import CancellationExpected

logger = logging.getLogger(__name__)


class CancellationToken:
    """Cooperative cancellation signal for one playback attempt."""

    def __init__(self, attempt_id: int = 0):
        self.attempt_id = attempt_id
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._completed = False
        self._reason: Optional[str] = None
        self._callbacks: List[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def completed(self) -> bool:
        return self._completed

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> bool:
        """
        Signal cancellation.

        Args:
            reason: Short label for logs ("skip", "stop", ...)

        Returns:
            True if this call signaled the token, False if it was already
            cancelled or the attempt had already completed.
        """
        with self._lock:
            if self._completed or self._event.is_set():
                logger.debug(
                    f"[CANCEL] Ignoring cancel for attempt {self.attempt_id} "
                    f"(completed={self._completed}, cancelled={self._event.is_set()})"
                )
                return False
            self._reason = reason
            self._event.set()
            callbacks = list(self._callbacks)
            self._callbacks.clear()

        logger.info(f"[CANCEL] Attempt {self.attempt_id} cancelled ({reason})")
        # Callbacks run outside the lock; they may block briefly on process signaling
        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                logger.error(f"[CANCEL] Cancellation callback failed: {e}", exc_info=True)
        return True

    def complete(self) -> None:
        """Close the token. Later cancel() calls become no-ops."""
        with self._lock:
            self._completed = True
            self._callbacks.clear()

    def add_callback(self, callback: Callable[[], None]) -> None:
        """
        Register a callback to run once on cancellation.

        If the token is already cancelled the callback runs immediately on the
        calling thread. Callbacks registered after complete() are dropped.
        """
        with self._lock:
            if self._completed:
                return
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CancellationExpected(f"attempt {self.attempt_id} cancelled ({self._reason})")

    def __repr__(self) -> str:
        return (
            f"CancellationToken(attempt_id={self.attempt_id}, cancelled={self.cancelled}, "
            f"completed={self._completed})"
        )
