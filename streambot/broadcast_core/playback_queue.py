"""
Playback Queue for StreamBot.

FIFO queue of QueueEntries in play order. The head is the entry currently
being attempted; it stays in the queue until its attempt concludes.
"""

import logging
import threading
from collections import deque
from typing import Any, Deque, List, Optional, Tuple

from streambot.broadcast_core.queue_entry import QueueEntry

logger = logging.getLogger(__name__)


class QueueStore:
    """
    FIFO queue of QueueEntries with head-guarded removal.

    Every operation runs under one lock. PlaybackController passes its own
    re-entrant lock in, so queue mutations and controller state decisions are
    mutually exclusive with each other.
    """

    def __init__(self, lock: Optional[Any] = None):
        """
        Initialize the queue.

        Args:
            lock: Lock shared with the owning controller (default: private RLock)
        """
        self._lock = lock if lock is not None else threading.RLock()
        self._queue: Deque[QueueEntry] = deque()

    def enqueue(self, entry: QueueEntry) -> None:
        """
        Add an entry to the end of the queue.

        Args:
            entry: QueueEntry to add
        """
        with self._lock:
            self._queue.append(entry)
            size = len(self._queue)
        logger.debug(f"[QUEUE] Enqueued: {entry.title!r} (requester={entry.requester}, size={size})")

    def enqueue_all(self, entries: List[QueueEntry]) -> None:
        """
        Add multiple entries to the end of the queue in one step.

        Maintains the order of the input list. No other operation can observe
        a partially appended batch.

        Args:
            entries: List of QueueEntries to add
        """
        with self._lock:
            self._queue.extend(entries)
            size = len(self._queue)
        logger.debug(f"[QUEUE] Enqueued {len(entries)} entries (size={size})")

    def peek_head(self) -> Optional[QueueEntry]:
        """
        Return the first entry without removing it.

        Returns:
            QueueEntry at the front of the queue, or None if the queue is empty
        """
        with self._lock:
            if not self._queue:
                return None
            return self._queue[0]

    def remove_if_head(self, entry: QueueEntry) -> bool:
        """
        Remove entry only if it is still the head of the queue.

        Compares by identity. A stop or external disconnect that cleared the
        queue while the attempt ran leaves nothing to remove, and a new entry
        that became head in the meantime is left alone.

        Args:
            entry: The entry whose attempt just concluded

        Returns:
            True if the entry was removed
        """
        with self._lock:
            if self._queue and self._queue[0] is entry:
                self._queue.popleft()
                logger.debug(f"[QUEUE] Removed head: {entry.title!r} (size={len(self._queue)})")
                return True
        logger.debug(f"[QUEUE] {entry.title!r} no longer head, nothing removed")
        return False

    def clear(self) -> int:
        """
        Remove all entries.

        Returns:
            Number of entries removed
        """
        with self._lock:
            removed = len(self._queue)
            self._queue.clear()
        logger.debug(f"[QUEUE] Cleared {removed} entries")
        return removed

    def size(self) -> int:
        with self._lock:
            return len(self._queue)

    def empty(self) -> bool:
        with self._lock:
            return not self._queue

    def snapshot(self, limit: int) -> Tuple[List[QueueEntry], int]:
        """
        Get the head plus up to `limit` following entries, and the total size.

        Args:
            limit: Maximum number of entries after the head to include

        Returns:
            (entries, total) where entries[0] is the head if the queue is non-empty
        """
        with self._lock:
            total = len(self._queue)
            entries = list(self._queue)[:max(0, limit) + 1]
        return entries, total

    def titles(self) -> List[str]:
        """Dump queue titles for debugging."""
        with self._lock:
            return [entry.title for entry in self._queue]
