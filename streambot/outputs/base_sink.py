"""
Base output sink for StreamBot.

A sink is joined once per session, receives one stream per playback attempt
through publish(), and is left when playback stops or the idle timer fires.
"""

import logging
import threading
from abc import ABC, abstractmethod
from typing import BinaryIO, Callable, Iterator, List, Optional

from streambot.broadcast_core.cancellation import CancellationToken

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 64 * 1024


class BaseSink(ABC):
    """
    Abstract base class for all output sinks.

    Subclasses implement publish() and close(); join() and leave() track the
    joined flag and call the _on_join()/_on_leave() hooks.
    """

    def __init__(self, chunk_size: int = DEFAULT_CHUNK_SIZE):
        self.chunk_size = chunk_size
        self._joined = False
        self._target: Optional[str] = None
        self._lock = threading.Lock()
        self._disconnect_listeners: List[Callable[[], None]] = []

    @property
    def joined(self) -> bool:
        with self._lock:
            return self._joined

    @property
    def target(self) -> Optional[str]:
        return self._target

    def join(self, target: str) -> None:
        """
        Connect to target.

        Raises:
            SinkError: The sink could not connect
        """
        with self._lock:
            if self._joined:
                logger.debug(f"[SINK] Already joined {self._target!r}")
                return
        self._on_join(target)
        with self._lock:
            self._joined = True
            self._target = target
        logger.info(f"[SINK] {type(self).__name__} joined {target!r}")

    def leave(self) -> None:
        """Disconnect. A no-op if not joined."""
        with self._lock:
            if not self._joined:
                return
            self._joined = False
        self._on_leave()
        logger.info(f"[SINK] {type(self).__name__} left {self._target!r}")

    def add_disconnect_listener(self, listener: Callable[[], None]) -> None:
        """Register listener(), called when the sink loses its target without leave()."""
        with self._lock:
            self._disconnect_listeners.append(listener)

    def _mark_disconnected(self, reason: str) -> None:
        """
        Drop the joined state after the transport was lost and notify listeners.

        Called by subclasses from publish(). A no-op if not joined.
        """
        with self._lock:
            if not self._joined:
                return
            self._joined = False
            listeners = list(self._disconnect_listeners)
        logger.warning(f"[SINK] {type(self).__name__} lost {self._target!r}: {reason}")
        try:
            self._on_leave()
        except Exception as e:
            logger.warning(f"[SINK] Error releasing {type(self).__name__} after disconnect: {e}")
        for listener in listeners:
            try:
                listener()
            except Exception as e:
                logger.error(f"[SINK] Disconnect listener failed: {e}", exc_info=True)

    def _on_join(self, target: str) -> None:
        return

    def _on_leave(self) -> None:
        return

    def iter_chunks(self, stream: BinaryIO, token: CancellationToken) -> Iterator[bytes]:
        """Yield stream chunks until EOF or until token is cancelled."""
        while not token.cancelled:
            chunk = stream.read(self.chunk_size)
            if not chunk:
                return
            yield chunk

    @abstractmethod
    def publish(self, stream: BinaryIO, token: CancellationToken) -> None:
        """
        Forward one attempt's stream until EOF or cancellation.

        Args:
            stream: Pipeline stdout
            token: The attempt's cancellation token

        Raises:
            SinkError: The sink failed while forwarding
        """
        ...

    @abstractmethod
    def close(self) -> None:
        """
        Close the output sink and release resources.
        """
        ...
