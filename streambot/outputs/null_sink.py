import logging
from typing import BinaryIO

from streambot.broadcast_core.cancellation import CancellationToken
from .base_sink import BaseSink

logger = logging.getLogger(__name__)


class NullSink(BaseSink):
    """A sink that discards all output. Useful for dry runs and long-running tests."""

    def __init__(self, chunk_size: int = 64 * 1024):
        super().__init__(chunk_size)
        self.bytes_published = 0

    def publish(self, stream: BinaryIO, token: CancellationToken) -> None:
        total = 0
        for chunk in self.iter_chunks(stream, token):
            total += len(chunk)
        self.bytes_published += total
        logger.debug(f"[SINK] NullSink discarded {total} bytes (attempt {token.attempt_id})")

    def close(self) -> None:
        self.leave()
