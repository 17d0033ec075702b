"""
File Sink for StreamBot.

Writes every attempt's stream into one output file, truncated on join.
Concatenated MPEG-TS segments stay playable.
"""

import logging
import os
from typing import BinaryIO, Optional

from streambot.broadcast_core.cancellation import CancellationToken
from streambot.broadcast_core.errors import SinkError
from .base_sink import BaseSink

logger = logging.getLogger(__name__)


class FileSink(BaseSink):
    """Sink that records the published streams to a file."""

    def __init__(self, path: str, chunk_size: int = 64 * 1024):
        """
        Initialize file sink.

        Args:
            path: Output file path
            chunk_size: Read size for the pipeline stream
        """
        super().__init__(chunk_size)
        self.path = path
        self._file: Optional[BinaryIO] = None

    def _on_join(self, target: str) -> None:
        directory = os.path.dirname(self.path)
        try:
            if directory:
                os.makedirs(directory, exist_ok=True)
            self._file = open(self.path, "wb")
        except OSError as e:
            raise SinkError(f"Cannot open output file {self.path}: {e}") from e

    def _on_leave(self) -> None:
        if self._file is not None:
            try:
                self._file.close()
            except OSError as e:
                logger.warning(f"[SINK] Error closing {self.path}: {e}")
            self._file = None

    def publish(self, stream: BinaryIO, token: CancellationToken) -> None:
        if self._file is None:
            raise SinkError("FileSink is not joined")
        written = 0
        try:
            for chunk in self.iter_chunks(stream, token):
                self._file.write(chunk)
                written += len(chunk)
            self._file.flush()
        except OSError as e:
            raise SinkError(f"Write to {self.path} failed: {e}") from e
        logger.info(f"[SINK] Wrote {written} bytes to {self.path} (attempt {token.attempt_id})")

    def close(self) -> None:
        self.leave()
