"""
HTTP Push Sink for StreamBot.

POSTs each attempt's stream to an ingest URL using chunked transfer encoding.
"""

import logging
from typing import BinaryIO, Optional

import httpx

from streambot.broadcast_core.cancellation import CancellationToken
from streambot.broadcast_core.errors import SinkError
from .base_sink import BaseSink

logger = logging.getLogger(__name__)


class HTTPPushSink(BaseSink):
    """
    Sink that streams output to an HTTP ingest endpoint.

    One httpx.Client lives from join() to leave(). Each publish() is one
    streaming POST whose body ends when the pipeline's stdout reaches EOF or
    the attempt is cancelled. A stream dropped by the ingest mid-POST
    marks the sink disconnected and notifies its disconnect listeners.
    """

    def __init__(
        self,
        url: str,
        content_type: str = "video/mp2t",
        connect_timeout: float = 5.0,
        chunk_size: int = 64 * 1024,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """
        Initialize HTTP push sink.

        Args:
            url: Ingest URL receiving the POST body
            content_type: Content-Type header of the POST
            connect_timeout: Connect/write timeout in seconds (reads are unbounded)
            chunk_size: Read size for the pipeline stream
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        super().__init__(chunk_size)
        self.url = url
        self._transport = transport
        self.content_type = content_type
        self.connect_timeout = connect_timeout
        self._client: Optional[httpx.Client] = None

        # Suppress httpx INFO level logging (one line per request)
        logging.getLogger("httpx").setLevel(logging.WARNING)

    def _on_join(self, target: str) -> None:
        self._client = httpx.Client(
            timeout=httpx.Timeout(self.connect_timeout, read=None),
            headers={"X-Stream-Target": target},
            transport=self._transport,
        )
        logger.info(f"[SINK] HTTP push target {self.url}")

    def _on_leave(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def publish(self, stream: BinaryIO, token: CancellationToken) -> None:
        client = self._client
        if client is None:
            raise SinkError("HTTPPushSink is not joined")

        sent = 0

        def _body():
            nonlocal sent
            for chunk in self.iter_chunks(stream, token):
                sent += len(chunk)
                yield chunk

        try:
            response = client.post(
                self.url,
                content=_body(),
                headers={"Content-Type": self.content_type},
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            if token.cancelled:
                logger.debug(f"[SINK] HTTP push ended after cancellation: {e}")
                return
            logger.warning(f"[SINK] HTTP push to {self.url} failed after {sent} bytes: {e}")
            if self._is_connection_lost(e):
                self._mark_disconnected(str(e))
            raise SinkError(f"HTTP push to {self.url} failed: {e}") from e
        logger.info(f"[SINK] Pushed {sent} bytes to {self.url} (status {response.status_code})")

    @staticmethod
    def _is_connection_lost(error: httpx.HTTPError) -> bool:
        # A refused connect is a per-attempt failure; a dropped stream means the ingest went away
        if isinstance(error, httpx.ConnectError):
            return False
        return isinstance(error, (httpx.NetworkError, httpx.RemoteProtocolError))

    def close(self) -> None:
        self.leave()
