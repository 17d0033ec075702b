"""
HTTP control API for StreamBot.

JSON endpoints mapping onto the playback controller:

    GET  /status            current state, title and queue length
    GET  /queue?limit=N     now playing, up next and total
    POST /play              {"query": "...", "requester": "..."}
    POST /skip | /pause | /resume | /stop
"""

import json
import logging
import socketserver
import threading
from http.server import BaseHTTPRequestHandler
from typing import Any, Dict, Optional
from urllib.parse import parse_qs, urlparse

from streambot.broadcast_core.errors import (
    CapabilityUnsupportedError,
    InvalidStateError,
    ResolutionError,
    RestrictedContentError,
)
from streambot.broadcast_core.playback_controller import PlaybackController
from streambot.broadcast_core.queue_entry import QueueEntry

logger = logging.getLogger(__name__)

MAX_BODY_BYTES = 64 * 1024


def entry_to_dict(entry: Optional[QueueEntry]) -> Optional[Dict[str, Any]]:
    if entry is None:
        return None
    return {
        "id": str(entry.entry_id),
        "title": entry.title,
        "source": entry.source,
        "kind": entry.kind.value,
        "is_live": entry.is_live,
        "requester": entry.requester,
    }


class ControlRequestHandler(BaseHTTPRequestHandler):
    """
    HTTP request handler for the control API.

    controller and resolver are bound per server by create_handler_class().
    """

    controller: PlaybackController = None
    resolver = None

    def do_GET(self):
        """Handle GET requests."""
        parsed = urlparse(self.path)
        if parsed.path == "/status":
            self._handle_status()
        elif parsed.path == "/queue":
            self._handle_queue(parse_qs(parsed.query))
        else:
            self._send_json(404, {"error": "Not Found"})

    def do_POST(self):
        """Handle POST requests."""
        path = urlparse(self.path).path
        if path == "/play":
            self._handle_play()
        elif path == "/skip":
            title = self.controller.skip()
            self._send_json(200, {"skipped": title})
        elif path == "/pause":
            self._handle_pause_resume(self.controller.pause, "paused")
        elif path == "/resume":
            self._handle_pause_resume(self.controller.resume, "resumed")
        elif path == "/stop":
            try:
                cleared = self.controller.stop()
            except InvalidStateError as e:
                self._send_json(409, {"error": str(e)})
                return
            self._send_json(200, {"stopped": True, "cleared": cleared})
        else:
            self._send_json(404, {"error": "Not Found"})

    def _handle_status(self):
        status = self.controller.status()
        self._send_json(200, {
            "state": status.state.value,
            "label": status.label,
            "current_title": status.current_title,
            "current_requester": status.current_requester,
            "queue_length": status.queue_length,
        })

    def _handle_queue(self, query: Dict[str, list]):
        try:
            limit = int(query.get("limit", ["10"])[0])
        except ValueError:
            self._send_json(400, {"error": "limit must be an integer"})
            return
        snapshot = self.controller.queue_snapshot(max(0, limit))
        self._send_json(200, {
            "now_playing": entry_to_dict(snapshot.now_playing),
            "up_next": [entry_to_dict(entry) for entry in snapshot.up_next],
            "total": snapshot.total,
        })

    def _handle_play(self):
        body = self._read_json()
        if body is None:
            return
        query = body.get("query")
        if not isinstance(query, str) or not query.strip():
            self._send_json(400, {"error": "query is required"})
            return
        requester = str(body.get("requester") or "http")

        try:
            entries = self.resolver.resolve(query, requester)
        except RestrictedContentError as e:
            self._send_json(403, {"error": str(e), "restricted": True})
            return
        except ResolutionError as e:
            self._send_json(422, {"error": str(e)})
            return

        try:
            queue_length = self.controller.enqueue(entries)
        except InvalidStateError as e:
            self._send_json(409, {"error": str(e)})
            return
        self._send_json(200, {
            "added": [entry_to_dict(entry) for entry in entries],
            "queue_length": queue_length,
        })

    def _handle_pause_resume(self, action, key: str):
        try:
            title = action()
        except CapabilityUnsupportedError as e:
            self._send_json(501, {"error": str(e)})
            return
        except InvalidStateError as e:
            self._send_json(409, {"error": str(e)})
            return
        self._send_json(200, {key: title})

    def _read_json(self) -> Optional[Dict[str, Any]]:
        try:
            length = int(self.headers.get("Content-Length", "0"))
        except ValueError:
            length = -1
        if length < 0 or length > MAX_BODY_BYTES:
            self._send_json(400, {"error": "Invalid Content-Length"})
            return None
        raw = self.rfile.read(length) if length else b""
        try:
            body = json.loads(raw.decode("utf-8")) if raw else {}
        except (UnicodeDecodeError, json.JSONDecodeError):
            self._send_json(400, {"error": "Body must be JSON"})
            return None
        if not isinstance(body, dict):
            self._send_json(400, {"error": "Body must be a JSON object"})
            return None
        return body

    def _send_json(self, status: int, data: Any) -> None:
        payload = json.dumps(data).encode("utf-8")
        try:
            self.send_response(status)
            self.send_header("Content-Type", "application/json")
            self.send_header("Cache-Control", "no-cache")
            self.send_header("Content-Length", str(len(payload)))
            self.end_headers()
            self.wfile.write(payload)
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.debug(f"[HTTP] Client went away before response: {e}")

    def log_message(self, format, *args):
        """Override to use our logger instead of stderr."""
        logger.debug(f"[HTTP] {self.address_string()} - {format % args}")


def create_handler_class(controller: PlaybackController, resolver):
    """
    Create a handler class with the controller and resolver bound.

    Args:
        controller: PlaybackController instance
        resolver: MediaResolver instance

    Returns:
        Handler class with controller and resolver set
    """
    class Handler(ControlRequestHandler):
        pass

    Handler.controller = controller
    Handler.resolver = resolver
    return Handler


class ThreadingHTTPServer(socketserver.ThreadingMixIn, socketserver.TCPServer):
    """
    Threaded HTTP server for handling multiple concurrent connections.

    Uses ThreadingMixIn to handle each request in a separate thread.
    """
    allow_reuse_address = True
    daemon_threads = True


class ControlServer:
    """Runs the control API on a background thread."""

    def __init__(self, controller: PlaybackController, resolver, host: str = "127.0.0.1", port: int = 8010):
        """
        Initialize control server.

        Args:
            controller: PlaybackController instance
            resolver: MediaResolver instance
            host: Bind address
            port: Bind port (0 picks an ephemeral port)
        """
        self.controller = controller
        self.resolver = resolver
        self.host = host
        self.port = port
        self._server: Optional[ThreadingHTTPServer] = None
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._server is not None:
            logger.warning("[HTTP] Control server already started")
            return
        handler_class = create_handler_class(self.controller, self.resolver)
        self._server = ThreadingHTTPServer((self.host, self.port), handler_class)
        self.port = self._server.server_address[1]
        self._thread = threading.Thread(target=self._server.serve_forever, daemon=True, name="ControlServer")
        self._thread.start()
        logger.info(f"[HTTP] Control API listening on http://{self.host}:{self.port}")

    def stop(self) -> None:
        if self._server is None:
            return
        self._server.shutdown()
        self._server.server_close()
        if self._thread is not None:
            self._thread.join(timeout=5.0)
        self._server = None
        self._thread = None
        logger.info("[HTTP] Control API stopped")
