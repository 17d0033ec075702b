"""
StreamBot orchestrator.

Wires configuration, sink, resolver, supervisor and controller together and
runs the frontends (HTTP control API, console reader).
"""

import logging
import sys
import threading
from typing import Optional, TextIO

from streambot.app.commands import CommandDispatcher
from streambot.app.http_server import ControlServer
from streambot.broadcast_core.ffmpeg_supervisor import EncodeOptions, ProcessSupervisor
from streambot.broadcast_core.playback_controller import Notifier, PlaybackController
from streambot.config import StreamConfig, get_global_config
from streambot.outputs import BaseSink, create_output_sink
from streambot.resolver import MediaResolver, YtDlpResolver

logger = logging.getLogger(__name__)


class ConsoleNotifier(Notifier):
    """Prints playback events to the console in addition to logging them."""

    def __init__(self, stream: Optional[TextIO] = None):
        self._stream = stream or sys.stdout
        self._lock = threading.Lock()

    def notify(self, emoji: str, title: str, description: str) -> None:
        super().notify(emoji, title, description)
        with self._lock:
            print(f"{emoji} {title}: {description}", file=self._stream, flush=True)


class StreamBot:
    """
    Top-level application object.

    Lifecycle: start() brings up the frontends; stop() shuts down the
    controller (cancelling playback and leaving the sink), the control API
    and the sink. stop() is idempotent.
    """

    def __init__(
        self,
        config: Optional[StreamConfig] = None,
        sink: Optional[BaseSink] = None,
        resolver: Optional[MediaResolver] = None,
        supervisor: Optional[ProcessSupervisor] = None,
        notifier: Optional[Notifier] = None,
    ):
        self.config = config or get_global_config()
        self.sink = sink or create_output_sink(self.config)
        self.resolver = resolver or YtDlpResolver(temp_dir=self.config.temp_dir)
        self.supervisor = supervisor or ProcessSupervisor(
            ffmpeg_bin=self.config.ffmpeg_bin,
            terminate_grace_sec=self.config.terminate_grace_sec,
        )
        self.notifier = notifier or ConsoleNotifier()

        self.controller = PlaybackController(
            self.supervisor,
            self.sink,
            self.resolver,
            sink_target=self.config.sink_target,
            encode_options=EncodeOptions.from_config(self.config),
            idle_disconnect_sec=self.config.idle_disconnect_sec,
            notifier=self.notifier,
            respect_video_params=self.config.respect_video_params,
            ffprobe_bin=self.config.ffprobe_bin,
        )
        self.sink.add_disconnect_listener(self.controller.on_sink_disconnected)
        self.dispatcher = CommandDispatcher(self.controller, self.resolver, prefix=self.config.prefix)

        self.control_server: Optional[ControlServer] = None
        if self.config.http_enabled:
            self.control_server = ControlServer(
                self.controller,
                self.resolver,
                host=self.config.http_host,
                port=self.config.http_port,
            )

        self.running = False
        self._stopped = False
        self._console_thread: Optional[threading.Thread] = None

    def start(self, console: bool = False) -> None:
        """
        Start the frontends.

        Args:
            console: Also read commands from stdin
        """
        if self.running:
            logger.warning("[BOT] Already running")
            return
        logger.info(
            f"[BOT] Starting (output={self.config.output_mode}, codec={self.config.video_codec}, "
            f"{self.config.width}x{self.config.height}@{self.config.fps})"
        )
        if self.control_server is not None:
            self.control_server.start()
        if console:
            self._console_thread = threading.Thread(target=self._console_loop, daemon=True, name="ConsoleReader")
            self._console_thread.start()
        self.running = True
        self.notifier.presence("Ready to play!")

    def stop(self) -> None:
        """Shut everything down. Safe to call more than once."""
        if self._stopped:
            return
        self._stopped = True
        logger.info("[BOT] Shutting down")
        try:
            self.controller.shutdown()
        finally:
            if self.control_server is not None:
                self.control_server.stop()
            self.sink.close()
            self.running = False
        logger.info("[BOT] Shutdown complete")

    def handle_command(self, content: str, requester: str = "console") -> bool:
        """Dispatch one command line, printing replies through the notifier."""
        return self.dispatcher.handle(content, requester, self.notifier.notify)

    def _console_loop(self) -> None:
        print(f"Type {self.config.prefix}help for commands.", flush=True)
        for line in sys.stdin:
            if not line.strip():
                continue
            if not self.handle_command(line):
                print(f"Unknown command. Type {self.config.prefix}help for commands.", flush=True)
        logger.info("[BOT] Console input closed")
        self.running = False
