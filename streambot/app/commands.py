"""
Prefix command dispatcher for StreamBot.

Parses "<prefix><command> <args>" messages and maps them onto the playback
controller. Replies are (emoji, title, description) triples handed to a reply
callback supplied by the frontend (console, chat bridge, tests).
"""

import logging
from typing import Callable, Dict

from streambot.broadcast_core.errors import (
    CapabilityUnsupportedError,
    InvalidStateError,
    ResolutionError,
    RestrictedContentError,
)
from streambot.broadcast_core.playback_controller import PlaybackController, QueueSnapshot

logger = logging.getLogger(__name__)

Reply = Callable[[str, str, str], None]

QUEUE_PREVIEW_LIMIT = 10


def format_queue(snapshot: QueueSnapshot) -> str:
    """Render a queue snapshot the way the queue command shows it."""
    if snapshot.now_playing is not None:
        now_playing = snapshot.now_playing
        header = f"**Now Playing:** `{now_playing.title}` (Requested by {now_playing.requester or 'unknown'})"
    else:
        header = "**Now Playing:** nothing yet"
    up_next = "\n".join(f"{index}. `{entry.title}`" for index, entry in enumerate(snapshot.up_next, start=1))
    return (
        f"{header}\n\n"
        f"**Up Next:**\n{up_next or 'Nothing else in the queue.'}\n\n"
        f"Total in queue: {snapshot.total}"
    )


class CommandDispatcher:
    """
    Maps prefix commands onto PlaybackController calls.

    Unknown commands and messages without the prefix are ignored.
    """

    def __init__(self, controller: PlaybackController, resolver, prefix: str = "$"):
        """
        Initialize dispatcher.

        Args:
            controller: Playback controller receiving the commands
            resolver: MediaResolver used by the play command
            prefix: Command prefix
        """
        self.controller = controller
        self.resolver = resolver
        self.prefix = prefix
        self._commands: Dict[str, Callable[[str, str, Reply], None]] = {
            "play": self._play,
            "pause": self._pause,
            "resume": self._resume,
            "skip": self._skip,
            "stop": self._stop,
            "queue": self._queue,
            "playlist": self._queue,
            "status": self._status,
            "help": self._help,
        }

    def handle(self, content: str, requester: str, reply: Reply) -> bool:
        """
        Dispatch one message.

        Args:
            content: Raw message text
            requester: Name of the sender
            reply: Callback receiving (emoji, title, description)

        Returns:
            True if the message was a known command
        """
        content = (content or "").strip()
        if not content.startswith(self.prefix):
            return False

        name, _, args = content[len(self.prefix):].partition(" ")
        handler = self._commands.get(name.strip().lower())
        if handler is None:
            return False

        logger.info(f"[COMMAND] {requester}: {content}")
        try:
            handler(args.strip(), requester, reply)
        except Exception as e:
            logger.error(f"[COMMAND] Error on {name}: {e}", exc_info=True)
            reply("❌", "Error", f"Could not process your request: {e}")
        return True

    def _play(self, args: str, requester: str, reply: Reply) -> None:
        if not args:
            reply("❌", "Error", "Please provide a search query or a link.")
            return
        try:
            entries = self.resolver.resolve(args, requester)
        except RestrictedContentError:
            reply("🔒", "Member-Only Video", "This video is for channel members only and cannot be played.")
            return
        except ResolutionError as e:
            logger.error(f"[COMMAND] Error on play: {e}")
            reply("❌", "Error", f"Could not process your request: {e}")
            return

        self.controller.enqueue(entries)
        if len(entries) == 1:
            reply("👍", "Added to Queue", f"`{entries[0].title}`")
        else:
            reply("👍", "Playlist Added", f"Added **{len(entries)}** videos to the queue.")

    def _pause(self, args: str, requester: str, reply: Reply) -> None:
        try:
            self.controller.pause()
        except CapabilityUnsupportedError:
            reply("⚠️", "Not Supported", "The pause feature is not supported on this platform.")
        except InvalidStateError as e:
            reply("❌", "Error", str(e))
        else:
            reply("⏸️", "Paused", "Playback is paused.")

    def _resume(self, args: str, requester: str, reply: Reply) -> None:
        try:
            self.controller.resume()
        except CapabilityUnsupportedError:
            reply("⚠️", "Not Supported", "The resume feature is not supported on this platform.")
        except InvalidStateError as e:
            reply("❌", "Error", str(e))
        else:
            reply("▶️", "Resumed", "Playback is resumed.")

    def _skip(self, args: str, requester: str, reply: Reply) -> None:
        title = self.controller.skip()
        if title is None:
            reply("❌", "Error", "Nothing to skip.")
        else:
            reply("⏭️", "Skipped", f"Skipped `{title}`.")

    def _stop(self, args: str, requester: str, reply: Reply) -> None:
        try:
            self.controller.stop()
        except InvalidStateError:
            reply("❌", "Error", "Not connected to the output.")
        else:
            reply("⏹️", "Stopped", "Playback stopped and queue cleared.")

    def _queue(self, args: str, requester: str, reply: Reply) -> None:
        snapshot = self.controller.queue_snapshot(QUEUE_PREVIEW_LIMIT)
        if snapshot.total == 0:
            reply("ℹ️", "Playlist", "The queue is empty.")
            return
        reply("📋", "Current Playlist", format_queue(snapshot))

    def _status(self, args: str, requester: str, reply: Reply) -> None:
        status = self.controller.status()
        reply(
            "ℹ️",
            "Status",
            f"**Status:** {status.label}\n"
            f"**Current Song:** `{status.current_title or 'N/A'}`\n"
            f"**Queue Length:** {status.queue_length}",
        )

    def _help(self, args: str, requester: str, reply: Reply) -> None:
        p = self.prefix
        reply(
            "ℹ️",
            "StreamBot Commands",
            "\n".join([
                f"`{p}play <youtube_link|playlist_link|direct_link|search_query>` - Plays or queues a video/playlist.",
                f"`{p}pause` - Pauses the current video. (Not supported on Windows)",
                f"`{p}resume` - Resumes the paused video. (Not supported on Windows)",
                f"`{p}skip` - Skips the current video.",
                f"`{p}stop` - Stops playback, clears the queue, and disconnects.",
                f"`{p}playlist` - Shows the current video queue.",
                f"`{p}status` - Shows the current playback status.",
                f"`{p}help` - Shows this help message.",
            ]),
        )
