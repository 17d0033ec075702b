"""
Broadcast Core module for StreamBot.

This package contains the playback controller, queue, cancellation tokens,
idle-disconnect scheduling and the ffmpeg pipeline supervisor.
"""

from streambot.broadcast_core.cancellation import CancellationToken
from streambot.broadcast_core.disconnect_scheduler import DisconnectScheduler
from streambot.broadcast_core.ffmpeg_supervisor import (
    EncodeOptions,
    ExitKind,
    ExitStatus,
    ProcessHandle,
    ProcessSupervisor,
    SignalResult,
)
from streambot.broadcast_core.playback_controller import (
    Notifier,
    PlaybackController,
    PlaybackState,
    PlaybackStatus,
    QueueSnapshot,
)
from streambot.broadcast_core.playback_queue import QueueStore
from streambot.broadcast_core.queue_entry import EntryKind, QueueEntry

__all__ = [
    "CancellationToken",
    "DisconnectScheduler",
    "EncodeOptions",
    "EntryKind",
    "ExitKind",
    "ExitStatus",
    "Notifier",
    "PlaybackController",
    "PlaybackState",
    "PlaybackStatus",
    "ProcessHandle",
    "ProcessSupervisor",
    "QueueEntry",
    "QueueSnapshot",
    "QueueStore",
    "SignalResult",
]
