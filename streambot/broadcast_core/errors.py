"""
Error taxonomy for StreamBot playback.

Per-entry failures (resolution, pipeline start, pipeline runtime) are reported
once and the playback loop advances. CancellationExpected marks an attempt that
ended because its token was cancelled and is never reported as a failure.
"""

from typing import Optional


class StreamBotError(Exception):
    """Base class for all StreamBot errors."""


class ResolutionError(StreamBotError):
    """The resolver could not produce a playable input for a query or entry."""


class RestrictedContentError(ResolutionError):
    """The content exists but access is denied (members-only, private)."""


class PipelineStartError(StreamBotError):
    """The ffmpeg pipeline process could not be launched."""


class PipelineRuntimeError(StreamBotError):
    """
    The ffmpeg pipeline exited abnormally without being cancelled.

    Attributes:
        returncode: Process exit code (negative for signals on POSIX)
        stderr_tail: Last lines ffmpeg wrote to stderr
    """

    def __init__(self, message: str, returncode: Optional[int] = None, stderr_tail: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.stderr_tail = stderr_tail


class CancellationExpected(StreamBotError):
    """The attempt's cancellation token was signaled (skip/stop)."""


class CapabilityUnsupportedError(StreamBotError):
    """Pause/resume requested on a platform without process suspend support."""


class InvalidStateError(StreamBotError):
    """A command is not valid in the current playback state."""


class SinkError(StreamBotError):
    """The output sink failed to join, publish or leave."""


class CleanupWarning(UserWarning):
    """A transient input file could not be deleted. Logged, never raised."""
