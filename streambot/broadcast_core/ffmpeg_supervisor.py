"""
FFmpeg Supervisor for StreamBot playback.

This module provides ProcessSupervisor, which launches one ffmpeg pipeline per
playback attempt, forwards its stdout to the caller, and owns the process
lifecycle: cancellation, suspend/resume, exit classification and cleanup of
transient input files.

INVARIANT: At most one pipeline process is active at any time. start() refuses
to launch while the previous handle's process is still running.
"""

import dataclasses
import enum
import json
import logging
import os
import signal
import subprocess
import threading
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from typing import BinaryIO, Callable, Deque, Dict, Any, List, Optional, Tuple

from streambot.broadcast_core.cancellation import CancellationToken
from streambot.broadcast_core.errors import (
    CancellationExpected,
    CleanupWarning,
    PipelineStartError,
)

logger = logging.getLogger(__name__)

# Process groups are only available on POSIX; elsewhere we signal the process itself
_HAS_PROCESS_GROUPS = hasattr(os, "killpg") and hasattr(os, "getpgid")

# Grace period between SIGTERM and SIGKILL
DEFAULT_TERMINATE_GRACE_SEC = 2.0

# Bounded stderr tail kept per process for error reports
STDERR_TAIL_LINES = 20

# Encoder names per configured codec
VIDEO_CODEC_ENCODERS: Dict[str, str] = {
    "H264": "libx264",
    "H265": "libx265",
    "VP8": "libvpx",
    "VP9": "libvpx-vp9",
    "AV1": "libsvtav1",
    "H264_NVENC": "h264_nvenc",
    "HEVC_NVENC": "hevc_nvenc",
}

# Codecs MPEG-TS cannot carry go into Matroska instead
_MATROSKA_CODECS = {"VP8", "VP9", "AV1"}

# Only the x26x software encoders understand the ultrafast..veryslow preset names
_PRESET_ENCODERS = {"libx264", "libx265"}


@dataclass(frozen=True)
class EncodeOptions:
    """
    Encoding parameters for one pipeline run.

    Attributes:
        width: Output width in pixels
        height: Output height in pixels
        fps: Output frame rate
        bitrate_kbps: Target video bitrate
        max_bitrate_kbps: Peak video bitrate
        video_codec: One of VIDEO_CODEC_ENCODERS keys
        preset: x264/x265 speed preset
        hardware_acceleration: Enable hardware-accelerated decoding
        read_realtime: Read input at native rate (-re); off for live inputs
        audio_bitrate: Audio bitrate string for ffmpeg
    """
    width: int = 1280
    height: int = 720
    fps: int = 30
    bitrate_kbps: int = 2000
    max_bitrate_kbps: int = 2500
    video_codec: str = "H264"
    preset: str = "ultrafast"
    hardware_acceleration: bool = False
    read_realtime: bool = True
    audio_bitrate: str = "128k"

    @classmethod
    def from_config(cls, config) -> "EncodeOptions":
        return cls(
            width=config.width,
            height=config.height,
            fps=config.fps,
            bitrate_kbps=config.bitrate_kbps,
            max_bitrate_kbps=config.max_bitrate_kbps,
            video_codec=config.video_codec,
            preset=config.h26x_preset,
            hardware_acceleration=config.hardware_acceleration,
        )

    @property
    def video_encoder(self) -> str:
        return VIDEO_CODEC_ENCODERS.get(self.video_codec, "libx264")

    @property
    def container(self) -> str:
        return "matroska" if self.video_codec in _MATROSKA_CODECS else "mpegts"

    def capped_to(self, params: Optional[Dict[str, Any]]) -> "EncodeOptions":
        """
        Cap size and frame rate to the source's own parameters.

        Args:
            params: Result of probe_video_params(), or None

        Returns:
            New EncodeOptions never exceeding the source's width/height/fps
        """
        if not params:
            return self
        width = params.get("width") or self.width
        height = params.get("height") or self.height
        fps = params.get("fps") or self.fps
        return dataclasses.replace(
            self,
            width=min(self.width, int(width)),
            height=min(self.height, int(height)),
            fps=max(1, min(self.fps, int(round(fps)))),
        )


def build_ffmpeg_cmd(input_source: str, options: EncodeOptions, ffmpeg_bin: str = "ffmpeg") -> List[str]:
    """
    Build the ffmpeg command that transcodes input_source to a sink-ready stream on stdout.

    Args:
        input_source: Local path or URL
        options: Encoding parameters
        ffmpeg_bin: ffmpeg executable

    Returns:
        Command list suitable for subprocess.Popen
    """
    cmd = [ffmpeg_bin, "-hide_banner", "-nostdin", "-loglevel", "warning"]

    if options.hardware_acceleration:
        cmd += ["-hwaccel", "auto"]

    if options.read_realtime:
        cmd += ["-re"]

    if input_source.startswith(("http://", "https://")):
        cmd += ["-reconnect", "1", "-reconnect_streamed", "1", "-reconnect_delay_max", "5"]

    cmd += ["-i", input_source, "-map", "0:v:0?", "-map", "0:a:0?"]

    cmd += [
        "-vf", f"scale={options.width}:{options.height}:force_original_aspect_ratio=decrease:force_divisible_by=2",
        "-r", str(options.fps),
        "-c:v", options.video_encoder,
    ]
    if options.video_encoder in _PRESET_ENCODERS:
        cmd += ["-preset", options.preset]

    cmd += [
        "-b:v", f"{options.bitrate_kbps}k",
        "-maxrate", f"{options.max_bitrate_kbps}k",
        "-bufsize", f"{options.max_bitrate_kbps * 2}k",
        "-g", str(options.fps * 2),
        "-pix_fmt", "yuv420p",
    ]

    audio_codec = "libopus" if options.container == "matroska" else "aac"
    cmd += [
        "-c:a", audio_codec,
        "-b:a", options.audio_bitrate,
        "-ar", "48000",
        "-ac", "2",
        "-f", options.container,
        "pipe:1",
    ]
    return cmd


def probe_video_params(path: str, ffprobe_bin: str = "ffprobe") -> Optional[Dict[str, Any]]:
    """
    Get width, height, fps and bitrate of the first video stream using ffprobe.

    Returns None if ffprobe fails or the file has no video stream.

    Args:
        path: Local media file
        ffprobe_bin: ffprobe executable

    Returns:
        Dictionary with keys width, height, fps, bitrate (bitrate may be None)
    """
    cmd = [
        ffprobe_bin,
        "-v", "error",
        "-select_streams", "v:0",
        "-show_entries", "stream=width,height,r_frame_rate,avg_frame_rate,bit_rate",
        "-of", "json",
        path,
    ]
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, timeout=5.0)
    except (subprocess.TimeoutExpired, FileNotFoundError, OSError) as e:
        logger.warning(f"[FFPROBE] Probe failed for {path}: {e}")
        return None

    if result.returncode != 0 or not result.stdout.strip():
        logger.warning(f"[FFPROBE] Probe returned no data for {path} (exit={result.returncode})")
        return None

    try:
        streams = json.loads(result.stdout).get("streams", [])
    except json.JSONDecodeError as e:
        logger.warning(f"[FFPROBE] Unparseable probe output for {path}: {e}")
        return None

    if not streams or not streams[0].get("width") or not streams[0].get("height"):
        return None

    stream = streams[0]
    fps = 0.0
    rate = stream.get("r_frame_rate") or stream.get("avg_frame_rate")
    if rate and "/" in rate:
        numerator, denominator = (float(x) for x in rate.split("/", 1))
        fps = numerator / denominator if denominator > 0 else 0.0

    bitrate = stream.get("bit_rate")
    return {
        "width": int(stream["width"]),
        "height": int(stream["height"]),
        "fps": fps,
        "bitrate": int(bitrate) if bitrate and str(bitrate).isdigit() else None,
    }


class Pausable(ABC):
    """Process suspend/continue capability for the host platform."""

    @abstractmethod
    def supported(self) -> bool:
        ...

    @abstractmethod
    def suspend(self, process: subprocess.Popen) -> bool:
        """Suspend process. Returns False if the process is already gone."""
        ...

    @abstractmethod
    def resume(self, process: subprocess.Popen) -> bool:
        """Continue process. Returns False if the process is already gone."""
        ...


class PosixPausable(Pausable):
    """SIGSTOP/SIGCONT on the pipeline's process group."""

    def supported(self) -> bool:
        return True

    def suspend(self, process: subprocess.Popen) -> bool:
        return _signal_process(process, signal.SIGSTOP)

    def resume(self, process: subprocess.Popen) -> bool:
        return _signal_process(process, signal.SIGCONT)


class UnsupportedPausable(Pausable):
    """Stub for platforms without process suspend (Windows)."""

    def supported(self) -> bool:
        return False

    def suspend(self, process: subprocess.Popen) -> bool:
        return False

    def resume(self, process: subprocess.Popen) -> bool:
        return False


def default_pausable() -> Pausable:
    """Pick the pause capability for the running platform."""
    if os.name == "posix" and hasattr(signal, "SIGSTOP") and hasattr(signal, "SIGCONT"):
        return PosixPausable()
    return UnsupportedPausable()


def _signal_process(process: subprocess.Popen, sig: int) -> bool:
    """
    Send sig to the process group (POSIX) or the process itself.

    Returns:
        False if the process no longer exists
    """
    if process.poll() is not None:
        return False
    try:
        if _HAS_PROCESS_GROUPS:
            os.killpg(os.getpgid(process.pid), sig)
        elif sig == getattr(signal, "SIGKILL", None):
            process.kill()
        else:
            process.terminate()
        return True
    except ProcessLookupError:
        logger.debug(f"[FFMPEG] Process already exited while signaling (pid={process.pid})")
        return False


class SignalResult(enum.Enum):
    """Outcome of try_suspend() / try_resume()."""
    OK = "ok"
    UNSUPPORTED = "unsupported"
    NOT_RUNNING = "not_running"


class ExitKind(enum.Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass(frozen=True)
class ExitStatus:
    """How a pipeline process ended."""
    kind: ExitKind
    returncode: Optional[int]
    stderr_tail: str = ""

    @property
    def failed(self) -> bool:
        return self.kind == ExitKind.FAILED


class ProcessHandle:
    """
    One running pipeline process.

    Owned by exactly one playback attempt. Caches the ExitStatus once the
    process has been reaped.
    """

    def __init__(self, attempt_id: int, process: subprocess.Popen, token: CancellationToken, input_source: str):
        self.attempt_id = attempt_id
        self.process = process
        self.token = token
        self.input_source = input_source
        self.suspended = False
        self.cancel_requested = False
        self.exit_status: Optional[ExitStatus] = None
        self._stderr_tail: Deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        self._stderr_thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def stdout(self) -> Optional[BinaryIO]:
        return self.process.stdout

    def running(self) -> bool:
        return self.process.poll() is None

    def stderr_tail(self) -> str:
        return "\n".join(self._stderr_tail)

    def start_stderr_drain(self) -> None:
        if self.process.stderr is None:
            return
        self._stderr_thread = threading.Thread(
            target=self._stderr_drain,
            daemon=True,
            name=f"FFmpegStderrDrain-{self.attempt_id}",
        )
        self._stderr_thread.start()

    def join_stderr_drain(self, timeout: float = 1.0) -> None:
        if self._stderr_thread is not None and self._stderr_thread.is_alive():
            self._stderr_thread.join(timeout=timeout)

    def close_pipes(self) -> None:
        """Close the stdout/stderr pipes of a reaped process."""
        for pipe in (self.process.stdout, self.process.stderr):
            if pipe is None:
                continue
            try:
                pipe.close()
            except OSError as e:
                logger.debug(f"[FFMPEG] Error closing pipe (pid={self.pid}): {e}")

    def _stderr_drain(self) -> None:
        """Log each ffmpeg stderr line with [FFMPEG] prefix until stderr closes."""
        stderr = self.process.stderr
        try:
            for raw_line in iter(stderr.readline, b""):
                line = raw_line.decode(errors="ignore").rstrip()
                if not line:
                    continue
                self._stderr_tail.append(line)
                logger.warning(f"[FFMPEG] {line}")
        except (OSError, ValueError) as e:
            logger.debug(f"[FFMPEG] Stderr read error (likely closed): {e}")
        logger.debug(f"[FFMPEG] Stderr drain exiting (pid={self.pid})")

    def __repr__(self) -> str:
        return f"ProcessHandle(attempt_id={self.attempt_id}, pid={self.pid}, running={self.running()})"


class ProcessSupervisor:
    """
    Launches and supervises one ffmpeg pipeline per playback attempt.

    Lifecycle per attempt:
    1. start() launches ffmpeg in its own process group and hooks the attempt's
       cancellation token to cancel()
    2. The caller forwards the returned stdout to the sink
    3. await_exit() reaps the process and classifies the exit
    4. cleanup_transient_file() deletes any downloaded input after exit
    """

    def __init__(
        self,
        ffmpeg_bin: str = "ffmpeg",
        pausable: Optional[Pausable] = None,
        command_builder: Optional[Callable[[str, EncodeOptions], List[str]]] = None,
        terminate_grace_sec: float = DEFAULT_TERMINATE_GRACE_SEC,
    ) -> None:
        """
        Initialize supervisor.

        Args:
            ffmpeg_bin: ffmpeg executable used by the default command builder
            pausable: Suspend/continue capability (default: picked per platform)
            command_builder: Optional override building the process command line
            terminate_grace_sec: Time between SIGTERM and SIGKILL on cancel
        """
        self._ffmpeg_bin = ffmpeg_bin
        self._pausable = pausable if pausable is not None else default_pausable()
        self._command_builder = command_builder or (
            lambda input_source, options: build_ffmpeg_cmd(input_source, options, self._ffmpeg_bin)
        )
        self._terminate_grace_sec = terminate_grace_sec
        self._active: Optional[ProcessHandle] = None
        self._lock = threading.Lock()

    @property
    def supports_pause(self) -> bool:
        """Synchronous capability query; never signals anything."""
        return self._pausable.supported()

    @property
    def active_handle(self) -> Optional[ProcessHandle]:
        with self._lock:
            if self._active is not None and self._active.running():
                return self._active
            return None

    def start(
        self,
        input_source: str,
        options: EncodeOptions,
        token: CancellationToken,
    ) -> Tuple[ProcessHandle, BinaryIO]:
        """
        Launch the pipeline for one attempt.

        Args:
            input_source: Local path or URL to transcode
            options: Encoding parameters
            token: The attempt's cancellation token

        Returns:
            (handle, stdout) where stdout yields the sink-ready stream

        Raises:
            CancellationExpected: If the token was cancelled before launch
            PipelineStartError: If the process cannot be launched or another
                pipeline is still running
        """
        token.raise_if_cancelled()
        cmd = self._command_builder(input_source, options)

        with self._lock:
            if self._active is not None and self._active.running():
                raise PipelineStartError(
                    f"Pipeline for attempt {self._active.attempt_id} is still running (pid={self._active.pid})"
                )
            logger.debug(f"[FFMPEG] Executing: {' '.join(cmd)}")
            try:
                process = subprocess.Popen(
                    cmd,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    bufsize=0,
                    start_new_session=_HAS_PROCESS_GROUPS,
                )
            except (OSError, ValueError) as e:
                logger.error(f"[FFMPEG] Failed to launch {cmd[0]}: {e}")
                raise PipelineStartError(f"Failed to launch {cmd[0]}: {e}") from e

            handle = ProcessHandle(token.attempt_id, process, token, input_source)
            self._active = handle

        logger.info(f"[FFMPEG] Started pid={process.pid} for attempt {token.attempt_id}")
        handle.start_stderr_drain()
        # Runs immediately if the token was cancelled while we were launching
        token.add_callback(lambda: self.cancel(handle))
        return handle, process.stdout

    def cancel(self, handle: Optional[ProcessHandle]) -> None:
        """
        Request termination of handle's process.

        Sends SIGTERM (and SIGCONT if suspended so the signal is delivered),
        then escalates to SIGKILL after the grace period on a background
        thread. Idempotent; a no-op once the process has exited.
        """
        if handle is None:
            return
        with handle._lock:
            if not handle.running():
                logger.debug(f"[FFMPEG] Cancel ignored, process already exited (pid={handle.pid})")
                return
            if handle.cancel_requested:
                return
            handle.cancel_requested = True
            was_suspended = handle.suspended

        logger.info(f"[FFMPEG] SIGTERM sent (pid={handle.pid}, attempt={handle.attempt_id})")
        _signal_process(handle.process, signal.SIGTERM)
        if was_suspended:
            self._pausable.resume(handle.process)
            handle.suspended = False

        threading.Thread(
            target=self._escalate_kill,
            args=(handle,),
            daemon=True,
            name=f"FFmpegKillEscalation-{handle.attempt_id}",
        ).start()

    def _escalate_kill(self, handle: ProcessHandle) -> None:
        try:
            handle.process.wait(timeout=self._terminate_grace_sec)
        except subprocess.TimeoutExpired:
            logger.warning(f"[FFMPEG] SIGKILL sent (timeout exceeded, pid={handle.pid})")
            _signal_process(handle.process, getattr(signal, "SIGKILL", signal.SIGTERM))

    def try_suspend(self, handle: Optional[ProcessHandle]) -> SignalResult:
        """Suspend the pipeline, or report why it could not be suspended."""
        if not self._pausable.supported():
            return SignalResult.UNSUPPORTED
        if handle is None or not handle.running():
            return SignalResult.NOT_RUNNING
        if not self._pausable.suspend(handle.process):
            return SignalResult.NOT_RUNNING
        handle.suspended = True
        logger.info(f"[FFMPEG] Suspended pid={handle.pid}")
        return SignalResult.OK

    def try_resume(self, handle: Optional[ProcessHandle]) -> SignalResult:
        """Continue a suspended pipeline, or report why it could not be resumed."""
        if not self._pausable.supported():
            return SignalResult.UNSUPPORTED
        if handle is None or not handle.running():
            return SignalResult.NOT_RUNNING
        if not self._pausable.resume(handle.process):
            return SignalResult.NOT_RUNNING
        handle.suspended = False
        logger.info(f"[FFMPEG] Resumed pid={handle.pid}")
        return SignalResult.OK

    def await_exit(self, handle: ProcessHandle, timeout: Optional[float] = None) -> ExitStatus:
        """
        Wait for handle's process to terminate and classify the exit.

        Termination while the attempt's token is cancelled (or after cancel())
        is CANCELLED; exit code 0 is COMPLETED; anything else is FAILED.

        Args:
            handle: Process to wait for
            timeout: Optional wait limit in seconds

        Raises:
            subprocess.TimeoutExpired: If timeout elapses first
        """
        if handle.exit_status is not None:
            return handle.exit_status

        returncode = handle.process.wait(timeout=timeout)
        handle.join_stderr_drain()

        if handle.token.cancelled or handle.cancel_requested:
            kind = ExitKind.CANCELLED
        elif returncode == 0:
            kind = ExitKind.COMPLETED
        else:
            kind = ExitKind.FAILED

        with handle._lock:
            if handle.exit_status is None:
                handle.exit_status = ExitStatus(kind=kind, returncode=returncode, stderr_tail=handle.stderr_tail())
                if kind == ExitKind.FAILED:
                    logger.error(
                        f"[FFMPEG] Pipeline exited unexpectedly (pid={handle.pid}, exit code: {returncode})"
                    )
                else:
                    logger.info(f"[FFMPEG] Pipeline exited ({kind.value}, pid={handle.pid}, exit code: {returncode})")
                handle.close_pipes()
            status = handle.exit_status

        with self._lock:
            if self._active is handle:
                self._active = None
        return status

    def cleanup_transient_file(self, path: Optional[str], handle: Optional[ProcessHandle] = None) -> bool:
        """
        Delete a transient input file once the pipeline no longer has it open.

        Waits for handle's process to exit first (returns immediately if it
        already has). Deletion failures are logged as warnings and never raised.

        Args:
            path: File to delete (None is a no-op)
            handle: Pipeline process that may still be reading the file

        Returns:
            True if the file is gone afterwards
        """
        if not path:
            return True

        if handle is not None and handle.exit_status is None:
            if handle.running():
                logger.info(
                    f"[CLEANUP] Pipeline still running (pid={handle.pid}), "
                    f"waiting for exit before deleting {path}"
                )
            self.await_exit(handle)

        if not os.path.exists(path):
            return True
        try:
            os.remove(path)
            logger.info(f"[CLEANUP] Deleted temp file: {path}")
            return True
        except OSError as e:
            warning = CleanupWarning(f"Could not delete temp file {path}: {e}")
            logger.warning(f"[CLEANUP] {warning}")
            return False
