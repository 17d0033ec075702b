"""
Playback Controller for StreamBot.

PlaybackController owns the queue, the playback state machine and the control
loop. Commands (enqueue, skip, pause, resume, stop, status, queue_snapshot) may
be called from any thread; the loop runs on its own daemon thread and is the
only consumer of the queue.

State machine:
    IDLE -> JOINING          first enqueue while not joined to the sink
    JOINING -> PLAYING       sink join succeeded, loop pulls the head
    IDLE -> PLAYING          enqueue while joined (disconnect timer pending)
    PLAYING <-> PAUSED       pause/resume, gated on the pause capability
    PLAYING/PAUSED/JOINING -> STOPPING -> IDLE    stop or external disconnect
    PLAYING -> IDLE          queue drained, idle disconnect armed

All state and queue reads/writes happen under one re-entrant lock. The
cancellation token for each attempt is created by the loop and nowhere else.
"""

import dataclasses
import enum
import logging
import os
import threading
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional, Tuple

from streambot.broadcast_core.cancellation import CancellationToken
from streambot.broadcast_core.disconnect_scheduler import DEFAULT_IDLE_DISCONNECT_SEC, DisconnectScheduler
from streambot.broadcast_core.errors import (
    CancellationExpected,
    CapabilityUnsupportedError,
    InvalidStateError,
    PipelineRuntimeError,
    PipelineStartError,
    ResolutionError,
    RestrictedContentError,
    SinkError,
)
from streambot.broadcast_core.ffmpeg_supervisor import (
    EncodeOptions,
    ExitKind,
    ProcessHandle,
    ProcessSupervisor,
    SignalResult,
    probe_video_params,
)
from streambot.broadcast_core.playback_queue import QueueStore
from streambot.broadcast_core.queue_entry import QueueEntry

logger = logging.getLogger(__name__)

PRESENCE_READY = "Ready to play!"


class PlaybackState(enum.Enum):
    IDLE = "idle"
    JOINING = "joining"
    PLAYING = "playing"
    PAUSED = "paused"
    STOPPING = "stopping"


@dataclass(frozen=True)
class PlaybackStatus:
    """Point-in-time view returned by status()."""
    state: PlaybackState
    current_title: Optional[str]
    queue_length: int
    current_requester: Optional[str] = None

    @property
    def label(self) -> str:
        return self.state.value.capitalize()


@dataclass(frozen=True)
class QueueSnapshot:
    """Point-in-time view returned by queue_snapshot()."""
    now_playing: Optional[QueueEntry]
    up_next: List[QueueEntry] = field(default_factory=list)
    total: int = 0


class Notifier:
    """
    Receives user-facing playback events.

    The default implementation only logs. Frontends subclass it to forward
    events to their users.
    """

    def notify(self, emoji: str, title: str, description: str) -> None:
        logger.info(f"[NOTIFY] {emoji} {title}: {description}")

    def presence(self, text: str) -> None:
        logger.info(f"[PRESENCE] {text}")


class PlaybackController:
    """
    Queue plus playback control loop driving one ffmpeg pipeline at a time.

    Collaborators:
        supervisor: ProcessSupervisor running the pipeline for each attempt
        sink: BaseSink receiving each attempt's output stream
        resolver: MediaResolver providing stream URIs and downloads at play time
    """

    def __init__(
        self,
        supervisor: ProcessSupervisor,
        sink,
        resolver,
        sink_target: str = "default",
        encode_options: Optional[EncodeOptions] = None,
        idle_disconnect_sec: float = DEFAULT_IDLE_DISCONNECT_SEC,
        notifier: Optional[Notifier] = None,
        respect_video_params: bool = False,
        ffprobe_bin: str = "ffprobe",
    ):
        """
        Initialize controller.

        Args:
            supervisor: Pipeline process supervisor
            sink: Output sink
            resolver: Media resolver for play-time input preparation
            sink_target: Opaque target passed to sink.join()
            encode_options: Base encoding parameters (default: EncodeOptions())
            idle_disconnect_sec: Delay before leaving the sink once the queue drains
            notifier: Receiver of user-facing events (default: logging Notifier)
            respect_video_params: Cap encoding to the probed source parameters
            ffprobe_bin: ffprobe executable for respect_video_params
        """
        self._supervisor = supervisor
        self._sink = sink
        self._resolver = resolver
        self._sink_target = sink_target
        self._encode_options = encode_options or EncodeOptions()
        self._idle_disconnect_sec = idle_disconnect_sec
        self._notifier = notifier or Notifier()
        self._respect_video_params = respect_video_params
        self._ffprobe_bin = ffprobe_bin

        self._lock = threading.RLock()
        self._cond = threading.Condition(self._lock)
        self._queue = QueueStore(self._lock)
        self._scheduler = DisconnectScheduler(self._on_idle_timeout)

        self._state = PlaybackState.IDLE
        self._joined = False
        self._manual_stop = False
        self._closed = False
        # True from the moment a loop run is reserved until it has fully wound down
        self._loop_running = False
        self._loop_thread: Optional[threading.Thread] = None

        self._attempt_counter = 0
        self._current_entry: Optional[QueueEntry] = None
        self._current_token: Optional[CancellationToken] = None
        self._current_handle: Optional[ProcessHandle] = None

        self._state_listeners: List[Callable[[PlaybackState, PlaybackState], None]] = []

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def state(self) -> PlaybackState:
        with self._lock:
            return self._state

    @property
    def joined(self) -> bool:
        with self._lock:
            return self._joined

    @property
    def manual_stop(self) -> bool:
        with self._lock:
            return self._manual_stop

    @property
    def disconnect_armed(self) -> bool:
        return self._scheduler.is_armed

    @property
    def current_token(self) -> Optional[CancellationToken]:
        with self._lock:
            return self._current_token

    @property
    def current_entry(self) -> Optional[QueueEntry]:
        with self._lock:
            return self._current_entry

    def add_state_listener(self, listener: Callable[[PlaybackState, PlaybackState], None]) -> None:
        """Register listener(old, new), called under the controller lock on every transition."""
        with self._lock:
            self._state_listeners.append(listener)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def enqueue(self, entries: Iterable[QueueEntry]) -> int:
        """
        Append entries and start playback if idle.

        Enqueueing while a loop runs only appends. Any enqueue disarms a
        pending idle disconnect.

        Args:
            entries: QueueEntries in play order

        Returns:
            Queue length after appending

        Raises:
            InvalidStateError: If the controller has been shut down
        """
        entries = list(entries)
        with self._lock:
            if self._closed:
                raise InvalidStateError("Playback controller is shut down")
            if not entries:
                return self._queue.size()

            self._scheduler.disarm()
            self._queue.enqueue_all(entries)
            size = self._queue.size()

            if self._loop_running:
                logger.debug(f"[PLAYBACK] Loop running, appended {len(entries)} entries")
                return size

            self._reserve_loop_locked()
        return size

    def skip(self) -> Optional[str]:
        """
        Cancel the current attempt; the loop advances to the next entry.

        Returns:
            Title of the skipped entry, or None if nothing is playing
        """
        with self._lock:
            entry = self._current_entry
            token = self._current_token
        if entry is None or token is None:
            return None
        # Signaled outside the lock; the token callback requests process termination
        if not token.cancel("skip"):
            return None
        logger.info(f"[PLAYBACK] Skipped: {entry.title!r}")
        return entry.title

    def pause(self) -> str:
        """
        Suspend the running pipeline.

        Returns:
            Title of the paused entry

        Raises:
            CapabilityUnsupportedError: Platform cannot suspend processes (state unchanged)
            InvalidStateError: Not playing or already paused
        """
        if not self._supervisor.supports_pause:
            raise CapabilityUnsupportedError("Pause is not supported on this platform")

        with self._lock:
            entry = self._current_entry
            if self._state != PlaybackState.PLAYING or self._current_handle is None or entry is None:
                raise InvalidStateError("Not playing or already paused.")
            token = self._current_token
            if token is None or token.cancelled:
                # The attempt is already winding down after skip, stop or disconnect
                raise InvalidStateError("Not playing or already paused.")
            result = self._supervisor.try_suspend(self._current_handle)
            if result == SignalResult.UNSUPPORTED:
                raise CapabilityUnsupportedError("Pause is not supported on this platform")
            if result == SignalResult.NOT_RUNNING:
                raise InvalidStateError("Not playing or already paused.")
            self._set_state(PlaybackState.PAUSED)
            self._notifier.presence(f"Paused: {entry.title}")
        return entry.title

    def resume(self) -> str:
        """
        Continue a suspended pipeline.

        Returns:
            Title of the resumed entry

        Raises:
            CapabilityUnsupportedError: Platform cannot suspend processes (state unchanged)
            InvalidStateError: Playback is not paused, or the paused item has already ended
        """
        if not self._supervisor.supports_pause:
            raise CapabilityUnsupportedError("Resume is not supported on this platform")

        with self._lock:
            entry = self._current_entry
            if self._state != PlaybackState.PAUSED or entry is None:
                raise InvalidStateError("Playback is not paused.")
            result = self._supervisor.try_resume(self._current_handle)
            if result == SignalResult.UNSUPPORTED:
                raise CapabilityUnsupportedError("Resume is not supported on this platform")
            if result == SignalResult.NOT_RUNNING:
                # The loop moves the state on once it reaps the process
                raise InvalidStateError("The paused item has already ended.")
            self._set_state(PlaybackState.PLAYING)
            self._notifier.presence(f"Playing: {entry.title}")
        return entry.title

    def stop(self) -> int:
        """
        Clear the queue, cancel the current attempt and leave the sink.

        Leaving happens on the loop thread after the pipeline has exited and
        its transient file is cleaned up. If no loop runs but the sink is
        still joined (idle disconnect pending), the sink is left immediately.

        Returns:
            Number of queued entries removed

        Raises:
            InvalidStateError: Not joined and nothing playing
        """
        with self._lock:
            if not self._loop_running:
                if not self._joined:
                    raise InvalidStateError("Not connected")
                self._scheduler.disarm()
                removed = self._queue.clear()
                self._loop_running = True
                self._manual_stop = True
                self._set_state(PlaybackState.STOPPING)
                token = None
                leave_now = True
            else:
                self._manual_stop = True
                removed = self._queue.clear()
                token = self._current_token
                self._set_state(PlaybackState.STOPPING)
                leave_now = False

        logger.info(f"[PLAYBACK] Stop requested ({removed} entries cleared)")
        if leave_now:
            self._leave_and_reset()
        elif token is not None:
            token.cancel("stop")
        return removed

    def status(self) -> PlaybackStatus:
        with self._lock:
            entry = self._current_entry
            return PlaybackStatus(
                state=self._state,
                current_title=entry.title if entry else None,
                queue_length=self._queue.size(),
                current_requester=entry.requester if entry else None,
            )

    def queue_snapshot(self, limit: int = 10) -> QueueSnapshot:
        """
        Get the entry now playing, up to `limit` following entries, and the total.

        Args:
            limit: Maximum number of upcoming entries to include
        """
        with self._lock:
            entries, total = self._queue.snapshot(limit)
            current = self._current_entry
            if current is not None and entries and entries[0] is current:
                return QueueSnapshot(now_playing=current, up_next=entries[1:], total=total)
            return QueueSnapshot(now_playing=None, up_next=entries[:limit], total=total)

    def on_sink_disconnected(self) -> None:
        """
        Handle the sink being dropped externally (not via leave()).

        Clears the queue, cancels the current attempt and returns to IDLE
        without calling leave() again.
        """
        with self._lock:
            self._scheduler.disarm()
            removed = self._queue.clear()
            self._joined = False
            token = None
            if self._loop_running:
                self._manual_stop = True
                token = self._current_token
                self._set_state(PlaybackState.STOPPING)
            else:
                self._set_state(PlaybackState.IDLE)
                self._notifier.presence(PRESENCE_READY)
        logger.warning(f"[PLAYBACK] Sink disconnected externally ({removed} entries cleared)")
        if token is not None:
            token.cancel("disconnected")

    def wait_until_idle(self, timeout: Optional[float] = None) -> bool:
        """
        Block until no loop runs and the state is IDLE.

        Returns:
            True if idle was reached before timeout
        """
        with self._cond:
            return self._cond.wait_for(
                lambda: not self._loop_running and self._state == PlaybackState.IDLE,
                timeout=timeout,
            )

    def shutdown(self, timeout: float = 5.0) -> None:
        """Stop playback, wait for the loop to wind down and cancel the idle timer."""
        with self._lock:
            self._closed = True
        self._scheduler.shutdown()
        try:
            self.stop()
        except InvalidStateError:
            pass
        if not self.wait_until_idle(timeout):
            logger.warning(f"[PLAYBACK] Loop did not finish within {timeout}s during shutdown")
        thread = self._loop_thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)
        logger.info("[PLAYBACK] Controller shut down")

    # ------------------------------------------------------------------
    # Control loop
    # ------------------------------------------------------------------

    def _set_state(self, new_state: PlaybackState) -> None:
        # Caller holds self._lock
        old_state = self._state
        if old_state == new_state:
            return
        self._state = new_state
        logger.info(f"[PLAYBACK] State {old_state.name} -> {new_state.name}")
        for listener in list(self._state_listeners):
            try:
                listener(old_state, new_state)
            except Exception as e:
                logger.error(f"[PLAYBACK] State listener failed: {e}", exc_info=True)
        self._cond.notify_all()

    def _reserve_loop_locked(self) -> None:
        """Mark a loop run as reserved and start its thread. Caller holds self._lock."""
        need_join = not self._joined
        self._loop_running = True
        if need_join:
            self._set_state(PlaybackState.JOINING)
        self._loop_thread = threading.Thread(
            target=self._run_loop,
            args=(need_join,),
            daemon=True,
            name="PlaybackLoop",
        )
        self._loop_thread.start()

    def _restart_if_pending_locked(self) -> bool:
        """Start a new loop run if entries arrived while the previous one wound down."""
        if self._closed or self._queue.empty():
            return False
        logger.info(f"[PLAYBACK] {self._queue.size()} entries pending, restarting loop")
        self._reserve_loop_locked()
        return True

    def _run_loop(self, need_join: bool) -> None:
        if need_join and not self._join_sink():
            return

        try:
            while True:
                with self._lock:
                    if self._manual_stop:
                        break
                    entry = self._queue.peek_head()
                    if entry is None:
                        break
                    self._attempt_counter += 1
                    token = CancellationToken(self._attempt_counter)
                    self._current_entry = entry
                    self._current_token = token
                    self._set_state(PlaybackState.PLAYING)

                try:
                    self._run_attempt(entry, token)
                finally:
                    token.complete()
                    with self._lock:
                        self._current_entry = None
                        self._current_token = None
                        self._current_handle = None
                        self._queue.remove_if_head(entry)
        except Exception as e:
            logger.error(f"[PLAYBACK] Loop crashed: {e}", exc_info=True)
        finally:
            self._finish_loop()

    def _join_sink(self) -> bool:
        logger.info(f"[PLAYBACK] Joining sink target {self._sink_target!r}")
        try:
            self._sink.join(self._sink_target)
        except Exception as e:
            logger.error(f"[PLAYBACK] Failed to join sink: {e}", exc_info=True)
            self._notifier.notify("❌", "Error", f"Failed to join the output: {e}")
            with self._lock:
                self._queue.clear()
                self._manual_stop = False
                self._loop_running = False
                self._set_state(PlaybackState.IDLE)
            return False

        with self._lock:
            self._joined = True
        return True

    def _finish_loop(self) -> None:
        with self._lock:
            if self._manual_stop:
                self._set_state(PlaybackState.STOPPING)
                stopping = True
            else:
                stopping = False
                self._loop_running = False
                self._set_state(PlaybackState.IDLE)
                self._notifier.presence(PRESENCE_READY)
                if not self._restart_if_pending_locked() and self._joined and not self._closed:
                    self._notifier.notify(
                        "ℹ️",
                        "Queue Empty",
                        f"No more items in the queue. Leaving in {self._idle_disconnect_sec:g} seconds "
                        f"if nothing is added.",
                    )
                    self._scheduler.arm(self._idle_disconnect_sec)
        if stopping:
            self._leave_and_reset()

    def _leave_and_reset(self) -> None:
        """Leave the sink (if joined) and return to IDLE. Caller holds the loop reservation."""
        with self._lock:
            joined = self._joined
        if joined:
            logger.info("[PLAYBACK] Leaving sink")
            try:
                self._sink.leave()
            except Exception as e:
                logger.warning(f"[PLAYBACK] Sink leave failed: {e}")

        with self._lock:
            self._joined = False
            self._manual_stop = False
            self._loop_running = False
            self._set_state(PlaybackState.IDLE)
            self._notifier.presence(PRESENCE_READY)
            self._restart_if_pending_locked()

    def _on_idle_timeout(self) -> None:
        with self._lock:
            if self._loop_running or not self._joined or not self._queue.empty():
                logger.debug("[DISCONNECT] Idle check found activity, staying joined")
                return
            self._loop_running = True
        logger.info(f"[DISCONNECT] Queue idle for {self._idle_disconnect_sec:g}s, leaving sink")
        self._leave_and_reset()

    # ------------------------------------------------------------------
    # One attempt
    # ------------------------------------------------------------------

    def _run_attempt(self, entry: QueueEntry, token: CancellationToken) -> None:
        """
        Play one entry to completion, cancellation or failure.

        Failures other than cancellation are reported once and swallowed so
        the loop advances.
        """
        transient_path: Optional[str] = None
        handle: Optional[ProcessHandle] = None
        logger.info(f"[PLAYBACK] Attempt {token.attempt_id}: {entry.title!r} ({entry.kind.value})")

        try:
            input_source, transient_path = self._prepare_input(entry, token)
            token.raise_if_cancelled()

            options = self._options_for(entry, transient_path)
            handle, stdout = self._supervisor.start(input_source, options, token)
            with self._lock:
                self._current_handle = handle
                self._notifier.presence(f"Playing: {entry.title}")
            self._notifier.notify("▶️", "Now Playing", f"`{entry.title}`\nRequested by: {entry.requester or 'unknown'}")

            self._sink.publish(stdout, token)

            status = self._supervisor.await_exit(handle)
            if status.kind == ExitKind.FAILED:
                raise PipelineRuntimeError(
                    f"ffmpeg exited with code {status.returncode}",
                    returncode=status.returncode,
                    stderr_tail=status.stderr_tail,
                )
            if status.kind == ExitKind.CANCELLED:
                raise CancellationExpected(f"attempt {token.attempt_id} cancelled ({token.reason})")
            logger.info(f"[PLAYBACK] Finished: {entry.title!r}")

        except CancellationExpected:
            logger.info(f"[PLAYBACK] Attempt {token.attempt_id} ended by cancellation: {entry.title!r}")
        except RestrictedContentError as e:
            logger.warning(f"[PLAYBACK] Restricted content {entry.title!r}: {e}")
            self._notifier.notify(
                "🔒",
                "Member-Only Video",
                f"`{entry.title}` is restricted and cannot be played. Skipping.",
            )
        except (ResolutionError, PipelineStartError, PipelineRuntimeError, SinkError) as e:
            self._report_failure(entry, token, e)
        except Exception as e:
            logger.error(f"[PLAYBACK] Unexpected error playing {entry.title!r}: {e}", exc_info=True)
            self._report_failure(entry, token, e)
        finally:
            if handle is not None:
                if handle.running():
                    # Sink stopped reading before the pipeline finished
                    self._supervisor.cancel(handle)
                self._supervisor.await_exit(handle)
            if transient_path:
                self._supervisor.cleanup_transient_file(transient_path, handle)

    def _report_failure(self, entry: QueueEntry, token: CancellationToken, error: Exception) -> None:
        if token.cancelled:
            # Aborted downloads and killed pipelines surface as errors; they are not failures
            logger.info(f"[PLAYBACK] Attempt {token.attempt_id} aborted after cancellation: {error}")
            return
        logger.error(f"[PLAYBACK] Failed to play {entry.title!r}: {error}")
        stderr_tail = getattr(error, "stderr_tail", "")
        if stderr_tail:
            logger.error(f"[PLAYBACK] ffmpeg stderr tail:\n{stderr_tail}")
        self._notifier.notify("❌", "Playback Error", f"Failed to play `{entry.title}`. Skipping.")

    def _prepare_input(self, entry: QueueEntry, token: CancellationToken) -> Tuple[str, Optional[str]]:
        """
        Turn an entry into pipeline input.

        Returns:
            (input_source, transient_path) where transient_path must be cleaned
            up after the pipeline exits, or None
        """
        if entry.needs_stream_uri:
            logger.info(f"[PLAYBACK] Resolving live stream URI for {entry.title!r}")
            return self._resolver.resolve_stream_uri(entry), None
        if entry.needs_download:
            logger.info(f"[PLAYBACK] Downloading {entry.title!r}")
            path = self._resolver.download_to_local_file(entry, token)
            return path, path
        return entry.source, None

    def _options_for(self, entry: QueueEntry, transient_path: Optional[str]) -> EncodeOptions:
        options = dataclasses.replace(self._encode_options, read_realtime=not entry.is_live)
        if not self._respect_video_params:
            return options
        local_path = transient_path or (entry.source if os.path.isfile(entry.source) else None)
        if local_path is None:
            return options
        params = probe_video_params(local_path, self._ffprobe_bin)
        if params:
            logger.info(
                f"[PLAYBACK] Source is {params['width']}x{params['height']}@{params['fps']:.2f}, "
                f"capping encode options"
            )
        return options.capped_to(params)
