"""
Contract tests for ProcessSupervisor.

These launch real Python child processes in place of ffmpeg so the signal,
exit classification and cleanup paths run against actual OS processes.
"""

import os
import subprocess
import sys
import threading
import time
from unittest.mock import MagicMock, patch

import pytest

from streambot.broadcast_core.cancellation import CancellationToken
from streambot.broadcast_core.errors import CancellationExpected, PipelineStartError
from streambot.broadcast_core.ffmpeg_supervisor import (
    EncodeOptions,
    ExitKind,
    ProcessSupervisor,
    SignalResult,
    UnsupportedPausable,
    probe_video_params,
)

posix_only = pytest.mark.skipif(os.name != "posix", reason="requires POSIX signals")

PRINT_AND_EXIT = "import sys; sys.stdout.write('payload'); sys.stdout.flush()"
FAIL_WITH_STDERR = "import sys; sys.stderr.write('bad input\\n'); sys.stderr.flush(); sys.exit(3)"
SLEEP_FOREVER = "import sys, time; print('ready', flush=True); time.sleep(30)"
IGNORE_SIGTERM = (
    "import signal, time; signal.signal(signal.SIGTERM, signal.SIG_IGN); "
    "print('ready', flush=True); time.sleep(30)"
)
SLOW_SIGTERM = (
    "import signal, sys, time\n"
    "def handler(signum, frame):\n"
    "    time.sleep(0.2)\n"
    "    sys.exit(0)\n"
    "signal.signal(signal.SIGTERM, handler)\n"
    "print('ready', flush=True)\n"
    "time.sleep(30)\n"
)


def python_supervisor(script: str, **kwargs) -> ProcessSupervisor:
    """Supervisor whose pipeline is `python -c script` regardless of input."""
    return ProcessSupervisor(command_builder=lambda src, opts: [sys.executable, "-c", script], **kwargs)


def wait_ready(stdout) -> None:
    line = stdout.readline()
    assert line.strip() == b"ready"


@pytest.fixture
def started():
    """Track started handles and make sure every child is gone after the test."""
    handles = []
    yield handles
    for handle in handles:
        if handle.running():
            handle.process.kill()
        handle.process.wait(timeout=5)


class TestExitClassification:
    """await_exit() maps process endings onto COMPLETED/FAILED/CANCELLED."""

    def test_clean_exit_is_completed(self, started):
        supervisor = python_supervisor(PRINT_AND_EXIT)
        handle, stdout = supervisor.start("in.mp4", EncodeOptions(), CancellationToken(1))
        started.append(handle)

        assert stdout.read() == b"payload"
        status = supervisor.await_exit(handle, timeout=5)

        assert status.kind == ExitKind.COMPLETED
        assert status.returncode == 0
        assert not status.failed

    def test_nonzero_exit_is_failed_with_stderr_tail(self, started):
        supervisor = python_supervisor(FAIL_WITH_STDERR)
        handle, _ = supervisor.start("in.mp4", EncodeOptions(), CancellationToken(1))
        started.append(handle)

        status = supervisor.await_exit(handle, timeout=5)

        assert status.kind == ExitKind.FAILED
        assert status.returncode == 3
        assert "bad input" in status.stderr_tail
        assert status.failed

    @posix_only
    def test_token_cancel_terminates_and_is_cancelled(self, started):
        supervisor = python_supervisor(SLEEP_FOREVER)
        token = CancellationToken(1)
        handle, stdout = supervisor.start("in.mp4", EncodeOptions(), token)
        started.append(handle)
        wait_ready(stdout)

        token.cancel("skip")
        status = supervisor.await_exit(handle, timeout=5)

        assert status.kind == ExitKind.CANCELLED
        assert handle.cancel_requested

    def test_exit_status_is_cached(self, started):
        supervisor = python_supervisor(PRINT_AND_EXIT)
        handle, stdout = supervisor.start("in.mp4", EncodeOptions(), CancellationToken(1))
        started.append(handle)
        stdout.read()

        first = supervisor.await_exit(handle, timeout=5)
        second = supervisor.await_exit(handle)

        assert first is second
        assert supervisor.active_handle is None

    def test_pipes_closed_once_exit_is_known(self, started):
        supervisor = python_supervisor(FAIL_WITH_STDERR)
        handle, stdout = supervisor.start("in.mp4", EncodeOptions(), CancellationToken(1))
        started.append(handle)

        supervisor.await_exit(handle, timeout=5)

        assert stdout.closed
        assert handle.process.stdout.closed
        assert handle.process.stderr.closed

    @posix_only
    def test_pipes_closed_after_cancel(self, started):
        supervisor = python_supervisor(SLEEP_FOREVER)
        token = CancellationToken(1)
        handle, stdout = supervisor.start("in.mp4", EncodeOptions(), token)
        started.append(handle)
        wait_ready(stdout)

        token.cancel("stop")
        supervisor.await_exit(handle, timeout=5)

        assert handle.process.stdout.closed
        assert handle.process.stderr.closed


class TestStart:
    """start() launches at most one pipeline and honors the token."""

    def test_second_start_while_running_is_rejected(self, started):
        supervisor = python_supervisor(SLEEP_FOREVER)
        token = CancellationToken(1)
        handle, stdout = supervisor.start("a.mp4", EncodeOptions(), token)
        started.append(handle)
        wait_ready(stdout)

        with pytest.raises(PipelineStartError):
            supervisor.start("b.mp4", EncodeOptions(), CancellationToken(2))

        token.cancel("test")
        supervisor.await_exit(handle, timeout=5)

    def test_start_after_previous_exit_is_allowed(self, started):
        supervisor = python_supervisor(PRINT_AND_EXIT)
        first, stdout = supervisor.start("a.mp4", EncodeOptions(), CancellationToken(1))
        started.append(first)
        stdout.read()
        supervisor.await_exit(first, timeout=5)

        second, stdout = supervisor.start("b.mp4", EncodeOptions(), CancellationToken(2))
        started.append(second)
        stdout.read()

        assert supervisor.await_exit(second, timeout=5).kind == ExitKind.COMPLETED

    def test_cancelled_token_prevents_launch(self):
        supervisor = python_supervisor(PRINT_AND_EXIT)
        token = CancellationToken(1)
        token.cancel("skip")

        with pytest.raises(CancellationExpected):
            supervisor.start("a.mp4", EncodeOptions(), token)
        assert supervisor.active_handle is None

    def test_missing_binary_raises_start_error(self):
        supervisor = ProcessSupervisor(ffmpeg_bin="/nonexistent/ffmpeg-binary")

        with pytest.raises(PipelineStartError):
            supervisor.start("a.mp4", EncodeOptions(), CancellationToken(1))

    def test_command_builder_receives_input_and_options(self, started):
        seen = []

        def builder(src, opts):
            seen.append((src, opts))
            return [sys.executable, "-c", PRINT_AND_EXIT]

        supervisor = ProcessSupervisor(command_builder=builder)
        options = EncodeOptions(width=640, height=360)
        handle, stdout = supervisor.start("clip.mp4", options, CancellationToken(1))
        started.append(handle)
        stdout.read()
        supervisor.await_exit(handle, timeout=5)

        assert seen == [("clip.mp4", options)]


@posix_only
class TestCancelEscalation:
    """cancel() sends SIGTERM and escalates to SIGKILL after the grace period."""

    def test_sigkill_after_grace_when_sigterm_ignored(self, started):
        supervisor = python_supervisor(IGNORE_SIGTERM, terminate_grace_sec=0.2)
        handle, stdout = supervisor.start("a.mp4", EncodeOptions(), CancellationToken(1))
        started.append(handle)
        wait_ready(stdout)

        supervisor.cancel(handle)
        status = supervisor.await_exit(handle, timeout=5)

        assert status.kind == ExitKind.CANCELLED
        assert status.returncode == -9

    def test_cancel_is_idempotent(self, started):
        supervisor = python_supervisor(SLEEP_FOREVER)
        handle, stdout = supervisor.start("a.mp4", EncodeOptions(), CancellationToken(1))
        started.append(handle)
        wait_ready(stdout)

        supervisor.cancel(handle)
        supervisor.cancel(handle)
        status = supervisor.await_exit(handle, timeout=5)

        assert status.kind == ExitKind.CANCELLED

    def test_cancel_after_exit_is_noop(self, started):
        supervisor = python_supervisor(PRINT_AND_EXIT)
        handle, stdout = supervisor.start("a.mp4", EncodeOptions(), CancellationToken(1))
        started.append(handle)
        stdout.read()
        supervisor.await_exit(handle, timeout=5)

        supervisor.cancel(handle)

        assert handle.cancel_requested is False
        assert handle.exit_status.kind == ExitKind.COMPLETED

    def test_cancel_none_is_noop(self):
        python_supervisor(PRINT_AND_EXIT).cancel(None)


@posix_only
class TestSuspendResume:
    """SIGSTOP/SIGCONT pause path."""

    def test_suspend_and_resume_running_pipeline(self, started):
        supervisor = python_supervisor(SLEEP_FOREVER)
        token = CancellationToken(1)
        handle, stdout = supervisor.start("a.mp4", EncodeOptions(), token)
        started.append(handle)
        wait_ready(stdout)

        assert supervisor.supports_pause is True
        assert supervisor.try_suspend(handle) == SignalResult.OK
        assert handle.suspended is True
        assert supervisor.try_resume(handle) == SignalResult.OK
        assert handle.suspended is False

        token.cancel("test")
        supervisor.await_exit(handle, timeout=5)

    def test_cancel_while_suspended_still_terminates(self, started):
        supervisor = python_supervisor(SLEEP_FOREVER)
        token = CancellationToken(1)
        handle, stdout = supervisor.start("a.mp4", EncodeOptions(), token)
        started.append(handle)
        wait_ready(stdout)
        supervisor.try_suspend(handle)

        token.cancel("stop")
        status = supervisor.await_exit(handle, timeout=5)

        assert status.kind == ExitKind.CANCELLED

    def test_suspend_after_exit_reports_not_running(self, started):
        supervisor = python_supervisor(PRINT_AND_EXIT)
        handle, stdout = supervisor.start("a.mp4", EncodeOptions(), CancellationToken(1))
        started.append(handle)
        stdout.read()
        supervisor.await_exit(handle, timeout=5)

        assert supervisor.try_suspend(handle) == SignalResult.NOT_RUNNING
        assert supervisor.try_resume(handle) == SignalResult.NOT_RUNNING


class TestUnsupportedPause:
    """Platforms without suspend report UNSUPPORTED without signaling."""

    def test_unsupported_pausable(self, started):
        supervisor = python_supervisor(PRINT_AND_EXIT, pausable=UnsupportedPausable())
        handle, stdout = supervisor.start("a.mp4", EncodeOptions(), CancellationToken(1))
        started.append(handle)

        assert supervisor.supports_pause is False
        assert supervisor.try_suspend(handle) == SignalResult.UNSUPPORTED
        assert supervisor.try_resume(handle) == SignalResult.UNSUPPORTED
        assert handle.suspended is False

        stdout.read()
        supervisor.await_exit(handle, timeout=5)

    def test_unsupported_with_no_handle(self):
        supervisor = ProcessSupervisor(pausable=UnsupportedPausable())
        assert supervisor.try_suspend(None) == SignalResult.UNSUPPORTED


class TestTransientCleanup:
    """Transient files are deleted only after the pipeline has exited."""

    @posix_only
    def test_cleanup_waits_for_process_exit(self, started, tmp_path):
        # SLOW_SIGTERM exits 200ms after SIGTERM
        path = tmp_path / "ytdlp_temp_abc.mp4"
        path.write_bytes(b"\x00" * 32)
        supervisor = python_supervisor(SLOW_SIGTERM)
        token = CancellationToken(1)
        handle, stdout = supervisor.start(str(path), EncodeOptions(), token)
        started.append(handle)
        wait_ready(stdout)

        cancelled_at = time.monotonic()
        token.cancel("skip")
        result = {}
        cleaner = threading.Thread(
            target=lambda: result.setdefault("ok", supervisor.cleanup_transient_file(str(path), handle))
        )
        cleaner.start()

        time.sleep(max(0.0, 0.1 - (time.monotonic() - cancelled_at)))
        assert path.exists(), "file deleted while the pipeline was still running"

        cleaner.join(timeout=max(0.0, 0.25 - (time.monotonic() - cancelled_at)))
        assert not cleaner.is_alive(), "cleanup still waiting 250ms after cancel"
        assert result["ok"] is True
        assert not path.exists()
        assert not handle.running()

    def test_cleanup_after_exit_deletes_immediately(self, started, tmp_path):
        path = tmp_path / "ytdlp_temp_done.mp4"
        path.write_bytes(b"data")
        supervisor = python_supervisor(PRINT_AND_EXIT)
        handle, stdout = supervisor.start(str(path), EncodeOptions(), CancellationToken(1))
        started.append(handle)
        stdout.read()
        supervisor.await_exit(handle, timeout=5)

        assert supervisor.cleanup_transient_file(str(path), handle) is True
        assert not path.exists()

    def test_cleanup_missing_file_is_ok(self, tmp_path):
        supervisor = ProcessSupervisor()
        assert supervisor.cleanup_transient_file(str(tmp_path / "gone.mp4")) is True
        assert supervisor.cleanup_transient_file(None) is True

    def test_cleanup_failure_is_logged_not_raised(self, tmp_path, caplog):
        path = tmp_path / "ytdlp_temp_locked.mp4"
        path.write_bytes(b"data")
        supervisor = ProcessSupervisor()

        with patch("streambot.broadcast_core.ffmpeg_supervisor.os.remove", side_effect=PermissionError("denied")):
            assert supervisor.cleanup_transient_file(str(path)) is False

        assert "Could not delete temp file" in caplog.text


class TestProbeVideoParams:
    """probe_video_params() parses ffprobe JSON output."""

    def _completed(self, stdout: str, returncode: int = 0):
        result = MagicMock(spec=subprocess.CompletedProcess)
        result.stdout = stdout
        result.returncode = returncode
        return result

    def test_parses_first_video_stream(self):
        payload = '{"streams": [{"width": 1920, "height": 1080, "r_frame_rate": "30000/1001", "bit_rate": "4500000"}]}'
        with patch("streambot.broadcast_core.ffmpeg_supervisor.subprocess.run", return_value=self._completed(payload)):
            params = probe_video_params("clip.mp4")

        assert params["width"] == 1920
        assert params["height"] == 1080
        assert params["fps"] == pytest.approx(29.97, rel=1e-3)
        assert params["bitrate"] == 4500000

    def test_missing_binary_returns_none(self):
        with patch("streambot.broadcast_core.ffmpeg_supervisor.subprocess.run", side_effect=FileNotFoundError()):
            assert probe_video_params("clip.mp4") is None

    def test_no_video_stream_returns_none(self):
        with patch("streambot.broadcast_core.ffmpeg_supervisor.subprocess.run",
                   return_value=self._completed('{"streams": []}')):
            assert probe_video_params("song.mp3") is None

    def test_nonzero_exit_returns_none(self):
        with patch("streambot.broadcast_core.ffmpeg_supervisor.subprocess.run",
                   return_value=self._completed("", returncode=1)):
            assert probe_video_params("broken.mp4") is None
