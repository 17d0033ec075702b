"""
Shared pytest fixtures for StreamBot contract tests.

Contract tests use test doubles (fakes, stubs, mocks) instead of ffmpeg,
yt-dlp and the network. Supervisor tests run real Python child processes.
"""

import threading

import pytest

from streambot.broadcast_core.playback_controller import PlaybackController
from streambot.tests.contracts.test_doubles import (
    FakeResolver,
    FakeSupervisor,
    RecordingNotifier,
    RecordingSink,
)


@pytest.fixture
def fake_supervisor():
    """Create a fake supervisor that supports pause."""
    return FakeSupervisor(supports_pause=True)


@pytest.fixture
def recording_sink():
    """Create a sink that records join/leave/publish."""
    return RecordingSink()


@pytest.fixture
def fake_resolver(tmp_path):
    """Create a fake resolver writing transient files under tmp_path."""
    return FakeResolver(temp_dir=str(tmp_path))


@pytest.fixture
def recording_notifier():
    """Create a notifier that records events."""
    return RecordingNotifier()


@pytest.fixture
def make_controller(fake_supervisor, recording_sink, fake_resolver, recording_notifier):
    """
    Factory for PlaybackControllers wired to the shared fakes.

    Every controller created is shut down after the test.
    """
    created = []

    def _make(idle_disconnect_sec: float = 30.0, supervisor=None, sink=None, **kwargs) -> PlaybackController:
        controller = PlaybackController(
            supervisor or fake_supervisor,
            sink or recording_sink,
            fake_resolver,
            sink_target="test-target",
            idle_disconnect_sec=idle_disconnect_sec,
            notifier=recording_notifier,
            **kwargs,
        )
        created.append(controller)
        return controller

    yield _make

    for controller in created:
        controller.shutdown(timeout=2.0)


@pytest.fixture
def controller(make_controller):
    """Create a PlaybackController with default settings."""
    return make_controller()


@pytest.fixture(autouse=False)  # Set to True to enable automatic thread leak detection
def thread_leak_guard():
    """
    Optional fixture to detect thread leaks between tests.

    This ensures shutdown is actually complete across tests.
    Enable by setting autouse=True or request it explicitly in tests.
    """
    before = set(t.ident for t in threading.enumerate())
    yield
    after = set(t.ident for t in threading.enumerate())
    leaked = after - before
    if leaked:
        leaked_threads = [t for t in threading.enumerate() if t.ident in leaked and t.is_alive()]
        if leaked_threads:
            thread_info = "\n".join(f"  - {t.name} (daemon={t.daemon})" for t in leaked_threads)
            assert False, f"Thread leak detected, shutdown incomplete.\nLeaked threads:\n{thread_info}"
