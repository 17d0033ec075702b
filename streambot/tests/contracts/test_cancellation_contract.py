"""
Contract tests for CancellationToken.
"""

import threading

import pytest

from streambot.broadcast_core.cancellation import CancellationToken
from streambot.broadcast_core.errors import CancellationExpected


class TestCancel:
    def test_first_cancel_signals(self):
        token = CancellationToken(7)

        assert token.cancel("skip") is True
        assert token.cancelled
        assert token.reason == "skip"

    def test_second_cancel_is_noop(self):
        token = CancellationToken(1)
        token.cancel("skip")

        assert token.cancel("stop") is False
        assert token.reason == "skip"

    def test_cancel_after_complete_is_noop(self):
        token = CancellationToken(1)
        token.complete()

        assert token.cancel("late skip") is False
        assert not token.cancelled
        assert token.completed

    def test_concurrent_cancels_signal_once(self):
        token = CancellationToken(1)
        results = []
        lock = threading.Lock()

        def cancel():
            outcome = token.cancel("race")
            with lock:
                results.append(outcome)

        threads = [threading.Thread(target=cancel) for _ in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 1

    def test_raise_if_cancelled(self):
        token = CancellationToken(3)
        token.raise_if_cancelled()

        token.cancel("stop")

        with pytest.raises(CancellationExpected):
            token.raise_if_cancelled()

    def test_wait_returns_when_cancelled(self):
        token = CancellationToken(1)
        assert token.wait(timeout=0.01) is False

        threading.Timer(0.05, token.cancel).start()

        assert token.wait(timeout=2.0) is True


class TestCallbacks:
    def test_callback_runs_once_on_cancel(self):
        token = CancellationToken(1)
        calls = []
        token.add_callback(lambda: calls.append("cb"))

        token.cancel("skip")
        token.cancel("again")

        assert calls == ["cb"]

    def test_callback_added_after_cancel_runs_immediately(self):
        token = CancellationToken(1)
        token.cancel("skip")
        calls = []

        token.add_callback(lambda: calls.append("late"))

        assert calls == ["late"]

    def test_callback_added_after_complete_is_dropped(self):
        token = CancellationToken(1)
        token.complete()
        calls = []

        token.add_callback(lambda: calls.append("never"))
        token.cancel("skip")

        assert calls == []

    def test_failing_callback_does_not_block_others(self):
        token = CancellationToken(1)
        calls = []

        def broken():
            raise RuntimeError("boom")

        token.add_callback(broken)
        token.add_callback(lambda: calls.append("ok"))

        assert token.cancel("skip") is True
        assert calls == ["ok"]
