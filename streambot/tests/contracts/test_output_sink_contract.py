"""
Contract tests for output sinks.

HTTPPushSink runs against httpx.MockTransport instead of a real ingest server.
"""

import io
from types import SimpleNamespace

import httpx
import pytest

from streambot.broadcast_core.cancellation import CancellationToken
from streambot.broadcast_core.errors import SinkError
from streambot.outputs import FileSink, HTTPPushSink, NullSink, create_output_sink
from streambot.tests.contracts.test_doubles import DroppingTransport


class TestBaseSinkBehavior:
    """join/leave bookkeeping and chunk iteration shared by all sinks."""

    def test_join_and_leave_toggle_joined(self):
        sink = NullSink()
        assert not sink.joined

        sink.join("room-1")
        assert sink.joined
        assert sink.target == "room-1"

        sink.leave()
        assert not sink.joined

    def test_leave_when_not_joined_is_noop(self):
        NullSink().leave()

    def test_iter_chunks_reads_until_eof(self):
        sink = NullSink(chunk_size=4)
        chunks = list(sink.iter_chunks(io.BytesIO(b"0123456789"), CancellationToken(1)))
        assert chunks == [b"0123", b"4567", b"89"]

    def test_iter_chunks_stops_on_cancel(self):
        sink = NullSink(chunk_size=4)
        token = CancellationToken(1)
        chunks = []
        for chunk in sink.iter_chunks(io.BytesIO(b"0123456789"), token):
            chunks.append(chunk)
            token.cancel("skip")
        assert chunks == [b"0123"]

    def test_mark_disconnected_notifies_listeners_once(self):
        sink = NullSink()
        calls = []
        sink.add_disconnect_listener(lambda: calls.append("lost"))
        sink.join("room-1")

        sink._mark_disconnected("reset by peer")
        sink._mark_disconnected("reset by peer")

        assert calls == ["lost"]
        assert not sink.joined

    def test_mark_disconnected_when_not_joined_is_noop(self):
        sink = NullSink()
        calls = []
        sink.add_disconnect_listener(lambda: calls.append("lost"))

        sink._mark_disconnected("late error")

        assert calls == []

    def test_failing_listener_does_not_stop_others(self):
        sink = NullSink()
        calls = []

        def broken():
            raise RuntimeError("listener bug")

        sink.add_disconnect_listener(broken)
        sink.add_disconnect_listener(lambda: calls.append("lost"))
        sink.join("room-1")

        sink._mark_disconnected("reset by peer")

        assert calls == ["lost"]


class TestNullSink:
    def test_publish_counts_bytes(self):
        sink = NullSink()
        sink.join("x")

        sink.publish(io.BytesIO(b"a" * 100), CancellationToken(1))
        sink.publish(io.BytesIO(b"b" * 50), CancellationToken(2))

        assert sink.bytes_published == 150

    def test_close_leaves(self):
        sink = NullSink()
        sink.join("x")
        sink.close()
        assert not sink.joined


class TestFileSink:
    def test_attempts_are_appended_to_one_file(self, tmp_path):
        path = tmp_path / "out" / "stream.ts"
        sink = FileSink(str(path))
        sink.join("target")

        sink.publish(io.BytesIO(b"first"), CancellationToken(1))
        sink.publish(io.BytesIO(b"second"), CancellationToken(2))
        sink.leave()

        assert path.read_bytes() == b"firstsecond"

    def test_join_truncates_previous_session(self, tmp_path):
        path = tmp_path / "stream.ts"
        path.write_bytes(b"old session")
        sink = FileSink(str(path))

        sink.join("target")
        sink.publish(io.BytesIO(b"new"), CancellationToken(1))
        sink.close()

        assert path.read_bytes() == b"new"

    def test_publish_without_join_raises(self, tmp_path):
        sink = FileSink(str(tmp_path / "stream.ts"))
        with pytest.raises(SinkError):
            sink.publish(io.BytesIO(b"data"), CancellationToken(1))

    def test_unopenable_path_raises_on_join(self, tmp_path):
        blocker = tmp_path / "not_a_dir"
        blocker.write_text("file")
        sink = FileSink(str(blocker / "stream.ts"))

        with pytest.raises(SinkError):
            sink.join("target")
        assert not sink.joined


class TestHTTPPushSink:
    def _sink(self, handler):
        return HTTPPushSink("http://ingest.local/live", transport=httpx.MockTransport(handler))

    def test_publish_posts_stream_body(self):
        received = []

        def handler(request: httpx.Request) -> httpx.Response:
            received.append(request)
            return httpx.Response(200)

        sink = self._sink(handler)
        sink.join("channel-7")
        sink.publish(io.BytesIO(b"x" * 200_000), CancellationToken(1))
        sink.close()

        assert len(received) == 1
        request = received[0]
        assert request.method == "POST"
        assert request.url == "http://ingest.local/live"
        assert request.headers["Content-Type"] == "video/mp2t"
        assert request.headers["X-Stream-Target"] == "channel-7"
        assert request.content == b"x" * 200_000

    def test_server_error_raises_sink_error(self):
        sink = self._sink(lambda request: httpx.Response(500))
        sink.join("channel")

        with pytest.raises(SinkError):
            sink.publish(io.BytesIO(b"data"), CancellationToken(1))

    def test_connection_error_after_cancel_is_not_an_error(self):
        token = CancellationToken(1)

        def handler(request):
            token.cancel("stop")
            raise httpx.ConnectError("connection dropped")

        sink = self._sink(handler)
        sink.join("channel")

        sink.publish(io.BytesIO(b"data"), token)

    def test_publish_without_join_raises(self):
        sink = self._sink(lambda request: httpx.Response(200))
        with pytest.raises(SinkError):
            sink.publish(io.BytesIO(b"data"), CancellationToken(1))

    def _joined_with(self, transport):
        sink = HTTPPushSink("http://ingest.local/live", transport=transport)
        lost = []
        sink.add_disconnect_listener(lambda: lost.append(True))
        sink.join("channel")
        return sink, lost

    @pytest.mark.parametrize("error", [httpx.RemoteProtocolError, httpx.ReadError, httpx.WriteError])
    def test_dropped_stream_marks_disconnected(self, error):
        sink, lost = self._joined_with(DroppingTransport(error))

        with pytest.raises(SinkError):
            sink.publish(io.BytesIO(b"data"), CancellationToken(1))

        assert lost == [True]
        assert not sink.joined
        assert sink._client is None

    def test_server_error_keeps_sink_joined(self):
        sink, lost = self._joined_with(httpx.MockTransport(lambda request: httpx.Response(500)))

        with pytest.raises(SinkError):
            sink.publish(io.BytesIO(b"data"), CancellationToken(1))

        assert lost == []
        assert sink.joined
        sink.close()

    def test_refused_connect_keeps_sink_joined(self):
        sink, lost = self._joined_with(DroppingTransport(httpx.ConnectError))

        with pytest.raises(SinkError):
            sink.publish(io.BytesIO(b"data"), CancellationToken(1))

        assert lost == []
        assert sink.joined
        sink.close()

    def test_drop_after_cancel_is_not_a_disconnect(self):
        sink, lost = self._joined_with(DroppingTransport())
        token = CancellationToken(1)
        token.cancel("skip")

        sink.publish(io.BytesIO(b"data"), token)

        assert lost == []
        assert sink.joined
        sink.close()


class TestFactory:
    def _config(self, **overrides):
        values = {"output_mode": "null", "output_path": "/tmp/out.ts", "output_url": None}
        values.update(overrides)
        return SimpleNamespace(**values)

    def test_null_mode(self):
        assert isinstance(create_output_sink(self._config()), NullSink)

    def test_file_mode(self, tmp_path):
        sink = create_output_sink(self._config(output_mode="file", output_path=str(tmp_path / "o.ts")))
        assert isinstance(sink, FileSink)
        assert sink.path == str(tmp_path / "o.ts")

    def test_http_mode(self):
        sink = create_output_sink(self._config(output_mode="HTTP", output_url="http://ingest.local/x"))
        assert isinstance(sink, HTTPPushSink)
        assert sink.url == "http://ingest.local/x"

    def test_http_mode_requires_url(self):
        with pytest.raises(ValueError):
            create_output_sink(self._config(output_mode="http"))

    def test_unknown_mode(self):
        with pytest.raises(ValueError):
            create_output_sink(self._config(output_mode="rtmp"))
