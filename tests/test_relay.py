"""Unit tests for background log relays."""

import threading

import pytest

from coltec_builder.errors import ControlPlaneError
from coltec_builder.logs import MemorySink
from coltec_builder.relay import LogRelay


class TestLogRelay:
    def test_copies_until_stream_closes(self):
        sink = MemorySink()
        relay = LogRelay("t", lambda: iter(["a", "b"]), sink).start()
        relay.stop()
        assert sink.lines == ["a", "b"]
        assert not relay.running

    def test_reattaches_after_error(self):
        sink = MemorySink()
        attempts = []

        def open_stream():
            attempts.append(1)
            if len(attempts) == 1:
                raise ControlPlaneError("daemon went away")
            return iter(["after"])

        relay = LogRelay("t", open_stream, sink, backoff=0.01).start()
        relay._thread.join(2)
        assert sink.lines == ["after"]
        assert relay.errors == 1

    def test_no_reattach(self):
        calls = []

        def open_stream():
            calls.append(1)
            raise OSError("closed")

        relay = LogRelay("t", open_stream, MemorySink(), backoff=0.01, reattach=False).start()
        relay._thread.join(2)
        assert len(calls) == 1
        assert relay.errors == 1

    def test_stop_interrupts_backoff(self):
        def open_stream():
            raise ControlPlaneError("down")

        relay = LogRelay("t", open_stream, None, backoff=30).start()
        relay.stop(timeout=2)
        assert not relay.running

    def test_signal_drains_until_stream_closes(self):
        release = threading.Event()
        sink = MemorySink()

        def open_stream():
            yield "first"
            release.wait(2)
            yield "second"

        relay = LogRelay("t", open_stream, sink).start()
        relay.signal()
        release.set()
        relay.join()
        assert sink.lines == ["first", "second"]

    def test_signal_stops_reattach(self):
        calls = []

        def open_stream():
            calls.append(1)
            raise ControlPlaneError("gone")

        relay = LogRelay("t", open_stream, None, backoff=0.01)
        relay.signal()
        relay.start()
        relay.join(timeout=2)
        assert calls == [1]

    def test_double_start_rejected(self):
        relay = LogRelay("t", lambda: iter([]), None).start()
        try:
            with pytest.raises(RuntimeError, match="already started"):
                relay.start()
        finally:
            relay.stop()

    def test_signal_then_join(self):
        closed = threading.Event()

        def open_stream():
            yield "line"
            closed.wait(10)

        sink = MemorySink()
        relay = LogRelay("t", open_stream, sink).start()
        relay.signal()
        assert relay._stop.is_set()
        closed.set()
        relay.join(timeout=2)
        assert not relay.running
