"""Tests for the event emitter."""

from usage_agent.events import EventEmitter


class TestEventEmitter:
    def test_emit_calls_listeners_in_order(self):
        emitter = EventEmitter()
        calls = []
        emitter.subscribe("changed", lambda value: calls.append(("a", value)))
        emitter.subscribe("changed", lambda value: calls.append(("b", value)))
        emitter.emit("changed", 1)
        assert calls == [("a", 1), ("b", 1)]

    def test_unsubscribe(self):
        emitter = EventEmitter()
        calls = []
        unsubscribe = emitter.subscribe("changed", calls.append)
        unsubscribe()
        unsubscribe()
        emitter.emit("changed", 1)
        assert calls == []

    def test_failing_listener_does_not_block_others(self):
        emitter = EventEmitter()
        calls = []

        def broken(value):
            raise RuntimeError("boom")

        emitter.subscribe("changed", broken)
        emitter.subscribe("changed", calls.append)
        emitter.emit("changed", 7)
        assert calls == [7]

    def test_batch_defers_until_outermost_exit(self):
        emitter = EventEmitter()
        calls = []
        emitter.subscribe("a", lambda: calls.append("a"))
        emitter.subscribe("b", lambda: calls.append("b"))

        with emitter.batch():
            emitter.emit("a")
            with emitter.batch():
                emitter.emit("b")
            assert calls == []
        assert calls == ["a", "b"]

    def test_batch_flushes_on_exception(self):
        emitter = EventEmitter()
        calls = []
        emitter.subscribe("a", lambda: calls.append("a"))
        try:
            with emitter.batch():
                emitter.emit("a")
                raise ValueError("stop")
        except ValueError:
            pass
        assert calls == ["a"]
