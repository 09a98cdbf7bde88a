"""Tests for counters and gateway events."""

import pytest

from bulwark.observability.metrics import Counter, GatewayEvent, MetricsRecorder


class TestCounter:
    def test_inc_and_get(self):
        counter = Counter("requests_total")
        counter.inc(result="fresh")
        counter.inc(2, result="fresh")
        counter.inc(result="miss")
        assert counter.get(result="fresh") == 3
        assert counter.get(result="stale") == 0
        assert counter.total() == 4

    def test_label_order_irrelevant(self):
        counter = Counter("c")
        counter.inc(a="1", b="2")
        assert counter.get(b="2", a="1") == 1

    def test_cannot_decrease(self):
        with pytest.raises(ValueError):
            Counter("c").inc(-1)

    def test_collect(self):
        counter = Counter("c")
        counter.inc(result="miss")
        assert counter.collect() == [
            {"name": "c", "type": "counter", "labels": {"result": "miss"}, "value": 1.0}
        ]


class TestMetricsRecorder:
    def test_record_and_value(self):
        recorder = MetricsRecorder()
        recorder.record("limiter_decisions_total", allowed=False, scope="key")
        assert recorder.value("limiter_decisions_total", allowed=False, scope="key") == 1
        assert recorder.value("limiter_decisions_total", allowed=True, scope="none") == 0

    def test_listeners_receive_events(self):
        recorder = MetricsRecorder()
        events: list[GatewayEvent] = []
        unsubscribe = recorder.subscribe(events.append)

        recorder.record("breaker_transitions_total", breaker="billing", to_state="open")
        unsubscribe()
        recorder.record("breaker_transitions_total", breaker="billing", to_state="closed")

        assert len(events) == 1
        assert events[0].name == "breaker_transitions_total"
        assert events[0].labels == {"breaker": "billing", "to_state": "open"}

    def test_failing_listener_does_not_break_recording(self):
        recorder = MetricsRecorder()
        seen = []

        def broken(event):
            raise RuntimeError("listener bug")

        recorder.subscribe(broken)
        recorder.subscribe(seen.append)
        recorder.record("cache_requests_total", result="miss")

        assert recorder.value("cache_requests_total", result="miss") == 1
        assert len(seen) == 1

    def test_snapshot(self):
        recorder = MetricsRecorder()
        recorder.record("a_total", x="1")
        recorder.record("b_total")
        names = sorted(item["name"] for item in recorder.snapshot())
        assert names == ["a_total", "b_total"]
