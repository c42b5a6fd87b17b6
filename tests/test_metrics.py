"""Tests for the metrics registry.

Gauges are read live from the tracker/lock/fuse components; counters only
move through the record_* methods.
"""

import pytest

from agentctl.daemon.metrics import DURATION_BUCKETS, MetricsRegistry


@pytest.fixture
def metrics(tracker, lock_manager, fuse_engine) -> MetricsRegistry:
    return MetricsRegistry(tracker, lock_manager, fuse_engine)


class TestGauges:
    """Tests for values derived from live state."""

    def test_empty_snapshot(self, metrics: MetricsRegistry):
        snapshot = metrics.snapshot()

        assert snapshot["sessions_active"] == 0
        assert snapshot["locks_active"] == {"auto": 0, "manual": 0}
        assert snapshot["fuses_active"] == 0
        assert snapshot["fuses_fired_total"] == 0
        assert snapshot["session_duration_seconds"]["count"] == 0

    def test_gauges_follow_state(
        self, metrics: MetricsRegistry, state, make_record, lock_manager, fuse_engine
    ):
        state.set_session("a", make_record("a"))
        lock_manager.auto_lock("/repo", "a")
        lock_manager.manual_lock("/other", by="alice")
        fuse_engine.set_fuse("/idle", "b")

        snapshot = metrics.snapshot()

        assert snapshot["sessions_active"] == 1
        assert snapshot["locks_active"] == {"auto": 1, "manual": 1}
        assert snapshot["fuses_active"] == 1


class TestCounters:
    """Tests for record_* counters and the duration histogram."""

    def test_session_outcomes(self, metrics: MetricsRegistry):
        metrics.record_session_completed(30)
        metrics.record_session_failed(400)
        metrics.record_session_stopped()

        assert metrics.snapshot()["sessions_total"] == {"completed": 1, "failed": 1, "stopped": 1}

    def test_duration_histogram_is_cumulative(self, metrics: MetricsRegistry):
        for duration in (30, 200, 5000, 10000):
            metrics.record_session_completed(duration)

        histogram = metrics.snapshot()["session_duration_seconds"]

        assert histogram["buckets"]["60"] == 1
        assert histogram["buckets"]["300"] == 2
        assert histogram["buckets"]["7200"] == 3
        assert histogram["buckets"]["+Inf"] == 4
        assert histogram["sum"] == 15230
        assert histogram["count"] == 4

    def test_histogram_keeps_aggregates_only(self, metrics: MetricsRegistry):
        """Recording many sessions leaves the histogram at one counter per bucket."""
        for _ in range(1000):
            metrics.record_session_stopped(90)
        metrics.record_session_stopped(None)

        histogram = metrics.snapshot()["session_duration_seconds"]

        assert len(histogram["buckets"]) == len(DURATION_BUCKETS) + 1
        assert histogram["buckets"]["60"] == 0
        assert histogram["buckets"]["300"] == 1000
        assert (histogram["sum"], histogram["count"]) == (90000, 1000)
        assert metrics.snapshot()["sessions_total"]["stopped"] == 1001

    def test_fuse_fired(self, metrics: MetricsRegistry, fuse_engine, emitter, scheduler):
        emitter.on("fuse.expired", metrics.record_fuse_fired)
        fuse_engine.set_fuse("/repo", "s1", ttl=5)

        scheduler.advance(5)

        assert metrics.snapshot()["fuses_fired_total"] == 1
