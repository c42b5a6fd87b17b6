"""Aggregate counters read by an external metrics formatter."""

import threading
from typing import Any

from agentctl.core.models import FuseTimer
from agentctl.daemon.fuse_engine import FuseEngine
from agentctl.daemon.lock_manager import LockManager
from agentctl.daemon.session_tracker import SessionTracker

# Upper bounds (seconds) of the session duration histogram
DURATION_BUCKETS = (60, 300, 600, 1800, 3600, 7200)


class MetricsRegistry:
    """Gauges derived from live state plus monotonically increasing counters."""

    def __init__(self, tracker: SessionTracker, locks: LockManager, fuses: FuseEngine):
        self.tracker = tracker
        self.locks = locks
        self.fuses = fuses
        self._lock = threading.Lock()
        self.sessions_completed_total = 0
        self.sessions_failed_total = 0
        self.sessions_stopped_total = 0
        self.fuses_fired_total = 0
        # Cumulative: each bucket counts durations at or below its bound
        self._duration_buckets = dict.fromkeys(DURATION_BUCKETS, 0)
        self._duration_sum = 0.0
        self._duration_count = 0

    def record_session_completed(self, duration_seconds: float | None = None) -> None:
        with self._lock:
            self.sessions_completed_total += 1
            self._add_duration(duration_seconds)

    def record_session_failed(self, duration_seconds: float | None = None) -> None:
        with self._lock:
            self.sessions_failed_total += 1
            self._add_duration(duration_seconds)

    def record_session_stopped(self, duration_seconds: float | None = None) -> None:
        with self._lock:
            self.sessions_stopped_total += 1
            self._add_duration(duration_seconds)

    def record_fuse_fired(self, fuse: FuseTimer | None = None) -> None:
        with self._lock:
            self.fuses_fired_total += 1

    def _add_duration(self, duration_seconds: float | None) -> None:
        if duration_seconds is None:
            return
        for bound in DURATION_BUCKETS:
            if duration_seconds <= bound:
                self._duration_buckets[bound] += 1
        self._duration_sum += duration_seconds
        self._duration_count += 1

    def snapshot(self) -> dict[str, Any]:
        """Current values as a plain dict."""
        lock_counts = self.locks.counts()
        with self._lock:
            buckets = {str(bound): n for bound, n in self._duration_buckets.items()}
            buckets["+Inf"] = self._duration_count
            histogram = {
                "buckets": buckets,
                "sum": self._duration_sum,
                "count": self._duration_count,
            }
            counters = {
                "completed": self.sessions_completed_total,
                "failed": self.sessions_failed_total,
                "stopped": self.sessions_stopped_total,
            }
            fired = self.fuses_fired_total
        return {
            "sessions_active": self.tracker.active_count(),
            "locks_active": lock_counts,
            "fuses_active": len(self.fuses.list_active()),
            "sessions_total": counters,
            "fuses_fired_total": fired,
            "session_duration_seconds": histogram,
        }
