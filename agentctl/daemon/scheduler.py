"""Timer and periodic-task scheduling for the daemon.

The scheduler is an explicit object owned by the Daemon rather than ambient
module state: StateManager (debounced persistence) and FuseEngine (expiry
timers) receive it by injection, and a single stop() tears every timer down.

One threading.Timer per delayed call. Fuse cardinality is bounded by the
number of concurrently active working directories, so this stays small.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)


class TimerHandle:
    """Handle for a delayed call; cancel() is idempotent."""

    def __init__(self, scheduler: Scheduler, timer: threading.Timer):
        self._scheduler = scheduler
        self._timer = timer

    def cancel(self) -> None:
        self._timer.cancel()
        self._scheduler._discard(self)

    @property
    def active(self) -> bool:
        return self._timer.is_alive() and not self._timer.finished.is_set()


class PeriodicTask:
    """Runs a callback every ``interval`` seconds on its own daemon thread."""

    def __init__(self, name: str, interval: float, callback: Callable[[], Any]):
        self.name = name
        self.interval = interval
        self.callback = callback
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run, name=f"agentctl-{self.name}", daemon=True)
        self._thread.start()

    def stop(self, join_timeout: float | None = 5.0) -> None:
        self._stop.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=join_timeout)

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self.callback()
            except Exception:
                logger.exception(f"Periodic task '{self.name}' failed")


class Scheduler:
    """Owns every timer and periodic task the daemon arms.

    USAGE:
        scheduler = Scheduler()
        handle = scheduler.call_later(1.0, state.persist)
        scheduler.every(30.0, tracker_sweep, name="launch-cleanup")
        scheduler.start()
        ...
        scheduler.stop()  # cancels everything
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._timers: set[TimerHandle] = set()
        self._periodic: list[PeriodicTask] = []
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> TimerHandle:
        """Run ``callback(*args)`` once after ``delay`` seconds."""
        handle: TimerHandle | None = None

        def fire() -> None:
            if handle is not None:
                self._discard(handle)
            try:
                callback(*args)
            except Exception:
                logger.exception(f"Timer callback {getattr(callback, '__name__', callback)!r} failed")

        timer = threading.Timer(max(0.0, delay), fire)
        timer.daemon = True
        handle = TimerHandle(self, timer)
        with self._lock:
            self._timers.add(handle)
        timer.start()
        return handle

    def every(self, interval: float, callback: Callable[[], Any], name: str) -> PeriodicTask:
        """Register a periodic task; it starts with the scheduler."""
        task = PeriodicTask(name, interval, callback)
        with self._lock:
            self._periodic.append(task)
            running = self._running
        if running:
            task.start()
        return task

    def start(self) -> None:
        with self._lock:
            if self._running:
                return
            self._running = True
            tasks = list(self._periodic)
        for task in tasks:
            task.start()

    def stop(self) -> None:
        """Stop periodic tasks and cancel every outstanding timer."""
        with self._lock:
            self._running = False
            tasks = list(self._periodic)
            self._periodic.clear()
            timers = list(self._timers)
            self._timers.clear()
        for task in tasks:
            task.stop()
        for handle in timers:
            handle._timer.cancel()

    def pending_timers(self) -> int:
        with self._lock:
            return len(self._timers)

    def _discard(self, handle: TimerHandle) -> None:
        with self._lock:
            self._timers.discard(handle)
