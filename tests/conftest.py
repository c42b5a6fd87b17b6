# conftest.py - Shared pytest fixtures for all tests
"""Shared pytest fixtures for the agentctl test suite.

This module provides the fixtures used across test modules:
- A fake clock and a manual scheduler, so no real timers run
- A temporary config/state directory and a loaded StateManager
- Lock, fuse and session components wired to those fakes
- A scriptable in-memory adapter

Usage:
    Fixtures are discovered implicitly by pytest. Timers only fire when a
    test calls ``scheduler.advance(seconds)``.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from agentctl.core.adapters import AdapterError, AgentAdapter
from agentctl.core.models import (
    AgentSession,
    DiscoveredSession,
    LaunchOptions,
    LifecycleEvent,
    PeekOptions,
    SessionRecord,
    SessionStatus,
    StopOptions,
    pending_id_for,
)
from agentctl.daemon.events import EventEmitter
from agentctl.daemon.fuse_engine import FuseEngine
from agentctl.daemon.lock_manager import LockManager
from agentctl.daemon.session_tracker import SessionTracker
from agentctl.daemon.state import StateManager

# =============================================================================
# Time and Scheduling Fakes
# =============================================================================


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 15, 12, 0, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class ManualTimerHandle:
    def __init__(self, when: datetime, callback: Callable[..., Any], args: tuple):
        self.when = when
        self.callback = callback
        self.args = args
        self.cancelled = False
        self.fired = False

    def cancel(self) -> None:
        self.cancelled = True

    @property
    def active(self) -> bool:
        return not self.cancelled and not self.fired


class ManualScheduler:
    """Scheduler stand-in: timers are due on the FakeClock and fire in advance()."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.timers: list[ManualTimerHandle] = []
        self.periodic: dict[str, tuple[float, Callable[[], Any]]] = {}
        self.started = False

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> ManualTimerHandle:
        handle = ManualTimerHandle(self.clock() + timedelta(seconds=delay), callback, args)
        self.timers.append(handle)
        return handle

    def every(self, interval: float, callback: Callable[[], Any], name: str) -> None:
        self.periodic[name] = (interval, callback)

    def start(self) -> None:
        self.started = True

    def stop(self) -> None:
        self.started = False
        self.periodic.clear()
        for handle in self.timers:
            handle.cancel()

    def pending(self) -> list[ManualTimerHandle]:
        return [h for h in self.timers if h.active]

    def advance(self, seconds: float) -> None:
        """Move the clock forward, firing due timers in order."""
        target = self.clock() + timedelta(seconds=seconds)
        while True:
            due = sorted((h for h in self.timers if h.active and h.when <= target), key=lambda h: h.when)
            if not due:
                break
            handle = due[0]
            if handle.when > self.clock.now:
                self.clock.now = handle.when
            handle.fired = True
            handle.callback(*handle.args)
        self.clock.now = target

    def run_periodic(self, name: str) -> Any:
        return self.periodic[name][1]()


# =============================================================================
# Adapter Fake
# =============================================================================


class FakeAdapter(AgentAdapter):
    """In-memory adapter whose discovery results are set by the test."""

    def __init__(self, name: str = "claude-code", sessions: list[DiscoveredSession] | None = None):
        self.name = name
        self.sessions = list(sessions or [])
        self.error: Exception | None = None
        self.discover_calls = 0
        self.launch_id: str | None = None
        self.launch_pid: int | None = 4242
        self.launched: list[LaunchOptions] = []
        self.stopped: list[str] = []
        self.resumed: list[tuple[str, str]] = []
        self.lifecycle: list[LifecycleEvent] = []

    def discover(self) -> list[DiscoveredSession]:
        self.discover_calls += 1
        if self.error is not None:
            raise self.error
        return [s.model_copy() for s in self.sessions]

    def is_alive(self, session_id: str) -> bool:
        return any(s.id == session_id and s.status == SessionStatus.RUNNING for s in self.sessions)

    def peek(self, session_id: str, opts: PeekOptions | None = None) -> str:
        lines = opts.lines if opts and opts.lines else 10
        return f"{session_id}: last {lines} lines"

    def status(self, session_id: str) -> AgentSession:
        for s in self.sessions:
            if s.id == session_id:
                return AgentSession(id=s.id, adapter=self.name, status=s.status, pid=s.pid, cwd=s.cwd)
        raise AdapterError(f"Session not found: {session_id}")

    def launch(self, opts: LaunchOptions) -> AgentSession:
        self.launched.append(opts)
        session_id = self.launch_id or pending_id_for(self.launch_pid)
        return AgentSession(
            id=session_id,
            adapter=self.name,
            status=SessionStatus.RUNNING,
            cwd=opts.cwd,
            spec=opts.spec,
            model=opts.model,
            prompt=opts.prompt,
            pid=self.launch_pid,
        )

    def stop(self, session_id: str, opts: StopOptions | None = None) -> None:
        self.stopped.append(session_id)

    def resume(self, session_id: str, message: str) -> None:
        self.resumed.append((session_id, message))

    def events(self) -> Iterator[LifecycleEvent]:
        yield from self.lifecycle


# =============================================================================
# Factories
# =============================================================================


@pytest.fixture
def make_discovered() -> Callable[..., DiscoveredSession]:
    """Factory for discovered-session entries (running, adapter claude-code)."""

    def factory(session_id: str, **fields: Any) -> DiscoveredSession:
        fields.setdefault("status", SessionStatus.RUNNING)
        fields.setdefault("adapter", "claude-code")
        return DiscoveredSession(id=session_id, **fields)

    return factory


@pytest.fixture
def make_record(clock: FakeClock) -> Callable[..., SessionRecord]:
    """Factory for launch records; ``age`` is seconds before the fake clock's now."""

    def factory(session_id: str, age: float = 120.0, **fields: Any) -> SessionRecord:
        fields.setdefault("status", SessionStatus.RUNNING)
        fields.setdefault("adapter", "claude-code")
        return SessionRecord(
            id=session_id, started_at=clock() - timedelta(seconds=age), **fields
        )

    return factory


# =============================================================================
# Component Fixtures
# =============================================================================


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def scheduler(clock: FakeClock) -> ManualScheduler:
    return ManualScheduler(clock)


@pytest.fixture
def config_dir(tmp_path: Path) -> Path:
    """Empty agentctl state directory."""
    path = tmp_path / "agentctl"
    path.mkdir()
    return path


@pytest.fixture
def state(config_dir: Path, scheduler: ManualScheduler) -> StateManager:
    return StateManager.load(config_dir, scheduler=scheduler, debounce=1.0)


@pytest.fixture
def lock_manager(state: StateManager) -> LockManager:
    return LockManager(state)


@pytest.fixture
def emitter() -> EventEmitter:
    return EventEmitter()


@pytest.fixture
def fuse_engine(
    state: StateManager, scheduler: ManualScheduler, emitter: EventEmitter, clock: FakeClock
) -> Iterator[FuseEngine]:
    engine = FuseEngine(state, scheduler, emitter=emitter, default_ttl=600.0, clock=clock)
    yield engine
    engine.shutdown(wait=True)


@pytest.fixture
def adapter() -> FakeAdapter:
    return FakeAdapter("claude-code")


@pytest.fixture
def alive_pids() -> set[int]:
    """Pids the liveness probe reports as running. Tests add to it."""
    return set()


@pytest.fixture
def tracker(
    state: StateManager, adapter: FakeAdapter, clock: FakeClock, alive_pids: set[int]
) -> SessionTracker:
    return SessionTracker(
        state,
        {adapter.name: adapter},
        grace_period=30.0,
        discovery_timeout=2.0,
        clock=clock,
        is_alive=lambda pid: pid in alive_pids,
    )


@pytest.fixture
def make_adapter() -> type[FakeAdapter]:
    """The FakeAdapter class, for tests that need several adapters."""
    return FakeAdapter


@pytest.fixture
def new_scheduler(clock: FakeClock) -> Callable[[], ManualScheduler]:
    """Factory for additional schedulers on the shared clock (daemon restarts)."""
    return lambda: ManualScheduler(clock)
