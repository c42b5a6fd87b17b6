"""Top-level supervisor: wires state, locks, fuses and session tracking.

The Daemon owns the scheduler and every component. A transport (socket
server, HTTP, tests) calls ``handle(method, params)`` and gets back plain
JSON-ready values; errors surface as exceptions from the component that
raised them (LockError, AdapterError, DaemonError, ...).

USAGE:
    daemon = Daemon(load_config(), adapters)
    daemon.start()
    daemon.handle("session.list", {"all": True})
    daemon.shutdown()
"""

import logging
import os
import time
from collections.abc import Callable, Mapping
from datetime import datetime
from pathlib import Path
from typing import Any

from filelock import FileLock
from filelock import Timeout as FileLockTimeout
from pydantic import BaseModel

from agentctl import __version__
from agentctl.core.adapters import AdapterUnavailable, AgentAdapter, UnknownAdapter
from agentctl.core.config import DaemonConfig, default_config_dir
from agentctl.core.models import (
    FuseAction,
    LaunchOptions,
    Lock,
    LockType,
    PeekOptions,
    SessionRecord,
    SessionStatus,
    StopOptions,
    is_pending_id,
    utc_now,
)
from agentctl.core.utils import canonicalize_directory, is_process_alive
from agentctl.daemon.discovery import discover_all
from agentctl.daemon.events import EventEmitter
from agentctl.daemon.fuse_engine import FuseEngine, NoActiveFuse
from agentctl.daemon.lock_manager import LockManager
from agentctl.daemon.metrics import MetricsRegistry
from agentctl.daemon.migration import migrate_locks
from agentctl.daemon.scheduler import Scheduler
from agentctl.daemon.session_tracker import (
    ReconcileResult,
    SessionTracker,
    filter_sessions,
    merge_session,
)
from agentctl.daemon.state import StateManager

logger = logging.getLogger(__name__)

SINGLETON_LOCK_FILE = "agentctl.lock"
PID_FILE = "agentctl.pid"


class DaemonError(Exception):
    """Base error for daemon requests."""

    pass


class DaemonAlreadyRunning(DaemonError):
    """Another daemon holds the singleton lock for this config directory."""

    pass


class UnknownMethod(DaemonError):
    """Request named a method the daemon does not expose."""

    pass


class InvalidParams(DaemonError):
    """A required request parameter is missing."""

    pass


class SessionNotFound(DaemonError):
    """No tracked or discovered session matches the id."""

    pass


class DirectoryLocked(DaemonError):
    """Launch refused because the working directory is locked."""

    pass


def _dump(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json", by_alias=True)
    if isinstance(value, list):
        return [_dump(v) for v in value]
    return value


def _directory_locked(lock: Lock) -> DirectoryLocked:
    if lock.type == LockType.MANUAL:
        reason = f": {lock.reason}" if lock.reason else ""
        return DirectoryLocked(
            f"Directory locked by {lock.locked_by or 'unknown'}{reason}. Use --force to override."
        )
    return DirectoryLocked(
        f"Directory in use by session {(lock.session_id or '')[:8]}. Use --force to override."
    )


def _require(params: Mapping[str, Any], key: str) -> Any:
    value = params.get(key)
    if value is None or value == "":
        raise InvalidParams(f"Missing required parameter: {key}")
    return value


class Daemon:
    """Owns the components and dispatches requests to them."""

    def __init__(
        self,
        config: DaemonConfig | None = None,
        adapters: Mapping[str, AgentAdapter] | None = None,
        config_dir: Path | None = None,
        scheduler: Scheduler | None = None,
        clock: Callable[[], datetime] = utc_now,
        is_alive: Callable[[int], bool] = is_process_alive,
    ):
        self.config = config or DaemonConfig()
        self.adapters = dict(adapters or {})
        self.config_dir = Path(config_dir or default_config_dir())
        self.scheduler = scheduler or Scheduler()
        self.emitter = EventEmitter()
        self._clock = clock
        self._is_alive = is_alive

        self.state: StateManager | None = None
        self.locks: LockManager | None = None
        self.fuses: FuseEngine | None = None
        self.tracker: SessionTracker | None = None
        self.metrics: MetricsRegistry | None = None

        self._singleton: FileLock | None = None
        self._started_at: float | None = None

        self._methods: dict[str, Callable[[Mapping[str, Any]], Any]] = {
            "session.list": self._session_list,
            "session.status": self._session_status,
            "session.peek": self._session_peek,
            "session.launch": self._session_launch,
            "session.stop": self._session_stop,
            "session.resume": self._session_resume,
            "session.prune": self._session_prune,
            "lock.list": self._lock_list,
            "lock.acquire": self._lock_acquire,
            "lock.release": self._lock_release,
            "fuse.list": self._fuse_list,
            "fuse.set": self._fuse_set,
            "fuse.extend": self._fuse_extend,
            "fuse.cancel": self._fuse_cancel,
            "daemon.status": self._daemon_status,
        }

    # --- Lifecycle ---

    @property
    def running(self) -> bool:
        return self._started_at is not None

    def start(self) -> None:
        """Acquire the singleton lock, load state, and start background work.

        Raises:
            DaemonAlreadyRunning: If another daemon uses this config directory
        """
        if self.running:
            return
        self.config_dir.mkdir(parents=True, exist_ok=True)

        singleton = FileLock(str(self.config_dir / SINGLETON_LOCK_FILE), timeout=0)
        try:
            singleton.acquire()
        except FileLockTimeout as e:
            raise DaemonAlreadyRunning(
                f"Another agentctl daemon is running for {self.config_dir}"
            ) from e
        self._singleton = singleton

        try:
            migrate_locks(self.config_dir)
            state = StateManager.load(
                self.config_dir, scheduler=self.scheduler, debounce=self.config.debounce
            )
            self._build(state)

            dead = self._sweep_dead_launches()
            if dead:
                logger.info(f"Startup cleanup: marked {len(dead)} dead launch(es) as stopped")
            self.fuses.resume_timers()

            self.scheduler.every(
                self.config.launch_cleanup_interval, self._sweep_dead_launches, name="launch-cleanup"
            )
            self.scheduler.every(
                self.config.pending_resolution_interval,
                self._resolve_pending,
                name="pending-resolution",
            )
            (self.config_dir / PID_FILE).write_text(str(os.getpid()))
            self.scheduler.start()
        except Exception:
            singleton.release()
            self._singleton = None
            raise

        self._started_at = time.monotonic()
        logger.info(
            f"agentctl daemon started (pid {os.getpid()}, {len(self.adapters)} adapter(s), "
            f"state in {self.config_dir})"
        )

    def shutdown(self) -> None:
        """Stop timers and write a final, complete snapshot of state."""
        if not self.running:
            return
        self.scheduler.stop()
        self.fuses.shutdown()
        self.state.flush()
        try:
            self.state.persist()
        except OSError as e:
            logger.error(f"Final state write failed: {e}")

        (self.config_dir / PID_FILE).unlink(missing_ok=True)
        if self._singleton is not None:
            self._singleton.release()
            self._singleton = None
        self._started_at = None
        logger.info("agentctl daemon stopped")

    def __enter__(self) -> "Daemon":
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.shutdown()

    def _build(self, state: StateManager) -> None:
        self.state = state
        self.locks = LockManager(state)
        self.fuses = FuseEngine(
            state,
            self.scheduler,
            emitter=self.emitter,
            default_ttl=self.config.fuse_ttl,
            script_timeout=self.config.script_timeout,
            webhook_timeout=self.config.webhook_timeout,
            clock=self._clock,
        )
        self.tracker = SessionTracker(
            state,
            self.adapters,
            grace_period=self.config.grace_period,
            discovery_timeout=self.config.adapter_timeout,
            clock=self._clock,
            is_alive=self._is_alive,
        )
        self.metrics = MetricsRegistry(self.tracker, self.locks, self.fuses)
        self.emitter.on("fuse.expired", self.metrics.record_fuse_fired)

    # --- Dispatch ---

    def handle(self, method: str, params: Mapping[str, Any] | None = None) -> Any:
        """Run one request and return a JSON-ready result.

        Raises:
            DaemonError: If the daemon is not running or the method is unknown
        """
        if not self.running:
            raise DaemonError("Daemon is not running")
        handler = self._methods.get(method)
        if handler is None:
            raise UnknownMethod(f"Unknown method: {method}")
        return handler(params or {})

    # --- Background sweeps ---

    def _sweep_dead_launches(self) -> list[str]:
        dead = self.tracker.cleanup_dead_launches()
        for session_id in dead:
            self._on_session_stopped(session_id)
        return dead

    def _resolve_pending(self) -> dict[str, str]:
        resolved = self.tracker.resolve_pending_sessions()
        for old_id, new_id in resolved.items():
            self._on_session_resolved(old_id, new_id)
        return resolved

    def _apply_reconcile(self, result: ReconcileResult) -> None:
        for old_id, new_id in result.resolved.items():
            self._on_session_resolved(old_id, new_id)
        for session_id in result.stopped_ids:
            if session_id not in result.resolved:
                self._on_session_stopped(session_id)

    def _on_session_resolved(self, old_id: str, new_id: str) -> None:
        self.locks.update_auto_lock_session_id(old_id, new_id)
        self.emitter.emit("session.resolved", {"old_id": old_id, "new_id": new_id})

    def _on_session_stopped(self, session_id: str) -> None:
        """Release the session's auto-locks and arm a fuse on its directory."""
        with self.state.lock:
            self.locks.auto_unlock(session_id)
            record = self.state.get_session(session_id)
            if record is None:
                return

            duration = record.duration_seconds()
            if record.status == SessionStatus.COMPLETED:
                self.metrics.record_session_completed(duration)
            elif record.status in (SessionStatus.FAILED, SessionStatus.ERROR):
                self.metrics.record_session_failed(duration)
            else:
                self.metrics.record_session_stopped(duration)

            # Another session still working in the directory keeps it busy
            if self.config.arm_fuse_on_exit and record.cwd and self.locks.check(record.cwd) is None:
                self.fuses.set_fuse(record.cwd, session_id)
        self.emitter.emit("session.stopped", record)

    def _resolve_id(self, id_or_prefix: str) -> tuple[str, SessionRecord | None]:
        """Expand a prefix and resolve a placeholder on demand."""
        record = self.tracker.get_session(id_or_prefix)
        session_id = record.id if record else id_or_prefix
        if is_pending_id(session_id):
            resolved = self.tracker.resolve_pending_id(session_id)
            if resolved != session_id:
                self._on_session_resolved(session_id, resolved)
                session_id = resolved
                record = self.tracker.get_session(resolved)
        return session_id, record

    def _adapter(self, name: str) -> AgentAdapter:
        adapter = self.adapters.get(name)
        if adapter is None:
            raise UnknownAdapter(f"Unknown adapter: {name}")
        return adapter

    # --- Sessions ---

    def _session_list(self, params: Mapping[str, Any]) -> dict[str, Any]:
        adapter_filter = params.get("adapter")
        if adapter_filter:
            self._adapter(adapter_filter)
        round_ = discover_all(
            self.adapters,
            self.config.adapter_timeout,
            only=[adapter_filter] if adapter_filter else None,
        )
        result = self.tracker.reconcile_and_enrich(round_.sessions, round_.succeeded)
        self._apply_reconcile(result)

        sessions = filter_sessions(
            result.sessions,
            status=params.get("status"),
            all=bool(params.get("all")),
            group=params.get("group"),
        )
        return {"sessions": _dump(sessions), "warnings": round_.warnings()}

    def _session_status(self, params: Mapping[str, Any]) -> dict[str, Any]:
        session_id, record = self._resolve_id(_require(params, "id"))
        adapter_name = params.get("adapter") or (record.adapter if record else None)
        if adapter_name:
            self._adapter(adapter_name)

        round_ = discover_all(
            self.adapters,
            self.config.adapter_timeout,
            only=[adapter_name] if adapter_name else None,
        )
        match = next((s for s in round_.sessions if s.id == session_id), None)
        if match is None:
            prefixed = [s for s in round_.sessions if s.id.startswith(session_id)]
            if len(prefixed) == 1:
                match = prefixed[0]
        if match is not None:
            launch = self.tracker.get_session(match.id)
            return _dump(merge_session(match, launch, self._clock()))

        if record is not None:
            return _dump(record)
        if adapter_name and adapter_name not in round_.succeeded:
            raise AdapterUnavailable(
                f"Adapter {adapter_name} did not answer; cannot look up {session_id}"
            )
        raise SessionNotFound(f"Session not found: {session_id}")

    def _session_peek(self, params: Mapping[str, Any]) -> str:
        session_id, record = self._resolve_id(_require(params, "id"))
        adapter_name = (
            params.get("adapter")
            or (record.adapter if record else None)
            or self.config.default_adapter
        )
        return self._adapter(adapter_name).peek(session_id, PeekOptions(lines=params.get("lines")))

    def _session_launch(self, params: Mapping[str, Any]) -> dict[str, Any]:
        adapter_name = params.get("adapter") or self.config.default_adapter
        adapter = self._adapter(adapter_name)
        cwd = params.get("cwd")
        force = bool(params.get("force"))
        if cwd:
            cwd = canonicalize_directory(cwd)
            with self.state.lock:
                lock = self.locks.check(cwd)
                if lock is not None and not force:
                    raise _directory_locked(lock)
                self.fuses.cancel_fuse(cwd)

        session = adapter.launch(
            LaunchOptions(
                adapter=adapter_name,
                prompt=_require(params, "prompt"),
                spec=params.get("spec"),
                cwd=cwd,
                model=params.get("model"),
                env=params.get("env"),
                adapter_opts=params.get("adapter_opts"),
            )
        )
        if params.get("group"):
            session.group = params["group"]

        with self.state.lock:
            record = self.tracker.track(session, adapter_name)
            if cwd:
                # The directory was unlocked while the adapter was launching
                lock = self.locks.check(cwd)
                if lock is not None and not force and lock.session_id != session.id:
                    owner = lock.locked_by if lock.type == LockType.MANUAL else lock.session_id
                    logger.warning(
                        f"{cwd} gained a {lock.type.value} lock ({owner or 'unknown'}) "
                        f"while session {session.id} was launching"
                    )
                self.fuses.cancel_fuse(cwd)
                self.locks.auto_lock(cwd, session.id)
        logger.info(f"Launched {adapter_name} session {session.id} in {cwd or '(no cwd)'}")
        return _dump(record)

    def _session_stop(self, params: Mapping[str, Any]) -> None:
        requested = _require(params, "id")
        session_id, record = self._resolve_id(requested)
        force = bool(params.get("force"))

        # A placeholder whose process is gone has nothing left to stop
        if (
            is_pending_id(session_id)
            and force
            and record is not None
            and record.pid
            and not self._is_alive(record.pid)
        ):
            with self.state.lock:
                self.locks.auto_unlock(session_id)
                self.tracker.remove_session(session_id)
            logger.info(f"Removed ghost placeholder {session_id}")
            return None

        adapter_name = params.get("adapter") or (record.adapter if record else None)
        if not adapter_name:
            raise SessionNotFound(
                f"Session not found: {requested}. Specify an adapter to stop a non-daemon session."
            )
        self._adapter(adapter_name).stop(session_id, StopOptions(force=force))

        # A sweep may have stopped the session while the adapter was busy
        with self.state.lock:
            if self.tracker.on_session_exit(session_id):
                self._on_session_stopped(session_id)
            else:
                self.locks.auto_unlock(session_id)
        return None

    def _session_resume(self, params: Mapping[str, Any]) -> None:
        requested = _require(params, "id")
        session_id, record = self._resolve_id(requested)
        adapter_name = params.get("adapter") or (record.adapter if record else None)
        if not adapter_name:
            raise SessionNotFound(
                f"Session not found: {requested}. Specify an adapter to resume a non-daemon session."
            )
        self._adapter(adapter_name).resume(session_id, _require(params, "message"))
        return None

    def _session_prune(self, params: Mapping[str, Any]) -> dict[str, int]:
        return {"pruned": len(self._sweep_dead_launches())}

    # --- Locks ---

    def _lock_list(self, params: Mapping[str, Any]) -> list[dict[str, Any]]:
        return _dump(self.locks.list_all())

    def _lock_acquire(self, params: Mapping[str, Any]) -> dict[str, Any]:
        lock = self.locks.manual_lock(
            _require(params, "directory"), by=params.get("by"), reason=params.get("reason")
        )
        return _dump(lock)

    def _lock_release(self, params: Mapping[str, Any]) -> None:
        self.locks.manual_unlock(_require(params, "directory"))
        return None

    # --- Fuses ---

    def _fuse_list(self, params: Mapping[str, Any]) -> list[dict[str, Any]]:
        return _dump(self.fuses.list_active())

    def _fuse_set(self, params: Mapping[str, Any]) -> dict[str, Any]:
        on_expire = params.get("on_expire")
        fuse = self.fuses.set_fuse(
            _require(params, "directory"),
            _require(params, "session_id"),
            ttl=params.get("ttl"),
            on_expire=FuseAction.model_validate(on_expire) if on_expire else None,
            label=params.get("label"),
        )
        return _dump(fuse)

    def _fuse_extend(self, params: Mapping[str, Any]) -> dict[str, Any]:
        directory = _require(params, "directory")
        fuse = self.fuses.extend_fuse(directory, ttl=params.get("ttl"))
        if fuse is None:
            raise NoActiveFuse(f"No active fuse for directory: {directory}")
        return _dump(fuse)

    def _fuse_cancel(self, params: Mapping[str, Any]) -> dict[str, bool]:
        return {"cancelled": self.fuses.cancel_fuse(_require(params, "directory"))}

    # --- Daemon ---

    def _daemon_status(self, params: Mapping[str, Any]) -> dict[str, Any]:
        return {
            "pid": os.getpid(),
            "version": __version__,
            "uptime": time.monotonic() - self._started_at,
            "sessions": self.tracker.active_count(),
            "locks": len(self.locks.list_all()),
            "fuses": len(self.fuses.list_active()),
            "adapters": sorted(self.adapters),
            "metrics": self.metrics.snapshot(),
        }
