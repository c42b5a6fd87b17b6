"""Per-directory TTL fuses.

A fuse is armed on a directory when its agent session exits. If nothing
re-arms, extends or cancels it before the TTL elapses, it fires: the
persisted entry is removed first, then the configured expire actions run
best-effort on a worker pool.

Expiry times are persisted, so fuses survive a daemon restart; call
resume_timers() once after loading state.
"""

import logging
import subprocess
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from pathlib import Path

import httpx

from agentctl.core.models import FuseAction, FuseTimer, utc_now
from agentctl.core.utils import canonicalize_directory
from agentctl.daemon.events import EventEmitter
from agentctl.daemon.scheduler import Scheduler, TimerHandle
from agentctl.daemon.state import StateManager

logger = logging.getLogger(__name__)

DEFAULT_FUSE_TTL = 600.0
SCRIPT_TIMEOUT = 120.0
WEBHOOK_TIMEOUT = 30.0


class FuseError(Exception):
    """Base error for fuse operations."""

    pass


class FuseActionFailed(FuseError):
    """An expire action (script or webhook) did not complete successfully."""

    pass


class NoActiveFuse(FuseError):
    """No fuse is armed for the directory."""

    pass


class FuseEngine:
    """Arms, extends, cancels and fires per-directory fuses.

    At most one fuse exists per directory. Replacing a fuse cancels the old
    timer and installs the new persisted entry and timer under the state
    lock, so no reader ever observes the directory without a fuse in between.
    """

    def __init__(
        self,
        state: StateManager,
        scheduler: Scheduler,
        emitter: EventEmitter | None = None,
        default_ttl: float = DEFAULT_FUSE_TTL,
        script_timeout: float = SCRIPT_TIMEOUT,
        webhook_timeout: float = WEBHOOK_TIMEOUT,
        clock: Callable[[], datetime] = utc_now,
        max_workers: int = 4,
    ):
        self.state = state
        self.scheduler = scheduler
        self.emitter = emitter or EventEmitter()
        self.default_ttl = default_ttl
        self.script_timeout = script_timeout
        self.webhook_timeout = webhook_timeout
        self._clock = clock
        self._timers: dict[str, TimerHandle] = {}
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="agentctl-fuse"
        )

    # --- Queries ---

    def list_active(self) -> list[FuseTimer]:
        return self.state.get_fuses()

    def get_fuse(self, directory: str | Path) -> FuseTimer | None:
        return self.state.get_fuse(canonicalize_directory(directory))

    def armed_count(self) -> int:
        with self.state.lock:
            return len(self._timers)

    # --- Mutations ---

    def set_fuse(
        self,
        directory: str | Path,
        session_id: str,
        ttl: float | None = None,
        on_expire: FuseAction | None = None,
        label: str | None = None,
    ) -> FuseTimer:
        """Arm (or re-arm) the fuse for ``directory``."""
        directory = canonicalize_directory(directory)
        ttl = self.default_ttl if ttl is None else ttl
        if ttl <= 0:
            raise ValueError(f"Fuse ttl must be positive, got {ttl}")

        with self.state.lock:
            self.cancel_fuse(directory, persist=False)
            fuse = FuseTimer(
                directory=directory,
                ttl=ttl,
                expires_at=self._clock() + timedelta(seconds=ttl),
                session_id=session_id,
                on_expire=on_expire,
                label=label,
            )
            # add_fuse replaces the old persisted entry in one step
            self.state.add_fuse(fuse)
            self._arm(fuse, ttl)

        logger.info(f"Fuse set on {directory} ({ttl:.0f}s, session {session_id})")
        self.emitter.emit("fuse.set", fuse)
        return fuse

    def extend_fuse(self, directory: str | Path, ttl: float | None = None) -> FuseTimer | None:
        """Push a fuse's expiry out to now + ``ttl`` (default: its previous ttl).

        Returns None when no fuse exists for the directory.
        """
        directory = canonicalize_directory(directory)
        with self.state.lock:
            existing = self.state.get_fuse(directory)
            if existing is None:
                return None
            new_ttl = existing.ttl if ttl is None else ttl
            if new_ttl <= 0:
                raise ValueError(f"Fuse ttl must be positive, got {new_ttl}")
            self.cancel_fuse(directory, persist=False)
            fuse = existing.model_copy(
                update={"ttl": new_ttl, "expires_at": self._clock() + timedelta(seconds=new_ttl)}
            )
            self.state.add_fuse(fuse)
            self._arm(fuse, new_ttl)

        logger.info(f"Fuse on {directory} extended to {fuse.expires_at.isoformat()}")
        self.emitter.emit("fuse.extended", fuse)
        return fuse

    def cancel_fuse(self, directory: str | Path, persist: bool = True) -> bool:
        """Clear the timer for ``directory``.

        With ``persist=False`` only the in-memory timer is cleared; set_fuse
        and extend_fuse use it to swap in the new entry as one step.
        Returns True if there was anything to cancel.
        """
        directory = canonicalize_directory(directory)
        with self.state.lock:
            handle = self._timers.pop(directory, None)
            if handle is not None:
                handle.cancel()
            if not persist:
                return handle is not None
            removed = self.state.remove_fuse(directory)

        if removed:
            logger.info(f"Fuse on {directory} cancelled")
            self.emitter.emit("fuse.cancelled", {"directory": directory})
        return removed or handle is not None

    def resume_timers(self) -> None:
        """Re-arm persisted fuses after a restart; overdue ones fire right now."""
        now = self._clock()
        for fuse in self.state.get_fuses():
            remaining = (fuse.expires_at - now).total_seconds()
            if remaining <= 0:
                logger.info(f"Fuse on {fuse.directory} expired while the daemon was down")
                self._fire(fuse.directory, fuse.expires_at)
                continue
            with self.state.lock:
                handle = self._timers.pop(fuse.directory, None)
                if handle is not None:
                    handle.cancel()
                self._arm(fuse, remaining)
        logger.debug(f"Resumed {self.armed_count()} fuse timer(s)")

    def shutdown(self, wait: bool = False) -> None:
        """Cancel in-memory timers; persisted fuses are left for resume_timers()."""
        with self.state.lock:
            handles = list(self._timers.values())
            self._timers.clear()
        for handle in handles:
            handle.cancel()
        self._executor.shutdown(wait=wait)

    # --- Firing ---

    def _arm(self, fuse: FuseTimer, delay: float) -> None:
        self._timers[fuse.directory] = self.scheduler.call_later(
            delay, self._fire, fuse.directory, fuse.expires_at
        )

    def _fire(self, directory: str, expires_at: datetime) -> None:
        with self.state.lock:
            fuse = self.state.get_fuse(directory)
            if fuse is None or fuse.expires_at != expires_at:
                # Replaced or cancelled after this timer was armed
                logger.debug(f"Ignoring stale fuse timer for {directory}")
                return
            self._timers.pop(directory, None)
            self.state.remove_fuse(directory)

        logger.info(f"Fuse expired on {directory} (session {fuse.session_id})")
        self.emitter.emit("fuse.expired", fuse)
        if fuse.on_expire is not None:
            try:
                self._executor.submit(self.execute_actions, fuse)
            except RuntimeError:
                # Executor already shut down; run inline rather than drop the actions
                self.execute_actions(fuse)

    def execute_actions(self, fuse: FuseTimer) -> None:
        """Run every configured expire action independently. Failures are logged."""
        action = fuse.on_expire
        if action is None:
            return

        if action.script:
            try:
                self.run_script(fuse)
            except FuseActionFailed as e:
                logger.error(f"Fuse script for {fuse.directory} failed: {e}")

        if action.webhook:
            try:
                self.post_webhook(fuse)
            except FuseActionFailed as e:
                logger.error(f"Fuse webhook for {fuse.directory} failed: {e}")

        if action.event:
            self.emitter.emit(action.event, fuse)

    def run_script(self, fuse: FuseTimer) -> None:
        """Run the fuse's shell command in its directory.

        Raises:
            FuseActionFailed: On non-zero exit, timeout, or if it cannot start
        """
        if fuse.on_expire is None or not fuse.on_expire.script:
            raise FuseActionFailed(f"Fuse for {fuse.directory} has no script configured")
        try:
            result = subprocess.run(
                fuse.on_expire.script,
                shell=True,
                cwd=fuse.directory,
                capture_output=True,
                text=True,
                timeout=self.script_timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise FuseActionFailed(f"script timed out after {self.script_timeout:.0f}s") from e
        except OSError as e:
            raise FuseActionFailed(f"script could not start: {e}") from e

        if result.returncode != 0:
            stderr = (result.stderr or "").strip()[-500:]
            raise FuseActionFailed(f"script exited with {result.returncode}: {stderr}")
        logger.debug(f"Fuse script for {fuse.directory} completed")

    def post_webhook(self, fuse: FuseTimer) -> None:
        """POST a fuse.expired notification to the fuse's webhook.

        Raises:
            FuseActionFailed: On network error, timeout, or non-2xx response
        """
        if fuse.on_expire is None or not fuse.on_expire.webhook:
            raise FuseActionFailed(f"Fuse for {fuse.directory} has no webhook configured")
        body = {
            "type": "fuse.expired",
            "directory": fuse.directory,
            "sessionId": fuse.session_id,
            "label": fuse.label,
            "expiredAt": self._clock().isoformat(),
        }
        try:
            response = httpx.post(fuse.on_expire.webhook, json=body, timeout=self.webhook_timeout)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise FuseActionFailed(str(e) or type(e).__name__) from e
        logger.debug(f"Fuse webhook for {fuse.directory} delivered")
