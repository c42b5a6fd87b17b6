"""Directory mutual exclusion on top of the StateManager lock collection.

Two kinds of lock share one collection:
- auto: held by a running session on its working directory, one per
  (directory, session) pair, any number per directory
- manual: requested explicitly by a human, at most one per directory,
  and always reported ahead of auto-locks by check()

Directories are canonicalized before every comparison.
"""

import logging
from pathlib import Path

from agentctl.core.models import Lock, LockType, utc_now
from agentctl.core.utils import canonicalize_directory
from agentctl.daemon.state import StateManager

logger = logging.getLogger(__name__)


class LockError(Exception):
    """Base error for lock operations."""

    pass


class AlreadyLocked(LockError):
    """A manual lock already exists on the directory."""

    def __init__(self, lock: Lock):
        self.lock = lock
        owner = lock.locked_by or "unknown"
        detail = f": {lock.reason}" if lock.reason else ""
        super().__init__(f"Already locked by {owner}{detail}")


class NoManualLock(LockError):
    """No manual lock exists on the directory."""

    def __init__(self, directory: str):
        self.directory = directory
        super().__init__(f"No manual lock on {directory}")


class LockManager:
    """Check, acquire and release directory locks."""

    def __init__(self, state: StateManager):
        self.state = state

    def check(self, directory: str | Path) -> Lock | None:
        """Return the manual lock on ``directory``, else an auto lock, else None."""
        directory = canonicalize_directory(directory)
        auto = None
        for lock in self.state.get_locks():
            if lock.directory != directory:
                continue
            if lock.type == LockType.MANUAL:
                return lock
            if auto is None:
                auto = lock
        return auto

    def list_all(self) -> list[Lock]:
        return self.state.get_locks()

    def auto_lock(self, directory: str | Path, session_id: str) -> None:
        """Record that ``session_id`` works in ``directory``. Idempotent per pair."""
        directory = canonicalize_directory(directory)
        with self.state.lock:
            for lock in self.state.get_locks():
                if (
                    lock.type == LockType.AUTO
                    and lock.directory == directory
                    and lock.session_id == session_id
                ):
                    return
            self.state.add_lock(
                Lock(
                    directory=directory,
                    type=LockType.AUTO,
                    session_id=session_id,
                    locked_at=utc_now(),
                )
            )
        logger.debug(f"Auto-locked {directory} for session {session_id}")

    def auto_unlock(self, session_id: str) -> int:
        """Remove every auto-lock owned by ``session_id``. Manual locks are untouched."""
        removed = self.state.remove_locks(
            lambda lk: lk.type == LockType.AUTO and lk.session_id == session_id
        )
        if removed:
            logger.debug(f"Released {removed} auto-lock(s) held by session {session_id}")
        return removed

    def manual_lock(
        self, directory: str | Path, by: str | None = None, reason: str | None = None
    ) -> Lock:
        """Place a manual lock, regardless of any auto-locks on the directory.

        Raises:
            AlreadyLocked: If a manual lock already exists on the directory
        """
        directory = canonicalize_directory(directory)
        with self.state.lock:
            existing = self.check(directory)
            if existing is not None and existing.type == LockType.MANUAL:
                raise AlreadyLocked(existing)
            lock = Lock(
                directory=directory,
                type=LockType.MANUAL,
                locked_by=by,
                reason=reason,
                locked_at=utc_now(),
            )
            self.state.add_lock(lock)
        logger.info(f"Manual lock on {directory} by {by or 'unknown'}")
        return lock

    def manual_unlock(self, directory: str | Path) -> None:
        """Remove the manual lock on ``directory``. Auto-locks are untouched.

        Raises:
            NoManualLock: If the directory has no manual lock
        """
        directory = canonicalize_directory(directory)
        removed = self.state.remove_locks(
            lambda lk: lk.type == LockType.MANUAL and lk.directory == directory
        )
        if not removed:
            raise NoManualLock(directory)
        logger.info(f"Manual lock on {directory} released")

    def update_auto_lock_session_id(self, old_id: str, new_id: str) -> int:
        """Move auto-locks from a placeholder id to its resolved id.

        Returns the number of locks moved. A directory the new id already
        holds is not locked twice.
        """
        with self.state.lock:
            owned = [
                lk
                for lk in self.state.get_locks()
                if lk.type == LockType.AUTO and lk.session_id == old_id
            ]
            if not owned:
                return 0
            self.state.remove_locks(lambda lk: lk.type == LockType.AUTO and lk.session_id == old_id)
            for lock in owned:
                self.auto_lock(lock.directory, new_id)
        logger.debug(f"Moved {len(owned)} auto-lock(s) from {old_id} to {new_id}")
        return len(owned)

    def counts(self) -> dict[str, int]:
        """Number of auto and manual locks currently held."""
        result = {LockType.AUTO.value: 0, LockType.MANUAL.value: 0}
        for lock in self.state.get_locks():
            result[lock.type.value] += 1
        return result
