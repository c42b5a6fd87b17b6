"""Durable state store for sessions, locks, and fuses.

Three independent JSON documents live in the config directory:

    state.json   {"sessions": {id: SessionRecord}, "version": N}
    locks.json   [Lock, ...]
    fuses.json   [FuseTimer, ...]

A corrupt or missing document resets only itself; the other two still load.
Mutations apply to memory immediately and arm a debounce timer so a burst of
changes from one reconciliation pass costs a single disk write. Each write
goes to a temp file in the same directory followed by os.replace, so readers
never observe a half-written document.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import tempfile
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from pydantic import TypeAdapter

from agentctl.core.models import FuseTimer, Lock, SessionRecord
from agentctl.daemon.scheduler import Scheduler, TimerHandle

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

STATE_FILE = "state.json"
LOCKS_FILE = "locks.json"
FUSES_FILE = "fuses.json"

_sessions_adapter = TypeAdapter(dict[str, SessionRecord])
_locks_adapter = TypeAdapter(list[Lock])
_fuses_adapter = TypeAdapter(list[FuseTimer])


@dataclass
class PersistedState:
    """Unit of durability: the three collections plus the schema version."""

    sessions: dict[str, SessionRecord] = field(default_factory=dict)
    locks: list[Lock] = field(default_factory=list)
    fuses: list[FuseTimer] = field(default_factory=list)
    version: int = SCHEMA_VERSION


def _read_document(path: Path) -> Any | None:
    """Read and JSON-decode one document. None if the file does not exist."""
    if not path.exists():
        return None
    with open(path, encoding="utf-8") as f:
        return json.load(f)


def _quarantine(path: Path, error: Exception) -> None:
    """Keep a copy of a corrupt document before it is reset and overwritten."""
    logger.warning(f"Corrupt state document {path.name}, resetting it to empty: {error}")
    try:
        shutil.copy2(path, path.with_name(path.name + ".corrupt"))
    except OSError as e:
        logger.warning(f"Could not preserve corrupt {path.name}: {e}")


def atomic_write(path: Path, text: str) -> None:
    """Write text via temp file + os.replace in the same directory."""
    fd, temp_path = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_path, path)
    except Exception:
        try:
            os.unlink(temp_path)
        except OSError:
            pass
        raise


class StateManager:
    """In-memory state with debounced, crash-safe persistence.

    All access goes through the named methods. Accessors hand out deep
    copies; mutating a returned record has no effect until it is written
    back with set_session().

    ``lock`` is the daemon-wide re-entrant mutex. Components that need a
    multi-step mutation to be atomic (replace a fuse, move a placeholder
    record) hold it across the steps.
    """

    def __init__(
        self,
        config_dir: Path,
        state: PersistedState | None = None,
        scheduler: Scheduler | None = None,
        debounce: float = 1.0,
    ):
        self.config_dir = Path(config_dir)
        self.lock = threading.RLock()
        self._state = state or PersistedState()
        self._scheduler = scheduler or Scheduler()
        self._debounce = debounce
        self._persist_handle: TimerHandle | None = None
        # Serializes snapshot+write so an older snapshot never lands last
        self._write_lock = threading.Lock()

    @classmethod
    def load(
        cls,
        config_dir: Path,
        scheduler: Scheduler | None = None,
        debounce: float = 1.0,
    ) -> StateManager:
        """Load the three documents independently from ``config_dir``."""
        config_dir = Path(config_dir)
        config_dir.mkdir(parents=True, exist_ok=True)
        state = PersistedState()

        def load_one(name: str, parse: Callable[[Any], None]) -> None:
            path = config_dir / name
            try:
                raw = _read_document(path)
            except OSError as e:
                logger.warning(f"Cannot read {name}, starting with it empty: {e}")
                return
            except ValueError as e:
                _quarantine(path, e)
                return
            if raw is None:
                return
            try:
                parse(raw)
            except (ValueError, TypeError, AttributeError) as e:
                _quarantine(path, e)

        def parse_sessions(raw: Any) -> None:
            if not isinstance(raw, dict):
                raise TypeError(f"expected an object, got {type(raw).__name__}")
            state.sessions = _sessions_adapter.validate_python(raw.get("sessions") or {})
            state.version = int(raw.get("version") or SCHEMA_VERSION)

        def parse_locks(raw: Any) -> None:
            state.locks = _locks_adapter.validate_python(raw)

        def parse_fuses(raw: Any) -> None:
            state.fuses = _fuses_adapter.validate_python(raw)

        load_one(STATE_FILE, parse_sessions)
        load_one(LOCKS_FILE, parse_locks)
        load_one(FUSES_FILE, parse_fuses)

        logger.debug(
            f"Loaded state from {config_dir}: {len(state.sessions)} sessions, "
            f"{len(state.locks)} locks, {len(state.fuses)} fuses"
        )
        return cls(config_dir, state, scheduler=scheduler, debounce=debounce)

    @property
    def version(self) -> int:
        return self._state.version

    # --- Persistence ---

    def persist(self) -> None:
        """Write all three documents now, cancelling any pending debounce.

        Raises:
            OSError: If a document could not be written
        """
        with self._write_lock:
            with self.lock:
                self._cancel_pending()
                sessions = {
                    sid: record.model_dump(mode="json", by_alias=True, exclude_none=True)
                    for sid, record in self._state.sessions.items()
                }
                documents = [
                    (STATE_FILE, {"sessions": sessions, "version": self._state.version}),
                    (
                        LOCKS_FILE,
                        [lk.model_dump(mode="json", exclude_none=True) for lk in self._state.locks],
                    ),
                    (
                        FUSES_FILE,
                        [fz.model_dump(mode="json", exclude_none=True) for fz in self._state.fuses],
                    ),
                ]

            self.config_dir.mkdir(parents=True, exist_ok=True)
            for name, payload in documents:
                atomic_write(self.config_dir / name, json.dumps(payload, indent=2))

    def mark_dirty(self) -> None:
        """(Re)arm the debounce timer; persist once mutations go quiet."""
        with self.lock:
            if self._persist_handle is not None:
                self._persist_handle.cancel()
            self._persist_handle = self._scheduler.call_later(self._debounce, self._debounced_persist)

    def flush(self) -> None:
        """Cancel any pending debounce without persisting (before a final persist())."""
        with self.lock:
            self._cancel_pending()

    @property
    def dirty(self) -> bool:
        return self._persist_handle is not None

    def _cancel_pending(self) -> None:
        if self._persist_handle is not None:
            self._persist_handle.cancel()
            self._persist_handle = None

    def _debounced_persist(self) -> None:
        try:
            self.persist()
        except OSError as e:
            # Memory stays authoritative; the next mutation re-arms the write
            logger.error(f"Failed to persist state to {self.config_dir}: {e}")

    # --- Sessions ---

    def get_sessions(self) -> dict[str, SessionRecord]:
        with self.lock:
            return {sid: rec.model_copy(deep=True) for sid, rec in self._state.sessions.items()}

    def get_session(self, session_id: str) -> SessionRecord | None:
        with self.lock:
            record = self._state.sessions.get(session_id)
            return record.model_copy(deep=True) if record else None

    def set_session(self, session_id: str, record: SessionRecord) -> None:
        with self.lock:
            self._state.sessions[session_id] = record.model_copy(deep=True)
            self.mark_dirty()

    def remove_session(self, session_id: str) -> SessionRecord | None:
        with self.lock:
            removed = self._state.sessions.pop(session_id, None)
            if removed is not None:
                self.mark_dirty()
            return removed

    def replace_session(self, old_id: str, record: SessionRecord) -> None:
        """Move a record to ``record.id``: remove the old key, then insert.

        Both keys never coexist, even briefly, for another holder of ``lock``.
        """
        with self.lock:
            self._state.sessions.pop(old_id, None)
            self._state.sessions[record.id] = record.model_copy(deep=True)
            self.mark_dirty()

    # --- Locks ---

    def get_locks(self) -> list[Lock]:
        with self.lock:
            return [lk.model_copy() for lk in self._state.locks]

    def add_lock(self, lock: Lock) -> None:
        with self.lock:
            self._state.locks.append(lock.model_copy())
            self.mark_dirty()

    def remove_locks(self, predicate: Callable[[Lock], bool]) -> int:
        """Remove every lock matching ``predicate``. Returns how many were removed."""
        with self.lock:
            kept = [lk for lk in self._state.locks if not predicate(lk)]
            removed = len(self._state.locks) - len(kept)
            if removed:
                self._state.locks = kept
                self.mark_dirty()
            return removed

    # --- Fuses ---

    def get_fuses(self) -> list[FuseTimer]:
        with self.lock:
            return [fz.model_copy(deep=True) for fz in self._state.fuses]

    def get_fuse(self, directory: str) -> FuseTimer | None:
        with self.lock:
            for fuse in self._state.fuses:
                if fuse.directory == directory:
                    return fuse.model_copy(deep=True)
            return None

    def add_fuse(self, fuse: FuseTimer) -> None:
        """Store a fuse, replacing any existing fuse for the same directory."""
        with self.lock:
            self._state.fuses = [fz for fz in self._state.fuses if fz.directory != fuse.directory]
            self._state.fuses.append(fuse.model_copy(deep=True))
            self.mark_dirty()

    def remove_fuse(self, directory: str) -> bool:
        with self.lock:
            kept = [fz for fz in self._state.fuses if fz.directory != directory]
            removed = len(kept) != len(self._state.fuses)
            if removed:
                self._state.fuses = kept
                self.mark_dirty()
            return removed
