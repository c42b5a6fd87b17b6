"""Session reconciliation.

Adapters are authoritative for what is running; the daemon holds launch
metadata (prompt, spec, group) the adapters do not know. SessionTracker
merges the two, resolves placeholder ids to real ones, and decides when a
launched session has genuinely gone away. It keeps no state of its own:
everything lives in the StateManager session collection.

Lock release and fuse arming for sessions that stop are left to the
caller, driven by the ids this module reports.
"""

import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime

from agentctl.core.adapters import AgentAdapter
from agentctl.core.models import (
    AgentSession,
    DiscoveredSession,
    SessionRecord,
    SessionStatus,
    is_pending_id,
    utc_now,
)
from agentctl.core.utils import is_process_alive
from agentctl.daemon.discovery import discover_all
from agentctl.daemon.state import StateManager

logger = logging.getLogger(__name__)

DEFAULT_GRACE_PERIOD = 30.0


@dataclass
class ReconcileResult:
    """Output of one reconciliation round.

    ``stopped_ids`` lists every record that transitioned this round, including
    superseded placeholders; ``resolved`` maps those placeholders to the real
    id that replaced them.
    """

    sessions: list[SessionRecord] = field(default_factory=list)
    stopped_ids: list[str] = field(default_factory=list)
    resolved: dict[str, str] = field(default_factory=dict)


def filter_sessions(
    records: Iterable[SessionRecord],
    status: SessionStatus | str | None = None,
    all: bool = False,
    group: str | None = None,
) -> list[SessionRecord]:
    """Filter by status (active only unless ``all``) and group, then sort.

    Running sessions come first, then everything else by most recent start.
    """
    selected = []
    for record in records:
        if status is not None:
            if record.status != SessionStatus(status):
                continue
        elif not all and record.status not in (SessionStatus.RUNNING, SessionStatus.IDLE):
            continue
        if group is not None and record.group != group:
            continue
        selected.append(record)
    return sorted(
        selected,
        key=lambda r: (r.status != SessionStatus.RUNNING, -r.started_at.timestamp()),
    )


def merge_session(
    found: DiscoveredSession, record: SessionRecord | None, now: datetime
) -> SessionRecord:
    """Overlay a discovered session on its launch record, if it has one."""
    if record is None:
        return SessionRecord(
            id=found.id,
            adapter=found.adapter,
            status=found.status,
            started_at=found.started_at or now,
            stopped_at=found.stopped_at,
            cwd=found.cwd,
            model=found.model,
            prompt=found.prompt,
            tokens=found.tokens,
            cost=found.cost,
            pid=found.pid,
            meta=found.native_metadata or {},
        )
    return SessionRecord(
        id=found.id,
        adapter=found.adapter,
        status=found.status,
        started_at=found.started_at or record.started_at,
        stopped_at=found.stopped_at,
        cwd=found.cwd or record.cwd,
        spec=record.spec,
        model=found.model or record.model,
        prompt=found.prompt or record.prompt,
        tokens=found.tokens,
        cost=found.cost,
        pid=found.pid,
        exit_code=record.exit_code,
        group=record.group,
        meta=found.native_metadata or record.meta,
    )


class SessionTracker:
    """Merge/query layer over the persisted session collection."""

    def __init__(
        self,
        state: StateManager,
        adapters: Mapping[str, AgentAdapter],
        grace_period: float = DEFAULT_GRACE_PERIOD,
        discovery_timeout: float = 5.0,
        clock: Callable[[], datetime] = utc_now,
        is_alive: Callable[[int], bool] = is_process_alive,
    ):
        self.state = state
        self.adapters = adapters
        self.grace_period = grace_period
        self.discovery_timeout = discovery_timeout
        self._clock = clock
        self._is_alive = is_alive

    # --- Launch records ---

    def track(self, session: AgentSession, adapter_name: str) -> SessionRecord:
        """Record a launched session.

        A real id arriving with a pid replaces any active placeholder that
        the same adapter registered for that pid.
        """
        record = SessionRecord.from_session(session, adapter_name)
        with self.state.lock:
            if record.pid and not is_pending_id(record.id):
                for sid, existing in self.state.get_sessions().items():
                    if (
                        is_pending_id(sid)
                        and existing.adapter == adapter_name
                        and existing.pid == record.pid
                        and existing.is_active
                    ):
                        logger.info(f"Launch of {record.id} supersedes placeholder {sid}")
                        self.state.remove_session(sid)
            self.state.set_session(record.id, record)
        return record

    def get_session(self, id_or_prefix: str) -> SessionRecord | None:
        """Exact id match, else the record whose id uniquely starts with the prefix."""
        exact = self.state.get_session(id_or_prefix)
        if exact is not None:
            return exact
        matches = [
            record
            for sid, record in self.state.get_sessions().items()
            if sid.startswith(id_or_prefix)
        ]
        if len(matches) == 1:
            return matches[0]
        return None

    def list_sessions(
        self,
        status: SessionStatus | str | None = None,
        all: bool = False,
        group: str | None = None,
    ) -> list[SessionRecord]:
        return filter_sessions(self.state.get_sessions().values(), status=status, all=all, group=group)

    def active_count(self) -> int:
        return sum(1 for r in self.state.get_sessions().values() if r.is_active)

    def on_session_exit(self, session_id: str, exit_code: int | None = None) -> bool:
        """Mark an active session stopped.

        Returns True only for the call that moved the record out of an active
        status; unknown or already-stopped sessions return False.
        """
        with self.state.lock:
            record = self.state.get_session(session_id)
            if record is None or not record.is_active:
                return False
            record.status = SessionStatus.STOPPED
            record.stopped_at = self._clock()
            if exit_code is not None:
                record.exit_code = exit_code
            self.state.set_session(session_id, record)
            return True

    def remove_session(self, session_id: str) -> bool:
        return self.state.remove_session(session_id) is not None

    # --- Reconciliation ---

    def reconcile_and_enrich(
        self,
        discovered: list[DiscoveredSession],
        succeeded_adapters: Iterable[str],
    ) -> ReconcileResult:
        """Merge one discovery round with the launch records.

        Discovered fields win; launch metadata only fills what the adapter
        did not report. A launch record missing from discovery is:
        - kept as-is if its adapter did not answer this round
        - dropped in favor of the real session if its (adapter, pid) now
          belongs to a different discovered id
        - kept if it started less than ``grace_period`` ago and its pid
          (when known) is still alive
        - otherwise marked stopped
        """
        succeeded = set(succeeded_adapters)
        now = self._clock()
        by_id = {s.id: s for s in discovered}
        by_pid = {(s.adapter, s.pid): s.id for s in discovered if s.pid}
        result = ReconcileResult()

        with self.state.lock:
            records = self.state.get_sessions()

            for found in discovered:
                record = records.get(found.id)
                if record is None and found.pid:
                    record = self._placeholder_for(records, found.adapter, found.pid)
                result.sessions.append(merge_session(found, record, now))

                own = records.get(found.id)
                if own is not None and own.is_active and not found.status.is_active():
                    own.status = found.status
                    own.stopped_at = found.stopped_at or now
                    self.state.set_session(own.id, own)
                    result.stopped_ids.append(own.id)

            for sid, record in records.items():
                if sid in by_id:
                    continue
                if not record.is_active:
                    result.sessions.append(record)
                    continue
                if record.adapter not in succeeded:
                    # No answer from the adapter: liveness unknown, keep last-known state
                    result.sessions.append(record)
                    continue

                real_id = by_pid.get((record.adapter, record.pid)) if record.pid else None
                if real_id is not None and real_id != sid:
                    self._supersede(record, by_id[real_id], records)
                    result.stopped_ids.append(sid)
                    result.resolved[sid] = real_id
                    continue

                age = (now - record.started_at).total_seconds()
                if age < self.grace_period and (record.pid is None or self._is_alive(record.pid)):
                    result.sessions.append(record)
                    continue

                record.status = SessionStatus.STOPPED
                record.stopped_at = now
                self.state.set_session(sid, record)
                result.stopped_ids.append(sid)
                result.sessions.append(record)
                logger.info(f"Session {sid} ({record.adapter}) is gone, marked stopped")

        return result

    def cleanup_dead_launches(self) -> list[str]:
        """Mark active launch records stopped when their pid fails the liveness probe.

        Records without a pid are left for full reconciliation.
        """
        candidates = [
            (sid, record.pid)
            for sid, record in self.state.get_sessions().items()
            if record.is_active and record.pid
        ]
        dead = [(sid, pid) for sid, pid in candidates if not self._is_alive(pid)]
        if not dead:
            return []

        stopped = []
        now = self._clock()
        with self.state.lock:
            for sid, pid in dead:
                record = self.state.get_session(sid)
                if record is None or not record.is_active or record.pid != pid:
                    continue
                record.status = SessionStatus.STOPPED
                record.stopped_at = now
                self.state.set_session(sid, record)
                stopped.append(sid)
        for sid in stopped:
            logger.info(f"Launched session {sid} is no longer running, marked stopped")
        return stopped

    # --- Placeholder resolution ---

    def resolve_pending_sessions(self) -> dict[str, str]:
        """Resolve every unresolved placeholder whose pid an adapter now reports.

        Each involved adapter is queried once. Returns {placeholder: real id}.
        """
        pending = [
            record
            for sid, record in self.state.get_sessions().items()
            if is_pending_id(sid) and record.status != SessionStatus.STOPPED and record.pid
        ]
        wanted = {r.adapter for r in pending if r.adapter in self.adapters}
        if not wanted:
            return {}

        round_ = discover_all(self.adapters, self.discovery_timeout, only=wanted)
        index = {
            (s.adapter, s.pid): s
            for s in round_.sessions
            if s.pid and not is_pending_id(s.id)
        }

        resolved = {}
        with self.state.lock:
            for placeholder in pending:
                found = index.get((placeholder.adapter, placeholder.pid))
                if found is None:
                    continue
                current = self.state.get_session(placeholder.id)
                if current is None:
                    continue
                self._move(current, found)
                resolved[placeholder.id] = found.id
        return resolved

    def resolve_pending_id(self, session_id: str) -> str:
        """On-demand resolution of one placeholder. Returns the real id, or the input."""
        if not is_pending_id(session_id):
            return session_id
        record = self.state.get_session(session_id)
        if record is None or not record.pid or record.adapter not in self.adapters:
            return session_id

        round_ = discover_all(self.adapters, self.discovery_timeout, only=[record.adapter])
        for found in round_.sessions:
            if found.pid == record.pid and not is_pending_id(found.id):
                with self.state.lock:
                    current = self.state.get_session(session_id)
                    if current is None:
                        return session_id
                    self._move(current, found)
                return found.id
        return session_id

    # --- Helpers ---

    @staticmethod
    def _placeholder_for(
        records: Mapping[str, SessionRecord], adapter: str, pid: int
    ) -> SessionRecord | None:
        for sid, record in records.items():
            if is_pending_id(sid) and record.adapter == adapter and record.pid == pid:
                return record
        return None

    def _supersede(
        self,
        placeholder: SessionRecord,
        found: DiscoveredSession,
        records: Mapping[str, SessionRecord],
    ) -> None:
        """Drop a placeholder whose pid now belongs to a discovered real id."""
        if found.id in records:
            self.state.remove_session(placeholder.id)
            logger.info(f"Placeholder {placeholder.id} superseded by {found.id}")
        else:
            self._move(placeholder, found)

    def _move(self, placeholder: SessionRecord, found: DiscoveredSession) -> None:
        """Re-key a placeholder record under its real id, keeping launch metadata."""
        existing = self.state.get_session(found.id)
        base = existing or placeholder
        moved = base.model_copy(
            update={
                "id": found.id,
                "status": found.status,
                "cwd": found.cwd or base.cwd or placeholder.cwd,
                "model": found.model or base.model or placeholder.model,
                "prompt": base.prompt or placeholder.prompt,
                "spec": base.spec or placeholder.spec,
                "group": base.group or placeholder.group,
                "started_at": found.started_at or base.started_at,
                "pid": found.pid or placeholder.pid,
            }
        )
        self.state.replace_session(placeholder.id, moved)
        logger.info(f"Resolved {placeholder.id} -> {found.id}")
