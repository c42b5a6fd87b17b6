"""Data models for the agentctl daemon.

Uses Pydantic so persisted documents and adapter payloads are validated
on the way in and serialized consistently on the way out.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

# Placeholder ids are used between process launch and the adapter reporting
# its own session id: "pending-<pid>".
PENDING_PREFIX = "pending-"


def utc_now() -> datetime:
    """Get current UTC time (timezone-aware)."""
    return datetime.now(UTC)


def is_pending_id(session_id: str) -> bool:
    return session_id.startswith(PENDING_PREFIX)


def pending_id_for(pid: int) -> str:
    return f"{PENDING_PREFIX}{pid}"


class SessionStatus(str, Enum):
    """Status of a tracked agent session."""

    RUNNING = "running"
    IDLE = "idle"
    STOPPED = "stopped"
    ERROR = "error"
    COMPLETED = "completed"
    FAILED = "failed"
    PENDING = "pending"

    def is_active(self) -> bool:
        """Return True while the session is believed to hold its directory."""
        return self in ACTIVE_STATUSES


ACTIVE_STATUSES = frozenset({SessionStatus.RUNNING, SessionStatus.IDLE, SessionStatus.PENDING})


class TokenUsage(BaseModel):
    """Token counts reported by an adapter."""

    model_config = ConfigDict(populate_by_name=True)

    input: int = Field(default=0, alias="in")
    output: int = Field(default=0, alias="out")


# --- Sessions ---


class AgentSession(BaseModel):
    """A session as returned by an adapter's launch/status/list calls."""

    id: str
    adapter: str
    status: SessionStatus = SessionStatus.RUNNING
    started_at: datetime = Field(default_factory=utc_now)
    stopped_at: datetime | None = None
    cwd: str | None = None
    spec: str | None = None
    model: str | None = None
    prompt: str | None = None
    tokens: TokenUsage | None = None
    cost: float | None = None
    pid: int | None = None
    group: str | None = None
    meta: dict[str, Any] = Field(default_factory=dict)


class DiscoveredSession(BaseModel):
    """A session an adapter currently reports as existing.

    Fields here are authoritative for liveness; ``native_metadata`` is passed
    through untouched.
    """

    id: str
    status: SessionStatus
    adapter: str
    cwd: str | None = None
    model: str | None = None
    started_at: datetime | None = None
    stopped_at: datetime | None = None
    pid: int | None = None
    prompt: str | None = None
    tokens: TokenUsage | None = None
    cost: float | None = None
    native_metadata: dict[str, Any] | None = None


class SessionRecord(BaseModel):
    """Daemon-held record of a session (launch metadata plus last-known state)."""

    id: str
    adapter: str
    status: SessionStatus
    started_at: datetime = Field(default_factory=utc_now)
    stopped_at: datetime | None = None
    cwd: str | None = None
    spec: str | None = None
    model: str | None = None
    prompt: str | None = None
    tokens: TokenUsage | None = None
    cost: float | None = None
    pid: int | None = None
    exit_code: int | None = None
    group: str | None = None  # launch group tag, e.g. "g-a1b2c3"
    meta: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_session(cls, session: AgentSession, adapter_name: str) -> "SessionRecord":
        return cls(
            id=session.id,
            adapter=adapter_name,
            status=session.status,
            started_at=session.started_at,
            stopped_at=session.stopped_at,
            cwd=session.cwd,
            spec=session.spec,
            model=session.model,
            prompt=session.prompt,
            tokens=session.tokens,
            cost=session.cost,
            pid=session.pid,
            group=session.group,
            meta=dict(session.meta),
        )

    @property
    def is_active(self) -> bool:
        return self.status.is_active()

    def duration_seconds(self) -> float | None:
        if self.stopped_at is None:
            return None
        return max(0.0, (self.stopped_at - self.started_at).total_seconds())


class LifecycleEvent(BaseModel):
    """Lifecycle event produced by an adapter's events() stream."""

    type: str = Field(..., pattern=r"^session\.(started|stopped|idle|error)$")
    adapter: str
    session_id: str
    session: AgentSession
    timestamp: datetime = Field(default_factory=utc_now)
    meta: dict[str, Any] | None = None


# --- Locks ---


class LockType(str, Enum):
    """Kind of directory lock."""

    AUTO = "auto"  # held by a running session
    MANUAL = "manual"  # requested explicitly by a human


class Lock(BaseModel):
    """A lock on a canonical absolute directory."""

    directory: str
    type: LockType
    session_id: str | None = None  # auto-locks
    locked_by: str | None = None  # manual locks
    reason: str | None = None
    locked_at: datetime = Field(default_factory=utc_now)


# --- Fuses ---


class FuseAction(BaseModel):
    """What to do when a fuse expires. Every configured action runs."""

    script: str | None = None
    webhook: str | None = None
    event: str | None = None


class FuseTimer(BaseModel):
    """A persisted per-directory TTL timer."""

    directory: str
    ttl: float  # seconds
    expires_at: datetime
    session_id: str
    on_expire: FuseAction | None = None
    label: str | None = None


# --- Adapter call options ---


class ListOptions(BaseModel):
    status: SessionStatus | None = None
    all: bool = False  # include stopped sessions


class PeekOptions(BaseModel):
    lines: int | None = None


class StopOptions(BaseModel):
    force: bool = False


class LaunchOptions(BaseModel):
    adapter: str
    prompt: str
    spec: str | None = None
    cwd: str | None = None
    model: str | None = None
    env: dict[str, str] | None = None
    adapter_opts: dict[str, Any] | None = None
