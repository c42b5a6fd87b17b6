"""Adapter contract for agent-CLI integrations.

Each agent kind (claude-code, codex, opencode, pi, ...) is integrated through
one adapter. Adapters are the authoritative source for "what is actually
running"; the daemon only merges their answers with its own launch metadata.

Process enumeration and transcript parsing live inside concrete adapters and
are not part of this package.
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import Iterator
from importlib.metadata import entry_points

from agentctl.core.models import (
    ACTIVE_STATUSES,
    AgentSession,
    DiscoveredSession,
    LaunchOptions,
    LifecycleEvent,
    ListOptions,
    PeekOptions,
    StopOptions,
    utc_now,
)

logger = logging.getLogger(__name__)


class AdapterError(Exception):
    """Error raised by or about an adapter."""

    pass


class AdapterUnavailable(AdapterError):
    """Adapter could not answer a discovery query (failure or timeout)."""

    pass


class UnknownAdapter(AdapterError):
    """No adapter is registered under the requested name."""

    pass


class AgentAdapter(ABC):
    """Pluggable integration for one agent-CLI kind.

    All calls are synchronous and may block; the daemon bounds discovery with
    its own timeout and never calls adapters while holding the state lock.
    """

    name: str = "adapter"

    @abstractmethod
    def discover(self) -> list[DiscoveredSession]:
        """Return every session this agent kind currently knows about.

        Must return an empty list when nothing is running; raise only when
        the query itself failed.
        """

    @abstractmethod
    def is_alive(self, session_id: str) -> bool:
        """Return True if the session's process is still running."""

    @abstractmethod
    def peek(self, session_id: str, opts: PeekOptions | None = None) -> str:
        """Return recent output of a session."""

    @abstractmethod
    def status(self, session_id: str) -> AgentSession:
        """Return the current state of one session."""

    @abstractmethod
    def launch(self, opts: LaunchOptions) -> AgentSession:
        """Start a new agent process.

        When the agent's own session id is not known yet, the returned
        session carries a placeholder id ("pending-<pid>").
        """

    @abstractmethod
    def stop(self, session_id: str, opts: StopOptions | None = None) -> None:
        """Stop a running session."""

    @abstractmethod
    def resume(self, session_id: str, message: str) -> None:
        """Send a follow-up message to a session."""

    @abstractmethod
    def events(self) -> Iterator[LifecycleEvent]:
        """Yield lifecycle events lazily; the consumer stops iterating to cancel."""

    def list(self, opts: ListOptions | None = None) -> list[AgentSession]:
        """List sessions, running/idle only unless ``opts.all`` is set."""
        opts = opts or ListOptions()
        sessions = []
        for found in self.discover():
            if opts.status is not None:
                if found.status != opts.status:
                    continue
            elif not opts.all and found.status not in ACTIVE_STATUSES:
                continue
            sessions.append(
                AgentSession(
                    id=found.id,
                    adapter=found.adapter or self.name,
                    status=found.status,
                    started_at=found.started_at or utc_now(),
                    stopped_at=found.stopped_at,
                    cwd=found.cwd,
                    model=found.model,
                    prompt=found.prompt,
                    tokens=found.tokens,
                    cost=found.cost,
                    pid=found.pid,
                    meta=found.native_metadata or {},
                )
            )
        return sessions


ENTRY_POINT_GROUP = "agentctl.adapters"


def load_entry_point_adapters(group: str = ENTRY_POINT_GROUP) -> dict[str, AgentAdapter]:
    """Instantiate adapters registered by installed packages.

    Each entry point names an AgentAdapter subclass; the entry point name
    becomes the adapter's registry name. A plugin that fails to load is
    logged and skipped.
    """
    adapters: dict[str, AgentAdapter] = {}
    for ep in entry_points(group=group):
        try:
            adapter_cls = ep.load()
            adapter = adapter_cls()
        except Exception as e:
            logger.warning(f"Failed to load adapter plugin '{ep.name}': {e}")
            continue
        adapter.name = ep.name
        adapters[ep.name] = adapter
    return adapters
