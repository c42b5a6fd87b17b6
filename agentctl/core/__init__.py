"""Core types shared by the agentctl daemon and CLI."""

from agentctl.core.adapters import AdapterUnavailable, AgentAdapter
from agentctl.core.config import DaemonConfig, load_config
from agentctl.core.models import (
    AgentSession,
    DiscoveredSession,
    FuseAction,
    FuseTimer,
    Lock,
    LockType,
    SessionRecord,
    SessionStatus,
)

__all__ = [
    "AdapterUnavailable",
    "AgentAdapter",
    "AgentSession",
    "DaemonConfig",
    "DiscoveredSession",
    "FuseAction",
    "FuseTimer",
    "Lock",
    "LockType",
    "SessionRecord",
    "SessionStatus",
    "load_config",
]
