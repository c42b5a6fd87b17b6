"""agentctl supervisor daemon: state, locks, fuses and session reconciliation."""

from agentctl.daemon.fuse_engine import FuseEngine
from agentctl.daemon.lock_manager import AlreadyLocked, LockManager, NoManualLock
from agentctl.daemon.scheduler import Scheduler
from agentctl.daemon.server import Daemon
from agentctl.daemon.session_tracker import ReconcileResult, SessionTracker
from agentctl.daemon.state import StateManager

__all__ = [
    "AlreadyLocked",
    "Daemon",
    "FuseEngine",
    "LockManager",
    "NoManualLock",
    "ReconcileResult",
    "Scheduler",
    "SessionTracker",
    "StateManager",
]
