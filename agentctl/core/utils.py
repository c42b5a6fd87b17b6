"""Shared utility functions for agentctl modules."""

import os
from pathlib import Path

import psutil


def canonicalize_directory(directory: str | Path) -> str:
    """Normalize a directory to the absolute form used as a lock/fuse key.

    ``~`` is expanded and ``.``/``..`` segments collapsed, so ./repo, repo/
    and /abs/path/to/repo all compare equal. Symlinks are not resolved; the
    key is the path the agent was launched in.
    """
    return os.path.abspath(os.path.expanduser(str(directory)))


def is_process_alive(pid: int) -> bool:
    """Probe the OS for a live process with this pid.

    Zombies count as dead: the agent has exited, only its parent has not
    reaped it yet. A process we are not permitted to inspect still exists.
    """
    if pid <= 0:
        return False
    try:
        proc = psutil.Process(pid)
        return proc.status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        return True
