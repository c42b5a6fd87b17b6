"""One-time import of manual locks from the legacy ~/.openclaw lock file."""

import json
import logging
from pathlib import Path

import pydantic

from agentctl.core.models import Lock, LockType, utc_now
from agentctl.daemon.state import LOCKS_FILE, atomic_write

logger = logging.getLogger(__name__)


def legacy_locks_path() -> Path:
    return Path.home() / ".openclaw" / "locks" / "locks.json"


def migrate_locks(config_dir: Path, source: Path | None = None) -> int:
    """Convert legacy lock entries into manual locks in ``config_dir``.

    Skipped when the target locks.json already exists or the legacy file is
    missing, so running it on every start is safe. Returns the number of
    locks written. Problems are logged, never raised: a failed migration
    must not keep the daemon from starting.
    """
    source = source or legacy_locks_path()
    target = Path(config_dir) / LOCKS_FILE
    if target.exists() or not source.exists():
        return 0

    try:
        with open(source, encoding="utf-8") as f:
            old_entries = json.load(f)
    except (OSError, ValueError) as e:
        logger.warning(f"Lock migration skipped, cannot read {source}: {e}")
        return 0

    if not isinstance(old_entries, list):
        old_entries = []

    locks = []
    for entry in old_entries:
        if not isinstance(entry, dict) or not entry.get("directory"):
            logger.warning(f"Skipping malformed legacy lock entry: {entry!r}")
            continue
        try:
            locks.append(
                Lock(
                    directory=entry["directory"],
                    type=LockType.MANUAL,
                    locked_by=entry.get("lockedBy") or entry.get("by") or "unknown",
                    reason=entry.get("reason") or "",
                    locked_at=entry.get("lockedAt") or utc_now(),
                )
            )
        except pydantic.ValidationError as e:
            logger.warning(f"Skipping invalid legacy lock for {entry.get('directory')}: {e}")

    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        payload = [lock.model_dump(mode="json", exclude_none=True) for lock in locks]
        atomic_write(target, json.dumps(payload, indent=2))
    except OSError as e:
        logger.warning(f"Lock migration failed writing {target}: {e}")
        return 0

    logger.info(f"Migrated {len(locks)} lock(s) from {source}")
    return len(locks)
