"""Daemon configuration loading.

Settings come from ``<config_dir>/config.yaml`` with a couple of environment
overrides. A missing file means defaults; a malformed one is an error so a
typo never silently changes fuse or grace-window timing.
"""

import logging
import os
from pathlib import Path
from typing import Any

import pydantic
import yaml
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "config.yaml"
ENV_CONFIG_DIR = "AGENTCTL_DIR"
ENV_ADAPTER_TIMEOUT = "AGENTCTL_ADAPTER_TIMEOUT"  # milliseconds


class ConfigError(Exception):
    """Configuration file is unreadable or invalid."""

    pass


def default_config_dir() -> Path:
    """Resolve the state/config directory (``$AGENTCTL_DIR`` or ``~/.agentctl``)."""
    override = os.environ.get(ENV_CONFIG_DIR)
    if override:
        return Path(override).expanduser()
    return Path.home() / ".agentctl"


class DaemonConfig(BaseModel):
    """Tunables for the supervisor daemon. Durations are in seconds."""

    fuse_ttl: float = Field(default=600.0, gt=0)
    debounce: float = Field(default=1.0, ge=0)
    grace_period: float = Field(default=30.0, ge=0)
    launch_cleanup_interval: float = Field(default=30.0, gt=0)
    pending_resolution_interval: float = Field(default=10.0, gt=0)
    adapter_timeout: float = Field(default=5.0, gt=0)
    script_timeout: float = Field(default=120.0, gt=0)
    webhook_timeout: float = Field(default=30.0, gt=0)
    default_adapter: str = "claude-code"
    arm_fuse_on_exit: bool = True


def load_config(config_dir: Path | None = None) -> DaemonConfig:
    """Load config.yaml from the config directory and apply env overrides.

    Raises:
        ConfigError: If the file exists but is not valid YAML or fails validation
    """
    config_dir = config_dir or default_config_dir()
    config_path = config_dir / CONFIG_FILENAME
    data: dict[str, Any] = {}

    if config_path.exists():
        try:
            with open(config_path, encoding="utf-8") as f:
                loaded = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Cannot read {config_path}: {e}") from e
        if loaded is None:
            loaded = {}
        if not isinstance(loaded, dict):
            raise ConfigError(
                f"{config_path} must contain a mapping, got {type(loaded).__name__}"
            )
        data.update(loaded)

    timeout_ms = os.environ.get(ENV_ADAPTER_TIMEOUT)
    if timeout_ms:
        try:
            data["adapter_timeout"] = int(timeout_ms) / 1000.0
        except ValueError:
            logger.warning(f"Ignoring non-numeric {ENV_ADAPTER_TIMEOUT}={timeout_ms!r}")

    try:
        return DaemonConfig(**data)
    except pydantic.ValidationError as e:
        raise ConfigError(f"Invalid configuration in {config_path}: {e}") from e
