"""Configuration loader: YAML file + env override, checked before use."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from loguru import logger

from reportbot.core.config.schema import Config
from reportbot.core.errors import ConfigError

CONFIG_ENV = "REPORTBOT_CONFIG"


def load_config(config_path: str | Path | None = None) -> Config:
    """
    Load and check configuration.

    Resolution order for config file:
        1. Explicit ``config_path`` argument
        2. ``REPORTBOT_CONFIG`` env variable
        3. ``./config.yaml`` in cwd (optional)

    Values priority (handled by pydantic-settings):
        env vars  >  .env file  >  YAML  >  defaults

    A file named by 1 or 2 must exist. Raises ConfigError when it does not,
    or when the scheduler settings cannot be used.
    """
    yaml_data = _load_yaml(_resolve_path(config_path))
    config = Config(**yaml_data)
    _check(config)
    return config


def _resolve_path(config_path: str | Path | None = None) -> Path | None:
    """Resolve config file path. Named files must exist."""
    named = config_path or os.environ.get(CONFIG_ENV)
    if named:
        path = Path(named)
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}")
        return path

    default = Path("config.yaml")
    return default if default.exists() else None


def _load_yaml(path: Path | None) -> dict[str, Any]:
    """Load YAML file, return empty dict if there is none."""
    if not path:
        return {}
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")
    logger.debug(f"Loaded config from {path}")
    return data


def _check(config: Config) -> None:
    sched = config.scheduler
    try:
        ZoneInfo(sched.default_timezone)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ConfigError(f"Unknown scheduler.default_timezone: {sched.default_timezone!r}") from e

    if len(sched.tick_cron.split()) != 5:
        raise ConfigError(f"scheduler.tick_cron must have 5 fields: {sched.tick_cron!r}")

    if not config.security.credential_key:
        logger.warning(
            "security.credential_key is not set; repositories with stored access tokens will fail"
        )
