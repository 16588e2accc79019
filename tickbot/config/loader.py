"""Configuration loader: YAML file plus env override."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from loguru import logger

from tickbot.config.schema import Config
from tickbot.utils.helpers import atomic_write_text


def get_data_dir() -> Path:
    """Root directory for schedules, history and the task queue."""
    env = os.environ.get("TICKBOT_DATA_DIR")
    if env:
        return Path(env).expanduser()
    return Path.home() / ".tickbot"


def get_config_path() -> Path:
    env = os.environ.get("TICKBOT_CONFIG")
    if env:
        return Path(env).expanduser()
    return get_data_dir() / "config.yaml"


def load_config(config_path: str | Path | None = None) -> Config:
    """
    Load configuration.

    Resolution order for the config file:
        1. Explicit ``config_path`` argument
        2. ``TICKBOT_CONFIG`` env variable
        3. ``~/.tickbot/config.yaml``

    Values priority (handled by pydantic-settings):
        env vars  >  YAML  >  defaults
    """
    path = Path(config_path) if config_path else get_config_path()
    return Config(**_load_yaml(path))


def save_config(config: Config, config_path: str | Path | None = None) -> Path:
    path = Path(config_path) if config_path else get_config_path()
    data = yaml.safe_dump(config.model_dump(mode="json"), sort_keys=False, allow_unicode=True)
    atomic_write_text(path, data)
    return path


def resolve_data_dir(config: Config) -> Path:
    if config.data_dir:
        return Path(config.data_dir).expanduser()
    return get_data_dir()


def _load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML mapping; a missing or broken file yields defaults."""
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        logger.warning("Ignoring unreadable config {}: {}", path, e)
        return {}
    if not isinstance(data, dict):
        logger.warning("Ignoring config {}: not a YAML mapping", path)
        return {}
    return data
