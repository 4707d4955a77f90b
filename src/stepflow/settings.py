"""Engine settings and logging setup.

Settings are resolved in this order (first match wins for the file):
1. Explicit path passed to ``SettingsLoader`` / ``load_settings``
2. ``STEPFLOW_CONFIG`` environment variable
3. ``~/.stepflow/config.yml``
4. Built-in defaults

Individual ``STEPFLOW_*`` environment variables override values read from the
file, e.g. ``STEPFLOW_LOG_LEVEL=DEBUG`` or ``STEPFLOW_STALE_AFTER_HOURS=48``.

Example config.yml:
    log_level: INFO
    checkpoint_before_transition: true
    max_context_bytes: 10240
    stale_after_hours: 24
    max_checkpoint_age_days: 7
    max_history_warning: 100
"""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)

VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
ENV_PREFIX = "STEPFLOW_"


class EngineSettings(BaseModel):
    """Tunable thresholds and policies of the engine."""

    model_config = {"extra": "forbid"}

    log_level: str = Field(default="INFO", description="Root log level")
    checkpoint_before_transition: bool = Field(
        default=True,
        description="RecoveryManager.perform() snapshots the execution before each action",
    )
    max_context_bytes: int = Field(
        default=10 * 1024, gt=0, description="Context size that triggers an Inspector warning"
    )
    stale_after_hours: float = Field(
        default=24, gt=0, description="Inactivity after which an active execution is stale"
    )
    max_checkpoint_age_days: float = Field(
        default=7, gt=0, description="Restoring an older checkpoint produces a warning"
    )
    max_history_warning: int = Field(
        default=100, gt=0, description="History length flagged as a recovery risk"
    )
    state_dir: Path | None = Field(
        default=None, description="State directory for file-backed stores"
    )

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, value: str) -> str:
        level = value.upper()
        if level not in VALID_LOG_LEVELS:
            raise ValueError(
                f"Invalid log level '{value}'. Valid levels: {', '.join(sorted(VALID_LOG_LEVELS))}"
            )
        return level


class SettingsLoader:
    """Locates, parses and caches EngineSettings."""

    def __init__(self, config_path: str | Path | None = None):
        self._settings: EngineSettings | None = None
        self._explicit_path = Path(config_path) if config_path else None

    def get_config_path(self) -> Path | None:
        """
        Determine the config file path.

        Returns:
            Path to an existing config file, or None
        """
        if self._explicit_path:
            if self._explicit_path.exists():
                return self._explicit_path
            logger.warning(f"Explicit config path does not exist: {self._explicit_path}")
            return None

        env_path_str = os.getenv(f"{ENV_PREFIX}CONFIG")
        if env_path_str:
            env_path = Path(env_path_str).expanduser()
            if env_path.exists():
                return env_path
            logger.warning(f"{ENV_PREFIX}CONFIG path does not exist: {env_path}")
            return None

        standard_path = Path.home() / ".stepflow" / "config.yml"
        if standard_path.exists():
            return standard_path

        return None

    def load(self) -> EngineSettings:
        """
        Load settings (cached after the first call).

        Raises:
            ValueError: If the file or an environment override is invalid
            yaml.YAMLError: If YAML parsing fails
        """
        if self._settings is not None:
            return self._settings

        raw: dict[str, Any] = {}
        config_path = self.get_config_path()
        if config_path is not None:
            logger.info(f"Loading settings from: {config_path}")
            with open(config_path, encoding="utf-8") as f:
                loaded = yaml.safe_load(f)
            if loaded is not None and not isinstance(loaded, dict):
                raise ValueError("Config file must contain a YAML dictionary")
            raw.update(loaded or {})

        for name in EngineSettings.model_fields:
            env_value = os.getenv(f"{ENV_PREFIX}{name.upper()}")
            if env_value is not None and env_value != "":
                raw[name] = env_value

        try:
            self._settings = EngineSettings(**raw)
        except ValidationError as e:
            source = config_path or "environment"
            raise ValueError(f"Invalid stepflow settings ({source}): {e}") from e
        return self._settings


def load_settings(config_path: str | Path | None = None) -> EngineSettings:
    """Resolve settings from file, environment and defaults."""
    return SettingsLoader(config_path).load()


def configure_logging(level: str | None = None) -> None:
    """
    Configure root logging to stderr.

    Args:
        level: Log level name; defaults to ``STEPFLOW_LOG_LEVEL`` or INFO.
            Invalid names fall back to INFO with a warning on stderr.
    """
    level_str = (level or os.getenv(f"{ENV_PREFIX}LOG_LEVEL", "INFO")).upper()
    if level_str not in VALID_LOG_LEVELS:
        print(
            f"Warning: Invalid log level '{level_str}'. "
            f"Valid levels: {', '.join(sorted(VALID_LOG_LEVELS))}. "
            "Using INFO.",
            file=sys.stderr,
        )
        level_str = "INFO"

    logging.basicConfig(
        level=getattr(logging, level_str),
        format=LOG_FORMAT,
        stream=sys.stderr,
    )


__all__ = [
    "EngineSettings",
    "SettingsLoader",
    "configure_logging",
    "load_settings",
]
