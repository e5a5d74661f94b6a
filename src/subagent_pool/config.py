"""Configuration loader for the subagent pool.

This module loads and validates the pool configuration from
config/subagent_pool.yaml and provides a frozen dataclass for type-safe
access to configuration values. A missing file yields the defaults.
"""

from __future__ import annotations

import dataclasses
import os
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

DEFAULT_CONFIG_PATH = Path("config/subagent_pool.yaml")
COMMAND_ENV_VAR = "SUBAGENT_POOL_COMMAND"

DEFAULT_COMMAND: tuple[str, ...] = ("pi", "--mode", "json", "--no-session", "-p")


class ConfigError(ValueError):
    """Raised when pool configuration is invalid."""


@dataclass(frozen=True)
class PoolConfig:
    """Settings for worker processes, the scheduler and the run registry.

    Attributes:
        command: Worker executable and leading arguments; the composed prompt
            is appended as the final argument.
        grace_period_s: Delay between SIGTERM and SIGKILL on cancellation.
        drain_timeout_s: How long to wait for output pumps after process exit.
        max_activities: Ring buffer capacity per task.
        activity_preview_chars: Truncation length of one activity line.
        tool_args_preview_chars: Truncation length of tool argument previews.
        default_concurrency: Concurrency used when the caller gives none.
        max_concurrency: Largest accepted concurrency.
        registry_capacity: Number of past runs kept for steering.
        report_recent_activities: Activities shown per task in reports.
    """

    command: tuple[str, ...] = DEFAULT_COMMAND
    grace_period_s: float = 3.0
    drain_timeout_s: float = 2.0
    max_activities: int = 120
    activity_preview_chars: int = 180
    tool_args_preview_chars: int = 90
    default_concurrency: int = 2
    max_concurrency: int = 4
    registry_capacity: int = 20
    report_recent_activities: int = 6

    def __post_init__(self) -> None:
        if not self.command or not all(isinstance(part, str) and part for part in self.command):
            raise ConfigError("command must be a non-empty list of non-empty strings")
        if self.grace_period_s <= 0:
            raise ConfigError("grace_period_s must be > 0")
        if self.drain_timeout_s <= 0:
            raise ConfigError("drain_timeout_s must be > 0")
        for name in (
            "max_activities",
            "activity_preview_chars",
            "tool_args_preview_chars",
            "max_concurrency",
            "registry_capacity",
        ):
            if getattr(self, name) < 1:
                raise ConfigError(f"{name} must be >= 1")
        if self.report_recent_activities < 0:
            raise ConfigError("report_recent_activities must be >= 0")
        if not 1 <= self.default_concurrency <= self.max_concurrency:
            raise ConfigError(
                f"default_concurrency must be between 1 and max_concurrency ({self.max_concurrency})"
            )


_FIELD_NAMES = frozenset(f.name for f in dataclasses.fields(PoolConfig))


def load_pool_config(
    config_path: Path | None = None,
    project_root: Path | None = None,
    *,
    environ: dict[str, str] | None = None,
) -> PoolConfig:
    """Load pool configuration from a YAML file.

    Args:
        config_path: Path to the config file. Defaults to config/subagent_pool.yaml.
        project_root: Project root directory. Defaults to current working directory.
        environ: Environment used for overrides. Defaults to os.environ.

    Returns:
        PoolConfig with all configuration values.

    Raises:
        ConfigError: If configuration is invalid.
    """
    root = project_root or Path.cwd()
    path = config_path or (root / DEFAULT_CONFIG_PATH)
    env = os.environ if environ is None else environ

    data: dict[str, Any] = {}
    if path.exists():
        try:
            with path.open("r", encoding="utf-8") as f:
                loaded = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}") from e
        if loaded is None:
            loaded = {}
        if not isinstance(loaded, dict):
            raise ConfigError(f"Config must be a mapping, got {type(loaded).__name__}")
        data = dict(loaded)
    elif config_path is not None:
        raise ConfigError(f"Config file not found: {path}")

    command_override = env.get(COMMAND_ENV_VAR, "").strip()
    if command_override:
        data["command"] = shlex.split(command_override)

    return _parse_config(data, source=path)


def _parse_config(data: dict[str, Any], *, source: Path) -> PoolConfig:
    """Parse configuration from YAML data."""
    unknown = sorted(set(data) - _FIELD_NAMES)
    if unknown:
        raise ConfigError(f"Unknown config keys in {source}: {', '.join(unknown)}")

    values = dict(data)
    if "command" in values:
        command = values["command"]
        if isinstance(command, str):
            command = shlex.split(command)
        if not isinstance(command, list):
            raise ConfigError(f"command must be a list or string, got {type(command).__name__}")
        values["command"] = tuple(command)

    try:
        return PoolConfig(**values)
    except TypeError as e:
        raise ConfigError(f"Invalid config value in {source}: {e}") from e
