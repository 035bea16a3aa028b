"""Configuration models for Foreman.

Pydantic v2 models for the supervisor, the task queue, the persistence
store and logging. A single ``ForemanConfig`` is loaded from YAML (or built
with defaults) once at startup and handed to the components that need it.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from foreman.core.errors import ConfigurationError

PermissionMode = Literal[
    "acceptEdits", "bypassPermissions", "default", "delegate", "dontAsk", "plan",
]

DEFAULT_CONFIG_PATH = Path("~/.foreman/config.yaml")


class SupervisorConfig(BaseModel):
    """Subprocess supervision settings."""

    executable: str = Field(
        default="claude",
        description="Executable launched by spawn_prompt(). Resolved via PATH.",
    )
    default_model: str | None = Field(
        default="claude-3-5-sonnet",
        description="Model passed as --model when the caller does not choose one.",
    )
    permission_mode: PermissionMode = Field(
        default="acceptEdits",
        description="Value for --permission-mode on prompt invocations.",
    )
    output_format: str | None = Field(
        default=None,
        description="Optional --output-format value (text, json, stream-json).",
    )
    timeout_seconds: float = Field(
        default=0.0,
        ge=0.0,
        description="Per-process timeout applied when spawn() gets none. 0 disables it.",
    )
    wait_timeout_seconds: float = Field(
        default=300.0,
        gt=0.0,
        description="Default ceiling for wait() when the caller passes no timeout.",
    )
    grace_period_seconds: float = Field(
        default=5.0,
        ge=0.0,
        description="Delay between SIGTERM and SIGKILL when stopping a process.",
    )
    max_output_bytes: int = Field(
        default=10_000_000,
        ge=1,
        description="Cumulative bytes stored per handle before truncation.",
    )
    max_output_chunks: int = Field(
        default=10_000,
        ge=1,
        description="Number of chunks stored per handle before truncation.",
    )
    default_term: str = Field(
        default="xterm-256color",
        description="TERM given to children when the parent environment has none.",
    )


class QueueConfig(BaseModel):
    """Task queue and dispatch loop settings."""

    tick_interval_seconds: float = Field(
        default=5.0,
        gt=0.0,
        description="Interval between dispatch ticks.",
    )
    max_concurrent_tasks: int = Field(
        default=3,
        ge=1,
        description="Maximum tasks in running state at once.",
    )
    max_history: int = Field(
        default=1000,
        ge=1,
        description="Completed and failed tasks kept per collection. Oldest are evicted.",
    )
    state_key: str = Field(
        default="queue",
        min_length=1,
        description="Key under which the queue state blob is stored.",
    )
    fail_orphans_on_load: bool = Field(
        default=True,
        description="Move tasks persisted as running to failed when state is loaded.",
    )


class StateConfig(BaseModel):
    """Persistence substrate selection."""

    backend: Literal["memory", "json", "sqlite"] = Field(
        default="json",
        description="memory (tests), json (one file per key) or sqlite (aiosqlite).",
    )
    path: Path = Field(
        default=Path("~/.foreman/state"),
        description="Directory for the json backend, database file for sqlite. "
        "Tilde is expanded.",
    )

    @field_validator("path")
    @classmethod
    def _expand_user(cls, v: Path) -> Path:
        return v.expanduser()


class LogConfig(BaseModel):
    """Logging output settings."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    format: Literal["json", "console", "both"] = "console"
    file: Path | None = None


class ForemanConfig(BaseModel):
    """Top-level configuration."""

    supervisor: SupervisorConfig = Field(default_factory=SupervisorConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    state: StateConfig = Field(default_factory=StateConfig)
    logging: LogConfig = Field(default_factory=LogConfig)

    @classmethod
    def from_yaml(cls, path: Path) -> ForemanConfig:
        """Load configuration from a YAML file.

        Raises:
            ConfigurationError: If the file cannot be read or does not validate.
        """
        try:
            text = Path(path).expanduser().read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigurationError(
                f"Cannot read config file {path}: {e}", {"path": str(path)},
            ) from e
        return cls.from_yaml_string(text, source=str(path))

    @classmethod
    def from_yaml_string(cls, yaml_str: str, *, source: str = "<string>") -> ForemanConfig:
        """Load configuration from a YAML string. Empty documents give defaults."""
        try:
            data = yaml.safe_load(yaml_str) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {source}: {e}", {"path": source}) from e
        if not isinstance(data, dict):
            raise ConfigurationError(
                f"Config root in {source} must be a mapping", {"path": source},
            )
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid config in {source}: {e}", {"path": source}) from e


def load_config(path: Path | None = None) -> ForemanConfig:
    """Load ``path``, or the default config file if it exists, else defaults."""
    if path is not None:
        return ForemanConfig.from_yaml(path)
    default = DEFAULT_CONFIG_PATH.expanduser()
    if default.exists():
        return ForemanConfig.from_yaml(default)
    return ForemanConfig()


__all__ = [
    "DEFAULT_CONFIG_PATH",
    "ForemanConfig",
    "LogConfig",
    "QueueConfig",
    "StateConfig",
    "SupervisorConfig",
    "load_config",
]
