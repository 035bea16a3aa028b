"""Shared utilities for Foreman CLI commands.

Holds the global option state set by the root callback (logging options and
the config file path), config loading, and the factories that build the
store, queue and supervisor a command needs.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

import typer
import yaml
from rich.console import Console

from foreman.core.config import ForemanConfig, load_config
from foreman.core.errors import ConfigurationError
from foreman.core.logging import configure_logging, get_logger
from foreman.tasks.queue import TaskQueue
from foreman.tasks.store import create_store

_logger = get_logger("cli")


class ErrorMessages:
    """Constants for CLI error messages."""

    TASK_NOT_FOUND = "Task not found"
    SCHEDULE_NOT_FOUND = "Schedule not found"
    CONFIG_LOAD_ERROR = "Error loading config"
    INVALID_METADATA = "Invalid metadata"


# =============================================================================
# Logging configuration
# =============================================================================


@dataclass
class CliLoggingConfig:
    """Logging options collected from the root callback.

    ``None`` means "not given on the command line"; the config file's
    ``logging`` section fills those in.
    """

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] | None = None
    file: Path | None = None
    format: Literal["json", "console", "both"] | None = None
    configured: bool = False


_log_config = CliLoggingConfig()
_config_path: Path | None = None


def set_log_level(level: str) -> None:
    _log_config.level = level.upper()  # type: ignore[assignment]


def set_log_file(path: Path | None) -> None:
    _log_config.file = path


def set_log_format(fmt: str) -> None:
    _log_config.format = fmt  # type: ignore[assignment]


def set_config_path(path: Path | None) -> None:
    global _config_path
    _config_path = path


def get_config_path() -> Path | None:
    return _config_path


def get_config(console: Console) -> ForemanConfig:
    """Load the config selected by ``--config`` (or the default location).

    Raises:
        typer.Exit: If the file cannot be loaded.
    """
    try:
        return load_config(_config_path)
    except ConfigurationError as e:
        console.print(f"[red]{ErrorMessages.CONFIG_LOAD_ERROR}:[/red] {e}")
        raise typer.Exit(1) from None


def configure_global_logging(console: Console) -> None:
    """Configure logging from CLI options, falling back to the config file.

    Only configures once per session.

    Raises:
        typer.Exit: If logging configuration fails.
    """
    if _log_config.configured:
        return

    file_settings = get_config(console).logging
    try:
        configure_logging(
            level=_log_config.level or file_settings.level,
            format=_log_config.format or file_settings.format,
            file_path=_log_config.file or file_settings.file,
        )
        _log_config.configured = True
    except ValueError as e:
        # e.g. format="both" without a file
        console.print(f"[red]Logging configuration error:[/red] {e}")
        raise typer.Exit(1) from None


def reset_cli_state() -> None:
    """Reset global option state (primarily for testing)."""
    global _log_config, _config_path
    _log_config = CliLoggingConfig()
    _config_path = None


# =============================================================================
# Component factories
# =============================================================================


@asynccontextmanager
async def open_queue(config: ForemanConfig) -> AsyncIterator[TaskQueue]:
    """Open the configured store and yield a loaded queue.

    Running tasks are left alone: only the worker may fail them as orphans.
    The queue is single-writer, so mutating commands must not race a
    running worker on the same store.
    """
    store = create_store(config.state)
    await store.open()
    try:
        queue = TaskQueue(store, config.queue.model_copy(update={"fail_orphans_on_load": False}))
        await queue.load()
        yield queue
    finally:
        await store.close()


# =============================================================================
# Argument parsing
# =============================================================================


def parse_metadata(items: list[str] | None) -> dict[str, Any]:
    """Parse repeated ``key=value`` options. Values are read as YAML scalars/lists.

    Raises:
        typer.BadParameter: If an item has no ``=`` or an unparseable value.
    """
    metadata: dict[str, Any] = {}
    for item in items or []:
        key, sep, raw = item.partition("=")
        if not sep or not key:
            raise typer.BadParameter(f"{ErrorMessages.INVALID_METADATA}: expected key=value, got {item!r}")
        try:
            metadata[key] = yaml.safe_load(raw) if raw else ""
        except yaml.YAMLError as e:
            raise typer.BadParameter(f"{ErrorMessages.INVALID_METADATA} for {key!r}: {e}") from e
    return metadata


__all__ = [
    "CliLoggingConfig",
    "ErrorMessages",
    "configure_global_logging",
    "get_config",
    "get_config_path",
    "open_queue",
    "parse_metadata",
    "reset_cli_state",
    "set_config_path",
    "set_log_file",
    "set_log_format",
    "set_log_level",
]
