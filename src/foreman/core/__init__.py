"""Shared infrastructure: configuration, errors, logging."""

from foreman.core.config import ForemanConfig, QueueConfig, StateConfig, SupervisorConfig
from foreman.core.errors import (
    ConfigurationError,
    ForemanError,
    PersistenceError,
    ProcessWaitTimeoutError,
    QueueError,
    ScheduleError,
    SpawnFailedError,
    SupervisorError,
    WorkingDirectoryNotFoundError,
)
from foreman.core.logging import configure_logging, get_logger

__all__ = [
    "ConfigurationError",
    "ForemanConfig",
    "ForemanError",
    "PersistenceError",
    "ProcessWaitTimeoutError",
    "QueueConfig",
    "QueueError",
    "ScheduleError",
    "SpawnFailedError",
    "StateConfig",
    "SupervisorConfig",
    "SupervisorError",
    "WorkingDirectoryNotFoundError",
    "configure_logging",
    "get_logger",
]
