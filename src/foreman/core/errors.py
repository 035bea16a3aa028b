"""Exception hierarchy for Foreman.

Everything raised on purpose inherits from ForemanError, so callers can
catch broadly or narrowly. Each error carries a stable ``code`` string and
an optional ``context`` dict for structured logging.

Runtime subprocess failures (nonzero exit, signal death, timeout) are NOT
exceptions: they end up as a terminal ``error`` status on the handle.
"""

from __future__ import annotations

from typing import Any


class ForemanError(Exception):
    """Base exception for all Foreman errors."""

    code: str = "FOREMAN_ERROR"

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.context: dict[str, Any] = context or {}


class ConfigurationError(ForemanError):
    """Configuration file missing, unreadable or invalid."""

    code = "CONFIGURATION_ERROR"


# ─── Supervisor ────────────────────────────────────────────────────────


class SupervisorError(ForemanError):
    """Base for process supervision errors."""

    code = "SUPERVISOR_ERROR"


class SpawnFailedError(SupervisorError):
    """The OS refused to start the subprocess (e.g. executable not found)."""

    code = "SPAWN_FAILED"


class WorkingDirectoryNotFoundError(SupervisorError):
    """The requested working directory does not exist."""

    code = "NOT_FOUND"


class ProcessWaitTimeoutError(SupervisorError):
    """``wait()`` gave up before the handle reached a terminal status.

    Distinct from the handle's own spawn timeout: the process may still be
    running when this is raised.
    """

    code = "WAIT_TIMEOUT"


# ─── Queue ─────────────────────────────────────────────────────────────


class QueueError(ForemanError):
    """Base for task queue errors."""

    code = "QUEUE_ERROR"


class PersistenceError(QueueError):
    """Reading or writing the persisted queue state failed.

    The in-memory state stays authoritative when a write fails; the next
    successful write catches the store up.
    """

    code = "PERSISTENCE_FAILED"


class ScheduleError(QueueError):
    """A schedule definition was rejected."""

    code = "INVALID_SCHEDULE"


__all__ = [
    "ConfigurationError",
    "ForemanError",
    "PersistenceError",
    "ProcessWaitTimeoutError",
    "QueueError",
    "ScheduleError",
    "SpawnFailedError",
    "SupervisorError",
    "WorkingDirectoryNotFoundError",
]
