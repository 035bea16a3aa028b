"""Helpers for background ``asyncio.Task`` objects."""

from __future__ import annotations

import asyncio
from typing import Any

from foreman.core.logging import ForemanLogger


def log_task_exception(
    task: asyncio.Task[Any],
    logger: ForemanLogger,
    event: str,
) -> BaseException | None:
    """Log the exception a finished background task died with, if any.

    Meant for ``add_done_callback`` handlers so failures in fire-and-forget
    tasks are never lost. Cancelled tasks are not errors.
    """
    if task.cancelled():
        return None
    exc = task.exception()
    if exc is not None:
        logger.error(event, error=str(exc), error_type=type(exc).__name__, task_name=task.get_name())
    return exc


def track_task(
    tasks: set[asyncio.Task[Any]],
    task: asyncio.Task[Any],
    logger: ForemanLogger,
    event: str,
) -> asyncio.Task[Any]:
    """Keep a strong reference to ``task`` until it finishes, then log its failure."""
    tasks.add(task)

    def _done(t: asyncio.Task[Any]) -> None:
        tasks.discard(t)
        log_task_exception(t, logger, event)

    task.add_done_callback(_done)
    return task


__all__ = ["log_task_exception", "track_task"]
