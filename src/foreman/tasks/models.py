"""Task, schedule and queue-state models.

These are the records persisted across restarts. ``QueueState`` is the
unit of persistence: it is serialized whole on every mutation.
"""

from __future__ import annotations

import secrets
import string
import time
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

_BASE36 = string.digits + string.ascii_lowercase


def utc_now() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(UTC)


def generate_task_id(prefix: str = "task") -> str:
    """``task-<epoch ms>-<7 random base36 chars>``."""
    suffix = "".join(secrets.choice(_BASE36) for _ in range(7))
    return f"{prefix}-{int(time.time() * 1000)}-{suffix}"


class TaskStatus(str, Enum):
    """Status of a queued task. Each status names one queue collection."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED)


class TaskPriority(str, Enum):
    """Task priority. Lower rank is dequeued first."""

    URGENT = "urgent"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    TaskPriority.URGENT: 0,
    TaskPriority.HIGH: 1,
    TaskPriority.MEDIUM: 2,
    TaskPriority.LOW: 3,
}


class Task(BaseModel):
    """A unit of background work.

    ``type`` selects the executor and is opaque to the queue. ``metadata``
    carries the executor's payload.
    """

    id: str = Field(default_factory=generate_task_id)
    type: str
    title: str = ""
    description: str | None = None
    status: TaskStatus = TaskStatus.PENDING
    priority: TaskPriority = TaskPriority.MEDIUM
    session_id: str | None = Field(
        default=None, description="Owning conversation/session, if any",
    )
    project_id: str | None = Field(default=None, description="Owning project, if any")
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    started_at: datetime | None = Field(
        default=None, description="Set the first time the task enters running; never overwritten",
    )
    completed_at: datetime | None = Field(
        default=None, description="Set when the task enters completed or failed",
    )
    result: Any = None
    error: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


def priority_sort_key(task: Task) -> tuple[int, datetime]:
    """Rank first, then creation time (FIFO among equal priority)."""
    return (task.priority.rank, task.created_at)


class TaskTemplate(BaseModel):
    """The task a schedule materializes each time it fires."""

    type: str
    title: str = ""
    description: str | None = None
    priority: TaskPriority = TaskPriority.MEDIUM
    session_id: str | None = None
    project_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class TaskSchedule(BaseModel):
    """A recurring template. Independent of the tasks it has produced."""

    id: str = Field(default_factory=lambda: generate_task_id("schedule"))
    cron_expression: str
    task: TaskTemplate
    enabled: bool = True
    last_run: datetime | None = None
    next_run: datetime | None = None
    run_count: int = 0

    def is_due(self, now: datetime) -> bool:
        return self.enabled and self.next_run is not None and self.next_run <= now


class QueueState(BaseModel):
    """All four task collections plus the schedule list."""

    pending: list[Task] = Field(default_factory=list)
    running: list[Task] = Field(default_factory=list)
    completed: list[Task] = Field(default_factory=list)
    failed: list[Task] = Field(default_factory=list)
    schedules: list[TaskSchedule] = Field(default_factory=list)

    def collection(self, status: TaskStatus) -> list[Task]:
        return getattr(self, status.value)

    def all_tasks(self) -> list[Task]:
        return [*self.pending, *self.running, *self.completed, *self.failed]


__all__ = [
    "QueueState",
    "Task",
    "TaskPriority",
    "TaskSchedule",
    "TaskStatus",
    "TaskTemplate",
    "generate_task_id",
    "priority_sort_key",
    "utc_now",
]
