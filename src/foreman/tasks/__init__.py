"""Background task queue: models, schedules, persistence and executors."""

from foreman.tasks.executors import ExecutorResult, ProcessExecutor, PromptExecutor, TaskExecutor
from foreman.tasks.models import (
    QueueState,
    Task,
    TaskPriority,
    TaskSchedule,
    TaskStatus,
    TaskTemplate,
)
from foreman.tasks.queue import QueueStats, TaskQueue
from foreman.tasks.store import (
    InMemoryStateStore,
    JsonFileStateStore,
    SqliteStateStore,
    StateStore,
    create_store,
)

__all__ = [
    "ExecutorResult",
    "InMemoryStateStore",
    "JsonFileStateStore",
    "ProcessExecutor",
    "PromptExecutor",
    "QueueState",
    "QueueStats",
    "SqliteStateStore",
    "StateStore",
    "Task",
    "TaskExecutor",
    "TaskPriority",
    "TaskQueue",
    "TaskSchedule",
    "TaskStatus",
    "TaskTemplate",
    "create_store",
]
