"""Persistent priority task queue with a fixed-interval dispatch loop.

The queue owns four disjoint collections (pending, running, completed,
failed) plus the schedule list, all held in one ``QueueState``. Every
mutating call rewrites the whole state through the ``StateStore`` before
returning, so a caller that sees success knows the change is durable.

Each tick:

1. If fewer than ``max_concurrent_tasks`` are running, pop the
   highest-priority pending task (FIFO within a priority), move it to
   running and await the executor registered for its type.
2. Independently, materialize a pending task from every enabled schedule
   whose ``next_run`` has passed, and advance ``next_run``.

The loop fires a new tick every ``tick_interval_seconds`` whether or not
earlier ticks' executors have finished; the concurrency cap is the only
backpressure. Moving a task between collections never spans an ``await``,
so concurrent ticks observe a consistent state and cannot exceed the cap.

Executor faults (unknown type, exception, reported failure) all end as a
``failed`` task with an error string. Nothing a single task does can stop
the loop.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from foreman.core.config import QueueConfig
from foreman.core.errors import PersistenceError, ScheduleError
from foreman.core.logging import ExecutionContext, get_logger, with_context
from foreman.core.task_utils import track_task
from foreman.events import EventBus, make_event
from foreman.tasks.cron import calculate_next_run, validate_expression
from foreman.tasks.executors import ExecutorResult, TaskExecutor
from foreman.tasks.models import (
    QueueState,
    Task,
    TaskPriority,
    TaskSchedule,
    TaskStatus,
    TaskTemplate,
    generate_task_id,
    priority_sort_key,
    utc_now,
)
from foreman.tasks.store import StateStore

_logger = get_logger("queue")

ORPHAN_ERROR = "Interrupted by restart"
DEFAULT_FAILURE_ERROR = "Task failed without an error message"


@dataclass
class QueueStats:
    """Statistics snapshot from the queue."""

    pending: int
    running: int
    completed: int
    failed: int
    schedules: int
    max_concurrent: int
    total_completed: int
    total_failed: int
    executors: list[str]


class TaskQueue:
    """Priority queue of background tasks with recurring schedules.

    Usage::

        queue = TaskQueue(InMemoryStateStore(), QueueConfig())
        await queue.load()
        queue.register_executor("ping", ping_executor)
        task_id = await queue.add_task("ping", priority="high")
        await queue.start()
        ...
        await queue.stop()
    """

    def __init__(
        self,
        store: StateStore,
        config: QueueConfig | None = None,
        *,
        event_bus: EventBus | None = None,
    ) -> None:
        self._store = store
        self._config = config or QueueConfig()
        self._event_bus = event_bus
        self._state = QueueState()
        self._executors: dict[str, TaskExecutor] = {}
        self._loop_task: asyncio.Task[None] | None = None
        self._ticks: set[asyncio.Task[Any]] = set()
        self._total_completed = 0
        self._total_failed = 0

    @property
    def config(self) -> QueueConfig:
        return self._config

    @property
    def running(self) -> bool:
        """Whether the dispatch loop is active."""
        return self._loop_task is not None and not self._loop_task.done()

    # ─── Persistence ───────────────────────────────────────────────────

    async def load(self) -> None:
        """Load persisted state, replacing whatever is in memory.

        Missing state starts empty. A blob that does not parse is logged and
        replaced by empty state. Tasks persisted as running cannot still be
        executing, so they are moved to failed (unless disabled in config).

        Raises:
            PersistenceError: The store itself could not be read.
        """
        key = self._config.state_key
        try:
            blob = await self._store.read(key)
        except Exception as e:
            raise PersistenceError(
                f"Failed to read queue state {key!r}: {e}", {"state_key": key},
            ) from e

        if blob is None:
            self._state = QueueState()
            _logger.info("queue.state_initialized", state_key=key)
            return

        try:
            self._state = QueueState.model_validate_json(blob)
        except (ValidationError, ValueError) as e:
            _logger.warning("queue.state_corrupt", state_key=key, error=str(e))
            self._state = QueueState()
            await self._persist()
            return

        orphans = 0
        if self._config.fail_orphans_on_load and self._state.running:
            now = utc_now()
            for task in self._state.running:
                task.status = TaskStatus.FAILED
                task.error = task.error or ORPHAN_ERROR
                task.updated_at = now
                task.completed_at = now
            orphans = len(self._state.running)
            self._state.failed.extend(self._state.running)
            self._state.running = []
            self._evict_history(self._state.failed)
            await self._persist()

        _logger.info(
            "queue.state_loaded",
            state_key=key,
            pending=len(self._state.pending),
            completed=len(self._state.completed),
            failed=len(self._state.failed),
            schedules=len(self._state.schedules),
            orphans_failed=orphans,
        )

    async def _persist(self) -> None:
        key = self._config.state_key
        try:
            await self._store.write(key, self._state.model_dump_json())
        except Exception as e:
            _logger.error("queue.persist_failed", state_key=key, error=str(e))
            raise PersistenceError(
                f"Failed to write queue state {key!r}: {e}", {"state_key": key},
            ) from e

    # ─── Loop ──────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Start the dispatch loop. Idempotent."""
        if self.running:
            return
        self._loop_task = asyncio.create_task(self._run_loop(), name="foreman-queue-loop")
        _logger.info(
            "queue.started",
            tick_interval_seconds=self._config.tick_interval_seconds,
            max_concurrent=self._config.max_concurrent_tasks,
        )

    async def stop(self, drain_timeout: float = 5.0) -> None:
        """Stop firing ticks and give in-flight ticks ``drain_timeout`` to finish.

        Ticks still running after that are cancelled. Their tasks stay in
        running and are failed as orphans on the next ``load()``.
        """
        if self._loop_task is not None:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None

        if self._ticks:
            _, still_running = await asyncio.wait(set(self._ticks), timeout=drain_timeout)
            for task in still_running:
                task.cancel()
            if still_running:
                await asyncio.gather(*still_running, return_exceptions=True)
        _logger.info("queue.stopped", running=len(self._state.running))

    async def _run_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.tick_interval_seconds)
            track_task(
                self._ticks,
                asyncio.create_task(self.tick(), name="foreman-queue-tick"),
                _logger,
                "queue.tick_died",
            )

    async def tick(self) -> None:
        """Run one dispatch step and one schedule scan concurrently."""
        results = await asyncio.gather(
            self._process_pending(),
            self._check_schedules(),
            return_exceptions=True,
        )
        for step, result in zip(("process_pending", "check_schedules"), results, strict=True):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                _logger.error(
                    "queue.tick_step_failed",
                    step=step,
                    error=str(result),
                    error_type=type(result).__name__,
                )

    # ─── Dispatch ──────────────────────────────────────────────────────

    def _promote_next(self) -> Task | None:
        """Move the best pending task to running. Never suspends."""
        if len(self._state.running) >= self._config.max_concurrent_tasks:
            return None
        if not self._state.pending:
            return None
        task = min(self._state.pending, key=priority_sort_key)
        self._state.pending.remove(task)
        now = utc_now()
        task.status = TaskStatus.RUNNING
        task.updated_at = now
        if task.started_at is None:
            task.started_at = now
        self._state.running.append(task)
        return task

    async def _process_pending(self) -> None:
        task = self._promote_next()
        if task is None:
            return

        _logger.info(
            "queue.task_started",
            task_id=task.id,
            task_type=task.type,
            priority=task.priority.value,
            running=len(self._state.running),
        )
        self._publish("task.started", task.id, type=task.type)
        try:
            await self._persist()
        except PersistenceError:
            pass  # Already logged; in-memory state stays authoritative

        executor = self._executors.get(task.type)
        if executor is None:
            await self._record_outcome(
                task,
                ExecutorResult(
                    success=False,
                    error=f"No executor registered for task type: {task.type}",
                ),
            )
            return

        with with_context(ExecutionContext(task_id=task.id, component="queue")):
            try:
                outcome = ExecutorResult.coerce(await executor(task))
            except Exception as e:
                _logger.warning(
                    "queue.executor_raised",
                    task_id=task.id,
                    task_type=task.type,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                outcome = ExecutorResult(success=False, error=str(e) or type(e).__name__)
            await self._record_outcome(task, outcome)

    async def _record_outcome(self, task: Task, outcome: ExecutorResult) -> None:
        try:
            if outcome.success:
                await self.update_task_status(task.id, TaskStatus.COMPLETED, result=outcome.result)
            else:
                await self.update_task_status(
                    task.id, TaskStatus.FAILED, error=outcome.error or DEFAULT_FAILURE_ERROR,
                )
        except PersistenceError:
            pass  # Already logged by _persist

    # ─── Schedules ─────────────────────────────────────────────────────

    async def _check_schedules(self) -> None:
        now = utc_now()
        fired: list[tuple[TaskSchedule, Task]] = []
        for schedule in self._state.schedules:
            if not schedule.is_due(now):
                continue
            task = self._task_from_template(schedule.task)
            self._state.pending.append(task)
            schedule.last_run = now
            schedule.next_run = calculate_next_run(schedule.cron_expression, now)
            schedule.run_count += 1
            fired.append((schedule, task))

        if not fired:
            return
        for schedule, task in fired:
            _logger.info(
                "queue.schedule_fired",
                schedule_id=schedule.id,
                task_id=task.id,
                run_count=schedule.run_count,
                next_run=schedule.next_run.isoformat() if schedule.next_run else None,
            )
            self._publish("schedule.fired", schedule.id, task_id=task.id)
            self._publish("task.added", task.id, type=task.type, schedule_id=schedule.id)
        await self._persist()

    async def add_schedule(
        self,
        cron_expression: str,
        task: TaskTemplate | dict[str, Any],
        *,
        enabled: bool = True,
    ) -> str:
        """Register a recurring task template. Returns the schedule id.

        Raises:
            ScheduleError: Empty expression or invalid template.
        """
        validate_expression(cron_expression)
        try:
            template = task if isinstance(task, TaskTemplate) else TaskTemplate.model_validate(task)
        except ValidationError as e:
            raise ScheduleError(f"Invalid task template: {e}") from e

        schedule = TaskSchedule(
            cron_expression=cron_expression,
            task=template,
            enabled=enabled,
            next_run=calculate_next_run(cron_expression, utc_now()),
        )
        self._state.schedules.append(schedule)
        await self._persist()
        _logger.info(
            "queue.schedule_added",
            schedule_id=schedule.id,
            cron_expression=cron_expression,
            task_type=template.type,
        )
        return schedule.id

    async def remove_schedule(self, schedule_id: str) -> bool:
        """Delete a schedule. Tasks it already produced are untouched."""
        for index, schedule in enumerate(self._state.schedules):
            if schedule.id == schedule_id:
                del self._state.schedules[index]
                await self._persist()
                _logger.info("queue.schedule_removed", schedule_id=schedule_id)
                return True
        return False

    async def set_schedule_enabled(self, schedule_id: str, enabled: bool) -> bool:
        schedule = self._find_schedule(schedule_id)
        if schedule is None:
            return False
        if schedule.enabled != enabled:
            schedule.enabled = enabled
            await self._persist()
            _logger.info("queue.schedule_toggled", schedule_id=schedule_id, enabled=enabled)
        return True

    def list_schedules(self) -> list[TaskSchedule]:
        return [s.model_copy(deep=True) for s in self._state.schedules]

    def get_schedule(self, schedule_id: str) -> TaskSchedule | None:
        schedule = self._find_schedule(schedule_id)
        return schedule.model_copy(deep=True) if schedule is not None else None

    def _find_schedule(self, schedule_id: str) -> TaskSchedule | None:
        return next((s for s in self._state.schedules if s.id == schedule_id), None)

    # ─── Tasks ─────────────────────────────────────────────────────────

    async def add_task(
        self,
        type: str,
        *,
        title: str = "",
        description: str | None = None,
        priority: TaskPriority | str = TaskPriority.MEDIUM,
        session_id: str | None = None,
        project_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        task_id: str | None = None,
    ) -> str:
        """Enqueue a pending task and persist before returning its id."""
        if task_id is not None and self._find_task(task_id) is not None:
            raise ValueError(f"Task id already exists: {task_id}")
        task = Task(
            id=task_id or generate_task_id(),
            type=type,
            title=title,
            description=description,
            priority=TaskPriority(priority),
            session_id=session_id,
            project_id=project_id,
            metadata=dict(metadata or {}),
        )
        self._state.pending.append(task)
        await self._persist()
        _logger.info(
            "queue.task_added",
            task_id=task.id,
            task_type=task.type,
            priority=task.priority.value,
            pending=len(self._state.pending),
        )
        self._publish("task.added", task.id, type=task.type, priority=task.priority.value)
        return task.id

    def _task_from_template(self, template: TaskTemplate) -> Task:
        return Task(**template.model_copy(deep=True).model_dump())

    async def cancel_task(self, task_id: str) -> bool:
        """Remove a pending or running task outright.

        A running task's executor is not interrupted; when it finishes, its
        status update targets an unknown id and is ignored.
        """
        for status in (TaskStatus.PENDING, TaskStatus.RUNNING):
            collection = self._state.collection(status)
            for index, task in enumerate(collection):
                if task.id == task_id:
                    del collection[index]
                    await self._persist()
                    _logger.info("queue.task_cancelled", task_id=task_id, was=status.value)
                    self._publish("task.cancelled", task_id, was=status.value)
                    return True
        return False

    async def update_task_status(
        self,
        task_id: str,
        status: TaskStatus | str,
        result: Any = None,
        error: str | None = None,
    ) -> bool:
        """Move a task to the collection matching ``status``.

        ``started_at`` is set the first time the task enters running.
        ``completed_at`` is set on entering completed or failed. ``result``
        and ``error`` are only overwritten when given. Returns False if the
        task is not tracked (e.g. it was cancelled).
        """
        status = TaskStatus(status)
        task = self._detach(task_id)
        if task is None:
            _logger.debug("queue.update_unknown_task", task_id=task_id, status=status.value)
            return False

        now = utc_now()
        task.status = status
        task.updated_at = now
        if status == TaskStatus.RUNNING and task.started_at is None:
            task.started_at = now
        if status.is_terminal:
            task.completed_at = now
        if result is not None:
            task.result = result
        if error is not None:
            task.error = error

        collection = self._state.collection(status)
        collection.append(task)
        if status == TaskStatus.COMPLETED:
            self._total_completed += 1
            self._evict_history(collection)
        elif status == TaskStatus.FAILED:
            self._total_failed += 1
            self._evict_history(collection)

        if status == TaskStatus.FAILED:
            _logger.warning("queue.task_failed", task_id=task_id, task_type=task.type, error=task.error)
        else:
            _logger.info("queue.task_status", task_id=task_id, task_type=task.type, status=status.value)
        if status.is_terminal:
            self._publish(
                f"task.{status.value}",
                task_id,
                type=task.type,
                error=task.error if status == TaskStatus.FAILED else None,
            )

        await self._persist()
        return True

    def _detach(self, task_id: str) -> Task | None:
        for status in TaskStatus:
            collection = self._state.collection(status)
            for index, task in enumerate(collection):
                if task.id == task_id:
                    return collection.pop(index)
        return None

    def _find_task(self, task_id: str) -> Task | None:
        return next((t for t in self._state.all_tasks() if t.id == task_id), None)

    def _evict_history(self, collection: list[Task]) -> None:
        excess = len(collection) - self._config.max_history
        if excess > 0:
            del collection[:excess]

    # ─── Executors ─────────────────────────────────────────────────────

    def register_executor(self, task_type: str, executor: TaskExecutor) -> None:
        self._executors[task_type] = executor
        _logger.debug("queue.executor_registered", task_type=task_type)

    def unregister_executor(self, task_type: str) -> bool:
        return self._executors.pop(task_type, None) is not None

    # ─── Queries ───────────────────────────────────────────────────────

    def get_task(self, task_id: str) -> Task | None:
        task = self._find_task(task_id)
        return task.model_copy(deep=True) if task is not None else None

    def list_tasks(self, status: TaskStatus | str | None = None) -> list[Task]:
        """Tasks in one collection (pending in priority order), or all of them."""
        if status is None:
            tasks = self._state.all_tasks()
        elif TaskStatus(status) == TaskStatus.PENDING:
            return self.pending_tasks()
        else:
            tasks = self._state.collection(TaskStatus(status))
        return [t.model_copy(deep=True) for t in tasks]

    def pending_tasks(self) -> list[Task]:
        """Pending tasks in dispatch order."""
        return [
            t.model_copy(deep=True)
            for t in sorted(self._state.pending, key=priority_sort_key)
        ]

    def tasks_for_session(self, session_id: str) -> list[Task]:
        return [
            t.model_copy(deep=True) for t in self._state.all_tasks() if t.session_id == session_id
        ]

    def tasks_for_project(self, project_id: str) -> list[Task]:
        return [
            t.model_copy(deep=True) for t in self._state.all_tasks() if t.project_id == project_id
        ]

    def get_stats(self) -> QueueStats:
        return QueueStats(
            pending=len(self._state.pending),
            running=len(self._state.running),
            completed=len(self._state.completed),
            failed=len(self._state.failed),
            schedules=len(self._state.schedules),
            max_concurrent=self._config.max_concurrent_tasks,
            total_completed=self._total_completed,
            total_failed=self._total_failed,
            executors=sorted(self._executors),
        )

    def snapshot(self) -> QueueState:
        """Deep copy of the whole state."""
        return self._state.model_copy(deep=True)

    # ─── Internal ──────────────────────────────────────────────────────

    def _publish(self, event: str, subject: str, **data: Any) -> None:
        if self._event_bus is not None:
            self._event_bus.publish_nowait(make_event(event, subject, **data))


__all__ = ["DEFAULT_FAILURE_ERROR", "ORPHAN_ERROR", "QueueStats", "TaskQueue"]
