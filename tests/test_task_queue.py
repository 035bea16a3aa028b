"""Tests for foreman.tasks.queue module.

Ticks are driven by hand (``await queue.tick()``) except in the loop
tests, which use a short tick interval.
"""

from __future__ import annotations

import asyncio
import json
from datetime import timedelta

import pytest

from foreman.core.config import QueueConfig
from foreman.core.errors import PersistenceError, ScheduleError
from foreman.events import EventBus
from foreman.tasks.executors import ExecutorResult
from foreman.tasks.models import QueueState, Task, TaskStatus, TaskTemplate, utc_now
from foreman.tasks.queue import ORPHAN_ERROR, TaskQueue
from foreman.tasks.store import InMemoryStateStore


def _collections_of(queue: TaskQueue, task_id: str) -> list[str]:
    state = queue.snapshot()
    return [
        status.value
        for status in TaskStatus
        if any(t.id == task_id for t in state.collection(status))
    ]


class _BlockingExecutor:
    """Executor that holds every task until released."""

    def __init__(self) -> None:
        self.release = asyncio.Event()
        self.started: list[str] = []

    async def __call__(self, task: Task) -> ExecutorResult:
        self.started.append(task.id)
        await self.release.wait()
        return ExecutorResult(success=True, result="done")


class _FailingStore(InMemoryStateStore):
    def __init__(self) -> None:
        super().__init__()
        self.fail = False

    async def write(self, key: str, blob: str) -> None:
        if self.fail:
            raise OSError("disk full")
        await super().write(key, blob)


class TestAddTask:
    """Tests for enqueueing."""

    @pytest.mark.asyncio
    async def test_persists_before_returning(self, queue, store):
        task_id = await queue.add_task("ping", priority="high", session_id="s1")
        persisted = QueueState.model_validate_json(store.blobs["queue"])
        assert [t.id for t in persisted.pending] == [task_id]
        assert persisted.pending[0].priority.value == "high"

    @pytest.mark.asyncio
    async def test_assigns_id_and_timestamps(self, queue):
        task_id = await queue.add_task("ping")
        task = queue.get_task(task_id)
        assert task.id.startswith("task-")
        assert task.status == TaskStatus.PENDING
        assert task.created_at is not None

    @pytest.mark.asyncio
    async def test_duplicate_explicit_id_rejected(self, queue):
        await queue.add_task("ping", task_id="fixed")
        with pytest.raises(ValueError):
            await queue.add_task("ping", task_id="fixed")

    @pytest.mark.asyncio
    async def test_write_failure_propagates_and_memory_stays_authoritative(self):
        store = _FailingStore()
        queue = TaskQueue(store)
        await queue.load()
        store.fail = True
        with pytest.raises(PersistenceError) as exc_info:
            await queue.add_task("ping")
        assert exc_info.value.code == "PERSISTENCE_FAILED"
        assert len(queue.pending_tasks()) == 1

    @pytest.mark.asyncio
    async def test_returned_tasks_are_copies(self, queue):
        task_id = await queue.add_task("ping")
        queue.get_task(task_id).status = TaskStatus.FAILED
        assert queue.get_task(task_id).status == TaskStatus.PENDING


class TestDispatch:
    """Tests for tick() promotion and execution."""

    @pytest.mark.asyncio
    async def test_ping_pong_scenario(self, queue):
        """pending → running → completed with the executor's result."""
        statuses: list[TaskStatus] = []

        async def ping(task: Task) -> dict:
            statuses.append(queue.get_task(task.id).status)
            return {"success": True, "result": "pong"}

        task_id = await queue.add_task("ping", priority="high")
        statuses.append(queue.get_task(task_id).status)
        queue.register_executor("ping", ping)
        await queue.tick()

        task = queue.get_task(task_id)
        statuses.append(task.status)
        assert statuses == [TaskStatus.PENDING, TaskStatus.RUNNING, TaskStatus.COMPLETED]
        assert task.result == "pong"
        assert task.started_at is not None
        assert task.completed_at is not None
        assert _collections_of(queue, task_id) == ["completed"]

    @pytest.mark.asyncio
    async def test_urgent_enqueued_last_is_promoted_first(self, store):
        """low, low, urgent with cap=1: the urgent task runs."""
        queue = TaskQueue(store, QueueConfig(max_concurrent_tasks=1))
        await queue.load()
        executor = _BlockingExecutor()
        queue.register_executor("job", executor)
        await queue.add_task("job", priority="low")
        await queue.add_task("job", priority="low")
        urgent = await queue.add_task("job", priority="urgent")

        tick = asyncio.create_task(queue.tick())
        await asyncio.sleep(0.05)
        assert [t.id for t in queue.list_tasks(TaskStatus.RUNNING)] == [urgent]
        executor.release.set()
        await tick

    @pytest.mark.asyncio
    async def test_fifo_within_priority(self, queue):
        order: list[str] = []

        async def record(task: Task) -> ExecutorResult:
            order.append(task.id)
            return ExecutorResult(success=True)

        queue.register_executor("job", record)
        ids = [await queue.add_task("job", priority="medium") for _ in range(3)]
        for _ in ids:
            await queue.tick()
        assert order == ids

    @pytest.mark.asyncio
    async def test_one_promotion_per_tick(self, queue):
        executor = _BlockingExecutor()
        queue.register_executor("job", executor)
        for _ in range(3):
            await queue.add_task("job")
        tick = asyncio.create_task(queue.tick())
        await asyncio.sleep(0.05)
        assert queue.get_stats().running == 1
        assert queue.get_stats().pending == 2
        executor.release.set()
        await tick

    @pytest.mark.asyncio
    async def test_concurrency_cap_limits_running(self, store):
        """N tasks, cap C < N: only C ever run at once, highest priority first."""
        queue = TaskQueue(store, QueueConfig(max_concurrent_tasks=2))
        await queue.load()
        executor = _BlockingExecutor()
        queue.register_executor("job", executor)
        low = await queue.add_task("job", priority="low")
        high = await queue.add_task("job", priority="high")
        urgent = await queue.add_task("job", priority="urgent")
        medium = await queue.add_task("job", priority="medium")

        ticks = [asyncio.create_task(queue.tick()) for _ in range(4)]
        await asyncio.sleep(0.05)

        running = {t.id for t in queue.list_tasks(TaskStatus.RUNNING)}
        assert running == {urgent, high}
        assert [t.id for t in queue.pending_tasks()] == [medium, low]

        executor.release.set()
        await asyncio.gather(*ticks)
        assert queue.get_stats().completed == 2

    @pytest.mark.asyncio
    async def test_unknown_type_fails_without_invoking(self, queue):
        task_id = await queue.add_task("mystery")
        await queue.tick()
        task = queue.get_task(task_id)
        assert task.status == TaskStatus.FAILED
        assert task.error == "No executor registered for task type: mystery"

    @pytest.mark.asyncio
    async def test_raising_executor_fails_task_and_loop_continues(self, queue):
        async def explode(task: Task) -> ExecutorResult:
            raise RuntimeError("kaboom")

        async def fine(task: Task) -> ExecutorResult:
            return ExecutorResult(success=True, result="ok")

        queue.register_executor("bad", explode)
        queue.register_executor("good", fine)
        bad_id = await queue.add_task("bad", priority="urgent")
        good_id = await queue.add_task("good", priority="low")

        await queue.tick()
        bad = queue.get_task(bad_id)
        assert bad.status == TaskStatus.FAILED
        assert bad.error == "kaboom"

        await queue.tick()
        assert queue.get_task(good_id).status == TaskStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_exception_without_message_still_has_error(self, queue):
        async def explode(task: Task) -> ExecutorResult:
            raise KeyError()

        queue.register_executor("bad", explode)
        task_id = await queue.add_task("bad")
        await queue.tick()
        assert queue.get_task(task_id).error

    @pytest.mark.asyncio
    async def test_reported_failure_without_error_gets_message(self, queue):
        async def nope(task: Task) -> dict:
            return {"success": False}

        queue.register_executor("job", nope)
        task_id = await queue.add_task("job")
        await queue.tick()
        task = queue.get_task(task_id)
        assert task.status == TaskStatus.FAILED
        assert task.error

    @pytest.mark.asyncio
    async def test_bad_return_value_fails_task(self, queue):
        async def weird(task: Task):
            return 42

        queue.register_executor("job", weird)
        task_id = await queue.add_task("job")
        await queue.tick()
        assert queue.get_task(task_id).status == TaskStatus.FAILED

    @pytest.mark.asyncio
    async def test_tick_on_empty_queue_is_noop(self, queue):
        await queue.tick()
        assert queue.get_stats().pending == 0

    @pytest.mark.asyncio
    async def test_unregister_executor(self, queue):
        queue.register_executor("job", _BlockingExecutor())
        assert queue.unregister_executor("job") is True
        assert queue.unregister_executor("job") is False


class TestInvariants:
    """Every task id lives in exactly one collection."""

    @pytest.mark.asyncio
    async def test_exactly_one_collection_throughout(self, queue):
        executor = _BlockingExecutor()
        queue.register_executor("job", executor)
        ids = [await queue.add_task("job", priority=p) for p in ("low", "high", "urgent", "medium")]
        ids.append(await queue.add_task("unknown"))

        def check() -> None:
            for task_id in ids:
                assert len(_collections_of(queue, task_id)) == 1

        check()
        ticks = [asyncio.create_task(queue.tick()) for _ in range(5)]
        await asyncio.sleep(0.05)
        check()
        executor.release.set()
        await asyncio.gather(*ticks)
        check()
        for _ in range(3):
            await queue.tick()
        check()


class TestUpdateTaskStatus:
    """Tests for update_task_status()."""

    @pytest.mark.asyncio
    async def test_started_at_set_once(self, queue):
        task_id = await queue.add_task("job")
        await queue.update_task_status(task_id, TaskStatus.RUNNING)
        first_start = queue.get_task(task_id).started_at
        await queue.update_task_status(task_id, TaskStatus.PENDING)
        await queue.update_task_status(task_id, TaskStatus.RUNNING)
        assert queue.get_task(task_id).started_at == first_start
        assert queue.get_task(task_id).completed_at is None

    @pytest.mark.asyncio
    async def test_result_and_error_only_overwritten_when_given(self, queue):
        task_id = await queue.add_task("job")
        await queue.update_task_status(task_id, "failed", error="first")
        await queue.update_task_status(task_id, "completed", result="r")
        task = queue.get_task(task_id)
        assert task.error == "first"
        assert task.result == "r"
        assert task.completed_at is not None

    @pytest.mark.asyncio
    async def test_unknown_id_is_noop(self, queue):
        assert await queue.update_task_status("nope", TaskStatus.COMPLETED) is False

    @pytest.mark.asyncio
    async def test_history_cap_evicts_oldest(self, store):
        queue = TaskQueue(store, QueueConfig(max_history=2))
        await queue.load()
        ids = [await queue.add_task("job") for _ in range(3)]
        for task_id in ids:
            await queue.update_task_status(task_id, TaskStatus.COMPLETED)
        assert [t.id for t in queue.list_tasks(TaskStatus.COMPLETED)] == ids[1:]
        assert queue.get_stats().total_completed == 3


class TestCancel:
    """Tests for cancel_task()."""

    @pytest.mark.asyncio
    async def test_cancel_pending(self, queue):
        task_id = await queue.add_task("job")
        assert await queue.cancel_task(task_id) is True
        assert queue.get_task(task_id) is None
        assert await queue.cancel_task(task_id) is False

    @pytest.mark.asyncio
    async def test_cancel_running_discards_late_result(self, queue):
        executor = _BlockingExecutor()
        queue.register_executor("job", executor)
        task_id = await queue.add_task("job")
        tick = asyncio.create_task(queue.tick())
        await asyncio.sleep(0.05)
        assert await queue.cancel_task(task_id) is True

        executor.release.set()
        await tick
        assert queue.get_task(task_id) is None
        assert queue.get_stats().completed == 0

    @pytest.mark.asyncio
    async def test_cannot_cancel_finished(self, queue):
        task_id = await queue.add_task("job")
        await queue.update_task_status(task_id, TaskStatus.COMPLETED)
        assert await queue.cancel_task(task_id) is False


class TestQueries:
    """Tests for lookup and listing."""

    @pytest.mark.asyncio
    async def test_filters_by_session_and_project(self, queue):
        a = await queue.add_task("job", session_id="s1", project_id="p1")
        b = await queue.add_task("job", session_id="s2", project_id="p1")
        await queue.update_task_status(b, TaskStatus.COMPLETED)
        assert [t.id for t in queue.tasks_for_session("s1")] == [a]
        assert {t.id for t in queue.tasks_for_project("p1")} == {a, b}

    @pytest.mark.asyncio
    async def test_pending_in_priority_order(self, queue):
        low = await queue.add_task("job", priority="low")
        urgent = await queue.add_task("job", priority="urgent")
        medium = await queue.add_task("job", priority="medium")
        assert [t.id for t in queue.pending_tasks()] == [urgent, medium, low]

    @pytest.mark.asyncio
    async def test_stats(self, queue):
        queue.register_executor("job", _BlockingExecutor())
        await queue.add_task("job")
        await queue.add_schedule("* * * * *", {"type": "job"})
        stats = queue.get_stats()
        assert stats.pending == 1
        assert stats.schedules == 1
        assert stats.max_concurrent == 3
        assert stats.executors == ["job"]


class TestSchedules:
    """Tests for schedule management and materialization."""

    @pytest.mark.asyncio
    async def test_add_computes_next_run(self, queue):
        before = utc_now()
        schedule_id = await queue.add_schedule("* * * * *", TaskTemplate(type="job"))
        schedule = queue.get_schedule(schedule_id)
        assert schedule.next_run >= before + timedelta(minutes=1)
        assert schedule.run_count == 0

    @pytest.mark.asyncio
    async def test_empty_expression_rejected(self, queue):
        with pytest.raises(ScheduleError):
            await queue.add_schedule("  ", {"type": "job"})
        assert queue.list_schedules() == []

    @pytest.mark.asyncio
    async def test_invalid_template_rejected(self, queue):
        with pytest.raises(ScheduleError):
            await queue.add_schedule("* * * * *", {"priority": "high"})

    @pytest.mark.asyncio
    async def test_due_schedule_materializes_task(self, queue, store):
        schedule_id = await queue.add_schedule(
            "0 * * * *",
            {"type": "report", "title": "hourly", "priority": "high", "metadata": {"k": [1]}},
        )
        _force_due(queue, schedule_id)
        await queue.tick()

        schedule = queue.get_schedule(schedule_id)
        assert schedule.run_count == 1
        assert schedule.last_run is not None
        assert schedule.next_run > schedule.last_run

        tasks = [t for t in queue.list_tasks() if t.type == "report"]
        assert len(tasks) == 1
        assert tasks[0].title == "hourly"
        assert tasks[0].metadata == {"k": [1]}
        # Persisted with the new task
        persisted = json.loads(store.blobs["queue"])
        assert persisted["schedules"][0]["run_count"] == 1

    @pytest.mark.asyncio
    async def test_disabled_schedule_does_not_fire(self, queue):
        schedule_id = await queue.add_schedule("* * * * *", {"type": "job"})
        assert await queue.set_schedule_enabled(schedule_id, False) is True
        _force_due(queue, schedule_id)
        await queue.tick()
        assert queue.get_schedule(schedule_id).run_count == 0
        assert queue.list_tasks() == []

    @pytest.mark.asyncio
    async def test_remove_schedule_keeps_materialized_tasks(self, queue):
        schedule_id = await queue.add_schedule("* * * * *", {"type": "job"})
        _force_due(queue, schedule_id)
        await queue.tick()
        assert await queue.remove_schedule(schedule_id) is True
        assert await queue.remove_schedule(schedule_id) is False
        assert queue.list_schedules() == []
        assert len(queue.list_tasks()) == 1

    @pytest.mark.asyncio
    async def test_unknown_schedule_toggle(self, queue):
        assert await queue.set_schedule_enabled("nope", True) is False
        assert queue.get_schedule("nope") is None


def _force_due(queue: TaskQueue, schedule_id: str) -> None:
    for schedule in queue._state.schedules:
        if schedule.id == schedule_id:
            schedule.next_run = utc_now() - timedelta(seconds=1)


class TestLoad:
    """Tests for loading persisted state."""

    @pytest.mark.asyncio
    async def test_state_survives_restart(self, store):
        first = TaskQueue(store)
        await first.load()
        task_id = await first.add_task("job", priority="urgent")
        schedule_id = await first.add_schedule("* * * * *", {"type": "job"})

        second = TaskQueue(store)
        await second.load()
        assert second.get_task(task_id).priority.value == "urgent"
        assert second.get_schedule(schedule_id) is not None

    @pytest.mark.asyncio
    async def test_running_tasks_failed_as_orphans(self, store):
        first = TaskQueue(store)
        await first.load()
        task_id = await first.add_task("job")
        await first.update_task_status(task_id, TaskStatus.RUNNING)

        second = TaskQueue(store)
        await second.load()
        task = second.get_task(task_id)
        assert task.status == TaskStatus.FAILED
        assert task.error == ORPHAN_ERROR
        assert _collections_of(second, task_id) == ["failed"]

    @pytest.mark.asyncio
    async def test_orphan_recovery_can_be_disabled(self, store):
        first = TaskQueue(store)
        await first.load()
        task_id = await first.add_task("job")
        await first.update_task_status(task_id, TaskStatus.RUNNING)

        second = TaskQueue(store, QueueConfig(fail_orphans_on_load=False))
        await second.load()
        assert second.get_task(task_id).status == TaskStatus.RUNNING

    @pytest.mark.asyncio
    async def test_corrupt_blob_replaced_by_empty_state(self, store):
        store.blobs["queue"] = "{not json"
        queue = TaskQueue(store)
        await queue.load()
        assert queue.list_tasks() == []
        assert QueueState.model_validate_json(store.blobs["queue"]) == QueueState()

    @pytest.mark.asyncio
    async def test_read_failure_raises(self):
        class Broken(InMemoryStateStore):
            async def read(self, key):
                raise OSError("unreadable")

        with pytest.raises(PersistenceError):
            await TaskQueue(Broken()).load()


class TestLoop:
    """Tests for the background dispatch loop."""

    @pytest.mark.asyncio
    async def test_loop_dispatches_tasks(self, store):
        queue = TaskQueue(store, QueueConfig(tick_interval_seconds=0.02))
        await queue.load()
        done = asyncio.Event()

        async def ping(task: Task) -> ExecutorResult:
            done.set()
            return ExecutorResult(success=True, result="pong")

        queue.register_executor("ping", ping)
        task_id = await queue.add_task("ping")
        await queue.start()
        assert queue.running
        await asyncio.wait_for(done.wait(), 2)
        await queue.stop()
        assert not queue.running
        assert queue.get_task(task_id).result == "pong"

    @pytest.mark.asyncio
    async def test_slow_executor_does_not_block_ticks(self, store):
        queue = TaskQueue(store, QueueConfig(tick_interval_seconds=0.02, max_concurrent_tasks=3))
        await queue.load()
        executor = _BlockingExecutor()
        queue.register_executor("job", executor)
        for _ in range(3):
            await queue.add_task("job")
        await queue.start()
        await asyncio.sleep(0.3)
        assert queue.get_stats().running == 3
        executor.release.set()
        await asyncio.sleep(0.1)
        await queue.stop()
        assert queue.get_stats().completed == 3

    @pytest.mark.asyncio
    async def test_events_published(self, store):
        bus = EventBus()
        await bus.start()
        events: list[str] = []
        bus.subscribe(lambda e: events.append(e["event"]))
        queue = TaskQueue(store, event_bus=bus)
        await queue.load()

        async def ok(task: Task) -> ExecutorResult:
            return ExecutorResult(success=True)

        queue.register_executor("ok", ok)
        await queue.add_task("ok")
        await queue.tick()
        cancelled = await queue.add_task("ok")
        await queue.cancel_task(cancelled)
        await bus.shutdown()
        assert events == [
            "task.added",
            "task.started",
            "task.completed",
            "task.added",
            "task.cancelled",
        ]
