"""Executor contract and supervisor-backed executors.

An executor is any ``async`` callable taking a ``Task`` and returning an
``ExecutorResult`` (or a mapping with ``success``/``result``/``error``).
The queue treats the task type it is registered under as opaque.

Two ready-made executors run work through a ``ProcessSupervisor``:

- ``ProcessExecutor`` runs ``task.metadata["argv"]``.
- ``PromptExecutor`` runs the configured CLI on ``task.metadata["prompt"]``.

Both report success on exit code 0 and return the captured output as the
task result (or as the error text on failure).
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

from foreman.core.errors import ProcessWaitTimeoutError, SupervisorError
from foreman.core.logging import get_logger
from foreman.tasks.models import Task

if TYPE_CHECKING:
    from foreman.supervisor.handle import ProcessHandle, ProcessResult
    from foreman.supervisor.supervisor import ProcessSupervisor

_logger = get_logger("tasks.executors")


@dataclass
class ExecutorResult:
    """Outcome reported by an executor."""

    success: bool
    result: Any = None
    error: str | None = None

    @classmethod
    def coerce(cls, value: ExecutorResult | Mapping[str, Any]) -> ExecutorResult:
        """Accept either an ExecutorResult or a ``{"success": ...}`` mapping."""
        if isinstance(value, ExecutorResult):
            return value
        if isinstance(value, Mapping) and "success" in value:
            return cls(
                success=bool(value["success"]),
                result=value.get("result"),
                error=value.get("error"),
            )
        raise TypeError(
            f"Executor returned {type(value).__name__}; expected ExecutorResult "
            "or a mapping with a 'success' key"
        )


TaskExecutor = Callable[[Task], Awaitable[ExecutorResult | Mapping[str, Any]]]


def _require(task: Task, key: str) -> Any:
    value = task.metadata.get(key)
    if value in (None, "", []):
        raise ValueError(f"Task {task.id} metadata is missing {key!r}")
    return value


def _result_from_process(result: ProcessResult) -> ExecutorResult:
    if result.success:
        return ExecutorResult(success=True, result=result.output)
    if result.timed_out:
        reason = "timed out"
    elif result.exit_signal is not None:
        reason = f"killed by signal {result.exit_signal}"
    elif result.exit_code is not None:
        reason = f"exited with code {result.exit_code}"
    else:
        reason = result.status.value
    error = f"Process {reason}"
    if result.output:
        error = f"{error}\n{result.output}"
    return ExecutorResult(success=False, error=error)


async def _wait_or_kill(
    supervisor: ProcessSupervisor,
    handle: ProcessHandle,
    wait_timeout: float | None,
    task: Task,
) -> ExecutorResult:
    """Wait for ``handle``; kill it if the wait expires or is cancelled."""
    try:
        result = await supervisor.wait(handle, wait_timeout)
    except ProcessWaitTimeoutError as e:
        supervisor.kill(handle)
        _logger.warning(
            "executor.wait_timeout",
            task_id=task.id,
            handle_id=handle.handle_id,
            error=str(e),
        )
        return ExecutorResult(success=False, error=str(e))
    except asyncio.CancelledError:
        supervisor.kill(handle)
        raise
    return _result_from_process(result)


class ProcessExecutor:
    """Run ``metadata["argv"]`` in ``metadata["working_dir"]``.

    Optional metadata: ``env`` (mapping of overrides) and
    ``timeout_seconds`` (per-process timeout).
    """

    def __init__(self, supervisor: ProcessSupervisor, *, wait_timeout: float | None = None) -> None:
        self._supervisor = supervisor
        self._wait_timeout = wait_timeout

    async def __call__(self, task: Task) -> ExecutorResult:
        argv = _require(task, "argv")
        if isinstance(argv, str) or not all(isinstance(a, str) for a in argv):
            raise ValueError(f"Task {task.id} metadata 'argv' must be a list of strings")
        working_dir = Path(_require(task, "working_dir"))
        timeout = task.metadata.get("timeout_seconds")

        try:
            handle = await self._supervisor.spawn(
                working_dir,
                argv,
                task.metadata.get("env"),
                float(timeout) if timeout is not None else None,
            )
        except SupervisorError as e:
            _logger.warning("executor.process_failed", task_id=task.id, error=str(e))
            return ExecutorResult(success=False, error=str(e))
        return await _wait_or_kill(self._supervisor, handle, self._wait_timeout, task)


class PromptExecutor:
    """Run the configured CLI on ``metadata["prompt"]`` in ``metadata["working_dir"]``.

    Optional metadata: ``model``, ``timeout_seconds``.
    """

    def __init__(self, supervisor: ProcessSupervisor, *, wait_timeout: float | None = None) -> None:
        self._supervisor = supervisor
        self._wait_timeout = wait_timeout

    async def __call__(self, task: Task) -> ExecutorResult:
        prompt = _require(task, "prompt")
        working_dir = Path(_require(task, "working_dir"))
        timeout = task.metadata.get("timeout_seconds")

        try:
            handle = await self._supervisor.spawn_prompt(
                working_dir,
                str(prompt),
                model=task.metadata.get("model"),
                timeout_seconds=float(timeout) if timeout is not None else None,
            )
        except SupervisorError as e:
            _logger.warning("executor.prompt_failed", task_id=task.id, error=str(e))
            return ExecutorResult(success=False, error=str(e))
        return await _wait_or_kill(self._supervisor, handle, self._wait_timeout, task)


__all__ = ["ExecutorResult", "ProcessExecutor", "PromptExecutor", "TaskExecutor"]
