"""Process supervisor: spawn, observe, time out and stop subprocesses.

Security Note: processes are started with asyncio.create_subprocess_exec()
and an argument list. No shell is involved, so arguments are never
re-interpreted or re-quoted.

Each spawned process gets a watcher task that pumps stdout/stderr into
the handle's capped buffer as data arrives, then records the exit. A
timeout is a loop timer, not a blocking wait. Three triggers can end a
handle (exit, timeout, kill); whichever reaches ``ProcessHandle.finish()``
first decides the terminal status and the others become no-ops.

Example:

    supervisor = ProcessSupervisor(SupervisorConfig())
    handle = await supervisor.spawn(project_dir, ["pytest", "-q"], timeout_seconds=600)
    result = await supervisor.wait(handle, timeout=900)
    if not result.success:
        print(result.output)
"""

from __future__ import annotations

import asyncio
import codecs
import os
import signal
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any

from foreman.core.config import SupervisorConfig
from foreman.core.errors import (
    ProcessWaitTimeoutError,
    SpawnFailedError,
    WorkingDirectoryNotFoundError,
)
from foreman.core.logging import get_logger
from foreman.core.signals import get_signal_name, split_returncode
from foreman.core.task_utils import track_task
from foreman.events import EventBus, make_event
from foreman.supervisor.command import build_cli_command, invocation_from_config
from foreman.supervisor.handle import (
    OutputBuffer,
    OutputObserver,
    ProcessHandle,
    ProcessResult,
    ProcessStatus,
)
from foreman.supervisor.registry import ProcessRegistry

_logger = get_logger("supervisor")

_READ_CHUNK_SIZE = 8192
STREAM_DRAIN_TIMEOUT: float = 5.0  # Seconds to finish reading pipes after exit
STDERR_PREFIX = "[ERROR] "


class ProcessSupervisor:
    """Owns every subprocess it spawns until the process has exited.

    Construct one per application and pass it to whoever needs to run
    processes (including queue executors).
    """

    def __init__(
        self,
        config: SupervisorConfig | None = None,
        *,
        event_bus: EventBus | None = None,
    ) -> None:
        self._config = config or SupervisorConfig()
        self._event_bus = event_bus
        self._registry = ProcessRegistry()
        self._watchers: set[asyncio.Task[Any]] = set()
        self._escalations: dict[int, asyncio.TimerHandle] = {}

    @property
    def config(self) -> SupervisorConfig:
        return self._config

    @property
    def active_count(self) -> int:
        """Processes that have not yet exited."""
        return len(self._registry)

    def active_handles(self) -> list[ProcessHandle]:
        return self._registry.handles()

    def get(self, handle_id: int) -> ProcessHandle | None:
        return self._registry.get(handle_id)

    # ─── Spawning ──────────────────────────────────────────────────────

    async def spawn(
        self,
        working_dir: Path | str,
        argv: Sequence[str],
        env: Mapping[str, str] | None = None,
        timeout_seconds: float | None = None,
        *,
        prompt: str | None = None,
        on_output: OutputObserver | None = None,
    ) -> ProcessHandle:
        """Start ``argv`` in ``working_dir`` and return its running handle.

        Args:
            working_dir: Must be an existing directory.
            argv: Executable and arguments, passed without a shell.
            env: Overrides merged on top of the inherited environment.
            timeout_seconds: Per-process limit. None uses the configured
                default; 0 disables the timeout.
            prompt: Originating prompt, kept on the handle for display.
            on_output: Called with every decoded output chunk.

        Raises:
            WorkingDirectoryNotFoundError: ``working_dir`` does not exist.
            SpawnFailedError: The OS could not start the executable.
        """
        cwd = Path(working_dir)
        if not cwd.is_dir():
            raise WorkingDirectoryNotFoundError(
                f"Working directory does not exist: {cwd}", {"working_dir": str(cwd)},
            )
        if not argv:
            raise ValueError("argv must contain at least the executable")

        child_env = {**os.environ, **(env or {})}
        child_env.setdefault("TERM", self._config.default_term)

        handle = ProcessHandle(
            handle_id=self._registry.next_id(),
            working_dir=cwd,
            argv=list(argv),
            output=OutputBuffer(
                max_bytes=self._config.max_output_bytes,
                max_chunks=self._config.max_output_chunks,
            ),
            prompt=prompt,
            on_output=on_output,
        )

        try:
            process = await asyncio.create_subprocess_exec(
                *handle.argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                env=child_env,
                start_new_session=True,
            )
        except OSError as e:
            _logger.error(
                "supervisor.spawn_failed",
                handle_id=handle.handle_id,
                command=handle.argv[0],
                error=str(e),
            )
            raise SpawnFailedError(
                f"Failed to start {handle.argv[0]!r}: {e}",
                {"command": handle.argv[0], "working_dir": str(cwd)},
            ) from e

        handle.pid = process.pid
        self._registry.register(handle, process)
        handle.mark_running()

        timeout = self._config.timeout_seconds if timeout_seconds is None else timeout_seconds
        timer: asyncio.TimerHandle | None = None
        if timeout > 0:
            timer = asyncio.get_running_loop().call_later(
                timeout, self._on_timeout, handle.handle_id, timeout,
            )

        _logger.info(
            "supervisor.spawned",
            handle_id=handle.handle_id,
            pid=handle.pid,
            command=handle.argv[0],
            args_count=len(handle.argv) - 1,
            cwd=str(cwd),
            timeout_seconds=timeout or None,
            prompt_length=len(prompt) if prompt is not None else None,
        )
        self._publish("process.spawned", handle, pid=handle.pid, command=handle.argv[0])

        track_task(
            self._watchers,
            asyncio.create_task(
                self._watch(handle, process, timer),
                name=f"foreman-process-{handle.handle_id}",
            ),
            _logger,
            "supervisor.watcher_died",
        )
        return handle

    async def spawn_prompt(
        self,
        working_dir: Path | str,
        prompt: str,
        *,
        model: str | None = None,
        env: Mapping[str, str] | None = None,
        timeout_seconds: float | None = None,
        on_output: OutputObserver | None = None,
    ) -> ProcessHandle:
        """Run the configured CLI non-interactively on ``prompt``."""
        argv = build_cli_command(
            self._config.executable,
            invocation_from_config(self._config, prompt, model=model),
        )
        return await self.spawn(
            working_dir,
            argv,
            env,
            timeout_seconds,
            prompt=prompt,
            on_output=on_output,
        )

    # ─── Stopping ──────────────────────────────────────────────────────

    def kill(self, handle: ProcessHandle) -> bool:
        """Cancel a running handle: SIGTERM now, SIGKILL after the grace period.

        No-op (returns False) when the handle is already terminal.
        """
        if not handle.finish(ProcessStatus.CANCELLED):
            _logger.debug(
                "supervisor.kill_ignored",
                handle_id=handle.handle_id,
                status=handle.status.value,
            )
            return False
        _logger.info("supervisor.killed", handle_id=handle.handle_id, pid=handle.pid)
        self._publish("process.killed", handle, pid=handle.pid)
        self._terminate(handle.handle_id)
        return True

    def kill_all(self) -> int:
        """Kill every live handle. Returns how many were cancelled."""
        return sum(1 for handle in self._registry.handles() if self.kill(handle))

    async def shutdown(self) -> None:
        """Kill everything and wait for the watchers to record the exits."""
        killed = self.kill_all()
        if self._watchers:
            limit = self._config.grace_period_seconds + STREAM_DRAIN_TIMEOUT + 1.0
            _, still_running = await asyncio.wait(set(self._watchers), timeout=limit)
            for task in still_running:
                task.cancel()
            if still_running:
                await asyncio.gather(*still_running, return_exceptions=True)
        _logger.info("supervisor.shutdown", killed=killed)

    # ─── Waiting ───────────────────────────────────────────────────────

    async def wait(self, handle: ProcessHandle, timeout: float | None = None) -> ProcessResult:
        """Suspend until ``handle`` is terminal, then return a result snapshot.

        Raises:
            ProcessWaitTimeoutError: ``timeout`` (default: configured
                ``wait_timeout_seconds``) elapsed first. The handle is left
                untouched.
        """
        limit = self._config.wait_timeout_seconds if timeout is None else timeout
        try:
            await asyncio.wait_for(asyncio.shield(handle.completion()), timeout=limit)
        except TimeoutError as e:
            raise ProcessWaitTimeoutError(
                f"Process {handle.handle_id} did not finish within {limit}s",
                {"handle_id": handle.handle_id, "timeout_seconds": limit},
            ) from e
        return handle.to_result()

    # ─── Internal ──────────────────────────────────────────────────────

    async def _watch(
        self,
        handle: ProcessHandle,
        process: asyncio.subprocess.Process,
        timer: asyncio.TimerHandle | None,
    ) -> None:
        pumps = asyncio.gather(
            self._pump(handle, process.stdout, ""),
            self._pump(handle, process.stderr, STDERR_PREFIX),
        )
        try:
            returncode = await process.wait()
            try:
                await asyncio.wait_for(pumps, timeout=STREAM_DRAIN_TIMEOUT)
            except TimeoutError:
                # A grandchild still holds the pipes open
                _logger.warning(
                    "supervisor.stream_drain_timeout",
                    handle_id=handle.handle_id,
                    pid=handle.pid,
                )
        finally:
            if timer is not None:
                timer.cancel()
            escalation = self._escalations.pop(handle.handle_id, None)
            if escalation is not None:
                escalation.cancel()
            self._registry.remove(handle.handle_id)
            if not pumps.done():
                pumps.cancel()

        handle.exit_code, handle.exit_signal = split_returncode(returncode)
        status = ProcessStatus.COMPLETED if returncode == 0 else ProcessStatus.ERROR
        if handle.exit_signal is not None and not handle.is_terminal:
            handle.output.add_marker(
                f"[EXIT] Process terminated by {get_signal_name(handle.exit_signal)}"
            )

        if handle.finish(status):
            _logger.info(
                "supervisor.exited",
                handle_id=handle.handle_id,
                pid=handle.pid,
                status=status.value,
                exit_code=handle.exit_code,
                exit_signal=handle.exit_signal,
                duration_seconds=round(handle.duration_seconds, 3),
                output_bytes=handle.output.byte_size,
                truncated=handle.output.truncated,
            )
            self._publish(
                "process.exited",
                handle,
                status=status.value,
                exit_code=handle.exit_code,
            )
        else:
            _logger.debug(
                "supervisor.exited_after_terminal",
                handle_id=handle.handle_id,
                status=handle.status.value,
                exit_code=handle.exit_code,
                exit_signal=handle.exit_signal,
            )

    async def _pump(
        self,
        handle: ProcessHandle,
        stream: asyncio.StreamReader | None,
        prefix: str,
    ) -> None:
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            data = await stream.read(_READ_CHUNK_SIZE)
            text = decoder.decode(data, final=not data)
            if text:
                self._record_output(handle, prefix + text)
            if not data:
                return

    def _record_output(self, handle: ProcessHandle, text: str) -> None:
        handle.output.append(text)
        if handle.on_output is None:
            return
        try:
            handle.on_output(text)
        except Exception:
            _logger.warning(
                "supervisor.output_observer_error",
                handle_id=handle.handle_id,
                exc_info=True,
            )

    def _on_timeout(self, handle_id: int, timeout: float) -> None:
        handle = self._registry.get(handle_id)
        if handle is None or handle.is_terminal:
            return
        handle.timed_out = True
        handle.output.add_marker(f"[TIMEOUT] Process killed after {int(timeout * 1000)}ms")
        handle.finish(ProcessStatus.ERROR)
        _logger.warning(
            "supervisor.timeout",
            handle_id=handle_id,
            pid=handle.pid,
            timeout_seconds=timeout,
        )
        self._publish("process.timeout", handle, timeout_seconds=timeout)
        self._terminate(handle_id)

    def _terminate(self, handle_id: int) -> None:
        """SIGTERM the process and arm a SIGKILL escalation once."""
        process = self._registry.process_for(handle_id)
        if process is None or process.returncode is not None:
            return
        try:
            process.terminate()
        except ProcessLookupError:
            return
        if handle_id not in self._escalations:
            self._escalations[handle_id] = asyncio.get_running_loop().call_later(
                self._config.grace_period_seconds, self._force_kill, handle_id,
            )

    def _force_kill(self, handle_id: int) -> None:
        """SIGKILL the process group if the process outlived its grace period."""
        self._escalations.pop(handle_id, None)
        process = self._registry.process_for(handle_id)
        if process is None or process.returncode is not None:
            return
        _logger.warning("supervisor.force_kill", handle_id=handle_id, pid=process.pid)
        try:
            os.killpg(os.getpgid(process.pid), signal.SIGKILL)
        except (OSError, ProcessLookupError):
            pass  # Group already gone
        try:
            process.kill()
        except ProcessLookupError:
            pass

    def _publish(self, event: str, handle: ProcessHandle, **data: Any) -> None:
        if self._event_bus is not None:
            self._event_bus.publish_nowait(make_event(event, handle.handle_id, **data))


__all__ = ["ProcessSupervisor", "STDERR_PREFIX", "STREAM_DRAIN_TIMEOUT"]
