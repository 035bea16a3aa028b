"""Worker command: run the dispatch loop with the built-in executors.

Registers two task types backed by a ProcessSupervisor:

- ``process``: runs ``metadata.argv`` in ``metadata.working_dir``
- ``prompt``: runs the configured CLI on ``metadata.prompt``

and dispatches until SIGINT/SIGTERM (or a fixed number of ticks with
``--ticks``, which is mostly useful for cron-driven one-shot runs).
"""

from __future__ import annotations

import asyncio
import signal

import typer

from foreman.core.config import ForemanConfig
from foreman.core.logging import get_logger
from foreman.events import EventBus, ForemanEvent
from foreman.supervisor.supervisor import ProcessSupervisor
from foreman.tasks.executors import ProcessExecutor, PromptExecutor
from foreman.tasks.queue import TaskQueue
from foreman.tasks.store import create_store

from ..helpers import get_config
from ..output import console

_logger = get_logger("cli.worker")


def worker(
    ticks: int | None = typer.Option(
        None,
        "--ticks",
        "-n",
        min=1,
        help="Run this many ticks back to back and exit instead of looping.",
    ),
    interval: float | None = typer.Option(
        None,
        "--interval",
        help="Override queue.tick_interval_seconds.",
    ),
    max_concurrent: int | None = typer.Option(
        None,
        "--max-concurrent",
        min=1,
        help="Override queue.max_concurrent_tasks.",
    ),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Do not print task events."),
) -> None:
    """Process queued tasks until interrupted."""
    config = get_config(console)
    overrides: dict[str, float | int] = {}
    if interval is not None:
        overrides["tick_interval_seconds"] = interval
    if max_concurrent is not None:
        overrides["max_concurrent_tasks"] = max_concurrent
    if overrides:
        config = config.model_copy(update={"queue": config.queue.model_copy(update=overrides)})
    asyncio.run(_worker(config, ticks, quiet))


def _print_event(event: ForemanEvent) -> None:
    name = event["event"]
    color = {"task.completed": "green", "task.failed": "red"}.get(name, "cyan")
    detail = event["data"].get("error") or event["data"].get("type") or ""
    console.print(f"[{color}]{name}[/{color}] {event['subject']} [dim]{detail}[/dim]", highlight=False)


async def _worker(config: ForemanConfig, ticks: int | None, quiet: bool) -> None:
    bus = EventBus()
    await bus.start()
    if not quiet:
        bus.subscribe(_print_event, event_filter=lambda e: e["event"].startswith("task."))

    supervisor = ProcessSupervisor(config.supervisor, event_bus=bus)
    store = create_store(config.state)
    await store.open()
    queue = TaskQueue(store, config.queue, event_bus=bus)
    try:
        await queue.load()
        queue.register_executor("process", ProcessExecutor(supervisor))
        queue.register_executor("prompt", PromptExecutor(supervisor))

        if ticks is not None:
            for _ in range(ticks):
                await queue.tick()
            return

        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop.set)
        try:
            await queue.start()
            console.print(
                f"[bold]Worker running[/bold] [dim](tick every "
                f"{config.queue.tick_interval_seconds}s, "
                f"max {config.queue.max_concurrent_tasks} concurrent; Ctrl+C to stop)[/dim]"
            )
            await stop.wait()
        finally:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)
        _logger.info("worker.stopping", running=queue.get_stats().running)
    finally:
        await queue.stop()
        await supervisor.shutdown()
        await bus.shutdown()
        await store.close()
