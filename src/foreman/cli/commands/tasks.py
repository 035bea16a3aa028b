"""Task queue commands for the Foreman CLI.

Subcommands:
- `foreman tasks list`    — Pending tasks in dispatch order, or any collection
- `foreman tasks show`    — One task in detail
- `foreman tasks add`     — Enqueue a task
- `foreman tasks cancel`  — Remove a pending or running task
- `foreman tasks stats`   — Collection counts
"""

from __future__ import annotations

import asyncio
import json
from typing import Any

import typer

from foreman.core.config import ForemanConfig
from foreman.tasks.models import TaskPriority, TaskStatus

from ..helpers import ErrorMessages, get_config, open_queue, parse_metadata
from ..output import console, create_task_panel, create_tasks_table

tasks_app = typer.Typer(name="tasks", help="Inspect and manage queued tasks.", no_args_is_help=True)


@tasks_app.command(name="list")
def list_tasks(
    status: TaskStatus | None = typer.Option(
        None, "--status", "-s", help="Only this collection (default: all).",
    ),
    session: str | None = typer.Option(None, "--session", help="Only tasks of this session."),
    project: str | None = typer.Option(None, "--project", help="Only tasks of this project."),
    json_output: bool = typer.Option(False, "--json", "-j", help="Output JSON."),
) -> None:
    """List tasks."""
    config = get_config(console)
    asyncio.run(_list_tasks(config, status, session, project, json_output))


async def _list_tasks(
    config: ForemanConfig,
    status: TaskStatus | None,
    session: str | None,
    project: str | None,
    json_output: bool,
) -> None:
    async with open_queue(config) as queue:
        if session is not None:
            tasks = queue.tasks_for_session(session)
        elif project is not None:
            tasks = queue.tasks_for_project(project)
        else:
            tasks = queue.list_tasks(status)
    if status is not None and (session is not None or project is not None):
        tasks = [t for t in tasks if t.status == status]
    if project is not None and session is not None:
        tasks = [t for t in tasks if t.project_id == project]

    if json_output:
        typer.echo(json.dumps([t.model_dump(mode="json") for t in tasks], indent=2))
        return
    if not tasks:
        console.print("[dim]No tasks.[/dim]")
        return
    console.print(create_tasks_table(tasks))


@tasks_app.command()
def show(
    task_id: str = typer.Argument(..., help="Task id."),
    json_output: bool = typer.Option(False, "--json", "-j", help="Output JSON."),
) -> None:
    """Show one task."""
    config = get_config(console)
    asyncio.run(_show(config, task_id, json_output))


async def _show(config: ForemanConfig, task_id: str, json_output: bool) -> None:
    async with open_queue(config) as queue:
        task = queue.get_task(task_id)
    if task is None:
        console.print(f"[red]{ErrorMessages.TASK_NOT_FOUND}:[/red] {task_id}")
        raise typer.Exit(1)
    if json_output:
        typer.echo(json.dumps(task.model_dump(mode="json"), indent=2))
        return
    console.print(create_task_panel(task))


@tasks_app.command()
def add(
    task_type: str = typer.Argument(..., help="Task type (selects the executor)."),
    title: str = typer.Option("", "--title", "-t", help="Short description."),
    description: str | None = typer.Option(None, "--description", "-d"),
    priority: TaskPriority = typer.Option(TaskPriority.MEDIUM, "--priority", "-p"),
    session: str | None = typer.Option(None, "--session", help="Owning session id."),
    project: str | None = typer.Option(None, "--project", help="Owning project id."),
    meta: list[str] | None = typer.Option(
        None,
        "--meta",
        "-m",
        help="Metadata as key=value; repeatable. Values are parsed as YAML "
        "(e.g. argv='[ls, -la]').",
    ),
) -> None:
    """Enqueue a task."""
    config = get_config(console)
    metadata = parse_metadata(meta)
    task_id = asyncio.run(
        _add(
            config,
            task_type,
            title=title,
            description=description,
            priority=priority,
            session_id=session,
            project_id=project,
            metadata=metadata,
        )
    )
    console.print(f"[green]Added task[/green] {task_id}")


async def _add(config: ForemanConfig, task_type: str, **fields: Any) -> str:
    async with open_queue(config) as queue:
        return await queue.add_task(task_type, **fields)


@tasks_app.command()
def cancel(task_id: str = typer.Argument(..., help="Task id.")) -> None:
    """Remove a pending or running task.

    A running task's executor is not interrupted; its result is discarded.
    """
    config = get_config(console)
    if not asyncio.run(_cancel(config, task_id)):
        console.print(f"[red]{ErrorMessages.TASK_NOT_FOUND}:[/red] {task_id} (or already finished)")
        raise typer.Exit(1)
    console.print(f"[yellow]Cancelled[/yellow] {task_id}")


async def _cancel(config: ForemanConfig, task_id: str) -> bool:
    async with open_queue(config) as queue:
        return await queue.cancel_task(task_id)


@tasks_app.command()
def stats(json_output: bool = typer.Option(False, "--json", "-j", help="Output JSON.")) -> None:
    """Show collection counts."""
    config = get_config(console)
    snapshot = asyncio.run(_stats(config))
    if json_output:
        typer.echo(json.dumps(snapshot, indent=2))
        return
    for key in ("pending", "running", "completed", "failed", "schedules"):
        console.print(f"[bold]{key.capitalize()}:[/bold] {snapshot[key]}")
    console.print(f"[bold]Concurrency cap:[/bold] {snapshot['max_concurrent']}")


async def _stats(config: ForemanConfig) -> dict[str, Any]:
    async with open_queue(config) as queue:
        s = queue.get_stats()
    return {
        "pending": s.pending,
        "running": s.running,
        "completed": s.completed,
        "failed": s.failed,
        "schedules": s.schedules,
        "max_concurrent": s.max_concurrent,
    }
