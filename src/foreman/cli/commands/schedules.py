"""Schedule management commands for the Foreman CLI.

Subcommands:
- `foreman schedules list`
- `foreman schedules add`     — Register a recurring task template
- `foreman schedules remove`
- `foreman schedules enable`
- `foreman schedules disable`
"""

from __future__ import annotations

import asyncio
import json

import typer

from foreman.core.config import ForemanConfig
from foreman.core.errors import ScheduleError
from foreman.tasks.models import TaskPriority, TaskSchedule, TaskTemplate

from ..helpers import ErrorMessages, get_config, open_queue, parse_metadata
from ..output import console, create_schedules_table

schedules_app = typer.Typer(
    name="schedules", help="Manage recurring task schedules.", no_args_is_help=True,
)


@schedules_app.command(name="list")
def list_schedules(
    json_output: bool = typer.Option(False, "--json", "-j", help="Output JSON."),
) -> None:
    """List schedules."""
    config = get_config(console)
    schedules = asyncio.run(_list(config))
    if json_output:
        typer.echo(json.dumps([s.model_dump(mode="json") for s in schedules], indent=2))
        return
    if not schedules:
        console.print("[dim]No schedules.[/dim]")
        return
    console.print(create_schedules_table(schedules))


async def _list(config: ForemanConfig) -> list[TaskSchedule]:
    async with open_queue(config) as queue:
        return queue.list_schedules()


@schedules_app.command()
def add(
    cron: str = typer.Argument(..., help='Cron expression, e.g. "* * * * *" (every minute).'),
    task_type: str = typer.Argument(..., help="Type of the task to create each run."),
    title: str = typer.Option("", "--title", "-t"),
    priority: TaskPriority = typer.Option(TaskPriority.MEDIUM, "--priority", "-p"),
    session: str | None = typer.Option(None, "--session"),
    project: str | None = typer.Option(None, "--project"),
    meta: list[str] | None = typer.Option(
        None, "--meta", "-m", help="Task metadata as key=value; repeatable.",
    ),
    disabled: bool = typer.Option(False, "--disabled", help="Create the schedule disabled."),
) -> None:
    """Register a recurring task.

    Only two cadences exist: a "*" minute field runs every minute,
    anything else runs hourly.
    """
    config = get_config(console)
    template = TaskTemplate(
        type=task_type,
        title=title,
        priority=priority,
        session_id=session,
        project_id=project,
        metadata=parse_metadata(meta),
    )
    try:
        schedule_id = asyncio.run(_add(config, cron, template, not disabled))
    except ScheduleError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from None
    console.print(f"[green]Added schedule[/green] {schedule_id}")


async def _add(config: ForemanConfig, cron: str, template: TaskTemplate, enabled: bool) -> str:
    async with open_queue(config) as queue:
        return await queue.add_schedule(cron, template, enabled=enabled)


@schedules_app.command()
def remove(schedule_id: str = typer.Argument(..., help="Schedule id.")) -> None:
    """Delete a schedule. Tasks it already created are kept."""
    config = get_config(console)
    if not asyncio.run(_remove(config, schedule_id)):
        console.print(f"[red]{ErrorMessages.SCHEDULE_NOT_FOUND}:[/red] {schedule_id}")
        raise typer.Exit(1)
    console.print(f"[yellow]Removed[/yellow] {schedule_id}")


async def _remove(config: ForemanConfig, schedule_id: str) -> bool:
    async with open_queue(config) as queue:
        return await queue.remove_schedule(schedule_id)


@schedules_app.command()
def enable(schedule_id: str = typer.Argument(..., help="Schedule id.")) -> None:
    """Enable a schedule."""
    _toggle(schedule_id, True)


@schedules_app.command()
def disable(schedule_id: str = typer.Argument(..., help="Schedule id.")) -> None:
    """Disable a schedule without deleting it."""
    _toggle(schedule_id, False)


def _toggle(schedule_id: str, enabled: bool) -> None:
    config = get_config(console)
    if not asyncio.run(_set_enabled(config, schedule_id, enabled)):
        console.print(f"[red]{ErrorMessages.SCHEDULE_NOT_FOUND}:[/red] {schedule_id}")
        raise typer.Exit(1)
    console.print(f"{'Enabled' if enabled else 'Disabled'} {schedule_id}")


async def _set_enabled(config: ForemanConfig, schedule_id: str, enabled: bool) -> bool:
    async with open_queue(config) as queue:
        return await queue.set_schedule_enabled(schedule_id, enabled)
