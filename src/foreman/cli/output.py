"""Rich output formatting for the Foreman CLI.

Color schemes, table builders and formatters shared by the command
modules. Commands print through the shared ``console``.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import UTC, datetime

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from foreman.supervisor.handle import ProcessStatus
from foreman.tasks.models import Task, TaskPriority, TaskSchedule, TaskStatus

console = Console()


class StatusColors:
    """Color mappings for status values."""

    TASK_STATUS: dict[TaskStatus, str] = {
        TaskStatus.PENDING: "yellow",
        TaskStatus.RUNNING: "blue",
        TaskStatus.COMPLETED: "green",
        TaskStatus.FAILED: "red",
    }

    PRIORITY: dict[TaskPriority, str] = {
        TaskPriority.URGENT: "bold red",
        TaskPriority.HIGH: "yellow",
        TaskPriority.MEDIUM: "white",
        TaskPriority.LOW: "dim",
    }

    PROCESS_STATUS: dict[ProcessStatus, str] = {
        ProcessStatus.STARTING: "yellow",
        ProcessStatus.RUNNING: "blue",
        ProcessStatus.COMPLETED: "green",
        ProcessStatus.ERROR: "red",
        ProcessStatus.CANCELLED: "dim",
    }


def format_task_status(status: TaskStatus) -> str:
    color = StatusColors.TASK_STATUS.get(status, "white")
    return f"[{color}]{status.value}[/{color}]"


def format_priority(priority: TaskPriority) -> str:
    color = StatusColors.PRIORITY.get(priority, "white")
    return f"[{color}]{priority.value}[/{color}]"


def format_process_status(status: ProcessStatus) -> str:
    color = StatusColors.PROCESS_STATUS.get(status, "white")
    return f"[{color}]{status.value}[/{color}]"


def format_timestamp(ts: datetime | None) -> str:
    """Local-time ``YYYY-MM-DD HH:MM:SS``, or ``-``."""
    if ts is None:
        return "-"
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=UTC)
    return ts.astimezone().strftime("%Y-%m-%d %H:%M:%S")


def format_duration(seconds: float | None) -> str:
    if seconds is None:
        return "-"
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, secs = divmod(int(seconds), 60)
    if minutes < 60:
        return f"{minutes}m {secs}s"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes}m"


def create_tasks_table(tasks: Sequence[Task], title: str = "Tasks") -> Table:
    table = Table(title=title, show_lines=False)
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Type")
    table.add_column("Priority")
    table.add_column("Status")
    table.add_column("Title")
    table.add_column("Created", style="dim")
    for task in tasks:
        table.add_row(
            task.id,
            task.type,
            format_priority(task.priority),
            format_task_status(task.status),
            escape(task.title) if task.title else "-",
            format_timestamp(task.created_at),
        )
    return table


def create_schedules_table(schedules: Sequence[TaskSchedule]) -> Table:
    table = Table(title="Schedules")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Cron")
    table.add_column("Task type")
    table.add_column("Enabled")
    table.add_column("Runs", justify="right")
    table.add_column("Next run", style="dim")
    for schedule in schedules:
        table.add_row(
            schedule.id,
            schedule.cron_expression,
            schedule.task.type,
            "[green]yes[/green]" if schedule.enabled else "[dim]no[/dim]",
            str(schedule.run_count),
            format_timestamp(schedule.next_run),
        )
    return table


def create_task_panel(task: Task) -> Panel:
    """Detail view of a single task."""
    lines = [
        f"[bold]ID:[/bold] {task.id}",
        f"[bold]Type:[/bold] {task.type}",
        f"[bold]Status:[/bold] {format_task_status(task.status)}",
        f"[bold]Priority:[/bold] {format_priority(task.priority)}",
    ]
    if task.title:
        lines.append(f"[bold]Title:[/bold] {escape(task.title)}")
    if task.description:
        lines.append(f"[bold]Description:[/bold] {escape(task.description)}")
    if task.session_id:
        lines.append(f"[bold]Session:[/bold] {task.session_id}")
    if task.project_id:
        lines.append(f"[bold]Project:[/bold] {task.project_id}")
    lines.append(f"[bold]Created:[/bold] {format_timestamp(task.created_at)}")
    lines.append(f"[bold]Started:[/bold] {format_timestamp(task.started_at)}")
    lines.append(f"[bold]Completed:[/bold] {format_timestamp(task.completed_at)}")
    if task.metadata:
        lines.append(f"[bold]Metadata:[/bold] {escape(str(task.metadata))}")
    if task.error:
        lines.append(f"[bold red]Error:[/bold red] {escape(task.error)}")
    if task.result is not None:
        lines.append(f"[bold]Result:[/bold] {escape(str(task.result))}")
    return Panel("\n".join(lines), title=f"Task {task.id}", expand=False)


__all__ = [
    "StatusColors",
    "console",
    "create_schedules_table",
    "create_task_panel",
    "create_tasks_table",
    "format_duration",
    "format_priority",
    "format_process_status",
    "format_task_status",
    "format_timestamp",
]
