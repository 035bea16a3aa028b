"""Run command: spawn one supervised process in the foreground and wait for it."""

from __future__ import annotations

import asyncio
from pathlib import Path

import typer

from foreman.core.config import ForemanConfig
from foreman.core.errors import SupervisorError
from foreman.supervisor.handle import ProcessResult
from foreman.supervisor.supervisor import ProcessSupervisor

from ..helpers import get_config
from ..output import console, format_duration, format_process_status


def run(
    command: list[str] = typer.Argument(
        ...,
        help="Command and arguments to run (put them after --).",
    ),
    cwd: Path = typer.Option(
        Path("."),
        "--cwd",
        "-C",
        help="Working directory for the process.",
    ),
    timeout: float | None = typer.Option(
        None,
        "--timeout",
        "-t",
        help="Kill the process after this many seconds (0 disables).",
    ),
    wait_timeout: float | None = typer.Option(
        None,
        "--wait-timeout",
        help="Give up waiting after this many seconds (default from config).",
    ),
    stream: bool = typer.Option(
        False,
        "--stream",
        "-s",
        help="Print output as it arrives instead of after exit.",
    ),
    prompt: bool = typer.Option(
        False,
        "--prompt",
        "-p",
        help="Treat the arguments as a prompt for the configured CLI executable.",
    ),
    model: str | None = typer.Option(None, "--model", "-m", help="Model for --prompt runs."),
) -> None:
    """Run a command under supervision and print its output.

    Exits with the process's exit code (1 for timeouts, signals and kills).
    """
    config = get_config(console)
    result = asyncio.run(
        _run(config, command, cwd, timeout, wait_timeout, stream, prompt, model)
    )
    _print_summary(result, printed=stream)
    if not result.success:
        raise typer.Exit(result.exit_code or 1)


async def _run(
    config: ForemanConfig,
    command: list[str],
    cwd: Path,
    timeout: float | None,
    wait_timeout: float | None,
    stream: bool,
    prompt: bool,
    model: str | None,
) -> ProcessResult:
    supervisor = ProcessSupervisor(config.supervisor)
    on_output = (lambda chunk: console.out(chunk, end="", highlight=False)) if stream else None
    try:
        if prompt:
            handle = await supervisor.spawn_prompt(
                cwd,
                " ".join(command),
                model=model,
                timeout_seconds=timeout,
                on_output=on_output,
            )
        else:
            handle = await supervisor.spawn(cwd, command, timeout_seconds=timeout, on_output=on_output)
        return await supervisor.wait(handle, wait_timeout)
    except SupervisorError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from None
    finally:
        await supervisor.shutdown()


def _print_summary(result: ProcessResult, *, printed: bool) -> None:
    if not printed and result.output:
        console.out(result.output, highlight=False)
    console.print(
        f"[dim]Process {result.handle_id} (pid {result.pid}):[/dim] "
        f"{format_process_status(result.status)} "
        f"[dim]exit={result.exit_code} in {format_duration(result.duration_seconds)}[/dim]",
        highlight=False,
    )
