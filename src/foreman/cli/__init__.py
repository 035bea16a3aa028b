"""Foreman CLI.

Package structure:
    cli/
    ├── __init__.py           # App assembly and global options
    ├── helpers.py            # Option state, config loading, factories
    ├── output.py             # Rich formatting
    └── commands/
        ├── run.py            # run command
        ├── tasks.py          # tasks list/show/add/cancel/stats
        ├── schedules.py      # schedules list/add/remove/enable/disable
        └── worker.py         # worker command
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer

from foreman import __version__

from . import helpers as helpers
from .commands import run, schedules_app, tasks_app, worker
from .helpers import (
    configure_global_logging,
    set_config_path,
    set_log_file,
    set_log_format,
    set_log_level,
)
from .output import console

app = typer.Typer(
    name="foreman",
    help="Supervise subprocesses and run a persistent background task queue.",
    add_completion=False,
    no_args_is_help=True,
)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"foreman v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
    config: Annotated[
        Path | None,
        typer.Option(
            "--config",
            "-c",
            help="Config file (default: ~/.foreman/config.yaml if present)",
            envvar="FOREMAN_CONFIG",
        ),
    ] = None,
    log_level: Annotated[
        str | None,
        typer.Option(
            "--log-level",
            "-L",
            help="Logging level (DEBUG, INFO, WARNING, ERROR)",
            envvar="FOREMAN_LOG_LEVEL",
        ),
    ] = None,
    log_file: Annotated[
        Path | None,
        typer.Option(
            "--log-file",
            help="Path for log file output",
            envvar="FOREMAN_LOG_FILE",
        ),
    ] = None,
    log_format: Annotated[
        str | None,
        typer.Option(
            "--log-format",
            help="Log format: json, console, or both",
            envvar="FOREMAN_LOG_FORMAT",
        ),
    ] = None,
) -> None:
    """Foreman - process supervisor and background task queue."""
    set_config_path(config)
    if log_level:
        set_log_level(log_level)
    if log_file:
        set_log_file(log_file)
    if log_format:
        set_log_format(log_format)
    configure_global_logging(console)


app.command(context_settings={"ignore_unknown_options": True})(run)
app.command()(worker)
app.add_typer(tasks_app)
app.add_typer(schedules_app)


__all__ = ["app", "console", "main"]
