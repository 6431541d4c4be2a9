"""Marathon CLI.

Package structure:
    cli/
    ├── __init__.py       # app assembly and global options
    ├── helpers.py        # logging option state
    ├── output.py         # Rich formatting
    └── commands/
        ├── run.py        # run
        ├── health.py     # health
        └── workers.py    # fan-out, worker-exec (hidden)
"""

from __future__ import annotations

from typing import Annotated

import typer

from marathon import __version__

from . import helpers as helpers
from .commands import fan_out, health, run, worker_exec
from .helpers import set_log_format, set_log_level
from .output import console

app = typer.Typer(
    name="marathon",
    help="Run long batch jobs on disposable workers",
    add_completion=False,
)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"Marathon v{__version__}")
        raise typer.Exit()


def log_level_callback(value: str | None) -> str | None:
    if value:
        set_log_level(value)
    return value


def log_format_callback(value: str | None) -> str | None:
    if value:
        set_log_format(value)
    return value


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
    log_level: Annotated[
        str | None,
        typer.Option(
            "--log-level",
            "-L",
            callback=log_level_callback,
            help="Logging level (DEBUG, INFO, WARNING, ERROR)",
            envvar="MARATHON_LOG_LEVEL",
        ),
    ] = None,
    log_format: Annotated[
        str | None,
        typer.Option(
            "--log-format",
            callback=log_format_callback,
            help="Log format for commands without a job log: json or console",
            envvar="MARATHON_LOG_FORMAT",
        ),
    ] = None,
) -> None:
    """Marathon - fault-tolerant batch jobs on spot workers."""


app.command()(run)
app.command()(health)

# Used by running jobs
app.command(name="fan-out", hidden=True)(fan_out)
app.command(
    name="worker-exec",
    hidden=True,
    context_settings={"allow_interspersed_args": False, "ignore_unknown_options": True},
)(worker_exec)


__all__ = ["app", "console", "main"]
