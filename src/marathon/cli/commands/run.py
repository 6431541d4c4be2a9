"""``marathon run <cleanup_mode> <job_name>``.

Loads the configuration, runs the job through the orchestrator and exits
with the job's code, or powers the host off when the outcome says so.
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import typer

from marathon.core.config import CleanupMode, load_job_config
from marathon.core.errors.codes import StatusCode
from marathon.core.exceptions import ConfigurationError
from marathon.core.job import Job
from marathon.orchestrator import Orchestrator
from marathon.shutdown import HostControl, SystemHostControl

from ..helpers import ErrorMessages, configure_cli_logging
from ..output import console, print_outcome


def run(
    cleanup_mode: CleanupMode = typer.Argument(
        ...,
        help="What to delete from the workspace when the job ends",
    ),
    job_name: str = typer.Argument(..., help="Job name; used in paths and logs"),
    config_file: Path | None = typer.Option(
        None,
        "--config",
        "-c",
        help="YAML file with job settings (overridden by MARATHON_* variables)",
        exists=True,
        readable=True,
        envvar="MARATHON_CONFIG",
    ),
    no_power_off: bool = typer.Option(
        False,
        "--no-power-off",
        help="Exit instead of powering the host off after a clean 'all' run",
    ),
) -> None:
    """Run a job: fetch inputs, fan out, deliver results, clean up."""
    try:
        config = load_job_config(job_name, cleanup_mode, config_file=config_file)
    except ConfigurationError as e:
        console.print(f"[red]{ErrorMessages.CONFIG_LOAD_ERROR}:[/red] {e}")
        raise typer.Exit(int(StatusCode.CONFIG_ERROR)) from None

    job = Job.create(config)
    try:
        job.paths.logs.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        console.print(f"[red]{ErrorMessages.WORKSPACE_ERROR}:[/red] {e}")
        raise typer.Exit(int(StatusCode.FILING_ERROR)) from None

    configure_cli_logging(job.paths.marathon_log, format="both")
    outcome = asyncio.run(Orchestrator.create(job).run())
    print_outcome(outcome)

    if outcome.power_off and not no_power_off:
        host: HostControl = SystemHostControl(config.power_off_command)
        host.power_off()
    raise typer.Exit(outcome.exit_code)


__all__ = ["run"]
