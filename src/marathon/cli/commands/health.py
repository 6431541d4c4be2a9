"""``marathon health``: worker readiness for monitoring tools."""

from __future__ import annotations

import json
from pathlib import Path

import typer
import uvicorn

from marathon import __version__
from marathon.core.config import CleanupMode, load_job_config
from marathon.core.errors.codes import StatusCode
from marathon.core.exceptions import ConfigurationError
from marathon.health import HealthChecker, create_app

from ..helpers import ErrorMessages, configure_cli_logging
from ..output import console, format_health


def health(
    json_output: bool = typer.Option(
        False,
        "--json",
        "-j",
        help="Print the report as JSON",
    ),
    config_file: Path | None = typer.Option(
        None,
        "--config",
        "-c",
        help="YAML file with worker settings",
        exists=True,
        readable=True,
        envvar="MARATHON_CONFIG",
    ),
    serve: bool = typer.Option(
        False,
        "--serve",
        help="Serve GET /health over HTTP instead of checking once",
    ),
    host: str = typer.Option("0.0.0.0", "--host", help="Address to bind with --serve"),
    port: int = typer.Option(8080, "--port", "-p", help="Port to bind with --serve"),
) -> None:
    """Check this worker and exit 0 (healthy), 1 (unhealthy) or 2 (critical).

    With --serve, keep answering health checks over HTTP until stopped.
    """
    configure_cli_logging()
    try:
        config = load_job_config("health", CleanupMode.KEEP, config_file=config_file)
    except ConfigurationError as e:
        console.print(f"[red]{ErrorMessages.CONFIG_LOAD_ERROR}:[/red] {e}")
        raise typer.Exit(int(StatusCode.CONFIG_ERROR)) from None

    checker = HealthChecker(
        config.workspace,
        config.logspace,
        config.reports_path,
        ramdisk_root=config.ramdisk_root,
        tools=(config.transfer.rclone_binary, config.crypto.gpg_binary),
    )
    if serve:
        console.print(f"Serving health checks on http://{host}:{port}/health")
        uvicorn.run(create_app(checker, version=__version__), host=host, port=port, log_level="warning")
        return

    report = checker.check()

    if json_output:
        console.print_json(json.dumps(report.to_dict()))
    else:
        console.print(format_health(report))
    raise typer.Exit(report.status.exit_code)


__all__ = ["health"]
