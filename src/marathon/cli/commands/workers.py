"""Hidden commands used by a running job, not by operators.

``fan-out`` is the driver process the orchestrator launches during
Process. ``worker-exec`` wraps each unit the driver starts: it registers
its own pid in the worker registry and then replaces itself with the real
command, so the registered pid is the unit's.
"""

from __future__ import annotations

import asyncio
import os
from pathlib import Path

import typer

from marathon.core.errors.codes import StatusCode
from marathon.core.logging import get_logger
from marathon.execution.fanout import FanOutDriver
from marathon.supervisor.registry import WorkerRegistry

from ..helpers import configure_cli_logging

_logger = get_logger("cli.workers")


def fan_out(
    command: str = typer.Option(..., "--command", help="Command template"),
    inputs_file: Path = typer.Option(
        ...,
        "--inputs-file",
        help="One input path per line",
        exists=True,
        readable=True,
    ),
    max_workers: int = typer.Option(4, "--max-workers", min=1),
    joblog: Path | None = typer.Option(None, "--joblog"),
    registry: Path | None = typer.Option(None, "--registry"),
    results_dir: Path | None = typer.Option(None, "--results-dir"),
    cwd: Path | None = typer.Option(None, "--cwd"),
    nice: int = typer.Option(0, "--nice", min=0, max=19),
) -> None:
    """Run COMMAND once per input with bounded concurrency."""
    configure_cli_logging(format="console")
    inputs = [line for line in inputs_file.read_text().splitlines() if line.strip()]
    driver = FanOutDriver(
        command,
        inputs,
        max_workers=max_workers,
        joblog=joblog,
        registry=registry,
        results_dir=results_dir,
        cwd=cwd,
        nice=nice,
    )
    raise typer.Exit(asyncio.run(driver.run()))


def worker_exec(
    command: list[str] = typer.Argument(..., help="Command to exec after registering"),
    registry: Path = typer.Option(..., "--registry", help="Worker registry file"),
    label: str = typer.Option("", "--label"),
) -> None:
    """Register this process in REGISTRY, then exec COMMAND."""
    try:
        WorkerRegistry(registry).register(label=label or None)
    except OSError as e:
        # The unit still runs; shutdown falls back to stopping the driver.
        _logger.warning("worker_exec.register_failed", registry=str(registry), error=str(e))
    try:
        os.execvp(command[0], command)
    except FileNotFoundError:
        raise typer.Exit(int(StatusCode.COMMAND_NOT_FOUND)) from None
    except PermissionError:
        raise typer.Exit(126) from None


__all__ = ["fan_out", "worker_exec"]
