"""Subprocess runner for external commands (rclone, gpg, tar, ...).

Runs one command to completion and reports a shell-style exit status.
Each child gets its own session so it can be stopped with its descendants;
if the awaiting task is cancelled the child is terminated, then killed,
rather than leaked. Children can optionally be recorded in the worker
registry so the shutdown sequence can find them.

Security Note: uses asyncio.create_subprocess_exec(), which is
shell-injection safe; arguments are passed as a list.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import signal
import time
from dataclasses import dataclass
from pathlib import Path

from marathon.core.errors.codes import StatusCode, normalize_returncode
from marathon.core.logging import get_logger
from marathon.supervisor.registry import WorkerRegistry

_logger = get_logger("process")

# Seconds a cancelled child gets between SIGTERM and SIGKILL
GRACEFUL_TERMINATION_TIMEOUT: float = 5.0


@dataclass(frozen=True)
class CommandResult:
    """Outcome of one command."""

    status: int
    duration_seconds: float
    pid: int | None = None
    stderr_tail: str = ""
    stdout: str = ""

    @property
    def ok(self) -> bool:
        return self.status == StatusCode.SUCCESS


class CommandRunner:
    """Runs commands with optional niceness and registry tracking."""

    def __init__(
        self,
        registry: WorkerRegistry | None = None,
        *,
        nice: int = 0,
    ) -> None:
        self._registry = registry
        self._nice = nice

    def with_nice(self, nice: int) -> CommandRunner:
        return CommandRunner(self._registry, nice=nice)

    def build(self, cmd: list[str]) -> list[str]:
        if self._nice > 0:
            return ["nice", "-n", str(self._nice), *cmd]
        return list(cmd)

    async def run(
        self,
        cmd: list[str],
        *,
        cwd: Path | None = None,
        log_file: Path | None = None,
        label: str | None = None,
        capture_stdout: bool = False,
    ) -> CommandResult:
        """Run ``cmd`` and wait for it.

        Args:
            cmd: Command and arguments.
            cwd: Working directory.
            log_file: Append the command's stdout and stderr here; when
                absent, output is discarded except for a short stderr tail.
            label: Registry label; the child is registered when a registry
                was given.
            capture_stdout: Return stdout in the result instead of
                sending it to ``log_file``.

        Returns:
            CommandResult. A missing executable yields status 127; a child
            killed by signal N yields ``128 + N``.
        """
        argv = self.build(cmd)
        start = time.monotonic()
        log_handle = open(log_file, "ab") if log_file is not None else None  # noqa: SIM115
        try:
            try:
                process = await asyncio.create_subprocess_exec(
                    *argv,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE if capture_stdout
                    else log_handle or asyncio.subprocess.DEVNULL,
                    stderr=log_handle if log_handle else asyncio.subprocess.PIPE,
                    cwd=cwd,
                    start_new_session=True,
                )
            except FileNotFoundError:
                _logger.error("process.command_not_found", command=argv[0])
                return CommandResult(
                    status=int(StatusCode.COMMAND_NOT_FOUND),
                    duration_seconds=time.monotonic() - start,
                )
            except PermissionError as exc:
                _logger.error("process.spawn_denied", command=argv[0], error=str(exc))
                return CommandResult(status=126, duration_seconds=time.monotonic() - start)

            if self._registry is not None:
                try:
                    self._registry.register(process.pid, label or os.path.basename(cmd[0]))
                except OSError as exc:
                    _logger.warning("process.register_failed", pid=process.pid, error=str(exc))

            try:
                stdout, stderr = await process.communicate()
            except asyncio.CancelledError:
                await self._terminate(process)
                raise

            status = normalize_returncode(process.returncode)
            tail = stderr.decode("utf-8", errors="replace")[-500:] if stderr else ""
            duration = time.monotonic() - start
            _logger.debug(
                "process.completed",
                command=argv[0] if argv[0] != "nice" else cmd[0],
                pid=process.pid,
                status=status,
                duration_seconds=round(duration, 3),
            )
            out = stdout.decode("utf-8", errors="replace") if stdout else ""
            return CommandResult(status, duration, process.pid, tail, out)
        finally:
            if log_handle is not None:
                log_handle.close()

    @staticmethod
    async def _terminate(process: asyncio.subprocess.Process) -> None:
        """SIGTERM the child's session, then SIGKILL it if it lingers."""
        if process.returncode is not None:
            return
        with contextlib.suppress(ProcessLookupError, PermissionError):
            os.killpg(process.pid, signal.SIGTERM)
        try:
            await asyncio.wait_for(process.wait(), timeout=GRACEFUL_TERMINATION_TIMEOUT)
        except TimeoutError:
            with contextlib.suppress(ProcessLookupError, PermissionError):
                os.killpg(process.pid, signal.SIGKILL)
            await process.wait()
        _logger.info("process.terminated_on_cancel", pid=process.pid)


__all__ = ["CommandResult", "CommandRunner", "GRACEFUL_TERMINATION_TIMEOUT"]
