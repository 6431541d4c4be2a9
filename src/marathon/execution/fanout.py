"""Bounded fan-out of a command template over input files.

Two halves live here:

``FanOutDriver`` runs inside the separate driver process (the hidden
``marathon fan-out`` command). It launches one unit per input, at most
``max_workers`` at a time, writes a GNU-Parallel-style job log, and exits
with the number of failed units, capped at 101.

``FanOutProcess`` is the orchestrator's handle on that driver process:
start it, wait for it, and stop it using the driver's two-stage contract.
The first SIGTERM stops new units from launching; the second also
terminates the units already running. A driver that was stopped exits with
the shutdown status.

Units are launched through ``marathon worker-exec`` so that each one
registers its own pid in the worker registry before running the real
command.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import shlex
import signal
import socket
import sys
import time
from dataclasses import dataclass
from pathlib import Path

from marathon.core.errors.codes import StatusCode, normalize_returncode
from marathon.core.logging import get_logger

_logger = get_logger("fanout")

# GNU Parallel caps its failure count exit status at 101
MAX_FAILURE_EXIT = 101

# Seconds in-flight units get between SIGTERM and SIGKILL on a hard stop
UNIT_KILL_GRACE = 2.0

JOBLOG_HEADER = "Seq\tHost\tStarttime\tJobRuntime\tSend\tReceive\tExitval\tSignal\tCommand\n"

_PLACEHOLDERS = ("{}", "{.}", "{/}", "{/.}", "{//}")


def expand_template(template: str, path: str) -> list[str]:
    """Substitute one input path into a command template.

    ``{}`` is the path, ``{.}`` the path without its extension, ``{/}`` the
    base name, ``{/.}`` the base name without extension and ``{//}`` the
    directory. A template with no placeholder gets the path appended as
    the last argument.
    """
    base = os.path.basename(path)
    values = {
        "{}": path,
        "{.}": os.path.splitext(path)[0],
        "{/}": base,
        "{/.}": os.path.splitext(base)[0],
        "{//}": os.path.dirname(path) or ".",
    }
    tokens = shlex.split(template)
    if not tokens:
        raise ValueError("empty command template")
    if not any(p in token for token in tokens for p in _PLACEHOLDERS):
        return [*tokens, path]
    expanded = []
    for token in tokens:
        # Longest placeholders first so "{/.}" is not read as "{/}" + "."
        for placeholder in sorted(_PLACEHOLDERS, key=len, reverse=True):
            token = token.replace(placeholder, values[placeholder])
        expanded.append(token)
    return expanded


def worker_exec_prefix(registry: Path, label: str) -> list[str]:
    """Command prefix that registers the unit before exec'ing it."""
    return [
        sys.executable, "-m", "marathon", "worker-exec",
        "--registry", str(registry),
        "--label", label,
        "--",
    ]


@dataclass
class UnitResult:
    seq: int
    start: float
    runtime: float
    exitval: int
    signal: int
    command: str

    @property
    def failed(self) -> bool:
        return self.exitval != 0 or self.signal != 0

    def joblog_line(self, host: str) -> str:
        return (
            f"{self.seq}\t{host}\t{self.start:.3f}\t{self.runtime:.3f}\t0\t0\t"
            f"{self.exitval}\t{self.signal}\t{self.command}\n"
        )


class FanOutDriver:
    """Runs the command template once per input with bounded concurrency."""

    def __init__(
        self,
        template: str,
        inputs: list[str],
        *,
        max_workers: int,
        joblog: Path | None = None,
        registry: Path | None = None,
        results_dir: Path | None = None,
        cwd: Path | None = None,
        nice: int = 0,
    ) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self._template = template
        self._inputs = inputs
        self._max_workers = max_workers
        self._joblog = joblog
        self._registry = registry
        self._results_dir = results_dir
        self._cwd = cwd
        self._nice = nice
        self._host = socket.gethostname()
        self._stop_requests = 0
        self._stop_launching = asyncio.Event()
        self._running: dict[int, asyncio.subprocess.Process] = {}
        self._results: list[UnitResult] = []
        self._kill_tasks: list[asyncio.Task[None]] = []

    @property
    def results(self) -> list[UnitResult]:
        return list(self._results)

    @property
    def stopped(self) -> bool:
        return self._stop_requests > 0

    def request_stop(self) -> None:
        """Advance the two-stage stop: first call stops launches, second kills units."""
        self._stop_requests += 1
        if self._stop_requests == 1:
            _logger.warning("fanout.stop_launching", running=len(self._running))
            self._stop_launching.set()
        elif self._stop_requests == 2:
            _logger.warning("fanout.killing_running_units", running=len(self._running))
            self._kill_tasks.append(asyncio.create_task(self._kill_running()))

    async def run(self, install_signal_handlers: bool = True) -> int:
        """Run every unit and return the driver's exit status."""
        loop = asyncio.get_running_loop()
        if install_signal_handlers:
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.add_signal_handler(sig, self.request_stop)

        if self._joblog is not None:
            self._joblog.parent.mkdir(parents=True, exist_ok=True)
            if not self._joblog.exists():
                self._joblog.write_text(JOBLOG_HEADER)

        slots = asyncio.Semaphore(self._max_workers)
        units: list[asyncio.Task[None]] = []
        try:
            for seq, path in enumerate(self._inputs, start=1):
                if self._stop_launching.is_set():
                    break
                if not await self._acquire(slots):
                    break
                units.append(asyncio.create_task(self._run_unit(seq, path, slots)))
            if units:
                await asyncio.gather(*units)
            if self._kill_tasks:
                await asyncio.gather(*self._kill_tasks)
        finally:
            if install_signal_handlers:
                for sig in (signal.SIGTERM, signal.SIGINT):
                    loop.remove_signal_handler(sig)

        failed = sum(1 for r in self._results if r.failed)
        skipped = len(self._inputs) - len(units)
        _logger.info(
            "fanout.finished",
            launched=len(units),
            failed=failed,
            skipped=skipped,
            stopped=self.stopped,
        )
        if self.stopped:
            return int(StatusCode.SHUTDOWN_SIGNAL)
        return min(failed, MAX_FAILURE_EXIT)

    async def _acquire(self, slots: asyncio.Semaphore) -> bool:
        """Wait for a free slot; False if a stop arrived first."""
        acquire = asyncio.create_task(slots.acquire())
        stop = asyncio.create_task(self._stop_launching.wait())
        done, _ = await asyncio.wait({acquire, stop}, return_when=asyncio.FIRST_COMPLETED)
        stop.cancel()
        if acquire in done and not self._stop_launching.is_set():
            return True
        if acquire in done:
            slots.release()
        else:
            acquire.cancel()
        return False

    async def _run_unit(self, seq: int, path: str, slots: asyncio.Semaphore) -> None:
        command = expand_template(self._template, path)
        if self._nice > 0:
            command = ["nice", "-n", str(self._nice), *command]
        argv = command
        if self._registry is not None:
            argv = [*worker_exec_prefix(self._registry, f"unit {seq} {os.path.basename(path)}"), *command]

        stdout_target: int | object = asyncio.subprocess.DEVNULL
        stderr_target: int | object = asyncio.subprocess.DEVNULL
        out_file = err_file = None
        if self._results_dir is not None:
            unit_dir = self._results_dir / str(seq)
            unit_dir.mkdir(parents=True, exist_ok=True)
            out_file = open(unit_dir / "stdout", "wb")  # noqa: SIM115
            err_file = open(unit_dir / "stderr", "wb")  # noqa: SIM115
            stdout_target, stderr_target = out_file, err_file

        start = time.time()
        started = time.monotonic()
        try:
            try:
                process = await asyncio.create_subprocess_exec(
                    *argv,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=stdout_target,
                    stderr=stderr_target,
                    cwd=self._cwd,
                    start_new_session=True,
                )
            except OSError as exc:
                _logger.error("fanout.unit_spawn_failed", seq=seq, error=str(exc))
                self._record(UnitResult(seq, start, 0.0, 127, 0, shlex.join(command)))
                return
            self._running[seq] = process
            _logger.debug("fanout.unit_started", seq=seq, pid=process.pid, input=path)
            returncode = await process.wait()
        finally:
            self._running.pop(seq, None)
            slots.release()
            for handle in (out_file, err_file):
                if handle is not None:
                    handle.close()

        status = normalize_returncode(returncode)
        sig = -returncode if returncode is not None and returncode < 0 else 0
        result = UnitResult(
            seq=seq,
            start=start,
            runtime=time.monotonic() - started,
            exitval=0 if sig else status,
            signal=sig,
            command=shlex.join(command),
        )
        self._record(result)
        if result.failed:
            _logger.warning("fanout.unit_failed", seq=seq, exitval=result.exitval, signal=sig)

    def _record(self, result: UnitResult) -> None:
        self._results.append(result)
        if self._joblog is None:
            return
        try:
            with open(self._joblog, "a") as f:
                f.write(result.joblog_line(self._host))
        except OSError as exc:
            _logger.warning("fanout.joblog_write_failed", error=str(exc))

    async def _kill_running(self) -> None:
        running = list(self._running.values())
        if not running:
            return
        for process in running:
            with contextlib.suppress(ProcessLookupError, PermissionError):
                os.killpg(process.pid, signal.SIGTERM)
        waiters = [asyncio.ensure_future(process.wait()) for process in running]
        _, pending = await asyncio.wait(waiters, timeout=UNIT_KILL_GRACE)
        for waiter in pending:
            waiter.cancel()
        for process in running:
            if process.returncode is None:
                with contextlib.suppress(ProcessLookupError, PermissionError):
                    os.killpg(process.pid, signal.SIGKILL)


class FanOutProcess:
    """Orchestrator-side handle on a running fan-out driver."""

    def __init__(self, process: asyncio.subprocess.Process) -> None:
        self._process = process
        self._stop_signals = 0

    @classmethod
    async def start(
        cls,
        *,
        template: str,
        inputs: list[Path],
        max_workers: int,
        inputs_file: Path,
        joblog: Path,
        registry: Path,
        results_dir: Path,
        cwd: Path,
        driver_log: Path,
        nice: int = 0,
    ) -> FanOutProcess:
        """Write the input list and launch ``marathon fan-out``."""
        inputs_file.write_text("".join(f"{p}\n" for p in inputs))
        argv = [
            sys.executable, "-m", "marathon", "fan-out",
            "--command", template,
            "--inputs-file", str(inputs_file),
            "--max-workers", str(max_workers),
            "--joblog", str(joblog),
            "--registry", str(registry),
            "--results-dir", str(results_dir),
            "--cwd", str(cwd),
            "--nice", str(nice),
        ]
        with open(driver_log, "ab") as log:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=log,
                stderr=log,
                start_new_session=True,
            )
        _logger.info(
            "fanout.driver_started",
            pid=process.pid,
            inputs=len(inputs),
            max_workers=max_workers,
        )
        return cls(process)

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def returncode(self) -> int | None:
        return self._process.returncode

    def is_alive(self) -> bool:
        return self._process.returncode is None

    async def wait(self) -> int:
        """Wait for the driver and return its normalised exit status."""
        return normalize_returncode(await self._process.wait())

    def _signal(self) -> bool:
        if not self.is_alive():
            return False
        try:
            self._process.send_signal(signal.SIGTERM)
        except ProcessLookupError:
            return False
        self._stop_signals += 1
        return True

    def soft_stop(self) -> bool:
        """Ask the driver to stop launching units."""
        if self._stop_signals >= 1:
            return False
        return self._signal()

    def hard_stop(self) -> bool:
        """Ask the driver to also terminate running units."""
        if self._stop_signals == 0:
            self.soft_stop()
        if self._stop_signals != 1:
            return False
        return self._signal()

    async def stop(self, grace: float) -> int | None:
        """Soft stop, wait ``grace``, hard stop, wait again, then kill.

        Returns:
            The driver's exit status, or None if it could not be reaped.
        """
        if not self.is_alive():
            return self.returncode
        self.soft_stop()
        if await self._wait_for(grace):
            return await self.wait()
        _logger.info("fanout.hard_stop", pid=self.pid)
        self.hard_stop()
        if await self._wait_for(grace + UNIT_KILL_GRACE):
            return await self.wait()
        _logger.warning("fanout.driver_unresponsive", pid=self.pid)
        with contextlib.suppress(ProcessLookupError, PermissionError):
            os.killpg(self.pid, signal.SIGKILL)
        if await self._wait_for(grace):
            return await self.wait()
        return None

    async def _wait_for(self, timeout: float) -> bool:
        try:
            await asyncio.wait_for(asyncio.shield(self._process.wait()), timeout=timeout)
        except TimeoutError:
            return False
        return True


__all__ = [
    "FanOutDriver",
    "FanOutProcess",
    "JOBLOG_HEADER",
    "MAX_FAILURE_EXIT",
    "UnitResult",
    "expand_template",
    "worker_exec_prefix",
]
