"""Ordered teardown of a job.

``ShutdownSequence.run`` is the single exit path of every job, whether it
succeeded, failed, or was interrupted. Steps run in a fixed order:

1. stop the fan-out driver (soft stop, grace, hard stop)
2. snapshot this process's status for diagnostics
3. terminate every live registered worker
4. encrypt results, if encryption is on
5. upload results (retried)
6. delete local artifacts according to the cleanup mode
7. record the job in the indexes, then package and upload the logs
8. remove the worker registry and the ramdisk
9. decide the final disposition: exit with the code, or power off

Every step is best-effort: a failure is reported and the next step runs.
Steps that completed are not repeated if the sequence is entered again,
and steps whose inputs are already gone are skipped, so a second entry
(for instance after a duplicate signal) finishes cleanly with the same
exit code as the first.
"""

from __future__ import annotations

import asyncio
import fnmatch
import json
import shutil
import subprocess
import tarfile
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Protocol

from marathon.core.config import CleanupMode
from marathon.core.errors.codes import StatusCode
from marathon.core.errors.reporting import report
from marathon.core.job import Job
from marathon.core.logging import get_logger
from marathon.execution.fanout import FanOutProcess
from marathon.execution.retry import RetryEngine
from marathon.metadata import MetadataSink
from marathon.operations.crypto import GPG_SUFFIX, CryptoOperation
from marathon.operations.transfer import TransferOperation
from marathon.supervisor.registry import WorkerRegistry
from marathon.supervisor.system_probe import SystemProbe
from marathon.utils.time import stamp

_logger = get_logger("shutdown")


# ─── Outcome and host control ──────────────────────────────────────────


class Disposition(str, Enum):
    EXIT = "exit"
    POWER_OFF = "power_off"


@dataclass(frozen=True)
class ShutdownOutcome:
    """Terminal state of a job: exit with ``exit_code`` or power off the host."""

    disposition: Disposition
    exit_code: int

    @classmethod
    def for_job(cls, cleanup_mode: CleanupMode, exit_code: int) -> ShutdownOutcome:
        if cleanup_mode is CleanupMode.ALL and exit_code == StatusCode.SUCCESS:
            return cls(Disposition.POWER_OFF, exit_code)
        return cls(Disposition.EXIT, exit_code)

    @property
    def power_off(self) -> bool:
        return self.disposition is Disposition.POWER_OFF


class HostControl(Protocol):
    def power_off(self) -> None: ...


class SystemHostControl:
    """Powers the host off with a configured command (``sudo shutdown now``)."""

    def __init__(self, command: list[str]) -> None:
        self._command = command

    def power_off(self) -> None:
        _logger.warning("host.power_off", command=self._command)
        result = subprocess.run(self._command, check=False)
        if result.returncode != 0:
            _logger.error("host.power_off_failed", status=result.returncode)


# ─── Cleanup selection ────────────────────────────────────────────────


class ArtifactKind(str, Enum):
    INPUT = "input"
    RESULT = "result"
    ENCRYPTED_RESULT = "encrypted_result"
    INTERMEDIATE = "intermediate"


def classify_artifact(name: str, inglob: str, outglob: str) -> ArtifactKind:
    if fnmatch.fnmatchcase(name, outglob + GPG_SUFFIX):
        return ArtifactKind.ENCRYPTED_RESULT
    if fnmatch.fnmatchcase(name, inglob) or fnmatch.fnmatchcase(name, inglob + GPG_SUFFIX):
        return ArtifactKind.INPUT
    if fnmatch.fnmatchcase(name, outglob):
        return ArtifactKind.RESULT
    return ArtifactKind.INTERMEDIATE


def kinds_to_delete(mode: CleanupMode, *, results_delivered: bool) -> frozenset[ArtifactKind]:
    """Artifact kinds removed from the workspace under ``mode``.

    ``output`` and ``gpg`` drop raw results and keep the encrypted copies;
    ``all`` drops both. Results that could not be delivered are always kept,
    since losing the only copy would turn a failed upload into lost work.
    """
    if mode is CleanupMode.KEEP:
        return frozenset()
    kinds = {ArtifactKind.INPUT, ArtifactKind.INTERMEDIATE}
    if results_delivered:
        kinds.add(ArtifactKind.RESULT)
        if mode is CleanupMode.ALL:
            kinds.add(ArtifactKind.ENCRYPTED_RESULT)
    return frozenset(kinds)


def select_deletions(
    work: Path,
    mode: CleanupMode,
    inglob: str,
    outglob: str,
    *,
    results_delivered: bool = True,
) -> list[Path]:
    """Top-level workspace entries to delete under ``mode``."""
    kinds = kinds_to_delete(mode, results_delivered=results_delivered)
    if not kinds or not work.is_dir():
        return []
    return [
        entry for entry in sorted(work.iterdir())
        if classify_artifact(entry.name, inglob, outglob) in kinds
    ]


def result_files(work: Path, outglob: str) -> list[Path]:
    """Plaintext result files currently in the workspace."""
    if not work.is_dir():
        return []
    return [
        p for p in sorted(work.glob(outglob))
        if p.is_file() and not p.name.endswith(GPG_SUFFIX)
    ]


def _remove(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink(missing_ok=True)


# ─── Sequence ─────────────────────────────────────────────────────────


class ShutdownSequence:
    """Runs the teardown steps for one job."""

    def __init__(
        self,
        job: Job,
        *,
        registry: WorkerRegistry,
        transfer: TransferOperation,
        engine: RetryEngine,
        crypto: CryptoOperation | None = None,
        metadata: MetadataSink | None = None,
    ) -> None:
        self._job = job
        self._registry = registry
        self._transfer = transfer
        self._engine = engine
        self._crypto = crypto
        self._metadata = metadata
        self._fanout: FanOutProcess | None = None
        self._completed: set[str] = set()
        self._results_delivered = False
        self._lock = asyncio.Lock()
        self._outcome: ShutdownOutcome | None = None

    def attach_fanout(self, fanout: FanOutProcess) -> None:
        self._fanout = fanout

    @property
    def completed_steps(self) -> frozenset[str]:
        return frozenset(self._completed)

    @property
    def results_delivered(self) -> bool:
        return self._results_delivered

    async def run(self, exit_code: int, *, deliver_outputs: bool = True) -> ShutdownOutcome:
        """Run every outstanding step and return the job's outcome.

        Args:
            exit_code: Proposed exit code. Only the first code ever given
                to the job counts.
            deliver_outputs: Encrypt and upload results. False for jobs
                that failed before producing any.
        """
        async with self._lock:
            code = self._job.set_exit_code(exit_code)
            _logger.info(
                "shutdown.started",
                exit_code=code,
                cleanup_mode=self._job.cleanup_mode.value,
                deliver_outputs=deliver_outputs,
                reentry=bool(self._completed),
            )

            await self._step("stop_fanout", self._stop_fanout)
            await self._step("snapshot_status", self._snapshot_status)
            await self._step("terminate_workers", self._terminate_workers)
            if deliver_outputs:
                if self._job.encrypt:
                    await self._step("encrypt_results", self._encrypt_results)
                await self._step("send_results", self._send_results)
            await self._step("delete_artifacts", self._delete_artifacts)
            await self._step("record_job", lambda: self._record_job(code))
            await self._step("ship_logs", self._ship_logs)
            await self._step("remove_registry", self._remove_registry)

            self._outcome = ShutdownOutcome.for_job(self._job.cleanup_mode, code)
            _logger.info(
                "shutdown.complete",
                exit_code=code,
                disposition=self._outcome.disposition.value,
            )
            return self._outcome

    async def _step(self, name: str, action: Callable[[], Awaitable[None]]) -> None:
        if name in self._completed:
            _logger.debug("shutdown.step_already_done", step=name)
            return
        try:
            await action()
        except Exception as exc:
            _logger.exception("shutdown.step_failed", step=name, error=str(exc))
            return
        self._completed.add(name)

    # ─── Steps ─────────────────────────────────────────────────────────

    async def _stop_fanout(self) -> None:
        fanout = self._fanout
        if fanout is None or not fanout.is_alive():
            return
        _logger.info("shutdown.stopping_fanout", pid=fanout.pid)
        status = await fanout.stop(self._job.config.fanout.stop_grace)
        _logger.info("shutdown.fanout_stopped", pid=fanout.pid, status=status)

    async def _snapshot_status(self) -> None:
        paths = self._job.paths
        if not paths.status.is_dir():
            return
        snapshot = SystemProbe.process_snapshot()
        target = paths.cleanup_status(self._job.identity.pid, stamp())
        target.write_text(json.dumps(snapshot, indent=2, default=str) + "\n")

    async def _terminate_workers(self) -> None:
        await asyncio.to_thread(
            self._registry.terminate_all, self._job.config.worker_grace_period,
        )

    async def _encrypt_results(self) -> None:
        if self._crypto is None:
            _logger.warning("shutdown.no_crypto_configured")
            return
        files = result_files(self._job.paths.work, self._job.config.outglob)
        if not files:
            return
        status = await self._crypto.encrypt(files)
        report(status, "encrypt results", classifier=self._engine.classifier)

    async def _send_results(self) -> None:
        config = self._job.config
        work = self._job.paths.work
        if not work.is_dir():
            return
        pattern = config.outglob + GPG_SUFFIX if config.encrypt else config.outglob
        outcome = await self._engine.retry_transfer(
            lambda: self._transfer.copy(
                str(work), config.output, pattern,
                log_file=self._log_file("rclone.output.log"),
            ),
            what="send results",
        )
        self._results_delivered = outcome.succeeded
        report(outcome.status, "send results", classifier=self._engine.classifier)

    async def _delete_artifacts(self) -> None:
        config = self._job.config
        doomed = select_deletions(
            self._job.paths.work,
            config.cleanup_mode,
            config.inglob,
            config.outglob,
            results_delivered=self._results_delivered,
        )
        failures = 0
        for path in doomed:
            try:
                _remove(path)
            except OSError as exc:
                failures += 1
                report(StatusCode.FILING_ERROR, f"remove {path.name}: {exc}")
        if doomed:
            _logger.info(
                "shutdown.artifacts_deleted",
                mode=config.cleanup_mode.value,
                deleted=len(doomed) - failures,
                failed=failures,
            )

    async def _record_job(self, code: int) -> None:
        if self._metadata is None:
            return
        self._metadata.record_job(code)
        if code != StatusCode.SUCCESS:
            self._metadata.record_error(code, f"Job failed with exit code {code}")
        self._metadata.write_daily_summary()

    async def _ship_logs(self) -> None:
        paths = self._job.paths
        config = self._job.config
        archive = paths.log_archive(self._job.identity.pid)
        if paths.logs.is_dir():
            await asyncio.to_thread(self._package_logs, paths.logs, archive)
        if archive.exists() and config.output:
            outcome = await self._engine.retry_transfer(
                lambda: self._transfer.copy(str(archive), config.output),
                what="send logs",
            )
            if not outcome.succeeded:
                report(StatusCode.NETWORK_ERROR, "sending logs to output folder")

        if config.cleanup_mode is CleanupMode.ALL:
            if self._results_delivered or not result_files(paths.work, config.outglob):
                await asyncio.to_thread(shutil.rmtree, paths.work, True)
            else:
                _logger.warning("shutdown.keeping_work_undelivered", work=str(paths.work))
            await asyncio.to_thread(shutil.rmtree, paths.logs, True)

    @staticmethod
    def _package_logs(logs: Path, archive: Path) -> None:
        archive.parent.mkdir(parents=True, exist_ok=True)
        with tarfile.open(archive, "w:xz") as tar:
            tar.add(logs, arcname=logs.name)
        _logger.info("shutdown.logs_packaged", archive=str(archive))

    async def _remove_registry(self) -> None:
        self._registry.remove()
        await asyncio.to_thread(shutil.rmtree, self._job.paths.ramdisk, True)

    def _log_file(self, suffix: str) -> Path | None:
        path = self._job.paths.log_file(suffix)
        return path if path.parent.is_dir() else None


__all__ = [
    "ArtifactKind",
    "Disposition",
    "HostControl",
    "ShutdownOutcome",
    "ShutdownSequence",
    "SystemHostControl",
    "classify_artifact",
    "kinds_to_delete",
    "result_files",
    "select_deletions",
]
