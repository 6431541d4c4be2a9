"""The job state machine.

    Init -> Fetch -> Process -> Monitor -> Finalize -> Shutdown(code)

``Orchestrator.run`` drives one job through these states and always ends
in the shutdown sequence, whatever happened before. Failures inside a
state unwind as ``JobAbort`` carrying a status code:

- a failure in Init skips straight to Shutdown; no outputs are delivered
- a failure in Fetch or Process goes through Finalize, still without
  delivering outputs
- Monitor ends when the fan-out driver exits or when one of its poll loops
  surfaces a fatal or shutdown status; results are delivered either way

SIGTERM and SIGINT move the job to Shutdown from any state. Only the first
request counts; later ones are logged and ignored.
"""

from __future__ import annotations

import asyncio
import signal
from enum import Enum
from pathlib import Path
from typing import Any

from marathon.core.errors.classifier import ErrorClassifier
from marathon.core.errors.codes import ErrorCategory, StatusCode
from marathon.core.errors.reporting import report
from marathon.core.exceptions import JobAbort
from marathon.core.job import Job
from marathon.core.logging import JobContext, get_logger, set_context, with_context
from marathon.execution.fanout import FanOutProcess
from marathon.execution.process import CommandRunner
from marathon.execution.retry import RetryEngine
from marathon.metadata import CsvRetryMetrics, FileMetadataSink, MetadataSink
from marathon.operations.crypto import GPG_SUFFIX, CryptoOperation, GpgCrypto
from marathon.operations.transfer import TransferOperation, create_transfer
from marathon.shutdown import ShutdownOutcome, ShutdownSequence, result_files
from marathon.supervisor.interruption import (
    InterruptionMonitor,
    InterruptionSource,
    SpotInterruptionSource,
)
from marathon.supervisor.registry import WorkerRegistry
from marathon.supervisor.sampler import ResourceSampler, ResourceSummary
from marathon.supervisor.system_probe import SystemProbe
from marathon.supervisor.task_utils import log_task_exception, wait_or_cancel

_logger = get_logger("orchestrator")


class JobState(str, Enum):
    INIT = "init"
    FETCH = "fetch"
    PROCESS = "process"
    MONITOR = "monitor"
    FINALIZE = "finalize"
    SHUTDOWN = "shutdown"


# Reasons surfaced during Monitor, strongest first
_SURFACE_PRIORITY = {
    ErrorCategory.SHUTDOWN_SIGNAL: 0,
    ErrorCategory.FATAL: 1,
}


class Orchestrator:
    """Runs one job from start to shutdown.

    Collaborators are passed in explicitly. ``metadata`` and
    ``interruption_source`` are optional; without them the manifest and
    index steps, or interruption polling, are skipped.
    """

    def __init__(
        self,
        job: Job,
        *,
        registry: WorkerRegistry,
        transfer: TransferOperation,
        engine: RetryEngine,
        crypto: CryptoOperation | None = None,
        metadata: MetadataSink | None = None,
        interruption_source: InterruptionSource | None = None,
        install_signal_handlers: bool = True,
    ) -> None:
        self.job = job
        self._registry = registry
        self._transfer = transfer
        self._engine = engine
        self._classifier = engine.classifier
        self._crypto = crypto
        self._metadata = metadata
        self._interruption_source = interruption_source
        self._install_signal_handlers = install_signal_handlers

        self.shutdown = ShutdownSequence(
            job,
            registry=registry,
            transfer=transfer,
            engine=engine,
            crypto=crypto,
            metadata=metadata,
        )
        self._state = JobState.INIT
        self._cancel = asyncio.Event()
        self._main: asyncio.Task[int] | None = None
        self._requested_code: int | None = None
        self._reached_process = False
        self._fanout: FanOutProcess | None = None
        self._sampler: ResourceSampler | None = None
        self._surfaced: tuple[ErrorCategory, int, str] | None = None
        self._context = JobContext(job_id=job.job_id, component="orchestrator")

    @classmethod
    def create(
        cls,
        job: Job,
        *,
        with_metadata: bool | None = None,
        **overrides: Any,
    ) -> Orchestrator:
        """Build an orchestrator with the default collaborators for ``job``.

        Any keyword accepted by ``__init__`` overrides the default.
        """
        config = job.config
        registry = overrides.pop("registry", None) or WorkerRegistry(job.paths.registry)
        runner = CommandRunner(registry)
        engine = overrides.pop("engine", None) or RetryEngine(
            config.retry_policy,
            ErrorClassifier(),
            job_id=job.job_id,
            recorder=CsvRetryMetrics(job.paths.reports / "retry_metrics.csv"),
        )
        transfer = overrides.pop("transfer", None) or create_transfer(config.transfer, runner)
        if "crypto" not in overrides:
            overrides["crypto"] = GpgCrypto(
                runner,
                config.crypto,
                max_workers=config.fanout.max_workers,
                log_dir=job.paths.logs / "gpg",
            )
        if "metadata" not in overrides:
            enabled = config.write_metadata if with_metadata is None else with_metadata
            overrides["metadata"] = FileMetadataSink(job) if enabled else None
        if "interruption_source" not in overrides and config.interruption.enabled:
            overrides["interruption_source"] = SpotInterruptionSource(
                config.interruption,
                save_path=job.paths.log_file(f"{job.identity.pid}.metadata"),
            )
        return cls(job, registry=registry, transfer=transfer, engine=engine, **overrides)

    @property
    def state(self) -> JobState:
        return self._state

    @property
    def cancel_event(self) -> asyncio.Event:
        return self._cancel

    # ─── Entry point ───────────────────────────────────────────────────

    async def run(self) -> ShutdownOutcome:
        """Run the job to completion and return its outcome."""
        loop = asyncio.get_running_loop()
        with with_context(self._context):
            if self._install_signal_handlers:
                for sig in (signal.SIGTERM, signal.SIGINT):
                    loop.add_signal_handler(sig, self._on_signal, sig)
            try:
                code = await self._run_states()
                self._enter(JobState.SHUTDOWN)
                deliver = self._reached_process or code == StatusCode.SHUTDOWN_SIGNAL
                return await self.shutdown.run(code, deliver_outputs=deliver)
            finally:
                if self._install_signal_handlers:
                    for sig in (signal.SIGTERM, signal.SIGINT):
                        loop.remove_signal_handler(sig)
                await self._close_source()

    async def _run_states(self) -> int:
        if self._requested_code is not None:
            return self._requested_code
        self._main = asyncio.create_task(self._execute(), name="marathon-job")
        try:
            return await self._main
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if self._requested_code is None or (current is not None and current.cancelling()):
                raise
            return self._requested_code
        except Exception:
            _logger.exception("orchestrator.unexpected_error", state=self._state.value)
            return int(StatusCode.GENERIC)

    def request_shutdown(self, code: int = StatusCode.SHUTDOWN_SIGNAL, reason: str = "") -> bool:
        """Abandon the current state and go to Shutdown with ``code``.

        Returns:
            True if this call started the shutdown, False if one was
            already underway.
        """
        if self._requested_code is not None or self._state is JobState.SHUTDOWN:
            _logger.info(
                "orchestrator.shutdown_already_requested",
                reason=reason,
                state=self._state.value,
            )
            return False
        self._requested_code = int(code)
        if code == StatusCode.SHUTDOWN_SIGNAL:
            self._classifier.mark_interrupted(source=reason or "shutdown request")
        _logger.warning(
            "orchestrator.shutdown_requested",
            code=int(code),
            reason=reason,
            state=self._state.value,
        )
        self._cancel.set()
        if self._main is not None and not self._main.done():
            self._main.cancel()
        return True

    def _on_signal(self, sig: signal.Signals) -> None:
        self.request_shutdown(StatusCode.SHUTDOWN_SIGNAL, f"received {sig.name}")

    def _enter(self, state: JobState) -> None:
        self._state = state
        self._context = self._context.with_state(state.value)
        set_context(self._context)
        _logger.info("orchestrator.state_entered", state=state.value)

    async def _execute(self) -> int:
        try:
            self._enter(JobState.INIT)
            await self._init()
        except JobAbort as abort:
            return abort.status

        try:
            self._enter(JobState.FETCH)
            await self._fetch()
            self._enter(JobState.PROCESS)
            fanout = await self._process()
            self._enter(JobState.MONITOR)
            code = await self._monitor(fanout)
        except JobAbort as abort:
            code = abort.status

        self._enter(JobState.FINALIZE)
        await self._finalize(code)
        return code

    # ─── States ────────────────────────────────────────────────────────

    async def _init(self) -> None:
        config = self.job.config
        paths = self.job.paths
        if not config.input or not config.output:
            report(StatusCode.CONFIG_ERROR, "input and output locations are required", fatal=True)

        for directory in (paths.work, paths.logs, paths.status, paths.ramdisk):
            try:
                directory.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                report(StatusCode.FILING_ERROR, f"create {directory}: {exc}", fatal=True)

        insize = await self._transfer.size(config.input, config.inglob + "*")
        if insize is None:
            report(StatusCode.NETWORK_ERROR, "measure remote inputs", fatal=True)
            return
        worksize = int(insize * config.workfactor) + 1
        _logger.info("orchestrator.workspace_sizing", input_bytes=insize, needed_bytes=worksize)
        if config.check_disk_space:
            free = SystemProbe.get_free_bytes(paths.work)
            if free is not None and free < worksize:
                report(
                    StatusCode.FILING_ERROR,
                    f"workspace needs {worksize} bytes, {free} free",
                    fatal=True,
                )

    async def _fetch(self) -> None:
        config = self.job.config
        work = self.job.paths.work
        log_file = self.job.paths.log_file("rclone.input.log")
        for pattern, what in (
            (config.inglob + GPG_SUFFIX, "download encrypted input data"),
            (config.inglob, "download input data"),
        ):
            outcome = await self._engine.retry_transfer(
                lambda p=pattern: self._transfer.sync(config.input, str(work), p, log_file=log_file),
                what=what,
            )
            report(outcome.status, what, classifier=self._classifier, fatal=True)

        encrypted = sorted(p for p in work.glob(config.inglob + GPG_SUFFIX) if p.is_file())
        if not encrypted:
            return
        if self._crypto is None:
            report(StatusCode.CONFIG_ERROR, "encrypted inputs but no crypto operation", fatal=True)
            return
        status = await self._crypto.decrypt(encrypted)
        report(status, "decrypt inputs", classifier=self._classifier, fatal=True)

    def _input_files(self) -> list[Path]:
        inglob = self.job.config.inglob
        skip_encrypted = not inglob.endswith(GPG_SUFFIX)
        return sorted(
            p for p in self.job.paths.work.glob(inglob)
            if p.is_file() and not (skip_encrypted and p.name.endswith(GPG_SUFFIX))
        )

    async def _process(self) -> FanOutProcess:
        config = self.job.config
        paths = self.job.paths
        if not config.fanout.command.strip():
            report(StatusCode.CONFIG_ERROR, "no fan-out command configured", fatal=True)

        inputs = self._input_files()
        try:
            fanout = await FanOutProcess.start(
                template=config.fanout.command,
                inputs=inputs,
                max_workers=config.fanout.max_workers,
                inputs_file=paths.ramdisk / "inputs",
                joblog=paths.joblog,
                registry=paths.registry,
                results_dir=paths.logs / "parallel",
                cwd=paths.work,
                driver_log=paths.log_file("parallel.driver.log"),
                nice=config.fanout.nice,
            )
        except OSError as exc:
            report(StatusCode.GENERIC, f"start fan-out driver: {exc}", fatal=True)
            raise
        self._fanout = fanout
        self._reached_process = True
        self.shutdown.attach_fanout(fanout)
        return fanout

    async def _monitor(self, fanout: FanOutProcess) -> int:
        config = self.job.config
        paths = self.job.paths
        cancel = self._cancel
        self._sampler = ResourceSampler(
            paths.log_file(f"{self.job.identity.pid}.load"),
            paths.log_file(f"{self.job.identity.pid}.free"),
            config.resource_poll_interval,
            label=self.job.identity.name,
        )

        loops = [
            asyncio.create_task(self._sampler.run(cancel), name="monitor-sampler"),
            asyncio.create_task(self._sync_loop(fanout, cancel), name="monitor-sync"),
        ]
        source = self._interruption_source
        if source is not None:
            loops.append(
                asyncio.create_task(
                    self._interruption_loop(source, fanout, cancel), name="monitor-interruption",
                )
            )
        for task in loops:
            task.add_done_callback(
                lambda t: log_task_exception(t, _logger, "monitor.loop_failed", level="warning")
            )
        driver = asyncio.create_task(fanout.wait(), name="monitor-driver")
        stop = asyncio.create_task(cancel.wait(), name="monitor-cancel")

        try:
            await asyncio.wait({driver, stop}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancel.set()
            for task in (*loops, stop):
                task.cancel()
            await asyncio.gather(*loops, return_exceptions=True)
            if not driver.done():
                driver.cancel()

        if self._surfaced is not None:
            category, code, reason = self._surfaced
            _logger.warning(
                "monitor.ended_by_loop",
                category=category.value,
                code=code,
                reason=reason,
            )
            return code
        code = driver.result()
        if code != StatusCode.SUCCESS and self._classifier.interrupted:
            return int(StatusCode.SHUTDOWN_SIGNAL)
        _logger.info("monitor.driver_finished", code=code)
        return code

    def _surface(self, category: ErrorCategory, code: int, reason: str) -> None:
        """Record a loop's verdict and end Monitor; the strongest verdict wins."""
        current = self._surfaced
        if current is None or _SURFACE_PRIORITY[category] < _SURFACE_PRIORITY[current[0]]:
            self._surfaced = (category, int(code), reason)
        self._cancel.set()

    async def _sync_loop(self, fanout: FanOutProcess, cancel: asyncio.Event) -> None:
        interval = self.job.config.sync_interval
        while fanout.is_alive():
            if await wait_or_cancel(cancel, interval):
                return
            status = await self.sync_outputs()
            if status == StatusCode.SUCCESS:
                continue
            category = self._classifier.classify(status)
            if category is ErrorCategory.RETRYABLE:
                # Retries already exhausted; the next cycle tries again.
                report(status, "periodic output sync", classifier=self._classifier)
                continue
            self._surface(category, status, "periodic output sync")
            return

    async def sync_outputs(self) -> int:
        """Encrypt (when enabled) and upload current results, each retried."""
        config = self.job.config
        work = self.job.paths.work
        if config.encrypt and self._crypto is not None:
            crypto = self._crypto
            results = result_files(work, config.outglob)
            if results:
                outcome = await self._engine.retry(
                    lambda: crypto.encrypt(results), what="encrypt results",
                )
                if not outcome.succeeded:
                    return outcome.status
        pattern = config.outglob + GPG_SUFFIX if config.encrypt else config.outglob
        outcome = await self._engine.retry_transfer(
            lambda: self._transfer.copy(
                str(work), config.output, pattern,
                log_file=self.job.paths.log_file("rclone.output.log"),
            ),
            what="save results",
        )
        return outcome.status

    async def _interruption_loop(
        self, source: InterruptionSource, fanout: FanOutProcess, cancel: asyncio.Event,
    ) -> None:
        monitor = InterruptionMonitor(
            source,
            self._classifier,
            on_detected=lambda reason: self._surface(
                ErrorCategory.SHUTDOWN_SIGNAL, StatusCode.SHUTDOWN_SIGNAL, reason,
            ),
            check_timeout=self.job.config.interruption.request_timeout * 3,
        )
        await monitor.poll_while(fanout.pid, self.job.config.interruption.poll_interval, cancel)

    async def _finalize(self, code: int) -> None:
        if self._metadata is None:
            return
        summary: ResourceSummary | None = self._sampler.summary() if self._sampler else None
        try:
            await asyncio.to_thread(self._metadata.write_manifest, code, summary)
        except Exception as exc:
            _logger.warning("finalize.manifest_failed", error=str(exc))

    async def _close_source(self) -> None:
        aclose = getattr(self._interruption_source, "aclose", None)
        if aclose is not None:
            try:
                await aclose()
            except Exception as exc:
                _logger.debug("orchestrator.source_close_failed", error=str(exc))


__all__ = ["JobState", "Orchestrator"]
