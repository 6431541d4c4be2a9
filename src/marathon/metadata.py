"""Job metadata: manifest, job/error indexes and metrics files.

All of this is diagnostics. The orchestrator takes an optional
``MetadataSink``; without one these steps are skipped, and a sink that
fails only logs, never changing the job's outcome.

Files written by ``FileMetadataSink``::

    <logs>/manifest.json
    <reports>/job_index.txt              TIMESTAMP|JOB_ID|JOB_NAME|STATUS|HOSTNAME|PID
    <reports>/error_index.txt            TIMESTAMP|JOB_ID|EXIT_CODE|ERROR_MESSAGE|LOG_PATH
    <reports>/failures/YYYY/MM/DD/<job>-<stamp>/   copy of the failed job's logs
    <reports>/performance/metrics_YYYYMM.csv
    <reports>/retry_metrics.csv
    <reports>/daily/YYYY/MM/DD/summary.txt     job counts for the day
"""

from __future__ import annotations

import csv
import hashlib
import json
import shutil
from pathlib import Path
from typing import Any, Protocol

from marathon.core.job import Job
from marathon.core.logging import get_logger
from marathon.execution.retry import RetryMetricRecord
from marathon.operations.crypto import GPG_SUFFIX
from marathon.supervisor.sampler import ResourceSummary
from marathon.utils.time import utc_now

_logger = get_logger("metadata")

JOB_INDEX_HEADER = "TIMESTAMP|JOB_ID|JOB_NAME|STATUS|HOSTNAME|PID"
ERROR_INDEX_HEADER = "TIMESTAMP|JOB_ID|EXIT_CODE|ERROR_MESSAGE|LOG_PATH"
PERFORMANCE_HEADER = [
    "timestamp", "job_id", "job_name", "duration_sec", "max_memory_mb",
    "avg_load", "input_size_bytes", "output_size_bytes",
]
RETRY_METRICS_HEADER = ["timestamp", "job_id", "attempts", "success", "total_delay_seconds"]

_HASH_CHUNK = 1024 * 1024


class MetadataSink(Protocol):
    """Destination for a job's run metadata."""

    def write_manifest(self, exit_code: int, resources: ResourceSummary | None) -> Path: ...

    def record_job(self, exit_code: int) -> None: ...

    def record_error(self, exit_code: int, message: str) -> None: ...

    def write_daily_summary(self) -> Path: ...


def file_digest(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(_HASH_CHUNK), b""):
            digest.update(chunk)
    return digest.hexdigest()


def describe_files(directory: Path, pattern: str, *, encrypted: bool = False) -> list[dict[str, Any]]:
    """Name, sha256 and size of each file in ``directory`` matching ``pattern``."""
    if not directory.is_dir():
        return []
    entries = []
    for path in sorted(directory.glob(pattern)):
        if not path.is_file():
            continue
        entry: dict[str, Any] = {
            "name": path.name,
            "sha256": file_digest(path),
            "size": path.stat().st_size,
        }
        if encrypted:
            entry["encrypted"] = True
        entries.append(entry)
    return entries


def _append_line(path: Path, header: str, line: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    new = not path.exists()
    with open(path, "a") as f:
        if new:
            f.write(header + "\n")
        f.write(line + "\n")


def _append_csv(path: Path, header: list[str], row: list[Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    new = not path.exists()
    with open(path, "a", newline="") as f:
        writer = csv.writer(f)
        if new:
            writer.writerow(header)
        writer.writerow(row)


class FileMetadataSink:
    """Writes metadata files under the job's log and reports directories."""

    def __init__(self, job: Job) -> None:
        self._job = job

    @property
    def job_index(self) -> Path:
        return self._job.paths.reports / "job_index.txt"

    @property
    def error_index(self) -> Path:
        return self._job.paths.reports / "error_index.txt"

    def build_manifest(self, exit_code: int, resources: ResourceSummary | None) -> dict[str, Any]:
        job = self._job
        config = job.config
        work = job.paths.work
        outputs = describe_files(work, config.outglob)
        if config.encrypt:
            outputs += describe_files(work, config.outglob + GPG_SUFFIX, encrypted=True)
        manifest: dict[str, Any] = {
            "job_id": job.job_id,
            "job_name": job.identity.name,
            "hostname": job.identity.host,
            "pid": job.identity.pid,
            "start_time": job.started_at.isoformat(),
            "end_time": utc_now().isoformat(),
            "exit_code": exit_code,
            "input_path": config.input,
            "output_path": config.output,
            "input_pattern": config.inglob,
            "output_pattern": config.outglob,
            "input_files": describe_files(work, config.inglob),
            "output_files": outputs,
            "resource_usage": {},
        }
        if resources is not None and resources.samples:
            manifest["resource_usage"] = {
                "max_memory_mb": resources.max_memory_mb,
                "avg_load_1min": resources.avg_load_1min,
            }
        return manifest

    def write_manifest(self, exit_code: int, resources: ResourceSummary | None) -> Path:
        manifest = self.build_manifest(exit_code, resources)
        path = self._job.paths.manifest
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(manifest, indent=2) + "\n")
        tmp.replace(path)
        _logger.info("metadata.manifest_written", path=str(path))
        self._record_performance(manifest, resources)
        return path

    def _record_performance(self, manifest: dict[str, Any], resources: ResourceSummary | None) -> None:
        now = utc_now()
        duration = (now - self._job.started_at).total_seconds()
        row = [
            now.isoformat(),
            self._job.job_id,
            self._job.identity.name,
            round(duration, 1),
            resources.max_memory_mb if resources else 0,
            resources.avg_load_1min if resources else 0,
            sum(f["size"] for f in manifest["input_files"]),
            sum(f["size"] for f in manifest["output_files"]),
        ]
        path = self._job.paths.reports / "performance" / f"metrics_{now:%Y%m}.csv"
        _append_csv(path, PERFORMANCE_HEADER, row)

    def record_job(self, exit_code: int) -> None:
        status = "completed" if exit_code == 0 else "failed"
        identity = self._job.identity
        line = "|".join([
            utc_now().isoformat(), self._job.job_id, identity.name, status,
            identity.host, str(identity.pid),
        ])
        _append_line(self.job_index, JOB_INDEX_HEADER, line)

    def record_error(self, exit_code: int, message: str) -> None:
        now = utc_now()
        failure_dir = (
            self._job.paths.reports / "failures" / f"{now:%Y}" / f"{now:%m}" / f"{now:%d}"
            / f"{self._job.identity.name}-{self._job.identity.stamp}"
        )
        logs = self._job.paths.logs
        if logs.is_dir():
            shutil.copytree(logs, failure_dir, dirs_exist_ok=True)
        clean_message = " ".join(message.replace("|", "/").split())
        line = "|".join([
            now.isoformat(), self._job.job_id, str(exit_code), clean_message, str(failure_dir),
        ])
        _append_line(self.error_index, ERROR_INDEX_HEADER, line)

    def write_daily_summary(self) -> Path:
        """Rewrite today's summary from the job and error indexes."""
        now = utc_now()
        day = now.date().isoformat()
        rows = [line.split("|") for line in _rows_for_day(self.job_index, day)]
        statuses = [parts[3] for parts in rows if len(parts) > 3]
        errors = len(_rows_for_day(self.error_index, day))
        title = f"Marathon Daily Summary - {day}"
        lines = [
            title,
            "=" * len(title),
            "",
            "Job Statistics:",
            f"  Total jobs: {len(statuses)}",
            f"  Completed: {statuses.count('completed')}",
            f"  Failed: {statuses.count('failed')}",
            f"  Errors recorded: {errors}",
        ]
        path = (
            self._job.paths.reports / "daily" / f"{now:%Y}" / f"{now:%m}" / f"{now:%d}"
            / "summary.txt"
        )
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("\n".join(lines) + "\n")
        _logger.debug("metadata.daily_summary_written", path=str(path), jobs=len(statuses))
        return path


class CsvRetryMetrics:
    """Appends one CSV row per completed retry sequence."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def record(self, row: RetryMetricRecord) -> None:
        _append_csv(
            self.path,
            RETRY_METRICS_HEADER,
            [row.timestamp, row.job_id, row.attempts, int(row.success), f"{row.total_delay:g}"],
        )


def _rows_for_day(index: Path, day: str) -> list[str]:
    if not index.exists():
        return []
    with open(index) as f:
        return [line.rstrip("\n") for line in f if line.startswith(day)]


def count_errors_today(error_index: Path) -> int:
    """Rows in the error index stamped with today's UTC date."""
    return len(_rows_for_day(error_index, utc_now().date().isoformat()))


__all__ = [
    "CsvRetryMetrics",
    "ERROR_INDEX_HEADER",
    "FileMetadataSink",
    "JOB_INDEX_HEADER",
    "MetadataSink",
    "PERFORMANCE_HEADER",
    "RETRY_METRICS_HEADER",
    "count_errors_today",
    "describe_files",
    "file_digest",
]
