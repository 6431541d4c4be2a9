"""Job identity, directory layout, and terminal exit code.

``JobIdentity`` and ``JobPaths`` are derived once from the configuration
when a job starts. ``Job`` ties them together with the one piece of
mutable job state: the exit code, which may be assigned exactly once.
"""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from marathon.core.config import CleanupMode, JobConfig
from marathon.core.logging import get_logger
from marathon.utils.time import stamp as make_stamp
from marathon.utils.time import utc_now

_logger = get_logger("job")


@dataclass(frozen=True)
class JobIdentity:
    """Name, start stamp, host and process id of one job execution."""

    name: str
    stamp: str
    host: str
    pid: int

    @classmethod
    def create(cls, name: str, started_at: datetime | None = None) -> JobIdentity:
        return cls(
            name=name,
            stamp=make_stamp(started_at),
            host=socket.gethostname(),
            pid=os.getpid(),
        )

    @property
    def job_id(self) -> str:
        return f"{self.stamp}-{self.host}.{self.name}.{self.pid}"

    def __str__(self) -> str:
        return self.job_id


@dataclass(frozen=True)
class JobPaths:
    """Every local path a job reads or writes."""

    work: Path
    logs: Path
    status: Path
    ramdisk: Path
    registry: Path
    reports: Path
    file_prefix: str

    @classmethod
    def from_config(cls, config: JobConfig, identity: JobIdentity) -> JobPaths:
        ramdisk = config.ramdisk_root / f"{identity.name}-{identity.pid}"
        logs = config.logspace / identity.name
        return cls(
            work=config.workspace / identity.name,
            logs=logs,
            status=logs / "status",
            ramdisk=ramdisk,
            registry=ramdisk / "workers",
            reports=config.reports_path,
            file_prefix=f"{identity.stamp}.{identity.name}",
        )

    def log_file(self, suffix: str) -> Path:
        """Per-job log file, e.g. ``log_file("rclone.input.log")``."""
        return self.logs / f"{self.file_prefix}.{suffix}"

    @property
    def marathon_log(self) -> Path:
        return self.logs / "marathon.log"

    @property
    def manifest(self) -> Path:
        return self.logs / "manifest.json"

    @property
    def joblog(self) -> Path:
        return self.log_file("parallel.log")

    def log_archive(self, pid: int) -> Path:
        # Lives on the ramdisk so it never counts as a workspace artifact.
        return self.ramdisk / f"{self.file_prefix}.{pid}.logs.tar.xz"

    def cleanup_status(self, pid: int, stamp: str) -> Path:
        return self.status / f"{pid}.{stamp}.cleanup.status"


@dataclass
class Job:
    """One execution instance of a configured job."""

    config: JobConfig
    identity: JobIdentity
    paths: JobPaths
    started_at: datetime = field(default_factory=utc_now)
    _exit_code: int | None = field(default=None, init=False, repr=False)

    @classmethod
    def create(cls, config: JobConfig, identity: JobIdentity | None = None) -> Job:
        identity = identity or JobIdentity.create(config.job_name)
        return cls(
            config=config,
            identity=identity,
            paths=JobPaths.from_config(config, identity),
        )

    @property
    def job_id(self) -> str:
        return self.identity.job_id

    @property
    def cleanup_mode(self) -> CleanupMode:
        return self.config.cleanup_mode

    @property
    def encrypt(self) -> bool:
        return self.config.encrypt

    @property
    def exit_code(self) -> int | None:
        return self._exit_code

    def set_exit_code(self, code: int) -> int:
        """Assign the exit code if unset and return the effective code.

        Later calls keep the first value; the attempted value is logged.
        """
        if self._exit_code is None:
            self._exit_code = int(code)
            _logger.info("job.exit_code_set", job_id=self.job_id, exit_code=self._exit_code)
        elif int(code) != self._exit_code:
            _logger.debug(
                "job.exit_code_already_set",
                job_id=self.job_id,
                exit_code=self._exit_code,
                ignored=int(code),
            )
        return self._exit_code


__all__ = ["Job", "JobIdentity", "JobPaths"]
