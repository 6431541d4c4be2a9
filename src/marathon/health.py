"""Worker health checks.

``HealthChecker.check`` runs a fixed set of checks against the worker and
returns a ``HealthReport``:

- **critical** (exit 2): a required tool (rclone, gpg) is missing
- **unhealthy** (exit 1): directories missing, disk over 90% used, or
  less than 10% memory available
- **healthy** (exit 0): otherwise

High load and a burst of errors today are reported in ``messages`` but do
not change the status on their own.

``create_app`` wraps a checker in a small FastAPI app so monitoring tools
can poll ``GET /health`` over HTTP.
"""

from __future__ import annotations

import os
import shutil
import socket
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from fastapi import FastAPI

from marathon.core.logging import get_logger
from marathon.metadata import count_errors_today
from marathon.supervisor.system_probe import SystemProbe
from marathon.utils.time import utc_now

_logger = get_logger("health")

DISK_USAGE_LIMIT_PERCENT = 90.0
MIN_MEMORY_AVAILABLE_PERCENT = 10.0
LOAD_PER_CPU_LIMIT = 2
MAX_ERRORS_PER_DAY = 5
REQUIRED_TOOLS = ("rclone", "gpg")


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    CRITICAL = "critical"

    @property
    def exit_code(self) -> int:
        return {"healthy": 0, "unhealthy": 1, "critical": 2}[self.value]


_SEVERITY = {HealthStatus.HEALTHY: 0, HealthStatus.UNHEALTHY: 1, HealthStatus.CRITICAL: 2}


@dataclass
class HealthReport:
    status: HealthStatus = HealthStatus.HEALTHY
    checks_passed: int = 0
    checks_total: int = 0
    messages: list[str] = field(default_factory=list)
    running_jobs: int = 0

    def record(self, passed: bool, message: str, escalate: HealthStatus | None = None) -> None:
        self.checks_total += 1
        if passed:
            self.checks_passed += 1
            return
        self.messages.append(message)
        if escalate is not None and _SEVERITY[escalate] > _SEVERITY[self.status]:
            self.status = escalate

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "timestamp": utc_now().strftime("%Y-%m-%dT%H:%M:%SZ"),
            "hostname": socket.gethostname(),
            "checks_passed": self.checks_passed,
            "checks_total": self.checks_total,
            "running_jobs": self.running_jobs,
            "messages": list(self.messages),
        }


def count_running_jobs(ramdisk_root: Path) -> int:
    """Jobs on this host that still hold a worker registry on the ramdisk."""
    try:
        return sum(1 for entry in ramdisk_root.iterdir() if (entry / "workers").is_file())
    except OSError:
        return 0


class HealthChecker:
    """Runs the worker health checks.

    Args:
        workspace: Work directory root.
        logspace: Log directory root.
        reports: Reports directory holding ``error_index.txt``.
        ramdisk_root: Where running jobs keep their registries.
        tools: Executables that must be on ``PATH``.
        which: Lookup used for ``tools``; injectable for tests.
    """

    def __init__(
        self,
        workspace: Path,
        logspace: Path,
        reports: Path,
        *,
        ramdisk_root: Path = Path("/dev/shm"),
        tools: Sequence[str] = REQUIRED_TOOLS,
        which: Callable[[str], str | None] = shutil.which,
    ) -> None:
        self._workspace = workspace
        self._logspace = logspace
        self._reports = reports
        self._ramdisk_root = ramdisk_root
        self._tools = tuple(tools)
        self._which = which

    def check(self) -> HealthReport:
        report = HealthReport()

        report.record(
            self._workspace.is_dir() and self._logspace.is_dir(),
            "Critical directories missing",
            HealthStatus.UNHEALTHY,
        )

        disk = SystemProbe.get_disk_usage_percent(
            self._workspace if self._workspace.exists() else Path.cwd()
        )
        report.record(
            disk is None or disk < DISK_USAGE_LIMIT_PERCENT,
            f"Low disk space: {disk:.0f}% used" if disk is not None else "",
            HealthStatus.UNHEALTHY,
        )

        for tool in self._tools:
            report.record(self._which(tool) is not None, f"{tool} not found", HealthStatus.CRITICAL)

        load = SystemProbe.get_load_average()
        threshold = (os.cpu_count() or 1) * LOAD_PER_CPU_LIMIT
        report.record(
            load is None or load[0] < threshold,
            f"High system load: {load[0]:.2f}" if load is not None else "",
        )

        memory = SystemProbe.get_memory_stats()
        available = memory["available_percent"] if memory else None
        report.record(
            available is None or available > MIN_MEMORY_AVAILABLE_PERCENT,
            f"Low memory: {available:.0f}% available" if available is not None else "",
            HealthStatus.UNHEALTHY,
        )

        errors = count_errors_today(self._reports / "error_index.txt")
        report.record(errors < MAX_ERRORS_PER_DAY, f"{errors} errors today")

        report.running_jobs = count_running_jobs(self._ramdisk_root)
        _logger.debug(
            "health.checked",
            status=report.status.value,
            passed=report.checks_passed,
            total=report.checks_total,
        )
        return report


def create_app(checker: HealthChecker, *, version: str = "0.0.0") -> FastAPI:
    """Create the health check HTTP application.

    Every request runs the checks afresh. The response is always 200;
    the verdict is in the body's ``status`` field.
    """
    app = FastAPI(title="Marathon Health", version=version)

    @app.get("/health", tags=["System"])
    def health_check() -> dict[str, Any]:
        return checker.check().to_dict()

    return app


__all__ = [
    "HealthChecker",
    "HealthReport",
    "HealthStatus",
    "count_running_jobs",
    "create_app",
]
