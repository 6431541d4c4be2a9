"""Consolidated system probes.

A single ``SystemProbe`` class wraps the psutil calls Marathon makes for
diagnostics and health: process memory, child counts, load average,
memory availability, disk usage and a status snapshot of one process.
Each probe falls back to ``/proc`` on Linux when psutil cannot answer,
and returns ``None`` when every probe fails.
"""

from __future__ import annotations

import os
import shutil
from pathlib import Path
from typing import Any

import psutil

from marathon.core.logging import get_logger

_logger = get_logger("supervisor.system_probe")


class SystemProbe:
    """Static system resource probes."""

    @staticmethod
    def get_memory_mb(pid: int | None = None) -> float | None:
        """RSS of a process (default: this one) in MB."""
        try:
            proc = psutil.Process(pid)
            return proc.memory_info().rss / (1024 * 1024)
        except (psutil.Error, OSError):
            _logger.debug("psutil_memory_probe_failed", exc_info=True)
        try:
            with open(f"/proc/{pid or 'self'}/status") as f:
                for line in f:
                    if line.startswith("VmRSS:"):
                        return int(line.split()[1]) / 1024  # kB -> MB
        except (OSError, ValueError):
            pass
        return None

    @staticmethod
    def get_tree_memory_mb() -> float | None:
        """RSS of this process plus all of its descendants, in MB."""
        try:
            current = psutil.Process()
            total = current.memory_info().rss
            for child in current.children(recursive=True):
                try:
                    total += child.memory_info().rss
                except (psutil.NoSuchProcess, psutil.AccessDenied):
                    continue
            return total / (1024 * 1024)
        except psutil.Error:
            _logger.debug("tree_memory_probe_failed", exc_info=True)
            return SystemProbe.get_memory_mb()

    @staticmethod
    def get_child_count() -> int | None:
        """Count descendant processes of the current process."""
        try:
            return len(psutil.Process().children(recursive=True))
        except psutil.Error:
            _logger.debug("psutil_child_count_probe_failed", exc_info=True)
        return SystemProbe._proc_child_count()

    @staticmethod
    def get_load_average() -> tuple[float, float, float] | None:
        try:
            return psutil.getloadavg()
        except (OSError, AttributeError):
            _logger.debug("load_probe_failed", exc_info=True)
            return None

    @staticmethod
    def get_memory_stats() -> dict[str, float] | None:
        """System memory in MB plus the percentage still available."""
        try:
            vm = psutil.virtual_memory()
        except (psutil.Error, OSError):
            _logger.debug("virtual_memory_probe_failed", exc_info=True)
            return None
        mb = 1024 * 1024
        return {
            "total_mb": vm.total / mb,
            "used_mb": vm.used / mb,
            "available_mb": vm.available / mb,
            "available_percent": 100.0 * vm.available / vm.total if vm.total else 0.0,
        }

    @staticmethod
    def get_disk_usage_percent(path: Path) -> float | None:
        """Percentage of the filesystem holding ``path`` that is in use."""
        try:
            usage = shutil.disk_usage(path)
        except OSError:
            return None
        return 100.0 * usage.used / usage.total if usage.total else None

    @staticmethod
    def get_free_bytes(path: Path) -> int | None:
        try:
            return shutil.disk_usage(path).free
        except OSError:
            return None

    @staticmethod
    def process_snapshot(pid: int | None = None) -> dict[str, Any]:
        """Diagnostic snapshot of one process (default: this one)."""
        pid = os.getpid() if pid is None else pid
        snapshot: dict[str, Any] = {"pid": pid}
        try:
            proc = psutil.Process(pid)
            with proc.oneshot():
                mem = proc.memory_info()
                cpu = proc.cpu_times()
                snapshot.update({
                    "name": proc.name(),
                    "status": proc.status(),
                    "ppid": proc.ppid(),
                    "create_time": proc.create_time(),
                    "num_threads": proc.num_threads(),
                    "rss_mb": mem.rss / (1024 * 1024),
                    "vms_mb": mem.vms / (1024 * 1024),
                    "cpu_user": cpu.user,
                    "cpu_system": cpu.system,
                })
            snapshot["children"] = [c.pid for c in proc.children(recursive=True)]
            if hasattr(proc, "num_fds"):
                snapshot["num_fds"] = proc.num_fds()
        except psutil.Error as exc:
            snapshot["error"] = str(exc)
        try:
            snapshot["proc_status"] = Path(f"/proc/{pid}/status").read_text()
        except OSError:
            pass
        return snapshot

    # ─── /proc fallback helpers ───────────────────────────────────

    @staticmethod
    def _proc_child_count() -> int | None:
        """Count direct children by scanning /proc/*/status for PPid."""
        my_pid = os.getpid()
        count = 0
        try:
            entries = os.listdir("/proc")
        except OSError:
            return None
        for entry in entries:
            if not entry.isdigit():
                continue
            try:
                with open(f"/proc/{entry}/status") as f:
                    for line in f:
                        if line.startswith("PPid:"):
                            if int(line.split()[1]) == my_pid:
                                count += 1
                            break
            except (OSError, ValueError, IndexError):
                continue
        return count


__all__ = ["SystemProbe"]
