"""Worker registry: a crash-tolerant, append-only record of worker pids.

Every worker process appends one line for itself when it starts::

    <pid> <registered-at> <label>

Only the leading token is the identifier; the rest is free text. Workers
never deregister, so the file accumulates stale pids. Membership means
"was alive at some point" and every consumer re-probes liveness before
acting.

Concurrency discipline: many writers, one reader. Each registration is a
single ``write()`` on a descriptor opened with ``O_APPEND``, so lines from
concurrent writers never interleave and no lock is needed. Reading and
pruning belong to the orchestrator alone.
"""

from __future__ import annotations

import os
import time
from collections.abc import Iterator
from dataclasses import dataclass, field
from pathlib import Path

from marathon.core.logging import get_logger
from marathon.supervisor.handles import DEFAULT_POLL_INTERVAL, ProcessHandle, TerminationMode
from marathon.utils.time import utc_now

_logger = get_logger("supervisor.registry")

# Appends up to PIPE_BUF bytes are atomic; keep every line below it.
MAX_LINE_BYTES = 4096


@dataclass(frozen=True)
class WorkerHandle:
    """One registry entry."""

    pid: int
    label: str = ""
    registered_at: str | None = None

    def handle(self) -> ProcessHandle:
        return ProcessHandle(self.pid)


@dataclass
class TerminationReport:
    """What ``terminate_all`` found and did."""

    examined: int = 0
    already_dead: list[int] = field(default_factory=list)
    terminated: list[int] = field(default_factory=list)
    killed: list[int] = field(default_factory=list)
    survivors: list[int] = field(default_factory=list)

    @property
    def signalled(self) -> int:
        return len(self.terminated) + len(self.killed)


def format_entry(pid: int, label: str | None = None, registered_at: str | None = None) -> bytes:
    """Render one registry line."""
    stamp = registered_at or utc_now().isoformat()
    text = f"{pid} {stamp}"
    if label:
        text += " " + " ".join(label.split())
    data = (text + "\n").encode("utf-8", errors="replace")
    if len(data) > MAX_LINE_BYTES:
        data = data[: MAX_LINE_BYTES - 1] + b"\n"
    return data


def parse_entry(line: str) -> WorkerHandle | None:
    """Parse one registry line, or return None if it has no pid."""
    parts = line.strip().split(maxsplit=2)
    if not parts:
        return None
    try:
        pid = int(parts[0])
    except ValueError:
        return None
    if pid <= 0:
        return None
    return WorkerHandle(
        pid=pid,
        registered_at=parts[1] if len(parts) > 1 else None,
        label=parts[2] if len(parts) > 2 else "",
    )


class WorkerRegistry:
    """File-backed registry of worker processes."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def register(self, pid: int | None = None, label: str | None = None) -> WorkerHandle:
        """Append an entry for ``pid`` (default: the calling process).

        Creates the registry file, but not its directory, if needed.
        """
        pid = os.getpid() if pid is None else pid
        data = format_entry(pid, label)
        fd = os.open(self.path, os.O_WRONLY | os.O_APPEND | os.O_CREAT, 0o644)
        try:
            os.write(fd, data)
        finally:
            os.close(fd)
        entry = parse_entry(data.decode("utf-8", errors="replace"))
        return entry if entry is not None else WorkerHandle(pid=pid)

    def entries(self) -> list[WorkerHandle]:
        """All parseable entries, in registration order, duplicates included."""
        try:
            text = self.path.read_text(encoding="utf-8", errors="replace")
        except FileNotFoundError:
            return []
        result: list[WorkerHandle] = []
        for line in text.splitlines():
            entry = parse_entry(line)
            if entry is None:
                if line.strip():
                    _logger.debug("registry.unparseable_line", line=line[:80])
                continue
            result.append(entry)
        return result

    def list(self) -> list[int]:
        """Registered pids, de-duplicated, in first-registration order."""
        return list(dict.fromkeys(entry.pid for entry in self.entries()))

    def __iter__(self) -> Iterator[WorkerHandle]:
        return iter(self.entries())

    def terminate_all(
        self,
        grace_period: float,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ) -> TerminationReport:
        """Stop every live registered worker, escalating to SIGKILL.

        Live workers receive SIGTERM together, then get up to
        ``grace_period`` seconds to exit while being re-probed every
        ``poll_interval``; any still alive afterwards receive SIGKILL. Dead
        entries and the calling process itself are skipped. An empty or
        missing registry is a no-op.
        """
        report = TerminationReport()
        my_pid = os.getpid()
        pending: dict[int, ProcessHandle] = {}

        for pid in self.list():
            report.examined += 1
            if pid == my_pid:
                continue
            handle = ProcessHandle(pid)
            if not handle.is_alive():
                report.already_dead.append(pid)
                continue
            _logger.info("registry.worker_still_running", pid=pid)
            if handle.terminate(TerminationMode.GRACEFUL):
                pending[pid] = handle
            elif handle.is_alive():
                report.survivors.append(pid)
            else:
                report.already_dead.append(pid)

        if pending:
            self._await_exit(pending, grace_period, poll_interval, report)

        _logger.info(
            "registry.terminate_all_complete",
            examined=report.examined,
            already_dead=len(report.already_dead),
            terminated=len(report.terminated),
            killed=len(report.killed),
            survivors=report.survivors,
        )
        return report

    @staticmethod
    def _await_exit(
        pending: dict[int, ProcessHandle],
        grace_period: float,
        poll_interval: float,
        report: TerminationReport,
    ) -> None:
        deadline = time.monotonic() + grace_period
        while pending:
            for pid in [p for p, h in pending.items() if not h.is_alive()]:
                report.terminated.append(pid)
                del pending[pid]
            remaining = deadline - time.monotonic()
            if not pending or remaining <= 0:
                break
            time.sleep(min(poll_interval, remaining))

        for pid, handle in pending.items():
            _logger.warning("registry.force_killing", pid=pid, grace_period=grace_period)
            if handle.terminate(TerminationMode.FORCED) and handle.wait(1.0, poll_interval):
                report.killed.append(pid)
            elif handle.is_alive():
                report.survivors.append(pid)
            else:
                report.terminated.append(pid)

    def remove(self) -> None:
        """Delete the registry file. Missing file is not an error."""
        self.path.unlink(missing_ok=True)


__all__ = [
    "MAX_LINE_BYTES",
    "TerminationReport",
    "WorkerHandle",
    "WorkerRegistry",
    "format_entry",
    "parse_entry",
]
