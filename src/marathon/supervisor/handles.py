"""Portable process handles.

A ``ProcessHandle`` wraps a pid with the three operations supervision
needs: a liveness probe, graceful or forced termination, and a bounded
wait. The psutil process object is captured on first use, so a pid that is
later reused by an unrelated process reads as dead rather than as alive.
"""

from __future__ import annotations

import time
from enum import Enum

import psutil

from marathon.core.logging import get_logger

_logger = get_logger("supervisor.handles")

# Interval between liveness probes while waiting for an exit
DEFAULT_POLL_INTERVAL = 0.1


class TerminationMode(str, Enum):
    GRACEFUL = "graceful"  # SIGTERM
    FORCED = "forced"  # SIGKILL


class ProcessHandle:
    """Handle on a process that may or may not still exist."""

    def __init__(self, pid: int) -> None:
        self.pid = pid
        self._proc: psutil.Process | None = None
        self._gone = False

    def __repr__(self) -> str:
        return f"ProcessHandle(pid={self.pid})"

    def _process(self) -> psutil.Process | None:
        if self._gone:
            return None
        if self._proc is None:
            try:
                self._proc = psutil.Process(self.pid)
            except (psutil.NoSuchProcess, ValueError):
                self._gone = True
                return None
        return self._proc

    def is_alive(self) -> bool:
        """Whether the process exists and has not exited.

        Zombies count as dead: they can no longer do work and are reaped by
        their own parent.
        """
        proc = self._process()
        if proc is None:
            return False
        try:
            if not proc.is_running():
                self._gone = True
                return False
            if proc.status() == psutil.STATUS_ZOMBIE:
                return False
        except psutil.NoSuchProcess:
            self._gone = True
            return False
        except psutil.AccessDenied:
            # Exists but belongs to someone else
            return True
        return True

    def terminate(self, mode: TerminationMode = TerminationMode.GRACEFUL) -> bool:
        """Send SIGTERM (graceful) or SIGKILL (forced).

        Returns:
            True if the signal was delivered.
        """
        proc = self._process()
        if proc is None:
            return False
        try:
            if mode is TerminationMode.GRACEFUL:
                proc.terminate()
            else:
                proc.kill()
        except psutil.NoSuchProcess:
            self._gone = True
            return False
        except psutil.AccessDenied:
            _logger.warning("handle.signal_denied", pid=self.pid, mode=mode.value)
            return False
        return True

    def wait(self, timeout: float, poll_interval: float = DEFAULT_POLL_INTERVAL) -> bool:
        """Block until the process is dead or ``timeout`` elapses.

        Returns:
            True if the process is dead.
        """
        deadline = time.monotonic() + timeout
        while True:
            if not self.is_alive():
                return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            time.sleep(min(poll_interval, remaining))


__all__ = ["DEFAULT_POLL_INTERVAL", "ProcessHandle", "TerminationMode"]
