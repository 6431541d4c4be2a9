"""Exception hierarchy for Marathon.

Status codes are the currency between components; exceptions exist only to
unwind the orchestrator to its shutdown path or to reject configuration
before a job starts. All inherit from MarathonError so callers can catch
broadly or narrowly.
"""

from __future__ import annotations

from marathon.core.errors.codes import StatusCode


class MarathonError(Exception):
    """Base exception for all Marathon errors."""


class ConfigurationError(MarathonError):
    """Raised when job configuration is missing, malformed or inconsistent.

    Examples: unreadable YAML file, unknown cleanup mode, empty job name.
    """


class JobAbort(MarathonError):
    """Raised to abandon the current orchestrator state with a status code.

    The orchestrator catches this at the top of its state machine and
    proceeds straight to shutdown with ``status``.
    """

    def __init__(self, status: int, what: str = "") -> None:
        self.status = int(status)
        self.what = what
        super().__init__(f"{what or 'job aborted'} (status {self.status})")


class ShutdownRequested(JobAbort):
    """Raised when an operator signal or interruption notice ends the job."""

    def __init__(self, reason: str = "shutdown requested") -> None:
        super().__init__(StatusCode.SHUTDOWN_SIGNAL, reason)
        self.reason = reason


__all__ = [
    "ConfigurationError",
    "JobAbort",
    "MarathonError",
    "ShutdownRequested",
]
