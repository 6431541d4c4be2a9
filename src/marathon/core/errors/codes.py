"""Status codes and error categories.

Every operation in Marathon reports an integer exit status. The codes named
here are the ones the core produces itself or treats specially; any other
value passes through unchanged and classifies as fatal.
"""

from __future__ import annotations

from enum import Enum, IntEnum


class StatusCode(IntEnum):
    """Exit statuses produced or recognised by Marathon."""

    SUCCESS = 0
    GENERIC = 1
    CURL_CONNECT = 7
    NETWORK_ERROR = 20
    FILING_ERROR = 21
    CONFIG_ERROR = 22
    CURL_TIMEOUT = 28
    CURL_EMPTY_REPLY = 52
    CURL_RECV_ERROR = 56
    TIMEOUT_ERROR = 124
    COMMAND_NOT_FOUND = 127
    # Outside the ranges used by rclone, curl, gpg, ssh and the fan-out
    # driver's failed-unit count (capped at 101).
    SHUTDOWN_SIGNAL = 200
    SSH_ERROR = 255


class ErrorCategory(str, Enum):
    """Three-way classification of a non-zero status."""

    RETRYABLE = "retryable"
    FATAL = "fatal"
    SHUTDOWN_SIGNAL = "shutdown_signal"


RETRYABLE_CODES: frozenset[int] = frozenset({
    StatusCode.NETWORK_ERROR,
    StatusCode.TIMEOUT_ERROR,
    StatusCode.CURL_TIMEOUT,
    StatusCode.CURL_CONNECT,
    StatusCode.CURL_EMPTY_REPLY,
    StatusCode.CURL_RECV_ERROR,
    StatusCode.SSH_ERROR,
})

# Offset for statuses of processes killed by a signal (shell convention)
SIGNAL_EXIT_BASE = 128


def normalize_returncode(returncode: int | None) -> int:
    """Map an asyncio/subprocess return code to a shell-style exit status.

    Negative return codes (killed by signal N) become ``128 + N``. ``None``
    (process still running or status lost) maps to GENERIC.
    """
    if returncode is None:
        return int(StatusCode.GENERIC)
    if returncode < 0:
        return SIGNAL_EXIT_BASE - returncode
    return returncode


__all__ = [
    "ErrorCategory",
    "RETRYABLE_CODES",
    "SIGNAL_EXIT_BASE",
    "StatusCode",
    "normalize_returncode",
]
