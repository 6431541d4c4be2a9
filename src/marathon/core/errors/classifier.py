"""Classification of exit statuses into retryable, fatal and shutdown.

Retryable statuses are transient network or timeout conditions. The
shutdown sentinel is how interruption detection travels through the same
status channel as ordinary operations. Everything else is fatal, including
local filesystem errors, which are never assumed to be transient.
"""

from __future__ import annotations

from marathon.core.errors.codes import RETRYABLE_CODES, ErrorCategory, StatusCode
from marathon.core.logging import get_logger

_logger = get_logger("errors.classifier")


def classify(status: int, *, interruption_detected: bool = False) -> ErrorCategory:
    """Classify a non-zero exit status.

    Args:
        status: Exit status of an operation. Callers check for success
            first; zero falls through to FATAL like any unknown value.
        interruption_detected: Whether an interruption has already been
            recorded. Once set, a non-retryable failure is attributed to the
            shutdown rather than to the operation itself. Transient codes
            stay retryable so final deliveries still get their retries.

    Returns:
        The category governing whether to retry, abort, or shut down.
    """
    if status == StatusCode.SHUTDOWN_SIGNAL:
        return ErrorCategory.SHUTDOWN_SIGNAL
    if status in RETRYABLE_CODES:
        return ErrorCategory.RETRYABLE
    if interruption_detected and status != StatusCode.SUCCESS:
        return ErrorCategory.SHUTDOWN_SIGNAL
    return ErrorCategory.FATAL


class ErrorClassifier:
    """Stateful wrapper around :func:`classify`.

    Holds the one piece of state classification depends on: whether an
    interruption notice or operator signal has been recorded. Recording is
    one-way.
    """

    def __init__(self) -> None:
        self._interrupted = False

    @property
    def interrupted(self) -> bool:
        return self._interrupted

    def mark_interrupted(self, source: str = "unknown") -> bool:
        """Record an interruption. Returns True only on the first call."""
        if self._interrupted:
            return False
        self._interrupted = True
        _logger.warning("classifier.interruption_recorded", source=source)
        return True

    def classify(self, status: int) -> ErrorCategory:
        return classify(status, interruption_detected=self._interrupted)

    def is_retryable(self, status: int) -> bool:
        return self.classify(status) is ErrorCategory.RETRYABLE


__all__ = ["ErrorClassifier", "classify"]
