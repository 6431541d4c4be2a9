"""Uniform failure reporting for orchestrator steps.

``report`` logs a failed step together with its classification. Best-effort
callers ignore the return value and carry on; fatal callers pass
``fatal=True`` and the failure unwinds to shutdown as a JobAbort.
"""

from __future__ import annotations

from marathon.core.errors.classifier import ErrorClassifier
from marathon.core.errors.codes import ErrorCategory, StatusCode
from marathon.core.exceptions import JobAbort, ShutdownRequested
from marathon.core.logging import get_logger

_logger = get_logger("errors.report")


def report(
    status: int,
    what: str,
    *,
    classifier: ErrorClassifier | None = None,
    fatal: bool = False,
) -> ErrorCategory | None:
    """Report the outcome of a step.

    Args:
        status: Exit status of the step.
        what: Short human description of the step.
        classifier: Classifier carrying the interruption flag, if any.
        fatal: Raise instead of returning when the step failed.

    Returns:
        ``None`` for success, otherwise the failure's category.

    Raises:
        ShutdownRequested: If ``fatal`` and the failure is a shutdown signal.
        JobAbort: If ``fatal`` and the failure is anything else.
    """
    if status == StatusCode.SUCCESS:
        return None

    category = (
        classifier.classify(status) if classifier is not None
        else ErrorClassifier().classify(status)
    )
    log = _logger.error if fatal else _logger.warning
    log("step.failed", what=what, status=status, category=category.value, fatal=fatal)

    if fatal:
        if category is ErrorCategory.SHUTDOWN_SIGNAL:
            raise ShutdownRequested(what)
        raise JobAbort(status, what)
    return category


__all__ = ["report"]
