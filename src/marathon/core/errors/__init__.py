"""Status codes, classification and failure reporting."""

from marathon.core.errors.classifier import ErrorClassifier, classify
from marathon.core.errors.codes import (
    RETRYABLE_CODES,
    ErrorCategory,
    StatusCode,
    normalize_returncode,
)

__all__ = [
    "ErrorCategory",
    "ErrorClassifier",
    "RETRYABLE_CODES",
    "StatusCode",
    "classify",
    "normalize_returncode",
]
