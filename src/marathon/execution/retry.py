"""Retry with classified exponential backoff.

An operation is any zero-argument coroutine function returning an exit
status. ``RetryEngine.retry`` re-invokes it while the status classifies as
retryable, doubling the wait between attempts up to the policy's ceiling.
Fatal and shutdown statuses return at once so the caller can decide what
to do with them. The engine never raises for a failed operation; the
outcome carries everything a metrics row needs.

Attempt counting: ``attempts`` is the number of *retries*, so an operation
that succeeds or fails fatally on its first call reports ``attempts == 0``.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterator
from dataclasses import dataclass, replace
from typing import Protocol

from marathon.core.errors.classifier import ErrorClassifier
from marathon.core.errors.codes import ErrorCategory, StatusCode
from marathon.core.logging import get_logger
from marathon.utils.time import utc_now

_logger = get_logger("retry")

Operation = Callable[[], Awaitable[int]]
SleepFn = Callable[[float], Awaitable[None]]

# Transfers get more, quicker retries than the ambient policy.
TRANSFER_MAX_ATTEMPTS = 5
TRANSFER_INITIAL_DELAY = 30.0


@dataclass(frozen=True)
class RetryPolicy:
    """Immutable retry parameters.

    Attributes:
        max_attempts: Retries allowed after the first call.
        initial_delay: Seconds to wait before the first retry.
        max_delay: Ceiling for any single wait.
        backoff_factor: Multiplier applied to the wait after each retry.
    """

    max_attempts: int
    initial_delay: float
    max_delay: float
    backoff_factor: float = 2.0

    def __post_init__(self) -> None:
        if self.max_attempts < 0:
            raise ValueError(f"max_attempts must be >= 0, got {self.max_attempts}")
        if self.initial_delay < 0 or self.max_delay < 0:
            raise ValueError("retry delays must be non-negative")
        if self.backoff_factor < 1:
            raise ValueError(f"backoff_factor must be >= 1, got {self.backoff_factor}")

    def delays(self) -> Iterator[float]:
        """Yield the wait before each retry, in order."""
        delay = min(self.initial_delay, self.max_delay)
        for _ in range(self.max_attempts):
            yield delay
            delay = min(delay * self.backoff_factor, self.max_delay)


POLICY_PRESETS: dict[str, RetryPolicy] = {
    "critical": RetryPolicy(max_attempts=5, initial_delay=30.0, max_delay=7200.0),
    "normal": RetryPolicy(max_attempts=3, initial_delay=60.0, max_delay=3600.0),
    "batch": RetryPolicy(max_attempts=1, initial_delay=120.0, max_delay=600.0),
}

DEFAULT_POLICY = POLICY_PRESETS["normal"]


@dataclass
class RetryState:
    """Per-invocation progress. Built fresh for every ``retry`` call."""

    attempt: int
    current_delay: float
    max_attempts: int
    max_delay: float
    backoff_factor: float

    @classmethod
    def start(cls, policy: RetryPolicy) -> RetryState:
        return cls(
            attempt=0,
            current_delay=min(policy.initial_delay, policy.max_delay),
            max_attempts=policy.max_attempts,
            max_delay=policy.max_delay,
            backoff_factor=policy.backoff_factor,
        )

    @property
    def exhausted(self) -> bool:
        return self.attempt >= self.max_attempts

    def advance(self) -> float:
        """Consume one retry and return the delay to wait before it."""
        delay = self.current_delay
        self.attempt += 1
        self.current_delay = min(self.current_delay * self.backoff_factor, self.max_delay)
        return delay


@dataclass(frozen=True)
class RetryOutcome:
    """Result of a complete retry sequence.

    Attributes:
        status: Exit status of the final call.
        attempts: Retries performed (0 for immediate success or fatal).
        total_delay: Seconds spent waiting between calls.
        category: Classification of ``status``; ``None`` on success.
        exhausted: True when retries ran out on a retryable status.
    """

    status: int
    attempts: int
    total_delay: float
    category: ErrorCategory | None = None
    exhausted: bool = False

    @property
    def succeeded(self) -> bool:
        return self.status == StatusCode.SUCCESS

    def as_tuple(self) -> tuple[int, int, float]:
        return (self.status, self.attempts, self.total_delay)


@dataclass(frozen=True)
class RetryMetricRecord:
    """One row per completed retry sequence."""

    timestamp: str
    job_id: str
    attempts: int
    success: bool
    total_delay: float


class RetryMetricsRecorder(Protocol):
    """Destination for retry metric rows."""

    def record(self, row: RetryMetricRecord) -> None: ...


class RetryEngine:
    """Runs operations under a retry policy.

    The engine's ``policy`` is the ambient policy for the job. Transfer
    operations use a stricter policy derived from it per call, so the
    ambient policy is never modified.
    """

    def __init__(
        self,
        policy: RetryPolicy = DEFAULT_POLICY,
        classifier: ErrorClassifier | None = None,
        *,
        job_id: str = "",
        recorder: RetryMetricsRecorder | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._policy = policy
        self._classifier = classifier or ErrorClassifier()
        self._job_id = job_id
        self._recorder = recorder
        self._sleep = sleep

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    @property
    def classifier(self) -> ErrorClassifier:
        return self._classifier

    def transfer_policy(self) -> RetryPolicy:
        return replace(
            self._policy,
            max_attempts=TRANSFER_MAX_ATTEMPTS,
            initial_delay=TRANSFER_INITIAL_DELAY,
        )

    async def retry(
        self,
        operation: Operation,
        policy: RetryPolicy | None = None,
        *,
        what: str = "operation",
    ) -> RetryOutcome:
        """Invoke ``operation`` until success, a non-retryable status, or exhaustion."""
        state = RetryState.start(policy or self._policy)
        total_delay = 0.0

        while True:
            status = await self._invoke(operation, what)
            if status == StatusCode.SUCCESS:
                if state.attempt:
                    _logger.info(
                        "retry.succeeded_after_retry",
                        what=what,
                        attempts=state.attempt,
                        total_delay=total_delay,
                    )
                outcome = RetryOutcome(status, state.attempt, total_delay)
                break

            category = self._classifier.classify(status)
            if category is not ErrorCategory.RETRYABLE:
                _logger.warning(
                    "retry.not_retryable",
                    what=what,
                    status=status,
                    category=category.value,
                    attempts=state.attempt,
                )
                outcome = RetryOutcome(status, state.attempt, total_delay, category)
                break

            if state.exhausted:
                _logger.error(
                    "retry.exhausted",
                    what=what,
                    status=status,
                    attempts=state.attempt,
                    total_delay=total_delay,
                )
                outcome = RetryOutcome(
                    status, state.attempt, total_delay, category, exhausted=True,
                )
                break

            delay = state.advance()
            _logger.warning(
                "retry.attempt_failed",
                what=what,
                status=status,
                attempt=state.attempt,
                max_attempts=state.max_attempts,
                delay_seconds=delay,
            )
            await self._sleep(delay)
            total_delay += delay

        self._record(outcome)
        return outcome

    async def retry_transfer(
        self, operation: Operation, *, what: str = "transfer",
    ) -> RetryOutcome:
        """Retry a data transfer under the transfer policy."""
        return await self.retry(operation, self.transfer_policy(), what=what)

    async def _invoke(self, operation: Operation, what: str) -> int:
        try:
            return int(await operation())
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            _logger.exception("retry.operation_raised", what=what, error=str(exc))
            return int(StatusCode.GENERIC)

    def _record(self, outcome: RetryOutcome) -> None:
        if self._recorder is None:
            return
        row = RetryMetricRecord(
            timestamp=utc_now().isoformat(),
            job_id=self._job_id,
            attempts=outcome.attempts,
            success=outcome.succeeded,
            total_delay=outcome.total_delay,
        )
        try:
            self._recorder.record(row)
        except OSError as exc:
            _logger.warning("retry.metrics_write_failed", error=str(exc))


__all__ = [
    "DEFAULT_POLICY",
    "POLICY_PRESETS",
    "RetryEngine",
    "RetryMetricRecord",
    "RetryMetricsRecorder",
    "RetryOutcome",
    "RetryPolicy",
    "RetryState",
    "TRANSFER_INITIAL_DELAY",
    "TRANSFER_MAX_ATTEMPTS",
]
