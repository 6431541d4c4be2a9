"""Tests for marathon.execution.retry."""

from __future__ import annotations

import asyncio
import csv
from pathlib import Path

import pytest

from marathon.core.errors import ErrorCategory, ErrorClassifier, StatusCode
from marathon.execution.retry import (
    DEFAULT_POLICY,
    POLICY_PRESETS,
    TRANSFER_INITIAL_DELAY,
    TRANSFER_MAX_ATTEMPTS,
    RetryEngine,
    RetryMetricRecord,
    RetryPolicy,
    RetryState,
)
from marathon.metadata import RETRY_METRICS_HEADER, CsvRetryMetrics


class SleepRecorder:
    """Records requested sleeps instead of sleeping."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def scripted(*statuses: int):
    """Operation returning ``statuses`` in order, then 0."""
    remaining = list(statuses)
    calls = {"count": 0}

    async def operation() -> int:
        calls["count"] += 1
        return remaining.pop(0) if remaining else 0

    operation.calls = calls  # type: ignore[attr-defined]
    return operation


class MemoryRecorder:
    def __init__(self) -> None:
        self.rows: list[RetryMetricRecord] = []

    def record(self, row: RetryMetricRecord) -> None:
        self.rows.append(row)


# ─── Policy ────────────────────────────────────────────────────────────


class TestRetryPolicy:
    """Tests for RetryPolicy and its presets."""

    def test_presets(self):
        """critical/normal/batch carry the documented values."""
        assert POLICY_PRESETS["critical"] == RetryPolicy(5, 30.0, 7200.0)
        assert POLICY_PRESETS["normal"] == RetryPolicy(3, 60.0, 3600.0)
        assert POLICY_PRESETS["batch"] == RetryPolicy(1, 120.0, 600.0)
        assert DEFAULT_POLICY is POLICY_PRESETS["normal"]

    def test_delays_double_and_cap(self):
        """Waits double from the initial delay and stop at the ceiling."""
        policy = RetryPolicy(max_attempts=4, initial_delay=2, max_delay=8)
        assert list(policy.delays()) == [2, 4, 8, 8]

    def test_initial_delay_above_ceiling_is_capped(self):
        policy = RetryPolicy(max_attempts=2, initial_delay=100, max_delay=10)
        assert list(policy.delays()) == [10, 10]

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"max_attempts": -1, "initial_delay": 1, "max_delay": 1},
            {"max_attempts": 1, "initial_delay": -1, "max_delay": 1},
            {"max_attempts": 1, "initial_delay": 1, "max_delay": 1, "backoff_factor": 0.5},
        ],
    )
    def test_invalid_values_rejected(self, kwargs):
        with pytest.raises(ValueError):
            RetryPolicy(**kwargs)


class TestRetryState:
    """Tests for RetryState bookkeeping."""

    def test_advance_consumes_attempts(self):
        """advance() counts retries and returns the current wait."""
        state = RetryState.start(RetryPolicy(2, 5, 100))
        assert state.advance() == 5
        assert state.advance() == 10
        assert state.exhausted

    def test_zero_attempts_is_immediately_exhausted(self):
        assert RetryState.start(RetryPolicy(0, 5, 100)).exhausted


# ─── Engine ────────────────────────────────────────────────────────────


class TestRetryEngine:
    """Tests for RetryEngine.retry()."""

    @pytest.mark.asyncio
    async def test_immediate_success(self):
        """Success on the first call uses no retries and no delay."""
        sleep = SleepRecorder()
        engine = RetryEngine(RetryPolicy(3, 1, 10), sleep=sleep)
        outcome = await engine.retry(scripted())
        assert outcome.as_tuple() == (0, 0, 0.0)
        assert outcome.succeeded
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_retryable_then_success(self):
        """N retryable failures followed by success report N attempts."""
        sleep = SleepRecorder()
        engine = RetryEngine(RetryPolicy(5, 2, 100), sleep=sleep)
        op = scripted(20, 28, 124)
        outcome = await engine.retry(op)
        assert outcome.status == 0
        assert outcome.attempts == 3
        assert sleep.delays == [2, 4, 8]
        assert outcome.total_delay == 14
        assert op.calls["count"] == 4

    @pytest.mark.asyncio
    async def test_exhaustion_follows_backoff_schedule(self):
        """A persistently retryable status waits 2,4,8,8 and then gives up."""
        sleep = SleepRecorder()
        engine = RetryEngine(RetryPolicy(4, 2, 8), sleep=sleep)
        outcome = await engine.retry(scripted(20, 20, 20, 20, 20, 20))
        assert sleep.delays == [2, 4, 8, 8]
        assert outcome.status == 20
        assert outcome.attempts == 4
        assert outcome.total_delay == 22
        assert outcome.exhausted
        assert outcome.category is ErrorCategory.RETRYABLE

    @pytest.mark.asyncio
    async def test_fatal_returns_without_sleeping(self):
        """A fatal status returns at once with zero attempts."""
        sleep = SleepRecorder()
        engine = RetryEngine(RetryPolicy(3, 1, 10), sleep=sleep)
        op = scripted(21)
        outcome = await engine.retry(op)
        assert outcome.as_tuple() == (21, 0, 0.0)
        assert outcome.category is ErrorCategory.FATAL
        assert sleep.delays == []
        assert op.calls["count"] == 1

    @pytest.mark.asyncio
    async def test_shutdown_signal_returns_immediately(self):
        """The shutdown sentinel is never retried."""
        sleep = SleepRecorder()
        engine = RetryEngine(RetryPolicy(3, 1, 10), sleep=sleep)
        outcome = await engine.retry(scripted(StatusCode.SHUTDOWN_SIGNAL))
        assert outcome.category is ErrorCategory.SHUTDOWN_SIGNAL
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_interruption_still_retries_transient_failures(self):
        """After an interruption, network failures keep their retries."""
        classifier = ErrorClassifier()
        classifier.mark_interrupted()
        sleep = SleepRecorder()
        engine = RetryEngine(RetryPolicy(3, 1, 10), classifier, sleep=sleep)
        outcome = await engine.retry(scripted(20, 28))
        assert outcome.succeeded
        assert outcome.attempts == 2
        assert sleep.delays == [1, 2]

    @pytest.mark.asyncio
    async def test_interruption_stops_on_local_failure(self):
        """After an interruption, a non-transient failure means shutdown."""
        classifier = ErrorClassifier()
        classifier.mark_interrupted()
        sleep = SleepRecorder()
        engine = RetryEngine(RetryPolicy(3, 1, 10), classifier, sleep=sleep)
        outcome = await engine.retry(scripted(StatusCode.FILING_ERROR))
        assert outcome.category is ErrorCategory.SHUTDOWN_SIGNAL
        assert outcome.attempts == 0
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_raising_operation_is_generic_failure(self):
        """An operation that raises counts as a fatal GENERIC status."""

        async def broken() -> int:
            raise RuntimeError("boom")

        engine = RetryEngine(RetryPolicy(3, 1, 10), sleep=SleepRecorder())
        outcome = await engine.retry(broken)
        assert outcome.status == StatusCode.GENERIC

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self):
        """Cancelling the caller cancels the retry loop."""
        engine = RetryEngine(RetryPolicy(3, 1, 10))

        async def slow() -> int:
            await asyncio.sleep(10)
            return 0

        task = asyncio.create_task(engine.retry(slow))
        await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task


class TestTransferRetry:
    """Tests for the transfer policy."""

    @pytest.mark.asyncio
    async def test_transfer_policy_values(self):
        """Transfers get five retries starting at thirty seconds."""
        sleep = SleepRecorder()
        engine = RetryEngine(RetryPolicy(1, 120, 600), sleep=sleep)
        outcome = await engine.retry_transfer(scripted(*[20] * 10))
        assert outcome.attempts == TRANSFER_MAX_ATTEMPTS
        assert sleep.delays[0] == TRANSFER_INITIAL_DELAY

    @pytest.mark.asyncio
    async def test_transfer_policy_does_not_leak(self):
        """After a transfer, the ambient policy governs the next call."""
        ambient = RetryPolicy(1, 120, 600)
        sleep = SleepRecorder()
        engine = RetryEngine(ambient, sleep=sleep)

        await engine.retry_transfer(scripted(20, 20))
        assert engine.policy is ambient

        sleep.delays.clear()
        outcome = await engine.retry(scripted(20, 20, 20))
        assert outcome.attempts == 1
        assert sleep.delays == [120]


# ─── Metrics ───────────────────────────────────────────────────────────


class TestRetryMetrics:
    """Tests for retry metric rows."""

    @pytest.mark.asyncio
    async def test_one_row_per_sequence(self):
        """Each completed retry() call writes exactly one row."""
        recorder = MemoryRecorder()
        engine = RetryEngine(
            RetryPolicy(3, 1, 10), job_id="job-1", recorder=recorder, sleep=SleepRecorder(),
        )
        await engine.retry(scripted(20, 20))
        await engine.retry(scripted(21))
        assert len(recorder.rows) == 2
        first, second = recorder.rows
        assert (first.job_id, first.attempts, first.success, first.total_delay) == (
            "job-1", 2, True, 3.0,
        )
        assert (second.attempts, second.success) == (0, False)

    @pytest.mark.asyncio
    async def test_csv_recorder(self, tmp_path: Path):
        """CsvRetryMetrics writes a header once and one row per sequence."""
        path = tmp_path / "reports" / "retry_metrics.csv"
        engine = RetryEngine(
            RetryPolicy(3, 1, 10),
            job_id="job-2",
            recorder=CsvRetryMetrics(path),
            sleep=SleepRecorder(),
        )
        await engine.retry(scripted(20))
        await engine.retry(scripted())

        with open(path, newline="") as f:
            rows = list(csv.reader(f))
        assert rows[0] == RETRY_METRICS_HEADER
        assert rows[1][1:] == ["job-2", "1", "1", "1"]
        assert rows[2][1:] == ["job-2", "0", "1", "0"]

    @pytest.mark.asyncio
    async def test_recorder_failure_is_not_fatal(self, tmp_path: Path):
        """A metrics file that cannot be written does not fail the retry."""
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("")
        engine = RetryEngine(
            RetryPolicy(1, 1, 1),
            recorder=CsvRetryMetrics(blocker / "retry_metrics.csv"),
            sleep=SleepRecorder(),
        )
        outcome = await engine.retry(scripted())
        assert outcome.succeeded
