"""Tests for marathon.metadata."""

from __future__ import annotations

import csv
import hashlib
import json
from pathlib import Path

from marathon.core.config import CleanupMode
from marathon.execution.retry import RetryMetricRecord
from marathon.metadata import (
    ERROR_INDEX_HEADER,
    JOB_INDEX_HEADER,
    RETRY_METRICS_HEADER,
    CsvRetryMetrics,
    FileMetadataSink,
    count_errors_today,
    describe_files,
)
from marathon.supervisor.sampler import ResourceSummary
from marathon.utils.time import utc_now


def prepare(job) -> None:
    job.paths.work.mkdir(parents=True)
    job.paths.logs.mkdir(parents=True)
    (job.paths.work / "a.txt").write_text("input")
    (job.paths.work / "a.out").write_text("result")
    (job.paths.logs / "marathon.log").write_text("{}\n")


class TestDescribeFiles:
    """Tests for describe_files()."""

    def test_hash_and_size(self, tmp_path: Path):
        (tmp_path / "x.out").write_bytes(b"abc")
        (tmp_path / "y.txt").write_bytes(b"zzz")
        assert describe_files(tmp_path, "*.out") == [
            {"name": "x.out", "sha256": hashlib.sha256(b"abc").hexdigest(), "size": 3},
        ]

    def test_encrypted_flag(self, tmp_path: Path):
        (tmp_path / "x.out.gpg").write_bytes(b"")
        assert describe_files(tmp_path, "*.gpg", encrypted=True)[0]["encrypted"] is True

    def test_missing_directory(self, tmp_path: Path):
        assert describe_files(tmp_path / "nope", "*") == []


class TestFileMetadataSink:
    """Tests for manifest and index files."""

    def test_manifest(self, make_job):
        job = make_job(CleanupMode.KEEP)
        prepare(job)
        sink = FileMetadataSink(job)

        path = sink.write_manifest(0, ResourceSummary(max_memory_mb=12.5, avg_load_1min=0.4, samples=3))

        manifest = json.loads(path.read_text())
        assert path == job.paths.manifest
        assert manifest["job_id"] == job.job_id
        assert manifest["exit_code"] == 0
        assert [f["name"] for f in manifest["input_files"]] == ["a.txt"]
        assert [f["name"] for f in manifest["output_files"]] == ["a.out"]
        assert manifest["resource_usage"] == {"max_memory_mb": 12.5, "avg_load_1min": 0.4}
        assert not path.with_suffix(".json.tmp").exists()

    def test_manifest_without_samples(self, make_job):
        job = make_job(CleanupMode.KEEP)
        prepare(job)
        manifest = FileMetadataSink(job).build_manifest(3, None)
        assert manifest["resource_usage"] == {}

    def test_performance_row(self, make_job):
        job = make_job(CleanupMode.KEEP)
        prepare(job)
        FileMetadataSink(job).write_manifest(0, None)
        (metrics,) = (job.paths.reports / "performance").glob("metrics_*.csv")
        rows = list(csv.reader(metrics.open()))
        assert rows[0][0] == "timestamp"
        assert rows[1][1] == job.job_id
        assert rows[1][6:] == ["5", "6"]

    def test_job_index_appends_with_header_once(self, make_job):
        job = make_job(CleanupMode.KEEP)
        sink = FileMetadataSink(job)
        sink.record_job(0)
        sink.record_job(20)
        lines = sink.job_index.read_text().splitlines()
        assert lines[0] == JOB_INDEX_HEADER
        assert [line.split("|")[3] for line in lines[1:]] == ["completed", "failed"]

    def test_error_index_copies_logs(self, make_job):
        job = make_job(CleanupMode.KEEP)
        prepare(job)
        sink = FileMetadataSink(job)
        sink.record_error(21, "disk | full\nagain")

        lines = sink.error_index.read_text().splitlines()
        assert lines[0] == ERROR_INDEX_HEADER
        _, job_id, code, message, failure_dir = lines[1].split("|")
        assert (job_id, code, message) == (job.job_id, "21", "disk / full again")
        assert (Path(failure_dir) / "marathon.log").exists()

    def test_count_errors_today(self, make_job):
        job = make_job(CleanupMode.KEEP)
        sink = FileMetadataSink(job)
        sink.record_error(1, "a")
        sink.record_error(2, "b")
        with open(sink.error_index, "a") as f:
            f.write("2000-01-01T00:00:00|old|1|x|y\n")
        assert count_errors_today(sink.error_index) == 2

    def test_daily_summary_counts_todays_jobs(self, make_job):
        job = make_job(CleanupMode.KEEP)
        sink = FileMetadataSink(job)
        sink.record_job(0)
        sink.record_job(0)
        sink.record_job(21)
        sink.record_error(21, "disk full")
        with open(sink.job_index, "a") as f:
            f.write("2000-01-01T00:00:00|old|old|failed|host|1\n")

        path = sink.write_daily_summary()

        now = utc_now()
        assert path == job.paths.reports / "daily" / f"{now:%Y}" / f"{now:%m}" / f"{now:%d}" / "summary.txt"
        lines = path.read_text().splitlines()
        assert lines[0] == f"Marathon Daily Summary - {now.date().isoformat()}"
        assert lines[4:] == [
            "  Total jobs: 3",
            "  Completed: 2",
            "  Failed: 1",
            "  Errors recorded: 1",
        ]

    def test_daily_summary_without_indexes(self, make_job):
        path = FileMetadataSink(make_job(CleanupMode.KEEP)).write_daily_summary()
        assert "  Total jobs: 0" in path.read_text().splitlines()


def test_csv_retry_metrics(tmp_path: Path):
    recorder = CsvRetryMetrics(tmp_path / "reports" / "retry_metrics.csv")
    recorder.record(RetryMetricRecord(utc_now().isoformat(), "job-1", 2, True, 90.0))
    rows = list(csv.reader(recorder.path.open()))
    assert rows[0] == RETRY_METRICS_HEADER
    assert rows[1][1:] == ["job-1", "2", "1", "90"]
