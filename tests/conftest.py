"""Pytest fixtures for Marathon tests."""

from __future__ import annotations

import logging
from collections.abc import Generator
from pathlib import Path
from typing import Any

import pytest
import structlog

from marathon.core.config import CleanupMode, JobConfig
from marathon.core.job import Job, JobIdentity


@pytest.fixture(autouse=True)
def reset_logging_state() -> Generator[None, None, None]:
    """Reset logging state before and after each test.

    This ensures test isolation for logging configuration.
    """
    import marathon.cli.helpers as cli_helpers

    cli_helpers.reset_logging_state()
    structlog.reset_defaults()

    root_logger = logging.getLogger()
    original_handlers = root_logger.handlers[:]
    for handler in original_handlers:
        root_logger.removeHandler(handler)

    yield

    cli_helpers.reset_logging_state()
    structlog.reset_defaults()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
        handler.close()
    for handler in original_handlers:
        root_logger.addHandler(handler)


@pytest.fixture
def job_dirs(tmp_path: Path) -> dict[str, Path]:
    """Remote input/output folders and local roots inside tmp_path."""
    dirs = {
        "input": tmp_path / "remote" / "in",
        "output": tmp_path / "remote" / "out",
        "workspace": tmp_path / "work",
        "logspace": tmp_path / "log",
        "ramdisk_root": tmp_path / "shm",
    }
    for key in ("input", "output", "ramdisk_root"):
        dirs[key].mkdir(parents=True)
    return dirs


@pytest.fixture
def make_config(job_dirs: dict[str, Path]):
    """Factory for a JobConfig that only touches tmp_path."""

    def _make(cleanup_mode: CleanupMode = CleanupMode.KEEP, **overrides: Any) -> JobConfig:
        data: dict[str, Any] = {
            "job_name": "test-job",
            "cleanup_mode": cleanup_mode,
            "input": str(job_dirs["input"]),
            "output": str(job_dirs["output"]),
            "inglob": "*.txt",
            "outglob": "*.out",
            "workspace": job_dirs["workspace"],
            "logspace": job_dirs["logspace"],
            "ramdisk_root": job_dirs["ramdisk_root"],
            "check_disk_space": False,
            "resource_poll_interval": 0.2,
            "sync_interval": 60.0,
            "worker_grace_period": 0.5,
            "transfer": {"backend": "local"},
            "interruption": {"enabled": False},
            "fanout": {"command": "cp {} {.}.out", "max_workers": 2, "stop_grace": 0.5},
        }
        data.update(overrides)
        return JobConfig.model_validate(data)

    return _make


@pytest.fixture
def make_job(make_config):
    """Factory for a Job with a fixed identity."""

    def _make(cleanup_mode: CleanupMode = CleanupMode.KEEP, **overrides: Any) -> Job:
        config = make_config(cleanup_mode, **overrides)
        identity = JobIdentity(
            name=config.job_name,
            stamp="20240101T000000",
            host="worker-1",
            pid=4242,
        )
        return Job.create(config, identity)

    return _make
