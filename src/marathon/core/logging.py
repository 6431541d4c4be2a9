"""Structured logging infrastructure for Marathon.

Provides structured logging using structlog with job-specific context such
as job_id, run_id, and the orchestrator state. Console output goes to
stderr; a job's own log directory receives a JSON-lines file so that the
log archive shipped at shutdown carries the full structured record.

Example usage:
    from marathon.core.logging import JobContext, configure_logging, get_logger, with_context

    configure_logging(level="INFO", format="both", file_path=logs / "marathon.log")

    logger = get_logger("orchestrator")
    logger.info("state.entered", state="fetch")

    with with_context(JobContext(job_id="20260101T000000-host.demo.4242")):
        logger.info("fetch.started")  # includes job_id, run_id automatically
"""

from __future__ import annotations

import gzip
import logging
import os
import shutil
import sys
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Literal

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

# Field name fragments whose values are never written to a log
SENSITIVE_PATTERNS = frozenset({
    "token",
    "secret",
    "password",
    "credential",
    "passphrase",
    "authorization",
    "sign_key",
})

_current_log_path: Path | None = None


def get_current_log_path() -> Path | None:
    """Return the file currently receiving JSON log lines, if any."""
    return _current_log_path


class CompressingRotatingFileHandler(RotatingFileHandler):
    """Rotating file handler that gzips rotated backups.

    ``marathon.log`` becomes ``marathon.log.1.gz`` on rotation; older
    backups shift up by one and anything beyond ``backupCount`` is removed.
    """

    def __init__(
        self,
        filename: str | Path,
        mode: str = "a",
        maxBytes: int = 0,
        backupCount: int = 0,
        encoding: str | None = None,
        delay: bool = False,
        compress_level: int = 9,
    ) -> None:
        self.compress_level = compress_level
        super().__init__(
            filename,
            mode=mode,
            maxBytes=maxBytes,
            backupCount=backupCount,
            encoding=encoding,
            delay=delay,
        )

    def doRollover(self) -> None:
        if self.stream:
            self.stream.close()
            self.stream = None  # type: ignore[assignment]

        for i in range(self.backupCount - 1, 0, -1):
            src = f"{self.baseFilename}.{i}.gz"
            dst = f"{self.baseFilename}.{i + 1}.gz"
            if os.path.exists(src):
                if os.path.exists(dst):
                    os.remove(dst)
                os.rename(src, dst)

        if os.path.exists(self.baseFilename):
            compressed_path = f"{self.baseFilename}.1.gz"
            try:
                with (
                    open(self.baseFilename, "rb") as f_in,
                    gzip.open(compressed_path, "wb", compresslevel=self.compress_level) as f_out,
                ):
                    shutil.copyfileobj(f_in, f_out)
                os.remove(self.baseFilename)
            except OSError:
                # Keep an uncompressed backup rather than losing the data
                if os.path.exists(compressed_path):
                    os.remove(compressed_path)
                os.replace(self.baseFilename, f"{self.baseFilename}.1")

        if not self.delay:
            self.stream = self._open()


@dataclass(frozen=True)
class JobContext:
    """Immutable correlation context merged into every log entry.

    Attributes:
        job_id: Full job identifier (``stamp-host.name.pid``).
        run_id: Unique id for this process's execution of the job.
        component: Component name for the current operation.
        state: Orchestrator state at the time of logging, if known.
    """

    job_id: str
    run_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    component: str = "unknown"
    state: str | None = None

    def with_state(self, state: str) -> JobContext:
        return replace(self, state=state)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "job_id": self.job_id,
            "run_id": self.run_id,
            "component": self.component,
        }
        if self.state is not None:
            result["state"] = self.state
        return result


_current_context: ContextVar[JobContext | None] = ContextVar(
    "marathon_context", default=None
)


def get_current_context() -> JobContext | None:
    return _current_context.get()


def set_context(ctx: JobContext) -> None:
    """Set the current JobContext. Prefer ``with_context()`` for scoped use."""
    _current_context.set(ctx)


def clear_context() -> None:
    _current_context.set(None)


@contextmanager
def with_context(ctx: JobContext) -> Iterator[JobContext]:
    """Set ``ctx`` as the current JobContext for the duration of a block."""
    token = _current_context.set(ctx)
    try:
        yield ctx
    finally:
        _current_context.reset(token)


def _sanitize_value(key: str, value: Any) -> Any:
    key_lower = key.lower()
    for pattern in SENSITIVE_PATTERNS:
        if pattern in key_lower:
            return "[REDACTED]"
    return value


def _sanitize_event_dict(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Structlog processor that redacts sensitive fields (one level deep)."""
    sanitized: EventDict = {}
    for key, value in event_dict.items():
        if isinstance(value, dict):
            sanitized[key] = {k: _sanitize_value(k, v) for k, v in value.items()}
        else:
            sanitized[key] = _sanitize_value(key, value)
    return sanitized


def _add_timestamp(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    event_dict["timestamp"] = datetime.now(UTC).isoformat()
    return event_dict


def _add_context(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Structlog processor that merges the active JobContext.

    Explicitly bound keys take precedence over context keys.
    """
    ctx = get_current_context()
    if ctx is not None:
        for key, value in ctx.to_dict().items():
            if key not in event_dict:
                event_dict[key] = value
    return event_dict


class MarathonLogger:
    """Marathon logger wrapper around structlog.

    Bound to a component name at creation. The underlying structlog logger
    is fetched lazily on every call so loggers created at import time still
    honour a later ``configure_logging()``.
    """

    def __init__(self, component: str, **initial_context: Any) -> None:
        self._component = component
        self._context: dict[str, Any] = {"component": component, **initial_context}

    def _get_logger(self) -> structlog.stdlib.BoundLogger:
        logger: structlog.stdlib.BoundLogger = structlog.get_logger().bind(**self._context)
        return logger

    def bind(self, **context: Any) -> MarathonLogger:
        """Return a new logger with additional bound context."""
        new_logger = MarathonLogger.__new__(MarathonLogger)
        new_logger._component = self._component
        new_logger._context = {**self._context, **context}
        return new_logger

    def debug(self, event: str, **kw: Any) -> None:
        self._get_logger().debug(event, **kw)

    def info(self, event: str, **kw: Any) -> None:
        self._get_logger().info(event, **kw)

    def warning(self, event: str, **kw: Any) -> None:
        self._get_logger().warning(event, **kw)

    def error(self, event: str, **kw: Any) -> None:
        self._get_logger().error(event, **kw)

    def critical(self, event: str, **kw: Any) -> None:
        self._get_logger().critical(event, **kw)

    def exception(self, event: str, **kw: Any) -> None:
        """Log an error with traceback. Call from inside an except block."""
        self._get_logger().exception(event, **kw)


def _build_processors(
    renderer: Processor,
    include_timestamps: bool,
    include_context: bool,
) -> list[Processor]:
    processors: list[Processor] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
        _sanitize_event_dict,
    ]
    if include_context:
        processors.append(_add_context)
    if include_timestamps:
        processors.append(_add_timestamp)
    processors.extend([
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        renderer,
    ])
    return processors


def configure_logging(
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO",
    format: Literal["json", "console", "both"] = "console",  # noqa: A002
    file_path: Path | None = None,
    max_file_size_mb: int = 50,
    backup_count: int = 5,
    include_timestamps: bool = True,
    include_context: bool = True,
) -> None:
    """Configure Marathon structured logging. Call once at startup.

    Args:
        level: Minimum log level to capture.
        format: ``console`` for human-readable stderr, ``json`` for JSON
            lines (to ``file_path`` or stdout), ``both`` for console on
            stderr plus JSON lines in ``file_path``.
        file_path: Log file; required when ``format="both"``.
        max_file_size_mb: Size at which the log file rotates.
        backup_count: Number of compressed rotated files kept.
        include_timestamps: Add ISO8601 UTC timestamps.
        include_context: Merge the active JobContext into entries.

    Raises:
        ValueError: If ``format="both"`` and no ``file_path`` is given.
    """
    global _current_log_path

    if format == "both" and file_path is None:
        raise ValueError("file_path is required when format='both'")

    log_level = getattr(logging, level)
    handlers: list[logging.Handler] = []

    if format in ("console", "both"):
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(log_level)
        handlers.append(console_handler)

    if format in ("json", "both"):
        if file_path is not None:
            file_path.parent.mkdir(parents=True, exist_ok=True)
            _current_log_path = file_path
            file_handler = CompressingRotatingFileHandler(
                file_path,
                maxBytes=max_file_size_mb * 1024 * 1024,
                backupCount=backup_count,
                encoding="utf-8",
            )
            file_handler.setLevel(log_level)
            if format == "both":
                # Console renderer output is for humans; the file gets JSON.
                file_handler.setFormatter(
                    structlog.stdlib.ProcessorFormatter(
                        processor=structlog.processors.JSONRenderer(),
                        foreign_pre_chain=[structlog.stdlib.add_log_level],
                    )
                )
            handlers.append(file_handler)
        else:
            json_handler = logging.StreamHandler(sys.stdout)
            json_handler.setLevel(log_level)
            handlers.append(json_handler)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    for handler in handlers:
        root_logger.addHandler(handler)

    if format == "json":
        processors = _build_processors(
            structlog.processors.JSONRenderer(), include_timestamps, include_context,
        )
    elif format == "both":
        processors = _build_processors(
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
            include_timestamps,
            include_context,
        )
        console_handler.setFormatter(
            structlog.stdlib.ProcessorFormatter(
                processor=structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
            )
        )
    else:
        processors = _build_processors(
            structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
            include_timestamps,
            include_context,
        )

    # cache_logger_on_first_use=False keeps import-time loggers in step with
    # the configuration applied here.
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )


def get_logger(component: str, **initial_context: Any) -> MarathonLogger:
    """Get a Marathon logger for a component."""
    return MarathonLogger(component, **initial_context)


__all__ = [
    "CompressingRotatingFileHandler",
    "JobContext",
    "MarathonLogger",
    "SENSITIVE_PATTERNS",
    "clear_context",
    "configure_logging",
    "get_current_context",
    "get_current_log_path",
    "get_logger",
    "set_context",
    "with_context",
]
