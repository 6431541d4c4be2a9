"""Shared utilities for Marathon CLI commands.

Holds the logging options collected by the global callback and applies
them once a command knows where its log file lives.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Literal

import typer

from marathon.core.logging import configure_logging, get_logger

from .output import console

_logger = get_logger("cli")


class ErrorMessages:
    """User-facing CLI error strings."""

    CONFIG_LOAD_ERROR = "Configuration error"
    LOG_SETUP_ERROR = "Logging configuration error"
    WORKSPACE_ERROR = "Cannot create job directories"


@dataclass
class CliLoggingConfig:
    """Logging options from the global callback."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    format: Literal["json", "console", "both"] = "console"


_log_config = CliLoggingConfig()


def set_log_level(level: str) -> None:
    _log_config.level = level.upper()  # type: ignore[assignment]


def set_log_format(fmt: str) -> None:
    _log_config.format = fmt  # type: ignore[assignment]


def configure_cli_logging(
    file_path: Path | None = None,
    *,
    format: Literal["json", "console", "both"] | None = None,  # noqa: A002
) -> None:
    """Apply the collected logging options.

    Args:
        file_path: Log file for the ``json`` and ``both`` formats.
        format: Overrides the format chosen on the command line.

    Raises:
        typer.Exit: If the options cannot be applied.
    """
    try:
        configure_logging(
            level=_log_config.level,
            format=format or _log_config.format,
            file_path=file_path,
        )
    except (ValueError, AttributeError, OSError) as e:
        console.print(f"[red]{ErrorMessages.LOG_SETUP_ERROR}:[/red] {e}")
        raise typer.Exit(1) from None


def reset_logging_state() -> None:
    """Restore the default logging options (for tests)."""
    global _log_config
    _log_config = CliLoggingConfig()


__all__ = [
    "CliLoggingConfig",
    "ErrorMessages",
    "configure_cli_logging",
    "reset_logging_state",
    "set_log_format",
    "set_log_level",
]
