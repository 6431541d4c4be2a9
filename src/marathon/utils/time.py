"""Time utilities for Marathon.

Timestamps in file names use the compact ``YYYYmmddTHHMMSS`` stamp; log
and CSV rows use ISO 8601. Both are UTC.
"""

from datetime import UTC, datetime

STAMP_FORMAT = "%Y%m%dT%H%M%S"


def utc_now() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(UTC)


def stamp(moment: datetime | None = None) -> str:
    """Format ``moment`` (default: now) as a file-name-safe stamp."""
    return (moment or utc_now()).strftime(STAMP_FORMAT)


__all__ = ["STAMP_FORMAT", "stamp", "utc_now"]
