"""Marathon CLI commands."""

from .health import health
from .run import run
from .workers import fan_out, worker_exec

__all__ = ["fan_out", "health", "run", "worker_exec"]
