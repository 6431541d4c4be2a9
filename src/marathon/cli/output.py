"""Rich output formatting for the Marathon CLI."""

from __future__ import annotations

from typing import TYPE_CHECKING

from rich.console import Console
from rich.table import Table

if TYPE_CHECKING:
    from marathon.health import HealthReport
    from marathon.shutdown import ShutdownOutcome

console = Console()

HEALTH_COLORS: dict[str, str] = {
    "healthy": "green",
    "unhealthy": "yellow",
    "critical": "red",
}


def format_health(report: HealthReport) -> Table:
    """Summary table for a health report."""
    color = HEALTH_COLORS.get(report.status.value, "white")
    table = Table(title="Worker health", show_header=False)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    table.add_row("Status", f"[{color}]{report.status.value}[/{color}]")
    table.add_row("Checks", f"{report.checks_passed}/{report.checks_total} passed")
    table.add_row("Running jobs", str(report.running_jobs))
    for message in report.messages:
        table.add_row("Issue", message)
    return table


def print_outcome(outcome: ShutdownOutcome) -> None:
    color = "green" if outcome.exit_code == 0 else "red"
    console.print(
        f"Job finished: [{color}]exit {outcome.exit_code}[/{color}]"
        f" ({outcome.disposition.value})"
    )


__all__ = ["HEALTH_COLORS", "console", "format_health", "print_outcome"]
