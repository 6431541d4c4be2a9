"""Periodic resource sampling while the workload runs.

Appends one row per tick to the job's ``.load`` and ``.free`` files::

    <iso-time> <label> <load1> <load5> <load15> <children>
    <iso-time> <label> <total_mb> <used_mb> <available_mb> <tree_rss_mb>

and keeps the peak memory and mean load for the job manifest. Sampling is
diagnostics only: a failed probe or write is logged and the loop goes on.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path

from marathon.core.logging import get_logger
from marathon.supervisor.system_probe import SystemProbe
from marathon.supervisor.task_utils import wait_or_cancel
from marathon.utils.time import utc_now

_logger = get_logger("supervisor.sampler")


@dataclass(frozen=True)
class ResourceSummary:
    max_memory_mb: float
    avg_load_1min: float
    samples: int


class ResourceSampler:
    """Writes load and memory rows on a fixed interval."""

    def __init__(
        self,
        load_file: Path,
        free_file: Path,
        interval: float,
        label: str = "",
    ) -> None:
        self._load_file = load_file
        self._free_file = free_file
        self._interval = interval
        self._label = label.replace(" ", "_") or "-"
        self._samples = 0
        self._load_total = 0.0
        self._load_samples = 0
        self._max_memory_mb = 0.0

    def sample_once(self) -> None:
        now = utc_now().isoformat()
        load = SystemProbe.get_load_average()
        children = SystemProbe.get_child_count()
        memory = SystemProbe.get_memory_stats()
        tree_mb = SystemProbe.get_tree_memory_mb()

        if load is not None:
            self._load_total += load[0]
            self._load_samples += 1
            self._append(
                self._load_file,
                f"{now} {self._label} {load[0]:.2f} {load[1]:.2f} {load[2]:.2f} "
                f"{children if children is not None else '-'}",
            )
        if memory is not None:
            rss = f"{tree_mb:.1f}" if tree_mb is not None else "-"
            self._append(
                self._free_file,
                f"{now} {self._label} {memory['total_mb']:.0f} {memory['used_mb']:.0f} "
                f"{memory['available_mb']:.0f} {rss}",
            )
        if tree_mb is not None:
            self._max_memory_mb = max(self._max_memory_mb, tree_mb)
        self._samples += 1

    def _append(self, path: Path, row: str) -> None:
        try:
            with open(path, "a") as f:
                f.write(row + "\n")
        except OSError as exc:
            _logger.warning("sampler.write_failed", path=str(path), error=str(exc))

    def summary(self) -> ResourceSummary:
        avg = self._load_total / self._load_samples if self._load_samples else 0.0
        return ResourceSummary(
            max_memory_mb=round(self._max_memory_mb, 1),
            avg_load_1min=round(avg, 2),
            samples=self._samples,
        )

    async def run(self, cancel: asyncio.Event) -> ResourceSummary:
        """Sample every interval until ``cancel`` is set."""
        while not cancel.is_set():
            try:
                self.sample_once()
            except Exception as exc:
                _logger.warning("sampler.sample_failed", error=str(exc))
            if await wait_or_cancel(cancel, self._interval):
                break
        return self.summary()


__all__ = ["ResourceSampler", "ResourceSummary"]
