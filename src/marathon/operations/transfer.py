"""Transfer operations between remote storage and the workspace.

The orchestrator only needs an exit status from a transfer, so the
interface is three coroutines returning ints (or a byte count for
``size``). ``RcloneTransfer`` drives the rclone CLI; ``LocalTransfer``
treats remote locations as plain directories, which suits shared
filesystems and tests.
"""

from __future__ import annotations

import asyncio
import fnmatch
import shutil
from pathlib import Path
from typing import Protocol

from marathon.core.config import TransferConfig
from marathon.core.errors.codes import StatusCode
from marathon.core.logging import get_logger
from marathon.execution.process import CommandRunner

_logger = get_logger("transfer")


class TransferOperation(Protocol):
    """Moves files matching a pattern between two locations."""

    async def copy(
        self, src: str, dst: str, include: str | None = None, *, log_file: Path | None = None,
    ) -> int:
        """Copy ``src`` (a directory filtered by ``include``, or one file) into ``dst``."""
        ...

    async def sync(
        self, src: str, dst: str, include: str | None = None, *, log_file: Path | None = None,
    ) -> int:
        """Make the matching files in ``dst`` identical to those in ``src``."""
        ...

    async def size(self, src: str, include: str | None = None) -> int | None:
        """Total bytes of matching files in ``src``, or None if unknown."""
        ...


class RcloneTransfer:
    """Transfers through ``rclone`` with configured niceness and parallelism."""

    def __init__(self, runner: CommandRunner, config: TransferConfig) -> None:
        self._runner = runner.with_nice(config.nice)
        self._config = config

    def _command(
        self,
        verb: str,
        *paths: str,
        include: str | None,
        transfers: int | None = None,
        log_file: Path | None = None,
    ) -> list[str]:
        cmd = [self._config.rclone_binary, verb, *paths]
        if self._config.rclone_config is not None:
            cmd += ["--config", str(self._config.rclone_config)]
        cmd += ["--log-level", "WARNING"]
        if log_file is not None:
            cmd += ["--log-file", str(log_file)]
        if transfers is not None:
            cmd += ["--transfers", str(transfers)]
        if include is not None:
            cmd += ["--include", include]
        return cmd

    async def copy(
        self, src: str, dst: str, include: str | None = None, *, log_file: Path | None = None,
    ) -> int:
        cmd = self._command(
            "copy", src, _dir(dst),
            include=include,
            transfers=self._config.outbound_transfers,
            log_file=log_file,
        )
        result = await self._runner.run(cmd, label="rclone copy")
        return result.status

    async def sync(
        self, src: str, dst: str, include: str | None = None, *, log_file: Path | None = None,
    ) -> int:
        cmd = self._command(
            "sync", _dir(src), _dir(dst),
            include=include,
            transfers=self._config.inbound_transfers,
            log_file=log_file,
        )
        result = await self._runner.run(cmd, label="rclone sync")
        return result.status

    async def size(self, src: str, include: str | None = None) -> int | None:
        cmd = self._command("lsl", _dir(src), include=include)
        result = await self._runner.run(cmd, capture_stdout=True)
        if not result.ok:
            _logger.warning("transfer.size_failed", src=src, status=result.status)
            return None
        return parse_lsl_total(result.stdout)


def _dir(location: str) -> str:
    return location if location.endswith("/") else location + "/"


def parse_lsl_total(listing: str) -> int:
    """Sum the size column of ``rclone lsl`` output."""
    total = 0
    for line in listing.splitlines():
        fields = line.split(maxsplit=1)
        if fields and fields[0].isdigit():
            total += int(fields[0])
    return total


class LocalTransfer:
    """Treats remote locations as local directories.

    Patterns match file names in the top level of the source directory,
    as rclone's ``--include`` does for patterns without a slash.
    """

    async def copy(
        self, src: str, dst: str, include: str | None = None, *, log_file: Path | None = None,
    ) -> int:
        return await asyncio.to_thread(self._copy, Path(src), Path(dst), include, False)

    async def sync(
        self, src: str, dst: str, include: str | None = None, *, log_file: Path | None = None,
    ) -> int:
        return await asyncio.to_thread(self._copy, Path(src), Path(dst), include, True)

    async def size(self, src: str, include: str | None = None) -> int | None:
        try:
            return sum(p.stat().st_size for p in _matching(Path(src), include))
        except OSError as exc:
            _logger.warning("transfer.size_failed", src=src, error=str(exc))
            return None

    @staticmethod
    def _copy(src: Path, dst: Path, include: str | None, delete_extra: bool) -> int:
        try:
            dst.mkdir(parents=True, exist_ok=True)
            if src.is_file():
                shutil.copy2(src, dst / src.name)
                return int(StatusCode.SUCCESS)
            if not src.is_dir():
                _logger.error("transfer.source_missing", src=str(src))
                return int(StatusCode.FILING_ERROR)
            wanted = {p.name: p for p in _matching(src, include)}
            for name, path in wanted.items():
                target = dst / name
                stat = path.stat()
                if target.exists():
                    existing = target.stat()
                    if existing.st_size == stat.st_size and existing.st_mtime >= stat.st_mtime:
                        continue
                shutil.copy2(path, target)
            if delete_extra:
                for path in _matching(dst, include):
                    if path.name not in wanted:
                        path.unlink()
        except OSError as exc:
            _logger.error("transfer.local_copy_failed", src=str(src), dst=str(dst), error=str(exc))
            return int(StatusCode.FILING_ERROR)
        return int(StatusCode.SUCCESS)


def _matching(directory: Path, include: str | None) -> list[Path]:
    return sorted(
        p for p in directory.iterdir()
        if p.is_file() and (include is None or fnmatch.fnmatchcase(p.name, include))
    )


def create_transfer(config: TransferConfig, runner: CommandRunner) -> TransferOperation:
    if config.backend == "local":
        return LocalTransfer()
    return RcloneTransfer(runner, config)


__all__ = [
    "LocalTransfer",
    "RcloneTransfer",
    "TransferOperation",
    "create_transfer",
    "parse_lsl_total",
]
