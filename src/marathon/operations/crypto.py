"""Encryption collaborators.

``GpgCrypto`` signs and encrypts results to ``<name>.gpg`` and decrypts
``<name>.gpg`` inputs back to ``<name>``, one gpg process per file with at
most ``max_workers`` running at once. Each gpg child is registered as a
worker so the shutdown sequence can stop it.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from pathlib import Path
from typing import Protocol

from marathon.core.config import CryptoConfig
from marathon.core.errors.codes import StatusCode
from marathon.core.logging import get_logger
from marathon.execution.process import CommandRunner

_logger = get_logger("crypto")

GPG_SUFFIX = ".gpg"

_COMMON_FLAGS = [
    "--batch",
    "--yes",
    "--compress-algo", "0",
    "--with-colons",
    "--always-trust",
    "--lock-multiple",
]


class CryptoOperation(Protocol):
    async def encrypt(self, paths: Sequence[Path]) -> int: ...

    async def decrypt(self, paths: Sequence[Path]) -> int: ...


class GpgCrypto:
    """Per-file gpg invocations with bounded concurrency."""

    def __init__(
        self,
        runner: CommandRunner,
        config: CryptoConfig,
        *,
        max_workers: int,
        log_dir: Path | None = None,
    ) -> None:
        self._runner = runner.with_nice(config.nice)
        self._config = config
        self._slots = asyncio.Semaphore(max_workers)
        self._log_dir = log_dir

    def encrypt_command(self, path: Path) -> list[str]:
        if not (self._config.sign_key and self._config.recipient):
            raise ValueError("gpg encryption needs a sign key and a recipient")
        return [
            self._config.gpg_binary,
            "--output", f"{path}{GPG_SUFFIX}",
            *_COMMON_FLAGS,
            "--sign", "--local-user", self._config.sign_key,
            "--encrypt", "--recipient", self._config.recipient,
            str(path),
        ]

    def decrypt_command(self, path: Path) -> list[str]:
        return [
            self._config.gpg_binary,
            "--output", str(decrypted_name(path)),
            *_COMMON_FLAGS,
            str(path),
        ]

    async def encrypt(self, paths: Sequence[Path]) -> int:
        return await self._run_all("encrypt", [(p, self.encrypt_command(p)) for p in paths])

    async def decrypt(self, paths: Sequence[Path]) -> int:
        return await self._run_all("decrypt", [(p, self.decrypt_command(p)) for p in paths])

    async def _run_all(self, action: str, jobs: list[tuple[Path, list[str]]]) -> int:
        if not jobs:
            return int(StatusCode.SUCCESS)
        statuses = await asyncio.gather(*(self._run_one(action, p, cmd) for p, cmd in jobs))
        failed = [s for s in statuses if s != StatusCode.SUCCESS]
        _logger.info("crypto.batch_complete", action=action, files=len(jobs), failed=len(failed))
        return failed[0] if failed else int(StatusCode.SUCCESS)

    async def _run_one(self, action: str, path: Path, cmd: list[str]) -> int:
        log_file = None
        if self._log_dir is not None:
            subdir = self._log_dir / ("output" if action == "encrypt" else "input")
            subdir.mkdir(parents=True, exist_ok=True)
            log_file = subdir / f"{path.name}.log"
        async with self._slots:
            result = await self._runner.run(cmd, log_file=log_file, label=f"gpg {action} {path.name}")
        if not result.ok:
            _logger.warning("crypto.file_failed", action=action, file=path.name, status=result.status)
        return result.status


def decrypted_name(path: Path) -> Path:
    return path.with_name(path.name[: -len(GPG_SUFFIX)]) if path.name.endswith(GPG_SUFFIX) else path


__all__ = ["CryptoOperation", "GPG_SUFFIX", "GpgCrypto", "decrypted_name"]
