"""Shared test helpers for Marathon tests."""

from __future__ import annotations

import shutil
import subprocess
import sys
from collections.abc import Sequence
from pathlib import Path

from marathon.core.errors.codes import StatusCode
from marathon.operations.crypto import GPG_SUFFIX, decrypted_name


def spawn_sleeper(seconds: float = 30.0, *, ignore_term: bool = False) -> subprocess.Popen[bytes]:
    """Start a real child that sleeps, optionally ignoring SIGTERM."""
    code = "import time; time.sleep(%s)" % seconds
    if not ignore_term:
        return subprocess.Popen([sys.executable, "-c", code])
    code = (
        "import signal; signal.signal(signal.SIGTERM, signal.SIG_IGN); "
        "print('ready', flush=True); " + code
    )
    proc = subprocess.Popen([sys.executable, "-c", code], stdout=subprocess.PIPE)
    assert proc.stdout is not None
    proc.stdout.readline()
    return proc


def dead_pid() -> int:
    """Pid of a child that has exited and been reaped."""
    proc = subprocess.Popen([sys.executable, "-c", "pass"])
    proc.wait()
    return proc.pid


class FakeCrypto:
    """Crypto stand-in: 'encrypts' by copying to ``name.gpg`` and back."""

    def __init__(self, status: int = StatusCode.SUCCESS) -> None:
        self.status = int(status)
        self.encrypted: list[Path] = []
        self.decrypted: list[Path] = []

    async def encrypt(self, paths: Sequence[Path]) -> int:
        if self.status:
            return self.status
        for path in paths:
            shutil.copy(path, path.with_name(path.name + GPG_SUFFIX))
            self.encrypted.append(path)
        return self.status

    async def decrypt(self, paths: Sequence[Path]) -> int:
        if self.status:
            return self.status
        for path in paths:
            shutil.copy(path, decrypted_name(path))
            self.decrypted.append(path)
        return self.status


class ScriptedTransfer:
    """Transfer stand-in returning scripted statuses per verb."""

    def __init__(
        self,
        *,
        copy: Sequence[int] = (),
        sync: Sequence[int] = (),
        size: int | None = 0,
    ) -> None:
        self._copy = list(copy)
        self._sync = list(sync)
        self._size = size
        self.calls: list[tuple[str, str, str, str | None]] = []

    async def copy(self, src: str, dst: str, include: str | None = None, *, log_file=None) -> int:
        self.calls.append(("copy", src, dst, include))
        return self._copy.pop(0) if self._copy else 0

    async def sync(self, src: str, dst: str, include: str | None = None, *, log_file=None) -> int:
        self.calls.append(("sync", src, dst, include))
        return self._sync.pop(0) if self._sync else 0

    async def size(self, src: str, include: str | None = None) -> int | None:
        return self._size


async def no_sleep(delay: float) -> None:
    """Sleep replacement for retry tests."""
