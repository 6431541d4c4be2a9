"""Interruption polling: bridges cloud eviction notices into shutdown.

``SpotInterruptionSource`` asks the EC2 instance metadata service (IMDSv2)
whether a spot instance-action has been posted. ``InterruptionMonitor``
polls a source while a watched process is alive and, on the first positive
answer, records the interruption with the classifier and requests shutdown
through the orchestrator's normal channel.

The monitor fails open: an unreachable endpoint, an unexpected response or
a slow answer all mean "no interruption". Off EC2 the metadata address
simply does not answer, and that must never stop a job.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from pathlib import Path
from typing import Protocol

import httpx

from marathon.core.config import InterruptionConfig
from marathon.core.errors.classifier import ErrorClassifier
from marathon.core.logging import get_logger
from marathon.supervisor.handles import ProcessHandle
from marathon.supervisor.task_utils import wait_or_cancel

_logger = get_logger("supervisor.interruption")

TOKEN_TTL_HEADER = "X-aws-ec2-metadata-token-ttl-seconds"
TOKEN_HEADER = "X-aws-ec2-metadata-token"


class InterruptionSource(Protocol):
    """Anything that can say whether an interruption notice is pending."""

    async def check(self) -> bool: ...


class SpotInterruptionSource:
    """EC2 spot instance-action notice over IMDSv2.

    A 404 from the instance-action path means no notice; a 200 carries the
    notice body, which is saved to ``save_path`` when one is given.
    """

    def __init__(
        self,
        config: InterruptionConfig,
        *,
        client: httpx.AsyncClient | None = None,
        save_path: Path | None = None,
    ) -> None:
        self._config = config
        self._save_path = save_path
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(config.request_timeout, connect=config.connect_timeout),
        )

    async def check(self) -> bool:
        try:
            token_resp = await self._client.put(
                self._config.token_url,
                headers={TOKEN_TTL_HEADER: str(self._config.token_ttl_seconds)},
            )
            if token_resp.status_code != 200:
                _logger.debug("spot.token_unavailable", status=token_resp.status_code)
                return False
            resp = await self._client.get(
                self._config.instance_action_url,
                headers={TOKEN_HEADER: token_resp.text.strip()},
            )
        except httpx.HTTPError as exc:
            _logger.debug("spot.metadata_unreachable", error=str(exc))
            return False

        if resp.status_code == 404:
            return False
        if resp.status_code != 200:
            _logger.debug("spot.unexpected_status", status=resp.status_code)
            return False

        _logger.warning("spot.interruption_notice", notice=resp.text[:200])
        if self._save_path is not None:
            try:
                self._save_path.write_text(resp.text)
            except OSError as exc:
                _logger.warning("spot.notice_save_failed", error=str(exc))
        return True

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class InterruptionMonitor:
    """Polls an interruption source while a process is alive.

    ``on_detected`` is called with a reason string at most once per
    monitor, and only if this monitor is the first to record an
    interruption with the classifier.
    """

    def __init__(
        self,
        source: InterruptionSource,
        classifier: ErrorClassifier,
        *,
        on_detected: Callable[[str], None] | None = None,
        check_timeout: float = 15.0,
    ) -> None:
        self._source = source
        self._classifier = classifier
        self._on_detected = on_detected
        self._check_timeout = check_timeout
        self._detected = False

    @property
    def detected(self) -> bool:
        return self._detected

    async def poll_while(
        self,
        watched: int | ProcessHandle,
        interval: float,
        cancel: asyncio.Event | None = None,
    ) -> bool:
        """Check every ``interval`` seconds while ``watched`` is alive.

        Returns:
            True if an interruption was detected, False if the watched
            process exited or ``cancel`` was set first.
        """
        handle = watched if isinstance(watched, ProcessHandle) else ProcessHandle(watched)
        _logger.debug("interruption.polling", pid=handle.pid, interval=interval)

        while handle.is_alive():
            if await wait_or_cancel(cancel, interval):
                return False
            if await self._check():
                self._signal("spot interruption detected")
                return True
        return False

    async def _check(self) -> bool:
        try:
            return await asyncio.wait_for(self._source.check(), timeout=self._check_timeout)
        except TimeoutError:
            _logger.debug("interruption.check_timeout", timeout=self._check_timeout)
            return False

    def _signal(self, reason: str) -> None:
        if self._detected:
            return
        self._detected = True
        first = self._classifier.mark_interrupted(source="interruption_monitor")
        if first and self._on_detected is not None:
            self._on_detected(reason)


__all__ = [
    "InterruptionMonitor",
    "InterruptionSource",
    "SpotInterruptionSource",
    "TOKEN_HEADER",
    "TOKEN_TTL_HEADER",
]
