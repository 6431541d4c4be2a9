"""Shared utilities for asyncio.Task lifecycle.

``log_task_exception`` surfaces exceptions from background tasks in
done-callbacks; ``wait_or_cancel`` is the sleep every poll loop uses so a
shutdown request interrupts it immediately.
"""

from __future__ import annotations

import asyncio
import contextlib
from typing import Any


def log_task_exception(
    task: asyncio.Task[Any],
    logger: Any,
    event: str,
    *,
    level: str = "error",
) -> BaseException | None:
    """Extract and log an exception from a completed task.

    Args:
        task: The completed task to inspect.
        logger: A structlog or stdlib logger with ``.error()``/``.warning()`` methods.
        event: Structlog-style event name (e.g. ``"monitor.loop_died"``).
        level: Log method name, ``"error"`` (default) or ``"warning"``.

    Returns:
        The exception if one was found, ``None`` if the task completed
        normally or was cancelled.
    """
    if task.cancelled():
        return None
    exc = task.exception()
    if exc is not None:
        log_fn = getattr(logger, level, logger.error)
        log_fn(event, error=str(exc), task_name=task.get_name())
    return exc


async def wait_or_cancel(cancel: asyncio.Event | None, timeout: float) -> bool:
    """Sleep up to ``timeout`` seconds, waking early if ``cancel`` is set.

    Returns:
        True if the cancel event is set, False if the timeout elapsed.
    """
    if cancel is None:
        await asyncio.sleep(timeout)
        return False
    if cancel.is_set():
        return True
    with contextlib.suppress(TimeoutError):
        await asyncio.wait_for(cancel.wait(), timeout=timeout)
    return cancel.is_set()


__all__ = ["log_task_exception", "wait_or_cancel"]
