from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Coroutine
from typing import Any, TypeVar

T = TypeVar("T")

log = logging.getLogger(__name__)


def _report(task: asyncio.Task[Any]) -> None:
    if task.cancelled() or task.exception() is None:
        return
    log.error("background task %s crashed", task.get_name(), exc_info=task.exception())


def ensure_task(coro: Coroutine[Any, Any, T], *, name: str | None = None) -> asyncio.Task[T]:
    """
    Fire-and-forget helper for reconnects, sends and probes.

    A crash in the task is logged when it finishes instead of surfacing as
    "Task exception was never retrieved".
    """

    task: asyncio.Task[T] = asyncio.create_task(coro, name=name)
    task.add_done_callback(_report)
    return task


async def cancel_suppress(task: asyncio.Task[Any] | None) -> None:
    """Cancel `task` and wait for it to unwind. A task never cancels itself here."""

    if task is None or task is asyncio.current_task():
        return
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task
