"""
Fire-and-forget helpers for best-effort mutations.

Work such as "touch last_used_at" must never block or fail the request that
triggered it. Tasks are kept in a module-level set until they finish so the
event loop does not garbage-collect them mid-flight, and failures are logged
instead of propagating.
"""

import asyncio
from typing import Any, Awaitable, Optional, Set

from shared.logging import get_logger

_background_tasks: Set["asyncio.Task[Any]"] = set()
logger = get_logger("gateway.background")


def fire_and_forget(coro: Awaitable[Any], name: Optional[str] = None) -> "asyncio.Task[Any]":
    """Schedule coro on the running loop without awaiting it."""
    task = asyncio.ensure_future(coro)
    _background_tasks.add(task)

    def _done(finished: "asyncio.Task[Any]") -> None:
        _background_tasks.discard(finished)
        if finished.cancelled():
            return
        error = finished.exception()
        if error is not None:
            logger.warning("Background task failed", task=name or repr(finished), error=str(error))

    task.add_done_callback(_done)
    return task


def pending_task_count() -> int:
    return len(_background_tasks)


async def drain(timeout: float = 5.0) -> None:
    """Wait for outstanding background tasks, e.g. during shutdown or in tests."""
    if not _background_tasks:
        return
    await asyncio.wait(list(_background_tasks), timeout=timeout)
