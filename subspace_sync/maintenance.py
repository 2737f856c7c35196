"""
Periodic background jobs.

Notification polling and profile-cache cleanup both run as endless loops on
the event loop. This module owns the loop and its cancellation so the managers
only supply the per-cycle coroutine.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


def startup(
    task_fn: Callable[[], Awaitable[None]],
    interval: float,
    *,
    name: str = "periodic",
) -> asyncio.Task:
    """
    Schedule ``task_fn`` to run every ``interval`` seconds.

    The first cycle runs after one ``interval``. Exceptions raised by a cycle
    are logged and the loop keeps going until the task is cancelled.
    Must be called with a running event loop.
    """

    async def _periodic() -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await task_fn()
            except Exception as exc:
                logger.error("%s cycle failed: %s", name, exc)

    return asyncio.create_task(_periodic(), name=name)


async def shutdown(task: asyncio.Task | None) -> None:
    """
    Cancel a task started with :func:`startup` and wait for it to finish.

    Tolerates ``None`` and tasks that already completed.
    """

    if not task:
        return

    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
