from __future__ import annotations

import asyncio
import logging
from typing import Any, Coroutine


logger = logging.getLogger(__name__)

# Strong references keep fire-and-forget tasks alive until they finish.
_tasks: set[asyncio.Task] = set()


def _on_done(task: asyncio.Task) -> None:
    _tasks.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("background_task_failed name=%s", task.get_name(), exc_info=exc)


def spawn(coro: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task:
    # Run work off the request path; failures are logged, never raised to the spawner.
    task = asyncio.create_task(coro, name=name)
    _tasks.add(task)
    task.add_done_callback(_on_done)
    return task


def pending_count() -> int:
    return len(_tasks)


async def drain(timeout: float | None = None) -> None:
    # Wait for spawned work, including tasks spawned by tasks, for shutdown and tests.
    loop = asyncio.get_running_loop()
    deadline = None if timeout is None else loop.time() + timeout
    while True:
        current = [task for task in _tasks if task.get_loop() is loop and not task.done()]
        if not current:
            return
        remaining = None if deadline is None else max(0.0, deadline - loop.time())
        if remaining == 0.0:
            return
        await asyncio.wait(current, timeout=remaining)


def cancel_all() -> None:
    for task in list(_tasks):
        if not task.done():
            task.cancel()
    _tasks.clear()
