"""Detached asyncio tasks that outlive the handler that started them."""

import asyncio
from typing import Awaitable, Callable, Coroutine

from ticobot.logging_config import get_logger

logger = get_logger("background")

_background_tasks: set[asyncio.Task] = set()


def _on_done(task: asyncio.Task) -> None:
    _background_tasks.discard(task)
    if task.cancelled():
        logger.info(f"Background task cancelled: {task.get_name()}")
        return
    exc = task.exception()
    if exc is not None:
        logger.error(
            f"Background task failed: {task.get_name()}",
            exc_info=(type(exc), exc, exc.__traceback__),
            extra={"context": {"task": task.get_name(), "error": str(exc)}},
        )
    else:
        logger.info(f"Background task finished: {task.get_name()}")


def spawn(coro: Coroutine, *, name: str) -> asyncio.Task:
    """Start a task that is kept referenced until it completes."""
    task = asyncio.create_task(coro, name=name)
    _background_tasks.add(task)
    task.add_done_callback(_on_done)
    return task


def spawn_deferred(
    delay_seconds: float,
    factory: Callable[[], Awaitable],
    *,
    name: str,
    sleep_func: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> asyncio.Task:
    """Run ``factory()`` once after a delay, detached from the caller."""

    async def _run():
        await sleep_func(delay_seconds)
        return await factory()

    return spawn(_run(), name=name)


def pending_tasks() -> list[asyncio.Task]:
    return [task for task in _background_tasks if not task.done()]


async def cancel_all() -> None:
    tasks = pending_tasks()
    for task in tasks:
        task.cancel()
    if tasks:
        await asyncio.gather(*tasks, return_exceptions=True)
