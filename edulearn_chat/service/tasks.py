from __future__ import annotations

import asyncio
from typing import Any, Coroutine, Optional, Set

from edulearn_chat.logging import get_logger

logger = get_logger(__name__)


class BackgroundTaskRunner:
    """Detached, best-effort execution of side effects.

    Submitted coroutines run at most once and are never retried. Failures
    are logged and never reach the request that submitted them. Tasks are
    held in a set until done so they cannot be garbage collected mid-flight.
    """

    def __init__(self) -> None:
        self._tasks: Set[asyncio.Task] = set()
        self._closed = False

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def submit(self, coro: Coroutine[Any, Any, Any], *, name: str) -> Optional[asyncio.Task]:
        if self._closed:
            logger.warning("background_task_rejected", task=name, reason="runner_closed")
            _discard(coro)
            return None
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError as exc:
            # No running loop: nothing can execute the side effect
            logger.warning("background_task_rejected", task=name, error=str(exc))
            _discard(coro)
            return None
        task = loop.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.info("background_task_cancelled", task=task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            logger.warning(
                "background_task_failed",
                task=task.get_name(),
                error_type=type(exc).__name__,
                error=str(exc),
            )

    async def drain(self, timeout: float = 5.0) -> None:
        """Wait for in-flight tasks; cancel whatever is left after ``timeout``."""
        if not self._tasks:
            return
        pending = list(self._tasks)
        _done, still_running = await asyncio.wait(pending, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
            logger.warning("background_tasks_cancelled_on_drain", count=len(still_running))

    async def close(self, timeout: float = 5.0) -> None:
        self._closed = True
        await self.drain(timeout)


def _discard(coro: Coroutine[Any, Any, Any]) -> None:
    close = getattr(coro, "close", None)
    if callable(close):
        close()
