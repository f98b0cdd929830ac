"""Registry of background tasks the relay spawns (alert timers, scanner, downloads)."""

from __future__ import annotations

import asyncio
from typing import Coroutine, TypeVar

from instrukt_ai_logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class TaskRegistry:
    """Tracks fire-and-forget tasks so shutdown can cancel them.

    Tasks may be registered under a key; spawning a new task for a key that
    already has a running task cancels the old one. Thread alert timers use
    this so each thread has at most one pending timer.
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[object]] = set()
        self._keyed: dict[str, asyncio.Task[object]] = {}

    def _on_task_done(self, task: asyncio.Task[object]) -> None:
        """Drop the finished task and log its failure, if any."""
        self._tasks.discard(task)
        for key, keyed_task in list(self._keyed.items()):
            if keyed_task is task:
                del self._keyed[key]
        if task.cancelled():
            return
        exc = task.exception()
        if exc:
            logger.error("Background task %s failed: %s", task.get_name(), exc, exc_info=exc)

    def spawn(
        self,
        coro: Coroutine[object, object, T],
        name: str | None = None,
        *,
        key: str | None = None,
    ) -> asyncio.Task[T]:
        """Spawn a tracked background task.

        Args:
            coro: Coroutine to execute as a background task
            name: Optional task name (useful for debugging)
            key: Optional slot; a running task in the same slot is cancelled first

        Returns:
            The created task
        """
        if key is not None:
            self.cancel(key)

        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)  # type: ignore[arg-type]
        if key is not None:
            self._keyed[key] = task  # type: ignore[assignment]
        task.add_done_callback(self._on_task_done)  # type: ignore[arg-type]

        logger.debug("Spawned tracked task: %s (total: %d)", name or f"<unnamed-{id(task)}>", len(self._tasks))
        return task

    def cancel(self, key: str) -> bool:
        """Cancel the task registered under key.

        Returns:
            True if a running task was cancelled
        """
        task = self._keyed.pop(key, None)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    def has(self, key: str) -> bool:
        task = self._keyed.get(key)
        return task is not None and not task.done()

    async def shutdown(self, timeout: float = 5.0) -> None:
        """Cancel all tracked tasks and wait up to timeout seconds for them."""
        if not self._tasks:
            logger.debug("No tasks to shutdown")
            return

        task_count = len(self._tasks)
        logger.info("Shutting down %d tracked tasks (timeout=%.1fs)", task_count, timeout)

        for task in self._tasks:
            if not task.done():
                task.cancel()

        _, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        if pending:
            logger.warning(
                "Shutdown timeout: %d/%d tasks still pending after %.1fs", len(pending), task_count, timeout
            )
            for task in pending:
                logger.warning("Pending task: %s", task.get_name())
        self._keyed.clear()

    def task_count(self) -> int:
        return len(self._tasks)
