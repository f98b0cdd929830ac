"""Single-worker FIFO serializer for thread creation.

Two near-simultaneous first messages from the same user must not create two
threads, so every creation request runs strictly one after another.
"""

from __future__ import annotations

import asyncio
from collections import deque
from typing import Awaitable, Callable, Optional, TypeVar

from instrukt_ai_logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

CreationJob = Callable[[], Awaitable[object]]


class ThreadCreationSerializer:
    """Run submitted jobs one at a time, in submission order.

    The worker task is started on demand and exits when the queue drains.
    A job that raises only fails its own submitter; the queue keeps going.
    """

    def __init__(self, name: str = "thread-creation") -> None:
        self._name = name
        self._pending: deque[tuple[CreationJob, asyncio.Future[object]]] = deque()
        self._worker: Optional[asyncio.Task[None]] = None

    async def submit(self, job: Callable[[], Awaitable[T]]) -> T:
        """Queue a job and wait for its result.

        Args:
            job: Zero-argument coroutine function to run

        Returns:
            Whatever the job returns

        Raises:
            Exception: Whatever the job raised
        """
        future: asyncio.Future[object] = asyncio.get_running_loop().create_future()
        self._pending.append((job, future))
        self._ensure_worker()
        return await future  # type: ignore[return-value]

    def pending_count(self) -> int:
        return len(self._pending)

    def is_running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def _ensure_worker(self) -> None:
        if self.is_running():
            return
        self._worker = asyncio.create_task(self._drain(), name=f"{self._name}-worker")
        self._worker.add_done_callback(self._on_worker_done)

    def _on_worker_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            # Nobody will run the remaining jobs; release their submitters.
            while self._pending:
                _, future = self._pending.popleft()
                if not future.done():
                    future.cancel()
            return
        exc = task.exception()
        if exc is not None:
            logger.error("%s worker crashed: %s", self._name, exc, exc_info=exc)
        # A job may have been queued after the drain loop saw an empty queue.
        if self._pending:
            self._ensure_worker()

    async def _drain(self) -> None:
        while self._pending:
            job, future = self._pending.popleft()
            if future.cancelled():
                continue
            try:
                result = await job()
            except asyncio.CancelledError:
                if not future.done():
                    future.cancel()
                raise
            except Exception as exc:  # pylint: disable=broad-exception-caught
                logger.warning("%s job failed: %s", self._name, exc)
                if not future.done():
                    future.set_exception(exc)
                continue
            if not future.done():
                future.set_result(result)
