"""WorkerPool: bounded asyncio queue drained by a fixed set of workers."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

Job = Any


class WorkerPool:
    """Caps concurrent message processing.

    The inbound handler calls ``submit()`` and returns immediately; at most
    ``workers`` jobs run at once and at most ``queue_size`` wait. A failing
    job is logged and never takes its worker down.
    """

    def __init__(
        self,
        handler: Callable[[Job], Awaitable[Any]],
        workers: int = 8,
        queue_size: int = 256,
    ) -> None:
        self._handler = handler
        self._num_workers = max(1, workers)
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max(0, queue_size))
        self._tasks: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def start(self) -> None:
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(self._worker(i), name=f"qq-relay-worker-{i}")
            for i in range(self._num_workers)
        ]
        logger.info("Worker pool started: %d workers", self._num_workers)

    def submit(self, job: Job) -> bool:
        """Enqueue without blocking. Returns False if the queue is full."""
        try:
            self._queue.put_nowait(job)
        except asyncio.QueueFull:
            logger.warning("Worker queue full (%d pending), dropping job", self._queue.qsize())
            return False
        return True

    async def join(self) -> None:
        """Wait until every submitted job has been processed."""
        await self._queue.join()

    async def stop(self) -> None:
        """Cancel workers. Jobs still queued are discarded."""
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        discarded = 0
        while True:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            self._queue.task_done()
            discarded += 1
        logger.info("Worker pool stopped (%d queued jobs discarded)", discarded)

    async def _worker(self, index: int) -> None:
        while True:
            job = await self._queue.get()
            try:
                await self._handler(job)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Worker %d job failed: %s", index, e, exc_info=True)
            finally:
                self._queue.task_done()
