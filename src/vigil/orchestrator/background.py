"""Bounded worker pool for fire-and-forget writes.

Semantic-index writes must never block or fail the caller, yet their
failures must still be visible and outstanding work must finish at
shutdown.  :class:`BackgroundWriter` runs submitted jobs on a fixed number
of worker tasks fed by a bounded :class:`asyncio.Queue`:

- a full queue drops the job with a warning (the caller is never blocked),
- a failing job is logged with its traceback and counted,
- :meth:`drain` waits for everything already queued.

Lifecycle::

    writer = BackgroundWriter(workers=2, queue_size=256)
    await writer.start()
    writer.submit(lambda: index.index(item, Collection.SHORT_TERM), "index item")
    await writer.stop()
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

from vigil.errors import OperationCancelled

log = logging.getLogger(__name__)

Job = Callable[[], Awaitable[object]]


@dataclass
class WriterStats:
    submitted: int = 0
    completed: int = 0
    failed: int = 0
    dropped: int = 0


class BackgroundWriter:
    """Fixed-size asyncio worker pool over a bounded job queue.

    Args:
        workers: Number of concurrent worker tasks.  Must be >= 1.
        queue_size: Maximum number of queued jobs before new ones are dropped.
    """

    def __init__(self, workers: int = 2, queue_size: int = 256) -> None:
        if workers < 1:
            raise ValueError("workers must be >= 1")
        self.workers = workers
        self.queue_size = queue_size
        self.stats = WriterStats()
        self._queue: asyncio.Queue[tuple[Job, str]] | None = None
        self._tasks: list[asyncio.Task[None]] = []

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    @property
    def pending(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    async def start(self) -> None:
        """Spawn the worker tasks.  Idempotent."""
        if self._tasks:
            return
        # The queue binds to the running loop, so it is created here.
        self._queue = asyncio.Queue(maxsize=self.queue_size)
        self._tasks = [
            asyncio.create_task(self._worker(i), name=f"background-writer-{i}")
            for i in range(self.workers)
        ]
        log.info("Background writer started (workers=%d, queue=%d).", self.workers, self.queue_size)

    def submit(self, job: Job, description: str = "background write") -> bool:
        """Queue *job* without waiting.  Returns False if it was dropped.

        *job* is a zero-argument callable returning an awaitable, so a
        dropped job never leaves an un-awaited coroutine behind.
        """
        if self._queue is None or not self._tasks:
            self.stats.dropped += 1
            log.warning("Background writer not running, dropped: %s", description)
            return False
        try:
            self._queue.put_nowait((job, description))
        except asyncio.QueueFull:
            self.stats.dropped += 1
            log.warning("Background queue full (%d), dropped: %s", self.queue_size, description)
            return False
        self.stats.submitted += 1
        return True

    async def drain(self, timeout: float | None = None) -> bool:
        """Wait until every queued job has finished.  Returns False on timeout."""
        if self._queue is None or not self._tasks:
            return True
        try:
            await asyncio.wait_for(self._queue.join(), timeout=timeout)
        except asyncio.TimeoutError:
            log.warning("Background drain timed out with %d job(s) pending.", self._queue.qsize())
            return False
        return True

    async def stop(self, timeout: float | None = None) -> None:
        """Drain outstanding jobs, then cancel the workers."""
        if not self._tasks:
            return
        await self.drain(timeout)
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        log.info(
            "Background writer stopped (completed=%d, failed=%d, dropped=%d).",
            self.stats.completed,
            self.stats.failed,
            self.stats.dropped,
        )

    async def _worker(self, index: int) -> None:
        assert self._queue is not None
        me = asyncio.current_task()
        while True:
            job, description = await self._queue.get()
            try:
                await job()
                self.stats.completed += 1
            except asyncio.CancelledError:
                # Only a cancel aimed at this worker ends it.
                if me is not None and me.cancelling():
                    raise
                self.stats.failed += 1
                log.warning("Background job cancelled: %s", description)
            except OperationCancelled:
                self.stats.failed += 1
                log.warning("Background job abandoned on shutdown: %s", description)
            except Exception:
                self.stats.failed += 1
                log.error("Background job failed: %s", description, exc_info=True)
            finally:
                self._queue.task_done()
