"""
dispatcher.py — Work-queue handoff for delivery off the request path.

Request handlers enqueue a job and return. N worker tasks pull jobs and run
them; one failing job is logged and does not affect any other job.

    create_alert ──submit()──► asyncio.Queue ──► worker-0 ─┐
                                             ├─► worker-1 ─┼─► push / SMS
                                             └─► worker-N ─┘

Shutdown drains the queue for up to DELIVERY_SHUTDOWN_TIMEOUT_SECONDS, then
cancels whatever is left.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from carewatch.app.core.config import settings

logger = logging.getLogger(__name__)

JobFn = Callable[[], Awaitable[Any]]


@dataclass
class DeliveryJob:
    name: str
    fn: JobFn
    enqueued_at: float = field(default_factory=time.monotonic)


@dataclass
class DispatcherStats:
    submitted: int = 0
    completed: int = 0
    failed: int = 0
    rejected: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "submitted": self.submitted,
            "completed": self.completed,
            "failed": self.failed,
            "rejected": self.rejected,
        }


class DeliveryDispatcher:

    def __init__(
        self,
        *,
        workers: Optional[int] = None,
        queue_max_size: Optional[int] = None,
        shutdown_timeout: Optional[float] = None,
    ):
        self.worker_count = workers or settings.DELIVERY_WORKERS
        self.queue_max_size = queue_max_size or settings.DELIVERY_QUEUE_MAX_SIZE
        self.shutdown_timeout = (
            settings.DELIVERY_SHUTDOWN_TIMEOUT_SECONDS if shutdown_timeout is None else shutdown_timeout
        )
        self._queue: Optional[asyncio.Queue] = None
        self._workers: List[asyncio.Task] = []
        self.stats = DispatcherStats()
        self.running = False

    async def start(self) -> None:
        if self.running:
            return
        self._queue = asyncio.Queue(maxsize=self.queue_max_size)
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"delivery-worker-{i}")
            for i in range(self.worker_count)
        ]
        self.running = True
        logger.info("Delivery dispatcher started with %d workers", self.worker_count)

    def submit(self, name: str, fn: JobFn) -> bool:
        """Enqueue without waiting. False when stopped or the queue is full."""
        if not self.running or self._queue is None:
            self.stats.rejected += 1
            logger.warning("Dispatcher not running, dropped job %s", name)
            return False
        try:
            self._queue.put_nowait(DeliveryJob(name, fn))
        except asyncio.QueueFull:
            self.stats.rejected += 1
            logger.error("Delivery queue full (%d), dropped job %s", self.queue_max_size, name)
            return False
        self.stats.submitted += 1
        return True

    async def join(self) -> None:
        """Wait until every queued job, including ones queued by jobs, is done."""
        if self._queue is not None:
            await self._queue.join()

    def pending(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    async def stop(self) -> None:
        if not self.running:
            return
        self.running = False
        try:
            await asyncio.wait_for(self.join(), timeout=self.shutdown_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Delivery queue not drained after %.0fs, %d job(s) abandoned",
                self.shutdown_timeout, self.pending(),
            )
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info("Delivery dispatcher stopped | %s", self.stats.to_dict())

    async def _worker(self, index: int) -> None:
        assert self._queue is not None
        while True:
            job: DeliveryJob = await self._queue.get()
            started = time.perf_counter()
            try:
                await job.fn()
                self.stats.completed += 1
            except asyncio.CancelledError:
                raise
            except Exception:
                self.stats.failed += 1
                logger.exception("Delivery job %s failed on worker %d", job.name, index)
            else:
                logger.debug(
                    "Delivery job %s done in %.1fms", job.name,
                    (time.perf_counter() - started) * 1000,
                )
            finally:
                self._queue.task_done()
