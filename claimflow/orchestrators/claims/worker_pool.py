"""
Priority Worker Pool
Bounded asyncio worker pool; queued jobs run urgent > high > normal, FIFO within a priority
"""

import asyncio
import itertools
from typing import Any, Awaitable, Callable, List, Optional

import structlog

from ...shared.monitoring import MetricsCollector
from ...shared.schemas import ClaimPriority

logger = structlog.get_logger(__name__)

PRIORITY_RANK = {
    ClaimPriority.URGENT: 0,
    ClaimPriority.HIGH: 1,
    ClaimPriority.NORMAL: 2,
}

Job = Callable[[], Awaitable[Any]]


class PriorityWorkerPool:
    """Limits how many claims are advanced at the same time"""

    def __init__(self, max_workers: int, metrics: Optional[MetricsCollector] = None, name: str = "claims"):
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self.max_workers = max_workers
        self.metrics = metrics
        self.name = name

        self._queue: Optional[asyncio.PriorityQueue] = None
        self._workers: List[asyncio.Task] = []
        self._sequence = itertools.count()
        self._closed = False

    @property
    def pending(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    async def start(self):
        """Start worker tasks on the running loop"""
        if self._workers:
            return
        self._closed = False
        self._queue = asyncio.PriorityQueue()
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"{self.name}-worker-{i}")
            for i in range(self.max_workers)
        ]
        logger.info("Started workflow workers", pool=self.name, workers=self.max_workers)

    async def shutdown(self, wait: bool = True):
        """Stop accepting jobs; optionally drain the queue first"""
        self._closed = True
        if not self._workers:
            return

        if wait:
            await self._queue.join()

        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []

        while not self._queue.empty():
            _, _, _, future = self._queue.get_nowait()
            if not future.done():
                future.cancel()
            self._queue.task_done()

        logger.info("Stopped workflow workers", pool=self.name)

    async def submit(self, priority: ClaimPriority, job: Job) -> asyncio.Future:
        """Queue a job; the returned future resolves with its result"""
        if self._closed:
            raise RuntimeError(f"Worker pool '{self.name}' is shut down")
        if not self._workers:
            await self.start()

        future = asyncio.get_running_loop().create_future()
        rank = PRIORITY_RANK[ClaimPriority(priority)]
        self._queue.put_nowait((rank, next(self._sequence), job, future))
        self._update_depth()
        return future

    def _update_depth(self):
        if self.metrics is not None:
            self.metrics.queue_depth.set(self._queue.qsize())

    async def _worker(self, worker_id: int):
        while True:
            _, _, job, future = await self._queue.get()
            self._update_depth()
            try:
                if future.done():
                    # caller gave up before the job started
                    continue
                await self._run(job, future)
            finally:
                self._queue.task_done()

    @staticmethod
    async def _run(job: Job, future: asyncio.Future):
        task = asyncio.ensure_future(job())

        def _propagate_cancel(f: asyncio.Future):
            if f.cancelled() and not task.done():
                task.cancel()

        future.add_done_callback(_propagate_cancel)

        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            if not future.done():
                future.cancel()
            raise

        if future.done():
            if not task.cancelled() and task.exception() is not None:
                logger.debug("Job finished after its caller went away", error=str(task.exception()))
            return
        if task.cancelled():
            future.cancel()
        elif task.exception() is not None:
            future.set_exception(task.exception())
        else:
            future.set_result(task.result())
