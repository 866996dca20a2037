"""In-process priority job queue.

Delivery is at-most-once. Jobs live only in memory, a failing job is logged
and dropped, and nothing is retried. Callers enqueue synchronously and are
never blocked or handed a worker's exception.
"""

from __future__ import annotations

import asyncio
import itertools
import time
from collections import deque
from typing import Any, Awaitable, Callable

import structlog

from hippo.config import QueueConfig
from hippo.models import Job, JobType
from hippo.observability import record_job, record_job_dropped, set_queue_depth

logger = structlog.get_logger(__name__)

JobHandler = Callable[[Job], Awaitable[Any]]


class JobQueue:
    """
    Priority queue drained by background worker tasks.

    Higher priority runs first. Jobs of equal priority run in the order
    they were enqueued.
    """

    def __init__(self, config: QueueConfig | None = None) -> None:
        self.config = config or QueueConfig()
        self._queue: asyncio.PriorityQueue[tuple[int, int, Job]] = asyncio.PriorityQueue()
        self._handlers: dict[JobType, JobHandler] = {}
        self._workers: list[asyncio.Task] = []
        self._seq = itertools.count()
        self._running = False
        self._closed = False

        # Stats
        self._enqueued = 0
        self._processed = 0
        self._failed = 0
        self._dropped = 0
        self._latencies: deque[float] = deque(maxlen=self.config.latency_samples)

    def register(self, job_type: JobType, handler: JobHandler) -> None:
        """Register the coroutine that runs jobs of this type."""
        self._handlers[job_type] = handler

    def enqueue(self, job: Job) -> bool:
        """
        Add a job without waiting.

        Returns:
            False if the job was dropped (queue closed or full)
        """
        if self._closed or self._queue.qsize() >= self.config.max_size:
            self._dropped += 1
            record_job_dropped()
            logger.warning(
                "job_dropped",
                job_id=job.id,
                job_type=job.type.value,
                closed=self._closed,
                depth=self._queue.qsize(),
            )
            return False

        job.enqueued_at = time.time()
        self._queue.put_nowait((-job.priority, next(self._seq), job))
        self._enqueued += 1
        set_queue_depth(self._queue.qsize())
        logger.debug("job_enqueued", job_id=job.id, job_type=job.type.value, priority=job.priority)
        return True

    def start(self) -> None:
        """Spawn worker tasks. Must be called from a running event loop."""
        if self._running:
            return
        self._closed = False
        self._running = True
        for index in range(max(1, self.config.concurrency)):
            self._workers.append(
                asyncio.create_task(self._worker(), name=f"hippo-worker-{index}")
            )
        logger.info("job_queue_started", workers=len(self._workers))

    async def stop(self, drain: bool = False, timeout: float = 5.0) -> None:
        """
        Stop the workers.

        Args:
            drain: Wait (up to timeout) for queued jobs to finish first
            timeout: Seconds to wait when draining
        """
        self._closed = True
        if drain and self._running:
            try:
                await asyncio.wait_for(self._queue.join(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning("job_queue_drain_timeout", remaining=self._queue.qsize())

        for task in self._workers:
            task.cancel()
        if self._workers:
            await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers.clear()
        self._running = False
        logger.info("job_queue_stopped", remaining=self._queue.qsize())

    def is_running(self) -> bool:
        return self._running

    @property
    def depth(self) -> int:
        return self._queue.qsize()

    async def run_pending(self) -> int:
        """
        Run every queued job in the current task, in priority order.

        Used by the CLI and tests where no worker is running.

        Returns:
            Number of jobs executed
        """
        count = 0
        while not self._queue.empty():
            _, _, job = self._queue.get_nowait()
            try:
                await self._execute(job)
            finally:
                self._queue.task_done()
            count += 1
        return count

    async def _worker(self) -> None:
        while True:
            _, _, job = await self._queue.get()
            try:
                await self._execute(job)
            finally:
                self._queue.task_done()

    async def _execute(self, job: Job) -> None:
        set_queue_depth(self._queue.qsize())
        handler = self._handlers.get(job.type)
        if handler is None:
            self._failed += 1
            logger.error("job_handler_missing", job_id=job.id, job_type=job.type.value)
            return

        start = time.perf_counter()
        success = True
        try:
            await handler(job)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            success = False
            logger.error(
                "job_failed",
                job_id=job.id,
                job_type=job.type.value,
                error=str(e),
                exc_info=True,
            )

        elapsed = time.perf_counter() - start
        self._latencies.append(elapsed * 1000)
        if success:
            self._processed += 1
        else:
            self._failed += 1
        record_job(job.type.value, success, elapsed)

    def get_metrics(self) -> dict[str, Any]:
        """Counters plus avg and p95 processing latency in ms."""
        latencies = sorted(self._latencies)
        avg = sum(latencies) / len(latencies) if latencies else 0.0
        p95 = latencies[min(len(latencies) - 1, int(len(latencies) * 0.95))] if latencies else 0.0
        return {
            "enqueued": self._enqueued,
            "processed": self._processed,
            "failed": self._failed,
            "dropped": self._dropped,
            "depth": self._queue.qsize(),
            "running": self._running,
            "avg_latency_ms": round(avg, 2),
            "p95_latency_ms": round(p95, 2),
        }
