"""Unit tests for the in-process job queue."""

from __future__ import annotations

import asyncio

import pytest

from hippo.config import QueueConfig
from hippo.jobs import JobQueue
from hippo.models import Job, JobType


@pytest.fixture
def queue() -> JobQueue:
    return JobQueue(QueueConfig())


class TestEnqueue:
    """Non-blocking enqueue."""

    def test_enqueue_without_running_loop(self, queue):
        assert queue.enqueue(Job(type=JobType.AUDIT)) is True
        assert queue.depth == 1

    def test_drop_when_full(self):
        queue = JobQueue(QueueConfig(max_size=1))
        assert queue.enqueue(Job(type=JobType.AUDIT)) is True
        assert queue.enqueue(Job(type=JobType.AUDIT)) is False
        assert queue.get_metrics()["dropped"] == 1

    async def test_drop_after_stop(self, queue):
        await queue.stop()
        assert queue.enqueue(Job(type=JobType.AUDIT)) is False

    def test_job_ids_are_prefixed(self):
        assert Job(type=JobType.RETENTION).id.startswith("retention-")


class TestExecution:
    """Ordering, failures and worker lifecycle."""

    async def test_priority_then_fifo(self, queue):
        seen: list[str] = []

        async def handler(job: Job) -> None:
            seen.append(job.payload["name"])

        queue.register(JobType.AUDIT, handler)
        queue.enqueue(Job(type=JobType.AUDIT, payload={"name": "low"}, priority=1))
        queue.enqueue(Job(type=JobType.AUDIT, payload={"name": "high-1"}, priority=10))
        queue.enqueue(Job(type=JobType.AUDIT, payload={"name": "high-2"}, priority=10))

        assert await queue.run_pending() == 3
        assert seen == ["high-1", "high-2", "low"]

    async def test_failure_is_logged_not_raised(self, queue):
        calls: list[str] = []

        async def failing(job: Job) -> None:
            raise RuntimeError("boom")

        async def ok(job: Job) -> None:
            calls.append(job.id)

        queue.register(JobType.AUDIT, failing)
        queue.register(JobType.RETENTION, ok)
        queue.enqueue(Job(type=JobType.AUDIT, priority=5))
        queue.enqueue(Job(type=JobType.RETENTION, priority=1))

        await queue.run_pending()

        metrics = queue.get_metrics()
        assert metrics["failed"] == 1
        assert metrics["processed"] == 1
        assert len(calls) == 1

    async def test_missing_handler_counts_as_failure(self, queue):
        queue.enqueue(Job(type=JobType.RETENTION))
        await queue.run_pending()
        assert queue.get_metrics()["failed"] == 1

    async def test_workers_drain_queue(self, queue):
        done = asyncio.Event()
        processed: list[str] = []

        async def handler(job: Job) -> None:
            processed.append(job.id)
            if len(processed) == 3:
                done.set()

        queue.register(JobType.AUDIT, handler)
        queue.start()
        assert queue.is_running()
        for _ in range(3):
            queue.enqueue(Job(type=JobType.AUDIT))

        await asyncio.wait_for(done.wait(), timeout=1.0)
        await queue.stop(drain=True)

        assert not queue.is_running()
        assert len(processed) == 3
        assert queue.depth == 0

    async def test_stop_with_drain_times_out(self, queue):
        async def slow(job: Job) -> None:
            await asyncio.sleep(10)

        queue.register(JobType.AUDIT, slow)
        queue.start()
        queue.enqueue(Job(type=JobType.AUDIT))
        await asyncio.sleep(0)
        await queue.stop(drain=True, timeout=0.05)
        assert not queue.is_running()

    async def test_latency_metrics(self, queue):
        async def handler(job: Job) -> None:
            return None

        queue.register(JobType.AUDIT, handler)
        for _ in range(5):
            queue.enqueue(Job(type=JobType.AUDIT))
        await queue.run_pending()

        metrics = queue.get_metrics()
        assert metrics["enqueued"] == 5
        assert metrics["processed"] == 5
        assert metrics["avg_latency_ms"] >= 0.0
        assert metrics["p95_latency_ms"] >= 0.0
