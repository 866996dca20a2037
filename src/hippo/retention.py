"""Retention pass: decay, expiry, promotion and demotion of stored memories."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timedelta

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from hippo.config import RetentionConfig
from hippo.models import Memory, MemoryTier, RetentionStats, clamp, utcnow
from hippo.observability import record_retention_run
from hippo.stores.postgres_store import PostgresStore
from hippo.tiers import get_policy

logger = structlog.get_logger(__name__)

WEEK_SECONDS = 7 * 24 * 3600
PRIORITY_EPSILON = 1e-9


@dataclass
class RetentionDecision:
    """What one retention pass does to one memory."""

    memory_id: str
    priority: float
    tier: MemoryTier
    expire: bool = False
    decayed: bool = False
    promoted: bool = False
    demoted: bool = False
    evaluated_at: datetime | None = None

    @property
    def changed(self) -> bool:
        return self.decayed or self.expire or self.promoted or self.demoted


def evaluate_retention(
    memory: Memory,
    now: datetime,
    config: RetentionConfig | None = None,
) -> RetentionDecision:
    """
    Decide the next state of a memory.

    Steps run in order: decay, expiry, promotion, demotion. An expired
    memory is soft-deleted and not considered further. Promotion and
    demotion never both apply; promotion wins.
    """
    config = config or RetentionConfig()
    policy = get_policy(memory.tier, config)

    # 1. Decay by weeks since the later of the last update and the last decay
    since = max(memory.updated_at, memory.decayed_at or memory.updated_at)
    weeks = max(0.0, (now - since).total_seconds() / WEEK_SECONDS)
    priority = clamp(memory.priority - policy.decay_per_week * weeks)
    decision = RetentionDecision(
        memory_id=str(memory.id),
        priority=priority,
        tier=memory.tier,
        decayed=memory.priority - priority > PRIORITY_EPSILON,
        evaluated_at=now,
    )

    # 2. Expiry by age since creation
    if now - memory.created_at >= timedelta(days=policy.ttl_days):
        decision.expire = True
        return decision

    # 3. Promotion on cross-thread recurrence
    if (
        memory.tier == MemoryTier.TIER3
        and len(set(memory.thread_set)) >= config.promotion_min_threads
        and memory.repeats >= config.promotion_min_repeats
    ):
        decision.tier = MemoryTier.TIER1
        decision.promoted = True
        # Keep a fresh TIER1 row above its own floor
        decision.priority = max(decision.priority, config.tier1_priority_floor)
        return decision

    # 4. Demotion below the tier floor
    if memory.tier != MemoryTier.TIER3 and priority < policy.priority_floor:
        decision.tier = MemoryTier.TIER3
        decision.demoted = True

    return decision


class RetentionEngine:
    """Applies retention to every live memory in bounded batches, on a schedule."""

    def __init__(
        self,
        store: PostgresStore,
        config: RetentionConfig | None = None,
    ) -> None:
        self.store = store
        self.config = config or RetentionConfig()
        self.scheduler = AsyncIOScheduler()
        self._running = False
        self.last_stats: RetentionStats | None = None

    def start(self) -> None:
        """Start the retention scheduler."""
        self.scheduler.add_job(
            self.run_scheduled,
            "interval",
            hours=self.config.interval_hours,
            id="retention",
            replace_existing=True,
        )
        self.scheduler.start()
        self._running = True
        logger.info("retention_scheduler_started", interval_hours=self.config.interval_hours)

    def stop(self) -> None:
        """Stop the scheduler."""
        if self._running:
            self.scheduler.shutdown(wait=False)
        self._running = False
        logger.info("retention_scheduler_stopped")

    def is_running(self) -> bool:
        """Check if scheduler is running."""
        return self._running

    async def run_scheduled(self) -> None:
        """Timer entry point. A failed pass is logged and retried at the next tick."""
        try:
            await self.run_once()
        except Exception as e:
            record_retention_run(RetentionStats(), success=False)
            logger.error("retention_run_failed", error=str(e), exc_info=True)

    async def run_once(self, now: datetime | None = None) -> RetentionStats:
        """
        One pass over all live memories.

        Each row is locked, evaluated and written in its own transaction, so
        concurrent readers never see a half-applied change. A row that fails
        is logged and skipped.
        """
        now = now or utcnow()
        stats = RetentionStats()
        start = time.perf_counter()

        logger.info("retention_run_starting", batch_size=self.config.batch_size)

        after_id: str | None = None
        while True:
            ids = await self.store.list_live_ids(after_id, self.config.batch_size)
            if not ids:
                break

            for memory_id in ids:
                try:
                    decision = await self.store.apply_retention(
                        memory_id,
                        lambda memory: evaluate_retention(memory, now, self.config),
                    )
                except Exception as e:
                    stats.errors += 1
                    logger.error("retention_row_failed", memory_id=memory_id, error=str(e))
                    continue

                if decision is None:
                    continue
                stats.processed += 1
                stats.decayed += int(decision.decayed)
                stats.expired += int(decision.expire)
                stats.promoted += int(decision.promoted)
                stats.demoted += int(decision.demoted)

            after_id = ids[-1]
            # Let recall and audit work in between batches
            await asyncio.sleep(0)

        stats.duration_ms = int((time.perf_counter() - start) * 1000)
        self.last_stats = stats
        record_retention_run(stats)

        logger.info("retention_run_complete", **stats.to_dict())
        return stats
