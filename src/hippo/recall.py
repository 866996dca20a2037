"""Deadline-bound ranked recall."""

from __future__ import annotations

import asyncio
import time

import structlog

from hippo.config import RecallConfig
from hippo.models import Memory, RecallResult
from hippo.observability import record_recall_timeout, track_recall_time
from hippo.stores.postgres_store import PostgresStore
from hippo.tiers import recall_rank

logger = structlog.get_logger(__name__)


def recall_sort_key(memory: Memory, thread_id: str | None = None) -> tuple:
    """
    Ranking key, ascending.

    Same-thread rows first (when a thread is given), then tier rank
    (TIER2, TIER1, TIER3), then priority and last update, both descending.
    """
    other_thread = 0 if thread_id and memory.thread_id == thread_id else 1
    return (
        other_thread,
        recall_rank(memory.tier),
        -memory.priority,
        -memory.updated_at.timestamp(),
    )


def rank_memories(memories: list[Memory], thread_id: str | None = None) -> list[Memory]:
    """Drop deleted rows and sort by recall_sort_key."""
    live = [m for m in memories if m.deleted_at is None]
    return sorted(live, key=lambda m: recall_sort_key(m, thread_id))


class RecallService:
    """
    Answers recall queries within a wall-clock budget.

    Rows are fetched in ranked pages. When the deadline passes, whatever has
    already arrived is returned with timed_out=True. Running out of time is a
    degraded success, not an error. Storage errors do propagate.
    """

    def __init__(self, store: PostgresStore, config: RecallConfig | None = None) -> None:
        self.store = store
        self.config = config or RecallConfig()

    def clamp_max_items(self, max_items: int | None) -> int:
        if max_items is None:
            max_items = self.config.default_max_items
        return max(1, min(self.config.max_items_limit, int(max_items)))

    async def recall(
        self,
        user_id: str,
        thread_id: str | None = None,
        max_items: int | None = None,
        deadline_ms: int | None = None,
    ) -> RecallResult:
        """
        Ranked memories for a user.

        Args:
            user_id: User identifier
            thread_id: Current thread; its memories rank first
            max_items: Clamped to [1, max_items_limit]
            deadline_ms: Wall-clock budget; non-positive means default

        Returns:
            RecallResult with at most max_items live memories
        """
        limit = self.clamp_max_items(max_items)
        if deadline_ms is None or deadline_ms <= 0:
            deadline_ms = self.config.default_deadline_ms

        start = time.perf_counter()
        deadline = start + deadline_ms / 1000.0
        collected: list[Memory] = []
        timed_out = False

        async with track_recall_time(user_id):
            while len(collected) < limit:
                remaining = deadline - time.perf_counter()
                if remaining <= 0:
                    timed_out = True
                    break

                page_size = min(self.config.page_size, limit - len(collected))
                try:
                    page = await asyncio.wait_for(
                        self.store.recall_candidates(
                            user_id,
                            thread_id=thread_id,
                            limit=page_size,
                            offset=len(collected),
                        ),
                        timeout=remaining,
                    )
                except asyncio.TimeoutError:
                    timed_out = True
                    break

                collected.extend(page)
                if len(page) < page_size:
                    break

        memories = rank_memories(collected, thread_id)[:limit]
        elapsed_ms = (time.perf_counter() - start) * 1000

        if timed_out:
            record_recall_timeout()
            logger.warning(
                "recall_deadline_exceeded",
                user_id=user_id,
                deadline_ms=deadline_ms,
                partial=len(memories),
            )
        else:
            logger.debug("recall_complete", user_id=user_id, count=len(memories), elapsed_ms=elapsed_ms)

        return RecallResult(
            memories=memories,
            count=len(memories),
            elapsed_ms=round(elapsed_ms, 2),
            timed_out=timed_out,
        )
