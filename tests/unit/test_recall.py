"""Unit tests for deadline-bound recall."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from hippo.config import RecallConfig
from hippo.models import MemoryTier
from hippo.recall import RecallService, rank_memories


class RankedStore:
    """Serves recall pages the way the SQL query orders them."""

    def __init__(self, memories, delay: float = 0.0, delay_after: int = 0) -> None:
        self.memories = memories
        self.delay = delay
        self.delay_after = delay_after
        self.calls = 0

    async def recall_candidates(self, user_id, thread_id=None, limit=10, offset=0):
        self.calls += 1
        if self.delay and self.calls > self.delay_after:
            await asyncio.sleep(self.delay)
        ranked = rank_memories([m for m in self.memories if m.user_id == user_id], thread_id)
        return ranked[offset:offset + limit]


class TestRanking:
    """Sort order."""

    def test_tier_order(self, make_memory):
        memories = [
            make_memory(content="t3", tier=MemoryTier.TIER3, priority=0.99),
            make_memory(content="t1", tier=MemoryTier.TIER1, priority=0.5),
            make_memory(content="t2", tier=MemoryTier.TIER2, priority=0.1),
        ]
        assert [m.content for m in rank_memories(memories)] == ["t2", "t1", "t3"]

    def test_priority_then_updated_within_tier(self, make_memory):
        memories = [
            make_memory(content="low", priority=0.4),
            make_memory(content="old", priority=0.8, updated_days_ago=5),
            make_memory(content="new", priority=0.8, updated_days_ago=1),
        ]
        assert [m.content for m in rank_memories(memories)] == ["new", "old", "low"]

    def test_current_thread_first(self, make_memory):
        memories = [
            make_memory(content="other", thread_id="t-other", tier=MemoryTier.TIER2),
            make_memory(content="here", thread_id="t-here", tier=MemoryTier.TIER3),
        ]
        ranked = rank_memories(memories, thread_id="t-here")
        assert [m.content for m in ranked] == ["here", "other"]

    def test_deleted_rows_dropped(self, make_memory, now):
        memories = [
            make_memory(content="live"),
            make_memory(content="gone", deleted_at=now - timedelta(days=1)),
        ]
        assert [m.content for m in rank_memories(memories)] == ["live"]


class TestRecallService:
    """Limits and deadlines."""

    @pytest.mark.parametrize("requested,expected", [(None, 5), (0, 1), (-3, 1), (7, 7), (50, 20)])
    def test_clamp_max_items(self, requested, expected):
        assert RecallService(RankedStore([])).clamp_max_items(requested) == expected

    async def test_returns_ranked_slice(self, make_memory):
        memories = [make_memory(content=f"m{i}", priority=i / 10) for i in range(8)]
        service = RecallService(RankedStore(memories))

        result = await service.recall("user-1", max_items=3, deadline_ms=1000)

        assert result.timed_out is False
        assert result.count == 3
        assert [m.content for m in result.memories] == ["m7", "m6", "m5"]

    async def test_only_own_memories(self, make_memory):
        memories = [make_memory(user_id="alice"), make_memory(user_id="bob")]
        result = await RecallService(RankedStore(memories)).recall("alice", deadline_ms=1000)
        assert [m.user_id for m in result.memories] == ["alice"]

    async def test_pages_until_limit(self, make_memory):
        memories = [make_memory(content=f"m{i}") for i in range(10)]
        store = RankedStore(memories)
        service = RecallService(store, RecallConfig(page_size=3))

        result = await service.recall("user-1", max_items=7, deadline_ms=1000)

        assert result.count == 7
        assert store.calls == 3

    async def test_empty_store(self):
        result = await RecallService(RankedStore([])).recall("user-1")
        assert result.memories == []
        assert result.timed_out is False

    async def test_slow_store_times_out(self, make_memory):
        store = RankedStore([make_memory()], delay=0.5)
        result = await RecallService(store).recall("user-1", deadline_ms=20)

        assert result.timed_out is True
        assert result.memories == []
        assert result.elapsed_ms < 400

    async def test_partial_results_on_timeout(self, make_memory):
        memories = [make_memory(content=f"m{i}", priority=i / 10) for i in range(6)]
        store = RankedStore(memories, delay=0.5, delay_after=1)
        service = RecallService(store, RecallConfig(page_size=2))

        result = await service.recall("user-1", max_items=6, deadline_ms=50)

        assert result.timed_out is True
        assert [m.content for m in result.memories] == ["m5", "m4"]

    async def test_non_positive_deadline_uses_default(self, make_memory):
        result = await RecallService(RankedStore([make_memory()])).recall("user-1", deadline_ms=0)
        assert result.count == 1

    async def test_storage_errors_propagate(self):
        class BrokenStore:
            async def recall_candidates(self, *args, **kwargs):
                raise ConnectionError("db down")

        with pytest.raises(ConnectionError):
            await RecallService(BrokenStore()).recall("user-1", deadline_ms=100)
