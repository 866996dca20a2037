"""Pytest configuration and fixtures."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from hippo.models import Memory, MemoryTier

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


def pytest_configure(config):
    """Configure pytest."""
    config.addinivalue_line("markers", "integration: mark test as integration test")


class FakeClock:
    """Manually advanced clock in epoch seconds."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_memory():
    """Factory for Memory objects with sensible defaults."""

    def _make(
        content: str = "User likes Python",
        user_id: str = "user-1",
        thread_id: str = "thread-1",
        tier: MemoryTier = MemoryTier.TIER3,
        priority: float = 0.7,
        age_days: float = 0,
        updated_days_ago: float | None = None,
        **kwargs,
    ) -> Memory:
        created = NOW - timedelta(days=age_days)
        updated = NOW - timedelta(days=updated_days_ago if updated_days_ago is not None else age_days)
        return Memory(
            user_id=user_id,
            thread_id=thread_id,
            content=content,
            tier=tier,
            priority=priority,
            created_at=created,
            updated_at=updated,
            **kwargs,
        )

    return _make
