"""Fixtures for integration tests with a real Postgres."""

from __future__ import annotations

import asyncio
import os
from typing import AsyncGenerator

import asyncpg
import pytest

from hippo.config import HippoConfig, PostgresConfig
from hippo.service import MemoryService
from hippo.stores.postgres_store import PostgresStore


@pytest.fixture(scope="session")
def postgres_config() -> PostgresConfig:
    """Postgres config for tests."""
    return PostgresConfig(
        host=os.getenv("HIPPO_POSTGRES_HOST", "localhost"),
        port=int(os.getenv("HIPPO_POSTGRES_PORT", "5432")),
        user=os.getenv("HIPPO_POSTGRES_USER", "hippo"),
        password=os.getenv("HIPPO_POSTGRES_PASSWORD", "hippo"),
        database=os.getenv("HIPPO_POSTGRES_DATABASE", "hippo_test"),
        min_pool_size=1,
        max_pool_size=4,
    )


async def _cleanup(store: PostgresStore) -> None:
    async with store.pool.acquire() as conn:
        await conn.execute("DELETE FROM memories WHERE user_id LIKE 'test-%'")
        await conn.execute("DELETE FROM memory_audits WHERE user_id LIKE 'test-%'")


@pytest.fixture
async def store(postgres_config: PostgresConfig) -> AsyncGenerator[PostgresStore, None]:
    """Connected store with a clean slate for test users."""
    store = PostgresStore(postgres_config)
    try:
        await asyncio.wait_for(store.connect(), timeout=5)
    except (OSError, asyncio.TimeoutError, asyncpg.PostgresError) as e:
        pytest.skip(f"Postgres not available: {e}")

    await store.initialize_schema()
    await _cleanup(store)
    yield store
    await _cleanup(store)
    await store.close()


@pytest.fixture
def service(store: PostgresStore, postgres_config: PostgresConfig) -> MemoryService:
    """MemoryService over the test store. Jobs run via queue.run_pending()."""
    return MemoryService(HippoConfig(postgres=postgres_config), store=store)
