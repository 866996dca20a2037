"""Postgres store for memories and audit records."""

from __future__ import annotations

import json
import uuid
from datetime import datetime
from typing import Any, Callable, TypeVar

import asyncpg
import structlog

from hippo.config import PostgresConfig
from hippo.models import AuditRecord, Memory, MemoryPage, MemoryTier, utcnow

logger = structlog.get_logger(__name__)

T = TypeVar("T")

# Columns callers may change through update()
UPDATABLE_COLUMNS = {
    "content",
    "content_hash",
    "priority",
    "confidence",
    "tier",
    "entities",
    "redaction_map",
    "thread_id",
    "deleted_at",
}

RECALL_TIER_ORDER = (
    "CASE tier WHEN 'TIER2' THEN 0 WHEN 'TIER1' THEN 1 ELSE 2 END"
)


def _is_uuid(value: str) -> bool:
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


class PostgresStore:
    """
    Relational store for the memory service.

    Memories are soft-deleted only. Audit records are append-only.
    """

    def __init__(self, config: PostgresConfig) -> None:
        self.config = config
        self.pool: asyncpg.Pool | None = None

    async def connect(self) -> None:
        """Initialize Postgres connection pool."""
        self.pool = await asyncpg.create_pool(
            host=self.config.host,
            port=self.config.port,
            user=self.config.user,
            password=self.config.password,
            database=self.config.database,
            min_size=self.config.min_pool_size,
            max_size=self.config.max_pool_size,
            command_timeout=self.config.command_timeout,
        )
        logger.info("postgres_connected", host=self.config.host, database=self.config.database)

    async def close(self) -> None:
        """Close connection pool."""
        if self.pool:
            await self.pool.close()
            self.pool = None
            logger.info("postgres_disconnected")

    async def initialize_schema(self) -> None:
        """Create tables if they don't exist."""
        assert self.pool is not None

        async with self.pool.acquire() as conn:
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS memories (
                    id               UUID PRIMARY KEY,
                    user_id          VARCHAR(255) NOT NULL,
                    thread_id        VARCHAR(255) NOT NULL,
                    content          TEXT NOT NULL CHECK (char_length(content) <= 1024),
                    content_hash     VARCHAR(64),
                    entities         TEXT[] NOT NULL DEFAULT ARRAY[]::TEXT[],
                    priority         DOUBLE PRECISION NOT NULL DEFAULT 0.5
                                     CHECK (priority >= 0 AND priority <= 1),
                    confidence       DOUBLE PRECISION NOT NULL DEFAULT 0.8
                                     CHECK (confidence >= 0 AND confidence <= 1),
                    redaction_map    JSONB,
                    tier             VARCHAR(10) NOT NULL DEFAULT 'TIER3'
                                     CHECK (tier IN ('TIER1', 'TIER2', 'TIER3')),
                    source_thread_id VARCHAR(255),
                    repeats          INTEGER NOT NULL DEFAULT 1 CHECK (repeats >= 1),
                    thread_set       TEXT[] NOT NULL DEFAULT ARRAY[]::TEXT[],
                    last_seen_at     TIMESTAMPTZ,
                    created_at       TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                    updated_at       TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                    decayed_at       TIMESTAMPTZ,
                    deleted_at       TIMESTAMPTZ
                )
            """)

            # Tables created before decayed_at existed
            await conn.execute(
                "ALTER TABLE memories ADD COLUMN IF NOT EXISTS decayed_at TIMESTAMPTZ"
            )

            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_memories_user ON memories(user_id, deleted_at);
                CREATE INDEX IF NOT EXISTS idx_memories_recall
                    ON memories(user_id, tier, priority DESC) WHERE deleted_at IS NULL;
                CREATE INDEX IF NOT EXISTS idx_memories_hash
                    ON memories(user_id, content_hash) WHERE deleted_at IS NULL;
                CREATE INDEX IF NOT EXISTS idx_memories_created ON memories(created_at DESC);
            """)

            await conn.execute("""
                CREATE TABLE IF NOT EXISTS memory_audits (
                    id           UUID PRIMARY KEY,
                    user_id      VARCHAR(255) NOT NULL,
                    thread_id    VARCHAR(255) NOT NULL,
                    start_msg_id VARCHAR(255),
                    end_msg_id   VARCHAR(255),
                    token_count  INTEGER NOT NULL DEFAULT 0,
                    score        DOUBLE PRECISION NOT NULL DEFAULT 0,
                    saved        INTEGER NOT NULL DEFAULT 0,
                    created_at   TIMESTAMPTZ NOT NULL DEFAULT NOW()
                )
            """)

            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_audits_thread
                    ON memory_audits(user_id, thread_id, created_at DESC)
            """)

        logger.info("postgres_schema_initialized")

    def _row_to_memory(self, row: asyncpg.Record) -> Memory:
        """Convert database row to Memory object."""
        return Memory(
            id=str(row["id"]),
            user_id=row["user_id"],
            thread_id=row["thread_id"],
            content=row["content"],
            content_hash=row["content_hash"],
            entities=list(row["entities"]) if row["entities"] else [],
            priority=row["priority"],
            confidence=row["confidence"],
            redaction_map=json.loads(row["redaction_map"]) if row["redaction_map"] else None,
            tier=MemoryTier(row["tier"]),
            source_thread_id=row["source_thread_id"],
            repeats=row["repeats"],
            thread_set=list(row["thread_set"]) if row["thread_set"] else [],
            last_seen_at=row["last_seen_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            decayed_at=row["decayed_at"],
            deleted_at=row["deleted_at"],
        )

    # ==================== CORE CRUD ====================

    async def create(self, memory: Memory) -> Memory:
        """Insert a memory and return the stored row."""
        assert self.pool is not None

        query = """
            INSERT INTO memories (
                id, user_id, thread_id, content, content_hash, entities,
                priority, confidence, redaction_map, tier, source_thread_id,
                repeats, thread_set, last_seen_at, created_at, updated_at
            ) VALUES (
                $1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16
            ) RETURNING *
        """

        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                query,
                memory.id,
                memory.user_id,
                memory.thread_id,
                memory.content,
                memory.content_hash,
                memory.entities,
                memory.priority,
                memory.confidence,
                json.dumps(memory.redaction_map) if memory.redaction_map else None,
                memory.tier.value,
                memory.source_thread_id,
                memory.repeats,
                memory.thread_set,
                memory.last_seen_at or memory.created_at,
                memory.created_at,
                memory.updated_at,
            )
            logger.debug("memory_created", memory_id=memory.id, user_id=memory.user_id, tier=memory.tier.value)
            return self._row_to_memory(row)

    async def get(self, memory_id: str) -> Memory | None:
        """Get a memory by ID, including soft-deleted rows."""
        assert self.pool is not None
        if not _is_uuid(memory_id):
            return None

        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM memories WHERE id = $1", memory_id)
            if row:
                return self._row_to_memory(row)
            return None

    async def update(self, memory_id: str, updates: dict[str, Any]) -> Memory | None:
        """Update specific fields of a memory and return the new row."""
        assert self.pool is not None

        unknown = set(updates) - UPDATABLE_COLUMNS
        if unknown:
            raise ValueError(f"Cannot update columns: {sorted(unknown)}")
        if not updates:
            return await self.get(memory_id)

        # Build dynamic update query
        set_clauses = []
        params: list[Any] = []
        for i, (key, value) in enumerate(updates.items(), 1):
            if key == "redaction_map":
                value = json.dumps(value) if value else None
            elif key == "tier":
                value = MemoryTier(value).value
            set_clauses.append(f"{key} = ${i}")
            params.append(value)

        params.append(memory_id)
        query = f"""
            UPDATE memories
            SET {', '.join(set_clauses)}, updated_at = NOW()
            WHERE id = ${len(params)}
            RETURNING *
        """

        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(query, *params)
            return self._row_to_memory(row) if row else None

    async def soft_delete(self, memory_id: str) -> bool:
        """Mark a memory deleted. Returns False if missing or already deleted."""
        assert self.pool is not None

        query = """
            UPDATE memories
            SET deleted_at = NOW(), updated_at = NOW()
            WHERE id = $1 AND deleted_at IS NULL
        """
        async with self.pool.acquire() as conn:
            result = await conn.execute(query, memory_id)
            return result == "UPDATE 1"

    # ==================== LISTING ====================

    async def list_memories(
        self,
        user_id: str,
        thread_id: str | None = None,
        min_priority: float | None = None,
        include_deleted: bool = False,
        limit: int = 20,
        offset: int = 0,
    ) -> MemoryPage:
        """Paginated listing ordered by priority, newest first within ties."""
        assert self.pool is not None

        conditions = ["user_id = $1"]
        params: list[Any] = [user_id]
        param_idx = 2

        if thread_id:
            conditions.append(f"thread_id = ${param_idx}")
            params.append(thread_id)
            param_idx += 1

        if min_priority is not None:
            conditions.append(f"priority >= ${param_idx}")
            params.append(min_priority)
            param_idx += 1

        if not include_deleted:
            conditions.append("deleted_at IS NULL")

        where = " AND ".join(conditions)
        query = f"""
            SELECT * FROM memories
            WHERE {where}
            ORDER BY priority DESC, created_at DESC
            LIMIT ${param_idx} OFFSET ${param_idx + 1}
        """

        async with self.pool.acquire() as conn:
            total = await conn.fetchval(f"SELECT COUNT(*) FROM memories WHERE {where}", *params)
            rows = await conn.fetch(query, *params, limit, offset)
            return MemoryPage(
                memories=[self._row_to_memory(row) for row in rows],
                total=total,
                limit=limit,
                offset=offset,
            )

    # ==================== RECALL ====================

    async def recall_candidates(
        self,
        user_id: str,
        thread_id: str | None = None,
        limit: int = 5,
        offset: int = 0,
    ) -> list[Memory]:
        """Live memories in recall order: same thread, tier rank, priority, recency."""
        assert self.pool is not None

        params: list[Any] = [user_id]
        order = []
        if thread_id:
            params.append(thread_id)
            order.append("(thread_id = $2) DESC")
        order += [RECALL_TIER_ORDER, "priority DESC", "updated_at DESC"]

        query = f"""
            SELECT * FROM memories
            WHERE user_id = $1 AND deleted_at IS NULL
            ORDER BY {', '.join(order)}
            LIMIT ${len(params) + 1} OFFSET ${len(params) + 2}
        """

        async with self.pool.acquire() as conn:
            rows = await conn.fetch(query, *params, limit, offset)
            return [self._row_to_memory(row) for row in rows]

    # ==================== RECURRENCE ====================

    async def find_by_content_hash(self, user_id: str, content_hash: str) -> Memory | None:
        """Find the live memory holding this exact (normalised) content."""
        assert self.pool is not None

        query = """
            SELECT * FROM memories
            WHERE user_id = $1 AND content_hash = $2 AND deleted_at IS NULL
            ORDER BY created_at ASC
            LIMIT 1
        """
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(query, user_id, content_hash)
            return self._row_to_memory(row) if row else None

    async def record_recurrence(
        self,
        memory_id: str,
        thread_id: str,
        priority: float,
        seen_at: datetime | None = None,
    ) -> Memory | None:
        """Bump repeats, add the thread to thread_set and keep the higher priority."""
        assert self.pool is not None

        query = """
            UPDATE memories
            SET repeats = repeats + 1,
                thread_set = CASE
                    WHEN $2 = ANY(thread_set) THEN thread_set
                    ELSE array_append(thread_set, $2)
                END,
                priority = GREATEST(priority, $3),
                last_seen_at = $4,
                updated_at = NOW()
            WHERE id = $1 AND deleted_at IS NULL
            RETURNING *
        """
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(query, memory_id, thread_id, priority, seen_at or utcnow())
            return self._row_to_memory(row) if row else None

    # ==================== RETENTION ====================

    async def list_live_ids(self, after_id: str | None = None, limit: int = 200) -> list[str]:
        """One keyset page of non-deleted memory ids."""
        assert self.pool is not None

        async with self.pool.acquire() as conn:
            if after_id is None:
                rows = await conn.fetch(
                    "SELECT id FROM memories WHERE deleted_at IS NULL ORDER BY id LIMIT $1",
                    limit,
                )
            else:
                rows = await conn.fetch(
                    """
                    SELECT id FROM memories
                    WHERE deleted_at IS NULL AND id > $1
                    ORDER BY id LIMIT $2
                    """,
                    after_id,
                    limit,
                )
            return [str(row["id"]) for row in rows]

    async def apply_retention(
        self,
        memory_id: str,
        evaluate: Callable[[Memory], T],
    ) -> T | None:
        """
        Lock one row, evaluate it and write the outcome in a single transaction.

        `evaluate` receives the locked row and returns an object with
        `changed`, `priority`, `tier`, `expire`, `decayed` and `evaluated_at`
        attributes. Decay moves `decayed_at` and leaves `updated_at`
        alone. Readers see either the old or the new priority/tier pair,
        never a mix.
        """
        assert self.pool is not None

        async with self.pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    "SELECT * FROM memories WHERE id = $1 AND deleted_at IS NULL FOR UPDATE",
                    memory_id,
                )
                if row is None:
                    return None

                decision = evaluate(self._row_to_memory(row))
                if decision.changed:
                    await conn.execute(
                        """
                        UPDATE memories
                        SET priority = $2,
                            tier = $3,
                            deleted_at = CASE WHEN $4 THEN NOW() ELSE deleted_at END,
                            decayed_at = CASE WHEN $5 THEN $6 ELSE decayed_at END
                        WHERE id = $1
                        """,
                        memory_id,
                        decision.priority,
                        decision.tier.value,
                        decision.expire,
                        decision.decayed,
                        decision.evaluated_at or utcnow(),
                    )
                return decision

    # ==================== AUDIT RECORDS ====================

    async def insert_audit(self, record: AuditRecord) -> str:
        """Append an audit record."""
        assert self.pool is not None

        query = """
            INSERT INTO memory_audits (
                id, user_id, thread_id, start_msg_id, end_msg_id,
                token_count, score, saved, created_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
            RETURNING id
        """

        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                query,
                record.id,
                record.user_id,
                record.thread_id,
                record.start_msg_id,
                record.end_msg_id,
                record.token_count,
                record.score,
                record.saved,
                record.created_at,
            )
            return str(row["id"])

    async def list_audits(
        self,
        user_id: str,
        thread_id: str | None = None,
        limit: int = 20,
    ) -> list[AuditRecord]:
        """Most recent audit records first."""
        assert self.pool is not None

        params: list[Any] = [user_id]
        condition = "user_id = $1"
        if thread_id:
            params.append(thread_id)
            condition += " AND thread_id = $2"

        query = f"""
            SELECT * FROM memory_audits
            WHERE {condition}
            ORDER BY created_at DESC
            LIMIT ${len(params) + 1}
        """

        async with self.pool.acquire() as conn:
            rows = await conn.fetch(query, *params, limit)
            return [
                AuditRecord(
                    id=str(row["id"]),
                    user_id=row["user_id"],
                    thread_id=row["thread_id"],
                    start_msg_id=row["start_msg_id"],
                    end_msg_id=row["end_msg_id"],
                    token_count=row["token_count"],
                    score=row["score"],
                    saved=row["saved"],
                    created_at=row["created_at"],
                )
                for row in rows
            ]

    # ==================== UTILITIES ====================

    async def ping(self) -> bool:
        """Check if Postgres is connected."""
        if self.pool is None:
            return False
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
            return True
        except (asyncpg.PostgresError, OSError) as e:
            logger.warning("postgres_ping_failed", error=str(e))
            return False

    async def count_users(self) -> int:
        """Count distinct users with live memories."""
        assert self.pool is not None
        async with self.pool.acquire() as conn:
            return await conn.fetchval(
                "SELECT COUNT(DISTINCT user_id) FROM memories WHERE deleted_at IS NULL"
            )

    async def count_memories(self, user_id: str | None = None) -> int:
        """Count live memories, optionally for a specific user."""
        assert self.pool is not None
        async with self.pool.acquire() as conn:
            if user_id:
                return await conn.fetchval(
                    "SELECT COUNT(*) FROM memories WHERE user_id = $1 AND deleted_at IS NULL",
                    user_id,
                )
            return await conn.fetchval("SELECT COUNT(*) FROM memories WHERE deleted_at IS NULL")

    async def count_by_tier(self, user_id: str | None = None) -> dict[str, int]:
        """Live memory counts per tier."""
        assert self.pool is not None
        async with self.pool.acquire() as conn:
            if user_id:
                rows = await conn.fetch(
                    """
                    SELECT tier, COUNT(*) AS n FROM memories
                    WHERE user_id = $1 AND deleted_at IS NULL GROUP BY tier
                    """,
                    user_id,
                )
            else:
                rows = await conn.fetch(
                    "SELECT tier, COUNT(*) AS n FROM memories WHERE deleted_at IS NULL GROUP BY tier"
                )
        counts = {tier.value: 0 for tier in MemoryTier}
        for row in rows:
            counts[row["tier"]] = row["n"]
        return counts
