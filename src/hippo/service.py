"""MemoryService - primary interface for Hippo."""

from __future__ import annotations

import time
from threading import Lock
from typing import Any, Callable

import structlog

from hippo.audit import AuditJob, content_fingerprint
from hippo.cadence import CadenceTracker, MessageBuffer
from hippo.config import HippoConfig
from hippo.entities import extract_entities
from hippo.jobs import JobQueue
from hippo.models import (
    MAX_CONTENT_LENGTH,
    Job,
    JobType,
    Memory,
    MemoryPage,
    MemoryTier,
    MessageEvent,
    RecallResult,
    RetentionStats,
    SaveResult,
)
from hippo.observability import (
    RejectionCounters,
    record_audit_triggered,
    record_message_ingested,
    set_active_threads,
    set_postgres_connected,
)
from hippo.recall import RecallService
from hippo.redaction import is_all_redacted, redact
from hippo.retention import RetentionEngine
from hippo.stores.postgres_store import PostgresStore
from hippo.topics import TopicTracker

logger = structlog.get_logger(__name__)

EXPLICIT_SAVE_PRIORITY = 0.9
EXPLICIT_SAVE_CONFIDENCE = 0.8


class MemoryServiceError(Exception):
    """Base class for service errors."""


class MemoryNotFoundError(MemoryServiceError):
    """No memory with the given id."""


class MemoryOwnershipError(MemoryServiceError):
    """The memory belongs to a different user."""


class InvalidMemoryError(MemoryServiceError, ValueError):
    """Content that cannot be stored."""


class MemoryService:
    """
    Main interface for the Hippo memory service.

    Usage:
        service = MemoryService(HippoConfig())
        await service.initialize()

        # Every chat message (never awaits storage)
        service.ingest_message(event)

        # Before building a prompt
        result = await service.recall(user_id, thread_id=thread_id)
    """

    def __init__(
        self,
        config: HippoConfig,
        store: PostgresStore | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.store = store or PostgresStore(config.postgres)
        self.cadence = CadenceTracker(config.cadence, clock=clock)
        self.buffer = MessageBuffer(config.cadence.buffer_size)
        self.topics = TopicTracker(clock=clock) if config.enable_topics else None
        self.rejections = RejectionCounters()
        self.queue = JobQueue(config.queue)
        self.recall_service = RecallService(self.store, config.recall)
        self.retention = RetentionEngine(self.store, config.retention)
        self.audit_job = AuditJob(
            store=self.store,
            cadence=self.cadence,
            buffer=self.buffer,
            rejections=self.rejections,
            config=config.scoring,
            topics=self.topics,
            clock=clock,
        )

        # Threads with an audit queued or running
        self._audits_pending: set[tuple[str, str]] = set()
        self._pending_lock = Lock()

        self.queue.register(JobType.AUDIT, self._handle_audit)
        self.queue.register(JobType.RETENTION, self._handle_retention)
        self._initialized = False

    async def initialize(self, start_background: bool = True) -> None:
        """Connect to Postgres, create the schema and start background work."""
        await self.store.connect()
        await self.store.initialize_schema()
        set_postgres_connected(True)

        if start_background:
            self.queue.start()
            if self.config.enable_retention:
                self.retention.start()
                self.retention.scheduler.add_job(
                    self.cleanup_state,
                    "interval",
                    hours=1,
                    id="state_cleanup",
                    replace_existing=True,
                )

        self._initialized = True
        logger.info(
            "memory_service_initialized",
            retention_enabled=self.config.enable_retention,
            topics_enabled=self.topics is not None,
        )

    async def close(self) -> None:
        """Clean shutdown."""
        self.retention.stop()
        await self.queue.stop(drain=True)
        await self.store.close()
        set_postgres_connected(False)
        self._initialized = False
        logger.info("memory_service_closed")

    # ==================== INGESTION ====================

    def ingest_message(self, event: MessageEvent) -> bool:
        """
        Record a chat message. In-memory only, never touches storage.

        Returns:
            True if this message caused an audit to be enqueued
        """
        self.cadence.record_message(
            event.user_id,
            event.thread_id,
            {"input": event.input_tokens, "output": event.output_tokens},
            event.timestamp,
        )
        self.buffer.append(event)
        record_message_ingested()

        if not self.cadence.should_trigger_audit(event.user_id, event.thread_id):
            return False
        return self._enqueue_audit(
            event.user_id,
            event.thread_id,
            priority=self.config.queue.audit_priority,
            trigger="cadence",
        )

    def trigger_audit(self, user_id: str, thread_id: str) -> bool:
        """Manually enqueue an audit for a thread."""
        return self._enqueue_audit(
            user_id,
            thread_id,
            priority=self.config.queue.manual_audit_priority,
            trigger="manual",
        )

    def trigger_retention(self) -> bool:
        """Enqueue a retention pass."""
        return self.queue.enqueue(
            Job(type=JobType.RETENTION, priority=self.config.queue.retention_priority)
        )

    def _enqueue_audit(self, user_id: str, thread_id: str, priority: int, trigger: str) -> bool:
        key = (user_id, thread_id)
        with self._pending_lock:
            if key in self._audits_pending:
                return False
            self._audits_pending.add(key)

        job = Job(
            type=JobType.AUDIT,
            payload={"user_id": user_id, "thread_id": thread_id, "trigger": trigger},
            priority=priority,
        )
        if not self.queue.enqueue(job):
            with self._pending_lock:
                self._audits_pending.discard(key)
            self.rejections.increment("rate_limited")
            return False

        record_audit_triggered(trigger)
        logger.info("audit_enqueued", user_id=user_id, thread_id=thread_id, trigger=trigger)
        return True

    async def _handle_audit(self, job: Job) -> None:
        key = (job.payload["user_id"], job.payload["thread_id"])
        try:
            await self.audit_job.handle(job)
        finally:
            with self._pending_lock:
                self._audits_pending.discard(key)

    async def _handle_retention(self, job: Job) -> RetentionStats:
        return await self.retention.run_once()

    # ==================== RECALL ====================

    async def recall(
        self,
        user_id: str,
        thread_id: str | None = None,
        max_items: int | None = None,
        deadline_ms: int | None = None,
    ) -> RecallResult:
        """Deadline-bound ranked recall."""
        return await self.recall_service.recall(
            user_id,
            thread_id=thread_id,
            max_items=max_items,
            deadline_ms=deadline_ms,
        )

    async def list_memories(
        self,
        user_id: str,
        thread_id: str | None = None,
        min_priority: float | None = None,
        include_deleted: bool = False,
        limit: int | None = None,
        offset: int = 0,
    ) -> MemoryPage:
        """Paginated listing for a user."""
        api = self.config.api
        limit = max(1, min(api.max_list_limit, limit or api.default_list_limit))
        return await self.store.list_memories(
            user_id,
            thread_id=thread_id,
            min_priority=min_priority,
            include_deleted=include_deleted,
            limit=limit,
            offset=max(0, offset),
        )

    # ==================== EXPLICIT SAVES ====================

    async def save_memory(
        self,
        user_id: str,
        thread_id: str,
        content: str,
        priority: float | None = None,
        tier: MemoryTier | None = None,
    ) -> SaveResult:
        """
        Store a memory the user asked to keep.

        Content is redacted first. An existing memory with the same content
        is superseded instead of duplicated.
        """
        try:
            redacted, redaction_map = self._prepare_content(content)
        except InvalidMemoryError as e:
            return SaveResult(success=False, error=str(e))

        fingerprint = content_fingerprint(redacted)
        existing = await self.store.find_by_content_hash(user_id, fingerprint)

        if existing is not None:
            final_priority = (
                priority if priority is not None
                else max(existing.priority, EXPLICIT_SAVE_PRIORITY)
            )
            await self.store.update(
                str(existing.id),
                {
                    "content": redacted,
                    "redaction_map": redaction_map,
                    "priority": final_priority,
                    "tier": (tier or existing.tier).value,
                },
            )
            memory = await self.store.record_recurrence(str(existing.id), thread_id, final_priority)
            logger.info("memory_superseded", user_id=user_id, memory_id=existing.id)
            return SaveResult(success=True, memory=memory or existing, superseded=True)

        memory = await self.store.create(
            Memory(
                user_id=user_id,
                thread_id=thread_id,
                content=redacted,
                content_hash=fingerprint,
                entities=extract_entities([redacted]),
                priority=priority if priority is not None else EXPLICIT_SAVE_PRIORITY,
                confidence=EXPLICIT_SAVE_CONFIDENCE,
                redaction_map=redaction_map,
                tier=tier or MemoryTier.TIER1,
            )
        )
        logger.info("memory_saved", user_id=user_id, memory_id=memory.id, tier=memory.tier.value)
        return SaveResult(success=True, memory=memory)

    async def patch_memory(
        self,
        memory_id: str,
        user_id: str,
        content: str | None = None,
        priority: float | None = None,
        tier: MemoryTier | None = None,
    ) -> Memory:
        """Update content, priority or tier of a user's memory."""
        await self._get_owned(memory_id, user_id)

        updates: dict[str, Any] = {}
        if content is not None:
            redacted, redaction_map = self._prepare_content(content)
            updates["content"] = redacted
            updates["content_hash"] = content_fingerprint(redacted)
            updates["redaction_map"] = redaction_map
            updates["entities"] = extract_entities([redacted])
        if priority is not None:
            updates["priority"] = max(0.0, min(1.0, priority))
        if tier is not None:
            updates["tier"] = MemoryTier(tier).value

        updated = await self.store.update(memory_id, updates)
        if updated is None:
            raise MemoryNotFoundError(memory_id)
        return updated

    async def delete_memory(self, memory_id: str, user_id: str) -> bool:
        """Soft-delete a user's memory."""
        await self._get_owned(memory_id, user_id)
        deleted = await self.store.soft_delete(memory_id)
        logger.info("memory_deleted", user_id=user_id, memory_id=memory_id, deleted=deleted)
        return deleted

    async def _get_owned(self, memory_id: str, user_id: str) -> Memory:
        memory = await self.store.get(memory_id)
        if memory is None or memory.is_deleted:
            raise MemoryNotFoundError(memory_id)
        if memory.user_id != user_id:
            raise MemoryOwnershipError(memory_id)
        return memory

    def _prepare_content(self, content: str) -> tuple[str, dict[str, str] | None]:
        result = redact(content)
        if is_all_redacted(result.redacted):
            self.rejections.increment("redacted_all")
            raise InvalidMemoryError("Content cannot be all PII")
        redacted = result.redacted.strip()
        if len(redacted) > MAX_CONTENT_LENGTH:
            self.rejections.increment("too_long")
            raise InvalidMemoryError(f"Content exceeds {MAX_CONTENT_LENGTH} characters")
        return redacted, result.map

    # ==================== UTILITIES ====================

    def cleanup_state(self) -> dict[str, int]:
        """Drop stale per-thread cadence and topic state."""
        removed = {"cadence": self.cadence.cleanup()}
        if self.topics is not None:
            removed["topics"] = self.topics.cleanup()
        return removed

    def get_metrics(self) -> dict[str, Any]:
        """Snapshot for GET /metrics."""
        cadence = self.cadence.get_metrics()
        set_active_threads(cadence["active_threads"])

        metrics: dict[str, Any] = {
            "queue": self.queue.get_metrics(),
            "cadence": {**cadence, "buffered_messages": len(self.buffer)},
            "rejections": self.rejections.snapshot(),
            "audits": {
                "run": self.audit_job.audits_run,
                "saved": self.audit_job.memories_saved,
                "pending": len(self._audits_pending),
            },
        }
        if self.topics is not None:
            metrics["topics"] = self.topics.get_metrics()
        if self.retention.last_stats is not None:
            metrics["retention"] = self.retention.last_stats.to_dict()
        return metrics

    async def health_check(self) -> dict[str, bool]:
        """Check health of all components."""
        postgres = await self.store.ping()
        set_postgres_connected(postgres)
        return {
            "postgres": postgres,
            "queue": self.queue.is_running(),
            "retention": self.retention.is_running(),
        }

    async def get_stats(self, user_id: str | None = None) -> dict[str, Any]:
        """Get memory system statistics."""
        stats: dict[str, Any] = {
            "total_memories": await self.store.count_memories(user_id),
        }
        for tier, count in (await self.store.count_by_tier(user_id)).items():
            stats[f"memories_{tier.lower()}"] = count
        if user_id is None:
            stats["total_users"] = await self.store.count_users()
        return stats
