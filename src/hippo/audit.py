"""Audit job: turn a window of conversation into zero or more memories."""

from __future__ import annotations

import hashlib
import re
import time
from datetime import datetime, timezone
from typing import Callable

import structlog

from hippo.cadence import CadenceTracker, MessageBuffer
from hippo.config import ScoringConfig
from hippo.entities import extract_entities
from hippo.models import (
    MAX_CONTENT_LENGTH,
    AuditOutcome,
    AuditRecord,
    Job,
    Memory,
    MessageEvent,
)
from hippo.observability import (
    RejectionCounters,
    record_memory_saved,
    record_recurrence,
    track_audit_time,
)
from hippo.redaction import is_all_redacted, redact
from hippo.scorer import ScoringContext, score
from hippo.stores.postgres_store import PostgresStore
from hippo.tiers import classify_tier
from hippo.topics import TopicTracker, extract_topic

logger = structlog.get_logger(__name__)

_WHITESPACE = re.compile(r"\s+")


def content_fingerprint(content: str) -> str:
    """Hash of case- and whitespace-normalised content, used to spot repeats."""
    normalised = _WHITESPACE.sub(" ", content.strip().lower())
    return hashlib.sha256(normalised.encode()).hexdigest()


def _as_datetime(timestamp: float | None) -> datetime | None:
    if timestamp is None:
        return None
    return datetime.fromtimestamp(timestamp, tz=timezone.utc)


class AuditJob:
    """
    Scores pending messages for a thread and persists the worthwhile ones.

    Per message: score, drop below threshold, redact, drop pure PII, drop
    oversize content, classify the tier, then either record a recurrence of
    an existing memory or create a new one. The window is closed with an
    audit record and the thread's cadence is reset.
    """

    def __init__(
        self,
        store: PostgresStore,
        cadence: CadenceTracker,
        buffer: MessageBuffer,
        rejections: RejectionCounters,
        config: ScoringConfig | None = None,
        topics: TopicTracker | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.cadence = cadence
        self.buffer = buffer
        self.rejections = rejections
        self.config = config or ScoringConfig()
        self.topics = topics
        self._clock = clock
        self.audits_run = 0
        self.memories_saved = 0

    async def handle(self, job: Job) -> AuditOutcome:
        """JobQueue entry point."""
        return await self.run(job.payload["user_id"], job.payload["thread_id"])

    async def run(self, user_id: str, thread_id: str) -> AuditOutcome:
        messages = self.buffer.drain(user_id, thread_id)
        outcome = AuditOutcome(user_id=user_id, thread_id=thread_id)

        try:
            async with track_audit_time(user_id, thread_id):
                await self._process(messages, outcome)
        finally:
            self.cadence.mark_audit_complete(user_id, thread_id)
            self.audits_run += 1

        if self.topics is not None and messages:
            self.topics.record_topic(thread_id, extract_topic(messages))

        logger.info(
            "audit_complete",
            user_id=user_id,
            thread_id=thread_id,
            scored=outcome.scored,
            saved=outcome.saved,
            recurrences=outcome.recurrences,
            avg_score=round(outcome.avg_score, 3),
        )
        return outcome

    async def _process(self, messages: list[MessageEvent], outcome: AuditOutcome) -> None:
        now = self._clock()
        timestamps = [m.timestamp for m in messages if m.timestamp is not None]
        context = ScoringContext(
            thread_start_time=min(timestamps) if timestamps else None,
            now=now,
        )

        scores: list[float] = []
        for message in messages:
            quality = score(message, context, self.config)
            scores.append(quality)
            outcome.scored += 1

            if quality < self.config.quality_threshold:
                outcome.below_threshold += 1
                continue

            try:
                await self._save(message, quality, outcome)
            except Exception as e:
                logger.error(
                    "audit_item_failed",
                    user_id=message.user_id,
                    thread_id=message.thread_id,
                    msg_id=message.msg_id,
                    error=str(e),
                )

        self.rejections.increment("below_threshold", outcome.below_threshold)
        outcome.avg_score = sum(scores) / len(scores) if scores else 0.0

        record = AuditRecord(
            user_id=outcome.user_id,
            thread_id=outcome.thread_id,
            start_msg_id=messages[0].msg_id if messages else None,
            end_msg_id=messages[-1].msg_id if messages else None,
            token_count=sum(m.total_tokens for m in messages),
            score=outcome.avg_score,
            saved=outcome.saved,
        )
        try:
            await self.store.insert_audit(record)
        except Exception as e:
            logger.error("audit_record_failed", user_id=outcome.user_id, thread_id=outcome.thread_id, error=str(e))

    async def _save(self, message: MessageEvent, quality: float, outcome: AuditOutcome) -> None:
        redaction = redact(message.content)
        if is_all_redacted(redaction.redacted):
            outcome.redacted_all += 1
            self.rejections.increment("redacted_all")
            return

        content = redaction.redacted.strip()
        if len(content) > MAX_CONTENT_LENGTH:
            outcome.too_long += 1
            self.rejections.increment("too_long")
            return

        fingerprint = content_fingerprint(content)
        seen_at = _as_datetime(message.timestamp)

        existing = await self.store.find_by_content_hash(message.user_id, fingerprint)
        if existing is not None:
            await self.store.record_recurrence(
                str(existing.id), message.thread_id, quality, seen_at
            )
            outcome.recurrences += 1
            record_recurrence()
            logger.debug("memory_recurred", memory_id=existing.id, thread_id=message.thread_id)
            return

        tier = classify_tier(content)
        memory = Memory(
            user_id=message.user_id,
            thread_id=message.thread_id,
            content=content,
            content_hash=fingerprint,
            entities=extract_entities([content]),
            priority=quality,
            confidence=self.config.audit_confidence,
            redaction_map=redaction.map,
            tier=tier,
            last_seen_at=seen_at,
        )
        await self.store.create(memory)
        outcome.saved += 1
        self.memories_saved += 1
        record_memory_saved(tier.value)
