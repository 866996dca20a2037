"""Per-thread topic tracking.

Each audit batch is summarised into a topic with a freshness class. The
tracker remembers topics per thread so callers can tell whether a topic
keeps coming up (stable) and whether what they know about it has aged past
its class TTL (stale).
"""

from __future__ import annotations

import re
import time
from dataclasses import replace
from threading import Lock
from typing import Callable, Iterable

import structlog

from hippo.entities import extract_entities
from hippo.models import MessageEvent, TopicEntry, TopicExtraction

logger = structlog.get_logger(__name__)

HOUR = 3600.0
DAY = 24 * HOUR

TTL_BY_CLASS: dict[str, float] = {
    "news/current": 1 * HOUR,
    "pricing": 24 * HOUR,
    "releases": 72 * HOUR,
    "docs": 7 * DAY,
    "general": 30 * DAY,
}

NEWS_KEYWORDS = [
    "today", "this week", "breaking", "latest", "headline", "announced",
    "released", "earnings", "layoff", "acquired", "news", "recent", "update",
]
PRICING_KEYWORDS = [
    "price", "cost", "buy", "availability", "stock", "deal", "discount",
    "free", "premium", "subscription", "fee", "dollar", "euro", "pound",
]
RELEASES_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"release", r"version", r"v\d+\.\d+", r"beta", r"alpha", r"rc\d+",
        r"changelog", r"what's new", r"update", r"upgrade",
    )
]
DOCS_KEYWORDS = [
    "documentation", "docs", "api", "reference", "guide", "tutorial",
    "how to", "example", "getting started", "manual",
]

WINDOW_MESSAGES = 16
MAX_CONTENT_CHARS = 5000
TOPIC_LENGTH = 100


def _topic_key(topic: str) -> str:
    return topic.lower()[:TOPIC_LENGTH]


def _keyword_hits(text: str, ttl_class: str) -> int:
    if ttl_class == "news/current":
        return sum(1 for kw in NEWS_KEYWORDS if kw in text)
    if ttl_class == "pricing":
        return sum(1 for kw in PRICING_KEYWORDS if kw in text)
    if ttl_class == "releases":
        return sum(1 for p in RELEASES_PATTERNS if p.search(text))
    if ttl_class == "docs":
        return sum(1 for kw in DOCS_KEYWORDS if kw in text)
    return 0


def extract_topic(messages: Iterable[MessageEvent]) -> TopicExtraction:
    """
    Summarise a message window into a topic.

    The freshness class is picked by keyword family in priority order
    (news, pricing, releases, docs), and falls back to general. The topic
    text is the user message with the most hits for that family, truncated.
    """
    window = list(messages)[-WINDOW_MESSAGES:]
    combined = " ".join(m.content[:MAX_CONTENT_CHARS] for m in window).lower()

    if any(kw in combined for kw in NEWS_KEYWORDS):
        ttl_class, recency_hint = "news/current", "day"
    elif any(kw in combined for kw in PRICING_KEYWORDS):
        ttl_class, recency_hint = "pricing", "week"
    elif any(p.search(combined) for p in RELEASES_PATTERNS):
        ttl_class, recency_hint = "releases", "week"
    elif any(kw in combined for kw in DOCS_KEYWORDS):
        ttl_class, recency_hint = "docs", "month"
    else:
        ttl_class, recency_hint = "general", "month"

    user_messages = [m for m in window if m.role == "user"]
    candidates = user_messages or window

    topic = "general discussion"
    if candidates:
        best = candidates[-1]
        best_hits = 0
        if ttl_class != "general":
            for message in candidates:
                hits = _keyword_hits(message.content.lower(), ttl_class)
                if hits > best_hits:
                    best, best_hits = message, hits
        topic = best.content.strip()[:TOPIC_LENGTH] or topic

    entities = extract_entities(m.content for m in window)
    return TopicExtraction(
        topic=topic,
        ttl_class=ttl_class,
        recency_hint=recency_hint,
        entities=entities,
    )


class TopicTracker:
    """Thread-safe map of thread_id -> {topic key -> TopicEntry}."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._threads: dict[str, dict[str, TopicEntry]] = {}
        self._last_batch: dict[str, float] = {}
        self._lock = Lock()

    def record_topic(self, thread_id: str, extraction: TopicExtraction) -> TopicEntry:
        """Record one batch. Entities accumulate across batches."""
        now = self._clock()
        key = _topic_key(extraction.topic)
        with self._lock:
            topics = self._threads.setdefault(thread_id, {})
            entry = topics.get(key)
            if entry is None:
                entry = TopicEntry(
                    ttl_class=extraction.ttl_class,
                    entities=set(extraction.entities),
                    first_seen=now,
                    last_seen=now,
                    batch_count=1,
                )
                topics[key] = entry
            else:
                entry.entities |= set(extraction.entities)
                entry.last_seen = now
                entry.batch_count += 1
            self._last_batch[thread_id] = now
            snapshot = replace(entry, entities=set(entry.entities))

        logger.debug("topic_recorded", thread_id=thread_id, topic=key, batch_count=snapshot.batch_count)
        return snapshot

    def get_topic(self, thread_id: str, topic: str) -> TopicEntry | None:
        with self._lock:
            entry = self._threads.get(thread_id, {}).get(_topic_key(topic))
            return replace(entry, entities=set(entry.entities)) if entry else None

    def get_thread_topics(self, thread_id: str) -> dict[str, TopicEntry]:
        with self._lock:
            return {
                key: replace(entry, entities=set(entry.entities))
                for key, entry in self._threads.get(thread_id, {}).items()
            }

    def is_topic_stable(self, thread_id: str, topic: str) -> bool:
        """A topic is stable once it has appeared in two or more batches."""
        entry = self.get_topic(thread_id, topic)
        return entry is not None and entry.batch_count >= 2

    def is_topic_stale(self, thread_id: str, topic: str) -> bool:
        """Unknown topics are stale, as are topics not verified within their TTL."""
        entry = self.get_topic(thread_id, topic)
        if entry is None:
            return True
        reference = entry.last_verified if entry.last_verified is not None else entry.first_seen
        return self._clock() - reference >= TTL_BY_CLASS.get(entry.ttl_class, TTL_BY_CLASS["general"])

    def mark_topic_verified(self, thread_id: str, topic: str) -> bool:
        now = self._clock()
        with self._lock:
            entry = self._threads.get(thread_id, {}).get(_topic_key(topic))
            if entry is None:
                return False
            entry.last_verified = now
            return True

    def cleanup(self, max_age_seconds: float = DAY) -> int:
        """Forget threads with no batch in max_age_seconds. Returns threads removed."""
        now = self._clock()
        with self._lock:
            stale = [t for t, last in self._last_batch.items() if now - last > max_age_seconds]
            for thread_id in stale:
                self._threads.pop(thread_id, None)
                self._last_batch.pop(thread_id, None)

        if stale:
            logger.info("topic_cleanup", removed=len(stale), remaining=len(self._threads))
        return len(stale)

    def get_metrics(self) -> dict[str, int]:
        with self._lock:
            return {
                "threads": len(self._threads),
                "topics": sum(len(t) for t in self._threads.values()),
            }
