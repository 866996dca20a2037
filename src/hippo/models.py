"""Core data models for the Hippo memory service."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

MAX_CONTENT_LENGTH = 1024


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


class MemoryTier(str, Enum):
    """Retention tiers."""

    TIER1 = "TIER1"  # Fact that recurred across threads
    TIER2 = "TIER2"  # Explicit preference or goal
    TIER3 = "TIER3"  # General


class JobType(str, Enum):
    """Kinds of background jobs."""

    AUDIT = "audit"
    RETENTION = "retention"


@dataclass
class Memory:
    """A single persisted memory."""

    user_id: str
    thread_id: str
    content: str

    # Identifiers
    id: str | None = None
    source_thread_id: str | None = None
    content_hash: str | None = None

    # Scoring
    priority: float = 0.5
    confidence: float = 0.8
    tier: MemoryTier = MemoryTier.TIER3

    # Extracted
    entities: list[str] = field(default_factory=list)
    redaction_map: dict[str, str] | None = None

    # Recurrence
    repeats: int = 1
    thread_set: list[str] = field(default_factory=list)
    last_seen_at: datetime | None = None

    # Timestamps
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    decayed_at: datetime | None = None  # Last retention decay write
    deleted_at: datetime | None = None

    def __post_init__(self) -> None:
        if self.id is None:
            self.id = str(uuid.uuid4())
        if self.source_thread_id is None:
            self.source_thread_id = self.thread_id
        if not self.thread_set:
            self.thread_set = [self.thread_id]
        self.priority = clamp(self.priority)
        self.confidence = clamp(self.confidence)
        self.tier = MemoryTier(self.tier)
        self.repeats = max(1, self.repeats)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


@dataclass
class AuditRecord:
    """Append-only record of one audit run over a message window."""

    user_id: str
    thread_id: str
    start_msg_id: str | None = None
    end_msg_id: str | None = None
    token_count: int = 0
    score: float = 0.0  # Average score across the window
    saved: int = 0
    id: str | None = None
    created_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        if self.id is None:
            self.id = str(uuid.uuid4())


@dataclass
class CadenceState:
    """Per-thread accumulation counters. Times are epoch seconds."""

    msg_count: int = 0
    token_count: int = 0
    first_msg_time: float | None = None  # Current window start
    last_msg_time: float | None = None
    last_audit_time: float | None = None


@dataclass
class MessageEvent:
    """A chat message reported by the gateway."""

    user_id: str
    thread_id: str
    msg_id: str
    role: str
    content: str
    input_tokens: int = 0
    output_tokens: int = 0
    timestamp: float | None = None  # Epoch seconds

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass
class Job:
    """A unit of background work. At-most-once, never persisted."""

    type: JobType
    payload: dict[str, Any] = field(default_factory=dict)
    priority: int = 0
    id: str | None = None
    enqueued_at: float = 0.0

    def __post_init__(self) -> None:
        if self.id is None:
            self.id = f"{self.type.value}-{uuid.uuid4().hex[:12]}"


@dataclass
class ScoreBreakdown:
    """Named sub-scores plus the weighted total."""

    relevance: float
    importance: float
    coherence: float
    recency: float
    total: float

    def to_dict(self) -> dict[str, float]:
        return {
            "relevance": self.relevance,
            "importance": self.importance,
            "coherence": self.coherence,
            "recency": self.recency,
            "total": self.total,
        }


@dataclass
class RedactionResult:
    """Output of redact()."""

    redacted: str
    map: dict[str, str] | None = None
    had_pii: bool = False


@dataclass
class RecallResult:
    """Result from recall()."""

    memories: list[Memory]
    count: int
    elapsed_ms: float
    timed_out: bool = False


@dataclass
class MemoryPage:
    """One page of a memory listing."""

    memories: list[Memory]
    total: int
    limit: int
    offset: int


@dataclass
class SaveResult:
    """Result from explicit save operations."""

    success: bool
    memory: Memory | None = None
    superseded: bool = False
    error: str | None = None


@dataclass
class RetentionStats:
    """Counts from one retention pass."""

    processed: int = 0
    decayed: int = 0
    expired: int = 0
    promoted: int = 0
    demoted: int = 0
    errors: int = 0
    duration_ms: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "processed": self.processed,
            "decayed": self.decayed,
            "expired": self.expired,
            "promoted": self.promoted,
            "demoted": self.demoted,
            "errors": self.errors,
            "duration_ms": self.duration_ms,
        }


@dataclass
class AuditOutcome:
    """Summary of one audit job."""

    user_id: str
    thread_id: str
    scored: int = 0
    saved: int = 0
    recurrences: int = 0
    below_threshold: int = 0
    redacted_all: int = 0
    too_long: int = 0
    avg_score: float = 0.0


@dataclass
class TopicExtraction:
    """Topic summary of a message window."""

    topic: str
    ttl_class: str
    recency_hint: str
    entities: list[str] = field(default_factory=list)


@dataclass
class TopicEntry:
    """Tracked state of one topic within a thread. Times are epoch seconds."""

    ttl_class: str
    entities: set[str] = field(default_factory=set)
    first_seen: float = 0.0
    last_seen: float = 0.0
    last_verified: float | None = None
    batch_count: int = 0
