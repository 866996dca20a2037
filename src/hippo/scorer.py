"""Heuristic quality scoring for conversation messages.

Q = 0.4*relevance + 0.3*importance + 0.2*coherence + 0.1*recency

Every factor is a pure function of the message text, the role, and explicit
timestamps, so identical input always yields an identical score.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass

from hippo.config import ScoringConfig
from hippo.models import MessageEvent, ScoreBreakdown, clamp

RELEVANCE_KEYWORDS = [
    "prefer", "like", "want", "need", "always", "never", "remember",
    "important", "critical", "must", "should", "requirement", "constraint",
    "use", "avoid", "implement", "design", "architecture", "pattern",
]

ENTITY_MARKERS = ["@", "#", "http://", "https://", ".com", ".org", ".io"]

STRONG_INDICATORS = ["always", "never", "must", "critical", "important", "requirement"]
DECISION_INDICATORS = ["decided", "chosen", "selected", "prefer", "use"]

TRUNCATION_MARKER = "[truncated]"
MIN_THREAD_DURATION = 60.0  # seconds

_SENTENCE_PUNCTUATION = re.compile(r"[.!?]")
_UPPERCASE = re.compile(r"[A-Z]")


@dataclass
class ScoringContext:
    """Thread timing used by the recency factor. Times are epoch seconds."""

    thread_start_time: float | None = None
    now: float | None = None


def score_relevance(content: str, role: str) -> float:
    """Entity density, keyword hits and specificity."""
    lower = content.lower()
    score = 0.3

    entity_count = sum(lower.count(marker) for marker in ENTITY_MARKERS)
    score += min(0.3, entity_count * 0.05)

    keyword_count = sum(1 for keyword in RELEVANCE_KEYWORDS if keyword in lower)
    score += min(0.3, keyword_count * 0.05)

    if len(content) > 100:
        score += 0.1
    if len(content) > 300:
        score += 0.1

    if role == "user":
        score += 0.1

    return min(1.0, score)


def score_importance(content: str, role: str) -> float:
    """Preferences, decisions and constraints."""
    lower = content.lower()
    score = 0.2

    if any(word in lower for word in STRONG_INDICATORS):
        score += 0.4
    if any(word in lower for word in DECISION_INDICATORS):
        score += 0.2
    if "?" in content:
        score += 0.1
    if role == "user":
        score += 0.1

    return min(1.0, score)


def score_coherence(content: str) -> float:
    """Length band, sentence structure and completeness."""
    score = 0.3
    length = len(content.strip())

    if 20 < length < 500:
        score += 0.3
    elif length >= 500:
        score += 0.2

    if _SENTENCE_PUNCTUATION.search(content):
        score += 0.2
    if _UPPERCASE.search(content):
        score += 0.1

    if not content.endswith("...") and TRUNCATION_MARKER not in content:
        score += 0.1

    return min(1.0, score)


def score_recency(
    timestamp: float | None,
    thread_start_time: float | None,
    now: float | None,
) -> float:
    """
    Exponential decay of message age relative to the observed thread duration.

    The last message in a thread scores ~1.0 and the first one exp(-1).
    Without a thread start there is nothing to compare against, so a flat 0.8
    is returned.
    """
    if thread_start_time is None:
        return 0.8

    reference = now if now is not None else timestamp
    if reference is None:
        return 0.8
    ts = timestamp if timestamp is not None else reference

    duration = max(reference - thread_start_time, MIN_THREAD_DURATION)
    age = max(0.0, reference - ts)
    return max(0.1, math.exp(-age / duration))


def get_detailed_score(
    message: MessageEvent,
    context: ScoringContext | None = None,
    config: ScoringConfig | None = None,
) -> ScoreBreakdown:
    """Score a message and return every factor alongside the total."""
    context = context or ScoringContext()
    config = config or ScoringConfig()

    relevance = score_relevance(message.content, message.role)
    importance = score_importance(message.content, message.role)
    coherence = score_coherence(message.content)
    recency = score_recency(message.timestamp, context.thread_start_time, context.now)

    total = (
        config.relevance_weight * relevance
        + config.importance_weight * importance
        + config.coherence_weight * coherence
        + config.recency_weight * recency
    )

    return ScoreBreakdown(
        relevance=relevance,
        importance=importance,
        coherence=coherence,
        recency=recency,
        total=clamp(total),
    )


def score(
    message: MessageEvent,
    context: ScoringContext | None = None,
    config: ScoringConfig | None = None,
) -> float:
    """Quality score in [0, 1]."""
    return get_detailed_score(message, context, config).total
