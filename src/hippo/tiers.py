"""Tier classification and per-tier retention policy."""

from __future__ import annotations

import re
from dataclasses import dataclass

from hippo.config import RetentionConfig
from hippo.models import MemoryTier

# Explicit preference or goal phrasing
TIER2_PATTERN = re.compile(r"\b(prefer|always|goal|requirement)", re.IGNORECASE)

# Recall order: durable preferences first, general facts last
RECALL_RANK: dict[MemoryTier, int] = {
    MemoryTier.TIER2: 0,
    MemoryTier.TIER1: 1,
    MemoryTier.TIER3: 2,
}


@dataclass(frozen=True)
class TierPolicy:
    """Retention parameters for one tier."""

    ttl_days: int
    decay_per_week: float
    priority_floor: float


def classify_tier(content: str) -> MemoryTier:
    """
    Assign a tier at save time.

    TIER1 is never assigned here. It is only reached by promotion once a fact
    recurs across threads.
    """
    if TIER2_PATTERN.search(content):
        return MemoryTier.TIER2
    return MemoryTier.TIER3


def get_policy(tier: MemoryTier, config: RetentionConfig | None = None) -> TierPolicy:
    config = config or RetentionConfig()
    if tier == MemoryTier.TIER1:
        return TierPolicy(
            ttl_days=config.tier1_ttl_days,
            decay_per_week=config.tier1_decay_per_week,
            priority_floor=config.tier1_priority_floor,
        )
    if tier == MemoryTier.TIER2:
        return TierPolicy(
            ttl_days=config.tier2_ttl_days,
            decay_per_week=config.tier2_decay_per_week,
            priority_floor=config.tier2_priority_floor,
        )
    return TierPolicy(
        ttl_days=config.tier3_ttl_days,
        decay_per_week=config.tier3_decay_per_week,
        priority_floor=config.tier3_priority_floor,
    )


def recall_rank(tier: MemoryTier) -> int:
    return RECALL_RANK[MemoryTier(tier)]
