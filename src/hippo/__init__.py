"""Hippo - background memory for conversational assistants.

Decides which parts of a conversation are worth keeping, without ever
blocking the live turn:
- Cadence: per-thread counters decide when a window of messages is audited
- Audit: score, redact, classify into a tier and persist worthwhile messages
- Retention: scheduled decay, expiry, promotion and demotion
- Recall: ranked memories within a hard latency budget

Usage:
    from hippo import HippoConfig, MemoryService

    service = MemoryService(HippoConfig())
    await service.initialize()

    # Every chat message
    service.ingest_message(event)

    # Before building a prompt
    result = await service.recall(user_id, thread_id=thread_id)
"""

__version__ = "0.1.0"

from hippo.models import (
    AuditRecord,
    CadenceState,
    Job,
    JobType,
    Memory,
    MemoryPage,
    MemoryTier,
    MessageEvent,
    RecallResult,
    RedactionResult,
    RetentionStats,
    SaveResult,
    ScoreBreakdown,
)
from hippo.service import MemoryService
from hippo.config import HippoConfig

__all__ = [
    # Core
    "Memory",
    "MemoryService",
    "MemoryTier",
    "MessageEvent",
    "RecallResult",
    "SaveResult",
    # Config
    "HippoConfig",
    # Additional models
    "AuditRecord",
    "CadenceState",
    "Job",
    "JobType",
    "MemoryPage",
    "RedactionResult",
    "RetentionStats",
    "ScoreBreakdown",
]
