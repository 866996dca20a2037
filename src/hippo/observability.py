"""Observability: Prometheus metrics and structured logging for Hippo."""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from threading import Lock
from typing import AsyncGenerator

import structlog
from prometheus_client import Counter, Gauge, Histogram

from hippo.models import RetentionStats

logger = structlog.get_logger(__name__)

REJECTION_REASONS = ("below_threshold", "redacted_all", "too_long", "rate_limited")


# ==================== LOGGING ====================


def configure_logging(debug: bool = False, log_level: str = "INFO") -> None:
    """Configure structlog for console (debug) or JSON output."""
    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]
    if debug:
        processors.append(structlog.dev.ConsoleRenderer())
    else:
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())

    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# ==================== METRICS ====================


class HippoMetrics:
    """Prometheus metrics for the Hippo memory service."""

    _instance: "HippoMetrics | None" = None

    def __init__(self) -> None:
        # Ingestion
        self.messages_ingested = Counter(
            "hippo_messages_ingested_total",
            "Message events received",
        )
        self.audits_triggered = Counter(
            "hippo_audits_triggered_total",
            "Audit jobs enqueued",
            ["trigger"],  # cadence, manual
        )

        # Queue
        self.jobs_processed = Counter(
            "hippo_jobs_processed_total",
            "Background jobs processed",
            ["job_type", "status"],  # success, failure
        )
        self.jobs_dropped = Counter(
            "hippo_jobs_dropped_total",
            "Jobs rejected at enqueue",
        )
        self.job_latency = Histogram(
            "hippo_job_seconds",
            "Background job duration in seconds",
            ["job_type"],
            buckets=[0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
        )
        self.queue_depth = Gauge(
            "hippo_queue_depth",
            "Jobs waiting in the queue",
        )

        # Audit results
        self.memories_saved = Counter(
            "hippo_memories_saved_total",
            "Memories created",
            ["tier"],
        )
        self.memories_rejected = Counter(
            "hippo_memories_rejected_total",
            "Messages not saved",
            ["reason"],
        )
        self.recurrences = Counter(
            "hippo_recurrences_total",
            "Existing memories seen again",
        )
        self.audit_latency = Histogram(
            "hippo_audit_seconds",
            "Audit duration in seconds",
            buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
        )

        # Recall
        self.recall_latency = Histogram(
            "hippo_recall_seconds",
            "Recall latency in seconds",
            buckets=[0.001, 0.005, 0.01, 0.02, 0.03, 0.05, 0.1, 0.25],
        )
        self.recall_timeouts = Counter(
            "hippo_recall_timeouts_total",
            "Recalls that hit their deadline",
        )

        # Retention
        self.retention_changes = Counter(
            "hippo_retention_changes_total",
            "Rows changed by retention passes",
            ["action"],  # decayed, expired, promoted, demoted
        )
        self.retention_runs = Counter(
            "hippo_retention_runs_total",
            "Retention passes",
            ["status"],
        )

        # Cadence
        self.active_threads = Gauge(
            "hippo_cadence_active_threads",
            "Threads tracked by the cadence tracker",
        )

        # Connection health
        self.postgres_connected = Gauge(
            "hippo_postgres_connected",
            "Postgres connection status (1=connected, 0=disconnected)",
        )

    @classmethod
    def get_instance(cls) -> "HippoMetrics":
        """Get singleton metrics instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance


class RejectionCounters:
    """In-process tally of why messages were not saved."""

    def __init__(self) -> None:
        self._counts: dict[str, int] = {reason: 0 for reason in REJECTION_REASONS}
        self._lock = Lock()

    def increment(self, reason: str, count: int = 1) -> None:
        if count <= 0:
            return
        with self._lock:
            self._counts[reason] = self._counts.get(reason, 0) + count
        record_rejection(reason, count)

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return dict(self._counts)


# ==================== TIMING CONTEXT MANAGERS ====================


@asynccontextmanager
async def track_recall_time(user_id: str) -> AsyncGenerator[None, None]:
    """Track recall timing."""
    metrics = HippoMetrics.get_instance()
    start = time.perf_counter()
    try:
        yield
    finally:
        elapsed = time.perf_counter() - start
        metrics.recall_latency.observe(elapsed)
        logger.debug("recall_timed", user_id=user_id, duration_s=elapsed)


@asynccontextmanager
async def track_audit_time(user_id: str, thread_id: str) -> AsyncGenerator[None, None]:
    """Track audit timing."""
    metrics = HippoMetrics.get_instance()
    start = time.perf_counter()
    try:
        yield
    finally:
        elapsed = time.perf_counter() - start
        metrics.audit_latency.observe(elapsed)
        logger.debug("audit_timed", user_id=user_id, thread_id=thread_id, duration_s=elapsed)


# ==================== HELPER FUNCTIONS ====================


def record_message_ingested() -> None:
    HippoMetrics.get_instance().messages_ingested.inc()


def record_audit_triggered(trigger: str) -> None:
    HippoMetrics.get_instance().audits_triggered.labels(trigger=trigger).inc()


def record_job(job_type: str, success: bool, seconds: float) -> None:
    """Record a processed job."""
    metrics = HippoMetrics.get_instance()
    status = "success" if success else "failure"
    metrics.jobs_processed.labels(job_type=job_type, status=status).inc()
    metrics.job_latency.labels(job_type=job_type).observe(seconds)


def record_job_dropped() -> None:
    HippoMetrics.get_instance().jobs_dropped.inc()


def set_queue_depth(depth: int) -> None:
    HippoMetrics.get_instance().queue_depth.set(depth)


def record_memory_saved(tier: str) -> None:
    HippoMetrics.get_instance().memories_saved.labels(tier=tier).inc()


def record_rejection(reason: str, count: int = 1) -> None:
    HippoMetrics.get_instance().memories_rejected.labels(reason=reason).inc(count)


def record_recurrence() -> None:
    HippoMetrics.get_instance().recurrences.inc()


def record_recall_timeout() -> None:
    HippoMetrics.get_instance().recall_timeouts.inc()


def record_retention_run(stats: RetentionStats, success: bool = True) -> None:
    """Record the outcome of a retention pass."""
    metrics = HippoMetrics.get_instance()
    metrics.retention_runs.labels(status="success" if success else "failure").inc()
    for action in ("decayed", "expired", "promoted", "demoted"):
        count = getattr(stats, action)
        if count:
            metrics.retention_changes.labels(action=action).inc(count)


def set_active_threads(count: int) -> None:
    HippoMetrics.get_instance().active_threads.set(count)


def set_postgres_connected(connected: bool) -> None:
    """Set Postgres connection status."""
    HippoMetrics.get_instance().postgres_connected.set(1 if connected else 0)
