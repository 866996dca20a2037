"""Configuration classes for Hippo."""

from __future__ import annotations

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class PostgresConfig(BaseSettings):
    """Postgres connection configuration."""

    model_config = SettingsConfigDict(env_prefix="HIPPO_POSTGRES_")

    host: str = "localhost"
    port: int = 5432
    user: str = "postgres"
    password: str = ""
    database: str = "hippo"

    # Connection pool
    min_pool_size: int = 2
    max_pool_size: int = 10

    # Per-statement timeout in seconds
    command_timeout: float = 10.0


class CadenceConfig(BaseSettings):
    """Thresholds that decide when a thread is audited."""

    model_config = SettingsConfigDict(env_prefix="HIPPO_CADENCE_")

    msg_threshold: int = 6
    token_threshold: int = 1500
    time_threshold_seconds: float = 180.0

    # Minimum gap between two audits of the same thread
    debounce_seconds: float = 30.0

    # Stale thread sweep (24 hours)
    cleanup_max_age_seconds: float = 86400.0

    # Pending messages kept per thread
    buffer_size: int = 50


class ScoringConfig(BaseSettings):
    """Weights and threshold for the quality score."""

    model_config = SettingsConfigDict(env_prefix="HIPPO_SCORING_")

    # Weights must sum to 1.0
    relevance_weight: float = 0.4
    importance_weight: float = 0.3
    coherence_weight: float = 0.2
    recency_weight: float = 0.1

    quality_threshold: float = 0.65

    # Confidence stamped on memories created by an audit
    audit_confidence: float = 0.8

    @model_validator(mode="after")
    def validate_weights_sum_to_one(self) -> "ScoringConfig":
        """Ensure scoring weights sum to 1.0."""
        total = (
            self.relevance_weight
            + self.importance_weight
            + self.coherence_weight
            + self.recency_weight
        )
        if abs(total - 1.0) > 0.01:
            raise ValueError(f"Scoring weights must sum to 1.0, got {total:.3f}")
        return self


class RetentionConfig(BaseSettings):
    """Per-tier retention policy and scheduling."""

    model_config = SettingsConfigDict(env_prefix="HIPPO_RETENTION_")

    # TTL in days, measured from creation
    tier1_ttl_days: int = 120
    tier2_ttl_days: int = 365
    tier3_ttl_days: int = 90

    # Priority lost per week since last update
    tier1_decay_per_week: float = 0.01
    tier2_decay_per_week: float = 0.005
    tier3_decay_per_week: float = 0.02

    # Below the floor a memory is demoted to TIER3
    tier1_priority_floor: float = 0.35
    tier2_priority_floor: float = 0.50
    tier3_priority_floor: float = 0.30

    # TIER3 -> TIER1 promotion
    promotion_min_threads: int = 2
    promotion_min_repeats: int = 2

    # Scheduling
    interval_hours: int = 24
    batch_size: int = 200


class QueueConfig(BaseSettings):
    """Background job queue configuration."""

    model_config = SettingsConfigDict(env_prefix="HIPPO_QUEUE_")

    concurrency: int = 1
    max_size: int = 10000

    # Rolling window for latency stats
    latency_samples: int = 1000

    audit_priority: int = 10
    manual_audit_priority: int = 5
    retention_priority: int = 1


class RecallConfig(BaseSettings):
    """Recall limits and deadline."""

    model_config = SettingsConfigDict(env_prefix="HIPPO_RECALL_")

    default_max_items: int = 5
    max_items_limit: int = 20
    default_deadline_ms: int = 30
    page_size: int = 10


class ApiConfig(BaseSettings):
    """HTTP server configuration."""

    model_config = SettingsConfigDict(env_prefix="HIPPO_API_")

    host: str = "0.0.0.0"
    port: int = 8081
    default_list_limit: int = 20
    max_list_limit: int = 100


class EmitterConfig(BaseSettings):
    """Gateway-side event emitter configuration."""

    model_config = SettingsConfigDict(env_prefix="HIPPO_EMITTER_")

    enabled: bool = True
    base_url: str = "http://localhost:8081"
    timeout_ms: int = 50


class HippoConfig(BaseSettings):
    """Main configuration for the Hippo memory service."""

    model_config = SettingsConfigDict(
        env_prefix="HIPPO_",
        env_nested_delimiter="__",
    )

    # Sub-configs
    postgres: PostgresConfig = Field(default_factory=PostgresConfig)
    cadence: CadenceConfig = Field(default_factory=CadenceConfig)
    scoring: ScoringConfig = Field(default_factory=ScoringConfig)
    retention: RetentionConfig = Field(default_factory=RetentionConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    recall: RecallConfig = Field(default_factory=RecallConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)
    emitter: EmitterConfig = Field(default_factory=EmitterConfig)

    # Feature flags
    enable_retention: bool = True
    enable_topics: bool = True

    # Debug
    debug: bool = False
    log_level: str = "INFO"
