"""Configuration management for SignalFlow."""

from functools import lru_cache
from typing import Literal

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Every field can be set with a ``SIGNALFLOW_`` prefixed variable, e.g.
    ``SIGNALFLOW_MAX_QUEUE_SIZE=250``. Durations are in seconds.
    """

    model_config = SettingsConfigDict(
        env_prefix="SIGNALFLOW_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    environment: str = Field(default="production", description="Environment name")
    log_level: str = Field(default="INFO", description="Logging level")

    # Admission gate
    max_queue_size: int = Field(default=100, gt=0, description="Admission queue capacity")
    max_signals_per_minute: int = Field(
        default=10, gt=0, description="Signals released to the consumer per sliding minute"
    )
    rate_limit_backoff: float = Field(
        default=1.0, gt=0, description="Minimum wait between rate-limit checks"
    )
    queue_poll_interval: float = Field(
        default=0.1, gt=0, description="Consumer poll interval on an empty queue"
    )
    max_signal_retries: int = Field(default=3, ge=0, description="Requeue attempts per signal")

    # Batching
    max_batch_size: int = Field(default=10, gt=0, description="Signals per batch")
    batch_wait_time: float = Field(default=30.0, gt=0, description="Batch collection window")
    similarity_threshold: float = Field(default=0.6, description="Grouping threshold (0-1)")
    max_concurrent_batches: int = Field(default=3, gt=0, description="In-flight batch limit")

    # Classification cache
    classification_cache_max_entries: int = Field(default=1000, gt=0)
    classification_cache_ttl: float = Field(default=3600.0, gt=0)
    classification_cache_path: str = Field(default="data/cache/classifications.json")
    cache_sweep_interval: float = Field(default=300.0, gt=0)

    # Response cache
    response_cache_dir: str = Field(default="data/cache/llm-responses")
    response_cache_max_entries: int = Field(default=10000, gt=0)
    response_cache_classification_ttl: float = Field(default=3600.0, gt=0)
    response_cache_decision_ttl: float = Field(default=1800.0, gt=0)
    response_cache_default_ttl: float = Field(default=3600.0, gt=0)
    response_cache_hot_threshold: int = Field(default=5, gt=0)
    response_cache_persistence: bool = Field(default=True)
    response_cache_warming: bool = Field(default=True)

    # Reasoning oracle
    oracle_url: str = Field(default="http://localhost:8088", description="Reasoning endpoint")
    oracle_api_key: SecretStr | None = Field(default=None, description="Reasoning API key")
    oracle_model: str = Field(default="default", description="Model name sent to the oracle")
    oracle_temperature: float = Field(default=0.2, ge=0.0, le=2.0)
    oracle_timeout: float = Field(default=30.0, gt=0)
    oracle_max_attempts: int = Field(default=3, gt=0)
    oracle_backoff_base: float = Field(default=1.0, ge=0)

    # Decision workflow
    dedup_window: float = Field(default=3600.0, gt=0, description="Duplicate detection window")

    # Publication
    executor_url: str | None = Field(
        default=None, description="Downstream executor endpoint for outbound events"
    )
    emission_timeout: float = Field(default=5.0, gt=0)
    max_retry_attempts: int = Field(default=3, gt=0)
    retry_interval: float = Field(default=5.0, gt=0)
    max_retry_queue: int = Field(default=100, gt=0)
    max_audit_entries: int = Field(default=1000, gt=0)

    # Human review
    review_timeout: float = Field(default=3600.0, gt=0)
    default_timeout_action: Literal["approve", "reject"] = Field(default="reject")
    review_sweep_interval: float = Field(default=60.0, gt=0)

    @field_validator("similarity_threshold")
    @classmethod
    def validate_threshold(cls, v: float) -> float:
        """Validate that the similarity threshold is a fraction."""
        if not 0.0 <= v <= 1.0:
            raise ValueError(f"similarity_threshold must be within [0, 1], got: {v}")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Normalise the log level name."""
        return v.upper()

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment.lower() == "development"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
