"""Application settings for the response pipeline.

Values come from defaults, an optional ``.env`` file, and environment
variables prefixed with ``AGENT_PIPELINE_`` (e.g. ``AGENT_PIPELINE_REDIS_URL``).
"""

from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Pipeline configuration."""

    model_config = SettingsConfigDict(
        env_prefix="AGENT_PIPELINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    APP_NAME: str = "Agent Response Pipeline"
    ENVIRONMENT: str = "development"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool | None = None
    LOG_DIR: str | None = None

    # External collaborators
    REDIS_URL: str = "redis://localhost:6379/0"
    DATABASE_URL: str = "sqlite+aiosqlite:///./agent_pipeline.db"
    STREAM_CHANNEL: str = "agent-stream"

    # Response cache
    CACHE_PREFIX: str = "agent_response"
    CACHE_STATS_PREFIX: str = "agent_response_stats"
    CACHE_TTL_STATUS: int = 30
    CACHE_TTL_HELP: int = 3600
    CACHE_TTL_PROJECT: int = 120

    # Dispatch queue
    VIP_USERS: list[str] = Field(default_factory=list)
    QUEUE_WAIT_SAMPLE_SIZE: int = 100
    QUEUE_RATE_WINDOW_S: float = 60.0

    # Metrics
    METRICS_PREFIX: str = "agent_metrics"
    METRICS_RETENTION_S: float = 3600.0
    METRICS_TTL_S: int = 7 * 24 * 60 * 60
    ALERT_RESPONSE_TIME_P99_MS: float = 3000.0
    ALERT_CACHE_HIT_RATE_LOW: float = 0.30
    ALERT_QUEUE_DEPTH_HIGH: int = 100

    # Streaming SLOs (only enforced when STREAM_ENFORCE_DEADLINES is set)
    STREAM_FIRST_CHUNK_MS: int = 3000
    STREAM_BETWEEN_CHUNKS_MS: int = 5000
    STREAM_TOTAL_MS: int = 120_000
    STREAM_ENFORCE_DEADLINES: bool = False

    # Circuit breaker
    CIRCUIT_FAILURE_THRESHOLD: int = 5
    CIRCUIT_RESET_TIMEOUT_S: float = 30.0
    CIRCUIT_HALF_OPEN_SUCCESSES: int = 3


@lru_cache
def get_settings() -> Settings:
    return Settings()
