"""Configuration settings for the job queue service."""

from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Backing store
    redis_url: str = "redis://localhost:6379"
    store_backend: str = "redis"  # "redis" or "memory"
    key_prefix: str = "jobqueue"

    # Server
    port: int = 5000
    debug: bool = False
    log_level: str = "INFO"
    log_format: str = "json"  # "json" or "text"

    # Queues reported by /metrics and /health/ready
    queues: list[str] = [
        "resource-processing",
        "pattern-extraction",
        "knowledge-update",
        "scraping",
        "indexing",
        "analytics",
        "notifications",
        "monitoring",
    ]

    # Admission defaults
    default_max_attempts: int = 3

    # Retry policy
    retry_base_delay_ms: int = 1000
    retry_max_delay_ms: int = 3_600_000  # 1 hour
    retry_jitter: bool = False

    # Retention
    completed_retention_seconds: int = 3600

    # Stall detection
    stall_timeout_ms: int = 300_000  # 5 minutes

    # Consumer defaults
    consumer_batch_size: int = 1
    consumer_poll_interval_ms: int = 5000
    consumer_heartbeat_interval_ms: int = 30_000
    consumer_stall_check_interval_ms: int = 60_000

    # Health
    health_failed_threshold: int = 100

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def clear_settings_cache():
    """Clear settings cache (useful for testing)."""
    get_settings.cache_clear()
