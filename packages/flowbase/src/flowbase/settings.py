"""
Runtime settings for the flow engine services.

Values come from environment variables (or a local .env file).
Access them through get_settings() so tests can override the environment
before the first call.
"""

import functools

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Storage
    DATABASE_URL: str = "sqlite:///./flows.db"
    REDIS_URL: str = "redis://localhost:6379/0"

    # Streams
    EVENTS_STREAM: str = "flows:events"
    FAILURES_STREAM: str = "flows:failures"
    WAKE_QUEUE_KEY: str = "flows:wakes"
    CONSUMER_GROUP: str = "flows-engine"
    STREAM_MAX_LEN: int = 100000
    STREAM_SHARDS: int = 1  # contact-hash partitions of EVENTS_STREAM
    RECLAIM_IDLE_MS: int = 60000
    WAKE_QUEUE_BACKEND: str = "memory"  # "memory" or "redis"

    # Contacts
    CONTACT_SCHEMA_FILE: str | None = None  # JSON list of property specs

    # Temporal behaviour
    REFERENCE_TIMEZONE: str = "UTC"
    SCHEDULER_TICK_SECONDS: float = 1.0

    # Action execution
    ACTION_MAX_ATTEMPTS: int = 5
    ACTION_BACKOFF_BASE_SECONDS: int = 30
    ACTION_BACKOFF_MAX_SECONDS: int = 3600
    WEBHOOK_TIMEOUT_SECONDS: float = 10.0

    # Messaging channels
    MESSAGING_PROVIDER: str = "stub"  # "stub" or "http"
    MESSAGING_API_URL: str | None = None
    MESSAGING_API_KEY: str | None = None
    MESSAGING_TIMEOUT_SECONDS: float = 30.0

    # Runtime
    WORKER_POOL_SIZE: int = 8
    DEFINITIONS_REFRESH_SECONDS: float = 30.0

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "text"  # "text" or "json"

    @field_validator("ACTION_MAX_ATTEMPTS")
    @classmethod
    def _at_least_one_attempt(cls, value: int) -> int:
        if value < 1:
            raise ValueError("ACTION_MAX_ATTEMPTS must be >= 1")
        return value

    @field_validator("STREAM_SHARDS")
    @classmethod
    def _at_least_one_shard(cls, value: int) -> int:
        if value < 1:
            raise ValueError("STREAM_SHARDS must be >= 1")
        return value

    @field_validator("WAKE_QUEUE_BACKEND")
    @classmethod
    def _known_wake_backend(cls, value: str) -> str:
        value = value.lower()
        if value not in ("memory", "redis"):
            raise ValueError("WAKE_QUEUE_BACKEND must be 'memory' or 'redis'")
        return value

    @field_validator("MESSAGING_PROVIDER")
    @classmethod
    def _known_provider(cls, value: str) -> str:
        value = value.lower()
        if value not in ("stub", "http"):
            raise ValueError("MESSAGING_PROVIDER must be 'stub' or 'http'")
        return value

    @field_validator("LOG_FORMAT")
    @classmethod
    def _known_log_format(cls, value: str) -> str:
        value = value.lower()
        if value not in ("text", "json"):
            raise ValueError("LOG_FORMAT must be 'text' or 'json'")
        return value


@functools.lru_cache()
def get_settings() -> Settings:
    """Get settings (cached)."""
    return Settings()
