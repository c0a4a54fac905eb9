"""Retry and backoff policy for action steps."""

from dataclasses import dataclass
from datetime import timedelta

from flowbase.settings import Settings, get_settings


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    backoff_base_seconds: int = 30
    backoff_max_seconds: int = 3600

    @staticmethod
    def from_settings(settings: Settings | None = None) -> "RetryPolicy":
        settings = settings or get_settings()
        return RetryPolicy(
            max_attempts=settings.ACTION_MAX_ATTEMPTS,
            backoff_base_seconds=settings.ACTION_BACKOFF_BASE_SECONDS,
            backoff_max_seconds=settings.ACTION_BACKOFF_MAX_SECONDS,
        )

    def should_retry(self, attempt_count: int) -> bool:
        """Whether another attempt is allowed after ``attempt_count`` failures."""
        return attempt_count < self.max_attempts

    def backoff(self, retry_count: int) -> timedelta:
        """Exponential delay before retry number ``retry_count`` (1-based)."""
        if retry_count <= 0:
            raise ValueError("retry_count must be >= 1")
        seconds = self.backoff_base_seconds * (2 ** (retry_count - 1))
        return timedelta(seconds=min(seconds, self.backoff_max_seconds))
