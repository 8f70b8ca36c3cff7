"""Bounded exponential backoff policy."""

from dataclasses import dataclass


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry budget for one operation.

    `max_retries` counts retries after the first attempt, so an operation
    runs at most `max_retries + 1` times.
    """
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def backoff(self, attempt: int) -> float:
        """Delay before retry number `attempt` (0-based): base * 2**attempt, capped."""
        return min(self.base_delay * (2 ** attempt), self.max_delay)

    def should_retry(self, attempt: int) -> bool:
        """True if a retry is allowed after `attempt` failed attempts (0-based)."""
        return attempt < self.max_retries

    @classmethod
    def from_settings(cls, settings) -> 'RetryPolicy':
        return cls(
            max_retries=settings.MAX_RETRIES,
            base_delay=settings.RETRY_BACKOFF_BASE_SECONDS,
            max_delay=settings.RETRY_BACKOFF_CAP_SECONDS,
        )
