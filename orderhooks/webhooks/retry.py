"""Retry policy for failed webhook deliveries.

Attempt n (1-indexed) that fails is retried after ``base * 2^(n-1)``
seconds, capped at ``max_delay``: with the defaults that is 1m, 2m, 4m,
8m, ... up to 1h.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta

from orderhooks.config import settings

# Client errors that still indicate a temporary condition
RETRYABLE_CLIENT_STATUSES = frozenset({408, 425, 429})


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff with a ceiling.

    Attributes:
        base_delay_seconds: Delay after the first failed attempt.
        max_delay_seconds: Upper bound for any single delay.
        retry_client_errors: Retry 4xx responses like any other failure.
            When False, 4xx responses other than 408/425/429 fail the
            delivery immediately.
    """

    base_delay_seconds: float = 60
    max_delay_seconds: float = 3600
    retry_client_errors: bool = True

    def __post_init__(self) -> None:
        if self.base_delay_seconds <= 0:
            raise ValueError("base_delay_seconds must be positive")
        if self.max_delay_seconds < self.base_delay_seconds:
            raise ValueError("max_delay_seconds must be >= base_delay_seconds")

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        """Build the policy from application settings."""
        return cls(
            base_delay_seconds=settings.RETRY_BASE_SECONDS,
            max_delay_seconds=settings.RETRY_MAX_SECONDS,
            retry_client_errors=settings.RETRY_CLIENT_ERRORS,
        )

    def delay_for(self, attempt: int) -> timedelta:
        """Delay to wait after the given failed attempt.

        Args:
            attempt: Number of the attempt that just failed (1-indexed).

        Returns:
            Backoff delay, never decreasing in ``attempt``.
        """
        exponent = max(attempt, 1) - 1
        if exponent >= 64:
            return timedelta(seconds=self.max_delay_seconds)
        delay = min(self.base_delay_seconds * (2**exponent), self.max_delay_seconds)
        return timedelta(seconds=delay)

    def next_retry_at(self, attempt: int, now: datetime) -> datetime:
        """Time at which the next attempt becomes due."""
        return now + self.delay_for(attempt)

    def is_retryable_status(self, status_code: int | None) -> bool:
        """Whether a failed attempt with this status may be retried.

        Args:
            status_code: HTTP status, or None for transport errors.
        """
        if status_code is None or status_code >= 500:
            return True
        if 400 <= status_code < 500:
            return self.retry_client_errors or status_code in RETRYABLE_CLIENT_STATUSES
        # Unexpected 1xx/3xx (redirects are not followed)
        return True

    def should_retry(self, attempt_count: int, max_retries: int, status_code: int | None) -> bool:
        """Whether a failed delivery gets another attempt.

        Args:
            attempt_count: Attempts made so far, including the one that failed.
            max_retries: Subscription's retry ceiling.
            status_code: HTTP status of the failed attempt.
        """
        return attempt_count <= max_retries and self.is_retryable_status(status_code)
