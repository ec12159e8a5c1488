"""Retry configuration and exponential backoff for resubmitting work."""

from __future__ import annotations

import random
from dataclasses import dataclass

from audio_convert.core.errors import BackpressureError


@dataclass
class RetryConfig:
    """Retry behavior configuration.

    Attributes:
        max_attempts: Maximum number of attempts (1 = no retries).
        base_delay: Base delay in seconds for exponential backoff.
        max_delay: Maximum delay cap in seconds.
        jitter: Whether to add random jitter to delays.
    """

    max_attempts: int = 5
    base_delay: float = 0.5
    max_delay: float = 30.0
    jitter: bool = True

    def __post_init__(self) -> None:
        """Validate configuration."""
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.max_attempts > 10:
            raise ValueError(f"max_attempts must be <= 10, got {self.max_attempts}")
        if self.base_delay < 0:
            raise ValueError(f"base_delay must be >= 0, got {self.base_delay}")
        if self.max_delay < self.base_delay:
            raise ValueError(
                f"max_delay ({self.max_delay}) must be >= base_delay ({self.base_delay})"
            )

    def delay_for_attempt(self, attempt: int) -> float:
        """Calculate delay for given attempt number.

        Uses exponential backoff: delay = min(base * 2^attempt, max_delay)
        With optional jitter: delay += random(0, base_delay)

        Args:
            attempt: The attempt number (0-indexed).

        Returns:
            Delay in seconds before the next retry.
        """
        if attempt < 0:
            attempt = 0

        delay = min(self.base_delay * (2**attempt), self.max_delay)

        if self.jitter:
            delay += random.uniform(0, self.base_delay)  # nosec B311 - jitter, not security

        return delay

    def should_retry(self, attempt: int) -> bool:
        """Check if another retry attempt should be made.

        Args:
            attempt: The current attempt number (0-indexed).

        Returns:
            True if more retries are allowed.
        """
        return attempt < self.max_attempts - 1


def is_retryable_error(error: Exception) -> bool:
    """Check if an error is recoverable by retrying after backoff.

    Only queue saturation is transient; every other service error is
    terminal for the request that caused it.

    Args:
        error: The exception raised by the service.

    Returns:
        True if the caller should back off and resubmit.
    """
    return isinstance(error, BackpressureError)
