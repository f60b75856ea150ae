"""
Retry policy with exponential backoff.

The queue retries transient delivery failures. Each failed attempt pushes the
mutation's next attempt out by an exponentially growing delay:

    delay = base_delay * (multiplier ^ retry_index), capped at max_delay

With the defaults (3 retries, 1s base, x2) the delays are 1s, 2s and 4s and
the fourth failed attempt marks the mutation failed.

Example:
    >>> policy = RetryPolicy()
    >>> [policy.calculate_delay(i) for i in range(3)]
    [1.0, 2.0, 4.0]
    >>> policy.exhausted(4)
    True
"""

from __future__ import annotations

import logging
import random

import httpx

from tasksync.core.config.models import RetryConfig
from tasksync.core.sync.remote import PermanentRejectionError, TransientDeliveryError

logger = logging.getLogger(__name__)


class RetryPolicy:
    """
    Backoff schedule and retry cap for queued mutations.

    Attributes:
        max_retries: Retries allowed after the first failed attempt (default: 3)
        base_delay: Delay in seconds before the first retry (default: 1.0)
        multiplier: Exponential backoff multiplier (default: 2.0)
        max_delay: Upper bound for any single delay (default: 30.0)
        jitter: Whether to add random variance to delays (default: False)
        jitter_ratio: Random variance ratio for jitter (default: 0.2 = ±20%)
    """

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 1.0,
        multiplier: float = 2.0,
        max_delay: float = 30.0,
        jitter: bool = False,
        jitter_ratio: float = 0.2,
    ) -> None:
        """
        Initialize the retry policy.

        Raises:
            ValueError: If parameters are invalid
        """
        if max_retries < 0:
            raise ValueError("max_retries must be non-negative")
        if base_delay <= 0:
            raise ValueError("base_delay must be positive")
        if multiplier < 1.0:
            raise ValueError("multiplier must be >= 1.0")
        if max_delay < base_delay:
            raise ValueError("max_delay must be >= base_delay")
        if not 0.0 <= jitter_ratio <= 1.0:
            raise ValueError("jitter_ratio must be between 0.0 and 1.0")

        self.max_retries = max_retries
        self.base_delay = base_delay
        self.multiplier = multiplier
        self.max_delay = max_delay
        self.jitter = jitter
        self.jitter_ratio = jitter_ratio

    @classmethod
    def from_config(cls, config: RetryConfig) -> RetryPolicy:
        return cls(
            max_retries=config.max_retries,
            base_delay=config.base_delay,
            multiplier=config.multiplier,
            max_delay=config.max_delay,
            jitter=config.jitter,
        )

    def calculate_delay(self, retry_index: int) -> float:
        """
        Delay before the given retry (0-indexed).

        Args:
            retry_index: 0 for the first retry, 1 for the second, ...

        Returns:
            Delay in seconds, never above ``max_delay``
        """
        delay = min(self.base_delay * (self.multiplier**retry_index), self.max_delay)

        if self.jitter:
            variance = delay * self.jitter_ratio
            delay = min(delay + random.uniform(-variance, variance), self.max_delay)

        return max(0.0, delay)

    def exhausted(self, failed_attempts: int) -> bool:
        """True once a mutation has failed more times than the retry cap allows."""
        return failed_attempts > self.max_retries


def is_retryable_error(exception: Exception) -> bool:
    """
    Determine if an exception represents a transient, retryable error.

    Retryable errors include:
    - TransientDeliveryError raised by the remote client
    - 5xx, 408 and 429 HTTP status errors
    - Timeout, connection and other httpx request errors

    Non-retryable errors include:
    - PermanentRejectionError and other 4xx client errors
    - Other exceptions (programming errors, validation errors, etc.)

    Args:
        exception: Exception to check

    Returns:
        True if the error is retryable, False otherwise
    """
    if isinstance(exception, PermanentRejectionError):
        return False
    if isinstance(exception, TransientDeliveryError):
        return True

    # Check this first because HTTPStatusError is also an HTTPError
    if isinstance(exception, httpx.HTTPStatusError):
        status_code = exception.response.status_code
        return 500 <= status_code < 600 or status_code in (408, 429)

    if isinstance(exception, (httpx.TimeoutException, httpx.RequestError)):
        return True

    return isinstance(exception, httpx.HTTPError)
