"""Retry decisions with exponential backoff.

This module provides:
- RetryPolicy: Backoff delays per error category
- RetryDecision: Disposition of one failed attempt
- decide: Whether a failed job is retried and when

Jobs never sleep in a worker thread. A retry is expressed as a
next_retry_at timestamp that the queue releases later.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from attachsync.core.errors import ErrorCategory

logger = logging.getLogger(__name__)

# Default retry configuration
DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY = 1.0  # seconds
DEFAULT_MAX_DELAY = 300.0  # seconds
DEFAULT_RATE_LIMIT_MULTIPLIER = 4.0
DEFAULT_RATE_LIMIT_MAX_DELAY = 900.0  # seconds

# Categories that never succeed on a later attempt
TERMINAL_CATEGORIES = frozenset(
    {
        ErrorCategory.VALIDATION,
        ErrorCategory.AUTH,
        ErrorCategory.NOT_FOUND,
        ErrorCategory.INTERNAL,
    }
)

# Integrity failures get a single extra attempt before escalation
INTEGRITY_RETRY_LIMIT = 1


@dataclass(frozen=True)
class RetryDecision:
    """Disposition of one failed attempt.

    Attributes:
        retryable: Whether the job should run again.
        next_retry_count: retry_count to store on the job.
        delay: Seconds until the next attempt (None when terminal).
    """

    retryable: bool
    next_retry_count: int
    delay: float | None = None


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff policy.

    Attributes:
        base_delay: Delay before the first retry.
        max_delay: Cap on ordinary delays.
        rate_limit_multiplier: Extra factor for rate-limit delays.
        rate_limit_max_delay: Cap on rate-limit delays.
    """

    base_delay: float = DEFAULT_BASE_DELAY
    max_delay: float = DEFAULT_MAX_DELAY
    rate_limit_multiplier: float = DEFAULT_RATE_LIMIT_MULTIPLIER
    rate_limit_max_delay: float = DEFAULT_RATE_LIMIT_MAX_DELAY

    def delay_for(
        self,
        retry_count: int,
        category: ErrorCategory,
        retry_after: float | None = None,
    ) -> float:
        """Compute the wait before the next attempt.

        Args:
            retry_count: Retries already performed (0 for the first failure).
            category: Category of the failure.
            retry_after: Server-requested delay, if any.

        Returns:
            Delay in seconds.
        """
        exponent = max(retry_count, 0)
        if category == ErrorCategory.RATE_LIMIT:
            delay = min(
                self.base_delay * self.rate_limit_multiplier * (2**exponent),
                self.rate_limit_max_delay,
            )
            if retry_after is not None:
                delay = max(delay, retry_after)
            return delay
        return min(self.base_delay * (2**exponent), self.max_delay)

    def decide(
        self,
        category: ErrorCategory,
        retry_count: int,
        max_retries: int,
        retry_after: float | None = None,
    ) -> RetryDecision:
        """Decide what happens to a job after a failed attempt.

        Each retryable failure consumes one unit of the retry budget. The job
        is rescheduled while the consumed count stays below max_retries.

        Args:
            category: Category of the failure.
            retry_count: Retries consumed before this failure.
            max_retries: Retry budget of the job.
            retry_after: Server-requested delay, if any.

        Returns:
            The retry decision.
        """
        if category in TERMINAL_CATEGORIES:
            return RetryDecision(retryable=False, next_retry_count=retry_count)

        next_count = retry_count + 1
        limit = max_retries
        if category == ErrorCategory.INTEGRITY:
            limit = min(max_retries, INTEGRITY_RETRY_LIMIT + 1)

        if next_count >= limit:
            logger.debug(
                "Retry budget exhausted (%d/%d) for %s failure", next_count, limit, category
            )
            return RetryDecision(retryable=False, next_retry_count=next_count)

        delay = self.delay_for(retry_count, category, retry_after)
        return RetryDecision(retryable=True, next_retry_count=next_count, delay=delay)


def decide(
    category: ErrorCategory,
    retry_count: int,
    max_retries: int,
    policy: RetryPolicy | None = None,
    retry_after: float | None = None,
) -> RetryDecision:
    """Decide a failed job's disposition with the default policy."""
    return (policy or RetryPolicy()).decide(category, retry_count, max_retries, retry_after)
