"""Error taxonomy for sync operations.

Every failure that reaches a job is reduced to an ErrorCategory. The
category decides whether the job is retried and how long it waits.
"""

from __future__ import annotations

from enum import StrEnum

import httpx


class ErrorCategory(StrEnum):
    """Classification attached to a failed job."""

    VALIDATION = "VALIDATION"
    AUTH = "AUTH"
    NOT_FOUND = "NOT_FOUND"
    NETWORK = "NETWORK"
    RATE_LIMIT = "RATE_LIMIT"
    INTEGRITY = "INTEGRITY"
    CONFLICT = "CONFLICT"
    INTERNAL = "INTERNAL"


RETRYABLE_CATEGORIES = frozenset(
    {
        ErrorCategory.NETWORK,
        ErrorCategory.RATE_LIMIT,
        ErrorCategory.INTEGRITY,
        ErrorCategory.CONFLICT,
    }
)


class SyncError(Exception):
    """Base exception for sync errors."""

    category: ErrorCategory = ErrorCategory.INTERNAL

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        """Whether this error may succeed on a later attempt."""
        return self.category in RETRYABLE_CATEGORIES


class ValidationError(SyncError):
    """Bad input; never retried."""

    category = ErrorCategory.VALIDATION


class AuthError(SyncError):
    """Credential rejected by the remote tracker."""

    category = ErrorCategory.AUTH


class NotFoundError(SyncError):
    """Remote object, work item or local record missing."""

    category = ErrorCategory.NOT_FOUND


class TransientNetworkError(SyncError):
    """Timeout, connection reset or server-side failure."""

    category = ErrorCategory.NETWORK


class RateLimitError(SyncError):
    """Remote tracker throttled the request."""

    category = ErrorCategory.RATE_LIMIT

    def __init__(
        self,
        message: str,
        status_code: int | None = 429,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message, status_code)
        self.retry_after = retry_after


class IntegrityError(SyncError):
    """Hash or size mismatch after reassembly."""

    category = ErrorCategory.INTEGRITY


class ConflictError(SyncError):
    """Remote state changed concurrently."""

    category = ErrorCategory.CONFLICT


def classify(exc: BaseException) -> ErrorCategory:
    """Map any exception to an error category.

    Args:
        exc: Exception raised while processing a job.

    Returns:
        The category used for the retry decision.
    """
    if isinstance(exc, SyncError):
        return exc.category
    if isinstance(exc, httpx.TimeoutException | httpx.TransportError):
        return ErrorCategory.NETWORK
    if isinstance(exc, TimeoutError | ConnectionError):
        return ErrorCategory.NETWORK
    return ErrorCategory.INTERNAL


def retry_after_of(exc: BaseException) -> float | None:
    """Return the server-requested delay carried by a rate-limit error."""
    if isinstance(exc, RateLimitError):
        return exc.retry_after
    return None
