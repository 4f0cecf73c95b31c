"""Tests for the error taxonomy and classification."""

from __future__ import annotations

import httpx
import pytest

from attachsync.core.errors import (
    RETRYABLE_CATEGORIES,
    AuthError,
    ConflictError,
    ErrorCategory,
    IntegrityError,
    NotFoundError,
    RateLimitError,
    SyncError,
    TransientNetworkError,
    ValidationError,
    classify,
    retry_after_of,
)


class TestClassify:
    """Tests for classify()."""

    @pytest.mark.parametrize(
        ("error", "category"),
        [
            (ValidationError("bad"), ErrorCategory.VALIDATION),
            (AuthError("denied", 401), ErrorCategory.AUTH),
            (NotFoundError("gone", 404), ErrorCategory.NOT_FOUND),
            (TransientNetworkError("reset"), ErrorCategory.NETWORK),
            (RateLimitError("slow down"), ErrorCategory.RATE_LIMIT),
            (IntegrityError("mismatch"), ErrorCategory.INTEGRITY),
            (ConflictError("rev changed", 409), ErrorCategory.CONFLICT),
            (SyncError("unknown"), ErrorCategory.INTERNAL),
        ],
    )
    def test_typed_errors(self, error: SyncError, category: ErrorCategory) -> None:
        """Typed errors classify by their category attribute."""
        assert classify(error) == category

    def test_transport_errors_are_network(self) -> None:
        """httpx and builtin transport failures are network errors."""
        assert classify(httpx.ReadTimeout("slow")) == ErrorCategory.NETWORK
        assert classify(httpx.ConnectError("refused")) == ErrorCategory.NETWORK
        assert classify(TimeoutError()) == ErrorCategory.NETWORK
        assert classify(ConnectionResetError()) == ErrorCategory.NETWORK

    def test_unknown_errors_are_internal(self) -> None:
        """Anything else is an internal, terminal failure."""
        assert classify(KeyError("x")) == ErrorCategory.INTERNAL
        assert ErrorCategory.INTERNAL not in RETRYABLE_CATEGORIES


class TestSyncError:
    """Tests for SyncError attributes."""

    def test_retryable(self) -> None:
        """Network, rate limit, integrity and conflict errors are retryable."""
        assert TransientNetworkError("x").retryable
        assert RateLimitError("x").retryable
        assert IntegrityError("x").retryable
        assert ConflictError("x").retryable
        assert not ValidationError("x").retryable
        assert not AuthError("x").retryable

    def test_status_code(self) -> None:
        """Should keep the HTTP status that caused the error."""
        assert NotFoundError("x", 404).status_code == 404
        assert RateLimitError("x").status_code == 429

    def test_retry_after(self) -> None:
        """Only rate-limit errors carry a retry-after hint."""
        assert retry_after_of(RateLimitError("x", retry_after=12.0)) == 12.0
        assert retry_after_of(TransientNetworkError("x")) is None
