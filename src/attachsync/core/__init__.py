"""Core module - Hashing, byte ranges, errors, config and shared types."""

from attachsync.core.config import SyncConfig
from attachsync.core.errors import (
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
)
from attachsync.core.hashing import fingerprint, fingerprint_chunks
from attachsync.core.ranges import ByteRange, parse_byte_range

__all__ = [
    # Config
    "SyncConfig",
    # Errors
    "AuthError",
    "ConflictError",
    "ErrorCategory",
    "IntegrityError",
    "NotFoundError",
    "RateLimitError",
    "SyncError",
    "TransientNetworkError",
    "ValidationError",
    "classify",
    # Hashing
    "fingerprint",
    "fingerprint_chunks",
    # Ranges
    "ByteRange",
    "parse_byte_range",
]
