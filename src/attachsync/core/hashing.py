"""Content addressing for attachment bytes.

This module provides:
- fingerprint: SHA-256 digest of a byte string
- fingerprint_chunks: digest of a sequence of byte blocks
- verify_fingerprint: integrity check against an expected digest
"""

from __future__ import annotations

import hashlib
import re
from collections.abc import Iterable

# Hex-encoded SHA-256 digest
_FINGERPRINT_RE = re.compile(r"[0-9a-fA-F]{64}")


def fingerprint(data: bytes) -> str:
    """Compute the content fingerprint of data.

    Args:
        data: Raw bytes to hash.

    Returns:
        Hex-encoded SHA-256 hash string (64 characters).
    """
    return hashlib.sha256(data).hexdigest()


def fingerprint_chunks(chunks: Iterable[bytes]) -> tuple[str, int]:
    """Compute the fingerprint of content delivered as ordered blocks.

    Produces the same digest as fingerprint() over the concatenated blocks
    without joining them in memory.

    Args:
        chunks: Byte blocks in content order.

    Returns:
        Tuple of (hex digest, total byte count).
    """
    hasher = hashlib.sha256()
    total = 0
    for chunk in chunks:
        hasher.update(chunk)
        total += len(chunk)
    return hasher.hexdigest(), total


def verify_fingerprint(data: bytes, expected: str) -> bool:
    """Check that data hashes to the expected fingerprint."""
    return fingerprint(data) == expected.lower()


def is_fingerprint(value: str) -> bool:
    """Check whether a string looks like a hex SHA-256 fingerprint."""
    return _FINGERPRINT_RE.fullmatch(value) is not None
