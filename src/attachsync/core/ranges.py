"""Byte range normalisation for chunked uploads.

Chunk ranges arrive either as a Content-Range style string
("bytes 0-39999/50000") or as a structured value (tuple or mapping).
parse_byte_range() turns any of them into a ByteRange; nothing past the
boundary handles the raw forms.
"""

from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from attachsync.core.errors import ValidationError

_RANGE_RE = re.compile(
    r"^\s*(?:bytes\s+)?(?P<start>\d+)\s*-\s*(?P<end>\d+)\s*(?:/\s*(?P<total>\d+|\*))?\s*$",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class ByteRange:
    """Inclusive byte range within an object of optional declared size."""

    start: int
    end: int
    total: int | None = None

    def __post_init__(self) -> None:
        if self.start < 0 or self.end < self.start:
            raise ValidationError(f"Invalid byte range: {self.start}-{self.end}")
        if self.total is not None and self.total <= 0:
            raise ValidationError(f"Invalid total size in byte range: {self.total}")

    @property
    def length(self) -> int:
        """Number of bytes covered."""
        return self.end - self.start + 1

    def with_total(self, total: int) -> ByteRange:
        """Return a copy with the declared total set."""
        return ByteRange(self.start, self.end, total)

    def to_header(self) -> str:
        """Format as a Content-Range header value."""
        total = "*" if self.total is None else str(self.total)
        return f"bytes {self.start}-{self.end}/{total}"

    def __str__(self) -> str:
        return self.to_header()


def parse_byte_range(value: Any) -> ByteRange:
    """Normalise a loosely-typed chunk range.

    Args:
        value: A ByteRange, a string such as "bytes 0-39999/50000" or
            "0-39999", a (start, end) or (start, end, total) sequence, or a
            mapping with "start", "end" and optional "total" keys.

    Returns:
        The normalised ByteRange.

    Raises:
        ValidationError: If the value cannot be interpreted as a range.
    """
    if isinstance(value, ByteRange):
        return value

    if isinstance(value, str):
        match = _RANGE_RE.match(value)
        if not match:
            raise ValidationError(f"Malformed byte range: {value!r}")
        total = match.group("total")
        return ByteRange(
            start=int(match.group("start")),
            end=int(match.group("end")),
            total=None if total in (None, "*") else int(total),
        )

    if isinstance(value, Mapping):
        try:
            start = int(value["start"])
            end = int(value["end"])
            total = value.get("total")
            return ByteRange(start, end, None if total is None else int(total))
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError(f"Malformed byte range: {value!r}") from e

    if isinstance(value, Sequence) and not isinstance(value, bytes | bytearray):
        if len(value) not in (2, 3):
            raise ValidationError(f"Byte range needs 2 or 3 values, got {len(value)}")
        try:
            numbers = [None if v is None else int(v) for v in value]
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Malformed byte range: {value!r}") from e
        if numbers[0] is None or numbers[1] is None:
            raise ValidationError(f"Malformed byte range: {value!r}")
        total = numbers[2] if len(numbers) == 3 else None
        return ByteRange(numbers[0], numbers[1], total)

    raise ValidationError(f"Unsupported byte range type: {type(value).__name__}")


def chunk_range(index: int, chunk_size: int, total_size: int) -> ByteRange:
    """Return the canonical range of the chunk at index."""
    start = index * chunk_size
    end = min(start + chunk_size, total_size) - 1
    return ByteRange(start, end, total_size)
