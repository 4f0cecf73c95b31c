"""Tests for byte range normalisation."""

from __future__ import annotations

import pytest

from attachsync.core.errors import ValidationError
from attachsync.core.ranges import ByteRange, chunk_range, parse_byte_range


class TestParseByteRange:
    """Tests for parse_byte_range."""

    def test_content_range_header(self) -> None:
        """Should parse a full Content-Range value."""
        rng = parse_byte_range("bytes 0-39999/50000")
        assert rng == ByteRange(0, 39999, 50000)
        assert rng.length == 40000

    def test_bare_range_without_total(self) -> None:
        """Should accept start-end without unit or total."""
        assert parse_byte_range("100-199") == ByteRange(100, 199, None)

    def test_unknown_total(self) -> None:
        """An asterisk total means unknown."""
        assert parse_byte_range("bytes 0-9/*").total is None

    def test_tuple_forms(self) -> None:
        """Should accept 2- and 3-element sequences."""
        assert parse_byte_range((0, 9)) == ByteRange(0, 9)
        assert parse_byte_range([40000, 49999, 50000]) == ByteRange(40000, 49999, 50000)

    def test_mapping_form(self) -> None:
        """Should accept a mapping with start/end/total."""
        rng = parse_byte_range({"start": "5", "end": 10, "total": 20})
        assert rng == ByteRange(5, 10, 20)

    def test_byte_range_passthrough(self) -> None:
        """A ByteRange is returned unchanged."""
        rng = ByteRange(1, 2, 3)
        assert parse_byte_range(rng) is rng

    @pytest.mark.parametrize(
        "value",
        ["bytes a-b/10", "", "0-", (1,), (None, 5), {"start": 1}, 3.5, b"0-9"],
    )
    def test_malformed(self, value: object) -> None:
        """Should reject anything that is not a range."""
        with pytest.raises(ValidationError):
            parse_byte_range(value)

    def test_end_before_start(self) -> None:
        """Should reject inverted ranges."""
        with pytest.raises(ValidationError):
            parse_byte_range("bytes 10-5/20")

    def test_zero_total(self) -> None:
        """Should reject a non-positive total."""
        with pytest.raises(ValidationError):
            parse_byte_range((0, 0, 0))


class TestChunkRange:
    """Tests for chunk_range and ByteRange helpers."""

    def test_last_chunk_is_short(self) -> None:
        """The final chunk ends at the last byte of the file."""
        assert chunk_range(0, 40000, 50000) == ByteRange(0, 39999, 50000)
        assert chunk_range(1, 40000, 50000) == ByteRange(40000, 49999, 50000)

    def test_to_header(self) -> None:
        """Should format as a Content-Range header."""
        assert ByteRange(0, 9, 10).to_header() == "bytes 0-9/10"
        assert str(ByteRange(0, 9)) == "bytes 0-9/*"

    def test_with_total(self) -> None:
        """Should copy with a total."""
        assert ByteRange(0, 9).with_total(100).total == 100
