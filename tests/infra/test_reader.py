"""Tests for filling buffers from short-reading streams."""

from __future__ import annotations

import io

import pytest

from datamover.infra.storage.client import PartialReadError, TransportError
from datamover.infra.storage.reader import MAX_EMPTY_POLLS, read_into


class FragmentStream:
    """Yields the given fragments one ``read`` call at a time."""

    def __init__(self, fragments: list[bytes], error: Exception | None = None):
        self._fragments = list(fragments)
        self._error = error
        self.reads = 0

    def read(self, size: int = -1) -> bytes:
        self.reads += 1
        if not self._fragments:
            if self._error is not None:
                raise self._error
            return b""
        fragment = self._fragments.pop(0)
        if len(fragment) > size:
            self._fragments.insert(0, fragment[size:])
            fragment = fragment[:size]
        return fragment


class StallingStream(io.RawIOBase):
    """``readinto`` that never has data available."""

    def readable(self) -> bool:
        return True

    def readinto(self, buffer) -> None:  # type: ignore[override]
        return None


class TestReadInto:
    def test_accumulates_fragments(self) -> None:
        buffer = bytearray(16)
        stream = FragmentStream([b"abc", b"de", b"fghij"])

        size = read_into(stream, buffer)

        assert size == 10
        assert bytes(buffer[:size]) == b"abcdefghij"

    def test_truncates_at_capacity_without_error(self) -> None:
        buffer = bytearray(4)
        stream = FragmentStream([b"abcdef", b"ghij"])

        size = read_into(stream, buffer)

        assert size == 4
        assert bytes(buffer) == b"abcd"

    def test_stops_reading_once_full(self) -> None:
        buffer = bytearray(3)
        stream = FragmentStream([b"abc", b"never"])

        read_into(stream, buffer)

        assert stream.reads == 1

    def test_empty_stream_returns_zero(self) -> None:
        assert read_into(FragmentStream([]), bytearray(8)) == 0

    def test_empty_buffer_reads_nothing(self) -> None:
        stream = FragmentStream([b"abc"])

        assert read_into(stream, bytearray()) == 0
        assert stream.reads == 0

    def test_uses_readinto_when_available(self) -> None:
        buffer = bytearray(5)

        size = read_into(io.BytesIO(b"hello world"), buffer)

        assert size == 5
        assert bytes(buffer) == b"hello"

    def test_fills_memoryview_slice(self) -> None:
        backing = bytearray(b"..........")
        size = read_into(io.BytesIO(b"xyz"), memoryview(backing)[2:6])

        assert size == 3
        assert bytes(backing) == b"..xyz....."

    def test_error_reports_partial_count(self) -> None:
        buffer = bytearray(16)
        stream = FragmentStream([b"abc", b"de"], error=OSError("connection reset"))

        with pytest.raises(PartialReadError) as exc_info:
            read_into(stream, buffer)

        assert exc_info.value.bytes_read == 5
        assert isinstance(exc_info.value, TransportError)
        assert isinstance(exc_info.value.__cause__, OSError)
        assert bytes(buffer[:5]) == b"abcde"

    def test_stalled_stream_terminates(self) -> None:
        with pytest.raises(PartialReadError, match="stalled") as exc_info:
            read_into(StallingStream(), bytearray(4))

        assert exc_info.value.bytes_read == 0
        assert MAX_EMPTY_POLLS > 0
