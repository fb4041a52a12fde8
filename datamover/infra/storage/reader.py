"""Fill a fixed buffer from a stream that may return short reads."""

from __future__ import annotations

from typing import Any

from datamover.infra.storage.client import PartialReadError

# Consecutive ``readinto`` calls allowed to report "no data yet" (None).
MAX_EMPTY_POLLS = 1000


def read_into(stream: Any, buffer: bytearray | memoryview) -> int:
    """Read from ``stream`` until ``buffer`` is full or the stream ends.

    End of stream is not an error: the bytes gathered so far are returned.
    A stream longer than the buffer is truncated at its capacity.

    Raises:
        PartialReadError: If a read fails; ``bytes_read`` holds the count
            written before the failure.
    """
    view = memoryview(buffer).cast("B")
    capacity = len(view)
    offset = 0
    empty_polls = 0
    readinto = getattr(stream, "readinto", None)

    while offset < capacity:
        try:
            if readinto is not None:
                count = readinto(view[offset:])
            else:
                chunk = stream.read(capacity - offset)
                if chunk is not None:
                    chunk = chunk[: capacity - offset]
                count = None if chunk is None else len(chunk)
                if count:
                    view[offset : offset + count] = chunk
        except Exception as exc:
            raise PartialReadError(
                f"Stream read failed after {offset} bytes: {exc}", bytes_read=offset
            ) from exc

        if count is None:
            empty_polls += 1
            if empty_polls > MAX_EMPTY_POLLS:
                raise PartialReadError(
                    f"Stream stalled after {offset} bytes", bytes_read=offset
                )
            continue
        if count == 0:
            break
        empty_polls = 0
        offset += count

    return offset
