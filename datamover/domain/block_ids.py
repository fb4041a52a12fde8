"""Block identifiers for staged uploads.

A block is staged under an opaque token derived from its sequence number: the
8-byte little-endian form of the signed 64-bit number, base64 encoded. Every
token therefore has the same length, which stores with block lists require.
"""

from __future__ import annotations

import base64
import re
from typing import Iterable

INT64_MIN = -(2**63)
INT64_MAX = 2**63 - 1
BLOCK_ID_BYTES = 8

_NON_ALPHABET = re.compile(rb"[^A-Za-z0-9+/]")


def encode_block_id(sequence: int) -> str:
    """Return the block token for ``sequence``.

    Raises:
        ValueError: If ``sequence`` does not fit in a signed 64-bit integer.
    """
    if not INT64_MIN <= sequence <= INT64_MAX:
        raise ValueError(f"Block sequence {sequence} is outside the int64 range")
    raw = int(sequence).to_bytes(BLOCK_ID_BYTES, "little", signed=True)
    return base64.b64encode(raw).decode("ascii")


def decode_block_id(token: str) -> int:
    """Recover the sequence number a token was produced from.

    Malformed tokens are not rejected: characters outside the base64 alphabet
    are dropped and the decoded bytes are padded or cut to eight before being
    read back. Only tokens from :func:`encode_block_id` round-trip.
    """
    cleaned = _NON_ALPHABET.sub(b"", token.encode("ascii", "ignore"))
    if len(cleaned) % 4 == 1:
        cleaned = cleaned[:-1]
    cleaned += b"=" * (-len(cleaned) % 4)
    raw = base64.b64decode(cleaned)
    raw = raw[:BLOCK_ID_BYTES].ljust(BLOCK_ID_BYTES, b"\x00")
    return int.from_bytes(raw, "little", signed=True)


def sort_by_sequence(tokens: Iterable[str]) -> list[str]:
    """Order tokens by their decoded sequence number."""
    return sorted(tokens, key=decode_block_id)
