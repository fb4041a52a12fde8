"""Single-object transfer between memory buffers and an object store."""

from datamover.domain import Location, decode_block_id, encode_block_id
from datamover.services import (
    MultipartState,
    TransferError,
    TransferService,
    TransferSession,
)

__all__ = [
    "Location",
    "MultipartState",
    "TransferError",
    "TransferService",
    "TransferSession",
    "decode_block_id",
    "encode_block_id",
]

__version__ = "0.1.0"
