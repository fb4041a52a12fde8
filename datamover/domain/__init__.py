from .block_ids import decode_block_id, encode_block_id, sort_by_sequence
from .location import Location

__all__ = [
    "Location",
    "decode_block_id",
    "encode_block_id",
    "sort_by_sequence",
]
