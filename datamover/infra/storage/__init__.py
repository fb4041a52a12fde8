"""Object store abstraction layer.

This module provides a protocol-based abstraction for object store backends
used by the transfer engine, with an S3-compatible implementation.
"""

from .client import (
    AckStatus,
    AuthError,
    ConnectionHandle,
    NotFoundError,
    ObjectHead,
    ObjectInfo,
    ObjectStoreClient,
    PartialReadError,
    StorageError,
    StoreConnectionError,
    TransportError,
)
from .reader import read_into

__all__ = [
    "AckStatus",
    "AuthError",
    "ConnectionHandle",
    "NotFoundError",
    "ObjectHead",
    "ObjectInfo",
    "ObjectStoreClient",
    "PartialReadError",
    "StorageError",
    "StoreConnectionError",
    "TransportError",
    "read_into",
]
