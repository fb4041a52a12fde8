"""Object store client protocol and data types.

This module defines the interface the transfer engine needs from an object
store: whole-object put/get/delete, staged blocks with an ordered commit,
ranged reads and listings. Wire protocol, credentials and transport retries
are the implementation's concern.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Iterator, Protocol, Sequence


class StorageError(RuntimeError):
    """Raised when object storage operations fail."""


class AuthError(StorageError):
    """Raised when the store rejects the supplied credentials."""


class StoreConnectionError(StorageError):
    """Raised when the endpoint cannot be parsed or reached."""


class NotFoundError(StorageError):
    """Raised when the requested object does not exist."""


class TransportError(StorageError):
    """Raised for network or protocol failures talking to the store."""


class PartialReadError(TransportError):
    """Raised when a stream fails part way through filling a buffer."""

    def __init__(self, message: str, *, bytes_read: int) -> None:
        super().__init__(message)
        self.bytes_read = bytes_read


class AckStatus(str, Enum):
    """Acknowledgement reported by the store for a write."""

    CREATED = "created"
    OK = "ok"
    REJECTED = "rejected"


@dataclass(frozen=True, slots=True)
class ConnectionHandle:
    """Authenticated connection scope returned by ``authenticate``."""

    endpoint: str
    client: Any


@dataclass(frozen=True, slots=True)
class ObjectHead:
    """Metadata from a HEAD object request."""

    size_bytes: int
    etag: str | None
    content_type: str | None


@dataclass(frozen=True, slots=True)
class ObjectInfo:
    """One entry of a bucket listing."""

    key: str
    size_bytes: int
    last_modified: datetime | None
    etag: str | None


class ObjectStoreClient(Protocol):
    """Protocol defining the interface for object store backends.

    Implementations translate their SDK failures into ``AuthError``,
    ``StoreConnectionError``, ``NotFoundError`` and ``TransportError``.
    """

    def authenticate(
        self, endpoint: str, access_key: str, secret_key: str
    ) -> ConnectionHandle:
        """Open an authenticated connection scope.

        Implementations may validate credentials lazily. The S3 client only
        rejects missing credentials here; wrong ones raise ``AuthError`` from
        the first operation that uses the handle.

        Raises:
            AuthError: If the credentials are rejected or missing.
            StoreConnectionError: If the endpoint is malformed or unreachable.
        """
        ...

    def get_object(self, conn: ConnectionHandle, *, bucket: str, key: str) -> Any:
        """Return a readable stream over the whole object.

        Raises:
            NotFoundError: If the key does not exist.
            TransportError: If the request fails.
        """
        ...

    def head_object(
        self, conn: ConnectionHandle, *, bucket: str, key: str
    ) -> ObjectHead:
        """Get object metadata without downloading the content."""
        ...

    def put_object(
        self, conn: ConnectionHandle, *, bucket: str, key: str, data: bytes
    ) -> AckStatus:
        """Write the whole object in one request."""
        ...

    def delete_object(
        self, conn: ConnectionHandle, *, bucket: str, key: str
    ) -> AckStatus:
        """Delete the object together with its snapshots or versions."""
        ...

    def put_block(
        self,
        conn: ConnectionHandle,
        *,
        bucket: str,
        key: str,
        token: str,
        data: bytes,
    ) -> AckStatus:
        """Stage one block under ``token`` without making it visible."""
        ...

    def commit_block_list(
        self,
        conn: ConnectionHandle,
        *,
        bucket: str,
        key: str,
        tokens: Sequence[str],
    ) -> AckStatus:
        """Assemble staged blocks, in the given order, into the object."""
        ...

    def get_range(
        self,
        conn: ConnectionHandle,
        *,
        bucket: str,
        key: str,
        start: int,
        count: int,
        buffer: bytearray | memoryview,
    ) -> None:
        """Read ``count`` bytes from ``start`` into the head of ``buffer``.

        Either the whole range lands in the buffer or an error is raised.
        """
        ...

    def list_objects(
        self, conn: ConnectionHandle, *, bucket: str, prefix: str | None = None
    ) -> Iterator[ObjectInfo]:
        """Lazily enumerate objects, following continuation markers."""
        ...
