"""Transfer engine for moving one object between memory and an object store.

This module provides whole-object download, upload and delete, ranged reads
into caller buffers, and the entry point for staged-block (multipart)
uploads. Every call authenticates against the ``Location`` it is given; only
a :class:`TransferSession` keeps a connection across calls.
"""

from __future__ import annotations

from contextlib import closing
from typing import Iterator

from datamover.common.config import Settings, get_settings
from datamover.domain.location import Location
from datamover.infra.observability.metrics import BYTES
from datamover.infra.storage.client import (
    AckStatus,
    ConnectionHandle,
    ObjectHead,
    ObjectInfo,
    ObjectStoreClient,
    PartialReadError,
    StorageError,
)
from datamover.infra.storage.reader import read_into
from datamover.infra.storage.s3_client import S3ObjectStoreClient
from datamover.services.base import (
    BaseService,
    DeleteError,
    RangeError,
    UploadError,
    logger,
)
from datamover.services.multipart import TransferSession


class TransferService(BaseService):
    """Application service for single-object transfers.

    Blocks the caller until the store answers or the connection timeout
    configured on the store client elapses. Nothing is retried here.
    """

    def __init__(
        self,
        store: ObjectStoreClient | None = None,
        *,
        settings: Settings | None = None,
    ) -> None:
        settings = settings or get_settings()
        super().__init__(
            store or S3ObjectStoreClient(settings=settings), settings=settings
        )

    def download(
        self, key: str, location: Location, buffer: bytearray | memoryview
    ) -> int:
        """Download the whole object into ``buffer``.

        Returns the number of bytes written. An object larger than the buffer
        is truncated without error; size the buffer with :meth:`head` when
        completeness matters.

        Raises:
            NotFoundError: If the key does not exist.
            TransportError: If the request fails.
            PartialReadError: If the stream breaks; carries ``bytes_read``.
        """
        context = {"key": key, **location.describe()}
        logger.info("download_started", extra={"extra": context})
        with self._observe("download"):
            conn = self._connect(location)
            try:
                stream = self._store.get_object(conn, bucket=location.bucket, key=key)
                with closing(stream):
                    size = read_into(stream, buffer)
            except PartialReadError as exc:
                BYTES.labels(direction="download").inc(exc.bytes_read)
                logger.error(
                    "download_read_failed",
                    extra={"extra": {**context, "bytes_read": exc.bytes_read}},
                    exc_info=True,
                )
                raise
            except StorageError:
                logger.error("download_failed", extra={"extra": context}, exc_info=True)
                raise

        BYTES.labels(direction="download").inc(size)
        logger.info("download_succeeded", extra={"extra": {**context, "size": size}})
        return size

    def upload(
        self, key: str, location: Location, data: bytes | bytearray | memoryview
    ) -> None:
        """Write ``data`` as the whole object in one request.

        Raises:
            UploadError: If the put fails or is not acknowledged as created.
        """
        context = {"key": key, **location.describe()}
        payload = bytes(data)
        with self._observe("upload"):
            conn = self._connect(location)
            try:
                status = self._store.put_object(
                    conn, bucket=location.bucket, key=key, data=payload
                )
            except StorageError as exc:
                logger.error("upload_failed", extra={"extra": context}, exc_info=True)
                raise UploadError(f"Failed to upload object {key}: {exc}") from exc
            if status is not AckStatus.CREATED:
                logger.error(
                    "upload_rejected",
                    extra={"extra": {**context, "status": status.value}},
                )
                raise UploadError(
                    f"Upload of {key} was not acknowledged: {status.value}"
                )

        BYTES.labels(direction="upload").inc(len(payload))
        logger.info(
            "upload_succeeded", extra={"extra": {**context, "size": len(payload)}}
        )

    def delete(self, key: str, location: Location) -> None:
        """Delete the object, including its snapshots or versions.

        Raises:
            DeleteError: If the delete fails or is not acknowledged.
        """
        context = {"key": key, **location.describe()}
        with self._observe("delete"):
            conn = self._connect(location)
            try:
                status = self._store.delete_object(
                    conn, bucket=location.bucket, key=key
                )
            except StorageError as exc:
                logger.error("delete_failed", extra={"extra": context}, exc_info=True)
                raise DeleteError(f"Failed to delete object {key}: {exc}") from exc
            if status is not AckStatus.OK:
                logger.error(
                    "delete_rejected",
                    extra={"extra": {**context, "status": status.value}},
                )
                raise DeleteError(
                    f"Delete of {key} was not acknowledged: {status.value}"
                )

        logger.info("delete_succeeded", extra={"extra": context})

    def head(self, key: str, location: Location) -> ObjectHead:
        """Fetch object metadata, e.g. to size a download buffer."""
        with self._observe("head"):
            conn = self._connect(location)
            return self._store.head_object(conn, bucket=location.bucket, key=key)

    def list_objects(
        self, location: Location, prefix: str | None = None
    ) -> Iterator[ObjectInfo]:
        """Lazily list the objects of the location's bucket."""
        logger.info(
            "list_objects", extra={"extra": {**location.describe(), "prefix": prefix}}
        )
        conn = self._connect(location)
        return self._store.list_objects(conn, bucket=location.bucket, prefix=prefix)

    def multipart_download_init(self, location: Location) -> ConnectionHandle:
        """Open a connection to reuse across :meth:`download_range` calls."""
        logger.info(
            "multipart_download_initialized", extra={"extra": location.describe()}
        )
        return self._connect(location)

    def download_range(
        self,
        key: str,
        location: Location,
        buffer: bytearray | memoryview,
        start: int,
        end: int,
        *,
        connection: ConnectionHandle | None = None,
    ) -> int:
        """Download bytes ``start`` through ``end`` (inclusive) into ``buffer``.

        Either the whole range lands in the buffer or an error is raised.

        Raises:
            RangeError: If any part of the range could not be read.
            ValueError: If the range is invalid or the buffer too small.
        """
        if start < 0 or end < start:
            raise ValueError(f"Invalid byte range [{start}, {end}]")
        count = end - start + 1
        capacity = memoryview(buffer).nbytes
        if capacity < count:
            raise ValueError(
                f"Buffer of {capacity} bytes cannot hold range of {count} bytes"
            )

        context = {"key": key, "start": start, "end": end, **location.describe()}
        logger.debug("download_range_started", extra={"extra": context})
        with self._observe("download_range"):
            conn = connection or self._connect(location)
            try:
                self._store.get_range(
                    conn,
                    bucket=location.bucket,
                    key=key,
                    start=start,
                    count=count,
                    buffer=buffer,
                )
            except StorageError as exc:
                logger.error(
                    "download_range_failed", extra={"extra": context}, exc_info=True
                )
                raise RangeError(
                    f"Failed to download range [{start}, {end}] of {key}: {exc}"
                ) from exc

        BYTES.labels(direction="download").inc(count)
        logger.debug("download_range_succeeded", extra={"extra": context})
        return count

    def multipart_upload_init(
        self,
        key: str,
        location: Location,
        *,
        sort_on_commit: bool | None = None,
    ) -> TransferSession:
        """Start a staged-block upload of ``key`` and return its session."""
        session = TransferSession(
            key, self._store, settings=self._settings, sort_on_commit=sort_on_commit
        )
        session.init(location)
        return session
