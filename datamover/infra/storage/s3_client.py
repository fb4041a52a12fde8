"""S3-compatible object store client implementation.

Works with AWS S3, MinIO, and other S3-compatible services. S3 has no native
staged-block list, so blocks are written as hidden staging objects under
``Settings.STAGING_PREFIX`` and assembled at commit time in block-list order.
Blocks may have any size: consecutive blocks smaller than the S3 part minimum
are merged into one part, larger ones are copied server-side with
``upload_part_copy``, and a block list that fits in a single part is written
with one ``put_object``.

Credentials are not checked when a connection scope is opened; S3 only
rejects them on the first request that uses them.

Dependencies:
    - boto3
    - botocore
"""

from __future__ import annotations

import logging
from contextlib import closing
from typing import Any, Iterator, Mapping, Sequence
from urllib.parse import quote, urlparse

import boto3
from botocore.config import Config
from botocore.exceptions import (
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    NoCredentialsError,
    PartialCredentialsError,
)

from datamover.common.config import Settings, get_settings
from datamover.infra.storage.client import (
    AckStatus,
    AuthError,
    ConnectionHandle,
    NotFoundError,
    ObjectHead,
    ObjectInfo,
    StorageError,
    StoreConnectionError,
    TransportError,
)
from datamover.infra.storage.reader import read_into

logger = logging.getLogger("datamover.storage")

# S3 caps DeleteObjects at 1000 keys per request
DELETE_BATCH_SIZE = 1000
# Every multipart part except the last must reach this size
MIN_PART_SIZE = 5 * 1024 * 1024
MAX_PARTS = 10_000

_AUTH_CODES = {
    "403",
    "AccessDenied",
    "ExpiredToken",
    "InvalidAccessKeyId",
    "InvalidToken",
    "SignatureDoesNotMatch",
}
_NOT_FOUND_CODES = {"404", "NoSuchKey", "NoSuchBucket", "NotFound"}
# ListObjectVersions answers that mean "fall back to a plain delete"
_NO_VERSION_LISTING_CODES = {
    "403",
    "405",
    "501",
    "AccessDenied",
    "MethodNotAllowed",
    "NotImplemented",
}


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


def _translate_error(exc: Exception, message: str) -> StorageError:
    """Map a boto3/botocore failure onto the storage error taxonomy."""
    if isinstance(exc, ClientError):
        code = _error_code(exc)
        if code in _AUTH_CODES:
            return AuthError(f"{message}: {exc}")
        if code in _NOT_FOUND_CODES:
            return NotFoundError(f"{message}: {exc}")
        return TransportError(f"{message}: {exc}")
    if isinstance(exc, (NoCredentialsError, PartialCredentialsError)):
        return AuthError(f"{message}: {exc}")
    if isinstance(exc, (EndpointConnectionError, ConnectTimeoutError)):
        return StoreConnectionError(f"{message}: {exc}")
    return TransportError(f"{message}: {exc}")


def _ack(response: dict[str, Any], success: AckStatus) -> AckStatus:
    status = response.get("ResponseMetadata", {}).get("HTTPStatusCode")
    if status is None or 200 <= int(status) < 300:
        return success
    logger.warning("store_rejected_request", extra={"extra": {"status": status}})
    return AckStatus.REJECTED


def plan_parts(
    tokens: Sequence[str],
    sizes: Mapping[str, int],
    *,
    min_part_size: int = MIN_PART_SIZE,
) -> list[list[str]]:
    """Group block tokens, in order, into multipart parts.

    Consecutive blocks are merged until the group reaches ``min_part_size``,
    so every part but the last meets the S3 minimum. A block that reaches the
    minimum on its own, or that ends the list, may stand alone as a part and
    be copied server-side.
    """
    parts: list[list[str]] = []
    pending: list[str] = []
    pending_size = 0
    for token in tokens:
        size = sizes[token]
        if not pending and size >= min_part_size:
            parts.append([token])
            continue
        pending.append(token)
        pending_size += size
        if pending_size >= min_part_size:
            parts.append(pending)
            pending, pending_size = [], 0
    if pending:
        parts.append(pending)
    return parts


class S3ObjectStoreClient:
    """S3-compatible object store client.

    Supports AWS S3, MinIO, and other S3-compatible services.
    Uses boto3 for all storage operations.
    """

    def __init__(self, *, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()

    def _build_client(self, endpoint: str, access_key: str, secret_key: str) -> Any:
        """Create a boto3 S3 client for one connection scope."""
        settings = self._settings
        config = Config(
            s3={"addressing_style": settings.S3_ADDRESSING_STYLE},
            connect_timeout=settings.STORE_CONNECT_TIMEOUT,
            read_timeout=settings.STORE_READ_TIMEOUT,
            retries={"max_attempts": settings.STORE_MAX_ATTEMPTS, "mode": "standard"},
        )
        return boto3.client(
            "s3",
            endpoint_url=endpoint,
            region_name=settings.S3_REGION,
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
            use_ssl=bool(settings.S3_USE_SSL),
            config=config,
        )

    def staging_prefix(self, key: str) -> str:
        """Prefix under which the blocks of ``key`` are staged."""
        return f"{self._settings.STAGING_PREFIX}{key}/"

    def staging_key(self, key: str, token: str) -> str:
        # base64 tokens may contain '/' and '+'
        return f"{self.staging_prefix(key)}{quote(token, safe='')}"

    def authenticate(
        self, endpoint: str, access_key: str, secret_key: str
    ) -> ConnectionHandle:
        """Open a connection scope for one endpoint and credential pair.

        No request is sent: wrong credentials surface as ``AuthError`` from
        the first operation that uses the handle.
        """
        parsed = urlparse(endpoint or "")
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise StoreConnectionError(f"Invalid store endpoint: {endpoint!r}")
        if not access_key or not secret_key:
            raise AuthError("Access key and secret key are required")

        try:
            client = self._build_client(endpoint, access_key, secret_key)
        except Exception as exc:
            raise _translate_error(exc, "Failed to create store client") from exc

        logger.debug("store_connected", extra={"extra": {"endpoint": endpoint}})
        return ConnectionHandle(endpoint=endpoint, client=client)

    def get_object(self, conn: ConnectionHandle, *, bucket: str, key: str) -> Any:
        """Return the streaming body of the whole object."""
        try:
            response = conn.client.get_object(Bucket=bucket, Key=key)
        except Exception as exc:
            raise _translate_error(exc, f"Failed to get object {key}") from exc
        return response["Body"]

    def head_object(
        self, conn: ConnectionHandle, *, bucket: str, key: str
    ) -> ObjectHead:
        """Get object metadata without downloading the content."""
        try:
            response = conn.client.head_object(Bucket=bucket, Key=key)
        except Exception as exc:
            raise _translate_error(exc, "Failed to get object metadata") from exc

        size = response.get("ContentLength")
        return ObjectHead(
            size_bytes=int(size) if size is not None else 0,
            etag=response.get("ETag"),
            content_type=response.get("ContentType"),
        )

    def put_object(
        self, conn: ConnectionHandle, *, bucket: str, key: str, data: bytes
    ) -> AckStatus:
        """Write the whole object in a single PUT."""
        try:
            response = conn.client.put_object(Bucket=bucket, Key=key, Body=data)
        except Exception as exc:
            raise _translate_error(exc, f"Failed to put object {key}") from exc
        return _ack(response, AckStatus.CREATED)

    def delete_object(
        self, conn: ConnectionHandle, *, bucket: str, key: str
    ) -> AckStatus:
        """Delete the object and, on versioned buckets, every version of it.

        Stores or credentials that cannot list versions get a plain delete.
        """
        try:
            versions = self._list_versions(conn, bucket=bucket, key=key)
            if not versions:
                response = conn.client.delete_object(Bucket=bucket, Key=key)
                return _ack(response, AckStatus.OK)
            status = AckStatus.OK
            for start in range(0, len(versions), DELETE_BATCH_SIZE):
                batch = versions[start : start + DELETE_BATCH_SIZE]
                response = conn.client.delete_objects(
                    Bucket=bucket, Delete={"Objects": batch, "Quiet": True}
                )
                if response.get("Errors"):
                    logger.warning(
                        "delete_versions_partial_failure",
                        extra={"extra": {"key": key, "errors": response["Errors"]}},
                    )
                    status = AckStatus.REJECTED
                elif _ack(response, AckStatus.OK) is not AckStatus.OK:
                    status = AckStatus.REJECTED
            return status
        except Exception as exc:
            raise _translate_error(exc, f"Failed to delete object {key}") from exc

    def _list_versions(
        self, conn: ConnectionHandle, *, bucket: str, key: str
    ) -> list[dict[str, str]]:
        versions: list[dict[str, str]] = []
        params: dict[str, Any] = {"Bucket": bucket, "Prefix": key}
        while True:
            try:
                page = conn.client.list_object_versions(**params)
            except ClientError as exc:
                if _error_code(exc) not in _NO_VERSION_LISTING_CODES:
                    raise
                logger.info(
                    "list_versions_unavailable",
                    extra={"extra": {"key": key, "code": _error_code(exc)}},
                )
                return []
            entries = page.get("Versions", []) + page.get("DeleteMarkers", [])
            for entry in entries:
                if entry.get("Key") == key and entry.get("VersionId"):
                    versions.append({"Key": key, "VersionId": entry["VersionId"]})
            # keys are listed in order and ``key`` sorts before every longer key
            if not page.get("IsTruncated") or any(
                entry.get("Key") != key for entry in entries
            ):
                return versions
            params["KeyMarker"] = page.get("NextKeyMarker", key)
            if page.get("NextVersionIdMarker"):
                params["VersionIdMarker"] = page["NextVersionIdMarker"]

    def put_block(
        self,
        conn: ConnectionHandle,
        *,
        bucket: str,
        key: str,
        token: str,
        data: bytes,
    ) -> AckStatus:
        """Stage a block as a hidden object; restaging a token overwrites it."""
        staging_key = self.staging_key(key, token)
        try:
            response = conn.client.put_object(
                Bucket=bucket, Key=staging_key, Body=data
            )
        except Exception as exc:
            raise _translate_error(exc, f"Failed to stage block {token}") from exc
        return _ack(response, AckStatus.CREATED)

    def commit_block_list(
        self,
        conn: ConnectionHandle,
        *,
        bucket: str,
        key: str,
        tokens: Sequence[str],
    ) -> AckStatus:
        """Assemble staged blocks into ``key`` in exactly the order given.

        Raises:
            NotFoundError: If a token in the list was never staged.
            TransportError: If the store fails or the list needs too many parts.
        """
        if not tokens:
            return self.put_object(conn, bucket=bucket, key=key, data=b"")

        staged = self._staged_blocks(conn, bucket=bucket, key=key)
        sizes: dict[str, int] = {}
        for token in tokens:
            staging_key = self.staging_key(key, token)
            if staging_key not in staged:
                raise NotFoundError(f"Staged block {token} of {key} not found")
            sizes[token] = staged[staging_key]

        parts = plan_parts(tokens, sizes)
        if len(parts) > MAX_PARTS:
            raise TransportError(
                f"Block list of {key} needs {len(parts)} parts, "
                f"S3 allows at most {MAX_PARTS}"
            )

        if len(parts) == 1 and len(parts[0]) > 1:
            data = self._read_blocks(
                conn, bucket=bucket, key=key, tokens=parts[0], sizes=sizes
            )
            try:
                response = conn.client.put_object(Bucket=bucket, Key=key, Body=data)
            except Exception as exc:
                raise _translate_error(exc, "Failed to commit block list") from exc
        else:
            response = self._upload_parts(
                conn, bucket=bucket, key=key, parts=parts, sizes=sizes
            )

        status = _ack(response, AckStatus.CREATED)
        if status is AckStatus.CREATED:
            self._discard_staged_blocks(
                conn, bucket=bucket, key=key, staged=list(staged)
            )
        return status

    def _staged_blocks(
        self, conn: ConnectionHandle, *, bucket: str, key: str
    ) -> dict[str, int]:
        """Map every staging object of ``key`` to its size.

        Listed with a ``/`` delimiter so the blocks of nested keys such as
        ``key/child`` are left out.
        """
        return {
            item.key: item.size_bytes
            for item in self._iter_objects(
                conn, bucket=bucket, prefix=self.staging_prefix(key), delimiter="/"
            )
        }

    def _read_blocks(
        self,
        conn: ConnectionHandle,
        *,
        bucket: str,
        key: str,
        tokens: Sequence[str],
        sizes: Mapping[str, int],
    ) -> bytes:
        data = bytearray(sum(sizes[token] for token in tokens))
        view = memoryview(data)
        offset = 0
        for token in tokens:
            size = sizes[token]
            stream = self.get_object(
                conn, bucket=bucket, key=self.staging_key(key, token)
            )
            with closing(stream):
                received = read_into(stream, view[offset : offset + size])
            if received != size:
                raise TransportError(
                    f"Short read of staged block {token} of {key}: expected "
                    f"{size} bytes, got {received}"
                )
            offset += size
        return bytes(data)

    def _upload_parts(
        self,
        conn: ConnectionHandle,
        *,
        bucket: str,
        key: str,
        parts: Sequence[Sequence[str]],
        sizes: Mapping[str, int],
    ) -> dict[str, Any]:
        """Run one multipart upload with a part per planned group."""
        try:
            created = conn.client.create_multipart_upload(Bucket=bucket, Key=key)
        except Exception as exc:
            raise _translate_error(exc, "Failed to create multipart upload") from exc

        upload_id = created.get("UploadId")
        if not upload_id:
            raise TransportError("S3 response missing UploadId")

        try:
            completed = []
            for part_number, part in enumerate(parts, start=1):
                if len(part) == 1:
                    copied = conn.client.upload_part_copy(
                        Bucket=bucket,
                        Key=key,
                        UploadId=upload_id,
                        PartNumber=part_number,
                        CopySource={
                            "Bucket": bucket,
                            "Key": self.staging_key(key, part[0]),
                        },
                    )
                    etag = copied["CopyPartResult"]["ETag"]
                else:
                    body = self._read_blocks(
                        conn, bucket=bucket, key=key, tokens=part, sizes=sizes
                    )
                    uploaded = conn.client.upload_part(
                        Bucket=bucket,
                        Key=key,
                        UploadId=upload_id,
                        PartNumber=part_number,
                        Body=body,
                    )
                    etag = uploaded["ETag"]
                completed.append({"ETag": etag, "PartNumber": part_number})
            return conn.client.complete_multipart_upload(
                Bucket=bucket,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={"Parts": completed},
            )
        except StorageError:
            self._abort_upload(conn, bucket=bucket, key=key, upload_id=upload_id)
            raise
        except Exception as exc:
            self._abort_upload(conn, bucket=bucket, key=key, upload_id=upload_id)
            raise _translate_error(exc, "Failed to commit block list") from exc

    def _abort_upload(
        self, conn: ConnectionHandle, *, bucket: str, key: str, upload_id: str
    ) -> None:
        try:
            conn.client.abort_multipart_upload(
                Bucket=bucket, Key=key, UploadId=upload_id
            )
        except Exception:
            # the commit failure is what the caller needs to see
            logger.warning(
                "abort_multipart_upload_failed",
                extra={"extra": {"key": key, "upload_id": upload_id}},
                exc_info=True,
            )

    def _discard_staged_blocks(
        self,
        conn: ConnectionHandle,
        *,
        bucket: str,
        key: str,
        staged: Sequence[str],
    ) -> None:
        """Remove the staging objects of ``key``, including unused blocks."""
        objects = [{"Key": staging_key} for staging_key in staged]
        try:
            for start in range(0, len(objects), DELETE_BATCH_SIZE):
                batch = objects[start : start + DELETE_BATCH_SIZE]
                conn.client.delete_objects(
                    Bucket=bucket, Delete={"Objects": batch, "Quiet": True}
                )
        except Exception:
            # leftovers are reclaimed by the bucket's lifecycle rule
            logger.warning(
                "staged_block_cleanup_failed",
                extra={"extra": {"key": key}},
                exc_info=True,
            )

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
        """Read a byte range in ``RANGE_CHUNK_SIZE`` requests."""
        view = memoryview(buffer).cast("B")
        if len(view) < count:
            raise ValueError(f"Buffer of {len(view)} bytes cannot hold {count} bytes")

        chunk_size = self._settings.RANGE_CHUNK_SIZE
        offset = 0
        while offset < count:
            length = min(chunk_size, count - offset)
            first = start + offset
            try:
                response = conn.client.get_object(
                    Bucket=bucket,
                    Key=key,
                    Range=f"bytes={first}-{first + length - 1}",
                )
                received = read_into(response["Body"], view[offset : offset + length])
            except StorageError:
                raise
            except Exception as exc:
                raise _translate_error(exc, f"Failed to read range of {key}") from exc
            if received != length:
                raise TransportError(
                    f"Short range read on {key}: expected {length} bytes at "
                    f"offset {first}, got {received}"
                )
            offset += length

    def list_objects(
        self, conn: ConnectionHandle, *, bucket: str, prefix: str | None = None
    ) -> Iterator[ObjectInfo]:
        """Enumerate objects lazily, hiding staged blocks."""
        staging = self._settings.STAGING_PREFIX
        for item in self._iter_objects(conn, bucket=bucket, prefix=prefix):
            if item.key.startswith(staging):
                continue
            yield item

    def _iter_objects(
        self,
        conn: ConnectionHandle,
        *,
        bucket: str,
        prefix: str | None,
        delimiter: str | None = None,
    ) -> Iterator[ObjectInfo]:
        params: dict[str, Any] = {"Bucket": bucket}
        if prefix:
            params["Prefix"] = prefix
        if delimiter:
            params["Delimiter"] = delimiter
        while True:
            try:
                page = conn.client.list_objects_v2(**params)
            except Exception as exc:
                raise _translate_error(exc, "Failed to list objects") from exc
            for entry in page.get("Contents", []):
                yield ObjectInfo(
                    key=entry["Key"],
                    size_bytes=int(entry.get("Size", 0)),
                    last_modified=entry.get("LastModified"),
                    etag=entry.get("ETag"),
                )
            token = page.get("NextContinuationToken")
            if not page.get("IsTruncated") or not token:
                return
            params["ContinuationToken"] = token
