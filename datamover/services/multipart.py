"""Staged-block upload of a single object.

A :class:`TransferSession` walks one object through
``UNINITIALIZED -> INITIALIZED -> STAGING -> COMMITTED | ABORTED``. Blocks
are committed in the order :meth:`TransferSession.stage_block` succeeded, not
in sequence-number order, so callers stage blocks in increasing sequence
order unless ``sort_on_commit`` is enabled.
"""

from __future__ import annotations

from enum import Enum

from datamover.common.config import Settings
from datamover.domain.block_ids import (
    decode_block_id,
    encode_block_id,
    sort_by_sequence,
)
from datamover.domain.location import Location
from datamover.infra.observability.metrics import BYTES
from datamover.infra.storage.client import (
    AckStatus,
    ConnectionHandle,
    ObjectStoreClient,
    StorageError,
)
from datamover.services.base import (
    BaseService,
    CommitError,
    InvalidStateError,
    StageError,
    logger,
)


class MultipartState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZED = "initialized"
    STAGING = "staging"
    COMMITTED = "committed"
    ABORTED = "aborted"


TERMINAL_STATES = frozenset({MultipartState.COMMITTED, MultipartState.ABORTED})


class TransferSession(BaseService):
    """State of one in-progress multipart upload.

    Not safe for concurrent use: the staged token list is mutated without
    locking, and the connection is owned by this session alone.
    """

    def __init__(
        self,
        key: str,
        store: ObjectStoreClient,
        *,
        settings: Settings | None = None,
        sort_on_commit: bool | None = None,
    ) -> None:
        super().__init__(store, settings=settings)
        self.key = key
        self._location: Location | None = None
        self._conn: ConnectionHandle | None = None
        self._tokens: list[str] = []
        self._state = MultipartState.UNINITIALIZED
        if sort_on_commit is None:
            sort_on_commit = self._settings.SORT_BLOCKS_ON_COMMIT
        self._sort_on_commit = sort_on_commit

    @property
    def state(self) -> MultipartState:
        return self._state

    @property
    def location(self) -> Location | None:
        return self._location

    @property
    def staged_tokens(self) -> tuple[str, ...]:
        return tuple(self._tokens)

    @property
    def staged_sequences(self) -> tuple[int, ...]:
        return tuple(decode_block_id(token) for token in self._tokens)

    def _require(self, *allowed: MultipartState, action: str) -> None:
        if self._state not in allowed:
            raise InvalidStateError(
                f"Cannot {action} for object {self.key} in state {self._state.value}"
            )

    def _context(self, **extra: object) -> dict[str, object]:
        context: dict[str, object] = {"key": self.key, "state": self._state.value}
        if self._location is not None:
            context.update(self._location.describe())
        context.update(extra)
        return context

    def init(self, location: Location) -> None:
        """Open the connection scope for this upload.

        May be repeated until the first block is staged; each call
        re-establishes the connection.

        Raises:
            AuthError: If the store rejects the credentials up front. Stores
                that check them lazily fail the first ``stage_block`` instead.
            StoreConnectionError: If the endpoint is malformed or unreachable.
            InvalidStateError: If blocks were already staged or the session ended.
        """
        self._require(
            MultipartState.UNINITIALIZED,
            MultipartState.INITIALIZED,
            action="initialize multipart upload",
        )
        with self._observe("multipart_init"):
            self._conn = self._connect(location)
        self._location = location
        self._state = MultipartState.INITIALIZED
        logger.info("multipart_upload_initialized", extra={"extra": self._context()})

    def stage_block(
        self, sequence: int, payload: bytes | bytearray | memoryview
    ) -> str:
        """Upload one block and remember its token.

        Returns the block token. On failure nothing is recorded, so the same
        block can simply be staged again.

        Raises:
            StageError: If the store fails or does not acknowledge the block.
            InvalidStateError: Outside ``INITIALIZED`` / ``STAGING``.
            ValueError: If ``sequence`` is outside the int64 range.
        """
        self._require(
            MultipartState.INITIALIZED, MultipartState.STAGING, action="stage a block"
        )
        assert self._conn is not None and self._location is not None
        token = encode_block_id(sequence)
        data = bytes(payload)

        with self._observe("stage_block"):
            try:
                status = self._store.put_block(
                    self._conn,
                    bucket=self._location.bucket,
                    key=self.key,
                    token=token,
                    data=data,
                )
            except StorageError as exc:
                logger.error(
                    "stage_block_failed",
                    extra={"extra": self._context(sequence=sequence, token=token)},
                    exc_info=True,
                )
                raise StageError(
                    f"Failed to stage block #{sequence} of {self.key}: {exc}"
                ) from exc
            if status is not AckStatus.CREATED:
                logger.error(
                    "stage_block_rejected",
                    extra={
                        "extra": self._context(sequence=sequence, status=status.value)
                    },
                )
                raise StageError(
                    f"Block #{sequence} of {self.key} was not acknowledged: "
                    f"{status.value}"
                )

        self._tokens.append(token)
        self._state = MultipartState.STAGING
        BYTES.labels(direction="upload").inc(len(data))
        logger.debug(
            "stage_block_succeeded",
            extra={"extra": self._context(sequence=sequence, token=token)},
        )
        return token

    def commit(self) -> None:
        """Commit the staged blocks as the object's content.

        With no staged blocks this writes an empty object. A failed commit
        leaves the session as it was so the call can be retried.

        Raises:
            CommitError: If the store fails or rejects the block list.
            InvalidStateError: Outside ``INITIALIZED`` / ``STAGING``.
        """
        self._require(
            MultipartState.INITIALIZED, MultipartState.STAGING, action="commit"
        )
        assert self._conn is not None and self._location is not None
        if self._sort_on_commit:
            tokens = sort_by_sequence(self._tokens)
        else:
            tokens = list(self._tokens)

        with self._observe("commit"):
            try:
                status = self._store.commit_block_list(
                    self._conn,
                    bucket=self._location.bucket,
                    key=self.key,
                    tokens=tokens,
                )
            except StorageError as exc:
                logger.error(
                    "commit_failed",
                    extra={"extra": self._context(blocks=len(tokens))},
                    exc_info=True,
                )
                raise CommitError(
                    f"Failed to commit {len(tokens)} blocks of {self.key}: {exc}"
                ) from exc
            if status is not AckStatus.CREATED:
                logger.error(
                    "commit_rejected",
                    extra={"extra": self._context(status=status.value)},
                )
                raise CommitError(
                    f"Block list of {self.key} was not acknowledged: {status.value}"
                )

        self._state = MultipartState.COMMITTED
        self._conn = None
        logger.info(
            "multipart_upload_committed",
            extra={"extra": self._context(blocks=len(tokens))},
        )

    def abort(self) -> None:
        """Discard the session.

        Nothing is sent to the store: uncommitted blocks expire there on
        their own.
        """
        if self._state in TERMINAL_STATES:
            raise InvalidStateError(
                f"Cannot abort object {self.key} in state {self._state.value}"
            )
        discarded = len(self._tokens)
        self._tokens.clear()
        self._conn = None
        self._state = MultipartState.ABORTED
        logger.info(
            "multipart_upload_aborted",
            extra={"extra": self._context(discarded_blocks=discarded)},
        )
