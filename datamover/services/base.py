from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from typing import Generator

from datamover.common.config import Settings, get_settings
from datamover.domain.location import Location
from datamover.infra.observability.metrics import LATENCY, OPERATIONS
from datamover.infra.storage.client import ConnectionHandle, ObjectStoreClient

logger = logging.getLogger("datamover.transfer")


class TransferError(Exception):
    """Base class for transfer engine exceptions."""


class InvalidStateError(TransferError):
    """Raised when a multipart operation is not allowed in the current state."""


class StageError(TransferError):
    """Raised when a block could not be staged."""


class CommitError(TransferError):
    """Raised when the staged block list could not be committed."""


class UploadError(TransferError):
    """Raised when a whole-object upload is not acknowledged as created."""


class DeleteError(TransferError):
    """Raised when a delete is not acknowledged."""


class RangeError(TransferError):
    """Raised when a ranged download does not land completely."""


class BaseService:
    """Holds the store client and settings shared by transfer services."""

    def __init__(
        self, store: ObjectStoreClient, *, settings: Settings | None = None
    ) -> None:
        self._store = store
        self._settings = settings or get_settings()

    @property
    def store(self) -> ObjectStoreClient:
        return self._store

    def _connect(self, location: Location) -> ConnectionHandle:
        try:
            return self._store.authenticate(
                location.endpoint, location.access_key, location.secret_key
            )
        except Exception:
            logger.error(
                "store_connect_failed",
                extra={"extra": location.describe()},
                exc_info=True,
            )
            raise

    @contextmanager
    def _observe(self, operation: str) -> Generator[None, None, None]:
        """Record outcome and latency of one engine operation."""
        started = time.perf_counter()
        outcome = "error"
        try:
            yield
            outcome = "success"
        finally:
            OPERATIONS.labels(operation=operation, outcome=outcome).inc()
            LATENCY.labels(operation=operation).observe(time.perf_counter() - started)
