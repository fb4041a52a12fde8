from .base import (
    BaseService,
    CommitError,
    DeleteError,
    InvalidStateError,
    RangeError,
    StageError,
    TransferError,
    UploadError,
)
from .multipart import MultipartState, TransferSession
from .transfer_service import TransferService

__all__ = [
    "BaseService",
    "TransferError",
    "InvalidStateError",
    "StageError",
    "CommitError",
    "UploadError",
    "DeleteError",
    "RangeError",
    "MultipartState",
    "TransferSession",
    "TransferService",
]
