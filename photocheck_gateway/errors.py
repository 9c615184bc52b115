"""Error taxonomy for the upload pipeline.

Each error carries an HTTP status code and a ``retryable`` flag. The job
queue consults ``retryable`` to decide whether another attempt can help.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from botocore.exceptions import BotoCoreError, ClientError
from sqlalchemy.exc import SQLAlchemyError

from photocheck_runner.utils import ImageDecodeError


class AppError(Exception):
    """Base exception for pipeline errors."""

    code = "APP_ERROR"
    status_code = 500
    retryable = False

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": type(self).__name__,
            "code": self.code,
            "message": self.message,
            "status_code": self.status_code,
            "retryable": self.retryable,
            "context": self.context,
        }


class ValidationError(AppError):
    """Malformed request (client fault)."""

    code = "VALIDATION_ERROR"
    status_code = 400


class NotFoundError(AppError):
    """Image record does not exist."""

    code = "NOT_FOUND"
    status_code = 404


class StorageError(AppError):
    """Object store unreachable or misbehaving."""

    code = "STORAGE_ERROR"
    status_code = 503
    retryable = True


class DatabaseError(AppError):
    """Record store failure; retryable unless flagged otherwise."""

    code = "DATABASE_ERROR"
    status_code = 503

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        retryable: bool = True,
    ):
        super().__init__(message, context)
        self.retryable = retryable


class ImageProcessingError(AppError):
    """Image could not be decoded or analysed; retrying will not help."""

    code = "IMAGE_PROCESSING_ERROR"
    status_code = 422


class StateTransitionError(AppError):
    """Requested status change is not an edge of the lifecycle state machine."""

    code = "STATE_TRANSITION_ERROR"
    status_code = 409


class ExternalServiceError(AppError):
    """Third-party failure."""

    code = "EXTERNAL_SERVICE_ERROR"
    status_code = 503
    retryable = True


_MISSING_OBJECT_CODES = {"NoSuchKey", "NotFound", "404"}


def is_retryable(exc: BaseException) -> bool:
    return to_app_error(exc).retryable


def to_app_error(exc: BaseException) -> AppError:
    """Classify any exception into the pipeline taxonomy."""
    if isinstance(exc, AppError):
        return exc
    if isinstance(exc, ImageDecodeError):
        return ImageProcessingError(str(exc), {"original_error": type(exc).__name__})
    if isinstance(exc, ClientError):
        code = exc.response.get("Error", {}).get("Code", "")
        if code in _MISSING_OBJECT_CODES:
            return StorageError("Object not found in storage", {"original_error": code})
        if code == "AccessDenied":
            return StorageError("Storage access denied", {"original_error": code})
        return StorageError(str(exc), {"original_error": code})
    if isinstance(exc, BotoCoreError):
        return StorageError(str(exc), {"original_error": type(exc).__name__})
    if isinstance(exc, SQLAlchemyError):
        return DatabaseError(str(exc), {"original_error": type(exc).__name__})
    return ExternalServiceError(str(exc) or type(exc).__name__, {"original_error": type(exc).__name__})
