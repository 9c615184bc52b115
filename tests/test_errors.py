"""Tests for error classification."""

import pytest
from botocore.exceptions import ClientError, NoCredentialsError
from sqlalchemy.exc import OperationalError

from photocheck_gateway.errors import (
    DatabaseError,
    ExternalServiceError,
    ImageProcessingError,
    NotFoundError,
    StateTransitionError,
    StorageError,
    ValidationError,
    is_retryable,
    to_app_error,
)
from photocheck_runner.utils import ImageDecodeError


@pytest.mark.parametrize(
    "error_class, status_code, retryable",
    [
        (ValidationError, 400, False),
        (NotFoundError, 404, False),
        (StorageError, 503, True),
        (DatabaseError, 503, True),
        (ImageProcessingError, 422, False),
        (StateTransitionError, 409, False),
        (ExternalServiceError, 503, True),
    ],
)
def test_error_taxonomy(error_class, status_code, retryable):
    error = error_class("boom", {"image_id": "img-1"})

    assert error.status_code == status_code
    assert error.retryable is retryable
    payload = error.to_dict()
    assert payload["code"] == error_class.code
    assert payload["message"] == "boom"
    assert payload["context"] == {"image_id": "img-1"}


def test_database_error_retry_flag_is_configurable():
    assert DatabaseError("dup", retryable=False).retryable is False


def test_app_errors_pass_through():
    error = NotFoundError("gone")

    assert to_app_error(error) is error


@pytest.mark.parametrize("code", ["NoSuchKey", "NotFound", "404", "AccessDenied", "SlowDown"])
def test_client_errors_map_to_storage_errors(code):
    exc = ClientError({"Error": {"Code": code, "Message": "x"}}, "GetObject")

    error = to_app_error(exc)

    assert isinstance(error, StorageError)
    assert error.context["original_error"] == code


def test_library_errors_are_classified():
    assert isinstance(to_app_error(NoCredentialsError()), StorageError)
    assert isinstance(to_app_error(OperationalError("SELECT 1", {}, Exception("locked"))), DatabaseError)
    assert isinstance(to_app_error(ImageDecodeError("bad bytes")), ImageProcessingError)
    assert isinstance(to_app_error(RuntimeError("surprise")), ExternalServiceError)


def test_is_retryable():
    assert is_retryable(StorageError("x"))
    assert is_retryable(RuntimeError("x"))
    assert not is_retryable(ImageDecodeError("x"))
    assert not is_retryable(ValidationError("x"))
