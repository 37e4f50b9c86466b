from __future__ import annotations

import socket
import urllib.error

import pytest
from pydantic import BaseModel, ValidationError

from cse.errors import AppError, ErrorClassifier, ErrorCode, RawFailure, signal_from_exception


class _Payload(BaseModel):
    count: int


def _validation_error() -> ValidationError:
    try:
        _Payload.model_validate({"count": "many"})
    except ValidationError as error:
        return error
    raise AssertionError("validation unexpectedly succeeded")


def test_rate_limit_wins_over_network_markers() -> None:
    classifier = ErrorClassifier()
    signal = RawFailure(message="Rate limit hit after connection reset", error_code="ECONNRESET")

    error = classifier.classify(signal)

    assert error.code is ErrorCode.RATE_LIMIT
    assert error.status_code == 429
    assert error.is_retryable


@pytest.mark.parametrize(
    ("failure", "expected"),
    [
        (ConnectionRefusedError("refused"), ErrorCode.NETWORK),
        (socket.gaierror("lookup failed"), ErrorCode.NETWORK),
        (TimeoutError("read timed out"), ErrorCode.TIMEOUT),
        (RuntimeError("model overloaded"), ErrorCode.REMOTE_SERVICE),
        (RuntimeError("qdrant collection unavailable"), ErrorCode.STORAGE),
        (ValueError("boom"), ErrorCode.INTERNAL),
    ],
)
def test_exception_classification(failure: BaseException, expected: ErrorCode) -> None:
    assert ErrorClassifier().classify(failure).code is expected


def test_http_status_429_maps_to_rate_limit() -> None:
    failure = urllib.error.HTTPError("https://example.invalid", 429, "Too Many Requests", None, None)

    signal = signal_from_exception(failure)

    assert signal.status_code == 429
    assert ErrorClassifier().classify(failure).code is ErrorCode.RATE_LIMIT


def test_url_error_uses_nested_reason() -> None:
    failure = urllib.error.URLError(socket.gaierror("nodename nor servname provided"))

    assert signal_from_exception(failure).error_code == "ENOTFOUND"
    assert ErrorClassifier().classify(failure).code is ErrorCode.NETWORK


def test_validation_error_is_not_retryable_and_keeps_errors() -> None:
    error = ErrorClassifier().classify(_validation_error())

    assert error.code is ErrorCode.VALIDATION
    assert error.status_code == 400
    assert not error.is_retryable
    assert error.details is not None
    assert error.details["errors"][0]["loc"] == ("count",)


def test_technical_message_stays_in_details() -> None:
    try:
        raise ValueError("secret internal detail")
    except ValueError as raw:
        error = ErrorClassifier().classify(raw)

    assert "secret internal detail" not in error.user_message
    assert error.details is not None
    assert error.details["originalMessage"] == "secret internal detail"
    assert "ValueError" in error.details["stack"]
    assert error.details["exceptionType"] == "ValueError"


def test_app_error_passes_through_unchanged() -> None:
    original = AppError(ErrorCode.TIMEOUT, "took too long")

    assert ErrorClassifier().classify(original) is original


def test_custom_markers_drive_remote_and_storage_classes() -> None:
    classifier = ErrorClassifier(remote_service_markers=("gemini",), storage_markers=("bucket",))

    assert classifier.classify(RuntimeError("Gemini returned 500")).code is ErrorCode.REMOTE_SERVICE
    assert classifier.classify(RuntimeError("bucket quota")).code is ErrorCode.STORAGE
    assert classifier.classify(RuntimeError("model failure")).code is ErrorCode.INTERNAL


@pytest.mark.parametrize(
    ("code", "status", "retryable"),
    [
        (ErrorCode.VALIDATION, 400, False),
        (ErrorCode.RATE_LIMIT, 429, True),
        (ErrorCode.NETWORK, 503, True),
        (ErrorCode.TIMEOUT, 504, True),
        (ErrorCode.REMOTE_SERVICE, 502, True),
        (ErrorCode.STORAGE, 500, True),
        (ErrorCode.INTERNAL, 500, False),
        (ErrorCode.CONFLICT, 409, False),
    ],
)
def test_error_class_table(code: ErrorCode, status: int, retryable: bool) -> None:
    error = AppError(code, "technical")

    assert error.status_code == status
    assert error.is_retryable is retryable
    payload = error.to_dict()
    assert payload["code"] == code.value
    assert payload["userMessage"] == error.user_message
    assert "details" not in payload
