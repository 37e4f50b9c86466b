"""Error taxonomy and classification of raw failures into `AppError` values.

Every failure observed at a boundary (remote producer, workspace scan) is
classified exactly once. Downstream code only ever sees `AppError`; the
original technical message and traceback live in ``details`` for logs and
never reach the user-facing text.
"""

from __future__ import annotations

import logging
import socket
import traceback
import urllib.error
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Protocol, Sequence, runtime_checkable

from pydantic import ValidationError

__all__ = [
    "AppError",
    "ErrorClassifier",
    "ErrorCode",
    "FailureSignal",
    "OperationCancelled",
    "RawFailure",
    "signal_from_exception",
]

LOGGER = logging.getLogger(__name__)


class ErrorCode(str, Enum):
    """Closed error taxonomy."""

    VALIDATION = "VALIDATION"
    RATE_LIMIT = "RATE_LIMIT"
    NETWORK = "NETWORK"
    TIMEOUT = "TIMEOUT"
    REMOTE_SERVICE = "REMOTE_SERVICE"
    STORAGE = "STORAGE"
    INTERNAL = "INTERNAL"
    # Staleness condition used only inside a change-set transaction.
    CONFLICT = "CONFLICT"


@dataclass(frozen=True, slots=True)
class _ErrorClass:
    status_code: int
    retryable: bool
    user_message: str


_ERROR_CLASSES: dict[ErrorCode, _ErrorClass] = {
    ErrorCode.VALIDATION: _ErrorClass(400, False, "The request contains invalid data. Please check your input."),
    ErrorCode.RATE_LIMIT: _ErrorClass(429, True, "Too many requests. Please wait a moment and try again."),
    ErrorCode.NETWORK: _ErrorClass(
        503, True, "Network connection failed. Please check your connection and try again."
    ),
    ErrorCode.TIMEOUT: _ErrorClass(504, True, "The operation took too long and was cancelled. Please try again."),
    ErrorCode.REMOTE_SERVICE: _ErrorClass(
        502, True, "The AI service is temporarily unavailable. Please try again shortly."
    ),
    ErrorCode.STORAGE: _ErrorClass(500, True, "A storage error occurred. Please try again."),
    ErrorCode.INTERNAL: _ErrorClass(500, False, "An unexpected error occurred. Please try again later."),
    ErrorCode.CONFLICT: _ErrorClass(
        409, False, "The file changed since the analysis ran. Please re-run the analysis."
    ),
}


class AppError(RuntimeError):
    """Classified failure carried by reference to every downstream consumer."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        *,
        details: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        entry = _ERROR_CLASSES[code]
        self.code = code
        self.message = message
        self.status_code = entry.status_code
        self.is_retryable = entry.retryable
        self.user_message = entry.user_message
        self.details: dict[str, Any] | None = dict(details) if details else None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "code": self.code.value,
            "message": self.message,
            "statusCode": self.status_code,
            "isRetryable": self.is_retryable,
            "userMessage": self.user_message,
        }
        if self.details is not None:
            payload["details"] = dict(self.details)
        return payload

    def __repr__(self) -> str:
        return f"AppError(code={self.code.value!r}, message={self.message!r})"


class OperationCancelled(RuntimeError):
    """Raised when a job was cancelled before an operation could start."""


@runtime_checkable
class FailureSignal(Protocol):
    """Typed view of a raw failure that the classifier depends on."""

    @property
    def status_code(self) -> int | None: ...

    @property
    def error_code(self) -> str | None: ...

    @property
    def message(self) -> str: ...

    @property
    def is_validation(self) -> bool: ...


@dataclass(frozen=True, slots=True)
class RawFailure:
    """Concrete failure signal, usually built by `signal_from_exception`."""

    message: str = ""
    status_code: int | None = None
    error_code: str | None = None
    is_validation: bool = False
    exception: BaseException | None = None


_ERRNO_CODES: dict[type[BaseException], str] = {
    ConnectionRefusedError: "ECONNREFUSED",
    ConnectionResetError: "ECONNRESET",
    ConnectionAbortedError: "ECONNABORTED",
    BrokenPipeError: "EPIPE",
    socket.gaierror: "ENOTFOUND",
    TimeoutError: "ETIMEDOUT",
}


def signal_from_exception(error: BaseException) -> RawFailure:
    """Translate a Python exception into a `RawFailure` signal."""
    status_code: int | None = None
    error_code: str | None = None
    is_validation = isinstance(error, ValidationError)

    for exc_type, code in _ERRNO_CODES.items():
        if isinstance(error, exc_type):
            error_code = code
            break

    if isinstance(error, urllib.error.HTTPError):
        status_code = error.code
    elif isinstance(error, urllib.error.URLError):
        reason = error.reason
        if isinstance(reason, BaseException):
            nested = signal_from_exception(reason)
            error_code = nested.error_code
        if error_code is None:
            error_code = "ECONNREFUSED"

    explicit_status = getattr(error, "status_code", None)
    if status_code is None and isinstance(explicit_status, int):
        status_code = explicit_status
    explicit_code = getattr(error, "error_code", None)
    if error_code is None and isinstance(explicit_code, str):
        error_code = explicit_code

    return RawFailure(
        message=str(error) or type(error).__name__,
        status_code=status_code,
        error_code=error_code,
        is_validation=is_validation,
        exception=error,
    )


_RATE_LIMIT_PATTERNS = ("rate limit", "resource exhausted", "too many requests")
_NETWORK_CODES = {"ECONNREFUSED", "ECONNRESET", "ENOTFOUND", "EAI_AGAIN", "EPIPE", "ECONNABORTED", "NETWORK"}
_NETWORK_PATTERNS = ("network", "connection refused", "connection reset", "name resolution", "failed to resolve")
_TIMEOUT_CODES = {"ETIMEDOUT", "TIMEOUT"}
_TIMEOUT_PATTERNS = ("timeout", "timed out")


class ErrorClassifier:
    """Map raw failure signals onto the closed `ErrorCode` taxonomy.

    Precedence (first match wins): rate limit, network, timeout, validation,
    remote service, storage, internal.
    """

    def __init__(
        self,
        *,
        remote_service_markers: Sequence[str] = ("model", "llm", "producer"),
        storage_markers: Sequence[str] = ("storage", "database", "collection", "qdrant"),
    ) -> None:
        self._remote_markers = tuple(marker.lower() for marker in remote_service_markers if marker)
        self._storage_markers = tuple(marker.lower() for marker in storage_markers if marker)

    def classify(self, failure: BaseException | FailureSignal) -> AppError:
        """Return the `AppError` for ``failure``; existing AppErrors pass through."""
        if isinstance(failure, AppError):
            return failure
        if isinstance(failure, BaseException):
            signal: FailureSignal = signal_from_exception(failure)
        else:
            signal = failure

        code = self.code_for(signal)
        details: dict[str, Any] = {"originalMessage": signal.message}
        if signal.status_code is not None:
            details["statusCode"] = signal.status_code
        if signal.error_code is not None:
            details["errorCode"] = signal.error_code
        exception = getattr(signal, "exception", None)
        if isinstance(exception, BaseException):
            details["exceptionType"] = type(exception).__name__
            if exception.__traceback__ is not None:
                details["stack"] = "".join(traceback.format_exception(exception)).rstrip()
            if isinstance(exception, ValidationError):
                details["errors"] = exception.errors(include_url=False)

        error = AppError(code, _TECHNICAL_SUMMARIES[code], details=details)
        LOGGER.log(
            logging.WARNING if error.is_retryable else logging.ERROR,
            "Classified failure as %s: %s",
            code.value,
            signal.message,
        )
        return error

    def code_for(self, signal: FailureSignal) -> ErrorCode:
        message = (signal.message or "").lower()
        error_code = (signal.error_code or "").upper()

        if signal.status_code == 429 or error_code in {"429", "RATE_LIMIT"} or _contains(message, _RATE_LIMIT_PATTERNS):
            return ErrorCode.RATE_LIMIT
        if error_code in _NETWORK_CODES or _contains(message, _NETWORK_PATTERNS):
            return ErrorCode.NETWORK
        if error_code in _TIMEOUT_CODES or _contains(message, _TIMEOUT_PATTERNS):
            return ErrorCode.TIMEOUT
        if signal.is_validation or error_code == "VALIDATION":
            return ErrorCode.VALIDATION
        if error_code == "REMOTE_SERVICE" or _contains(message, self._remote_markers):
            return ErrorCode.REMOTE_SERVICE
        if error_code == "STORAGE" or _contains(message, self._storage_markers):
            return ErrorCode.STORAGE
        return ErrorCode.INTERNAL


_TECHNICAL_SUMMARIES: dict[ErrorCode, str] = {
    ErrorCode.VALIDATION: "Invalid request data",
    ErrorCode.RATE_LIMIT: "API rate limit exceeded",
    ErrorCode.NETWORK: "Network communication failed",
    ErrorCode.TIMEOUT: "Operation timed out",
    ErrorCode.REMOTE_SERVICE: "Remote service error",
    ErrorCode.STORAGE: "Storage operation failed",
    ErrorCode.INTERNAL: "An unexpected error occurred",
    ErrorCode.CONFLICT: "File changed since snapshot",
}


def _contains(message: str, patterns: Sequence[str]) -> bool:
    return any(pattern in message for pattern in patterns)
