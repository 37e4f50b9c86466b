"""HTTP client for a remote change-set producer endpoint."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import urllib.error
import urllib.request
from typing import Any, Callable, Dict, Optional

from ..errors import signal_from_exception
from ..structured import ProducerRequest
from .producer import ChangeSetProducer, ProducerResponseError, ProducerTransportError

__all__ = ["DEFAULT_API_KEY_ENV", "HttpChangeSetProducer"]

LOGGER = logging.getLogger(__name__)

DEFAULT_API_KEY_ENV = "CSE_PRODUCER_API_KEY"

Transport = Callable[[Dict[str, Any]], str]
RecordObserver = Callable[[Dict[str, Any]], None]


class HttpChangeSetProducer(ChangeSetProducer):
    """POST a `ProducerRequest` as JSON and read back a change-set.

    The endpoint may answer with a single JSON document or with a stream of
    newline-delimited records (``progress``, ``result``, ``error``); in the
    latter case the ``result`` record carries the change-set.
    """

    def __init__(
        self,
        url: str,
        *,
        api_key: Optional[str] = None,
        api_key_env: str = DEFAULT_API_KEY_ENV,
        timeout: float = 120.0,
        transport: Optional[Transport] = None,
        on_record: Optional[RecordObserver] = None,
    ) -> None:
        if not url and transport is None:
            raise ValueError("A producer URL is required when using the default transport.")
        self._url = url
        self._api_key = api_key or os.getenv(api_key_env)
        self._timeout = timeout
        self._transport = transport or self._http_transport
        self._on_record = on_record

    @property
    def url(self) -> str:
        return self._url

    async def _raw_produce(self, request: ProducerRequest) -> str:
        payload = request.to_payload()
        # urllib blocks, so the call runs on a worker thread.
        raw_response = await asyncio.to_thread(self._transport, payload)
        return self._extract_result(raw_response)

    def _http_transport(self, payload: Dict[str, Any]) -> str:
        data = json.dumps(payload).encode("utf-8")
        headers = {"Content-Type": "application/json", "Accept": "application/x-ndjson, application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        http_request = urllib.request.Request(self._url, data=data, headers=headers, method="POST")

        try:
            with urllib.request.urlopen(http_request, timeout=self._timeout) as response:
                raw = response.read()
                status = getattr(response, "status", 200)
        except urllib.error.HTTPError as error:
            message = error.read().decode("utf-8", errors="ignore")
            raise ProducerTransportError(
                f"Producer HTTP {error.code}: {message[:500]}",
                status_code=error.code,
                error_code=_client_error_code(error.code),
            ) from error
        except urllib.error.URLError as error:
            raise ProducerTransportError(
                f"Failed to reach producer endpoint: {error.reason}",
                error_code=signal_from_exception(error).error_code,
            ) from error
        except TimeoutError as error:
            raise ProducerTransportError("Producer response timed out.", error_code="ETIMEDOUT") from error

        if status >= 400:
            raise ProducerTransportError(
                f"Unexpected HTTP status {status}",
                status_code=status,
                error_code=_client_error_code(status),
            )
        return raw.decode("utf-8")

    def _extract_result(self, raw_response: str) -> str:
        """Return the change-set JSON text from a document or record stream."""
        text = (raw_response or "").strip()
        if not text:
            raise ProducerResponseError("Producer returned an empty response.")

        try:
            document = json.loads(text)
        except json.JSONDecodeError:
            document = None
        if isinstance(document, dict):
            unwrapped = self._unwrap_record(document, raw_response)
            if unwrapped is None:
                raise ProducerResponseError("Producer returned a progress record without a result.")
            return unwrapped
        if document is not None:
            return text

        result: Optional[str] = None
        for line in text.splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError:
                # Not a record stream; let the base parser attempt repair.
                return raw_response
            if not isinstance(record, dict):
                continue
            unwrapped = self._unwrap_record(record, None)
            if unwrapped is not None:
                result = unwrapped
        if result is None:
            raise ProducerResponseError("Producer stream ended without a result record.")
        return result

    def _unwrap_record(self, record: Dict[str, Any], fallback: Optional[str]) -> Optional[str]:
        kind = record.get("type")
        if kind == "progress":
            LOGGER.debug("Producer progress: %s", record.get("data") or record.get("message"))
            if self._on_record is not None:
                self._on_record(record)
            return None
        if kind == "error":
            error = record.get("error") if isinstance(record.get("error"), dict) else {}
            status = error.get("statusCode") if isinstance(error.get("statusCode"), int) else None
            code = error.get("code") if isinstance(error.get("code"), str) else None
            raise ProducerTransportError(
                str(error.get("message") or "Producer reported an error."),
                status_code=status,
                error_code=code or _client_error_code(status),
            )
        if kind == "result":
            return json.dumps(record.get("data"))
        return fallback if fallback is not None else json.dumps(record)


def _client_error_code(status: int | None) -> str | None:
    """Map 4xx statuses other than 408 and 429 to a non-retryable VALIDATION code."""
    if status is not None and 400 <= status < 500 and status not in (408, 429):
        return "VALIDATION"
    return None
