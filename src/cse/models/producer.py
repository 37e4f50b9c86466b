"""Change-set producer base class: JSON parsing, repair and schema validation."""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any, Mapping

from ..structured import CHANGE_SET_ADAPTER, ChangeSet, ModifyOperation, ProducerRequest
from ..tools.diff import count_file_patches

__all__ = [
    "ChangeSetProducer",
    "ChangeSetRejected",
    "ProducerError",
    "ProducerResponseError",
    "ProducerTransportError",
    "StaticChangeSetProducer",
    "parse_change_set",
]

LOGGER = logging.getLogger(__name__)


class ProducerError(RuntimeError):
    """Base error raised for change-set producer failures."""

    error_code: str | None = None
    status_code: int | None = None


class ProducerTransportError(ProducerError):
    """Raised when the producer endpoint could not be reached or answered an error."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        error_code: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code


class ProducerResponseError(ProducerError):
    """Raised when the producer returned payload that is not valid JSON."""

    error_code = "REMOTE_SERVICE"


class ChangeSetRejected(ProducerError):
    """Raised when a well-formed change-set violates a structural rule."""

    error_code = "VALIDATION"


# Key spellings used by producers that predate the ``operation`` tag.
_OPERATION_ALIASES = {"type": "operation", "action": "operation"}

_CODE_FENCE = re.compile(r"^```[\w-]*[ \t]*\n(?P<body>.*?)\n?```\s*$", re.DOTALL)
_TRAILING_COMMA = re.compile(r",(\s*[}\]])")


class ChangeSetProducer:
    """Turn a `ProducerRequest` into a validated `ChangeSet`.

    Subclasses implement `_raw_produce`, returning the raw response text.
    """

    async def produce(self, request: ProducerRequest) -> ChangeSet:
        raw = await self._raw_produce(request)
        data = self._parse_json(raw)
        return parse_change_set(data)

    async def _raw_produce(self, request: ProducerRequest) -> str:
        """Perform the transport call. Subclasses must implement."""
        raise NotImplementedError("Subclasses must implement _raw_produce().")

    @staticmethod
    def _parse_json(raw_response: str) -> Any:
        """Decode the producer's JSON, tolerating a code fence or surrounding prose."""
        text = _unwrap_code_fence((raw_response or "").strip().lstrip("\ufeff"))
        if not text:
            raise ProducerResponseError("Producer returned an empty response.")

        try:
            return json.loads(text)
        except json.JSONDecodeError:
            pass

        embedded = _first_json_document(text)
        if embedded is not None:
            try:
                return json.loads(_TRAILING_COMMA.sub(r"\1", embedded))
            except json.JSONDecodeError:
                pass

        raise ProducerResponseError(f"Producer returned invalid JSON: {text[:200]}")


class StaticChangeSetProducer(ChangeSetProducer):
    """Producer that replays a fixed response, for offline runs and tests."""

    def __init__(self, payload: str | Mapping[str, Any]) -> None:
        self._payload = payload if isinstance(payload, str) else json.dumps(payload)
        self.requests: list[ProducerRequest] = []

    @classmethod
    def from_file(cls, path: Path | str) -> "StaticChangeSetProducer":
        return cls(Path(path).read_text(encoding="utf-8"))

    async def _raw_produce(self, request: ProducerRequest) -> str:
        self.requests.append(request)
        return self._payload


def parse_change_set(data: Any) -> ChangeSet:
    """Validate decoded producer output into a `ChangeSet`.

    Raises `pydantic.ValidationError` for schema failures and
    `ChangeSetRejected` when a Modify diff spans more than one file.
    """
    change_set = CHANGE_SET_ADAPTER.validate_python(_normalise_payload(data))
    for index, operation in enumerate(change_set.changes, start=1):
        if not isinstance(operation, ModifyOperation):
            continue
        patches = count_file_patches(operation.diff)
        if patches > 1:
            raise ChangeSetRejected(
                f"Change #{index} ({operation.path}) contains {patches} file patches; "
                "a modify diff must target a single file."
            )
    LOGGER.debug("Validated change-set with %d operation(s)", len(change_set.changes))
    return change_set


def _normalise_payload(data: Any) -> Any:
    if isinstance(data, list):
        data = {"changes": data}
    if not isinstance(data, Mapping):
        return data
    payload = dict(data)
    changes = payload.get("changes")
    if isinstance(changes, list):
        payload["changes"] = [_normalise_operation(item) for item in changes]
    return payload


def _normalise_operation(item: Any) -> Any:
    if not isinstance(item, Mapping):
        return item
    operation = dict(item)
    for alias, canonical in _OPERATION_ALIASES.items():
        if alias in operation and canonical not in operation:
            operation[canonical] = operation.pop(alias)
    tag = operation.get("operation")
    if isinstance(tag, str):
        operation["operation"] = tag.strip().lower()
    return operation


def _unwrap_code_fence(text: str) -> str:
    match = _CODE_FENCE.match(text)
    return match.group("body").strip() if match else text


def _first_json_document(text: str) -> str | None:
    """Return the first balanced ``{...}`` or ``[...]`` span in ``text``."""
    start: int | None = None
    closers: list[str] = []
    in_string = False
    escaped = False
    for index, char in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
        elif start is None:
            if char in "{[":
                start = index
                closers.append("}" if char == "{" else "]")
        elif char == '"':
            in_string = True
        elif char in "{[":
            closers.append("}" if char == "{" else "]")
        elif char == closers[-1]:
            closers.pop()
            if not closers:
                return text[start : index + 1]
    return None
