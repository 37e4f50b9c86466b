from __future__ import annotations

import io
import json
import urllib.error
import urllib.request

import pytest
from pydantic import ValidationError

from cse.errors import ErrorClassifier, ErrorCode
from cse.models import (
    ChangeSetRejected,
    HttpChangeSetProducer,
    ProducerResponseError,
    ProducerTransportError,
    StaticChangeSetProducer,
    parse_change_set,
)
from cse.structured import (
    CreateOperation,
    DeleteOperation,
    FileSnapshot,
    ModifyOperation,
    MoveOperation,
    ProducerRequest,
)

CHANGE_SET = {
    "reasoning": "Rename the helper and document it.",
    "changes": [
        {"operation": "modify", "filePath": "src/app.py", "diff": "@@ -1 +1 @@\n-a\n+b\n"},
        {"operation": "create", "filePath": "docs/app.md", "content": "# App\n"},
        {"operation": "delete", "filePath": "old.txt"},
        {"operation": "move", "oldPath": "a.py", "newPath": "b.py"},
    ],
}


def _request() -> ProducerRequest:
    return ProducerRequest(
        prompt="rename helper",
        files=[FileSnapshot(path="src/app.py", content="a\n", checksum="abc")],
        diagnostics=["E1: unused import"],
    )


def test_parse_change_set_builds_typed_operations() -> None:
    change_set = parse_change_set(CHANGE_SET)

    assert change_set.summary == "Rename the helper and document it."
    assert [type(item) for item in change_set.changes] == [
        ModifyOperation,
        CreateOperation,
        DeleteOperation,
        MoveOperation,
    ]
    assert change_set.changes[3].path == "b.py"


def test_legacy_type_key_and_bare_list_are_accepted() -> None:
    change_set = parse_change_set([{"type": "Create", "filePath": "x.txt", "content": "x"}])

    assert isinstance(change_set.changes[0], CreateOperation)


def test_unknown_operation_is_a_validation_error() -> None:
    with pytest.raises(ValidationError) as excinfo:
        parse_change_set({"changes": [{"operation": "chmod", "filePath": "x"}]})

    assert ErrorClassifier().classify(excinfo.value).code is ErrorCode.VALIDATION


def test_unknown_operation_keys_are_rejected() -> None:
    with pytest.raises(ValidationError):
        parse_change_set({"changes": [{"operation": "delete", "filePath": "x", "mode": "0644"}]})


def test_multi_file_modify_diff_is_rejected() -> None:
    diff = (
        "--- a/one.py\n+++ b/one.py\n@@ -1 +1 @@\n-a\n+b\n"
        "--- a/two.py\n+++ b/two.py\n@@ -1 +1 @@\n-c\n+d\n"
    )

    with pytest.raises(ChangeSetRejected) as excinfo:
        parse_change_set({"changes": [{"operation": "modify", "filePath": "one.py", "diff": diff}]})

    assert ErrorClassifier().classify(excinfo.value).code is ErrorCode.VALIDATION


@pytest.mark.asyncio
async def test_static_producer_strips_code_fence_and_records_request() -> None:
    producer = StaticChangeSetProducer("```json\n" + json.dumps(CHANGE_SET) + "\n```")

    change_set = await producer.produce(_request())

    assert len(change_set.changes) == 4
    assert producer.requests[0].prompt == "rename helper"


@pytest.mark.asyncio
async def test_static_producer_repairs_trailing_commas() -> None:
    producer = StaticChangeSetProducer(
        'Here you go: {"changes": [{"operation": "delete", "filePath": "x.txt"},]} thanks'
    )

    change_set = await producer.produce(_request())

    assert isinstance(change_set.changes[0], DeleteOperation)


@pytest.mark.asyncio
async def test_static_producer_extracts_document_with_braces_in_strings() -> None:
    document = {"changes": [{"operation": "create", "filePath": "x.py", "content": "d = {'a': [1]}\n"}]}
    producer = StaticChangeSetProducer("Sure. " + json.dumps(document) + " Let me know if } helps.")

    change_set = await producer.produce(_request())

    assert change_set.changes[0].content == "d = {'a': [1]}\n"


@pytest.mark.asyncio
async def test_python_literal_response_is_rejected() -> None:
    producer = StaticChangeSetProducer("{'changes': [{'operation': 'delete', 'filePath': 'x.txt'}]}")

    with pytest.raises(ProducerResponseError):
        await producer.produce(_request())


@pytest.mark.asyncio
async def test_invalid_json_raises_remote_service_error() -> None:
    producer = StaticChangeSetProducer("not json at all")

    with pytest.raises(ProducerResponseError) as excinfo:
        await producer.produce(_request())

    assert ErrorClassifier().classify(excinfo.value).code is ErrorCode.REMOTE_SERVICE


@pytest.mark.asyncio
async def test_http_producer_posts_payload_and_reads_document() -> None:
    seen: list[dict] = []

    def transport(payload: dict) -> str:
        seen.append(payload)
        return json.dumps(CHANGE_SET)

    producer = HttpChangeSetProducer("https://producer.invalid", transport=transport)

    change_set = await producer.produce(_request())

    assert len(change_set.changes) == 4
    assert seen[0]["files"][0] == {"filePath": "src/app.py", "content": "a\n", "checksum": "abc"}
    assert seen[0]["diagnostics"] == ["E1: unused import"]


@pytest.mark.asyncio
async def test_http_producer_reads_record_stream() -> None:
    records: list[dict] = []
    stream = "\n".join(
        json.dumps(record)
        for record in (
            {"type": "progress", "data": {"phase": "generating", "message": "drafting"}},
            {"type": "result", "data": CHANGE_SET},
        )
    )
    producer = HttpChangeSetProducer(
        "https://producer.invalid",
        transport=lambda payload: stream,
        on_record=records.append,
    )

    change_set = await producer.produce(_request())

    assert len(change_set.changes) == 4
    assert records[0]["data"]["message"] == "drafting"


@pytest.mark.asyncio
async def test_http_producer_error_record_is_classified() -> None:
    stream = "\n".join(
        [
            json.dumps({"type": "progress", "data": {"message": "working"}}),
            json.dumps({"type": "error", "error": {"message": "Rate limit reached for model"}}),
        ]
    )
    producer = HttpChangeSetProducer("https://producer.invalid", transport=lambda payload: stream)

    with pytest.raises(ProducerTransportError) as excinfo:
        await producer.produce(_request())

    assert ErrorClassifier().classify(excinfo.value).code is ErrorCode.RATE_LIMIT


@pytest.mark.asyncio
async def test_http_producer_stream_without_result_fails() -> None:
    stream = json.dumps({"type": "progress", "data": {"message": "working"}})
    producer = HttpChangeSetProducer("https://producer.invalid", transport=lambda payload: stream)

    with pytest.raises(ProducerResponseError):
        await producer.produce(_request())


def test_http_producer_requires_url_or_transport() -> None:
    with pytest.raises(ValueError):
        HttpChangeSetProducer("")


def test_transport_error_carries_status_for_classification() -> None:
    error = ProducerTransportError("Producer HTTP 503: busy", status_code=503)

    assert ErrorClassifier().classify(error).details["statusCode"] == 503


@pytest.mark.asyncio
async def test_http_producer_client_error_record_is_not_retryable() -> None:
    stream = json.dumps({"type": "error", "error": {"message": "Schema mismatch", "statusCode": 422}})
    producer = HttpChangeSetProducer("https://producer.invalid", transport=lambda payload: stream)

    with pytest.raises(ProducerTransportError) as excinfo:
        await producer.produce(_request())

    error = ErrorClassifier().classify(excinfo.value)
    assert error.code is ErrorCode.VALIDATION
    assert not error.is_retryable


@pytest.mark.asyncio
async def test_http_400_response_is_a_validation_error(monkeypatch: pytest.MonkeyPatch) -> None:
    def refuse(request, timeout):
        raise urllib.error.HTTPError(request.full_url, 400, "Bad Request", {}, io.BytesIO(b"bad schema"))

    monkeypatch.setattr(urllib.request, "urlopen", refuse)
    producer = HttpChangeSetProducer("https://producer.invalid")

    with pytest.raises(ProducerTransportError) as excinfo:
        await producer.produce(_request())

    error = ErrorClassifier().classify(excinfo.value)
    assert excinfo.value.status_code == 400
    assert error.code is ErrorCode.VALIDATION
    assert not error.is_retryable


@pytest.mark.asyncio
async def test_http_503_response_stays_retryable(monkeypatch: pytest.MonkeyPatch) -> None:
    def busy(request, timeout):
        raise urllib.error.HTTPError(request.full_url, 503, "Unavailable", {}, io.BytesIO(b"overloaded"))

    monkeypatch.setattr(urllib.request, "urlopen", busy)
    producer = HttpChangeSetProducer("https://producer.invalid")

    with pytest.raises(ProducerTransportError) as excinfo:
        await producer.produce(_request())

    assert excinfo.value.error_code is None
