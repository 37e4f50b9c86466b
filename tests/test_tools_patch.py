from __future__ import annotations

import difflib
import json
import logging

import pytest

from cse.structured import CreateOperation, DeleteOperation
from cse.tools.patch import (
    ContentPolicy,
    PatchConflict,
    apply_diff,
    apply_operation_content,
)


def _unified(before: str, after: str, *, context: int) -> str:
    return "\n".join(
        difflib.unified_diff(
            before.splitlines(),
            after.splitlines(),
            fromfile="a/file.txt",
            tofile="b/file.txt",
            lineterm="",
            n=context,
        )
    )


def test_documented_scenario_replaces_line_with_two() -> None:
    original = "line1\ncontext\nold\nline4"
    diff = "@@ -2,2 +2,3 @@\ncontext\n-old\n+new1\n+new2"

    result = apply_diff(original, diff)

    assert result.content == "line1\ncontext\nnew1\nnew2\nline4"
    assert (result.hunks_applied, result.lines_added, result.lines_removed) == (1, 2, 1)


@pytest.mark.parametrize("context", [0, 1, 3])
@pytest.mark.parametrize(
    ("before", "after"),
    [
        ("a\nb\nc\nd\ne\nf\ng\nh\n", "a\nB\nc\nd\ne\nf\nG\nh\ni\n"),
        ("alpha\nbeta\ngamma\n", "zero\nalpha\ngamma\n"),
        ("one\ntwo\nthree\nfour\n", "one\nthree\n"),
        ("", "fresh\nfile\n"),
        ("x\n\ny\n\nz\n", "x\n\ny\ninserted\n\nz\n"),
    ],
)
def test_applying_generated_diff_reproduces_target(before: str, after: str, context: int) -> None:
    diff = _unified(before, after, context=context)

    assert apply_diff(before, diff).content == after


def test_pure_insertion_anchors_after_declared_line() -> None:
    result = apply_diff("a\nb\n", "@@ -1,0 +2 @@\n+inserted\n")

    assert result.content == "a\ninserted\nb\n"


def test_hunk_beyond_end_of_file_conflicts() -> None:
    with pytest.raises(PatchConflict) as excinfo:
        apply_diff("a\n", "@@ -10,1 +10,1 @@\n-x\n+y\n")

    assert excinfo.value.details["hunk"] == 1


def test_overlapping_hunks_conflict() -> None:
    diff = "@@ -1,2 +1,2 @@\n a\n-b\n+c\n@@ -1,1 +1,1 @@\n-a\n+z\n"

    with pytest.raises(PatchConflict):
        apply_diff("a\nb\n", diff)


def test_strict_policy_rejects_drifted_content() -> None:
    diff = "@@ -2 +2 @@\n-b\n+c\n"

    with pytest.raises(PatchConflict) as excinfo:
        apply_diff("a\nB\n", diff, path="drift.txt")

    assert excinfo.value.details["line"] == 2
    assert excinfo.value.details["path"] == "drift.txt"


def test_lenient_policy_applies_by_position() -> None:
    result = apply_diff("a\nB\n", "@@ -2 +2 @@\n-b\n+c\n", policy=ContentPolicy.LENIENT)

    assert result.content == "a\nc\n"


def test_strict_policy_ignores_trailing_whitespace() -> None:
    result = apply_diff("a\nb   \n", "@@ -2 +2 @@\n-b\n+c\n")

    assert result.content == "a\nc\n"


def test_crlf_line_endings_are_preserved() -> None:
    result = apply_diff("a\r\nb\r\n", "@@ -2 +2 @@\n-b\n+c\n")

    assert result.content == "a\r\nc\r\n"


def test_no_newline_marker_drops_trailing_newline() -> None:
    diff = "@@ -2 +2 @@\n-b\n+c\n\\ No newline at end of file\n"

    assert apply_diff("a\nb\n", diff).content == "a\nc"


def test_marker_on_old_side_only_adds_trailing_newline() -> None:
    diff = "@@ -2 +2 @@\n-b\n\\ No newline at end of file\n+b\n"

    assert apply_diff("a\nb", diff).content == "a\nb\n"


def test_trailing_newline_kept_when_last_hunk_stops_early() -> None:
    assert apply_diff("a\nb\nc", "@@ -1 +1 @@\n-a\n+A\n").content == "A\nb\nc"


def test_apply_operation_content_for_structural_operations() -> None:
    create = CreateOperation(path="new.txt", content="hello\n")
    delete = DeleteOperation(path="old.txt")

    assert apply_operation_content(create, None) == "hello\n"
    assert apply_operation_content(delete, "anything") is None


def test_apply_diff_emits_telemetry(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO, logger="cse.telemetry")

    apply_diff("a\n", "@@ -1 +1 @@\n-a\n+b\n", path="t.txt")

    events = [json.loads(record.getMessage()) for record in caplog.records if record.name == "cse.telemetry"]
    assert events[-1]["event"] == "patch_apply_succeeded"
    assert events[-1]["path"] == "t.txt"
    assert events[-1]["policy"] == "strict"
