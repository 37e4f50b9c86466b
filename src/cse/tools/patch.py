"""Reconstruct file content from parsed unified diff hunks."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Sequence

from ..telemetry import emit_event
from .diff import DiffHunk, parse_unified_diff

__all__ = [
    "ContentPolicy",
    "PatchConflict",
    "PatchError",
    "PatchResult",
    "apply_diff",
    "apply_hunks",
    "apply_operation_content",
]


class PatchError(RuntimeError):
    """Raised when a patch fails validation or application."""

    def __init__(self, message: str, *, details: Mapping[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details: dict[str, Any] = dict(details or {})


class PatchConflict(PatchError):
    """Raised when a hunk cannot be placed against the original content."""


class ContentPolicy(str, Enum):
    """How strictly deleted/context lines must match the original text."""

    STRICT = "strict"
    LENIENT = "lenient"


@dataclass(slots=True)
class PatchResult:
    """Outcome of applying a diff to in-memory content."""

    content: str
    hunks_applied: int
    lines_added: int
    lines_removed: int


@dataclass(slots=True)
class _SourceText:
    """Original content split into lines with its newline convention."""

    lines: list[str]
    newline: str
    trailing_newline: bool

    @classmethod
    def from_text(cls, text: str) -> "_SourceText":
        newline = "\r\n" if "\r\n" in text else "\n"
        if not text:
            return cls(lines=[], newline=newline, trailing_newline=False)
        parts = text.split(newline)
        trailing = parts[-1] == ""
        if trailing:
            parts.pop()
        return cls(lines=parts, newline=newline, trailing_newline=trailing)

    def render(self, lines: Sequence[str], trailing_newline: bool) -> str:
        if not lines:
            return ""
        body = self.newline.join(lines)
        return body + self.newline if trailing_newline else body


def _lines_match(expected: str, actual: str) -> bool:
    return expected.rstrip() == actual.rstrip()


def _hunk_anchor(hunk: DiffHunk) -> int:
    """Return the zero-based index of the first original line the hunk touches.

    Pure insertions (``@@ -5,0 +6,2 @@``) anchor *after* the declared line.
    """
    if hunk.removed == 0:
        return hunk.old_start
    return max(hunk.old_start - 1, 0)


def apply_hunks(
    original: str,
    hunks: Sequence[DiffHunk],
    *,
    policy: ContentPolicy = ContentPolicy.STRICT,
    path: str | None = None,
) -> PatchResult:
    """Apply ``hunks`` to ``original`` and return the reconstructed content."""
    source = _SourceText.from_text(original or "")
    lines = source.lines
    output: list[str] = []
    cursor = 0
    added = 0
    removed = 0
    trailing_newline = source.trailing_newline

    for index, hunk in enumerate(hunks, start=1):
        anchor = _hunk_anchor(hunk)
        details = {"path": path, "hunk": index, "old_start": hunk.old_start}
        if anchor > len(lines):
            raise PatchConflict(
                f"Hunk #{index} starts at line {hunk.old_start} but the file has {len(lines)} line(s).",
                details=details,
            )
        if anchor < cursor:
            raise PatchConflict(
                f"Hunk #{index} at line {hunk.old_start} overlaps the previous hunk.",
                details=details,
            )

        output.extend(lines[cursor:anchor])
        cursor = anchor

        for diff_line in hunk.lines:
            if diff_line.kind == "add":
                output.append(diff_line.text)
                added += 1
                continue
            if cursor >= len(lines):
                raise PatchConflict(
                    f"Hunk #{index} runs past the end of the file at line {cursor + 1}.",
                    details=details,
                )
            if policy is ContentPolicy.STRICT and not _lines_match(diff_line.text, lines[cursor]):
                raise PatchConflict(
                    f"Hunk #{index} expected {diff_line.text!r} at line {cursor + 1} "
                    f"but found {lines[cursor]!r}.",
                    details={**details, "line": cursor + 1},
                )
            if diff_line.kind == "context":
                output.append(lines[cursor])
            else:
                removed += 1
            cursor += 1

        if cursor == len(lines):
            # The hunk reached the end of the file, so it owns the final newline.
            trailing_newline = not hunk.no_newline_at_end

    output.extend(lines[cursor:])
    return PatchResult(
        content=source.render(output, trailing_newline),
        hunks_applied=len(hunks),
        lines_added=added,
        lines_removed=removed,
    )


def apply_diff(
    original: str,
    diff: str,
    *,
    policy: ContentPolicy = ContentPolicy.STRICT,
    path: str | None = None,
) -> PatchResult:
    """Parse ``diff`` and apply it to ``original``."""
    hunks = parse_unified_diff(diff)
    try:
        result = apply_hunks(original, hunks, policy=policy, path=path)
    except PatchConflict as error:
        emit_event("patch_apply_failed", path=path, policy=policy, reason=str(error), details=error.details)
        raise
    emit_event(
        "patch_apply_succeeded",
        path=path,
        policy=policy,
        hunks=result.hunks_applied,
        added=result.lines_added,
        removed=result.lines_removed,
    )
    return result


def apply_operation_content(
    operation: Any,
    original: str | None,
    *,
    policy: ContentPolicy = ContentPolicy.STRICT,
) -> str | None:
    """Return the new content ``operation`` produces from ``original``.

    Create yields its declared content and Modify the patched text. Delete
    and Move carry no content transform, so ``None`` is returned.
    """
    kind = getattr(operation, "operation", None)
    if kind == "create":
        return operation.content
    if kind == "modify":
        return apply_diff(original or "", operation.diff, policy=policy, path=operation.path).content
    return None
