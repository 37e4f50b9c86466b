"""Unified diff parsing into structured hunks."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Literal

__all__ = [
    "DiffHunk",
    "DiffLine",
    "count_file_patches",
    "parse_unified_diff",
    "split_file_sections",
]


LineKind = Literal["add", "delete", "context"]

_HUNK_HEADER = re.compile(
    r"^@@ -(?P<old_start>\d+)(?:,(?P<old_count>\d+))? "
    r"\+(?P<new_start>\d+)(?:,(?P<new_count>\d+))? @@"
)
_PREAMBLE_PREFIXES = (
    "diff --git ",
    "index ",
    "new file mode",
    "deleted file mode",
    "old mode",
    "new mode",
    "similarity index",
    "rename from",
    "rename to",
    "Binary files",
)


@dataclass(slots=True)
class DiffLine:
    """Single line inside a hunk."""

    kind: LineKind
    text: str
    old_line_no: int | None = None
    new_line_no: int | None = None


@dataclass(slots=True)
class DiffHunk:
    """Contiguous diff region anchored to old/new line numbers."""

    old_start: int
    new_start: int
    old_count: int = 1
    new_count: int = 1
    lines: list[DiffLine] = field(default_factory=list)
    no_newline_at_end: bool = False

    @property
    def removed(self) -> int:
        """Number of original lines the hunk consumes."""
        return sum(1 for line in self.lines if line.kind != "add")

    @property
    def added(self) -> int:
        """Number of lines the hunk produces."""
        return sum(1 for line in self.lines if line.kind != "delete")

    def to_dict(self) -> dict[str, Any]:
        return {
            "old_start": self.old_start,
            "new_start": self.new_start,
            "old_count": self.old_count,
            "new_count": self.new_count,
            "no_newline_at_end": self.no_newline_at_end,
            "lines": [
                {
                    "kind": line.kind,
                    "text": line.text,
                    "old_line_no": line.old_line_no,
                    "new_line_no": line.new_line_no,
                }
                for line in self.lines
            ],
        }


def _default_count(value: str | None) -> int:
    """Return the number of lines represented in a hunk header."""
    return int(value) if value is not None else 1


def _is_file_header(line: str) -> bool:
    """Return True for ``---``/``+++`` lines introducing a file section."""
    return line.startswith(("--- ", "+++ "))


def parse_unified_diff(text: str) -> list[DiffHunk]:
    """Parse ``text`` into an ordered list of hunks.

    While a hunk still owes lines according to its header, every line is
    part of its body; unprefixed lines count as context. Once the declared
    counts are used up, ``+``/``-``/`` `` lines are still accepted (headers
    emitted by models are often miscounted) but anything else closes the
    hunk. A line starting with ``@@`` that is not a valid header closes the
    current hunk and the lines after it are ignored until the next header.
    """
    hunks: list[DiffHunk] = []
    current: DiffHunk | None = None
    old_line = 0
    new_line = 0
    owed_old = 0
    owed_new = 0

    for raw_line in (text or "").splitlines():
        line = raw_line.rstrip("\r")

        if line.startswith("@@"):
            if current is not None:
                hunks.append(current)
                current = None
            match = _HUNK_HEADER.match(line)
            if not match:
                continue
            old_line = int(match.group("old_start"))
            new_line = int(match.group("new_start"))
            current = DiffHunk(
                old_start=old_line,
                new_start=new_line,
                old_count=_default_count(match.group("old_count")),
                new_count=_default_count(match.group("new_count")),
            )
            owed_old = current.old_count
            owed_new = current.new_count
            continue

        if current is None:
            continue

        if line.startswith("\\"):
            # The marker after a deleted line describes the old file only.
            if current.lines and current.lines[-1].kind != "delete":
                current.no_newline_at_end = True
            continue

        in_body = owed_old > 0 or owed_new > 0
        if not in_body and (line.startswith(_PREAMBLE_PREFIXES) or _is_file_header(line)):
            hunks.append(current)
            current = None
            continue

        prefix = line[:1]
        if prefix == "+":
            current.lines.append(DiffLine(kind="add", text=line[1:], new_line_no=new_line))
            new_line += 1
            owed_new -= 1
        elif prefix == "-":
            current.lines.append(DiffLine(kind="delete", text=line[1:], old_line_no=old_line))
            old_line += 1
            owed_old -= 1
        elif prefix == " " or in_body:
            text_value = line[1:] if prefix == " " else line
            current.lines.append(
                DiffLine(kind="context", text=text_value, old_line_no=old_line, new_line_no=new_line)
            )
            old_line += 1
            new_line += 1
            owed_old -= 1
            owed_new -= 1
        else:
            hunks.append(current)
            current = None

    if current is not None:
        hunks.append(current)
    return hunks


def split_file_sections(text: str) -> list[str]:
    """Split a multi-file diff into per-file sections that carry hunks.

    A section starts at ``diff --git`` or at a ``---`` header that follows
    a completed hunk. Hunk bodies are consumed by their declared counts so
    a deleted line that happens to start with ``--`` is not mistaken for a
    header.
    """
    sections: list[list[str]] = []
    current: list[str] = []
    owed_old = 0
    owed_new = 0

    for raw_line in (text or "").splitlines():
        line = raw_line.rstrip("\r")
        if owed_old > 0 or owed_new > 0:
            current.append(line)
            prefix = line[:1]
            if prefix == "+":
                owed_new -= 1
            elif prefix == "-":
                owed_old -= 1
            elif prefix != "\\":
                owed_old -= 1
                owed_new -= 1
            continue

        starts_section = line.startswith("diff --git ") or (line.startswith("--- ") and _has_hunk(current))
        if starts_section:
            if _has_hunk(current):
                sections.append(current)
            current = []

        match = _HUNK_HEADER.match(line)
        if match:
            owed_old = _default_count(match.group("old_count"))
            owed_new = _default_count(match.group("new_count"))
        current.append(line)

    if _has_hunk(current):
        sections.append(current)
    return ["\n".join(section) + "\n" for section in sections]


def _has_hunk(lines: list[str]) -> bool:
    return any(_HUNK_HEADER.match(line) for line in lines)


def count_file_patches(text: str) -> int:
    """Return how many per-file patches ``text`` describes."""
    return len(split_file_sections(text))
