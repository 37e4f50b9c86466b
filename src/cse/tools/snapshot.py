"""Capture file snapshots of the workspace before a change-set is produced."""

from __future__ import annotations

import logging
from typing import Iterable, Sequence

from ..structured import FileSnapshot
from .checksum import compute_checksum
from .workspace import WorkspaceStorage, matches_pattern, decode_text

__all__ = ["DEFAULT_EXCLUDES", "capture_snapshot", "scan_workspace"]

LOGGER = logging.getLogger(__name__)

DEFAULT_EXCLUDES: tuple[str, ...] = (
    ".git/**",
    "**/.git/**",
    "node_modules/**",
    "**/node_modules/**",
    "dist/**",
    "build/**",
    "out/**",
    "venv/**",
    ".venv/**",
    "**/__pycache__/**",
)


def capture_snapshot(storage: WorkspaceStorage, path: str) -> FileSnapshot:
    """Read ``path`` and return its snapshot."""
    raw = storage.read(path)
    return FileSnapshot(path=path, content=decode_text(raw), checksum=compute_checksum(raw))


def scan_workspace(
    storage: WorkspaceStorage,
    *,
    include: Sequence[str] = ("**/*",),
    exclude: Iterable[str] = DEFAULT_EXCLUDES,
    max_file_bytes: int | None = None,
) -> dict[str, FileSnapshot]:
    """Snapshot every workspace file matching ``include`` and not ``exclude``.

    Storage errors propagate: a workspace that cannot be scanned prevents the
    job from starting.
    """
    excluded = tuple(exclude)
    candidates: set[str] = set()
    for pattern in include:
        candidates.update(storage.list(pattern))

    snapshots: dict[str, FileSnapshot] = {}
    for path in sorted(candidates):
        if any(matches_pattern(path, pattern) for pattern in excluded):
            continue
        snapshot = capture_snapshot(storage, path)
        if max_file_bytes is not None and len(snapshot.content.encode("utf-8")) > max_file_bytes:
            LOGGER.debug("Skipping %s: larger than %d bytes", path, max_file_bytes)
            continue
        snapshots[path] = snapshot
    LOGGER.info("Captured %d workspace snapshot(s)", len(snapshots))
    return snapshots
