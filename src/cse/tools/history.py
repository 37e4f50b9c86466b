"""Bounded undo history for applied change-sets."""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable

from ..structured import operation_paths
from .workspace import WorkspaceError, WorkspaceStorage, normalise_workspace_path

__all__ = ["MAX_HISTORY", "ChangeHistory", "HistoryEntry", "UndoResult"]

LOGGER = logging.getLogger(__name__)

MAX_HISTORY = 10


@dataclass(slots=True)
class HistoryEntry:
    """Content of every touched path as it was before a change-set ran.

    A ``None`` value means the path did not exist, so undoing removes it.
    """

    label: str
    originals: dict[str, bytes | None] = field(default_factory=dict)
    recorded_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> dict[str, Any]:
        return {
            "label": self.label,
            "recorded_at": self.recorded_at,
            "paths": sorted(self.originals),
        }


@dataclass(slots=True)
class UndoResult:
    label: str
    restored: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed

    def to_dict(self) -> dict[str, Any]:
        return {
            "label": self.label,
            "restored": list(self.restored),
            "removed": list(self.removed),
            "failed": dict(self.failed),
        }


class ChangeHistory:
    """Keep the most recent pre-apply states so a change-set can be reverted."""

    def __init__(self, max_entries: int = MAX_HISTORY) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1.")
        self._entries: deque[HistoryEntry] = deque(maxlen=max_entries)
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def entries(self) -> list[HistoryEntry]:
        with self._lock:
            return list(self._entries)

    def record(self, storage: WorkspaceStorage, operations: Iterable[Any], *, label: str) -> HistoryEntry:
        """Capture the current content of every path ``operations`` touch.

        Unsafe paths are skipped; the transaction refuses those operations anyway.
        """
        entry = HistoryEntry(label=label)
        for operation in operations:
            for raw_path in operation_paths(operation):
                try:
                    path = normalise_workspace_path(raw_path)
                except WorkspaceError as error:
                    LOGGER.debug("Not recording %s: %s", raw_path, error)
                    continue
                if path in entry.originals:
                    continue
                entry.originals[path] = storage.read(path) if storage.exists(path) else None
        with self._lock:
            self._entries.append(entry)
        LOGGER.debug("Recorded history entry %s (%d path(s))", label, len(entry.originals))
        return entry

    def undo_last(self, storage: WorkspaceStorage) -> UndoResult | None:
        """Restore the most recent entry. Returns ``None`` when history is empty."""
        with self._lock:
            if not self._entries:
                return None
            entry = self._entries.pop()

        result = UndoResult(label=entry.label)
        for path, original in entry.originals.items():
            try:
                if original is None:
                    storage.delete(path)
                    result.removed.append(path)
                else:
                    storage.write(path, original)
                    result.restored.append(path)
            except OSError as error:
                LOGGER.warning("Failed to restore %s: %s", path, error)
                result.failed[path] = str(error)
        return result

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
