"""Content fingerprints used to detect stale snapshots before applying edits."""

from __future__ import annotations

import hashlib
import logging
from typing import Mapping

from ..structured import FileSnapshot
from .patch import PatchError
from .workspace import WorkspaceStorage, decode_text

__all__ = ["ChecksumGuard", "StaleFileError", "compute_checksum"]

LOGGER = logging.getLogger(__name__)


class StaleFileError(PatchError):
    """Raised when on-disk content no longer matches its snapshot."""


def compute_checksum(content: str | bytes) -> str:
    """Return the SHA-256 hex digest of ``content``."""
    data = content.encode("utf-8") if isinstance(content, str) else content
    return hashlib.sha256(data).hexdigest()


class ChecksumGuard:
    """Compare current workspace content against the snapshot taken at scan time."""

    def __init__(
        self,
        storage: WorkspaceStorage,
        snapshots: Mapping[str, FileSnapshot],
        *,
        require_snapshot: bool = False,
    ) -> None:
        self._storage = storage
        self._snapshots = snapshots
        self._require_snapshot = require_snapshot

    def snapshot_for(self, path: str) -> FileSnapshot | None:
        return self._snapshots.get(path)

    def verify(self, path: str, *, required: bool | None = None) -> str | None:
        """Raise `StaleFileError` when ``path`` changed since the snapshot.

        Returns the current content when the file exists, ``None`` otherwise.
        """
        snapshot = self._snapshots.get(path)
        must_exist = self._require_snapshot if required is None else required
        raw = self._storage.read(path) if self._storage.exists(path) else None
        current = decode_text(raw) if raw is not None else None

        if snapshot is None:
            if must_exist:
                raise StaleFileError(
                    f"No snapshot recorded for {path}; re-run the analysis.",
                    details={"path": path, "reason": "missing_snapshot"},
                )
            LOGGER.debug("No snapshot for %s; skipping staleness check", path)
            return current

        if raw is None:
            raise StaleFileError(
                f"File {path} was not found. It may have been moved or deleted.",
                details={"path": path, "reason": "missing_file", "expected": snapshot.checksum},
            )

        actual = compute_checksum(raw)
        if actual != snapshot.checksum:
            raise StaleFileError(
                f"File {path} has been modified since analysis. Please re-run the analysis.",
                details={"path": path, "reason": "checksum_mismatch", "expected": snapshot.checksum, "actual": actual},
            )
        return current
