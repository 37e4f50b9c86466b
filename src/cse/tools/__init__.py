"""Workspace-facing tools used by the change-set apply engine."""

from .checksum import ChecksumGuard, StaleFileError, compute_checksum
from .diff import DiffHunk, DiffLine, count_file_patches, parse_unified_diff, split_file_sections
from .history import ChangeHistory, HistoryEntry, UndoResult
from .patch import (
    ContentPolicy,
    PatchConflict,
    PatchError,
    PatchResult,
    apply_diff,
    apply_hunks,
    apply_operation_content,
)
from .snapshot import DEFAULT_EXCLUDES, capture_snapshot, scan_workspace
from .transaction import ChangeSetTransaction, OperationOutcome, OperationRefused, TransactionReport
from .workspace import InMemoryWorkspace, LocalWorkspace, WorkspaceError, WorkspaceStorage

__all__ = [
    "ChangeHistory",
    "ChangeSetTransaction",
    "ChecksumGuard",
    "ContentPolicy",
    "DEFAULT_EXCLUDES",
    "DiffHunk",
    "DiffLine",
    "HistoryEntry",
    "InMemoryWorkspace",
    "LocalWorkspace",
    "OperationOutcome",
    "OperationRefused",
    "PatchConflict",
    "PatchError",
    "PatchResult",
    "StaleFileError",
    "TransactionReport",
    "UndoResult",
    "WorkspaceError",
    "WorkspaceStorage",
    "apply_diff",
    "apply_hunks",
    "apply_operation_content",
    "capture_snapshot",
    "compute_checksum",
    "count_file_patches",
    "parse_unified_diff",
    "scan_workspace",
    "split_file_sections",
]
