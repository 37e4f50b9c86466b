"""Apply an ordered change-set to the workspace with per-operation isolation."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Literal, Mapping, Optional, Sequence

from ..errors import ErrorCode
from ..structured import (
    ChangeOperation,
    CreateOperation,
    DeleteOperation,
    FileSnapshot,
    ModifyOperation,
    MoveOperation,
    operation_paths,
)
from ..telemetry import emit_event
from .checksum import ChecksumGuard, StaleFileError
from .history import ChangeHistory
from .patch import ContentPolicy, PatchConflict, PatchError, apply_diff
from .workspace import WorkspaceError, WorkspaceStorage, normalise_workspace_path

__all__ = [
    "ChangeSetTransaction",
    "OperationOutcome",
    "OperationRefused",
    "TransactionReport",
]

LOGGER = logging.getLogger(__name__)

OutcomeStatus = Literal["succeeded", "failed"]


class OperationRefused(PatchError):
    """Raised when an operation would clobber or read a file it must not."""


@dataclass(slots=True)
class OperationOutcome:
    """Result of applying a single change operation."""

    index: int
    path: str
    operation: str
    status: OutcomeStatus
    reason: str | None = None
    error_code: ErrorCode | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "path": self.path,
            "operation": self.operation,
            "status": self.status,
        }
        if self.reason is not None:
            payload["reason"] = self.reason
        if self.error_code is not None:
            payload["error_code"] = self.error_code.value
        return payload


@dataclass(slots=True)
class TransactionReport:
    """Aggregate of every outcome, in the order the operations were given."""

    outcomes: list[OperationOutcome] = field(default_factory=list)

    @property
    def succeeded(self) -> list[OperationOutcome]:
        return [outcome for outcome in self.outcomes if outcome.succeeded]

    @property
    def failed(self) -> list[OperationOutcome]:
        return [outcome for outcome in self.outcomes if not outcome.succeeded]

    @property
    def ok(self) -> bool:
        return not self.failed

    def to_dict(self) -> dict[str, Any]:
        return {
            "succeeded": len(self.succeeded),
            "failed": len(self.failed),
            "outcomes": [outcome.to_dict() for outcome in self.outcomes],
        }


class _OutcomeCollector:
    """Lock-protected sink shared by worker threads."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._outcomes: list[OperationOutcome] = []

    def add(self, outcome: OperationOutcome) -> None:
        with self._lock:
            self._outcomes.append(outcome)

    def report(self) -> TransactionReport:
        with self._lock:
            ordered = sorted(self._outcomes, key=lambda outcome: outcome.index)
        return TransactionReport(outcomes=ordered)


class ChangeSetTransaction:
    """Apply change operations against a snapshot map.

    Each operation succeeds or fails on its own; partial application is
    expected and nothing is rolled back automatically. Record a
    `ChangeHistory` entry to revert a change-set explicitly.
    """

    def __init__(
        self,
        storage: WorkspaceStorage,
        snapshots: Mapping[str, FileSnapshot] | None = None,
        *,
        policy: ContentPolicy = ContentPolicy.STRICT,
        require_snapshot: bool = False,
        allow_overwrite: bool = False,
        max_workers: int = 1,
        should_continue: Optional[Callable[[], bool]] = None,
        history: ChangeHistory | None = None,
    ) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1.")
        self._storage = storage
        self._guard = ChecksumGuard(storage, snapshots or {}, require_snapshot=require_snapshot)
        self._policy = ContentPolicy(policy)
        self._allow_overwrite = allow_overwrite
        self._max_workers = max_workers
        self._should_continue = should_continue
        self._history = history

    def apply(
        self,
        operations: Sequence[ChangeOperation],
        *,
        label: str = "change-set",
        on_outcome: Optional[Callable[[OperationOutcome], None]] = None,
    ) -> TransactionReport:
        """Apply ``operations`` and return one outcome per operation."""
        collector = _OutcomeCollector()

        def _record(outcome: OperationOutcome) -> None:
            collector.add(outcome)
            if on_outcome is not None:
                try:
                    on_outcome(outcome)
                except Exception:
                    LOGGER.warning("Outcome observer failed", exc_info=True)

        if self._history is not None and operations:
            try:
                self._history.record(self._storage, operations, label=label)
            except (OSError, WorkspaceError) as error:
                LOGGER.warning("Could not record undo history for %s: %s", label, error)

        indexed = list(enumerate(operations))
        if self._max_workers == 1 or len(indexed) < 2 or _has_shared_paths(operations):
            for index, operation in indexed:
                _record(self._run_one(index, operation))
        else:
            with ThreadPoolExecutor(max_workers=self._max_workers) as pool:
                futures = [pool.submit(self._run_one, index, operation) for index, operation in indexed]
                for future in futures:
                    _record(future.result())

        report = collector.report()
        emit_event(
            "changeset_applied",
            label=label,
            succeeded=len(report.succeeded),
            failed=len(report.failed),
        )
        return report

    def _run_one(self, index: int, operation: ChangeOperation) -> OperationOutcome:
        kind = operation.operation
        path = operation.path
        if self._should_continue is not None and not self._should_continue():
            return OperationOutcome(index, path, kind, "failed", reason="cancelled")

        try:
            if isinstance(operation, ModifyOperation):
                self._modify(operation)
            elif isinstance(operation, CreateOperation):
                self._create(operation)
            elif isinstance(operation, DeleteOperation):
                self._delete(operation)
            elif isinstance(operation, MoveOperation):
                self._move(operation)
            else:  # pragma: no cover - closed union
                raise OperationRefused(f"Unsupported operation {kind!r}.")
        except (StaleFileError, PatchConflict) as error:
            return self._failure(index, path, kind, error, ErrorCode.CONFLICT)
        except (OperationRefused, WorkspaceError) as error:
            return self._failure(index, path, kind, error, ErrorCode.VALIDATION)
        except OSError as error:
            return self._failure(index, path, kind, error, ErrorCode.STORAGE)

        LOGGER.debug("Applied %s to %s", kind, path)
        return OperationOutcome(index, path, kind, "succeeded")

    def _failure(
        self,
        index: int,
        path: str,
        kind: str,
        error: Exception,
        code: ErrorCode,
    ) -> OperationOutcome:
        LOGGER.warning("%s of %s failed (%s): %s", kind, path, code.value, error)
        emit_event(
            "operation_failed",
            level=logging.WARNING,
            path=path,
            operation=kind,
            code=code,
            reason=str(error),
            details=getattr(error, "details", None),
        )
        return OperationOutcome(index, path, kind, "failed", reason=str(error), error_code=code)

    def _modify(self, operation: ModifyOperation) -> None:
        path = normalise_workspace_path(operation.path)
        current = self._guard.verify(path)
        if current is None:
            raise StaleFileError(
                f"File {path} was not found. It may have been moved or deleted.",
                details={"path": path, "reason": "missing_file"},
            )
        result = apply_diff(current, operation.diff, policy=self._policy, path=path)
        self._storage.write(path, result.content.encode("utf-8"))

    def _create(self, operation: CreateOperation) -> None:
        path = normalise_workspace_path(operation.path)
        if self._storage.exists(path) and not (operation.overwrite or self._allow_overwrite):
            raise OperationRefused(
                f"File {path} already exists; set overwrite to replace it.",
                details={"path": path},
            )
        self._storage.write(path, operation.content.encode("utf-8"))

    def _delete(self, operation: DeleteOperation) -> None:
        path = normalise_workspace_path(operation.path)
        if not self._storage.exists(path):
            return
        if self._guard.snapshot_for(path) is not None:
            self._guard.verify(path)
        self._storage.delete(path)

    def _move(self, operation: MoveOperation) -> None:
        source = normalise_workspace_path(operation.old_path)
        target = normalise_workspace_path(operation.new_path)
        if not self._storage.exists(source):
            raise OperationRefused(f"Cannot move {source}: source does not exist.", details={"path": source})
        if self._guard.snapshot_for(source) is not None:
            self._guard.verify(source)
        if source == target:
            return
        if self._storage.exists(target) and not self._allow_overwrite:
            raise OperationRefused(
                f"Cannot move {source} to {target}: target already exists.",
                details={"path": target},
            )
        data = self._storage.read(source)
        self._storage.write(target, data)
        self._storage.delete(source)
        LOGGER.debug("Moved %s to %s (%d bytes)", source, target, len(data))


def _has_shared_paths(operations: Sequence[ChangeOperation]) -> bool:
    seen: set[str] = set()
    for operation in operations:
        for raw_path in operation_paths(operation):
            try:
                path = normalise_workspace_path(raw_path)
            except WorkspaceError:
                return True
            if path in seen:
                return True
            seen.add(path)
    return False
