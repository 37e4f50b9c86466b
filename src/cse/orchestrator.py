"""Run one change-set job: scan, produce, apply and report progress."""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Optional, Sequence

from .config import EngineSettings
from .errors import AppError, ErrorClassifier, OperationCancelled
from .jobs import JobHandle, JobRegistry, JobStatus
from .models import ChangeSetProducer, HttpChangeSetProducer
from .progress import ProgressEmitter
from .resilience import RetryExecutor, TimeoutExecutor, call_with_resilience
from .structured import ChangeSet, FileSnapshot, ProducerRequest
from .telemetry import emit_event
from .tools.history import ChangeHistory, UndoResult
from .tools.snapshot import scan_workspace
from .tools.transaction import ChangeSetTransaction, OperationOutcome, TransactionReport
from .tools.workspace import LocalWorkspace, WorkspaceStorage

__all__ = ["JobResult", "Orchestrator"]

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class JobResult:
    """Final state of a job as seen by the caller."""

    job_id: str
    status: JobStatus
    loading: bool = False
    summary: str = ""
    report: TransactionReport | None = None
    error: AppError | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "job_id": self.job_id,
            "status": self.status.value,
            "loading": self.loading,
            "summary": self.summary,
        }
        if self.report is not None:
            payload["report"] = self.report.to_dict()
        if self.error is not None:
            payload["error"] = self.error.to_dict()
        return payload


class Orchestrator:
    """Coordinate the workspace, the remote producer and the apply transaction."""

    def __init__(
        self,
        storage: WorkspaceStorage,
        producer: ChangeSetProducer,
        *,
        settings: EngineSettings | None = None,
        registry: JobRegistry | None = None,
        classifier: ErrorClassifier | None = None,
        history: ChangeHistory | None = None,
        retry_sleep: Any = asyncio.sleep,
    ) -> None:
        self.storage = storage
        self.producer = producer
        self.settings = settings or EngineSettings()
        self.registry = registry or JobRegistry()
        self.classifier = classifier or ErrorClassifier(
            remote_service_markers=self.settings.classifier.remote_service_markers,
            storage_markers=self.settings.classifier.storage_markers,
        )
        self.history = history or ChangeHistory(self.settings.apply.history_size)
        self._retry_sleep = retry_sleep
        self._emitters: dict[str, ProgressEmitter] = {}

    @classmethod
    def from_settings(
        cls,
        settings: EngineSettings,
        *,
        producer: ChangeSetProducer | None = None,
        registry: JobRegistry | None = None,
    ) -> "Orchestrator":
        """Build an orchestrator over the local workspace named in ``settings``."""
        storage = LocalWorkspace(settings.workspace.root)
        if producer is None:
            producer = HttpChangeSetProducer(
                settings.producer.url,
                api_key_env=settings.producer.api_key_env,
                timeout=settings.producer.timeout,
            )
        return cls(storage, producer, settings=settings, registry=registry)

    def cancel(self, job_id: str) -> bool:
        """Cancel ``job_id``; further progress, remote calls and writes are skipped."""
        cancelled = self.registry.cancel(job_id)
        emitter = self._emitters.get(job_id)
        if cancelled and emitter is not None:
            emitter.suppress()
        return cancelled

    def undo_last(self) -> UndoResult | None:
        return self.history.undo_last(self.storage)

    async def run(
        self,
        prompt: str,
        *,
        job_id: str | None = None,
        diagnostics: Sequence[str] = (),
        emitter: ProgressEmitter | None = None,
        apply: bool = True,
    ) -> JobResult:
        """Execute one job end to end and return its `JobResult`."""
        job_id = job_id or uuid.uuid4().hex
        self.registry.cleanup()
        handle = self.registry.create(job_id)
        progress = emitter or ProgressEmitter(capacity=self.settings.progress.capacity)
        self._emitters[job_id] = progress
        try:
            return await self._run(handle, progress, prompt, diagnostics, apply)
        finally:
            self._emitters.pop(job_id, None)

    async def _run(
        self,
        handle: JobHandle,
        progress: ProgressEmitter,
        prompt: str,
        diagnostics: Sequence[str],
        apply: bool,
    ) -> JobResult:
        job_id = handle.job_id
        progress.initializing("Scanning workspace...", metadata={"jobId": job_id})

        workspace = self.settings.workspace
        try:
            snapshots = await asyncio.to_thread(
                scan_workspace,
                self.storage,
                include=workspace.include,
                exclude=workspace.exclude,
                max_file_bytes=workspace.max_file_bytes,
            )
        except Exception as raw:
            return self._fail(handle, progress, self.classifier.classify(raw), stage="scan")

        if handle.cancelled:
            return self._cancelled(handle, progress)

        progress.analyzing(
            f"Captured {len(snapshots)} file(s)",
            current=len(snapshots),
            total=len(snapshots),
        )

        try:
            change_set = await self._produce(handle, progress, prompt, snapshots, diagnostics)
        except OperationCancelled:
            return self._cancelled(handle, progress)
        except AppError as error:
            return self._fail(handle, progress, error, stage="produce")

        if handle.cancelled:
            # The producer answered after cancellation; its result is discarded.
            return self._cancelled(handle, progress)

        if not apply:
            progress.completing(f"Received {len(change_set.changes)} proposed change(s)")
            self.registry.complete(job_id)
            return JobResult(job_id=job_id, status=JobStatus.COMPLETED, summary=change_set.summary)

        report = await asyncio.to_thread(self._apply, handle, progress, change_set, snapshots)
        if handle.cancelled:
            return self._cancelled(handle, progress, summary=change_set.summary, report=report)

        progress.completing(
            f"Applied {len(report.succeeded)} of {len(report.outcomes)} change(s)",
            metadata={"failed": len(report.failed)},
        )
        self.registry.complete(job_id)
        emit_event("job_completed", job_id=job_id, succeeded=len(report.succeeded), failed=len(report.failed))
        return JobResult(job_id=job_id, status=JobStatus.COMPLETED, summary=change_set.summary, report=report)

    async def _produce(
        self,
        handle: JobHandle,
        progress: ProgressEmitter,
        prompt: str,
        snapshots: dict[str, FileSnapshot],
        diagnostics: Sequence[str],
    ) -> ChangeSet:
        request = ProducerRequest(prompt=prompt, files=list(snapshots.values()), diagnostics=list(diagnostics))
        retry_settings = self.settings.retry

        def _on_retry(attempt: int, error: AppError, delay: float) -> None:
            progress.generating(
                f"Retrying after {error.code.value.lower()} error (attempt {attempt + 1} of {retry_settings.max_attempts})",
                metadata={"code": error.code.value, "delayMs": round(delay * 1000)},
            )

        retry = RetryExecutor(
            max_attempts=retry_settings.max_attempts,
            base_delay=retry_settings.base_delay,
            classifier=self.classifier,
            on_retry=_on_retry,
            should_continue=handle.should_continue,
            sleep=self._retry_sleep,
        )
        timeout = TimeoutExecutor(self.settings.producer.timeout)
        progress.generating("Requesting change-set...", percentage=0)
        change_set = await call_with_resilience(lambda: self.producer.produce(request), retry=retry, timeout=timeout)
        progress.generating(f"Received {len(change_set.changes)} proposed change(s)", percentage=100)
        return change_set

    def _apply(
        self,
        handle: JobHandle,
        progress: ProgressEmitter,
        change_set: ChangeSet,
        snapshots: dict[str, FileSnapshot],
    ) -> TransactionReport:
        total = len(change_set.changes)
        apply_settings = self.settings.apply
        applied = 0

        def _on_outcome(outcome: OperationOutcome) -> None:
            nonlocal applied
            applied += 1
            progress.update(
                progress.phase,
                f"{outcome.operation} {outcome.path}: {outcome.status}",
                percentage=round(applied / total * 100) if total else None,
                current=applied,
                total=total,
                sub_phase="apply",
            )

        progress.validating(f"Applying {total} change(s)...", current=0, total=total)
        transaction = ChangeSetTransaction(
            self.storage,
            snapshots,
            policy=apply_settings.content_policy,
            require_snapshot=apply_settings.require_snapshot,
            allow_overwrite=apply_settings.allow_overwrite,
            max_workers=apply_settings.max_workers,
            should_continue=handle.should_continue,
            history=self.history,
        )
        return transaction.apply(change_set.changes, label=handle.job_id, on_outcome=_on_outcome)

    def _fail(self, handle: JobHandle, progress: ProgressEmitter, error: AppError, *, stage: str) -> JobResult:
        LOGGER.error("Job %s failed during %s: %s (%s)", handle.job_id, stage, error.message, error.code.value)
        progress.error(error.user_message, metadata={"code": error.code.value, "stage": stage})
        self.registry.fail(handle.job_id)
        emit_event("job_failed", level=logging.ERROR, job_id=handle.job_id, stage=stage, error=error.to_dict())
        return JobResult(job_id=handle.job_id, status=JobStatus.FAILED, loading=False, error=error)

    def _cancelled(
        self,
        handle: JobHandle,
        progress: ProgressEmitter,
        *,
        summary: str = "",
        report: Optional[TransactionReport] = None,
    ) -> JobResult:
        progress.suppress()
        LOGGER.info("Job %s cancelled", handle.job_id)
        return JobResult(
            job_id=handle.job_id,
            status=JobStatus.CANCELLED,
            loading=False,
            summary=summary,
            report=report,
        )
