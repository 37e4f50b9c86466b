"""Job bookkeeping and cooperative cancellation."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

__all__ = ["DEFAULT_JOB_TTL", "JobHandle", "JobRegistry", "JobStatus"]

LOGGER = logging.getLogger(__name__)

DEFAULT_JOB_TTL = 30 * 60.0


class JobStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(slots=True)
class JobHandle:
    """Cancellation token shared by everything working on one job."""

    job_id: str
    created_at: float
    status: JobStatus = JobStatus.RUNNING
    _cancelled: threading.Event = field(default_factory=threading.Event, repr=False)

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def should_continue(self) -> bool:
        return not self._cancelled.is_set()


class JobRegistry:
    """Track running jobs so a cancel request can reach them by id.

    Cancellation is cooperative: work checks `JobHandle.should_continue`
    between steps; nothing already in flight is interrupted.
    """

    def __init__(self, *, ttl: float = DEFAULT_JOB_TTL, clock: Callable[[], float] = time.monotonic) -> None:
        self._jobs: dict[str, JobHandle] = {}
        self._lock = threading.Lock()
        self._ttl = ttl
        self._clock = clock

    def create(self, job_id: str) -> JobHandle:
        """Register ``job_id``; a still-running job with the same id is cancelled first."""
        self.cancel(job_id, quiet=True)
        handle = JobHandle(job_id=job_id, created_at=self._clock())
        with self._lock:
            self._jobs[job_id] = handle
        LOGGER.info("Created job %s", job_id)
        return handle

    def get(self, job_id: str) -> Optional[JobHandle]:
        with self._lock:
            return self._jobs.get(job_id)

    def cancel(self, job_id: str, *, quiet: bool = False) -> bool:
        with self._lock:
            handle = self._jobs.get(job_id)
            if handle is None or handle.status is not JobStatus.RUNNING:
                if not quiet:
                    LOGGER.warning("Could not cancel job %s: not found or not running", job_id)
                return False
            handle.status = JobStatus.CANCELLED
            handle._cancelled.set()
        LOGGER.info("Cancelled job %s", job_id)
        return True

    def is_cancelled(self, job_id: str) -> bool:
        handle = self.get(job_id)
        return handle is not None and handle.cancelled

    def complete(self, job_id: str) -> None:
        self._finish(job_id, JobStatus.COMPLETED)

    def fail(self, job_id: str) -> None:
        self._finish(job_id, JobStatus.FAILED)

    def _finish(self, job_id: str, status: JobStatus) -> None:
        with self._lock:
            handle = self._jobs.get(job_id)
            # A cancelled job stays cancelled.
            if handle is not None and handle.status is JobStatus.RUNNING:
                handle.status = status

    def cleanup(self) -> int:
        """Forget jobs older than the TTL and return how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [job_id for job_id, handle in self._jobs.items() if now - handle.created_at > self._ttl]
            for job_id in expired:
                del self._jobs[job_id]
        if expired:
            LOGGER.info("Cleaned up %d old job(s)", len(expired))
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)
