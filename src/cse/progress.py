"""Phase-based progress tracking streamed as newline-delimited JSON."""

from __future__ import annotations

import asyncio
import json
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Callable, Generic, Optional, Protocol, TypeVar

__all__ = [
    "AsyncProgressStream",
    "NdjsonSink",
    "ProgressDetails",
    "ProgressEmitter",
    "ProgressEvent",
    "ProgressPhase",
    "RingBuffer",
    "format_for_stream",
]

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_CAPACITY = 100


class ProgressPhase(str, Enum):
    """Enumerated phases a job moves through."""

    INITIALIZING = "initializing"
    ANALYZING = "analyzing"
    SEARCHING = "searching"
    GENERATING = "generating"
    VALIDATING = "validating"
    COMPLETING = "completing"
    ERROR = "error"


@dataclass(slots=True)
class ProgressDetails:
    current: int | None = None
    total: int | None = None
    estimated_time_remaining: int | None = None
    sub_phase: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "current": self.current,
            "total": self.total,
            "estimatedTimeRemaining": self.estimated_time_remaining,
            "subPhase": self.sub_phase,
        }


@dataclass(slots=True)
class ProgressEvent:
    """Single progress update."""

    phase: ProgressPhase
    message: str
    percentage: float | None = None
    details: ProgressDetails | None = None
    metadata: dict[str, Any] | None = None
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_record(self) -> dict[str, Any]:
        return {
            "type": "progress",
            "phase": self.phase.value,
            "message": self.message,
            "percentage": self.percentage,
            "details": self.details.to_dict() if self.details else None,
            "metadata": self.metadata,
            "timestamp": self.timestamp,
        }


def format_for_stream(event: ProgressEvent) -> str:
    """Serialise ``event`` as one newline-terminated JSON record."""
    return json.dumps(event.to_record(), separators=(",", ":"), default=str) + "\n"


class RingBuffer(Generic[T]):
    """Fixed-capacity buffer that evicts the oldest entry when full."""

    def __init__(self, capacity: int) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1.")
        self._slots: list[T | None] = [None] * capacity
        self._cursor = 0
        self._size = 0

    @property
    def capacity(self) -> int:
        return len(self._slots)

    def __len__(self) -> int:
        return self._size

    def append(self, item: T) -> None:
        self._slots[self._cursor] = item
        self._cursor = (self._cursor + 1) % len(self._slots)
        if self._size < len(self._slots):
            self._size += 1

    def items(self) -> list[T]:
        """Return entries oldest first."""
        start = (self._cursor - self._size) % len(self._slots)
        ordered = [self._slots[(start + offset) % len(self._slots)] for offset in range(self._size)]
        return [item for item in ordered if item is not None]

    def latest(self) -> T | None:
        if not self._size:
            return None
        return self._slots[(self._cursor - 1) % len(self._slots)]


Listener = Callable[[ProgressEvent], None]


class ByteWriter(Protocol):
    def write(self, data: bytes) -> Any: ...


class ProgressEmitter:
    """Track phases, estimate remaining time and push updates to listeners.

    Listeners are fire-and-forget: a listener that raises is logged and
    skipped so the job's control flow never depends on a consumer.
    """

    def __init__(
        self,
        listener: Optional[Listener] = None,
        *,
        capacity: int = DEFAULT_CAPACITY,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._clock = clock
        self._listeners: list[Listener] = [listener] if listener else []
        self._history: RingBuffer[ProgressEvent] = RingBuffer(capacity)
        self._phase = ProgressPhase.INITIALIZING
        self._started_at = clock()
        self._phase_started_at = self._started_at
        self._suppressed = False
        self._lock = threading.Lock()

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    @property
    def phase(self) -> ProgressPhase:
        return self._phase

    @property
    def suppressed(self) -> bool:
        return self._suppressed

    def suppress(self) -> None:
        """Stop recording and emitting further updates (job cancelled)."""
        with self._lock:
            self._suppressed = True

    def update(
        self,
        phase: ProgressPhase,
        message: str,
        *,
        percentage: float | None = None,
        current: int | None = None,
        total: int | None = None,
        sub_phase: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> ProgressEvent | None:
        with self._lock:
            if self._suppressed:
                return None
            now = self._clock()
            if phase != self._phase:
                self._phase = phase
                self._phase_started_at = now
            phase_started_at = self._phase_started_at

        estimate: int | None = None
        if current is not None and total is not None and current > 0:
            elapsed_ms = (now - phase_started_at) * 1000
            estimate = round(elapsed_ms / current * (total - current))

        details = None
        if any(value is not None for value in (current, total, estimate, sub_phase)):
            details = ProgressDetails(
                current=current,
                total=total,
                estimated_time_remaining=estimate,
                sub_phase=sub_phase,
            )
        event = ProgressEvent(
            phase=phase,
            message=message,
            percentage=percentage,
            details=details,
            metadata=metadata,
        )
        with self._lock:
            self._history.append(event)
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                LOGGER.warning("Progress listener failed", exc_info=True)
        return event

    def initializing(self, message: str, metadata: dict[str, Any] | None = None) -> ProgressEvent | None:
        return self.update(ProgressPhase.INITIALIZING, message, metadata=metadata)

    def analyzing(
        self,
        message: str,
        current: int | None = None,
        total: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> ProgressEvent | None:
        return self.update(
            ProgressPhase.ANALYZING,
            message,
            percentage=_percentage(current, total),
            current=current,
            total=total,
            metadata=metadata,
        )

    def searching(self, message: str, metadata: dict[str, Any] | None = None) -> ProgressEvent | None:
        return self.update(ProgressPhase.SEARCHING, message, metadata=metadata)

    def generating(
        self,
        message: str,
        percentage: float | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> ProgressEvent | None:
        return self.update(ProgressPhase.GENERATING, message, percentage=percentage, metadata=metadata)

    def validating(
        self,
        message: str,
        current: int | None = None,
        total: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> ProgressEvent | None:
        return self.update(
            ProgressPhase.VALIDATING,
            message,
            percentage=_percentage(current, total),
            current=current,
            total=total,
            metadata=metadata,
        )

    def completing(self, message: str, metadata: dict[str, Any] | None = None) -> ProgressEvent | None:
        return self.update(ProgressPhase.COMPLETING, message, percentage=100, metadata=metadata)

    def error(self, message: str, metadata: dict[str, Any] | None = None) -> ProgressEvent | None:
        return self.update(ProgressPhase.ERROR, message, metadata=metadata)

    def status(self) -> dict[str, Any]:
        now = self._clock()
        return {
            "currentPhase": self._phase.value,
            "totalDuration": round((now - self._started_at) * 1000),
            "phaseDuration": round((now - self._phase_started_at) * 1000),
            "latestUpdate": self._history.latest(),
        }

    def history(self) -> list[ProgressEvent]:
        with self._lock:
            return self._history.items()


def _percentage(current: int | None, total: int | None) -> int | None:
    if not current or not total:
        return None
    return round(current / total * 100)


class NdjsonSink:
    """Progress listener writing one NDJSON record per event to a byte writer."""

    def __init__(self, writer: ByteWriter, *, flush: bool = True) -> None:
        self._writer = writer
        self._flush = flush

    def __call__(self, event: ProgressEvent) -> None:
        self._writer.write(format_for_stream(event).encode("utf-8"))
        if self._flush:
            flush = getattr(self._writer, "flush", None)
            if callable(flush):
                flush()


class AsyncProgressStream:
    """Expose progress events as an async iterator of NDJSON records.

    Attach with ``emitter.add_listener(stream)``; call `close` once the job
    finished so consumers stop iterating. Events may be emitted from worker
    threads; they are handed to the owning event loop with
    ``call_soon_threadsafe``.
    """

    def __init__(self, *, maxsize: int = 0, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._queue: asyncio.Queue[str | None] = asyncio.Queue(maxsize=maxsize)
        self._dropped = 0
        self._loop = loop or _running_loop()

    def __call__(self, event: ProgressEvent) -> None:
        self._deliver(format_for_stream(event))

    @property
    def dropped(self) -> int:
        return self._dropped

    def close(self) -> None:
        self._deliver(None)

    def _deliver(self, record: str | None) -> None:
        loop = self._loop
        if loop is not None and loop.is_running() and _running_loop() is not loop:
            loop.call_soon_threadsafe(self._enqueue, record)
        else:
            self._enqueue(record)

    def _enqueue(self, record: str | None) -> None:
        if record is not None:
            try:
                self._queue.put_nowait(record)
            except asyncio.QueueFull:
                self._dropped += 1
            return
        while True:
            try:
                self._queue.put_nowait(None)
                return
            except asyncio.QueueFull:
                self._queue.get_nowait()
                self._dropped += 1

    def __aiter__(self) -> AsyncIterator[str]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[str]:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        while True:
            record = await self._queue.get()
            if record is None:
                return
            yield record


def _running_loop() -> asyncio.AbstractEventLoop | None:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None
