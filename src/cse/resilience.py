"""Retry with exponential backoff and deadline racing for fallible async calls."""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, TypeVar

from .errors import AppError, ErrorClassifier, ErrorCode, OperationCancelled
from .telemetry import emit_event

__all__ = [
    "MAX_BACKOFF_DELAY",
    "RetryExecutor",
    "TimeoutExecutor",
    "call_with_resilience",
    "compute_backoff_delay",
]

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

MAX_BACKOFF_DELAY = 30.0
JITTER_RATIO = 0.3

Operation = Callable[[], Awaitable[T]]
RetryObserver = Callable[[int, AppError, float], None]


def compute_backoff_delay(
    attempt: int,
    base_delay: float,
    *,
    rng: random.Random | None = None,
    max_delay: float = MAX_BACKOFF_DELAY,
) -> float:
    """Return the wait (seconds) before retrying zero-indexed ``attempt``.

    ``base * 2**attempt`` plus jitter drawn uniformly from ``[0, 0.3 * delay]``;
    the jittered value never exceeds ``max_delay``.
    """
    delay = min(base_delay * (2 ** attempt), max_delay)
    source = rng or random
    return min(delay + source.uniform(0.0, JITTER_RATIO * delay), max_delay)


@dataclass(slots=True)
class RetryExecutor:
    """Re-run a fallible async operation while its failures are retryable."""

    max_attempts: int = 3
    base_delay: float = 1.0
    classifier: ErrorClassifier = field(default_factory=ErrorClassifier)
    on_retry: Optional[RetryObserver] = None
    should_continue: Optional[Callable[[], bool]] = None
    rng: Optional[random.Random] = None
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1.")
        if self.base_delay <= 0:
            raise ValueError("base_delay must be positive.")

    async def run(self, operation: Operation[T]) -> T:
        """Invoke ``operation`` until it succeeds or a non-retryable failure occurs."""
        for attempt in range(self.max_attempts):
            if self.should_continue is not None and not self.should_continue():
                raise OperationCancelled(f"Operation cancelled before attempt {attempt + 1}.")
            try:
                return await operation()
            except asyncio.CancelledError:
                raise
            except Exception as raw:
                error = self.classifier.classify(raw)
                last_attempt = attempt == self.max_attempts - 1
                if not error.is_retryable or last_attempt:
                    if error is raw:
                        raise
                    raise error from raw

                delay = compute_backoff_delay(attempt, self.base_delay, rng=self.rng)
                LOGGER.warning(
                    "Retry attempt %d/%d after %.0fms (%s)",
                    attempt + 1,
                    self.max_attempts,
                    delay * 1000,
                    error.code.value,
                )
                emit_event(
                    "retry_scheduled",
                    attempt=attempt + 1,
                    max_attempts=self.max_attempts,
                    delay_ms=round(delay * 1000),
                    code=error.code,
                )
                if self.on_retry is not None:
                    self.on_retry(attempt + 1, error, delay)
                await self.sleep(delay)

        raise AssertionError("unreachable")  # pragma: no cover


class TimeoutExecutor:
    """Race an async operation against a deadline.

    The first of the two to finish wins. When the deadline wins, the
    operation keeps running in the background and whatever it eventually
    produces is discarded; it is not cancelled.
    """

    def __init__(self, deadline: float) -> None:
        if deadline <= 0:
            raise ValueError("deadline must be positive.")
        self.deadline = deadline
        self._detached: set[asyncio.Task] = set()

    async def run(self, operation: Operation[T]) -> T:
        task = asyncio.ensure_future(operation())
        timer = asyncio.ensure_future(asyncio.sleep(self.deadline))
        try:
            done, _ = await asyncio.wait({task, timer}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            timer.cancel()
            self._detach(task)
            raise

        if task in done:
            timer.cancel()
            return task.result()

        self._detach(task)
        LOGGER.error("Operation timeout after %.0fms", self.deadline * 1000)
        raise AppError(
            ErrorCode.TIMEOUT,
            f"Operation timed out after {self.deadline * 1000:.0f}ms",
            details={"timeoutMs": round(self.deadline * 1000)},
        )

    def _detach(self, task: asyncio.Task) -> None:
        self._detached.add(task)
        task.add_done_callback(self._discard)

    def _discard(self, task: asyncio.Task) -> None:
        self._detached.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            LOGGER.debug("Discarded failure from timed-out operation: %s", error)
        else:
            LOGGER.debug("Discarded late result from timed-out operation")

    @property
    def pending(self) -> int:
        """Number of timed-out operations that have not finished yet."""
        return len(self._detached)


async def call_with_resilience(
    operation: Operation[T],
    *,
    retry: RetryExecutor,
    timeout: TimeoutExecutor | None = None,
) -> T:
    """Run ``operation`` with a per-attempt deadline inside the retry loop."""
    if timeout is None:
        return await retry.run(operation)
    return await retry.run(lambda: timeout.run(operation))
