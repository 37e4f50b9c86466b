from __future__ import annotations

from cse.jobs import DEFAULT_JOB_TTL, JobRegistry, JobStatus


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_cancel_flags_running_job() -> None:
    registry = JobRegistry()
    handle = registry.create("job")

    assert handle.should_continue()
    assert registry.cancel("job") is True
    assert handle.cancelled
    assert not handle.should_continue()
    assert registry.is_cancelled("job")


def test_cancel_is_refused_once_job_finished() -> None:
    registry = JobRegistry()
    registry.create("job")
    registry.complete("job")

    assert registry.cancel("job") is False
    assert registry.get("job").status is JobStatus.COMPLETED
    assert registry.cancel("unknown") is False


def test_creating_same_id_cancels_previous_job() -> None:
    registry = JobRegistry()
    first = registry.create("job")

    second = registry.create("job")

    assert first.cancelled
    assert not second.cancelled
    assert registry.get("job") is second


def test_cancelled_job_stays_cancelled() -> None:
    registry = JobRegistry()
    registry.create("job")
    registry.cancel("job")

    registry.fail("job")

    assert registry.get("job").status is JobStatus.CANCELLED


def test_cleanup_removes_expired_jobs() -> None:
    clock = FakeClock()
    registry = JobRegistry(clock=clock)
    registry.create("old")
    clock.now = DEFAULT_JOB_TTL - 10
    registry.create("recent")
    clock.now = DEFAULT_JOB_TTL + 1

    assert registry.cleanup() == 1
    assert registry.get("old") is None
    assert len(registry) == 1
