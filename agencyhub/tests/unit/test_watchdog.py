from __future__ import annotations

from datetime import timedelta

import pytest

from agencyhub.core.errors import JobStateConflictError, ValidationError
from agencyhub.domain import state
from agencyhub.services.provisioning.watchdog import cancel_job, expire_stale_jobs
from agencyhub.tests.utils.fakes import FakeDirectory, utc


NOW = utc(2026, 3, 1)


def _job(directory: FakeDirectory, job_id: str, status: str, *, age_s: int, timeout_s: int = 300) -> None:
    stamp = NOW - timedelta(seconds=age_s)
    directory.add_job(
        id=job_id,
        tenant_id=f"tenant-{job_id}",
        status=status,
        timeout_seconds=timeout_s,
        created_at=stamp,
        updated_at=stamp,
    )


@pytest.mark.asyncio
async def test_stale_jobs_before_database_work_time_out() -> None:
    directory = FakeDirectory()
    _job(directory, "old-pending", state.PENDING, age_s=600)
    _job(directory, "old-validating", state.VALIDATING, age_s=301)
    _job(directory, "fresh", state.PENDING, age_s=10)

    report = await expire_stale_jobs(directory, NOW)

    assert report.timed_out == 2
    assert directory.jobs["old-pending"]["status"] == state.TIMEOUT
    assert directory.jobs["old-validating"]["status"] == state.TIMEOUT
    assert directory.jobs["old-pending"]["error_code"] == "PROVISIONING_TIMEOUT"
    assert directory.jobs["fresh"]["status"] == state.PENDING


@pytest.mark.asyncio
async def test_stalled_jobs_mid_pipeline_fail() -> None:
    directory = FakeDirectory()
    _job(directory, "stuck", state.SEEDING_DATA, age_s=900)

    report = await expire_stale_jobs(directory, NOW)

    assert report.stalled == 1
    job = directory.jobs["stuck"]
    assert job["status"] == state.FAILED
    assert job["error_message"] == "worker stalled"
    assert job["error_code"] == "WORKER_STALLED"


@pytest.mark.asyncio
async def test_jobs_that_moved_on_are_skipped() -> None:
    directory = FakeDirectory()
    _job(directory, "racing", state.PENDING, age_s=600)
    directory.fail_on["transition:timeout"] = JobStateConflictError("picked up")

    report = await expire_stale_jobs(directory, NOW)

    assert report.skipped == 1
    assert directory.jobs["racing"]["status"] == state.PENDING


@pytest.mark.asyncio
async def test_terminal_jobs_are_left_alone() -> None:
    directory = FakeDirectory()
    _job(directory, "done", state.COMPLETED, age_s=99999)

    report = await expire_stale_jobs(directory, NOW)

    assert (report.timed_out, report.stalled, report.skipped) == (0, 0, 0)


@pytest.mark.asyncio
async def test_cancel_only_before_database_work() -> None:
    directory = FakeDirectory()
    _job(directory, "queued", state.PENDING, age_s=5)
    _job(directory, "busy", state.CREATING_DATABASE, age_s=5)

    row = await cancel_job(directory, "queued", "customer withdrew")

    assert row["status"] == state.CANCELLED
    assert directory.jobs["queued"]["error_message"] == "customer withdrew"
    with pytest.raises(JobStateConflictError):
        await cancel_job(directory, "busy", "too late")
    with pytest.raises(ValidationError):
        await cancel_job(directory, "missing", "nothing")
