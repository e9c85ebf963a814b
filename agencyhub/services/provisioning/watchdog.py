from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from agencyhub.core.errors import JobStateConflictError, ValidationError
from agencyhub.domain import state
from agencyhub.persistence.repos.directory import SqlTenantDirectory
from agencyhub.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

WATCHDOG_WORKER_ID = "watchdog"


@dataclass(frozen=True)
class ExpiryReport:
    timed_out: int
    stalled: int
    skipped: int


def _last_activity(job: dict[str, Any]) -> datetime:
    return job.get("updated_at") or job.get("started_at") or job["created_at"]


def is_stale(job: dict[str, Any], now: datetime) -> bool:
    timeout = timedelta(seconds=int(job.get("timeout_seconds") or 0))
    return now - _last_activity(job) > timeout


async def expire_stale_jobs(directory: SqlTenantDirectory, now: datetime | None = None) -> ExpiryReport:
    # Jobs that never reached the database step time out; later steps that went quiet failed.
    current = now or datetime.now(timezone.utc)
    timed_out = stalled = skipped = 0
    for job in await directory.list_open_jobs():
        if not is_stale(job, current):
            continue
        try:
            if job["status"] in state.allowed_sources(state.TIMEOUT):
                await directory.transition_job(
                    job["id"],
                    to_status=state.TIMEOUT,
                    from_statuses=state.allowed_sources(state.TIMEOUT),
                    message="Provisioning did not start before the job timeout",
                    worker_id=WATCHDOG_WORKER_ID,
                    fields={
                        "error_message": "Provisioning timed out",
                        "error_code": "PROVISIONING_TIMEOUT",
                        "completed_at": current,
                    },
                )
                timed_out += 1
            else:
                await directory.mark_failed(
                    job["id"],
                    step=job.get("current_step") or job["status"],
                    message="worker stalled",
                    error_code="WORKER_STALLED",
                    error_details={"last_status": job["status"], "worker_id": job.get("worker_id")},
                    stack_trace=None,
                    worker_id=WATCHDOG_WORKER_ID,
                )
                stalled += 1
        except JobStateConflictError:
            # The job moved on between the scan and the update.
            skipped += 1
            continue
        logger.warning("provisioning_job_expired job_id=%s status=%s", job["id"], job["status"])

    if timed_out or stalled:
        increment_counter("provisioning_timeouts_total", timed_out)
        increment_counter("provisioning_stalled_total", stalled)
    return ExpiryReport(timed_out=timed_out, stalled=stalled, skipped=skipped)


async def cancel_job(directory: SqlTenantDirectory, job_id: str, reason: str) -> dict[str, Any]:
    job = await directory.get_job(job_id)
    if job is None:
        raise ValidationError(f"Provisioning job {job_id} not found", code="JOB_NOT_FOUND")
    if job["status"] not in state.allowed_sources(state.CANCELLED):
        raise JobStateConflictError(f"Job {job_id} cannot be cancelled from {job['status']}")
    row = await directory.transition_job(
        job_id,
        to_status=state.CANCELLED,
        from_statuses=state.allowed_sources(state.CANCELLED),
        message=reason,
        worker_id=WATCHDOG_WORKER_ID,
        fields={"error_message": reason, "error_code": "CANCELLED", "completed_at": datetime.now(timezone.utc)},
    )
    logger.info("provisioning_job_cancelled job_id=%s", job_id)
    return row
