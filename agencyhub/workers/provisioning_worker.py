from __future__ import annotations

import asyncio
import logging

from arq import cron
from arq.connections import RedisSettings

from agencyhub.core.config import get_settings
from agencyhub.core.errors import JobStateConflictError, ProvisioningError
from agencyhub.core.logging import configure_logging
from agencyhub.runtime import Runtime, start_runtime
from agencyhub.services.provisioning.queue import ProvisioningJobPayload
from agencyhub.services.provisioning.watchdog import expire_stale_jobs
from agencyhub.services.telemetry import step_latency


logger = logging.getLogger(__name__)


async def provision_agency(ctx, payload: dict) -> dict:
    # Parse and validate payloads in the worker to enforce schema contracts.
    job_payload = ProvisioningJobPayload.model_validate(payload)
    runtime: Runtime = ctx["runtime"]
    try:
        return await runtime.orchestrator.run(job_payload)
    except ProvisioningError as exc:
        # Already recorded on the job row; the client learns about it by polling.
        logger.error(
            "provisioning_job_failed job_id=%s step=%s error=%s", job_payload.job_id, exc.step, exc
        )
        return {"job_id": job_payload.job_id, "status": "failed", "step": exc.step}
    except JobStateConflictError:
        logger.warning("provisioning_job_superseded job_id=%s", job_payload.job_id)
        return {"job_id": job_payload.job_id, "status": "superseded"}


async def expire_jobs(ctx) -> None:
    runtime: Runtime = ctx["runtime"]
    report = await expire_stale_jobs(runtime.directory)
    if report.timed_out or report.stalled:
        logger.warning("watchdog_expired timed_out=%s stalled=%s", report.timed_out, report.stalled)


async def prune_pools(ctx) -> None:
    runtime: Runtime = ctx["runtime"]
    pruned = await runtime.registry.prune_idle()
    if pruned:
        logger.info("tenant_pools_pruned count=%s", len(pruned))
    for step, latency in sorted(step_latency(window_s=3600).items()):
        logger.info("provisioning_step_latency step=%s p95_ms=%.1f max_ms=%.1f", step, latency["p95"], latency["max"])


async def _heartbeat_loop(runtime: Runtime) -> None:
    # Emit heartbeats on a fixed interval for ops health reporting.
    interval = runtime.settings.worker_heartbeat_interval_s
    while True:
        try:
            await runtime.queue.set_worker_heartbeat(worker_id=runtime.orchestrator.worker_id)
        except Exception:  # noqa: BLE001 - a missed heartbeat must not stop the worker
            logger.warning("worker_heartbeat_failed", exc_info=True)
        await asyncio.sleep(interval)


async def _startup(ctx) -> None:
    configure_logging()
    runtime = await start_runtime()
    ctx["runtime"] = runtime
    # Start the heartbeat task when the worker boots.
    ctx["heartbeat_task"] = asyncio.create_task(_heartbeat_loop(runtime))
    logger.info("provisioning_worker_started worker_id=%s", runtime.orchestrator.worker_id)


async def _shutdown(ctx) -> None:
    # Cancel the heartbeat task to avoid dangling coroutines on exit.
    task = ctx.get("heartbeat_task")
    if task:
        task.cancel()
    runtime: Runtime | None = ctx.get("runtime")
    if runtime is not None:
        await runtime.aclose()


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.provisioning_queue_name
    max_jobs = settings.provisioning_worker_concurrency
    max_tries = settings.provisioning_max_tries
    job_timeout = settings.provisioning_job_timeout_s
    functions = [provision_agency]
    cron_jobs = [
        cron(expire_jobs, second=0),
        cron(prune_pools, minute=set(range(0, 60, 5)), second=30),
    ]
    on_startup = _startup
    on_shutdown = _shutdown
