from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from arq import create_pool
from arq.connections import ArqRedis, RedisSettings
from pydantic import BaseModel

from agencyhub.core.config import Settings, get_settings
from agencyhub.services.resilience import Bulkhead


logger = logging.getLogger(__name__)

PROVISION_FUNCTION = "provision_agency"
# Keep heartbeat key stable for operator lookups.
WORKER_HEARTBEAT_KEY = "agencyhub:provisioning:heartbeat"


def _queue_key(queue_name: str) -> str:
    # Use arq's queue naming convention for depth checks.
    return f"arq:queue:{queue_name}"


def arq_job_id(job_id: str) -> str:
    # arq refuses a second enqueue under a live job id, which dedups redelivery at the broker.
    return f"provision:{job_id}"


class ProvisioningJobPayload(BaseModel):
    # Published handoff schema between signup intake and the worker.
    job_id: str
    tenant_id: str
    database_name: str
    owner_email: str
    owner_user_id: str | None = None
    # Already hashed at signup; plaintext never reaches the queue.
    owner_password_hash: str | None = None
    idempotency_key: str | None = None


InlineRunner = Callable[[ProvisioningJobPayload], Awaitable[Any]]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ProvisioningQueue:
    """Hands provisioning jobs to arq, or runs them in-process in inline mode."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        inline_runner: InlineRunner | None = None,
        redis: ArqRedis | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._inline_runner = inline_runner
        self._redis = redis
        self._redis_loop: asyncio.AbstractEventLoop | None = None
        self._redis_lock = asyncio.Lock()
        self._bulkhead = Bulkhead("provisioning", self._settings.provisioning_worker_concurrency)
        self._inline_tasks: dict[str, asyncio.Task] = {}

    @property
    def inline(self) -> bool:
        return self._settings.provisioning_execution_mode.lower() == "inline"

    async def get_redis(self) -> ArqRedis:
        # Cache the Redis pool to avoid reconnecting on every enqueue.
        current_loop = asyncio.get_running_loop()
        if self._redis is not None and self._redis_loop in (None, current_loop):
            return self._redis
        async with self._redis_lock:
            if self._redis is None or self._redis_loop not in (None, current_loop):
                self._redis = await create_pool(
                    RedisSettings.from_dsn(self._settings.redis_url),
                    default_queue_name=self._settings.provisioning_queue_name,
                )
                self._redis_loop = current_loop
        return self._redis

    async def enqueue(self, payload: ProvisioningJobPayload) -> str:
        if self.inline:
            self._start_inline(payload)
            return payload.job_id
        redis = await self.get_redis()
        job = await redis.enqueue_job(
            PROVISION_FUNCTION,
            payload.model_dump(),
            _job_id=arq_job_id(payload.job_id),
            _queue_name=self._settings.provisioning_queue_name,
        )
        if job is None:
            # Already queued or running under the same id; redelivery is handled by the pipeline.
            logger.info("provisioning_job_already_queued job_id=%s", payload.job_id)
        else:
            logger.info("provisioning_job_enqueued job_id=%s tenant_id=%s", payload.job_id, payload.tenant_id)
        return payload.job_id

    def _start_inline(self, payload: ProvisioningJobPayload) -> None:
        # Signup still returns immediately; the pipeline runs as a background task.
        if self._inline_runner is None:
            raise RuntimeError("Inline provisioning requires an inline runner")
        if payload.job_id in self._inline_tasks:
            logger.info("provisioning_job_already_queued job_id=%s", payload.job_id)
            return
        task = asyncio.create_task(self._run_inline(payload), name=arq_job_id(payload.job_id))
        self._inline_tasks[payload.job_id] = task
        task.add_done_callback(lambda _: self._inline_tasks.pop(payload.job_id, None))

    async def _run_inline(self, payload: ProvisioningJobPayload) -> None:
        lease = await self._bulkhead.acquire()
        try:
            await self._inline_runner(payload)
        except Exception:  # noqa: BLE001 - failures are already recorded on the job row
            logger.exception("inline_provisioning_failed job_id=%s", payload.job_id)
        finally:
            lease.release()

    async def drain(self) -> None:
        # Wait for in-flight inline jobs (tests and shutdown).
        while self._inline_tasks:
            await asyncio.gather(*list(self._inline_tasks.values()), return_exceptions=True)

    async def queue_depth(self) -> int | None:
        # None signals Redis unavailability to operators.
        if self.inline:
            return len(self._inline_tasks)
        try:
            redis = await self.get_redis()
            return int(await redis.llen(_queue_key(self._settings.provisioning_queue_name)))
        except Exception:  # noqa: BLE001 - ops tooling handles degraded Redis
            logger.warning("queue_depth_unavailable", exc_info=True)
            return None

    async def set_worker_heartbeat(self, *, worker_id: str, timestamp: datetime | None = None) -> None:
        if self.inline:
            return
        redis = await self.get_redis()
        heartbeat_time = timestamp or _utc_now()
        await redis.set(WORKER_HEARTBEAT_KEY, f"{worker_id}@{heartbeat_time.isoformat()}")

    async def get_worker_heartbeat(self) -> tuple[str, datetime] | None:
        if self.inline:
            return None
        try:
            redis = await self.get_redis()
            raw_value = await redis.get(WORKER_HEARTBEAT_KEY)
        except Exception:  # noqa: BLE001 - ops tooling handles degraded Redis
            logger.warning("worker_heartbeat_unavailable", exc_info=True)
            return None
        if not raw_value:
            return None
        value = raw_value.decode("utf-8") if isinstance(raw_value, (bytes, bytearray)) else str(raw_value)
        worker_id, _, stamp = value.rpartition("@")
        try:
            return worker_id, datetime.fromisoformat(stamp)
        except ValueError:
            return None

    async def aclose(self) -> None:
        await self.drain()
        if self._redis is not None:
            redis, self._redis = self._redis, None
            await redis.aclose()
