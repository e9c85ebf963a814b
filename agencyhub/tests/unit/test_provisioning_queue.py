from __future__ import annotations

import asyncio

import pytest

from agencyhub.core.config import Settings
from agencyhub.services.provisioning.queue import ProvisioningJobPayload, ProvisioningQueue, arq_job_id


def _payload(job_id: str) -> ProvisioningJobPayload:
    return ProvisioningJobPayload(
        job_id=job_id,
        tenant_id=f"tenant-{job_id}",
        database_name=f"agency_t_{job_id}",
        owner_email="a@acme.test",
        owner_password_hash="$2b$04$hash",
    )


class _FakeArq:
    def __init__(self) -> None:
        self.jobs: dict[str, tuple[str, dict]] = {}

    async def enqueue_job(self, function, payload, *, _job_id, _queue_name):
        if _job_id in self.jobs:
            return None
        self.jobs[_job_id] = (function, payload)
        return object()

    async def aclose(self) -> None:
        return None


@pytest.mark.asyncio
async def test_inline_mode_returns_before_the_pipeline_finishes() -> None:
    started = asyncio.Event()
    release = asyncio.Event()
    ran: list[str] = []

    async def _runner(payload: ProvisioningJobPayload) -> None:
        started.set()
        await release.wait()
        ran.append(payload.job_id)

    queue = ProvisioningQueue(Settings(provisioning_execution_mode="inline"), inline_runner=_runner)

    assert await queue.enqueue(_payload("j1")) == "j1"
    await started.wait()
    assert ran == []
    assert await queue.queue_depth() == 1

    release.set()
    await queue.drain()
    assert ran == ["j1"]
    assert await queue.queue_depth() == 0


@pytest.mark.asyncio
async def test_inline_concurrency_is_bounded() -> None:
    active = 0
    peak = 0

    async def _runner(payload: ProvisioningJobPayload) -> None:
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.01)
        active -= 1

    queue = ProvisioningQueue(
        Settings(provisioning_execution_mode="inline", provisioning_worker_concurrency=2),
        inline_runner=_runner,
    )
    for index in range(6):
        await queue.enqueue(_payload(f"j{index}"))
    await queue.drain()

    assert peak == 2


@pytest.mark.asyncio
async def test_inline_failures_do_not_escape_the_background_task() -> None:
    async def _runner(payload: ProvisioningJobPayload) -> None:
        raise RuntimeError("boom")

    queue = ProvisioningQueue(Settings(provisioning_execution_mode="inline"), inline_runner=_runner)
    await queue.enqueue(_payload("j1"))
    await queue.drain()


@pytest.mark.asyncio
async def test_inline_mode_skips_a_job_already_in_flight() -> None:
    release = asyncio.Event()
    ran: list[str] = []

    async def _runner(payload: ProvisioningJobPayload) -> None:
        await release.wait()
        ran.append(payload.job_id)

    queue = ProvisioningQueue(Settings(provisioning_execution_mode="inline"), inline_runner=_runner)
    await queue.enqueue(_payload("j1"))
    await queue.enqueue(_payload("j1"))
    assert await queue.queue_depth() == 1

    release.set()
    await queue.drain()
    assert ran == ["j1"]

    # Once finished, the same id may run again (redelivery after a crash).
    await queue.enqueue(_payload("j1"))
    await queue.drain()
    assert ran == ["j1", "j1"]


@pytest.mark.asyncio
async def test_queue_mode_dedups_by_job_id() -> None:
    arq = _FakeArq()
    queue = ProvisioningQueue(Settings(provisioning_execution_mode="queue"), redis=arq)

    await queue.enqueue(_payload("j1"))
    await queue.enqueue(_payload("j1"))

    assert list(arq.jobs) == [arq_job_id("j1")]
    function, payload = arq.jobs["provision:j1"]
    assert function == "provision_agency"
    assert payload["owner_password_hash"] == "$2b$04$hash"
    assert "owner_password" not in payload
