from __future__ import annotations

import asyncio

from agencyhub.core.logging import configure_logging
from agencyhub.runtime import start_runtime
from agencyhub.services.provisioning.watchdog import expire_stale_jobs


async def expire() -> None:
    # Close out provisioning jobs whose worker vanished.
    runtime = await start_runtime()
    try:
        report = await expire_stale_jobs(runtime.directory)
    finally:
        await runtime.aclose()
    print(f"timed_out_jobs={report.timed_out} stalled_jobs={report.stalled} skipped_jobs={report.skipped}")


if __name__ == "__main__":
    configure_logging()
    asyncio.run(expire())
