from __future__ import annotations

import argparse
import asyncio
import json

from agencyhub.core.logging import configure_logging
from agencyhub.runtime import start_runtime
from agencyhub.services.telemetry import gauges_snapshot


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Open tenant pools and print registry counters")
    parser.add_argument("databases", nargs="*", help="Tenant databases to warm before reporting")
    return parser


async def report(args: argparse.Namespace) -> None:
    runtime = await start_runtime()
    try:
        for database in args.databases:
            await runtime.registry.get_pool(database)
        stats = runtime.registry.stats()
        gauges = gauges_snapshot()
        depth = await runtime.queue.queue_depth()
        heartbeat = await runtime.queue.get_worker_heartbeat()
    finally:
        await runtime.aclose()
    print(json.dumps(stats, indent=2, sort_keys=True))
    for name, value in sorted(gauges.items()):
        print(f"{name}={value:g}")
    print(f"provisioning_queue_depth={depth}")
    if heartbeat is not None:
        print(f"worker_heartbeat={heartbeat[0]}@{heartbeat[1].isoformat()}")


if __name__ == "__main__":
    configure_logging()
    asyncio.run(report(_build_parser().parse_args()))
