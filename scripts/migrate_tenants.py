from __future__ import annotations

import argparse
import asyncio
import logging

from agencyhub.core.logging import configure_logging
from agencyhub.runtime import start_runtime


logger = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Upgrade every tenant database to the packaged head revision")
    parser.add_argument("--tenant", action="append", default=[], help="Limit to these tenant ids")
    parser.add_argument(
        "--include-inactive",
        action="store_true",
        help="Also migrate pending and suspended tenants",
    )
    return parser


async def migrate(args: argparse.Namespace) -> int:
    runtime = await start_runtime()
    failures = 0
    try:
        tenants = await runtime.directory.list_tenants(include_inactive=args.include_inactive)
        if args.tenant:
            wanted = set(args.tenant)
            tenants = [tenant for tenant in tenants if tenant["id"] in wanted]
        for tenant in tenants:
            try:
                outcome = await runtime.migrations.upgrade(tenant["database_name"])
            except Exception:  # noqa: BLE001 - keep going; one broken tenant must not block the rest
                failures += 1
                logger.exception("tenant_migration_failed tenant_id=%s", tenant["id"])
                continue
            # Refresh the capability record so logins pick up new features.
            await runtime.directory.store_capabilities(
                tenant["id"], revision=outcome.revision, capabilities=outcome.capabilities
            )
            print(f"tenant_id={tenant['id']} database={outcome.database_name} revision={outcome.revision}")
        print(f"migrated_tenants={len(tenants) - failures} failed_tenants={failures}")
    finally:
        await runtime.aclose()
    return 1 if failures else 0


if __name__ == "__main__":
    configure_logging()
    raise SystemExit(asyncio.run(migrate(_build_parser().parse_args())))
