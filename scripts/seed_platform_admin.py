from __future__ import annotations

import argparse
import asyncio
import getpass
import sys
import uuid

from agencyhub.core.logging import configure_logging
from agencyhub.persistence.repos.identities import upsert_platform_admin
from agencyhub.runtime import start_runtime
from agencyhub.services.auth.passwords import hash_password
from agencyhub.services.provisioning.tenant_seed import role_row_id


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Create or refresh a platform administrator")
    parser.add_argument("--email", required=True, help="Administrator email")
    parser.add_argument("--full-name", default=None, help="Display name")
    parser.add_argument(
        "--password",
        default=None,
        help="Password (prompted when omitted so it stays out of shell history)",
    )
    return parser


async def _seed(args: argparse.Namespace) -> str:
    password = args.password or getpass.getpass("Password: ")
    password_hash = await asyncio.to_thread(hash_password, password)
    user_id = str(uuid.uuid4())
    runtime = await start_runtime()
    try:
        control = await runtime.registry.control()
        return await upsert_platform_admin(
            runtime.executor,
            control,
            user_id=user_id,
            email=args.email,
            password_hash=password_hash,
            full_name=args.full_name,
            role_id=role_row_id(user_id, "platform"),
        )
    finally:
        await runtime.aclose()


def main() -> int:
    args = _build_parser().parse_args()
    configure_logging()
    try:
        stored_id = asyncio.run(_seed(args))
    except ValueError as exc:
        print(f"error={exc}", file=sys.stderr)
        return 1
    print(f"platform_admin_user_id={stored_id}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
