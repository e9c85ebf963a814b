from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass

from sqlalchemy.dialects.postgresql import insert as pg_insert

from agencyhub.domain.tenant_models import AgencySettings, TenantProfile, TenantUser, TenantUserRole
from agencyhub.persistence.executor import QueryExecutor, Statement
from agencyhub.persistence.registry import PoolHandle


logger = logging.getLogger(__name__)

# Stable namespace so a rerun derives the same role row id.
_ROLE_NAMESPACE = uuid.UUID("5d0c1f8e-8a4e-4b53-9a3c-3f1f6c7d2b10")


@dataclass(frozen=True)
class OwnerIdentity:
    user_id: str
    email: str
    password_hash: str
    full_name: str | None = None


@dataclass(frozen=True)
class AgencyProfile:
    agency_id: str
    agency_name: str
    domain: str
    subscription_plan: str


def role_row_id(user_id: str, role: str) -> str:
    return str(uuid.uuid5(_ROLE_NAMESPACE, f"{user_id}:{role}"))


async def seed_owner_identity(
    executor: QueryExecutor,
    pool: PoolHandle,
    *,
    owner: OwnerIdentity,
    agency: AgencyProfile,
) -> bool:
    """Insert the owner user, profile and agency settings rows; no-ops on rerun.

    The password hash was produced at signup and is stored as-is.
    Returns True when the user row was created by this call.
    """
    statements = [
        Statement(
            pg_insert(TenantUser.__table__)
            .values(
                id=owner.user_id,
                email=owner.email,
                email_normalized=owner.email.strip().lower(),
                password_hash=owner.password_hash,
                email_confirmed=True,
                is_active=True,
            )
            .on_conflict_do_nothing()
        ),
        Statement(
            pg_insert(TenantProfile.__table__)
            .values(user_id=owner.user_id, full_name=owner.full_name)
            .on_conflict_do_nothing()
        ),
        Statement(
            pg_insert(AgencySettings.__table__)
            .values(
                agency_id=agency.agency_id,
                agency_name=agency.agency_name,
                domain=agency.domain,
                subscription_plan=agency.subscription_plan,
            )
            .on_conflict_do_nothing()
        ),
    ]
    results = await executor.execute_transaction(pool, statements)
    created = results[0].rowcount > 0
    logger.info("tenant_owner_seeded database=%s user_id=%s created=%s", pool.name, owner.user_id, created)
    return created


async def assign_owner_role(executor: QueryExecutor, pool: PoolHandle, *, user_id: str, role: str) -> bool:
    result = await executor.execute(
        pool,
        pg_insert(TenantUserRole.__table__)
        .values(id=role_row_id(user_id, role), user_id=user_id, role=role, is_active=True)
        .on_conflict_do_nothing(),
    )
    return result.rowcount > 0


class TenantSeeder:
    """Resolves the tenant pool by name and applies the identity seed to it."""

    def __init__(self, executor: QueryExecutor) -> None:
        self._executor = executor

    async def seed_owner(self, database_name: str, *, owner: OwnerIdentity, agency: AgencyProfile) -> bool:
        pool = await self._executor.registry.get_pool(database_name)
        return await seed_owner_identity(self._executor, pool, owner=owner, agency=agency)

    async def assign_owner_role(self, database_name: str, *, user_id: str, role: str) -> bool:
        pool = await self._executor.registry.get_pool(database_name)
        return await assign_owner_role(self._executor, pool, user_id=user_id, role=role)
