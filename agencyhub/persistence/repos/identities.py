from __future__ import annotations

from datetime import datetime
from typing import Any, Callable

from sqlalchemy import Table, and_, select, text, update
from sqlalchemy.dialects.postgresql import insert as pg_insert

from agencyhub.domain.models import Profile, User, UserRole
from agencyhub.domain.tenant_models import TenantProfile, TenantUser, TenantUserRole
from agencyhub.persistence.executor import QueryExecutor, Transaction
from agencyhub.persistence.registry import PoolHandle


PLATFORM_ROLE = "super_admin"
# Roles that only mean something on the control plane; never honoured from tenant data.
PLATFORM_ROLES = frozenset({PLATFORM_ROLE})

_platform_users = User.__table__
_platform_roles = UserRole.__table__
_platform_profiles = Profile.__table__
_tenant_users = TenantUser.__table__
_tenant_roles = TenantUserRole.__table__
_tenant_profiles = TenantProfile.__table__

_VERIFY_CRYPT = text("SELECT crypt(:password, :password_hash) = :password_hash AS matches")


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


async def find_platform_identity(
    executor: QueryExecutor, pool: PoolHandle, email_normalized: str
) -> dict[str, Any] | None:
    # Only users holding an active platform role with no tenant association qualify.
    stmt = (
        select(
            _platform_users.c.id,
            _platform_users.c.email,
            _platform_users.c.password_hash,
            _platform_users.c.is_active,
            _platform_users.c.failed_login_attempts,
            _platform_users.c.locked_until,
            _platform_profiles.c.full_name,
        )
        .select_from(
            _platform_users.join(
                _platform_roles,
                and_(
                    _platform_roles.c.user_id == _platform_users.c.id,
                    _platform_roles.c.role == PLATFORM_ROLE,
                    _platform_roles.c.agency_id.is_(None),
                    _platform_roles.c.is_active.is_(True),
                ),
            ).outerjoin(_platform_profiles, _platform_profiles.c.user_id == _platform_users.c.id)
        )
        .where(
            _platform_users.c.email_normalized == email_normalized,
            _platform_users.c.is_active.is_(True),
        )
        .limit(1)
    )
    result = await executor.execute(pool, stmt)
    return result.first()


async def find_tenant_identity(
    executor: QueryExecutor,
    pool: PoolHandle,
    email_normalized: str,
    *,
    two_factor: bool,
) -> dict[str, Any] | None:
    columns = [
        _tenant_users.c.id,
        _tenant_users.c.email,
        _tenant_users.c.password_hash,
        _tenant_users.c.is_active,
        _tenant_users.c.email_confirmed,
        _tenant_users.c.failed_login_attempts,
        _tenant_users.c.locked_until,
    ]
    # Older tenant schemas lack the column entirely; the capability record decides.
    if two_factor:
        columns.append(_tenant_users.c.two_factor_enabled)
    stmt = select(*columns).where(_tenant_users.c.email_normalized == email_normalized).limit(1)
    result = await executor.execute(pool, stmt)
    return result.first()


async def load_tenant_roles(executor: QueryExecutor, pool: PoolHandle, user_id: str) -> list[str]:
    result = await executor.execute(
        pool,
        select(_tenant_roles.c.role)
        .where(_tenant_roles.c.user_id == user_id, _tenant_roles.c.is_active.is_(True))
        .order_by(_tenant_roles.c.role),
    )
    return [role for role in result.scalars() if role not in PLATFORM_ROLES]


async def load_tenant_profile(executor: QueryExecutor, pool: PoolHandle, user_id: str) -> dict[str, Any] | None:
    result = await executor.execute(
        pool,
        select(_tenant_profiles.c.full_name, _tenant_profiles.c.phone).where(
            _tenant_profiles.c.user_id == user_id
        ),
    )
    return result.first()


def users_table(pool: PoolHandle) -> Table:
    return _platform_users if pool.is_control else _tenant_users


async def record_failed_login(
    executor: QueryExecutor,
    pool: PoolHandle,
    user_id: str,
    *,
    lock_for: Callable[[int], datetime | None],
) -> tuple[int, datetime | None]:
    # Incremented in SQL; the lock decision uses the returned total.
    table = users_table(pool)

    async def _work(tx: Transaction) -> tuple[int, datetime | None]:
        updated = await tx.execute(
            update(table)
            .where(table.c.id == user_id)
            .values(failed_login_attempts=table.c.failed_login_attempts + 1)
            .returning(table.c.failed_login_attempts)
        )
        failed_attempts = int(updated.scalar() or 0)
        locked_until = lock_for(failed_attempts)
        if locked_until is not None:
            await tx.execute(update(table).where(table.c.id == user_id).values(locked_until=locked_until))
        return failed_attempts, locked_until

    return await executor.run_transaction(pool, _work, label="record_failed_login")


async def record_successful_login(
    executor: QueryExecutor, pool: PoolHandle, user_id: str, *, signed_in_at: datetime
) -> None:
    table = users_table(pool)
    await executor.execute(
        pool,
        update(table)
        .where(table.c.id == user_id)
        .values(failed_login_attempts=0, locked_until=None, last_sign_in_at=signed_in_at),
    )


async def verify_crypt_hash(
    executor: QueryExecutor, pool: PoolHandle, password: str, password_hash: str
) -> bool:
    # Legacy hashes were produced by pgcrypto; only the database that stored them verifies them.
    result = await executor.execute(pool, _VERIFY_CRYPT, {"password": password, "password_hash": password_hash})
    return bool(result.scalar())


async def upsert_platform_admin(
    executor: QueryExecutor,
    pool: PoolHandle,
    *,
    user_id: str,
    email: str,
    password_hash: str,
    full_name: str | None,
    role_id: str,
) -> str:
    """Create or refresh a platform administrator; returns the stored user id."""
    email_normalized = normalize_email(email)
    user_stmt = pg_insert(_platform_users).values(
        id=user_id,
        email=email.strip(),
        email_normalized=email_normalized,
        password_hash=password_hash,
        email_confirmed=True,
        is_active=True,
    )
    user_stmt = user_stmt.on_conflict_do_update(
        index_elements=[_platform_users.c.email_normalized],
        set_={"password_hash": user_stmt.excluded.password_hash, "is_active": True},
    ).returning(_platform_users.c.id)

    async def _work(tx: Transaction) -> str:
        stored_id = (await tx.execute(user_stmt)).scalar()
        await tx.execute(
            pg_insert(_platform_profiles)
            .values(user_id=stored_id, full_name=full_name)
            .on_conflict_do_nothing()
        )
        await tx.execute(
            pg_insert(_platform_roles)
            .values(id=role_id, user_id=stored_id, role=PLATFORM_ROLE, agency_id=None, is_active=True)
            .on_conflict_do_update(index_elements=[_platform_roles.c.id], set_={"is_active": True})
        )
        return stored_id

    return await executor.run_transaction(pool, _work, label="upsert_platform_admin")
