from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

from agencyhub.core.config import Settings, get_settings
from agencyhub.core.errors import AuthenticationError, LockoutError
from agencyhub.persistence.executor import QueryExecutor
from agencyhub.persistence.registry import PoolHandle
from agencyhub.persistence.repos import identities
from agencyhub.persistence.repos.directory import SqlTenantDirectory
from agencyhub.services.auth.lockout import LockoutPolicy, is_locked, retry_after_minutes
from agencyhub.services.auth.passwords import burn_verification_time, verify_password
from agencyhub.services.capabilities import TWO_FACTOR, CapabilityCache
from agencyhub.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

PLATFORM_SCOPE = "platform"


@dataclass(frozen=True)
class Identity:
    user_id: str
    email: str
    # "platform" for control-plane identities, otherwise the tenant database name.
    scope: str
    tenant_id: str | None = None
    tenant_domain: str | None = None
    roles: tuple[str, ...] = ()
    full_name: str | None = None
    two_factor_enabled: bool = False
    capabilities: frozenset[str] = field(default_factory=frozenset)

    @property
    def is_platform(self) -> bool:
        return self.scope == PLATFORM_SCOPE


@dataclass(frozen=True)
class _Attempt:
    email: str
    password: str
    ip_address: str | None
    user_agent: str | None


def normalize_subdomain(domain: str | None) -> str:
    # "Acme.ERP.test" and "acme" both name the tenant "acme".
    if not domain:
        return ""
    return domain.strip().lower().split(".", 1)[0]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class AuthResolver:
    """Finds the single database that owns a login identity and verifies it.

    The control plane is consulted first for platform identities. Only when
    that yields nothing and a domain is supplied is exactly one tenant chosen
    from the domain, before any password comparison against tenant data.
    """

    def __init__(
        self,
        executor: QueryExecutor,
        directory: SqlTenantDirectory,
        *,
        capabilities: CapabilityCache,
        lockout_policy: LockoutPolicy | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._executor = executor
        self._directory = directory
        self._capabilities = capabilities
        self._settings = settings or get_settings()
        self._policy = lockout_policy or LockoutPolicy.from_settings(self._settings)
        self._clock = clock

    async def authenticate(
        self,
        email: str,
        password: str,
        domain: str | None = None,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> Identity:
        identity = await self.resolve(
            email, password, domain, ip_address=ip_address, user_agent=user_agent
        )
        if identity is None:
            raise AuthenticationError()
        return identity

    async def resolve(
        self,
        email: str,
        password: str,
        domain: str | None = None,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> Identity | None:
        email_normalized = identities.normalize_email(email)
        attempt = _Attempt(
            email=email_normalized,
            password=password or "",
            ip_address=ip_address,
            user_agent=user_agent,
        )
        if not email_normalized or not password:
            await self._record(attempt, scope=PLATFORM_SCOPE, succeeded=False, reason="missing_credentials")
            return None

        control = await self._executor.registry.control()
        platform_row = await identities.find_platform_identity(self._executor, control, email_normalized)
        if platform_row is not None:
            # A platform mismatch always counts; with a domain a locked admin falls through to the tenant path.
            if await self._verify(control, platform_row, attempt, scope=PLATFORM_SCOPE, raise_on_lock=not domain):
                increment_counter("auth_success_total.platform")
                logger.info("login_succeeded scope=%s user_id=%s", PLATFORM_SCOPE, platform_row["id"])
                return Identity(
                    user_id=platform_row["id"],
                    email=platform_row["email"],
                    scope=PLATFORM_SCOPE,
                    roles=(identities.PLATFORM_ROLE,),
                    full_name=platform_row.get("full_name"),
                )

        subdomain = normalize_subdomain(domain)
        if not subdomain:
            if platform_row is None:
                await burn_verification_time(attempt.password)
                await self._record(attempt, scope=PLATFORM_SCOPE, succeeded=False, reason="unknown_identity")
            increment_counter("auth_failure_total")
            return None

        tenant = await self._resolve_tenant(domain or "", subdomain)
        if tenant is None:
            await burn_verification_time(attempt.password)
            await self._record(attempt, scope=PLATFORM_SCOPE, succeeded=False, reason="unknown_tenant")
            increment_counter("auth_failure_total")
            return None
        return await self._resolve_tenant_identity(tenant, attempt)

    async def _resolve_tenant(self, raw_domain: str, subdomain: str) -> dict[str, Any] | None:
        rows = await self._directory.find_tenants_for_login(raw_domain.strip(), subdomain)
        prefixes = self._settings.ephemeral_prefixes
        candidates = [
            row
            for row in rows
            if not row.get("is_ephemeral") and not (prefixes and row["database_name"].startswith(prefixes))
        ]
        if len(candidates) != 1:
            if len(candidates) > 1:
                logger.warning("tenant_resolution_ambiguous subdomain=%s matches=%s", subdomain, len(candidates))
            return None
        return candidates[0]

    async def _resolve_tenant_identity(self, tenant: dict[str, Any], attempt: _Attempt) -> Identity | None:
        database = tenant["database_name"]
        pool = await self._executor.registry.get_pool(database)
        capabilities = await self._capabilities.for_tenant(tenant)
        row = await identities.find_tenant_identity(
            self._executor,
            pool,
            attempt.email,
            two_factor=TWO_FACTOR in capabilities,
        )
        if row is None or not row.get("is_active"):
            await burn_verification_time(attempt.password)
            await self._record(
                attempt,
                scope=database,
                succeeded=False,
                user_id=row["id"] if row else None,
                reason="unknown_identity" if row is None else "inactive",
            )
            increment_counter("auth_failure_total")
            return None
        if not await self._verify(pool, row, attempt, scope=database):
            increment_counter("auth_failure_total")
            return None

        roles = await identities.load_tenant_roles(self._executor, pool, row["id"])
        profile = await identities.load_tenant_profile(self._executor, pool, row["id"])
        increment_counter("auth_success_total.tenant")
        logger.info("login_succeeded scope=%s user_id=%s", database, row["id"])
        return Identity(
            user_id=row["id"],
            email=row["email"],
            scope=database,
            tenant_id=tenant["id"],
            tenant_domain=tenant["domain"],
            roles=tuple(roles),
            full_name=profile.get("full_name") if profile else None,
            two_factor_enabled=bool(row.get("two_factor_enabled", False)),
            capabilities=capabilities,
        )

    async def _verify(
        self,
        pool: PoolHandle,
        row: dict[str, Any],
        attempt: _Attempt,
        *,
        scope: str,
        raise_on_lock: bool = True,
    ) -> bool:
        now = self._clock()
        user_id = row["id"]
        locked_until = row.get("locked_until")
        # Lockout is decided before the password is looked at.
        if is_locked(locked_until, now):
            await self._record(attempt, scope=scope, succeeded=False, user_id=user_id, reason="locked")
            increment_counter("auth_lockouts_total")
            if not raise_on_lock:
                return False
            raise LockoutError(
                locked_until=locked_until,
                retry_after_minutes=retry_after_minutes(locked_until, now),
            )

        async def _crypt(password: str, password_hash: str) -> bool:
            return await identities.verify_crypt_hash(self._executor, pool, password, password_hash)

        if await verify_password(attempt.password, row.get("password_hash"), crypt_verifier=_crypt):
            await self._mark_signed_in(pool, user_id, now)
            await self._record(attempt, scope=scope, succeeded=True, user_id=user_id)
            return True

        failed_attempts, new_lock = await identities.record_failed_login(
            self._executor,
            pool,
            user_id,
            lock_for=lambda count: self._policy.locked_until_after_failure(count, now),
        )
        if new_lock is not None:
            logger.warning(
                "identity_locked scope=%s user_id=%s failed_attempts=%s locked_until=%s",
                scope,
                user_id,
                failed_attempts,
                new_lock.isoformat(),
            )
        await self._record(attempt, scope=scope, succeeded=False, user_id=user_id, reason="invalid_password")
        return False

    async def _mark_signed_in(self, pool: PoolHandle, user_id: str, now: datetime) -> None:
        try:
            await identities.record_successful_login(self._executor, pool, user_id, signed_in_at=now)
        except Exception:  # noqa: BLE001 - a bookkeeping failure must not fail a verified login
            logger.warning("last_sign_in_update_failed scope=%s user_id=%s", pool.name, user_id, exc_info=True)

    async def _record(
        self,
        attempt: _Attempt,
        *,
        scope: str,
        succeeded: bool,
        user_id: str | None = None,
        reason: str | None = None,
    ) -> None:
        try:
            await self._directory.record_login_attempt(
                scope=scope,
                email=attempt.email,
                succeeded=succeeded,
                user_id=user_id,
                reason=reason,
                ip_address=attempt.ip_address,
                user_agent=attempt.user_agent,
            )
        except Exception:  # noqa: BLE001 - attempt logging must not change the login outcome
            logger.warning("login_attempt_record_failed scope=%s", scope, exc_info=True)
