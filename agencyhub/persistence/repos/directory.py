from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Iterable

from sqlalchemy import and_, delete, func, insert, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert

from agencyhub.core.errors import JobStateConflictError
from agencyhub.domain import state
from agencyhub.domain.models import (
    Agency,
    LoginAttempt,
    ProvisioningJob,
    ProvisioningJobEvent,
    TenantOwnerSeed,
    TenantSchemaCapability,
)
from agencyhub.persistence.executor import QueryExecutor, Transaction


logger = logging.getLogger(__name__)

_jobs = ProvisioningJob.__table__
_agencies = Agency.__table__
_events = ProvisioningJobEvent.__table__
_seeds = TenantOwnerSeed.__table__
_capabilities = TenantSchemaCapability.__table__
_attempts = LoginAttempt.__table__


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def domain_match_clause(raw_domain: str, subdomain: str):
    # Exact value, bare subdomain, or "subdomain.<anything>"; LIKE metacharacters are escaped.
    escaped = subdomain.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    lowered = func.lower(_agencies.c.domain)
    return or_(
        lowered == raw_domain.lower(),
        lowered == subdomain,
        lowered.like(f"{escaped}.%", escape="\\"),
    )


def _event(
    job_id: str,
    *,
    status: str,
    progress: int,
    message: str | None,
    worker_id: str | None,
):
    return insert(_events).values(
        job_id=job_id,
        status=status,
        progress_percentage=progress,
        message=message,
        worker_id=worker_id,
    )


def _seed_upsert(seed: dict[str, Any]):
    # A resubmission after a failed attempt refreshes the stored owner credentials.
    stmt = pg_insert(_seeds).values(**seed)
    return stmt.on_conflict_do_update(
        index_elements=[_seeds.c.tenant_id],
        set_={
            "owner_user_id": stmt.excluded.owner_user_id,
            "email": stmt.excluded.email,
            "password_hash": stmt.excluded.password_hash,
            "full_name": stmt.excluded.full_name,
        },
    )


class SqlTenantDirectory:
    """Control-plane access to tenants, provisioning jobs and their bookkeeping rows."""

    def __init__(self, executor: QueryExecutor) -> None:
        self._executor = executor

    async def get_tenant(self, tenant_id: str) -> dict[str, Any] | None:
        result = await self._executor.execute_control(select(_agencies).where(_agencies.c.id == tenant_id))
        return result.first()

    async def list_tenants(self, *, include_inactive: bool = False) -> list[dict[str, Any]]:
        stmt = select(_agencies).where(_agencies.c.deleted_at.is_(None))
        if not include_inactive:
            stmt = stmt.where(_agencies.c.is_active.is_(True))
        result = await self._executor.execute_control(stmt.order_by(_agencies.c.created_at))
        return result.rows

    async def get_job(self, job_id: str) -> dict[str, Any] | None:
        result = await self._executor.execute_control(select(_jobs).where(_jobs.c.id == job_id))
        return result.first()

    async def list_job_events(self, job_id: str) -> list[dict[str, Any]]:
        result = await self._executor.execute_control(
            select(_events).where(_events.c.job_id == job_id).order_by(_events.c.id)
        )
        return result.rows

    async def find_job_by_idempotency_key(self, idempotency_key: str) -> dict[str, Any] | None:
        # Newest attempt wins; older failed attempts under the same key are history.
        result = await self._executor.execute_control(
            select(_jobs)
            .where(_jobs.c.idempotency_key == idempotency_key)
            .order_by(_jobs.c.created_at.desc())
            .limit(1)
        )
        return result.first()

    async def find_tenant_by_domain(self, domain: str) -> dict[str, Any] | None:
        result = await self._executor.execute_control(
            select(_agencies).where(func.lower(_agencies.c.domain) == domain.lower())
        )
        return result.first()

    async def find_conflicting_tenants(
        self, subdomain: str, *, exclude_tenant_id: str | None = None
    ) -> list[dict[str, Any]]:
        # Each live tenant claiming the subdomain, with its open job (if any) for tie-breaking.
        stmt = (
            select(
                _agencies.c.id,
                _agencies.c.domain,
                _agencies.c.status,
                _jobs.c.id.label("job_id"),
                _jobs.c.idempotency_key,
                _jobs.c.created_at.label("job_created_at"),
            )
            .select_from(
                _agencies.outerjoin(
                    _jobs,
                    and_(
                        _jobs.c.tenant_id == _agencies.c.id,
                        _jobs.c.status.in_(sorted(state.NON_TERMINAL_STATUSES)),
                    ),
                )
            )
            .where(
                domain_match_clause(subdomain, subdomain),
                _agencies.c.deleted_at.is_(None),
                _agencies.c.status.in_((state.AGENCY_ACTIVE, state.AGENCY_PENDING)),
            )
        )
        if exclude_tenant_id:
            stmt = stmt.where(_agencies.c.id != exclude_tenant_id)
        result = await self._executor.execute_control(stmt)
        return result.rows

    async def find_tenants_for_login(self, raw_domain: str, subdomain: str) -> list[dict[str, Any]]:
        # Ephemeral tenants are filtered by the caller, so fetch a few beyond the ambiguity threshold.
        stmt = (
            select(
                _agencies.c.id,
                _agencies.c.domain,
                _agencies.c.database_name,
                _agencies.c.is_ephemeral,
                _capabilities.c.schema_revision,
                _capabilities.c.capabilities,
            )
            .select_from(
                _agencies.outerjoin(_capabilities, _capabilities.c.tenant_id == _agencies.c.id)
            )
            .where(
                domain_match_clause(raw_domain, subdomain),
                _agencies.c.status == state.AGENCY_ACTIVE,
                _agencies.c.is_active.is_(True),
                _agencies.c.deleted_at.is_(None),
            )
            .limit(10)
        )
        result = await self._executor.execute_control(stmt)
        return result.rows

    async def create_tenant_with_job(
        self,
        *,
        tenant: dict[str, Any],
        job: dict[str, Any],
        seed: dict[str, Any],
    ) -> dict[str, Any]:
        # Tenant, job, owner seed and the first event commit together or not at all.
        async def _work(tx: Transaction) -> dict[str, Any]:
            await tx.execute(insert(_agencies).values(**tenant))
            created = await tx.execute(insert(_jobs).values(**job).returning(*_jobs.c))
            await tx.execute(_seed_upsert(seed))
            await tx.execute(
                _event(job["id"], status=state.PENDING, progress=0, message="Signup accepted", worker_id=None)
            )
            return created.first() or {}

        return await self._executor.run_control(_work, label="create_tenant_with_job")

    async def create_retry_job(self, *, job: dict[str, Any], seed: dict[str, Any]) -> dict[str, Any]:
        # A fresh job for a tenant whose previous attempt failed, was cancelled or timed out.
        async def _work(tx: Transaction) -> dict[str, Any]:
            created = await tx.execute(insert(_jobs).values(**job).returning(*_jobs.c))
            await tx.execute(_seed_upsert(seed))
            await tx.execute(
                _event(job["id"], status=state.PENDING, progress=0, message="Signup resubmitted", worker_id=None)
            )
            return created.first() or {}

        return await self._executor.run_control(_work, label="create_retry_job")

    async def transition_job(
        self,
        job_id: str,
        *,
        to_status: str,
        from_statuses: Iterable[str],
        progress: int | None = None,
        message: str | None = None,
        worker_id: str | None = None,
        fields: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Compare-and-set the job status and record the event in one transaction.

        Raises ``JobStateConflictError`` without writing anything when the stored
        status is no longer one of ``from_statuses``.
        """
        sources = sorted(set(from_statuses))
        values: dict[str, Any] = {"status": to_status, "updated_at": _utc_now()}
        if to_status in state.IN_PROGRESS_STATUSES:
            values["current_step"] = to_status
        if progress is not None:
            # Pollers only ever see progress move forward.
            values["progress_percentage"] = func.greatest(_jobs.c.progress_percentage, progress)
        if worker_id is not None:
            values["worker_id"] = worker_id
        if fields:
            values.update(fields)

        async def _work(tx: Transaction) -> dict[str, Any] | None:
            updated = await tx.execute(
                update(_jobs)
                .where(_jobs.c.id == job_id, _jobs.c.status.in_(sources))
                .values(**values)
                .returning(*_jobs.c)
            )
            row = updated.first()
            if row is None:
                return None
            await tx.execute(
                _event(
                    job_id,
                    status=to_status,
                    progress=row["progress_percentage"],
                    message=message,
                    worker_id=worker_id,
                )
            )
            return row

        row = await self._executor.run_control(_work, label="transition_job")
        if row is None:
            current = await self.get_job(job_id)
            current_status = current["status"] if current else None
            raise JobStateConflictError(
                f"Job {job_id} cannot move to {to_status} from {current_status}"
            )
        return row

    async def mark_failed(
        self,
        job_id: str,
        *,
        step: str,
        message: str,
        error_code: str,
        error_details: dict[str, Any],
        stack_trace: str | None,
        worker_id: str | None,
    ) -> dict[str, Any]:
        return await self.transition_job(
            job_id,
            to_status=state.FAILED,
            from_statuses=state.allowed_sources(state.FAILED),
            message=f"{step}: {message}",
            worker_id=worker_id,
            fields={
                "error_message": message,
                "error_code": error_code,
                "error_details": error_details,
                "stack_trace": stack_trace,
                "completed_at": _utc_now(),
            },
        )

    async def finalize(
        self,
        job_id: str,
        tenant_id: str,
        *,
        result: dict[str, Any],
        worker_id: str | None,
        purge_owner_seed: bool,
    ) -> dict[str, Any]:
        now = _utc_now()

        async def _work(tx: Transaction) -> dict[str, Any] | None:
            updated = await tx.execute(
                update(_jobs)
                .where(_jobs.c.id == job_id, _jobs.c.status.in_(sorted(state.allowed_sources(state.COMPLETED))))
                .values(
                    status=state.COMPLETED,
                    current_step=None,
                    progress_percentage=state.PROGRESS_COMPLETED,
                    result=result,
                    completed_at=now,
                    updated_at=now,
                )
                .returning(*_jobs.c)
            )
            row = updated.first()
            if row is None:
                return None
            await tx.execute(
                update(_agencies)
                .where(_agencies.c.id == tenant_id)
                .values(status=state.AGENCY_ACTIVE, is_active=True, updated_at=now)
            )
            if purge_owner_seed:
                await tx.execute(delete(_seeds).where(_seeds.c.tenant_id == tenant_id))
            await tx.execute(
                _event(
                    job_id,
                    status=state.COMPLETED,
                    progress=state.PROGRESS_COMPLETED,
                    message="Tenant database ready",
                    worker_id=worker_id,
                )
            )
            return row

        row = await self._executor.run_control(_work, label="finalize_job")
        if row is None:
            current = await self.get_job(job_id)
            raise JobStateConflictError(
                f"Job {job_id} cannot complete from {current['status'] if current else None}"
            )
        return row

    async def list_open_jobs(self) -> list[dict[str, Any]]:
        result = await self._executor.execute_control(
            select(_jobs)
            .where(_jobs.c.status.in_(sorted(state.NON_TERMINAL_STATUSES)))
            .order_by(_jobs.c.created_at)
        )
        return result.rows

    async def get_owner_seed(self, tenant_id: str) -> dict[str, Any] | None:
        result = await self._executor.execute_control(select(_seeds).where(_seeds.c.tenant_id == tenant_id))
        return result.first()

    async def store_capabilities(
        self, tenant_id: str, *, revision: str | None, capabilities: Iterable[str]
    ) -> None:
        features = sorted(set(capabilities))
        stmt = pg_insert(_capabilities).values(
            tenant_id=tenant_id,
            schema_revision=revision,
            capabilities=features,
            computed_at=_utc_now(),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[_capabilities.c.tenant_id],
            set_={
                "schema_revision": stmt.excluded.schema_revision,
                "capabilities": stmt.excluded.capabilities,
                "computed_at": stmt.excluded.computed_at,
            },
        )
        await self._executor.execute_control(stmt)

    async def get_capabilities(self, tenant_id: str) -> dict[str, Any] | None:
        result = await self._executor.execute_control(
            select(_capabilities).where(_capabilities.c.tenant_id == tenant_id)
        )
        return result.first()

    async def record_login_attempt(
        self,
        *,
        scope: str,
        email: str,
        succeeded: bool,
        user_id: str | None = None,
        reason: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> None:
        await self._executor.execute_control(
            insert(_attempts).values(
                scope=scope,
                user_id=user_id,
                email=email,
                succeeded=succeeded,
                reason=reason,
                ip_address=ip_address,
                user_agent=user_agent,
            )
        )
