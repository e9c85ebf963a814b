from __future__ import annotations

import logging
import os
import socket
import time
import traceback
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, TypeVar

from agencyhub.core.config import Settings, get_settings
from agencyhub.core.errors import (
    DatabaseConnectionError,
    JobStateConflictError,
    ProvisioningError,
    ValidationError,
)
from agencyhub.domain import state
from agencyhub.persistence.migrations import AlembicMigrationRunner, MigrationOutcome
from agencyhub.persistence.repos.directory import SqlTenantDirectory
from agencyhub.persistence.targets import validate_database_name
from agencyhub.persistence.tenant_admin import TenantDatabaseAdmin
from agencyhub.services.provisioning.domains import extract_subdomain, sanitize_subdomain
from agencyhub.services.provisioning.queue import ProvisioningJobPayload
from agencyhub.services.provisioning.tenant_seed import AgencyProfile, OwnerIdentity, TenantSeeder
from agencyhub.services.telemetry import increment_counter, record_step


logger = logging.getLogger(__name__)

T = TypeVar("T")


def default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _error_code(exc: BaseException) -> str:
    if isinstance(exc, ValidationError):
        return exc.code
    if isinstance(exc, DatabaseConnectionError):
        return "DATABASE_UNAVAILABLE"
    return "PROVISIONING_FAILED"


class ProvisioningOrchestrator:
    """Drives one provisioning job through the tenant creation pipeline.

    Every step is idempotent and the run always restarts from validation, so
    at-least-once delivery from the queue is safe: a redelivered or crashed
    job simply walks the same steps again and skips work already done.
    """

    def __init__(
        self,
        directory: SqlTenantDirectory,
        *,
        admin: TenantDatabaseAdmin,
        seeder: TenantSeeder,
        migrations: AlembicMigrationRunner,
        settings: Settings | None = None,
        worker_id: str | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._directory = directory
        self._admin = admin
        self._seeder = seeder
        self._migrations = migrations
        self._settings = settings or get_settings()
        self._worker_id = worker_id or default_worker_id()
        self._clock = clock

    @property
    def worker_id(self) -> str:
        return self._worker_id

    async def run(self, payload: ProvisioningJobPayload) -> dict[str, Any]:
        job_id = payload.job_id
        job = await self._directory.get_job(job_id)
        if job is None:
            raise ProvisioningError(f"Provisioning job {job_id} not found", step="load", job_id=job_id)
        if job["status"] == state.COMPLETED:
            # Redelivery of a finished job: report what it produced.
            logger.info("provisioning_already_completed job_id=%s", job_id)
            return job.get("result") or {}
        if state.is_terminal(job["status"]):
            logger.info("provisioning_skipped_terminal job_id=%s status=%s", job_id, job["status"])
            return {"job_id": job_id, "status": job["status"], "skipped": True}
        if job["tenant_id"] != payload.tenant_id:
            raise ProvisioningError("Payload tenant does not match job", step="load", job_id=job_id)

        step = state.VALIDATING
        try:
            job = await self._transition(
                job_id,
                state.VALIDATING,
                state.PROGRESS_VALIDATING,
                "Validating signup",
                fields={"started_at": self._clock(), "attempt_count": int(job.get("attempt_count") or 0) + 1},
            )
            tenant = await self._timed(step, self._validate(job, payload))

            step = state.CREATING_DATABASE
            await self._transition(job_id, step, state.PROGRESS_CREATING_DATABASE, "Creating tenant database")
            database = tenant["database_name"]
            created = await self._timed(step, self._admin.create_database_if_missing(database))

            step = state.SEEDING_DATA
            await self._transition(job_id, step, state.PROGRESS_SEEDING_SCHEMA, "Applying tenant migrations")
            outcome: MigrationOutcome = await self._timed("migrations", self._migrations.upgrade(database))
            await self._transition(job_id, step, state.PROGRESS_SEEDING_ADMIN, "Seeding owner identity")
            owner = await self._owner_identity(tenant, payload)
            owner_created = await self._timed(
                "seed_owner",
                self._seeder.seed_owner(
                    database,
                    owner=owner,
                    agency=AgencyProfile(
                        agency_id=tenant["id"],
                        agency_name=tenant["name"],
                        domain=tenant["domain"],
                        subscription_plan=tenant["subscription_plan"],
                    ),
                ),
            )

            step = state.ASSIGNING_PERMISSIONS
            await self._transition(job_id, step, state.PROGRESS_ASSIGNING_PERMISSIONS, "Assigning owner role")
            await self._timed(
                step,
                self._seeder.assign_owner_role(
                    database, user_id=owner.user_id, role=self._settings.tenant_owner_role
                ),
            )
            await self._directory.store_capabilities(
                tenant["id"], revision=outcome.revision, capabilities=outcome.capabilities
            )

            step = state.COMPLETED
            result = {
                "tenant_id": tenant["id"],
                "database_name": database,
                "domain": tenant["domain"],
                "owner_user_id": owner.user_id,
                "schema_revision": outcome.revision,
                "capabilities": list(outcome.capabilities),
                "database_created": created,
                "owner_created": owner_created,
            }
            await self._directory.finalize(
                job_id,
                tenant["id"],
                result=result,
                worker_id=self._worker_id,
                purge_owner_seed=self._settings.provisioning_purge_owner_seed,
            )
        except JobStateConflictError:
            # Someone else (watchdog, a concurrent delivery) owns the job now; write nothing.
            logger.warning("provisioning_transition_refused job_id=%s step=%s", job_id, step)
            increment_counter("provisioning_conflicts_total")
            raise
        except Exception as exc:
            await self._fail(job_id, step, exc)
            raise ProvisioningError(str(exc) or type(exc).__name__, step=step, job_id=job_id) from exc

        increment_counter("provisioning_completed_total")
        logger.info("provisioning_completed job_id=%s tenant_id=%s database=%s", job_id, tenant["id"], database)
        return result

    async def _transition(
        self,
        job_id: str,
        target: str,
        progress: int,
        message: str,
        *,
        fields: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        # A checkpoint inside the same status is a progress update, not a new transition.
        row = await self._directory.transition_job(
            job_id,
            to_status=target,
            from_statuses=state.allowed_sources(target),
            progress=progress,
            message=message,
            worker_id=self._worker_id,
            fields=fields,
        )
        logger.info("provisioning_step job_id=%s status=%s progress=%s", job_id, target, progress)
        return row

    async def _timed(self, step: str, awaitable: Awaitable[T]) -> T:
        started = time.monotonic()
        success = False
        try:
            result = await awaitable
            success = True
            return result
        finally:
            record_step(step=step, duration_ms=(time.monotonic() - started) * 1000.0, success=success)

    async def _validate(self, job: dict[str, Any], payload: ProvisioningJobPayload) -> dict[str, Any]:
        tenant = await self._directory.get_tenant(payload.tenant_id)
        if tenant is None:
            raise ValidationError("Tenant record not found", code="TENANT_NOT_FOUND")
        if tenant.get("deleted_at") is not None or tenant["status"] == state.AGENCY_CANCELLED:
            raise ValidationError("Tenant was cancelled", code="TENANT_CANCELLED")
        if tenant["database_name"] != payload.database_name:
            raise ValidationError("Payload database does not match tenant record", code="PAYLOAD_MISMATCH")
        validate_database_name(tenant["database_name"])

        subdomain = sanitize_subdomain(extract_subdomain(tenant["domain"]))
        if not subdomain:
            raise ValidationError("Tenant domain is empty after sanitizing", code="DOMAIN_INVALID_FORMAT")
        conflicts = await self._directory.find_conflicting_tenants(subdomain, exclude_tenant_id=tenant["id"])
        for other in conflicts:
            if other["status"] == state.AGENCY_ACTIVE:
                raise ValidationError("Domain is already in use", code="DOMAIN_UNAVAILABLE")
            if other.get("job_id") is None:
                # Pending tenant with no open job: an abandoned signup, not a live claim.
                continue
            if job.get("idempotency_key") and other.get("idempotency_key") == job["idempotency_key"]:
                # Same logical request delivered twice.
                continue
            if other["job_created_at"] < job["created_at"]:
                raise ValidationError(
                    "Domain is being provisioned by an earlier signup", code="DOMAIN_UNAVAILABLE"
                )
        return tenant

    async def _owner_identity(self, tenant: dict[str, Any], payload: ProvisioningJobPayload) -> OwnerIdentity:
        seed = await self._directory.get_owner_seed(tenant["id"])
        password_hash = payload.owner_password_hash or (seed or {}).get("password_hash")
        user_id = payload.owner_user_id or (seed or {}).get("owner_user_id") or tenant.get("owner_user_id")
        if not password_hash or not user_id:
            raise ValidationError("Owner credentials are no longer available", code="OWNER_SEED_MISSING")
        return OwnerIdentity(
            user_id=user_id,
            email=payload.owner_email,
            password_hash=password_hash,
            full_name=(seed or {}).get("full_name"),
        )

    async def _fail(self, job_id: str, step: str, exc: BaseException) -> None:
        increment_counter("provisioning_failed_total")
        logger.error("provisioning_failed job_id=%s step=%s error=%s", job_id, step, type(exc).__name__)
        try:
            await self._directory.mark_failed(
                job_id,
                step=step,
                message=str(exc) or type(exc).__name__,
                error_code=_error_code(exc),
                error_details={"step": step, "error_type": type(exc).__name__},
                stack_trace="".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
                worker_id=self._worker_id,
            )
        except JobStateConflictError:
            logger.warning("provisioning_fail_refused job_id=%s step=%s", job_id, step)
        except Exception:  # noqa: BLE001 - the original failure is what the caller must see
            logger.exception("provisioning_fail_record_failed job_id=%s", job_id)
