from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import re
import uuid
from typing import Any, Callable

from pydantic import BaseModel, Field, field_validator
from sqlalchemy import exc as sa_exc

from agencyhub.core.config import Settings, get_settings
from agencyhub.core.errors import ValidationError
from agencyhub.domain import state
from agencyhub.persistence.repos.directory import SqlTenantDirectory
from agencyhub.persistence.repos.identities import normalize_email
from agencyhub.services.auth.passwords import MAX_PASSWORD_BYTES, hash_password
from agencyhub.services.provisioning.domains import (
    generate_database_name,
    validate_agency_name,
    validate_subdomain,
)
from agencyhub.services.provisioning.queue import ProvisioningJobPayload, ProvisioningQueue
from agencyhub.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 8
MAX_IDEMPOTENCY_KEY_LENGTH = 128
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class SignupRequest(BaseModel):
    agency_name: str
    domain: str
    owner_email: str
    owner_password: str = Field(repr=False)
    owner_full_name: str | None = None
    subscription_plan: str | None = None
    idempotency_key: str | None = None

    @field_validator("owner_email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        cleaned = normalize_email(value)
        if not _EMAIL_RE.match(cleaned):
            raise ValueError("owner_email is not a valid email address")
        return cleaned

    @field_validator("owner_password")
    @classmethod
    def _check_password(cls, value: str) -> str:
        if len(value) < MIN_PASSWORD_LENGTH:
            raise ValueError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
        if len(value.encode("utf-8")) > MAX_PASSWORD_BYTES:
            raise ValueError(f"Password cannot exceed {MAX_PASSWORD_BYTES} bytes")
        return value

    @field_validator("idempotency_key")
    @classmethod
    def _check_key(cls, value: str | None) -> str | None:
        if value is None:
            return None
        cleaned = value.strip()
        if not cleaned:
            return None
        if len(cleaned) > MAX_IDEMPOTENCY_KEY_LENGTH:
            raise ValueError(f"idempotency_key exceeds {MAX_IDEMPOTENCY_KEY_LENGTH} characters")
        return cleaned


class SignupReceipt(BaseModel):
    accepted: bool = True
    job_id: str
    tenant_id: str
    status: str
    domain: str
    database_name: str
    # True when the submission matched an earlier one and no new job was created.
    replayed: bool = False


class JobStatusView(BaseModel):
    job_id: str
    tenant_id: str
    status: str
    progress_percentage: int
    current_step: str | None = None
    error_message: str | None = None
    error_code: str | None = None
    result: dict[str, Any] | None = None


def compute_request_hash(payload: Any) -> str:
    # Hash request payloads deterministically without persisting sensitive data.
    serialized = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


def derive_idempotency_key(subdomain: str, owner_email: str) -> str:
    # Same subdomain for the same owner is the same signup when the caller sends no key.
    return "signup:" + hashlib.sha256(f"signup:{subdomain}:{owner_email}".encode("utf-8")).hexdigest()


def _redacted_snapshot(request: SignupRequest, *, domain: str, plan: str) -> dict[str, Any]:
    return {
        "agency_name": request.agency_name.strip(),
        "domain": domain,
        "owner_email": request.owner_email,
        "owner_full_name": request.owner_full_name,
        "subscription_plan": plan,
    }


class SignupService:
    """Accepts signups: records tenant, job and owner seed, then hands off to the queue."""

    def __init__(
        self,
        directory: SqlTenantDirectory,
        queue: ProvisioningQueue,
        *,
        settings: Settings | None = None,
        hasher: Callable[[str], str] = hash_password,
    ) -> None:
        self._directory = directory
        self._queue = queue
        self._settings = settings or get_settings()
        self._hasher = hasher

    async def submit(self, request: SignupRequest) -> SignupReceipt:
        subdomain = validate_subdomain(request.domain)
        domain = request.domain.strip().lower()
        agency_name = validate_agency_name(request.agency_name)
        plan = (request.subscription_plan or self._settings.default_subscription_plan).strip().lower()
        snapshot = _redacted_snapshot(request, domain=domain, plan=plan)
        request_hash = compute_request_hash(snapshot)
        key = request.idempotency_key or derive_idempotency_key(subdomain, request.owner_email)

        existing = await self._directory.find_job_by_idempotency_key(key)
        if existing is not None:
            return await self._replay(existing, request, key=key, request_hash=request_hash, snapshot=snapshot)

        await self._ensure_available(domain, subdomain)
        tenant_id = str(uuid.uuid4())
        job_id = str(uuid.uuid4())
        owner_user_id = str(uuid.uuid4())
        database_name = generate_database_name(domain, tenant_id)
        password_hash = await asyncio.to_thread(self._hasher, request.owner_password)

        tenant = {
            "id": tenant_id,
            "name": agency_name,
            "domain": domain,
            "database_name": database_name,
            "owner_user_id": owner_user_id,
            "subscription_plan": plan,
            "status": state.AGENCY_PENDING,
            "is_active": False,
            "is_ephemeral": False,
        }
        job = self._job_row(
            job_id,
            tenant_id=tenant_id,
            key=key,
            request_hash=request_hash,
            snapshot=snapshot,
            database_name=database_name,
        )
        seed = {
            "tenant_id": tenant_id,
            "owner_user_id": owner_user_id,
            "email": request.owner_email,
            "password_hash": password_hash,
            "full_name": request.owner_full_name,
        }
        try:
            await self._directory.create_tenant_with_job(tenant=tenant, job=job, seed=seed)
        except sa_exc.IntegrityError as exc:
            # Lost a race with an identical submission, or with another signup for this domain.
            winner = await self._directory.find_job_by_idempotency_key(key)
            if winner is not None and winner.get("request_hash") == request_hash:
                return self._receipt(winner, replayed=True)
            raise ValidationError("This URL is already taken", code="DOMAIN_UNAVAILABLE") from exc

        await self._enqueue(
            job_id,
            tenant_id=tenant_id,
            database_name=database_name,
            owner_email=request.owner_email,
            owner_user_id=owner_user_id,
            owner_password_hash=password_hash,
            key=key,
        )
        increment_counter("signups_accepted_total")
        logger.info("signup_accepted tenant_id=%s job_id=%s domain=%s", tenant_id, job_id, domain)
        return SignupReceipt(
            job_id=job_id,
            tenant_id=tenant_id,
            status=state.PENDING,
            domain=domain,
            database_name=database_name,
        )

    async def job_status(self, job_id: str) -> JobStatusView | None:
        job = await self._directory.get_job(job_id)
        if job is None:
            return None
        # Surface status, progress and error text exactly as recorded.
        return JobStatusView(
            job_id=job["id"],
            tenant_id=job["tenant_id"],
            status=job["status"],
            progress_percentage=int(job.get("progress_percentage") or 0),
            current_step=job.get("current_step"),
            error_message=job.get("error_message"),
            error_code=job.get("error_code"),
            result=job.get("result"),
        )

    async def _replay(
        self,
        existing: dict[str, Any],
        request: SignupRequest,
        *,
        key: str,
        request_hash: str,
        snapshot: dict[str, Any],
    ) -> SignupReceipt:
        if existing.get("request_hash") != request_hash:
            raise ValidationError(
                "Idempotency key was already used with a different request",
                code="IDEMPOTENCY_KEY_CONFLICT",
            )
        if existing["status"] in state.RETRYABLE_TERMINAL_STATUSES:
            return await self._resubmit(existing, request, key=key, request_hash=request_hash, snapshot=snapshot)
        if existing["status"] in state.NON_TERMINAL_STATUSES:
            # The original enqueue may have been lost; the broker dedups by job id.
            await self._enqueue(
                existing["id"],
                tenant_id=existing["tenant_id"],
                database_name=existing["database_name"],
                owner_email=existing["owner_email"],
                owner_user_id=None,
                owner_password_hash=None,
                key=key,
            )
        logger.info("signup_replayed job_id=%s status=%s", existing["id"], existing["status"])
        return self._receipt(existing, replayed=True)

    async def _resubmit(
        self,
        previous: dict[str, Any],
        request: SignupRequest,
        *,
        key: str,
        request_hash: str,
        snapshot: dict[str, Any],
    ) -> SignupReceipt:
        tenant = await self._directory.get_tenant(previous["tenant_id"])
        if tenant is None or tenant["status"] != state.AGENCY_PENDING:
            raise ValidationError("This URL is already taken", code="DOMAIN_UNAVAILABLE")
        job_id = str(uuid.uuid4())
        password_hash = await asyncio.to_thread(self._hasher, request.owner_password)
        job = self._job_row(
            job_id,
            tenant_id=tenant["id"],
            key=key,
            request_hash=request_hash,
            snapshot=snapshot,
            database_name=tenant["database_name"],
        )
        seed = {
            "tenant_id": tenant["id"],
            "owner_user_id": tenant["owner_user_id"],
            "email": request.owner_email,
            "password_hash": password_hash,
            "full_name": request.owner_full_name,
        }
        try:
            await self._directory.create_retry_job(job=job, seed=seed)
        except sa_exc.IntegrityError as exc:
            # A concurrent resubmission under the same key opened its job first.
            winner = await self._directory.find_job_by_idempotency_key(key)
            if (
                winner is not None
                and winner["id"] != previous["id"]
                and winner.get("request_hash") == request_hash
            ):
                return self._receipt(winner, replayed=True)
            raise ValidationError("This URL is already taken", code="DOMAIN_UNAVAILABLE") from exc
        await self._enqueue(
            job_id,
            tenant_id=tenant["id"],
            database_name=tenant["database_name"],
            owner_email=request.owner_email,
            owner_user_id=tenant["owner_user_id"],
            owner_password_hash=password_hash,
            key=key,
        )
        increment_counter("signups_resubmitted_total")
        logger.info(
            "signup_resubmitted tenant_id=%s job_id=%s previous_job_id=%s",
            tenant["id"],
            job_id,
            previous["id"],
        )
        return SignupReceipt(
            job_id=job_id,
            tenant_id=tenant["id"],
            status=state.PENDING,
            domain=tenant["domain"],
            database_name=tenant["database_name"],
        )

    async def _ensure_available(self, domain: str, subdomain: str) -> None:
        if await self._directory.find_tenant_by_domain(domain) is not None:
            raise ValidationError("This URL is already taken", code="DOMAIN_UNAVAILABLE")
        if await self._directory.find_conflicting_tenants(subdomain):
            raise ValidationError("This URL is already taken", code="DOMAIN_UNAVAILABLE")

    def _job_row(
        self,
        job_id: str,
        *,
        tenant_id: str,
        key: str,
        request_hash: str,
        snapshot: dict[str, Any],
        database_name: str,
    ) -> dict[str, Any]:
        return {
            "id": job_id,
            "idempotency_key": key,
            "request_hash": request_hash,
            "status": state.PENDING,
            "tenant_id": tenant_id,
            "domain": snapshot["domain"],
            "agency_name": snapshot["agency_name"],
            "database_name": database_name,
            "owner_email": snapshot["owner_email"],
            "subscription_plan": snapshot["subscription_plan"],
            "payload": snapshot,
            "progress_percentage": 0,
            "attempt_count": 0,
            "timeout_seconds": self._settings.provisioning_job_timeout_s,
        }

    async def _enqueue(
        self,
        job_id: str,
        *,
        tenant_id: str,
        database_name: str,
        owner_email: str,
        owner_user_id: str | None,
        owner_password_hash: str | None,
        key: str,
    ) -> None:
        await self._queue.enqueue(
            ProvisioningJobPayload(
                job_id=job_id,
                tenant_id=tenant_id,
                database_name=database_name,
                owner_email=owner_email,
                owner_user_id=owner_user_id,
                owner_password_hash=owner_password_hash,
                idempotency_key=key,
            )
        )

    @staticmethod
    def _receipt(job: dict[str, Any], *, replayed: bool) -> SignupReceipt:
        return SignupReceipt(
            job_id=job["id"],
            tenant_id=job["tenant_id"],
            status=job["status"],
            domain=job["domain"],
            database_name=job["database_name"],
            replayed=replayed,
        )
