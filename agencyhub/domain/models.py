from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class Agency(Base):
    __tablename__ = "agencies"
    __table_args__ = (
        Index("ix_agencies_status_active", "status", "is_active"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String)
    # Stored lowercase; uniqueness is enforced on lower(domain) as well.
    domain: Mapped[str] = mapped_column(String)
    database_name: Mapped[str] = mapped_column(String, unique=True)
    owner_user_id: Mapped[str | None] = mapped_column(String, nullable=True)
    subscription_plan: Mapped[str] = mapped_column(String, default="trial")
    # pending -> active once provisioning finalizes; suspended/cancelled are admin states.
    status: Mapped[str] = mapped_column(String, default="pending", server_default="pending")
    is_active: Mapped[bool] = mapped_column(Boolean, default=False, server_default=text("false"))
    # Sandbox/test tenants never resolve for logins.
    is_ephemeral: Mapped[bool] = mapped_column(Boolean, default=False, server_default=text("false"))
    max_users: Mapped[int] = mapped_column(Integer, default=50, server_default="50")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
    # Soft-cancel marker; tenant rows are never deleted.
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


Index("uq_agencies_domain_lower", func.lower(Agency.domain), unique=True)


class User(Base):
    __tablename__ = "users"

    # Platform-scoped identities only; tenant users live in their tenant database.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    email: Mapped[str] = mapped_column(String)
    email_normalized: Mapped[str] = mapped_column(String, unique=True)
    # bcrypt or legacy pgcrypto crypt() hash.
    password_hash: Mapped[str | None] = mapped_column(String, nullable=True)
    email_confirmed: Mapped[bool] = mapped_column(Boolean, default=False, server_default=text("false"))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, server_default=text("true"))
    failed_login_attempts: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    locked_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_sign_in_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class UserRole(Base):
    __tablename__ = "user_roles"
    __table_args__ = (
        UniqueConstraint("user_id", "role", "agency_id", name="uq_user_roles_scope"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id", ondelete="CASCADE"), index=True)
    role: Mapped[str] = mapped_column(String)
    # NULL marks a platform-level role unscoped to any tenant.
    agency_id: Mapped[str | None] = mapped_column(String, ForeignKey("agencies.id"), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, server_default=text("true"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Profile(Base):
    __tablename__ = "profiles"

    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    full_name: Mapped[str | None] = mapped_column(String, nullable=True)
    phone: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class ProvisioningJob(Base):
    __tablename__ = "provisioning_jobs"
    __table_args__ = (
        Index("ix_provisioning_jobs_status_created", "status", "created_at"),
        CheckConstraint("progress_percentage BETWEEN 0 AND 100", name="ck_provisioning_jobs_progress"),
        # A key stays claimed while its job is open or completed; failed attempts release it.
        Index(
            "uq_provisioning_jobs_idempotency_open",
            "idempotency_key",
            unique=True,
            postgresql_where=text(
                "idempotency_key IS NOT NULL AND status NOT IN ('failed', 'cancelled', 'timeout')"
            ),
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    idempotency_key: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    # Fingerprint of the signup request so a reused key with different input is rejected.
    request_hash: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, default="pending", server_default="pending")
    tenant_id: Mapped[str] = mapped_column(String, ForeignKey("agencies.id"), index=True)
    domain: Mapped[str] = mapped_column(String)
    agency_name: Mapped[str] = mapped_column(String)
    database_name: Mapped[str] = mapped_column(String)
    owner_email: Mapped[str] = mapped_column(String)
    subscription_plan: Mapped[str] = mapped_column(String)
    # Request snapshot with secrets removed.
    payload: Mapped[dict[str, Any]] = mapped_column(JSONB, default=dict)
    result: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)
    current_step: Mapped[str | None] = mapped_column(String, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    error_details: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)
    stack_trace: Mapped[str | None] = mapped_column(Text, nullable=True)
    progress_percentage: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    # hostname-pid of the worker that last picked the job up.
    worker_id: Mapped[str | None] = mapped_column(String, nullable=True)
    attempt_count: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    timeout_seconds: Mapped[int] = mapped_column(Integer, default=300, server_default="300")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class ProvisioningJobEvent(Base):
    __tablename__ = "provisioning_job_events"
    __table_args__ = (
        Index("ix_provisioning_job_events_job_created", "job_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(String, ForeignKey("provisioning_jobs.id", ondelete="CASCADE"))
    status: Mapped[str] = mapped_column(String)
    progress_percentage: Mapped[int] = mapped_column(Integer, default=0)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    worker_id: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class TenantOwnerSeed(Base):
    __tablename__ = "tenant_owner_seeds"

    # Control-plane copy of the owner's credentials, read only while seeding the tenant database.
    tenant_id: Mapped[str] = mapped_column(String, ForeignKey("agencies.id"), primary_key=True)
    owner_user_id: Mapped[str] = mapped_column(String)
    email: Mapped[str] = mapped_column(String)
    password_hash: Mapped[str] = mapped_column(String)
    full_name: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class TenantSchemaCapability(Base):
    __tablename__ = "tenant_schema_capabilities"

    tenant_id: Mapped[str] = mapped_column(String, ForeignKey("agencies.id"), primary_key=True)
    schema_revision: Mapped[str | None] = mapped_column(String, nullable=True)
    capabilities: Mapped[list[str]] = mapped_column(JSONB, default=list)
    computed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class LoginAttempt(Base):
    __tablename__ = "login_attempts"
    __table_args__ = (
        Index("ix_login_attempts_scope_email_created", "scope", "email", "created_at"),
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    # Tenant database name, or "platform" for control-plane identities.
    scope: Mapped[str] = mapped_column(String)
    user_id: Mapped[str | None] = mapped_column(String, nullable=True)
    email: Mapped[str] = mapped_column(String)
    succeeded: Mapped[bool] = mapped_column(Boolean)
    reason: Mapped[str | None] = mapped_column(String, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String, nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
