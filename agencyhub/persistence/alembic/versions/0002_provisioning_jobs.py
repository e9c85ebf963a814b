"""add provisioning jobs, events and owner seeds

Revision ID: 0002_provisioning_jobs
Revises: 0001_init
Create Date: 2026-09-30
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0002_provisioning_jobs"
down_revision = "0001_init"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "provisioning_jobs",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("idempotency_key", sa.String(), nullable=True),
        sa.Column("request_hash", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("tenant_id", sa.String(), sa.ForeignKey("agencies.id"), nullable=False),
        sa.Column("domain", sa.String(), nullable=False),
        sa.Column("agency_name", sa.String(), nullable=False),
        sa.Column("database_name", sa.String(), nullable=False),
        sa.Column("owner_email", sa.String(), nullable=False),
        sa.Column("subscription_plan", sa.String(), nullable=False),
        sa.Column("payload", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("result", postgresql.JSONB(), nullable=True),
        sa.Column("current_step", sa.String(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("error_code", sa.String(), nullable=True),
        sa.Column("error_details", postgresql.JSONB(), nullable=True),
        sa.Column("stack_trace", sa.Text(), nullable=True),
        sa.Column("progress_percentage", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("worker_id", sa.String(), nullable=True),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("timeout_seconds", sa.Integer(), nullable=False, server_default="300"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint(
            "progress_percentage BETWEEN 0 AND 100", name="ck_provisioning_jobs_progress"
        ),
    )
    op.create_index("ix_provisioning_jobs_tenant_id", "provisioning_jobs", ["tenant_id"])
    op.create_index("ix_provisioning_jobs_idempotency_key", "provisioning_jobs", ["idempotency_key"])
    op.create_index(
        "ix_provisioning_jobs_status_created", "provisioning_jobs", ["status", "created_at"]
    )
    # Failed, cancelled and timed-out jobs release their key for a fresh attempt.
    op.create_index(
        "uq_provisioning_jobs_idempotency_open",
        "provisioning_jobs",
        ["idempotency_key"],
        unique=True,
        postgresql_where=sa.text(
            "idempotency_key IS NOT NULL AND status NOT IN ('failed', 'cancelled', 'timeout')"
        ),
    )

    op.create_table(
        "provisioning_job_events",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column(
            "job_id",
            sa.String(),
            sa.ForeignKey("provisioning_jobs.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("progress_percentage", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("worker_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index(
        "ix_provisioning_job_events_job_created",
        "provisioning_job_events",
        ["job_id", "created_at"],
    )

    op.create_table(
        "tenant_owner_seeds",
        sa.Column("tenant_id", sa.String(), sa.ForeignKey("agencies.id"), primary_key=True),
        sa.Column("owner_user_id", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("password_hash", sa.String(), nullable=False),
        sa.Column("full_name", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )


def downgrade() -> None:
    op.drop_table("tenant_owner_seeds")
    op.drop_index("ix_provisioning_job_events_job_created", table_name="provisioning_job_events")
    op.drop_table("provisioning_job_events")
    op.drop_index("uq_provisioning_jobs_idempotency_open", table_name="provisioning_jobs")
    op.drop_index("ix_provisioning_jobs_status_created", table_name="provisioning_jobs")
    op.drop_index("ix_provisioning_jobs_idempotency_key", table_name="provisioning_jobs")
    op.drop_index("ix_provisioning_jobs_tenant_id", table_name="provisioning_jobs")
    op.drop_table("provisioning_jobs")
