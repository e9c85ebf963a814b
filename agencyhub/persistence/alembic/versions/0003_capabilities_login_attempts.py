"""add tenant schema capabilities and login attempts

Revision ID: 0003_capabilities_login_attempts
Revises: 0002_provisioning_jobs
Create Date: 2026-10-06
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0003_capabilities_login_attempts"
down_revision = "0002_provisioning_jobs"
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Replace per-login schema probing with a record written at migration time.
    op.create_table(
        "tenant_schema_capabilities",
        sa.Column("tenant_id", sa.String(), sa.ForeignKey("agencies.id"), primary_key=True),
        sa.Column("schema_revision", sa.String(), nullable=True),
        sa.Column(
            "capabilities", postgresql.JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")
        ),
        sa.Column("computed_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "login_attempts",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("scope", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=True),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("succeeded", sa.Boolean(), nullable=False),
        sa.Column("reason", sa.String(), nullable=True),
        sa.Column("ip_address", sa.String(), nullable=True),
        sa.Column("user_agent", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index(
        "ix_login_attempts_scope_email_created",
        "login_attempts",
        ["scope", "email", "created_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_login_attempts_scope_email_created", table_name="login_attempts")
    op.drop_table("login_attempts")
    op.drop_table("tenant_schema_capabilities")
