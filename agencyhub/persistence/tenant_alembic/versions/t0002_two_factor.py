"""add two-factor columns to tenant users

Revision ID: t0002_two_factor
Revises: t0001_identity
Create Date: 2026-10-06
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "t0002_two_factor"
down_revision = "t0001_identity"
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Tenants below this revision report no "two_factor" capability and log in without it.
    op.add_column(
        "users",
        sa.Column("two_factor_enabled", sa.Boolean(), nullable=False, server_default=sa.text("false")),
    )
    op.add_column("users", sa.Column("two_factor_secret", sa.String(), nullable=True))


def downgrade() -> None:
    op.drop_column("users", "two_factor_secret")
    op.drop_column("users", "two_factor_enabled")
