"""initial schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-09-28
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("email", sa.String(), unique=True, nullable=True),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("role", sa.String(), nullable=False, server_default="member"),
        sa.Column("referral_slug", sa.String(), nullable=True),
        sa.Column("plan_tier", sa.String(), nullable=True),
        sa.Column("plan_price_cents", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_users_referral_slug", "users", ["referral_slug"], unique=True
    )

    op.create_table(
        "keyed_snapshots",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("scope", sa.String(), nullable=False),
        sa.Column("snapshot_key", sa.String(), nullable=False),
        sa.Column("cache_key", sa.String(), nullable=True),
        sa.Column("payload_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint(
            "scope", "snapshot_key", name="uq_keyed_snapshots_scope_key"
        ),
    )


def downgrade() -> None:
    op.drop_table("keyed_snapshots")
    op.drop_index("ix_users_referral_slug", table_name="users")
    op.drop_table("users")
