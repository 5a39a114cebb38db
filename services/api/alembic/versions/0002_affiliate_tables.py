"""referrals, payout batches, manual payouts

Revision ID: 0002_affiliate_tables
Revises: 0001_initial
Create Date: 2026-09-28
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

revision = "0002_affiliate_tables"
down_revision = "0001_initial"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "affiliate_payout_batches",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column(
            "referrer_id",
            sa.String(),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("status", sa.String(), nullable=False, server_default="PENDING"),
        sa.Column("total_amount_cents", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(), nullable=False, server_default="usd"),
        sa.Column("due_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "paid_by_user_id",
            sa.String(),
            sa.ForeignKey("users.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("created_by_user_id", sa.String(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_affiliate_payout_batches_referrer_id",
        "affiliate_payout_batches",
        ["referrer_id"],
        unique=False,
    )
    op.create_index(
        "ix_affiliate_payout_batches_status",
        "affiliate_payout_batches",
        ["status"],
        unique=False,
    )
    op.create_index(
        "ix_affiliate_payout_batches_due_at",
        "affiliate_payout_batches",
        ["due_at"],
        unique=False,
    )

    op.create_table(
        "referrals",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column(
            "referrer_id",
            sa.String(),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("referral_code", sa.String(), nullable=False),
        sa.Column("slug_used", sa.String(), nullable=True),
        sa.Column(
            "referred_user_id",
            sa.String(),
            sa.ForeignKey("users.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("referred_email", sa.String(), nullable=True),
        sa.Column("referred_name", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="PENDING"),
        sa.Column("source", sa.String(), nullable=True),
        sa.Column("utm_source", sa.String(), nullable=True),
        sa.Column("utm_medium", sa.String(), nullable=True),
        sa.Column("utm_campaign", sa.String(), nullable=True),
        sa.Column("clicked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("signed_up_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("trial_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("trial_ends_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("first_paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("qualified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("payable_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("commission_type", sa.String(), nullable=True),
        sa.Column("commission_value", sa.Numeric(12, 4), nullable=True),
        sa.Column("commission_amount_cents", sa.Integer(), nullable=True),
        sa.Column("currency", sa.String(), nullable=False, server_default="usd"),
        sa.Column("hold_days", sa.Integer(), nullable=True),
        sa.Column(
            "payout_batch_id",
            sa.String(),
            sa.ForeignKey("affiliate_payout_batches.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "paid_by_user_id",
            sa.String(),
            sa.ForeignKey("users.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metadata_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_referrals_referrer_id", "referrals", ["referrer_id"], unique=False
    )
    op.create_index(
        "ix_referrals_referral_code", "referrals", ["referral_code"], unique=False
    )
    op.create_index(
        "ix_referrals_referred_user_id", "referrals", ["referred_user_id"], unique=True
    )
    op.create_index("ix_referrals_status", "referrals", ["status"], unique=False)
    op.create_index("ix_referrals_payable_at", "referrals", ["payable_at"], unique=False)
    op.create_index(
        "ix_referrals_payout_batch_id", "referrals", ["payout_batch_id"], unique=False
    )

    op.create_table(
        "affiliate_manual_payouts",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column(
            "referrer_id",
            sa.String(),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(), nullable=False, server_default="usd"),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=False),
        sa.Column("frequency", sa.String(), nullable=True),
        sa.Column(
            "reminder_enabled",
            sa.Boolean(),
            nullable=False,
            server_default=sa.text("1"),
        ),
        sa.Column("next_run_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_by_user_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_affiliate_manual_payouts_referrer_id",
        "affiliate_manual_payouts",
        ["referrer_id"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index(
        "ix_affiliate_manual_payouts_referrer_id", table_name="affiliate_manual_payouts"
    )
    op.drop_table("affiliate_manual_payouts")
    for name in (
        "ix_referrals_payout_batch_id",
        "ix_referrals_payable_at",
        "ix_referrals_status",
        "ix_referrals_referred_user_id",
        "ix_referrals_referral_code",
        "ix_referrals_referrer_id",
    ):
        op.drop_index(name, table_name="referrals")
    op.drop_table("referrals")
    op.drop_index(
        "ix_affiliate_payout_batches_due_at", table_name="affiliate_payout_batches"
    )
    op.drop_index(
        "ix_affiliate_payout_batches_status", table_name="affiliate_payout_batches"
    )
    op.drop_index(
        "ix_affiliate_payout_batches_referrer_id", table_name="affiliate_payout_batches"
    )
    op.drop_table("affiliate_payout_batches")
