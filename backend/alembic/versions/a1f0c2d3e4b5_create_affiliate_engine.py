"""create affiliate engine tables

Revision ID: a1f0c2d3e4b5
Revises:
Create Date: 2026-10-19 00:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "a1f0c2d3e4b5"
down_revision = None
branch_labels = None
depends_on = None


JSON_TYPE = postgresql.JSONB().with_variant(sa.JSON(), "sqlite")
CENTS_TYPE = sa.BigInteger().with_variant(sa.Integer(), "sqlite")


def upgrade():
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("role", sa.String(), nullable=False, server_default="user"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "affiliates",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=9), nullable=False, server_default="PENDING"),
        sa.Column("code", sa.String(), nullable=False),
        sa.Column("parent_affiliate_id", sa.Integer(), nullable=True),
        sa.Column("payout_account_id", sa.String(), nullable=True),
        sa.Column("payout_account_ready", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("custom_user_commission_pct", sa.Numeric(5, 4), nullable=True),
        sa.Column("custom_business_commission_pct", sa.Numeric(5, 4), nullable=True),
        sa.Column("custom_parent_user_commission_pct", sa.Numeric(5, 4), nullable=True),
        sa.Column("custom_parent_business_commission_pct", sa.Numeric(5, 4), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["parent_affiliate_id"], ["affiliates.id"], ondelete="RESTRICT"),
        sa.UniqueConstraint("code", name="uq_affiliates_code"),
        sa.UniqueConstraint("user_id", name="uq_affiliates_user"),
        sa.CheckConstraint(
            "parent_affiliate_id IS NULL OR parent_affiliate_id <> id",
            name="ck_affiliates_not_own_parent",
        ),
    )
    op.create_index("ix_affiliates_status", "affiliates", ["status"])
    op.create_index("ix_affiliates_parent", "affiliates", ["parent_affiliate_id"])

    op.create_table(
        "affiliate_attributions",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("affiliate_id", sa.Integer(), nullable=False),
        sa.Column("type", sa.String(length=15), nullable=False),
        sa.Column("source", sa.String(length=10), nullable=False),
        sa.Column("ends_at", sa.DateTime(), nullable=False),
        sa.Column("created_by_user_id", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["affiliate_id"], ["affiliates.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["created_by_user_id"], ["users.id"], ondelete="SET NULL"),
    )
    op.create_index(
        "ix_affiliate_attributions_triple",
        "affiliate_attributions",
        ["user_id", "affiliate_id", "type", "ends_at"],
    )
    op.create_index("ix_affiliate_attributions_affiliate", "affiliate_attributions", ["affiliate_id"])

    op.create_table(
        "affiliate_promo_codes",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("affiliate_id", sa.Integer(), nullable=False),
        sa.Column("code", sa.String(), nullable=False),
        sa.Column("discount_share_pct", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("starts_at", sa.DateTime(), nullable=False),
        sa.Column("ends_at", sa.DateTime(), nullable=True),
        sa.Column("max_redemptions", sa.Integer(), nullable=True),
        sa.Column("redemption_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(length=8), nullable=False, server_default="ACTIVE"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["affiliate_id"], ["affiliates.id"], ondelete="RESTRICT"),
        sa.UniqueConstraint("code", name="uq_affiliate_promo_codes_code"),
        sa.CheckConstraint(
            "discount_share_pct >= 0 AND discount_share_pct <= 100",
            name="ck_affiliate_promo_codes_discount_range",
        ),
        sa.CheckConstraint("redemption_count >= 0", name="ck_affiliate_promo_codes_redemptions"),
    )
    op.create_index("ix_affiliate_promo_codes_affiliate", "affiliate_promo_codes", ["affiliate_id"])

    op.create_table(
        "affiliate_payouts",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("affiliate_id", sa.Integer(), nullable=False),
        sa.Column("amount_cents", CENTS_TYPE, nullable=False),
        sa.Column("currency", sa.String(), nullable=False),
        sa.Column("status", sa.String(length=6), nullable=False),
        sa.Column("transfer_id", sa.String(), nullable=True),
        sa.Column("idempotency_key", sa.String(), nullable=False),
        sa.Column("entry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("period_start", sa.DateTime(), nullable=False),
        sa.Column("period_end", sa.DateTime(), nullable=False),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["affiliate_id"], ["affiliates.id"], ondelete="RESTRICT"),
        sa.UniqueConstraint("idempotency_key", name="uq_affiliate_payouts_idempotency"),
        sa.CheckConstraint("amount_cents > 0", name="ck_affiliate_payouts_positive"),
    )
    op.create_index(
        "ix_affiliate_payouts_affiliate_period",
        "affiliate_payouts",
        ["affiliate_id", "status", "period_end"],
    )

    op.create_table(
        "affiliate_commission_ledger",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("affiliate_id", sa.Integer(), nullable=False),
        sa.Column("event_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(length=17), nullable=False),
        sa.Column("amount_cents", CENTS_TYPE, nullable=False),
        sa.Column("currency", sa.String(), nullable=False, server_default="eur"),
        sa.Column("status", sa.String(length=9), nullable=False, server_default="PENDING"),
        sa.Column("available_at", sa.DateTime(), nullable=True),
        sa.Column("attribution_id", sa.Integer(), nullable=True),
        sa.Column("payout_id", sa.Integer(), nullable=True),
        sa.Column("paid_at", sa.DateTime(), nullable=True),
        sa.Column("void_reason", sa.Text(), nullable=True),
        sa.Column("meta_json", JSON_TYPE, nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["affiliate_id"], ["affiliates.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["attribution_id"], ["affiliate_attributions.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["payout_id"], ["affiliate_payouts.id"], ondelete="RESTRICT"),
        sa.UniqueConstraint("event_id", name="uq_affiliate_commission_event"),
    )
    op.create_index("ix_affiliate_commission_affiliate", "affiliate_commission_ledger", ["affiliate_id"])
    op.create_index("ix_affiliate_commission_sweep", "affiliate_commission_ledger", ["status", "available_at"])
    op.create_index("ix_affiliate_commission_payout", "affiliate_commission_ledger", ["payout_id"])

    op.create_table(
        "job_locks",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("job_name", sa.String(), nullable=False),
        sa.Column("locked_by", sa.String(), nullable=True),
        sa.Column("locked_at", sa.DateTime(), nullable=True),
        sa.Column("expires_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("job_name", name="uq_job_locks_job_name"),
    )

    op.alter_column("users", "role", server_default=None)
    op.alter_column("affiliates", "status", server_default=None)
    op.alter_column("affiliates", "payout_account_ready", server_default=None)
    op.alter_column("affiliate_promo_codes", "status", server_default=None)
    op.alter_column("affiliate_commission_ledger", "currency", server_default=None)
    op.alter_column("affiliate_commission_ledger", "status", server_default=None)


def downgrade():
    op.drop_table("job_locks")
    op.drop_index("ix_affiliate_commission_payout", table_name="affiliate_commission_ledger")
    op.drop_index("ix_affiliate_commission_sweep", table_name="affiliate_commission_ledger")
    op.drop_index("ix_affiliate_commission_affiliate", table_name="affiliate_commission_ledger")
    op.drop_table("affiliate_commission_ledger")
    op.drop_index("ix_affiliate_payouts_affiliate_period", table_name="affiliate_payouts")
    op.drop_table("affiliate_payouts")
    op.drop_index("ix_affiliate_promo_codes_affiliate", table_name="affiliate_promo_codes")
    op.drop_table("affiliate_promo_codes")
    op.drop_index("ix_affiliate_attributions_affiliate", table_name="affiliate_attributions")
    op.drop_index("ix_affiliate_attributions_triple", table_name="affiliate_attributions")
    op.drop_table("affiliate_attributions")
    op.drop_index("ix_affiliates_parent", table_name="affiliates")
    op.drop_index("ix_affiliates_status", table_name="affiliates")
    op.drop_table("affiliates")
    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")
