"""create subscription tables

Revision ID: 202610190001
Revises:
Create Date: 2026-10-19 00:00:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610190001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None

CAPTURED_PAYMENT_WHERE = sa.text("status = 'captured' AND gateway_payment_id IS NOT NULL")


def upgrade() -> None:
    op.create_table(
        "subscription",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("plan_code", sa.String(length=32), nullable=False),
        sa.Column("billing_cycle", sa.String(length=16), nullable=False, server_default="monthly"),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="created"),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_billing_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("trial_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("trial_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("total_amount", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("currency", sa.String(length=8), nullable=False, server_default="INR"),
        sa.Column("auto_renewal", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("cancel_at_period_end", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancellation_reason", sa.String(length=255), nullable=True),
        sa.Column("paused_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resume_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("pause_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed_payment_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_payment_attempt", sa.DateTime(timezone=True), nullable=True),
        sa.Column("gateway_subscription_id", sa.String(length=64), nullable=True),
        sa.Column("gateway_customer_id", sa.String(length=64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_subscription_user_status", "subscription", ["user_id", "status"])
    op.create_index("ix_subscription_user_created", "subscription", ["user_id", "created_at"])
    op.create_index("ix_subscription_gateway_subscription", "subscription", ["gateway_subscription_id"])
    op.create_index("ix_subscription_status_created", "subscription", ["status", "created_at"])

    op.create_table(
        "subscription_transaction",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("subscription_id", sa.Uuid(), nullable=False),
        sa.Column("transaction_type", sa.String(length=32), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("tax_amount", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("discount_amount", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("fee_amount", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("net_amount", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("currency", sa.String(length=8), nullable=False, server_default="INR"),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="created"),
        sa.Column("method", sa.String(length=64), nullable=True),
        sa.Column("method_details", sa.JSON(), nullable=True),
        sa.Column("gateway_payment_id", sa.String(length=64), nullable=True),
        sa.Column("gateway_order_id", sa.String(length=64), nullable=True),
        sa.Column("gateway_response", sa.JSON(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["subscription_id"], ["subscription.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_subscription_transaction_user_created", "subscription_transaction", ["user_id", "created_at"]
    )
    op.create_index(
        "ix_subscription_transaction_subscription", "subscription_transaction", ["subscription_id", "created_at"]
    )
    op.create_index("ix_subscription_transaction_payment", "subscription_transaction", ["gateway_payment_id"])
    op.create_index(
        "uq_subscription_transaction_captured_payment",
        "subscription_transaction",
        ["gateway_payment_id"],
        unique=True,
        postgresql_where=CAPTURED_PAYMENT_WHERE,
        sqlite_where=CAPTURED_PAYMENT_WHERE,
    )

    op.create_table(
        "subscription_credit",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("remaining_amount", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=8), nullable=False, server_default="INR"),
        sa.Column("source_subscription_id", sa.Uuid(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["source_subscription_id"], ["subscription.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_subscription_credit_user_active", "subscription_credit", ["user_id", "is_active"])
    op.create_index("ix_subscription_credit_expiry", "subscription_credit", ["is_active", "expires_at"])


def downgrade() -> None:
    op.drop_index("ix_subscription_credit_expiry", table_name="subscription_credit")
    op.drop_index("ix_subscription_credit_user_active", table_name="subscription_credit")
    op.drop_table("subscription_credit")

    op.drop_index("uq_subscription_transaction_captured_payment", table_name="subscription_transaction")
    op.drop_index("ix_subscription_transaction_payment", table_name="subscription_transaction")
    op.drop_index("ix_subscription_transaction_subscription", table_name="subscription_transaction")
    op.drop_index("ix_subscription_transaction_user_created", table_name="subscription_transaction")
    op.drop_table("subscription_transaction")

    op.drop_index("ix_subscription_status_created", table_name="subscription")
    op.drop_index("ix_subscription_gateway_subscription", table_name="subscription")
    op.drop_index("ix_subscription_user_created", table_name="subscription")
    op.drop_index("ix_subscription_user_status", table_name="subscription")
    op.drop_table("subscription")
