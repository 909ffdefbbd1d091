"""Billing tables: growers, plans, subscriptions, payments, audit log.

Revision ID: 0001
Revises: (none)
Create Date: 2026-10-17

coffee_growers and subscription_plans are owned by other modules; they
are created here only when missing so a fresh billing database works
on its own.
"""

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None

from alembic import op
import sqlalchemy as sa

LIVE_PREDICATE = sa.text("status IN ('active', 'suspended')")


def upgrade() -> None:
    bind = op.get_bind()
    existing = set(sa.inspect(bind).get_table_names())

    # ── Read-only references ─────────────────────────────────

    if "coffee_growers" not in existing:
        op.create_table(
            "coffee_growers",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column("first_name", sa.String(100), nullable=False),
            sa.Column("last_name", sa.String(100), nullable=False),
            sa.Column("email", sa.String(255)),
            sa.Column("identification_number", sa.String(50), unique=True),
            sa.Column("deleted_at", sa.DateTime()),
            sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
        )
        op.create_index("ix_coffee_growers_email", "coffee_growers", ["email"])

    if "subscription_plans" not in existing:
        op.create_table(
            "subscription_plans",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column("name", sa.String(100), nullable=False),
            sa.Column("description", sa.Text()),
            sa.Column("price", sa.Numeric(14, 2), nullable=False),
            sa.Column("currency", sa.String(3), server_default="COP"),
            sa.Column("billing_cycle", sa.String(20), nullable=False),
            sa.Column("features", sa.JSON()),
            sa.Column("limits_config", sa.JSON()),
            sa.Column("is_active", sa.Boolean(), server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
        )

    # ── Subscriptions ────────────────────────────────────────

    op.create_table(
        "subscriptions",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("coffee_grower_id", sa.String(36), sa.ForeignKey("coffee_growers.id"), nullable=False),
        sa.Column("plan_id", sa.String(36), sa.ForeignKey("subscription_plans.id"), nullable=False),
        sa.Column("status", sa.String(20), server_default="active"),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date()),
        sa.Column("next_billing_date", sa.Date()),
        sa.Column("auto_renew", sa.Boolean(), server_default=sa.true()),
        sa.Column("price", sa.Numeric(14, 2), nullable=False),
        sa.Column("currency", sa.String(3), server_default="COP"),
        sa.Column("billing_cycle", sa.String(20), nullable=False),
        sa.Column("cancellation_reason", sa.Text()),
        sa.Column("cancelled_at", sa.DateTime()),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index("ix_subscriptions_coffee_grower_id", "subscriptions", ["coffee_grower_id"])
    op.create_index("ix_subscriptions_plan_id", "subscriptions", ["plan_id"])
    op.create_index("ix_subscriptions_status", "subscriptions", ["status"])
    op.create_index("ix_subscriptions_end_date", "subscriptions", ["end_date"])
    op.create_index("ix_subscriptions_created_at", "subscriptions", ["created_at"])
    # One active/suspended subscription per grower
    op.create_index(
        "uq_subscriptions_one_live_per_grower",
        "subscriptions",
        ["coffee_grower_id"],
        unique=True,
        postgresql_where=LIVE_PREDICATE,
        sqlite_where=LIVE_PREDICATE,
    )

    # ── Payments ─────────────────────────────────────────────

    op.create_table(
        "payments",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("coffee_grower_id", sa.String(36), sa.ForeignKey("coffee_growers.id"), nullable=False),
        sa.Column("subscription_id", sa.String(36), sa.ForeignKey("subscriptions.id")),
        sa.Column("amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("currency", sa.String(3), server_default="COP"),
        sa.Column("payment_method", sa.String(30), nullable=False),
        sa.Column("payment_provider", sa.String(30), server_default="wompi"),
        sa.Column("provider_transaction_id", sa.String(100)),
        sa.Column("provider_reference", sa.String(100)),
        sa.Column("status", sa.String(20), server_default="pending"),
        sa.Column("payment_date", sa.DateTime()),
        sa.Column("failure_reason", sa.Text()),
        sa.Column("refund_amount", sa.Numeric(14, 2)),
        sa.Column("refund_date", sa.DateTime()),
        sa.Column("description", sa.Text()),
        sa.Column("metadata", sa.JSON()),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now()),
        sa.CheckConstraint("amount > 0", name="ck_payments_amount_positive"),
        sa.CheckConstraint(
            "refund_amount IS NULL OR (refund_amount > 0 AND refund_amount <= amount)",
            name="ck_payments_refund_bounds",
        ),
    )
    op.create_index("ix_payments_coffee_grower_id", "payments", ["coffee_grower_id"])
    op.create_index("ix_payments_subscription_id", "payments", ["subscription_id"])
    op.create_index("ix_payments_provider_transaction_id", "payments", ["provider_transaction_id"])
    op.create_index("ix_payments_provider_reference", "payments", ["provider_reference"])
    op.create_index("ix_payments_status", "payments", ["status"])
    op.create_index("ix_payments_created_at", "payments", ["created_at"])

    # ── Audit log ────────────────────────────────────────────

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("actor_id", sa.String(64), nullable=False),
        sa.Column("correlation_id", sa.String(64)),
        sa.Column("ip_address", sa.String(45)),
        sa.Column("action", sa.String(30), nullable=False),
        sa.Column("resource_type", sa.String(30), nullable=False),
        sa.Column("resource_id", sa.String(36), nullable=False),
        sa.Column("details", sa.JSON()),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_audit_logs_actor_id", "audit_logs", ["actor_id"])
    op.create_index("ix_audit_logs_action", "audit_logs", ["action"])
    op.create_index("ix_audit_logs_resource_type", "audit_logs", ["resource_type"])
    op.create_index("ix_audit_logs_resource_id", "audit_logs", ["resource_id"])
    op.create_index("ix_audit_logs_created_at", "audit_logs", ["created_at"])


def downgrade() -> None:
    op.drop_table("audit_logs")
    op.drop_table("payments")
    op.drop_index("uq_subscriptions_one_live_per_grower", table_name="subscriptions")
    op.drop_table("subscriptions")
