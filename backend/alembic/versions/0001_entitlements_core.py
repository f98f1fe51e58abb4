"""entitlements core: plans, entitlements, payment requests, usage counters

Revision ID: 0001_entitlements_core
Revises:
Create Date: 2026-10-17
"""

from alembic import op
import sqlalchemy as sa


revision = "0001_entitlements_core"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "accounts",
        sa.Column("id", sa.Uuid(), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("billing_email", sa.Text(), nullable=True),
        sa.Column("billing_metadata", sa.JSON(), nullable=False, server_default=sa.text("'{}'::json")),
        sa.Column("status", sa.Text(), nullable=False, server_default="active"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint("status in ('active','blocked','deleted')", name="ck_accounts_status"),
    )

    op.create_table(
        "plans",
        sa.Column("id", sa.Uuid(), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("slug", sa.Text(), nullable=False, unique=True),
        sa.Column("interval", sa.Text(), nullable=False, server_default="monthly"),
        sa.Column("price_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("currency", sa.Text(), nullable=False, server_default="usd"),
        sa.Column("features", sa.JSON(), nullable=False, server_default=sa.text("'{}'::json")),
        sa.Column("limits", sa.JSON(), nullable=False, server_default=sa.text("'{}'::json")),
        sa.Column("metadata", sa.JSON(), nullable=False, server_default=sa.text("'{}'::json")),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint("interval IN ('monthly','yearly','lifetime','one_time')", name="ck_plans_interval"),
        sa.CheckConstraint("price_cents >= 0", name="ck_plans_price_cents"),
    )
    op.create_index("ix_plans_active", "plans", ["active"])

    op.create_table(
        "entitlements",
        sa.Column("id", sa.Uuid(), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("entitleable_type", sa.Text(), nullable=False),
        sa.Column("entitleable_id", sa.Text(), nullable=False),
        sa.Column("plan_id", sa.Uuid(), sa.ForeignKey("plans.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("provider", sa.Text(), nullable=False),
        sa.Column("provider_ref", sa.Text(), nullable=True),
        sa.Column("status", sa.Text(), nullable=False, server_default="pending"),
        sa.Column("activated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoke_reason", sa.Text(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=False, server_default=sa.text("'{}'::json")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint("status IN ('pending','active','expired','revoked')", name="ck_entitlements_status"),
        sa.CheckConstraint(
            "revoke_reason IS NULL OR revoke_reason IN ('refund','admin','chargeback','non_renewal','upgrade')",
            name="ck_entitlements_revoke_reason",
        ),
        sa.CheckConstraint(
            "(status = 'revoked' AND revoke_reason IS NOT NULL) OR (status <> 'revoked' AND revoke_reason IS NULL)",
            name="ck_entitlements_revoke_reason_status",
        ),
    )
    op.create_index(
        "ix_entitlements_entitleable_status", "entitlements", ["entitleable_type", "entitleable_id", "status"]
    )
    op.create_index("ix_entitlements_provider_ref", "entitlements", ["provider_ref"])
    op.create_index("ix_entitlements_status_expires", "entitlements", ["status", "expires_at"])

    op.create_table(
        "payment_requests",
        sa.Column("id", sa.Uuid(), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("requestable_type", sa.Text(), nullable=False),
        sa.Column("requestable_id", sa.Text(), nullable=False),
        sa.Column("plan_id", sa.Uuid(), sa.ForeignKey("plans.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("provider_key", sa.Text(), nullable=False),
        sa.Column("status", sa.Text(), nullable=False, server_default="pending"),
        sa.Column("amount_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("currency", sa.Text(), nullable=False, server_default="usd"),
        sa.Column("provider_ref", sa.Text(), nullable=True),
        sa.Column("provider_data", sa.JSON(), nullable=False, server_default=sa.text("'{}'::json")),
        sa.Column(
            "entitlement_id", sa.Uuid(), sa.ForeignKey("entitlements.id", ondelete="SET NULL"), nullable=True
        ),
        sa.Column("resolved_by", sa.Text(), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("admin_note", sa.Text(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=False, server_default=sa.text("'{}'::json")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint(
            "status IN ('pending','processing','approved','rejected','expired','refunded')",
            name="ck_payment_requests_status",
        ),
        sa.CheckConstraint("amount_cents >= 0", name="ck_payment_requests_amount_cents"),
    )
    op.create_index(
        "uq_payment_requests_actionable_requestable_plan",
        "payment_requests",
        ["requestable_type", "requestable_id", "plan_id"],
        unique=True,
        postgresql_where=sa.text("status IN ('pending','processing')"),
    )
    op.create_index("ix_payment_requests_provider_ref", "payment_requests", ["provider_key", "provider_ref"])
    op.execute(
        "CREATE INDEX IF NOT EXISTS ix_payment_requests_status_created ON payment_requests (status, created_at DESC)"
    )
    op.create_index("ix_payment_requests_requestable", "payment_requests", ["requestable_type", "requestable_id"])

    op.create_table(
        "usage_counters",
        sa.Column("id", sa.Uuid(), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("countable_type", sa.Text(), nullable=False),
        sa.Column("countable_id", sa.Text(), nullable=False),
        sa.Column("metric", sa.Text(), nullable=False),
        sa.Column("period_key", sa.Text(), nullable=False),
        sa.Column("plan_id", sa.Uuid(), sa.ForeignKey("plans.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("current_value", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("limit", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint("current_value >= 0", name="ck_usage_counters_current_value"),
        sa.UniqueConstraint(
            "countable_type",
            "countable_id",
            "metric",
            "period_key",
            "plan_id",
            name="uq_usage_counters_bucket",
        ),
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS ix_usage_counters_metric_period ON usage_counters (metric, period_key DESC)"
    )


def downgrade():
    op.drop_index("ix_usage_counters_metric_period", table_name="usage_counters")
    op.drop_table("usage_counters")

    op.drop_index("ix_payment_requests_requestable", table_name="payment_requests")
    op.drop_index("ix_payment_requests_status_created", table_name="payment_requests")
    op.drop_index("ix_payment_requests_provider_ref", table_name="payment_requests")
    op.drop_index("uq_payment_requests_actionable_requestable_plan", table_name="payment_requests")
    op.drop_table("payment_requests")

    op.drop_index("ix_entitlements_status_expires", table_name="entitlements")
    op.drop_index("ix_entitlements_provider_ref", table_name="entitlements")
    op.drop_index("ix_entitlements_entitleable_status", table_name="entitlements")
    op.drop_table("entitlements")

    op.drop_index("ix_plans_active", table_name="plans")
    op.drop_table("plans")

    op.drop_table("accounts")
