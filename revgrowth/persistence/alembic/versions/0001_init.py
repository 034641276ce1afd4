"""init

Revision ID: 0001_init
Revises: 
Create Date: 2026-10-18 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None

MONEY = sa.Numeric(14, 2)
RATE = sa.Numeric(5, 2)


def upgrade() -> None:
    op.create_table(
        "tenants",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("slug", sa.String(), nullable=False, unique=True),
        sa.Column("subscription_status", sa.String(), nullable=False, server_default="active"),
        sa.Column("plan_type", sa.String(), nullable=False, server_default="free"),
        sa.Column("timezone", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "accounts",
        sa.Column("id", sa.String(), primary_key=True),
        # Avoid index=True here because we create explicit indexes below.
        sa.Column("tenant_id", sa.String(), sa.ForeignKey("tenants.id"), nullable=False),
        sa.Column("external_id", sa.String(), nullable=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("segment", sa.String(), nullable=True),
        sa.Column("region", sa.String(), nullable=True),
        sa.Column("assigned_tm", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="active"),
        sa.Column("enrollment_status", sa.String(), nullable=False, server_default="discovered"),
        sa.Column("enrolled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("graduated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("at_risk_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("at_risk_reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_accounts_tenant_id", "accounts", ["tenant_id"])
    op.create_index(
        "ix_accounts_tenant_enrollment_status", "accounts", ["tenant_id", "enrollment_status"]
    )

    op.create_table(
        "account_metrics",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("account_id", sa.String(), sa.ForeignKey("accounts.id"), nullable=False),
        sa.Column("last_12m_revenue", MONEY, nullable=False, server_default="0"),
        sa.Column("last_3m_revenue", MONEY, nullable=False, server_default="0"),
        sa.Column("category_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("category_penetration", sa.Float(), nullable=False, server_default="0"),
        sa.Column("category_gap_pct", sa.Float(), nullable=False, server_default="0"),
        sa.Column("revenue_potential", MONEY, nullable=False, server_default="0"),
        sa.Column("category_gap_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("computed_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_account_metrics_tenant_id", "account_metrics", ["tenant_id"])
    op.create_index(
        "ix_account_metrics_account_computed", "account_metrics", ["account_id", "computed_at"]
    )

    op.create_table(
        "orders",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("account_id", sa.String(), sa.ForeignKey("accounts.id"), nullable=False),
        sa.Column("order_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("total_amount", MONEY, nullable=False),
        sa.Column("margin_amount", MONEY, nullable=True),
        sa.Column("category", sa.String(), nullable=True),
    )
    op.create_index("ix_orders_tenant_id", "orders", ["tenant_id"])
    op.create_index("ix_orders_account_order_date", "orders", ["account_id", "order_date"])

    op.create_table(
        "scoring_weights",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False, server_default="default"),
        sa.Column("gap_size_weight", sa.Float(), nullable=False),
        sa.Column("revenue_potential_weight", sa.Float(), nullable=False),
        sa.Column("category_count_weight", sa.Float(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("updated_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_scoring_weights_tenant_id", "scoring_weights", ["tenant_id"])
    # One active weight set per tenant; older rows stay as history.
    op.create_index(
        "ux_scoring_weights_tenant_active",
        "scoring_weights",
        ["tenant_id"],
        unique=True,
        postgresql_where=sa.text("is_active"),
    )

    op.create_table(
        "program_accounts",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("account_id", sa.String(), sa.ForeignKey("accounts.id"), nullable=False),
        sa.Column("enrolled_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("enrolled_by", sa.String(), nullable=True),
        sa.Column("baseline_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("baseline_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("baseline_revenue", MONEY, nullable=False),
        sa.Column("baseline_categories", postgresql.JSONB(), nullable=False, server_default="[]"),
        sa.Column("share_rate", RATE, nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="active"),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("target_penetration", sa.Float(), nullable=True),
        sa.Column("target_incremental_revenue", MONEY, nullable=True),
        sa.Column("target_duration_months", sa.Integer(), nullable=True),
        sa.Column("graduation_criteria", sa.String(), nullable=False, server_default="any"),
        sa.Column("paused_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("graduated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("graduation_notes", sa.Text(), nullable=True),
        sa.Column("graduation_revenue", MONEY, nullable=True),
        sa.Column("graduation_penetration", sa.Float(), nullable=True),
        sa.Column("graduation_met_targets", postgresql.JSONB(), nullable=True),
        sa.Column("enrollment_duration_days", sa.Integer(), nullable=True),
        sa.Column("incremental_revenue", MONEY, nullable=True),
        sa.Column("categories_at_enrollment", sa.Integer(), nullable=True),
        sa.Column("categories_achieved", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_program_accounts_tenant_id", "program_accounts", ["tenant_id"])
    op.create_index(
        "ix_program_accounts_tenant_status", "program_accounts", ["tenant_id", "status"]
    )
    # At most one non-graduated enrollment per account, enforced by storage.
    op.create_index(
        "ux_program_accounts_account_open",
        "program_accounts",
        ["account_id"],
        unique=True,
        postgresql_where=sa.text("status <> 'graduated'"),
    )

    op.create_table(
        "program_revenue_snapshots",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column(
            "program_account_id",
            sa.String(),
            sa.ForeignKey("program_accounts.id"),
            nullable=False,
        ),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("period_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("period_revenue", MONEY, nullable=False),
        sa.Column("period_categories", postgresql.JSONB(), nullable=False, server_default="[]"),
        sa.Column("baseline_comparison", MONEY, nullable=False),
        sa.Column("incremental_revenue", MONEY, nullable=False),
        sa.Column("cumulative_incremental_revenue", MONEY, nullable=False),
        sa.Column("fee_amount", MONEY, nullable=False),
        sa.Column("fee_breakdown", postgresql.JSONB(), nullable=False, server_default="[]"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint(
            "program_account_id",
            "period_start",
            "period_end",
            name="uq_program_revenue_snapshots_period",
        ),
        sa.UniqueConstraint(
            "program_account_id",
            "sequence",
            name="uq_program_revenue_snapshots_sequence",
        ),
    )
    op.create_index(
        "ix_program_revenue_snapshots_tenant_id", "program_revenue_snapshots", ["tenant_id"]
    )
    op.create_index(
        "ix_program_revenue_snapshots_program_account_id",
        "program_revenue_snapshots",
        ["program_account_id"],
    )

    op.create_table(
        "rev_share_tiers",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("min_revenue", MONEY, nullable=False, server_default="0"),
        sa.Column("max_revenue", MONEY, nullable=True),
        sa.Column("share_rate", RATE, nullable=False, server_default="15"),
        sa.Column("display_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index(
        "ix_rev_share_tiers_tenant_active", "rev_share_tiers", ["tenant_id", "is_active"]
    )

    op.create_table(
        "tenant_credit_ledgers",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("billing_period", sa.String(7), nullable=False),
        sa.Column("plan_type", sa.String(), nullable=False),
        sa.Column("total_allowance", sa.Integer(), nullable=False),
        sa.Column("credits_used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("credits_remaining", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("tenant_id", "billing_period", name="uq_tenant_credit_ledgers_period"),
    )
    op.create_index("ix_tenant_credit_ledgers_tenant_id", "tenant_credit_ledgers", ["tenant_id"])

    op.create_table(
        "credit_reservations",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column(
            "ledger_id", sa.String(), sa.ForeignKey("tenant_credit_ledgers.id"), nullable=False
        ),
        sa.Column("billing_period", sa.String(7), nullable=False),
        sa.Column("action_type", sa.String(), nullable=False),
        sa.Column("cost", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_credit_reservations_tenant_id", "credit_reservations", ["tenant_id"])
    op.create_index(
        "ix_credit_reservations_status_expires", "credit_reservations", ["status", "expires_at"]
    )

    op.create_table(
        "credit_transactions",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column(
            "ledger_id", sa.String(), sa.ForeignKey("tenant_credit_ledgers.id"), nullable=False
        ),
        sa.Column(
            "reservation_id",
            sa.String(),
            sa.ForeignKey("credit_reservations.id"),
            nullable=True,
            unique=True,
        ),
        sa.Column("action_type", sa.String(), nullable=False),
        sa.Column("credits_used", sa.Integer(), nullable=False),
        sa.Column("account_id", sa.String(), nullable=True),
        sa.Column("user_id", sa.String(), nullable=True),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_credit_transactions_tenant_id", "credit_transactions", ["tenant_id"])
    op.create_index(
        "ix_credit_transactions_ledger_created", "credit_transactions", ["ledger_id", "created_at"]
    )

    op.create_table(
        "audit_events",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=True),
        sa.Column("actor_type", sa.String(), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("actor_role", sa.String(), nullable=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("outcome", sa.String(), nullable=False),
        sa.Column("resource_type", sa.String(), nullable=True),
        sa.Column("resource_id", sa.String(), nullable=True),
        sa.Column("request_id", sa.String(), nullable=True),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=True),
        sa.Column("error_code", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_audit_events_occurred_at", "audit_events", ["occurred_at"])
    op.create_index("ix_audit_events_tenant_id", "audit_events", ["tenant_id"])
    op.create_index("ix_audit_events_event_type", "audit_events", ["event_type"])
    op.create_index("ix_audit_events_request_id", "audit_events", ["request_id"])


def downgrade() -> None:
    op.drop_table("audit_events")
    op.drop_table("credit_transactions")
    op.drop_table("credit_reservations")
    op.drop_table("tenant_credit_ledgers")
    op.drop_table("rev_share_tiers")
    op.drop_table("program_revenue_snapshots")
    op.drop_index("ux_program_accounts_account_open", table_name="program_accounts")
    op.drop_table("program_accounts")
    op.drop_index("ux_scoring_weights_tenant_active", table_name="scoring_weights")
    op.drop_table("scoring_weights")
    op.drop_table("orders")
    op.drop_table("account_metrics")
    op.drop_table("accounts")
    op.drop_table("tenants")
