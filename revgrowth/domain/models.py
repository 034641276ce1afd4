from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# JSONB on Postgres, plain JSON elsewhere so the schema also builds on sqlite.
JSONType = JSON().with_variant(JSONB(), "postgresql")
# Autoincrement ids need INTEGER PRIMARY KEY on sqlite.
BigIntId = BigInteger().with_variant(Integer(), "sqlite")
Money = Numeric(14, 2)
Rate = Numeric(5, 2)


def _new_id() -> str:
    return uuid4().hex


class Base(DeclarativeBase):
    pass


class Tenant(Base):
    __tablename__ = "tenants"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String)
    slug: Mapped[str] = mapped_column(String, unique=True)
    subscription_status: Mapped[str] = mapped_column(String, default="active")
    # Plan type seeds the monthly AI credit allowance.
    plan_type: Mapped[str] = mapped_column(String, default="free")
    # IANA timezone name; billing periods roll over at local midnight when set.
    timezone: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Account(Base):
    __tablename__ = "accounts"
    __table_args__ = (
        Index("ix_accounts_tenant_enrollment_status", "tenant_id", "enrollment_status"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String, ForeignKey("tenants.id"), index=True)
    external_id: Mapped[str | None] = mapped_column(String, nullable=True)
    name: Mapped[str] = mapped_column(String)
    segment: Mapped[str | None] = mapped_column(String, nullable=True)
    region: Mapped[str | None] = mapped_column(String, nullable=True)
    assigned_tm: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, default="active")
    # Only the enrollment lifecycle manager writes the fields below.
    enrollment_status: Mapped[str] = mapped_column(String, default="discovered")
    enrolled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    graduated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    at_risk_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    at_risk_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class AccountMetrics(Base):
    __tablename__ = "account_metrics"
    __table_args__ = (
        Index("ix_account_metrics_account_computed", "account_id", "computed_at"),
    )

    # Recomputed by the external metrics job; read-only here.
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    account_id: Mapped[str] = mapped_column(String, ForeignKey("accounts.id"))
    last_12m_revenue: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"))
    last_3m_revenue: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"))
    category_count: Mapped[int] = mapped_column(Integer, default=0)
    category_penetration: Mapped[float] = mapped_column(Float, default=0.0)
    category_gap_pct: Mapped[float] = mapped_column(Float, default=0.0)
    revenue_potential: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"))
    category_gap_count: Mapped[int] = mapped_column(Integer, default=0)
    computed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (
        Index("ix_orders_account_order_date", "account_id", "order_date"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    account_id: Mapped[str] = mapped_column(String, ForeignKey("accounts.id"))
    order_date: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    total_amount: Mapped[Decimal] = mapped_column(Money)
    margin_amount: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    # Product category of the order; drives baseline and period category sets.
    category: Mapped[str | None] = mapped_column(String, nullable=True)


class ScoringWeights(Base):
    __tablename__ = "scoring_weights"
    __table_args__ = (
        Index(
            "ux_scoring_weights_tenant_active",
            "tenant_id",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    name: Mapped[str] = mapped_column(String, default="default")
    gap_size_weight: Mapped[float] = mapped_column(Float)
    revenue_potential_weight: Mapped[float] = mapped_column(Float)
    category_count_weight: Mapped[float] = mapped_column(Float)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Inactive rows are retained as weight history.
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    updated_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class ProgramAccount(Base):
    __tablename__ = "program_accounts"
    __table_args__ = (
        # Storage-level guard: at most one non-graduated enrollment per account.
        Index(
            "ux_program_accounts_account_open",
            "account_id",
            unique=True,
            postgresql_where=text("status <> 'graduated'"),
            sqlite_where=text("status <> 'graduated'"),
        ),
        Index("ix_program_accounts_tenant_status", "tenant_id", "status"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    account_id: Mapped[str] = mapped_column(String, ForeignKey("accounts.id"))
    enrolled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    enrolled_by: Mapped[str | None] = mapped_column(String, nullable=True)
    # Baseline is frozen at enrollment and never recomputed.
    baseline_start: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    baseline_end: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    baseline_revenue: Mapped[Decimal] = mapped_column(Money)
    baseline_categories: Mapped[list[str]] = mapped_column(JSONType, default=list)
    share_rate: Mapped[Decimal] = mapped_column(Rate)
    status: Mapped[str] = mapped_column(String, default="active")
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    target_penetration: Mapped[float | None] = mapped_column(Float, nullable=True)
    target_incremental_revenue: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    target_duration_months: Mapped[int | None] = mapped_column(Integer, nullable=True)
    graduation_criteria: Mapped[str] = mapped_column(String, default="any")
    paused_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Graduation results are written exactly once.
    graduated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    graduation_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    graduation_revenue: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    graduation_penetration: Mapped[float | None] = mapped_column(Float, nullable=True)
    graduation_met_targets: Mapped[list[str] | None] = mapped_column(JSONType, nullable=True)
    enrollment_duration_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    incremental_revenue: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    categories_at_enrollment: Mapped[int | None] = mapped_column(Integer, nullable=True)
    categories_achieved: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class ProgramRevenueSnapshot(Base):
    __tablename__ = "program_revenue_snapshots"
    __table_args__ = (
        UniqueConstraint(
            "program_account_id",
            "period_start",
            "period_end",
            name="uq_program_revenue_snapshots_period",
        ),
        # Each chain position is taken once per enrollment.
        UniqueConstraint("program_account_id", "sequence", name="uq_program_revenue_snapshots_sequence"),
    )

    # Append-only; rows are never updated after insertion.
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    program_account_id: Mapped[str] = mapped_column(
        String, ForeignKey("program_accounts.id"), index=True
    )
    # 1-based position in the enrollment's snapshot chain, in recording order.
    sequence: Mapped[int] = mapped_column(Integer)
    period_start: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    period_end: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    period_revenue: Mapped[Decimal] = mapped_column(Money)
    period_categories: Mapped[list[str]] = mapped_column(JSONType, default=list)
    baseline_comparison: Mapped[Decimal] = mapped_column(Money)
    incremental_revenue: Mapped[Decimal] = mapped_column(Money)
    cumulative_incremental_revenue: Mapped[Decimal] = mapped_column(Money)
    fee_amount: Mapped[Decimal] = mapped_column(Money)
    fee_breakdown: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class RevShareTier(Base):
    __tablename__ = "rev_share_tiers"
    __table_args__ = (
        Index("ix_rev_share_tiers_tenant_active", "tenant_id", "is_active"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String)
    min_revenue: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"))
    # Null upper bound means the tier is unbounded.
    max_revenue: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    share_rate: Mapped[Decimal] = mapped_column(Rate, default=Decimal("15"))
    display_order: Mapped[int] = mapped_column(Integer, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class TenantCreditLedger(Base):
    __tablename__ = "tenant_credit_ledgers"
    __table_args__ = (
        UniqueConstraint("tenant_id", "billing_period", name="uq_tenant_credit_ledgers_period"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    # YYYY-MM in the tenant's timezone.
    billing_period: Mapped[str] = mapped_column(String(7))
    plan_type: Mapped[str] = mapped_column(String)
    # -1 encodes an unlimited allowance.
    total_allowance: Mapped[int] = mapped_column(Integer)
    credits_used: Mapped[int] = mapped_column(Integer, default=0)
    credits_remaining: Mapped[int] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class CreditReservation(Base):
    __tablename__ = "credit_reservations"
    __table_args__ = (
        Index("ix_credit_reservations_status_expires", "status", "expires_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    ledger_id: Mapped[str] = mapped_column(String, ForeignKey("tenant_credit_ledgers.id"))
    billing_period: Mapped[str] = mapped_column(String(7))
    action_type: Mapped[str] = mapped_column(String)
    cost: Mapped[int] = mapped_column(Integer)
    # pending -> committed | released
    status: Mapped[str] = mapped_column(String, default="pending")
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class CreditTransaction(Base):
    __tablename__ = "credit_transactions"
    __table_args__ = (
        Index("ix_credit_transactions_ledger_created", "ledger_id", "created_at"),
    )

    # Append-only audit row per metered action.
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    ledger_id: Mapped[str] = mapped_column(String, ForeignKey("tenant_credit_ledgers.id"))
    reservation_id: Mapped[str] = mapped_column(
        String, ForeignKey("credit_reservations.id"), unique=True
    )
    action_type: Mapped[str] = mapped_column(String)
    credits_used: Mapped[int] = mapped_column(Integer)
    account_id: Mapped[str | None] = mapped_column(String, nullable=True)
    user_id: Mapped[str | None] = mapped_column(String, nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class AuditEvent(Base):
    __tablename__ = "audit_events"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    # Null tenant_id marks system-wide events such as sweeper runs.
    tenant_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    actor_type: Mapped[str] = mapped_column(String)
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    actor_role: Mapped[str | None] = mapped_column(String, nullable=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    outcome: Mapped[str] = mapped_column(String)
    resource_type: Mapped[str | None] = mapped_column(String, nullable=True)
    resource_id: Mapped[str | None] = mapped_column(String, nullable=True)
    request_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, default=dict)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
