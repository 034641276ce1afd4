from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

from revgrowth.domain.models import Account, AccountMetrics, Order, Tenant
from revgrowth.persistence.db import SessionLocal


def utc(year: int, month: int, day: int, hour: int = 0) -> datetime:
    return datetime(year, month, day, hour, tzinfo=timezone.utc)


def new_id(prefix: str) -> str:
    # Unique ids keep tests isolated on a shared database.
    return f"{prefix}-{uuid4().hex}"


async def create_tenant(*, plan_type: str = "free", timezone_name: str | None = None) -> str:
    tenant_id = new_id("t")
    async with SessionLocal() as session:
        session.add(
            Tenant(
                id=tenant_id,
                name=f"Tenant {tenant_id}",
                slug=tenant_id,
                plan_type=plan_type,
                timezone=timezone_name,
            )
        )
        await session.commit()
    return tenant_id


async def set_plan(tenant_id: str, plan_type: str) -> None:
    async with SessionLocal() as session:
        tenant = await session.get(Tenant, tenant_id)
        assert tenant is not None
        tenant.plan_type = plan_type
        await session.commit()


async def create_account(tenant_id: str, *, name: str | None = None) -> str:
    account_id = new_id("a")
    async with SessionLocal() as session:
        session.add(Account(id=account_id, tenant_id=tenant_id, name=name or account_id))
        await session.commit()
    return account_id


async def add_orders(
    tenant_id: str,
    account_id: str,
    orders: list[tuple[datetime, str, str | None]],
) -> None:
    # Each order is (order_date, amount, category).
    async with SessionLocal() as session:
        for order_date, amount, category in orders:
            session.add(
                Order(
                    id=new_id("o"),
                    tenant_id=tenant_id,
                    account_id=account_id,
                    order_date=order_date,
                    total_amount=Decimal(amount),
                    category=category,
                )
            )
        await session.commit()


async def add_metrics(
    tenant_id: str,
    account_id: str,
    *,
    gap_pct: float = 0.0,
    revenue_potential: str = "0",
    category_gap_count: int = 0,
    penetration: float = 0.0,
    computed_at: datetime | None = None,
) -> None:
    async with SessionLocal() as session:
        session.add(
            AccountMetrics(
                id=new_id("m"),
                tenant_id=tenant_id,
                account_id=account_id,
                category_gap_pct=gap_pct,
                revenue_potential=Decimal(revenue_potential),
                category_gap_count=category_gap_count,
                category_penetration=penetration,
                computed_at=computed_at or datetime.now(timezone.utc),
            )
        )
        await session.commit()
