from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from revgrowth.core.errors import ReservationStateError, ValidationError
from revgrowth.domain.models import AuditEvent, CreditTransaction, TenantCreditLedger
from revgrowth.persistence.db import SessionLocal
from revgrowth.services.credits import CreditLedger
from revgrowth.tests.utils.seed import create_tenant, set_plan, utc


_NOW = utc(2025, 6, 15, 12)


def _ledger(now=_NOW) -> CreditLedger:
    return CreditLedger(time_provider=lambda: now)


async def _ledger_row(tenant_id: str, period: str = "2025-06") -> TenantCreditLedger:
    async with SessionLocal() as session:
        result = await session.execute(
            select(TenantCreditLedger).where(
                TenantCreditLedger.tenant_id == tenant_id,
                TenantCreditLedger.billing_period == period,
            )
        )
        return result.scalar_one()


async def _reserve(ledger: CreditLedger, tenant_id: str, action_type: str):
    async with SessionLocal() as session:
        return await ledger.check_and_reserve(session, tenant_id=tenant_id, action_type=action_type)


@pytest.mark.asyncio
async def test_concurrent_reservations_never_exceed_allowance() -> None:
    tenant_id = await create_tenant(plan_type="free")
    ledger = _ledger()

    results = await asyncio.gather(
        _reserve(ledger, tenant_id, "icp_analysis"),
        _reserve(ledger, tenant_id, "icp_analysis"),
    )

    allowed = [result for result in results if result.allowed]
    denied = [result for result in results if not result.allowed]
    assert len(allowed) == 1
    assert len(denied) == 1
    assert denied[0].remaining == 10
    row = await _ledger_row(tenant_id)
    assert row.credits_used == 15
    assert row.credits_remaining == 10


@pytest.mark.asyncio
async def test_denial_is_a_result_and_is_audited() -> None:
    tenant_id = await create_tenant(plan_type="free")
    ledger = _ledger()
    first = await _reserve(ledger, tenant_id, "icp_analysis")
    second = await _reserve(ledger, tenant_id, "icp_analysis")

    assert first.allowed is True
    assert first.remaining == 10
    assert second.allowed is False
    assert second.reservation_id is None
    assert second.cost == 15
    assert second.total_allowance == 25
    async with SessionLocal() as session:
        denied = await session.execute(
            select(func.count(AuditEvent.id)).where(
                AuditEvent.tenant_id == tenant_id,
                AuditEvent.event_type == "credits.denied",
            )
        )
        assert denied.scalar_one() == 1


@pytest.mark.asyncio
async def test_enterprise_plan_is_unlimited_but_still_tracked() -> None:
    tenant_id = await create_tenant(plan_type="enterprise")
    ledger = _ledger()
    for _ in range(5):
        result = await _reserve(ledger, tenant_id, "icp_analysis")
        assert result.allowed is True
        assert result.remaining == -1
        assert result.unlimited is True
    row = await _ledger_row(tenant_id)
    assert row.total_allowance == -1
    assert row.credits_used == 75


@pytest.mark.asyncio
async def test_commit_records_one_transaction_and_replays() -> None:
    tenant_id = await create_tenant(plan_type="professional")
    ledger = _ledger()
    reservation = await _reserve(ledger, tenant_id, "generate_playbook")
    assert reservation.reservation_id is not None

    async with SessionLocal() as session:
        first = await ledger.commit(
            session,
            tenant_id=tenant_id,
            reservation_id=reservation.reservation_id,
            account_id="acct-1",
            user_id="user-1",
        )
    async with SessionLocal() as session:
        replay = await ledger.commit(
            session, tenant_id=tenant_id, reservation_id=reservation.reservation_id
        )

    assert replay.id == first.id
    assert first.credits_used == 10
    async with SessionLocal() as session:
        count = await session.execute(
            select(func.count(CreditTransaction.id)).where(
                CreditTransaction.reservation_id == reservation.reservation_id
            )
        )
        assert count.scalar_one() == 1
    row = await _ledger_row(tenant_id)
    assert row.credits_used == 10
    assert row.credits_remaining == 490


@pytest.mark.asyncio
async def test_commit_rejects_mismatched_action() -> None:
    tenant_id = await create_tenant(plan_type="professional")
    ledger = _ledger()
    reservation = await _reserve(ledger, tenant_id, "ask_anything")
    async with SessionLocal() as session:
        with pytest.raises(ValidationError):
            await ledger.commit(
                session,
                tenant_id=tenant_id,
                reservation_id=reservation.reservation_id,
                action_type="icp_analysis",
            )


@pytest.mark.asyncio
async def test_release_returns_credits_once() -> None:
    tenant_id = await create_tenant(plan_type="free")
    ledger = _ledger()
    reservation = await _reserve(ledger, tenant_id, "icp_analysis")

    async with SessionLocal() as session:
        assert await ledger.release(
            session, tenant_id=tenant_id, reservation_id=reservation.reservation_id
        ) is True
    async with SessionLocal() as session:
        assert await ledger.release(
            session, tenant_id=tenant_id, reservation_id=reservation.reservation_id
        ) is False
    row = await _ledger_row(tenant_id)
    assert row.credits_used == 0
    assert row.credits_remaining == 25

    async with SessionLocal() as session:
        with pytest.raises(ReservationStateError):
            await ledger.commit(
                session, tenant_id=tenant_id, reservation_id=reservation.reservation_id
            )


@pytest.mark.asyncio
async def test_committed_reservation_cannot_be_released() -> None:
    tenant_id = await create_tenant(plan_type="free")
    ledger = _ledger()
    reservation = await _reserve(ledger, tenant_id, "daily_briefing")
    async with SessionLocal() as session:
        await ledger.commit(session, tenant_id=tenant_id, reservation_id=reservation.reservation_id)
    async with SessionLocal() as session:
        with pytest.raises(ReservationStateError):
            await ledger.release(
                session, tenant_id=tenant_id, reservation_id=reservation.reservation_id
            )


@pytest.mark.asyncio
async def test_expired_reservations_are_swept() -> None:
    tenant_id = await create_tenant(plan_type="free")
    reservation = await _reserve(_ledger(), tenant_id, "icp_analysis")
    later = _ledger(_NOW + timedelta(minutes=10))

    async with SessionLocal() as session:
        released = await later.release_expired(session)

    assert released >= 1
    row = await _ledger_row(tenant_id)
    assert row.credits_used == 0
    async with SessionLocal() as session:
        with pytest.raises(ReservationStateError):
            await later.commit(session, tenant_id=tenant_id, reservation_id=reservation.reservation_id)


@pytest.mark.asyncio
async def test_plan_upgrade_mid_period_keeps_usage() -> None:
    tenant_id = await create_tenant(plan_type="free")
    ledger = _ledger()
    await _reserve(ledger, tenant_id, "icp_analysis")
    await _reserve(ledger, tenant_id, "daily_briefing")

    await set_plan(tenant_id, "professional")
    async with SessionLocal() as session:
        row = await ledger.get_or_create_ledger(session, tenant_id)

    assert row.plan_type == "professional"
    assert row.total_allowance == 500
    assert row.credits_used == 20
    assert row.credits_remaining == 480


@pytest.mark.asyncio
async def test_plan_downgrade_below_usage_leaves_nothing_remaining() -> None:
    tenant_id = await create_tenant(plan_type="professional")
    ledger = _ledger()
    await _reserve(ledger, tenant_id, "icp_analysis")
    await _reserve(ledger, tenant_id, "icp_analysis")

    await set_plan(tenant_id, "free")
    async with SessionLocal() as session:
        row = await ledger.get_or_create_ledger(session, tenant_id)

    assert row.total_allowance == 30
    assert row.credits_used == 30
    assert row.credits_remaining == 0
    denied = await _reserve(ledger, tenant_id, "ask_anything")
    assert denied.allowed is False


@pytest.mark.asyncio
async def test_usage_breakdown_groups_committed_actions() -> None:
    tenant_id = await create_tenant(plan_type="professional")
    ledger = _ledger()
    for action in ("ask_anything", "ask_anything", "generate_playbook"):
        reservation = await _reserve(ledger, tenant_id, action)
        async with SessionLocal() as session:
            await ledger.commit(session, tenant_id=tenant_id, reservation_id=reservation.reservation_id)
    pending = await _reserve(ledger, tenant_id, "email_composer")
    assert pending.allowed is True

    async with SessionLocal() as session:
        usage = await ledger.get_usage(session, tenant_id=tenant_id)

    assert usage.billing_period == "2025-06"
    # Pending reservations already count against the period.
    assert usage.credits_used == 18
    assert usage.credits_remaining == 482
    assert usage.credits_reserved == 4
    assert usage.percent_used == 4
    assert usage.breakdown["ask_anything"].count == 2
    assert usage.breakdown["ask_anything"].credits_used == 4
    assert usage.breakdown["generate_playbook"].label == "Playbook Generation"
    assert len(usage.recent_transactions) == 3


@pytest.mark.asyncio
async def test_usage_for_untouched_period_reports_plan_allowance() -> None:
    tenant_id = await create_tenant(plan_type="scale")
    async with SessionLocal() as session:
        usage = await _ledger().get_usage(session, tenant_id=tenant_id, billing_period="2024-01")
    assert usage.total_allowance == 2000
    assert usage.credits_used == 0
    assert usage.breakdown == {}
