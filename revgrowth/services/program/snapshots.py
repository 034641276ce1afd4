from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
import logging
from typing import Callable
from uuid import uuid4

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from revgrowth.core.errors import (
    InvalidPeriodError,
    ProgramAccountNotFoundError,
    ProgramNotActiveError,
    SnapshotPeriodConflictError,
)
from revgrowth.core.timeutil import as_utc, utc_now
from revgrowth.domain.models import Account, Order, ProgramAccount, ProgramRevenueSnapshot
from revgrowth.domain.state import ProgramStatus
from revgrowth.persistence.guards import tenant_predicate
from revgrowth.services.audit import SYSTEM_ACTOR, AuditActor, record_actor_event
from revgrowth.services.fees import active_tier_specs, calculate_tiered_fee


logger = logging.getLogger(__name__)

_CENT = Decimal("0.01")
_SECONDS_PER_DAY = Decimal(86400)


@dataclass(frozen=True)
class RevenueWindow:
    revenue: Decimal
    categories: list[str]


@dataclass(frozen=True)
class SnapshotOutcome:
    snapshot: ProgramRevenueSnapshot
    # False when the period was already recorded and the stored row is returned as-is.
    created: bool


def _money(value: Decimal) -> Decimal:
    return value.quantize(_CENT, rounding=ROUND_HALF_UP)


def window_days(start: datetime, end: datetime) -> Decimal:
    delta: timedelta = as_utc(end) - as_utc(start)
    return Decimal(delta.days) + Decimal(delta.seconds) / _SECONDS_PER_DAY


def pro_rated_baseline(baseline_revenue: Decimal, period_days: Decimal, baseline_days: Decimal) -> Decimal:
    # Scale the frozen baseline to the measured period length.
    if baseline_days <= 0:
        return Decimal("0")
    return Decimal(baseline_revenue) * period_days / baseline_days


def incremental_over_baseline(period_revenue: Decimal, baseline_comparison: Decimal) -> Decimal:
    return max(Decimal("0"), Decimal(period_revenue) - baseline_comparison)


async def revenue_in_window(
    session: AsyncSession,
    *,
    tenant_id: str,
    account_id: str,
    start: datetime,
    end: datetime,
) -> RevenueWindow:
    """Sum order revenue and collect categories for orders in ``[start, end)``."""
    in_window = (
        tenant_predicate(Order, tenant_id),
        Order.account_id == account_id,
        Order.order_date >= start,
        Order.order_date < end,
    )
    total = await session.execute(
        select(func.coalesce(func.sum(Order.total_amount), 0)).where(*in_window)
    )
    categories = await session.execute(
        select(Order.category).where(*in_window, Order.category.is_not(None)).distinct()
    )
    return RevenueWindow(
        revenue=_money(Decimal(total.scalar_one() or 0)),
        categories=sorted(str(value) for value in categories.scalars().all()),
    )


async def get_program_account(
    session: AsyncSession, *, tenant_id: str, program_account_id: str
) -> ProgramAccount:
    result = await session.execute(
        select(ProgramAccount).where(
            tenant_predicate(ProgramAccount, tenant_id),
            ProgramAccount.id == program_account_id,
        )
    )
    program = result.scalar_one_or_none()
    if program is None:
        raise ProgramAccountNotFoundError(
            "Program account not found", details={"program_account_id": program_account_id}
        )
    return program


async def list_snapshots(
    session: AsyncSession, *, tenant_id: str, program_account_id: str
) -> list[ProgramRevenueSnapshot]:
    result = await session.execute(
        select(ProgramRevenueSnapshot)
        .where(
            tenant_predicate(ProgramRevenueSnapshot, tenant_id),
            ProgramRevenueSnapshot.program_account_id == program_account_id,
        )
        .order_by(ProgramRevenueSnapshot.period_start)
    )
    return list(result.scalars().all())


async def cumulative_incremental(
    session: AsyncSession, *, tenant_id: str, program_account_id: str
) -> Decimal:
    result = await session.execute(
        select(func.coalesce(func.sum(ProgramRevenueSnapshot.incremental_revenue), 0)).where(
            tenant_predicate(ProgramRevenueSnapshot, tenant_id),
            ProgramRevenueSnapshot.program_account_id == program_account_id,
        )
    )
    return _money(Decimal(result.scalar_one() or 0))


@dataclass(frozen=True)
class ProgramSummary:
    # One enrollment with its snapshot totals, for the program performance view.
    program: ProgramAccount
    account_name: str
    segment: str | None
    period_revenue: Decimal
    incremental_revenue: Decimal
    fee_amount: Decimal
    snapshot_count: int


async def list_programs(
    session: AsyncSession,
    *,
    tenant_id: str,
    status: ProgramStatus | str | None = None,
) -> list[ProgramSummary]:
    """List enrollments newest first with summed revenue, incremental revenue and fees."""
    totals = (
        select(
            ProgramRevenueSnapshot.program_account_id.label("program_account_id"),
            func.sum(ProgramRevenueSnapshot.period_revenue).label("period_revenue"),
            func.sum(ProgramRevenueSnapshot.incremental_revenue).label("incremental_revenue"),
            func.sum(ProgramRevenueSnapshot.fee_amount).label("fee_amount"),
            func.count(ProgramRevenueSnapshot.id).label("snapshot_count"),
        )
        .where(tenant_predicate(ProgramRevenueSnapshot, tenant_id))
        .group_by(ProgramRevenueSnapshot.program_account_id)
        .subquery()
    )
    stmt = (
        select(
            ProgramAccount,
            Account.name,
            Account.segment,
            totals.c.period_revenue,
            totals.c.incremental_revenue,
            totals.c.fee_amount,
            totals.c.snapshot_count,
        )
        .join(Account, Account.id == ProgramAccount.account_id)
        .outerjoin(totals, totals.c.program_account_id == ProgramAccount.id)
        .where(tenant_predicate(ProgramAccount, tenant_id))
        .order_by(ProgramAccount.enrolled_at.desc(), ProgramAccount.id)
    )
    if status is not None:
        stmt = stmt.where(ProgramAccount.status == ProgramStatus(status).value)
    result = await session.execute(stmt)
    return [
        ProgramSummary(
            program=program,
            account_name=name,
            segment=segment,
            period_revenue=_money(Decimal(str(period_revenue or 0))),
            incremental_revenue=_money(Decimal(str(incremental or 0))),
            fee_amount=_money(Decimal(str(fee or 0))),
            snapshot_count=int(count or 0),
        )
        for program, name, segment, period_revenue, incremental, fee, count in result.all()
    ]


async def _chain_head(session: AsyncSession, program_account_id: str) -> ProgramRevenueSnapshot | None:
    result = await session.execute(
        select(ProgramRevenueSnapshot)
        .where(ProgramRevenueSnapshot.program_account_id == program_account_id)
        .order_by(ProgramRevenueSnapshot.sequence.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


class RevenueSnapshotAggregator:
    """Measures enrolled accounts against their frozen baseline once per period.

    Incremental revenue on a snapshot is period-local. The fee is tiered on the
    enrollment's cumulative incremental revenue: each snapshot carries the
    marginal fee ``fee(cumulative after) - fee(cumulative before)``, so the
    fees across an enrollment sum to the tiered fee on its lifetime total.

    Snapshots of one enrollment form a chain keyed by ``sequence``. Each write
    builds on the current head; a concurrent writer that loses the race for the
    next position gets an ``IntegrityError``, rolls back and recomputes from the
    new head.
    """

    max_write_attempts = 5

    def __init__(self, *, time_provider: Callable[[], datetime] | None = None) -> None:
        self._time_provider = time_provider or utc_now

    async def _existing_for_period(
        self, session: AsyncSession, program_account_id: str, start: datetime, end: datetime
    ) -> ProgramRevenueSnapshot | None:
        result = await session.execute(
            select(ProgramRevenueSnapshot).where(
                ProgramRevenueSnapshot.program_account_id == program_account_id,
                ProgramRevenueSnapshot.period_start == start,
                ProgramRevenueSnapshot.period_end == end,
            )
        )
        return result.scalar_one_or_none()

    async def _overlapping(
        self, session: AsyncSession, program_account_id: str, start: datetime, end: datetime
    ) -> ProgramRevenueSnapshot | None:
        result = await session.execute(
            select(ProgramRevenueSnapshot)
            .where(
                ProgramRevenueSnapshot.program_account_id == program_account_id,
                ProgramRevenueSnapshot.period_start < end,
                ProgramRevenueSnapshot.period_end > start,
            )
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def _lock_program(self, session: AsyncSession, program_account_id: str) -> None:
        # Row lock on Postgres; sqlite ignores FOR UPDATE and relies on the sequence constraint.
        await session.execute(
            select(ProgramAccount.id).where(ProgramAccount.id == program_account_id).with_for_update()
        )

    async def record_snapshot(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        program_account_id: str,
        period_start: datetime,
        period_end: datetime,
        actor: AuditActor = SYSTEM_ACTOR,
    ) -> SnapshotOutcome:
        start, end = as_utc(period_start), as_utc(period_end)
        if end <= start:
            raise InvalidPeriodError("period_end must be after period_start")
        attempt = 1
        while True:
            try:
                return await self._record_once(
                    session,
                    tenant_id=tenant_id,
                    program_account_id=program_account_id,
                    start=start,
                    end=end,
                    actor=actor,
                )
            except IntegrityError:
                # Another writer took this chain position or period; rebuild from the new head.
                await session.rollback()
                if attempt >= self.max_write_attempts:
                    raise
                logger.info(
                    "revenue_snapshot_write_conflict program_account_id=%s attempt=%s",
                    program_account_id,
                    attempt,
                )
                attempt += 1

    async def _record_once(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        program_account_id: str,
        start: datetime,
        end: datetime,
        actor: AuditActor,
    ) -> SnapshotOutcome:
        program = await get_program_account(
            session, tenant_id=tenant_id, program_account_id=program_account_id
        )
        await self._lock_program(session, program.id)

        # Replays of a recorded period return the stored row untouched.
        existing = await self._existing_for_period(session, program.id, start, end)
        if existing is not None:
            logger.info(
                "revenue_snapshot_replayed program_account_id=%s snapshot_id=%s",
                program.id,
                existing.id,
            )
            await session.commit()
            return SnapshotOutcome(snapshot=existing, created=False)

        if program.status != ProgramStatus.ACTIVE.value:
            raise ProgramNotActiveError(
                "Snapshots are only recorded for active enrollments",
                details={"program_account_id": program.id, "status": program.status},
            )
        overlap = await self._overlapping(session, program.id, start, end)
        if overlap is not None:
            raise SnapshotPeriodConflictError(
                "Period overlaps an already recorded snapshot",
                details={
                    "snapshot_id": overlap.id,
                    "period_start": as_utc(overlap.period_start).isoformat(),
                    "period_end": as_utc(overlap.period_end).isoformat(),
                },
            )

        # Revenue before the baseline froze belongs to the baseline, not the program.
        baseline_end = as_utc(program.baseline_end)
        measured_start = max(start, baseline_end)
        if end <= measured_start:
            raise InvalidPeriodError(
                "Period ends before the enrollment started",
                details={"enrolled_at": baseline_end.isoformat()},
            )

        window = await revenue_in_window(
            session,
            tenant_id=tenant_id,
            account_id=program.account_id,
            start=measured_start,
            end=end,
        )
        baseline_comparison = _money(
            pro_rated_baseline(
                program.baseline_revenue,
                window_days(measured_start, end),
                window_days(program.baseline_start, program.baseline_end),
            )
        )
        incremental = _money(incremental_over_baseline(window.revenue, baseline_comparison))
        head = await _chain_head(session, program.id)
        prior_cumulative = (
            _money(Decimal(head.cumulative_incremental_revenue)) if head is not None else Decimal("0.00")
        )
        cumulative = prior_cumulative + incremental

        tiers = await active_tier_specs(session, tenant_id)
        fee_before = calculate_tiered_fee(prior_cumulative, tiers, fallback_rate=program.share_rate)
        fee_after = calculate_tiered_fee(cumulative, tiers, fallback_rate=program.share_rate)

        snapshot = ProgramRevenueSnapshot(
            id=uuid4().hex,
            tenant_id=tenant_id,
            program_account_id=program.id,
            sequence=(head.sequence if head is not None else 0) + 1,
            period_start=start,
            period_end=end,
            period_revenue=window.revenue,
            period_categories=window.categories,
            baseline_comparison=baseline_comparison,
            incremental_revenue=incremental,
            cumulative_incremental_revenue=cumulative,
            fee_amount=fee_after.total_fee - fee_before.total_fee,
            fee_breakdown=fee_after.breakdown_json(),
            created_at=self._time_provider(),
        )
        session.add(snapshot)
        await record_actor_event(
            session=session,
            actor=actor,
            tenant_id=tenant_id,
            event_type="program.snapshot.recorded",
            resource_type="program_revenue_snapshot",
            resource_id=snapshot.id,
            metadata={
                "program_account_id": program.id,
                "sequence": snapshot.sequence,
                "period_revenue": str(window.revenue),
                "incremental_revenue": str(incremental),
                "fee_amount": str(snapshot.fee_amount),
            },
        )
        try:
            await session.commit()
        except SQLAlchemyError:
            await session.rollback()
            raise
        logger.info(
            "revenue_snapshot_recorded program_account_id=%s sequence=%s period_start=%s incremental=%s fee=%s",
            program.id,
            snapshot.sequence,
            start.isoformat(),
            incremental,
            snapshot.fee_amount,
        )
        return SnapshotOutcome(snapshot=snapshot, created=True)


_aggregator: RevenueSnapshotAggregator | None = None


def get_snapshot_aggregator() -> RevenueSnapshotAggregator:
    global _aggregator
    if _aggregator is None:
        _aggregator = RevenueSnapshotAggregator()
    return _aggregator


def reset_snapshot_aggregator() -> None:
    global _aggregator
    _aggregator = None
