from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from revgrowth.core.errors import RevGrowthError
from revgrowth.domain.models import ProgramAccount
from revgrowth.domain.state import ProgramStatus
from revgrowth.services.audit import SYSTEM_ACTOR, AuditActor
from revgrowth.services.program.enrollment import EnrollmentLifecycleManager, get_lifecycle_manager
from revgrowth.services.program.snapshots import RevenueSnapshotAggregator, get_snapshot_aggregator


logger = logging.getLogger(__name__)


@dataclass
class CycleReport:
    period_start: datetime
    period_end: datetime
    recorded: int = 0
    replayed: int = 0
    graduated: int = 0
    failed: list[str] = field(default_factory=list)


def month_bounds(year_month: str) -> tuple[datetime, datetime]:
    # Parse YYYY-MM into a UTC [start, end) window.
    year, month = (int(part) for part in year_month.split("-", 1))
    if not 1 <= month <= 12:
        raise ValueError("year_month must be YYYY-MM")
    start = datetime(year, month, 1, tzinfo=timezone.utc)
    if month == 12:
        end = datetime(year + 1, 1, 1, tzinfo=timezone.utc)
    else:
        end = datetime(year, month + 1, 1, tzinfo=timezone.utc)
    return start, end


async def _active_programs(session: AsyncSession, tenant_id: str | None) -> list[tuple[str, str]]:
    stmt = select(ProgramAccount.id, ProgramAccount.tenant_id).where(
        ProgramAccount.status == ProgramStatus.ACTIVE.value
    )
    if tenant_id is not None:
        stmt = stmt.where(ProgramAccount.tenant_id == tenant_id)
    result = await session.execute(stmt.order_by(ProgramAccount.tenant_id, ProgramAccount.enrolled_at))
    return [(row[0], row[1]) for row in result.all()]


async def run_snapshot_cycle(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    period_start: datetime,
    period_end: datetime,
    tenant_id: str | None = None,
    aggregator: RevenueSnapshotAggregator | None = None,
    lifecycle: EnrollmentLifecycleManager | None = None,
    actor: AuditActor = SYSTEM_ACTOR,
) -> CycleReport:
    """Record one period's snapshot for every active enrollment, then evaluate graduation.

    Each enrollment runs in its own session so a failure on one account is
    logged and reported without rolling back the others.
    """
    aggregator = aggregator or get_snapshot_aggregator()
    lifecycle = lifecycle or get_lifecycle_manager()
    report = CycleReport(period_start=period_start, period_end=period_end)

    async with session_factory() as session:
        programs = await _active_programs(session, tenant_id)

    for program_id, program_tenant in programs:
        async with session_factory() as session:
            try:
                outcome = await aggregator.record_snapshot(
                    session,
                    tenant_id=program_tenant,
                    program_account_id=program_id,
                    period_start=period_start,
                    period_end=period_end,
                    actor=actor,
                )
                if outcome.created:
                    report.recorded += 1
                else:
                    report.replayed += 1
                graduation = await lifecycle.evaluate_graduation(
                    session,
                    tenant_id=program_tenant,
                    program_account_id=program_id,
                    actor=actor,
                )
                if graduation.graduated:
                    report.graduated += 1
            except RevGrowthError as exc:
                await session.rollback()
                report.failed.append(program_id)
                logger.warning(
                    "snapshot_cycle_program_failed program_account_id=%s code=%s message=%s",
                    program_id,
                    exc.code,
                    exc.message,
                )
            except SQLAlchemyError as exc:
                await session.rollback()
                report.failed.append(program_id)
                logger.warning(
                    "snapshot_cycle_program_failed program_account_id=%s code=DATABASE_ERROR",
                    program_id,
                    exc_info=exc,
                )
    logger.info(
        "snapshot_cycle_complete period_start=%s recorded=%s replayed=%s graduated=%s failed=%s",
        period_start.isoformat(),
        report.recorded,
        report.replayed,
        report.graduated,
        len(report.failed),
    )
    return report
