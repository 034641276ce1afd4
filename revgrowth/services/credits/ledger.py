from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
import logging
from typing import Any, Callable
from uuid import uuid4

from sqlalchemy import case, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from revgrowth.core.config import get_settings
from revgrowth.core.errors import (
    ReservationNotFoundError,
    ReservationStateError,
    TenantNotFoundError,
    ValidationError,
)
from revgrowth.core.timeutil import utc_now
from revgrowth.domain.models import CreditReservation, CreditTransaction, Tenant, TenantCreditLedger
from revgrowth.persistence.db import dialect_name
from revgrowth.persistence.guards import tenant_predicate
from revgrowth.services.audit import SYSTEM_ACTOR, AuditActor, record_actor_event
from revgrowth.services.credits.catalog import (
    ACTION_COSTS,
    UNLIMITED,
    action_cost,
    action_label,
    billing_period_for,
    is_unlimited,
    plan_allowance,
)


logger = logging.getLogger(__name__)

_INSERTS = {"postgresql": pg_insert, "sqlite": sqlite_insert}

RESERVATION_PENDING = "pending"
RESERVATION_COMMITTED = "committed"
RESERVATION_RELEASED = "released"


@dataclass(frozen=True)
class ReservationResult:
    # Denials are a normal business outcome; callers branch on ``allowed``.
    allowed: bool
    remaining: int
    cost: int
    total_allowance: int
    billing_period: str
    reservation_id: str | None = None
    expires_at: datetime | None = None

    @property
    def unlimited(self) -> bool:
        return is_unlimited(self.total_allowance)


@dataclass(frozen=True)
class ActionUsage:
    count: int
    credits_used: int
    label: str


@dataclass(frozen=True)
class CreditUsage:
    billing_period: str
    total_allowance: int
    credits_used: int
    credits_remaining: int
    credits_reserved: int
    unlimited: bool
    percent_used: int
    breakdown: dict[str, ActionUsage]
    recent_transactions: list[CreditTransaction] = field(default_factory=list)
    action_costs: dict[str, int] = field(default_factory=lambda: dict(ACTION_COSTS))


def _percent_used(used: int, allowance: int) -> int:
    if is_unlimited(allowance) or allowance <= 0:
        return 0
    return round(used / allowance * 100)


class CreditLedger:
    """Per-tenant, per-billing-period AI credit accounting.

    Spending is reserve-then-commit. ``check_and_reserve`` performs the only
    decrement, a single conditional UPDATE on the period row, so concurrent
    callers can never push ``credits_used`` past the allowance. The reservation
    is then either committed (one ``CreditTransaction``) or released, returning
    its credits. Pending reservations past their TTL are released by
    ``release_expired``.
    """

    def __init__(self, *, time_provider: Callable[[], datetime] | None = None) -> None:
        self._time_provider = time_provider or utc_now

    async def _get_tenant(self, session: AsyncSession, tenant_id: str) -> Tenant:
        result = await session.execute(select(Tenant).where(Tenant.id == tenant_id))
        tenant = result.scalar_one_or_none()
        if tenant is None:
            raise TenantNotFoundError("Tenant not found", details={"tenant_id": tenant_id})
        return tenant

    async def current_period(self, session: AsyncSession, tenant_id: str) -> str:
        tenant = await self._get_tenant(session, tenant_id)
        return billing_period_for(self._time_provider(), tenant.timezone)

    async def _load_ledger(
        self, session: AsyncSession, tenant_id: str, billing_period: str
    ) -> TenantCreditLedger | None:
        result = await session.execute(
            select(TenantCreditLedger)
            .where(
                tenant_predicate(TenantCreditLedger, tenant_id),
                TenantCreditLedger.billing_period == billing_period,
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_or_create_ledger(
        self,
        session: AsyncSession,
        tenant_id: str,
        *,
        billing_period: str | None = None,
    ) -> TenantCreditLedger:
        """Return the ledger row for the period, creating it from the plan on first use.

        Commits. A plan change mid-period re-seeds the allowance; usage already
        recorded is kept, so a downgrade below current usage leaves nothing remaining.
        """
        tenant = await self._get_tenant(session, tenant_id)
        period = billing_period or billing_period_for(self._time_provider(), tenant.timezone)
        allowance = plan_allowance(tenant.plan_type)
        insert = _INSERTS.get(dialect_name(session))
        if insert is None:
            raise RuntimeError(f"Unsupported database dialect for credit ledger: {dialect_name(session)}")
        try:
            # Lazy period rollover: concurrent first requests race on the unique key, not on app state.
            await session.execute(
                insert(TenantCreditLedger)
                .values(
                    id=uuid4().hex,
                    tenant_id=tenant_id,
                    billing_period=period,
                    plan_type=tenant.plan_type,
                    total_allowance=allowance,
                    credits_used=0,
                    credits_remaining=allowance,
                )
                .on_conflict_do_nothing(index_elements=["tenant_id", "billing_period"])
            )
            await session.execute(self._allowance_sync(tenant_id, period, tenant.plan_type, allowance))
            await session.commit()
        except SQLAlchemyError:
            await session.rollback()
            raise
        ledger = await self._load_ledger(session, tenant_id, period)
        if ledger is None:
            raise RuntimeError("credit ledger row missing after upsert")
        return ledger

    @staticmethod
    def _allowance_sync(tenant_id: str, period: str, plan_type: str, allowance: int):
        used = TenantCreditLedger.credits_used
        if is_unlimited(allowance):
            total_expr: Any = UNLIMITED
            remaining_expr: Any = UNLIMITED
        else:
            total_expr = case((used > allowance, used), else_=allowance)
            remaining_expr = case((used > allowance, 0), else_=allowance - used)
        return (
            update(TenantCreditLedger)
            .where(
                TenantCreditLedger.tenant_id == tenant_id,
                TenantCreditLedger.billing_period == period,
                TenantCreditLedger.plan_type != plan_type,
            )
            .values(plan_type=plan_type, total_allowance=total_expr, credits_remaining=remaining_expr)
            .execution_options(synchronize_session=False)
        )

    async def check_and_reserve(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        action_type: str,
        actor: AuditActor = SYSTEM_ACTOR,
    ) -> ReservationResult:
        cost = action_cost(action_type)
        ledger = await self.get_or_create_ledger(session, tenant_id)
        now = self._time_provider()
        ttl = timedelta(seconds=get_settings().credit_reservation_ttl_s)

        # Single conditional decrement; the WHERE clause is the allowance check.
        used = TenantCreditLedger.credits_used
        total = TenantCreditLedger.total_allowance
        stmt = (
            update(TenantCreditLedger)
            .where(
                TenantCreditLedger.id == ledger.id,
                (total == UNLIMITED) | (used + cost <= total),
            )
            .values(
                credits_used=used + cost,
                credits_remaining=case(
                    (total == UNLIMITED, UNLIMITED),
                    else_=TenantCreditLedger.credits_remaining - cost,
                ),
            )
            .returning(TenantCreditLedger.credits_remaining, TenantCreditLedger.total_allowance)
            .execution_options(synchronize_session=False)
        )
        try:
            row = (await session.execute(stmt)).first()
            if row is None:
                await record_actor_event(
                    session=session,
                    actor=actor,
                    tenant_id=tenant_id,
                    event_type="credits.denied",
                    outcome="failure",
                    resource_type="credit_ledger",
                    resource_id=ledger.id,
                    metadata={"action_type": action_type, "cost": cost},
                    error_code="CREDIT_LIMIT_EXCEEDED",
                )
                await session.commit()
                current = await self._load_ledger(session, tenant_id, ledger.billing_period)
                remaining = current.credits_remaining if current is not None else 0
                allowance = current.total_allowance if current is not None else ledger.total_allowance
                logger.info(
                    "credit_reserve_denied tenant_id=%s action=%s cost=%s remaining=%s",
                    tenant_id,
                    action_type,
                    cost,
                    remaining,
                )
                return ReservationResult(
                    allowed=False,
                    remaining=remaining,
                    cost=cost,
                    total_allowance=allowance,
                    billing_period=ledger.billing_period,
                )

            remaining, allowance = int(row[0]), int(row[1])
            reservation = CreditReservation(
                id=uuid4().hex,
                tenant_id=tenant_id,
                ledger_id=ledger.id,
                billing_period=ledger.billing_period,
                action_type=action_type,
                cost=cost,
                status=RESERVATION_PENDING,
                expires_at=now + ttl,
                created_at=now,
            )
            session.add(reservation)
            await record_actor_event(
                session=session,
                actor=actor,
                tenant_id=tenant_id,
                event_type="credits.reserved",
                resource_type="credit_reservation",
                resource_id=reservation.id,
                metadata={"action_type": action_type, "cost": cost, "remaining": remaining},
            )
            await session.commit()
        except SQLAlchemyError:
            await session.rollback()
            raise
        logger.info(
            "credit_reserved tenant_id=%s action=%s cost=%s remaining=%s reservation_id=%s",
            tenant_id,
            action_type,
            cost,
            remaining,
            reservation.id,
        )
        return ReservationResult(
            allowed=True,
            remaining=remaining,
            cost=cost,
            total_allowance=allowance,
            billing_period=ledger.billing_period,
            reservation_id=reservation.id,
            expires_at=reservation.expires_at,
        )

    async def _get_reservation(
        self, session: AsyncSession, tenant_id: str, reservation_id: str
    ) -> CreditReservation:
        result = await session.execute(
            select(CreditReservation)
            .where(
                tenant_predicate(CreditReservation, tenant_id),
                CreditReservation.id == reservation_id,
            )
            .execution_options(populate_existing=True)
        )
        reservation = result.scalar_one_or_none()
        if reservation is None:
            raise ReservationNotFoundError(
                "Credit reservation not found", details={"reservation_id": reservation_id}
            )
        return reservation

    async def _transaction_for(self, session: AsyncSession, reservation_id: str) -> CreditTransaction | None:
        result = await session.execute(
            select(CreditTransaction).where(CreditTransaction.reservation_id == reservation_id)
        )
        return result.scalar_one_or_none()

    async def _flip_status(
        self,
        session: AsyncSession,
        reservation_id: str,
        new_status: str,
        now: datetime,
    ) -> bool:
        # Compare-and-set on status so commit and release cannot both win.
        result = await session.execute(
            update(CreditReservation)
            .where(
                CreditReservation.id == reservation_id,
                CreditReservation.status == RESERVATION_PENDING,
            )
            .values(status=new_status, resolved_at=now)
            .returning(CreditReservation.id)
            .execution_options(synchronize_session=False)
        )
        return result.first() is not None

    async def commit(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        reservation_id: str,
        action_type: str | None = None,
        account_id: str | None = None,
        user_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        actor: AuditActor = SYSTEM_ACTOR,
    ) -> CreditTransaction:
        """Record the metered action for a reservation.

        Replaying the commit of an already committed reservation returns the
        original transaction, so callers may retry after an ambiguous result.
        """
        reservation = await self._get_reservation(session, tenant_id, reservation_id)
        if action_type is not None and action_type != reservation.action_type:
            raise ValidationError(
                "action_type does not match the reservation",
                details={"reserved": reservation.action_type, "requested": action_type},
            )
        now = self._time_provider()
        try:
            if not await self._flip_status(session, reservation_id, RESERVATION_COMMITTED, now):
                await session.rollback()
                reservation = await self._get_reservation(session, tenant_id, reservation_id)
                existing = await self._transaction_for(session, reservation_id)
                if reservation.status == RESERVATION_COMMITTED and existing is not None:
                    return existing
                raise ReservationStateError(
                    "Credit reservation is no longer pending",
                    details={"reservation_id": reservation_id, "status": reservation.status},
                )
            transaction = CreditTransaction(
                id=uuid4().hex,
                tenant_id=tenant_id,
                ledger_id=reservation.ledger_id,
                reservation_id=reservation.id,
                action_type=reservation.action_type,
                credits_used=reservation.cost,
                account_id=account_id,
                user_id=user_id,
                metadata_json=metadata or {},
                created_at=now,
            )
            session.add(transaction)
            await record_actor_event(
                session=session,
                actor=actor,
                tenant_id=tenant_id,
                event_type="credits.committed",
                resource_type="credit_transaction",
                resource_id=transaction.id,
                metadata={
                    "action_type": reservation.action_type,
                    "cost": reservation.cost,
                    "reservation_id": reservation.id,
                    "account_id": account_id,
                },
            )
            await session.commit()
        except SQLAlchemyError:
            await session.rollback()
            raise
        logger.info(
            "credit_committed tenant_id=%s action=%s cost=%s transaction_id=%s",
            tenant_id,
            transaction.action_type,
            transaction.credits_used,
            transaction.id,
        )
        return transaction

    async def release(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        reservation_id: str,
        reason: str = "caller",
        actor: AuditActor = SYSTEM_ACTOR,
    ) -> bool:
        """Return a pending reservation's credits. False when it was already released."""
        reservation = await self._get_reservation(session, tenant_id, reservation_id)
        now = self._time_provider()
        try:
            if not await self._flip_status(session, reservation_id, RESERVATION_RELEASED, now):
                await session.rollback()
                reservation = await self._get_reservation(session, tenant_id, reservation_id)
                if reservation.status == RESERVATION_RELEASED:
                    return False
                raise ReservationStateError(
                    "Committed reservations cannot be released",
                    details={"reservation_id": reservation_id, "status": reservation.status},
                )
            total = TenantCreditLedger.total_allowance
            await session.execute(
                update(TenantCreditLedger)
                .where(TenantCreditLedger.id == reservation.ledger_id)
                .values(
                    credits_used=TenantCreditLedger.credits_used - reservation.cost,
                    credits_remaining=case(
                        (total == UNLIMITED, UNLIMITED),
                        else_=TenantCreditLedger.credits_remaining + reservation.cost,
                    ),
                )
                .execution_options(synchronize_session=False)
            )
            await record_actor_event(
                session=session,
                actor=actor,
                tenant_id=tenant_id,
                event_type="credits.released",
                resource_type="credit_reservation",
                resource_id=reservation.id,
                metadata={"cost": reservation.cost, "reason": reason},
            )
            await session.commit()
        except SQLAlchemyError:
            await session.rollback()
            raise
        logger.info(
            "credit_released tenant_id=%s reservation_id=%s cost=%s reason=%s",
            tenant_id,
            reservation_id,
            reservation.cost,
            reason,
        )
        return True

    async def release_expired(self, session: AsyncSession, *, limit: int = 500) -> int:
        # Sweep pending reservations whose caller never committed or released them.
        now = self._time_provider()
        result = await session.execute(
            select(CreditReservation.id, CreditReservation.tenant_id)
            .where(
                CreditReservation.status == RESERVATION_PENDING,
                CreditReservation.expires_at <= now,
            )
            .order_by(CreditReservation.expires_at)
            .limit(limit)
        )
        expired = result.all()
        await session.commit()
        released = 0
        for reservation_id, tenant_id in expired:
            if await self.release(
                session,
                tenant_id=tenant_id,
                reservation_id=reservation_id,
                reason="expired",
            ):
                released += 1
        if released:
            logger.info("credit_reservations_expired released=%s", released)
        return released

    async def get_usage(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        billing_period: str | None = None,
    ) -> CreditUsage:
        tenant = await self._get_tenant(session, tenant_id)
        period = billing_period or billing_period_for(self._time_provider(), tenant.timezone)
        ledger = await self._load_ledger(session, tenant_id, period)
        if ledger is None:
            # Periods without activity report the plan allowance untouched.
            allowance = plan_allowance(tenant.plan_type)
            return CreditUsage(
                billing_period=period,
                total_allowance=allowance,
                credits_used=0,
                credits_remaining=allowance,
                credits_reserved=0,
                unlimited=is_unlimited(allowance),
                percent_used=0,
                breakdown={},
            )

        breakdown_rows = await session.execute(
            select(
                CreditTransaction.action_type,
                func.count(CreditTransaction.id),
                func.coalesce(func.sum(CreditTransaction.credits_used), 0),
            )
            .where(
                tenant_predicate(CreditTransaction, tenant_id),
                CreditTransaction.ledger_id == ledger.id,
            )
            .group_by(CreditTransaction.action_type)
        )
        breakdown = {
            action: ActionUsage(count=int(count), credits_used=int(credits), label=action_label(action))
            for action, count, credits in breakdown_rows.all()
        }
        reserved = await session.execute(
            select(func.coalesce(func.sum(CreditReservation.cost), 0)).where(
                CreditReservation.ledger_id == ledger.id,
                CreditReservation.status == RESERVATION_PENDING,
            )
        )
        recent = await session.execute(
            select(CreditTransaction)
            .where(
                tenant_predicate(CreditTransaction, tenant_id),
                CreditTransaction.ledger_id == ledger.id,
            )
            .order_by(CreditTransaction.created_at.desc())
            .limit(get_settings().credit_recent_transactions_limit)
        )
        return CreditUsage(
            billing_period=period,
            total_allowance=ledger.total_allowance,
            credits_used=ledger.credits_used,
            credits_remaining=ledger.credits_remaining,
            credits_reserved=int(reserved.scalar_one() or 0),
            unlimited=is_unlimited(ledger.total_allowance),
            percent_used=_percent_used(ledger.credits_used, ledger.total_allowance),
            breakdown=breakdown,
            recent_transactions=list(recent.scalars().all()),
        )


_credit_ledger: CreditLedger | None = None


def get_credit_ledger() -> CreditLedger:
    global _credit_ledger
    if _credit_ledger is None:
        _credit_ledger = CreditLedger()
    return _credit_ledger


def reset_credit_ledger() -> None:
    # Tests swap in a ledger with a pinned clock.
    global _credit_ledger
    _credit_ledger = None
