from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
import logging
from typing import Callable
from uuid import uuid4

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from revgrowth.core.config import get_settings
from revgrowth.core.errors import (
    AccountNotFoundError,
    AlreadyEnrolledError,
    AlreadyGraduatedError,
)
from revgrowth.core.timeutil import as_utc, utc_now
from revgrowth.domain.models import Account, AccountMetrics, ProgramAccount, ProgramRevenueSnapshot
from revgrowth.domain.state import (
    EnrollmentStatus,
    GraduationCriteria,
    ProgramStatus,
    ensure_account_transition,
    ensure_program_transition,
)
from revgrowth.persistence.guards import tenant_predicate
from revgrowth.services.audit import SYSTEM_ACTOR, AuditActor, record_actor_event
from revgrowth.services.program.graduation import (
    GraduationDecision,
    GraduationMetrics,
    GraduationTargets,
    evaluate_graduation,
    months_between,
)
from revgrowth.services.program.snapshots import (
    cumulative_incremental,
    get_program_account,
    revenue_in_window,
)


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GraduationOutcome:
    program: ProgramAccount
    decision: GraduationDecision | None
    graduated: bool
    # Set when evaluation was skipped: already_graduated, paused, at_risk.
    skipped_reason: str | None = None


@dataclass(frozen=True)
class GraduationProgress:
    program: ProgramAccount
    metrics: GraduationMetrics
    decision: GraduationDecision


def default_targets() -> GraduationTargets:
    settings = get_settings()
    revenue = settings.default_target_incremental_revenue
    return GraduationTargets(
        target_penetration=settings.default_target_penetration,
        target_incremental_revenue=Decimal(str(revenue)) if revenue is not None else None,
        target_duration_months=settings.default_target_duration_months,
        criteria=GraduationCriteria(settings.default_graduation_criteria),
    )


def targets_for(program: ProgramAccount) -> GraduationTargets:
    return GraduationTargets(
        target_penetration=program.target_penetration,
        target_incremental_revenue=(
            Decimal(program.target_incremental_revenue)
            if program.target_incremental_revenue is not None
            else None
        ),
        target_duration_months=program.target_duration_months,
        criteria=GraduationCriteria(program.graduation_criteria),
    )


class EnrollmentLifecycleManager:
    """Owns an account's membership in the revenue growth program.

    All enrollment status writes go through the transition tables in
    ``revgrowth.domain.state``.
    """

    def __init__(self, *, time_provider: Callable[[], datetime] | None = None) -> None:
        self._time_provider = time_provider or utc_now

    async def _get_account(self, session: AsyncSession, tenant_id: str, account_id: str) -> Account:
        result = await session.execute(
            select(Account).where(tenant_predicate(Account, tenant_id), Account.id == account_id)
        )
        account = result.scalar_one_or_none()
        if account is None:
            raise AccountNotFoundError("Account not found", details={"account_id": account_id})
        return account

    async def open_program_for(
        self, session: AsyncSession, *, tenant_id: str, account_id: str
    ) -> ProgramAccount | None:
        result = await session.execute(
            select(ProgramAccount).where(
                tenant_predicate(ProgramAccount, tenant_id),
                ProgramAccount.account_id == account_id,
                ProgramAccount.status != ProgramStatus.GRADUATED.value,
            )
        )
        return result.scalar_one_or_none()

    async def enroll(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        account_id: str,
        targets: GraduationTargets | None = None,
        share_rate: Decimal | None = None,
        notes: str | None = None,
        actor: AuditActor = SYSTEM_ACTOR,
    ) -> ProgramAccount:
        account = await self._get_account(session, tenant_id, account_id)
        existing = await self.open_program_for(session, tenant_id=tenant_id, account_id=account_id)
        if existing is not None:
            raise AlreadyEnrolledError(
                "Account already has an active enrollment",
                details={"program_account_id": existing.id},
            )
        ensure_account_transition(account.enrollment_status, EnrollmentStatus.ENROLLED)

        settings = get_settings()
        now = self._time_provider()
        baseline_start = now - timedelta(days=settings.baseline_window_days)
        baseline = await revenue_in_window(
            session,
            tenant_id=tenant_id,
            account_id=account_id,
            start=baseline_start,
            end=now,
        )
        resolved_targets = targets or default_targets()
        program = ProgramAccount(
            id=uuid4().hex,
            tenant_id=tenant_id,
            account_id=account_id,
            enrolled_at=now,
            enrolled_by=actor.actor_id,
            baseline_start=baseline_start,
            baseline_end=now,
            baseline_revenue=baseline.revenue,
            baseline_categories=baseline.categories,
            share_rate=(
                share_rate
                if share_rate is not None
                else Decimal(str(settings.default_share_rate_pct))
            ),
            status=ProgramStatus.ACTIVE.value,
            notes=notes,
            target_penetration=resolved_targets.target_penetration,
            target_incremental_revenue=resolved_targets.target_incremental_revenue,
            target_duration_months=resolved_targets.target_duration_months,
            graduation_criteria=GraduationCriteria(resolved_targets.criteria).value,
        )
        session.add(program)
        account.enrollment_status = EnrollmentStatus.ENROLLED.value
        account.enrolled_at = now
        account.graduated_at = None
        account.at_risk_at = None
        account.at_risk_reason = None
        await record_actor_event(
            session=session,
            actor=actor,
            tenant_id=tenant_id,
            event_type="program.enrolled",
            resource_type="program_account",
            resource_id=program.id,
            metadata={
                "account_id": account_id,
                "baseline_revenue": str(baseline.revenue),
                "baseline_categories": baseline.categories,
            },
        )
        try:
            await session.commit()
        except IntegrityError as exc:
            # The partial unique index caught a concurrent enrollment of the same account.
            await session.rollback()
            logger.info("program_enroll_conflict tenant_id=%s account_id=%s", tenant_id, account_id)
            raise AlreadyEnrolledError(
                "Account already has an active enrollment",
                details={"account_id": account_id},
            ) from exc
        except SQLAlchemyError:
            await session.rollback()
            raise
        logger.info(
            "program_enrolled tenant_id=%s account_id=%s program_account_id=%s baseline_revenue=%s",
            tenant_id,
            account_id,
            program.id,
            baseline.revenue,
        )
        return program

    async def _current_metrics(
        self, session: AsyncSession, program: ProgramAccount, now: datetime
    ) -> GraduationMetrics:
        penetration = await session.execute(
            select(AccountMetrics.category_penetration)
            .where(
                tenant_predicate(AccountMetrics, program.tenant_id),
                AccountMetrics.account_id == program.account_id,
            )
            .order_by(AccountMetrics.computed_at.desc())
            .limit(1)
        )
        cumulative = await cumulative_incremental(
            session, tenant_id=program.tenant_id, program_account_id=program.id
        )
        return GraduationMetrics(
            current_penetration_pct=float(penetration.scalar_one_or_none() or 0.0),
            cumulative_incremental_revenue=cumulative,
            enrollment_duration_months=months_between(program.enrolled_at, now),
        )

    async def _write_graduation(
        self,
        session: AsyncSession,
        *,
        program: ProgramAccount,
        account: Account,
        metrics: GraduationMetrics,
        met: tuple[str, ...],
        notes: str | None,
        now: datetime,
        actor: AuditActor,
    ) -> ProgramAccount:
        ensure_program_transition(program.status, ProgramStatus.GRADUATED)
        ensure_account_transition(account.enrollment_status, EnrollmentStatus.GRADUATED)

        totals = await session.execute(
            select(func.coalesce(func.sum(ProgramRevenueSnapshot.period_revenue), 0)).where(
                ProgramRevenueSnapshot.program_account_id == program.id
            )
        )
        category_rows = await session.execute(
            select(ProgramRevenueSnapshot.period_categories).where(
                ProgramRevenueSnapshot.program_account_id == program.id
            )
        )
        baseline_categories = set(program.baseline_categories or [])
        reached: set[str] = set()
        for categories in category_rows.scalars().all():
            reached.update(categories or [])

        # Compare-and-set keeps the result fields write-once under concurrent evaluation.
        result = await session.execute(
            update(ProgramAccount)
            .where(
                ProgramAccount.id == program.id,
                ProgramAccount.status == ProgramStatus.ACTIVE.value,
            )
            .values(
                status=ProgramStatus.GRADUATED.value,
                graduated_at=now,
                graduation_notes=notes,
                graduation_revenue=Decimal(totals.scalar_one() or 0),
                graduation_penetration=metrics.current_penetration_pct,
                graduation_met_targets=list(met),
                enrollment_duration_days=max(0, (as_utc(now) - as_utc(program.enrolled_at)).days),
                incremental_revenue=metrics.cumulative_incremental_revenue,
                categories_at_enrollment=len(baseline_categories),
                categories_achieved=len(reached - baseline_categories),
            )
            .returning(ProgramAccount.id)
            .execution_options(synchronize_session=False)
        )
        if result.first() is None:
            await session.rollback()
            raise AlreadyGraduatedError(
                "Enrollment already graduated", details={"program_account_id": program.id}
            )
        account.enrollment_status = EnrollmentStatus.GRADUATED.value
        account.graduated_at = now
        await record_actor_event(
            session=session,
            actor=actor,
            tenant_id=program.tenant_id,
            event_type="program.graduated",
            resource_type="program_account",
            resource_id=program.id,
            metadata={
                "account_id": account.id,
                "met_targets": list(met),
                "incremental_revenue": str(metrics.cumulative_incremental_revenue),
                "manual": notes is not None,
            },
        )
        try:
            await session.commit()
        except SQLAlchemyError:
            await session.rollback()
            raise
        await session.refresh(program)
        logger.info(
            "program_graduated tenant_id=%s program_account_id=%s met=%s",
            program.tenant_id,
            program.id,
            ",".join(met) or "-",
        )
        return program

    async def evaluate_graduation(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        program_account_id: str,
        actor: AuditActor = SYSTEM_ACTOR,
    ) -> GraduationOutcome:
        program = await get_program_account(
            session, tenant_id=tenant_id, program_account_id=program_account_id
        )
        if program.status == ProgramStatus.GRADUATED.value:
            return GraduationOutcome(program=program, decision=None, graduated=False, skipped_reason="already_graduated")
        if program.status == ProgramStatus.PAUSED.value:
            return GraduationOutcome(program=program, decision=None, graduated=False, skipped_reason="paused")

        now = self._time_provider()
        metrics = await self._current_metrics(session, program, now)
        decision = evaluate_graduation(metrics, targets_for(program))
        if not decision.graduate:
            return GraduationOutcome(program=program, decision=decision, graduated=False)

        account = await self._get_account(session, tenant_id, program.account_id)
        if account.enrollment_status == EnrollmentStatus.AT_RISK.value:
            # At-risk accounts must recover before they can graduate.
            logger.info(
                "program_graduation_deferred_at_risk tenant_id=%s program_account_id=%s",
                tenant_id,
                program.id,
            )
            return GraduationOutcome(program=program, decision=decision, graduated=False, skipped_reason="at_risk")
        try:
            program = await self._write_graduation(
                session,
                program=program,
                account=account,
                metrics=metrics,
                met=decision.met,
                notes=None,
                now=now,
                actor=actor,
            )
        except AlreadyGraduatedError:
            program = await get_program_account(
                session, tenant_id=tenant_id, program_account_id=program_account_id
            )
            return GraduationOutcome(program=program, decision=decision, graduated=False, skipped_reason="already_graduated")
        return GraduationOutcome(program=program, decision=decision, graduated=True)

    async def graduate(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        program_account_id: str,
        notes: str | None = None,
        actor: AuditActor = SYSTEM_ACTOR,
    ) -> ProgramAccount:
        """Graduate an enrollment by hand regardless of its targets."""
        program = await get_program_account(
            session, tenant_id=tenant_id, program_account_id=program_account_id
        )
        if program.status == ProgramStatus.GRADUATED.value:
            raise AlreadyGraduatedError(
                "Enrollment already graduated", details={"program_account_id": program.id}
            )
        account = await self._get_account(session, tenant_id, program.account_id)
        now = self._time_provider()
        metrics = await self._current_metrics(session, program, now)
        decision = evaluate_graduation(metrics, targets_for(program))
        return await self._write_graduation(
            session,
            program=program,
            account=account,
            metrics=metrics,
            met=decision.met,
            notes=notes or "",
            now=now,
            actor=actor,
        )

    async def graduation_progress(
        self, session: AsyncSession, *, tenant_id: str, program_account_id: str
    ) -> GraduationProgress:
        program = await get_program_account(
            session, tenant_id=tenant_id, program_account_id=program_account_id
        )
        metrics = await self._current_metrics(session, program, self._time_provider())
        return GraduationProgress(
            program=program,
            metrics=metrics,
            decision=evaluate_graduation(metrics, targets_for(program)),
        )

    async def list_graduation_ready(
        self, session: AsyncSession, *, tenant_id: str
    ) -> list[GraduationProgress]:
        result = await session.execute(
            select(ProgramAccount)
            .join(Account, Account.id == ProgramAccount.account_id)
            .where(
                tenant_predicate(ProgramAccount, tenant_id),
                ProgramAccount.status == ProgramStatus.ACTIVE.value,
                Account.enrollment_status == EnrollmentStatus.ENROLLED.value,
            )
            .order_by(ProgramAccount.enrolled_at)
        )
        now = self._time_provider()
        ready: list[GraduationProgress] = []
        for program in result.scalars().all():
            metrics = await self._current_metrics(session, program, now)
            decision = evaluate_graduation(metrics, targets_for(program))
            if decision.graduate:
                ready.append(GraduationProgress(program=program, metrics=metrics, decision=decision))
        return ready

    async def _set_account_status(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        account_id: str,
        target: EnrollmentStatus,
        event_type: str,
        reason: str | None,
        actor: AuditActor,
    ) -> Account:
        account = await self._get_account(session, tenant_id, account_id)
        previous = account.enrollment_status
        ensure_account_transition(previous, target)
        if target is EnrollmentStatus.AT_RISK:
            account.at_risk_at = self._time_provider()
            account.at_risk_reason = reason
        else:
            account.at_risk_at = None
            account.at_risk_reason = None
        account.enrollment_status = target.value
        await record_actor_event(
            session=session,
            actor=actor,
            tenant_id=tenant_id,
            event_type=event_type,
            resource_type="account",
            resource_id=account.id,
            metadata={"from": previous, "to": target.value, "reason": reason},
        )
        await session.commit()
        logger.info(
            "account_enrollment_status_changed tenant_id=%s account_id=%s from=%s to=%s",
            tenant_id,
            account_id,
            previous,
            target.value,
        )
        return account

    async def flag_at_risk(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        account_id: str,
        reason: str,
        actor: AuditActor = SYSTEM_ACTOR,
    ) -> Account:
        # Visibility flag only; the enrollment keeps running.
        return await self._set_account_status(
            session,
            tenant_id=tenant_id,
            account_id=account_id,
            target=EnrollmentStatus.AT_RISK,
            event_type="account.at_risk",
            reason=reason,
            actor=actor,
        )

    async def recover(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        account_id: str,
        actor: AuditActor = SYSTEM_ACTOR,
    ) -> Account:
        return await self._set_account_status(
            session,
            tenant_id=tenant_id,
            account_id=account_id,
            target=EnrollmentStatus.ENROLLED,
            event_type="account.recovered",
            reason=None,
            actor=actor,
        )

    async def _set_program_status(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        program_account_id: str,
        target: ProgramStatus,
        event_type: str,
        actor: AuditActor,
    ) -> ProgramAccount:
        program = await get_program_account(
            session, tenant_id=tenant_id, program_account_id=program_account_id
        )
        previous = program.status
        ensure_program_transition(previous, target)
        program.status = target.value
        program.paused_at = self._time_provider() if target is ProgramStatus.PAUSED else None
        await record_actor_event(
            session=session,
            actor=actor,
            tenant_id=tenant_id,
            event_type=event_type,
            resource_type="program_account",
            resource_id=program.id,
            metadata={"from": previous, "to": target.value},
        )
        await session.commit()
        return program

    async def pause(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        program_account_id: str,
        actor: AuditActor = SYSTEM_ACTOR,
    ) -> ProgramAccount:
        return await self._set_program_status(
            session,
            tenant_id=tenant_id,
            program_account_id=program_account_id,
            target=ProgramStatus.PAUSED,
            event_type="program.paused",
            actor=actor,
        )

    async def resume(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        program_account_id: str,
        actor: AuditActor = SYSTEM_ACTOR,
    ) -> ProgramAccount:
        return await self._set_program_status(
            session,
            tenant_id=tenant_id,
            program_account_id=program_account_id,
            target=ProgramStatus.ACTIVE,
            event_type="program.resumed",
            actor=actor,
        )


_lifecycle_manager: EnrollmentLifecycleManager | None = None


def get_lifecycle_manager() -> EnrollmentLifecycleManager:
    global _lifecycle_manager
    if _lifecycle_manager is None:
        _lifecycle_manager = EnrollmentLifecycleManager()
    return _lifecycle_manager


def reset_lifecycle_manager() -> None:
    global _lifecycle_manager
    _lifecycle_manager = None
