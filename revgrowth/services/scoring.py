from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
import logging
from typing import Any
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from revgrowth.core.config import get_settings
from revgrowth.core.errors import (
    AccountMetricsNotFoundError,
    ConflictError,
    InvalidWeightError,
    InvalidWeightsError,
)
from revgrowth.domain.models import Account, AccountMetrics, ScoringWeights
from revgrowth.persistence.guards import tenant_predicate
from revgrowth.services.audit import SYSTEM_ACTOR, AuditActor, record_actor_event


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WeightSet:
    # Percent weights for the three normalized sub-scores.
    gap_size: float
    revenue_potential: float
    category_count: float

    @property
    def total(self) -> float:
        return self.gap_size + self.revenue_potential + self.category_count

    def as_dict(self) -> dict[str, float]:
        return {
            "gap_size_weight": self.gap_size,
            "revenue_potential_weight": self.revenue_potential,
            "category_count_weight": self.category_count,
        }


@dataclass(frozen=True)
class ScoringSignals:
    gap_size_pct: float
    revenue_potential: float
    category_gap_count: int


@dataclass(frozen=True)
class ScoringCeilings:
    revenue: float
    category: int


@dataclass(frozen=True)
class SubScores:
    gap_size: float
    revenue_potential: float
    category_count: float


@dataclass(frozen=True)
class ScoreResult:
    ok: bool
    score: int | None = None
    sub_scores: SubScores | None = None
    error_code: str | None = None
    error_message: str | None = None


@dataclass(frozen=True)
class ScoringWeightsView:
    weights: WeightSet
    is_default: bool
    id: str | None = None
    name: str = "default"
    description: str | None = None
    updated_by: str | None = None


@dataclass(frozen=True)
class AccountScore:
    account_id: str
    score: int
    weights_used: WeightSet
    sub_scores: SubScores


def default_weights() -> WeightSet:
    settings = get_settings()
    return WeightSet(
        gap_size=settings.scoring_default_gap_weight,
        revenue_potential=settings.scoring_default_revenue_weight,
        category_count=settings.scoring_default_category_weight,
    )


def default_ceilings() -> ScoringCeilings:
    settings = get_settings()
    return ScoringCeilings(
        revenue=settings.scoring_revenue_ceiling,
        category=settings.scoring_category_ceiling,
    )


def weights_problem(weights: WeightSet) -> InvalidWeightsError | None:
    """Return the error describing why the weights are unusable, or None."""
    for name, value in weights.as_dict().items():
        if value < 0:
            return InvalidWeightError(
                "Weights must be non-negative", details={"field": name, "value": value}
            )
    if abs(weights.total - 100) > get_settings().scoring_weight_tolerance:
        return InvalidWeightsError(
            f"Weights must sum to 100%. Current total: {weights.total:g}%",
            details={"total": weights.total},
        )
    return None


def weights_error(weights: WeightSet) -> str | None:
    problem = weights_problem(weights)
    return problem.message if problem is not None else None


def normalize_signals(signals: ScoringSignals, ceilings: ScoringCeilings) -> SubScores:
    # Each raw signal maps independently onto 0-100.
    gap = min(abs(signals.gap_size_pct), 100.0)
    revenue = 0.0
    if ceilings.revenue > 0:
        revenue = min(max(signals.revenue_potential, 0.0) / ceilings.revenue, 1.0) * 100.0
    category = 0.0
    if ceilings.category > 0:
        category = min(max(signals.category_gap_count, 0) / ceilings.category, 1.0) * 100.0
    return SubScores(gap_size=gap, revenue_potential=revenue, category_count=category)


def combine_sub_scores(sub_scores: SubScores, weights: WeightSet) -> int:
    raw = (
        sub_scores.gap_size * weights.gap_size / 100
        + sub_scores.revenue_potential * weights.revenue_potential / 100
        + sub_scores.category_count * weights.category_count / 100
    )
    return max(0, min(100, int(Decimal(str(raw)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))))


def compute_opportunity_score(
    signals: ScoringSignals,
    weights: WeightSet,
    ceilings: ScoringCeilings | None = None,
) -> ScoreResult:
    """Score an account 0-100 from its raw signals.

    Invalid weights yield a failed ``ScoreResult`` instead of raising, so the
    caller decides how to surface the problem.
    """
    problem = weights_problem(weights)
    if problem is not None:
        return ScoreResult(ok=False, error_code=problem.code, error_message=problem.message)
    sub_scores = normalize_signals(signals, ceilings or default_ceilings())
    return ScoreResult(ok=True, score=combine_sub_scores(sub_scores, weights), sub_scores=sub_scores)


def signals_from_metrics(metrics: AccountMetrics) -> ScoringSignals:
    return ScoringSignals(
        gap_size_pct=float(metrics.category_gap_pct or 0),
        revenue_potential=float(metrics.revenue_potential or 0),
        category_gap_count=int(metrics.category_gap_count or 0),
    )


async def _active_weights_row(session: AsyncSession, tenant_id: str) -> ScoringWeights | None:
    result = await session.execute(
        select(ScoringWeights).where(
            tenant_predicate(ScoringWeights, tenant_id),
            ScoringWeights.is_active.is_(True),
        )
    )
    return result.scalar_one_or_none()


async def get_scoring_weights(session: AsyncSession, tenant_id: str) -> ScoringWeightsView:
    # Fall back to defaults without persisting them so an unconfigured tenant stays unconfigured.
    row = await _active_weights_row(session, tenant_id)
    if row is None:
        return ScoringWeightsView(weights=default_weights(), is_default=True)
    return ScoringWeightsView(
        weights=WeightSet(
            gap_size=row.gap_size_weight,
            revenue_potential=row.revenue_potential_weight,
            category_count=row.category_count_weight,
        ),
        is_default=False,
        id=row.id,
        name=row.name,
        description=row.description,
        updated_by=row.updated_by,
    )


async def update_scoring_weights(
    session: AsyncSession,
    *,
    tenant_id: str,
    weights: WeightSet,
    description: str | None = None,
    actor: AuditActor = SYSTEM_ACTOR,
) -> ScoringWeightsView:
    # Reject before any write so an invalid set can never become active.
    problem = weights_problem(weights)
    if problem is not None:
        logger.info(
            "scoring_weights_rejected tenant_id=%s code=%s total=%s", tenant_id, problem.code, weights.total
        )
        raise problem

    previous = await _active_weights_row(session, tenant_id)
    if previous is not None:
        await session.execute(
            update(ScoringWeights)
            .where(ScoringWeights.id == previous.id)
            .values(is_active=False)
        )
    row = ScoringWeights(
        id=uuid4().hex,
        tenant_id=tenant_id,
        name="default",
        gap_size_weight=weights.gap_size,
        revenue_potential_weight=weights.revenue_potential,
        category_count_weight=weights.category_count,
        description=description,
        is_active=True,
        updated_by=actor.actor_id,
    )
    session.add(row)
    await record_actor_event(
        session=session,
        actor=actor,
        tenant_id=tenant_id,
        event_type="scoring.weights.updated",
        resource_type="scoring_weights",
        resource_id=row.id,
        metadata={
            **weights.as_dict(),
            "previous_id": previous.id if previous is not None else None,
        },
    )
    try:
        await session.commit()
    except IntegrityError as exc:
        # Another writer activated weights between our read and insert.
        await session.rollback()
        raise ConflictError("Concurrent scoring weights update; retry") from exc
    logger.info("scoring_weights_updated tenant_id=%s weights_id=%s", tenant_id, row.id)
    return await get_scoring_weights(session, tenant_id)


async def _latest_metrics(session: AsyncSession, tenant_id: str, account_id: str) -> AccountMetrics | None:
    result = await session.execute(
        select(AccountMetrics)
        .where(
            tenant_predicate(AccountMetrics, tenant_id),
            AccountMetrics.account_id == account_id,
        )
        .order_by(AccountMetrics.computed_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def compute_score(session: AsyncSession, *, tenant_id: str, account_id: str) -> AccountScore:
    metrics = await _latest_metrics(session, tenant_id, account_id)
    if metrics is None:
        raise AccountMetricsNotFoundError(
            "No metrics computed for account", details={"account_id": account_id}
        )
    view = await get_scoring_weights(session, tenant_id)
    result = compute_opportunity_score(signals_from_metrics(metrics), view.weights)
    if not result.ok:
        # Stored weights passed validation on write; reaching here means the row was edited out of band.
        logger.error("scoring_weights_invalid tenant_id=%s weights_id=%s", tenant_id, view.id)
        raise InvalidWeightsError(result.error_message or "Invalid weights")
    return AccountScore(
        account_id=account_id,
        score=result.score or 0,
        weights_used=view.weights,
        sub_scores=result.sub_scores,  # type: ignore[arg-type]
    )


async def rank_accounts(
    session: AsyncSession,
    *,
    tenant_id: str,
    limit: int = 50,
) -> list[dict[str, Any]]:
    # Score every account with metrics, newest metrics row per account wins.
    view = await get_scoring_weights(session, tenant_id)
    ceilings = default_ceilings()
    result = await session.execute(
        select(AccountMetrics, Account.name, Account.enrollment_status)
        .join(Account, Account.id == AccountMetrics.account_id)
        .where(tenant_predicate(AccountMetrics, tenant_id))
        .order_by(AccountMetrics.account_id, AccountMetrics.computed_at.desc())
    )
    ranked: list[dict[str, Any]] = []
    seen: set[str] = set()
    for metrics, name, enrollment_status in result.all():
        if metrics.account_id in seen:
            continue
        seen.add(metrics.account_id)
        scored = compute_opportunity_score(signals_from_metrics(metrics), view.weights, ceilings)
        if not scored.ok:
            raise InvalidWeightsError(scored.error_message or "Invalid weights")
        ranked.append(
            {
                "account_id": metrics.account_id,
                "name": name,
                "enrollment_status": enrollment_status,
                "score": scored.score,
            }
        )
    ranked.sort(key=lambda item: (-item["score"], item["name"]))
    return ranked[:limit]
