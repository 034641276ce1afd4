from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from revgrowth.core.config import get_settings
from revgrowth.core.timeutil import as_utc
from revgrowth.domain.state import GraduationCriteria


OBJECTIVE_PENETRATION = "penetration"
OBJECTIVE_INCREMENTAL_REVENUE = "incremental_revenue"
OBJECTIVE_DURATION = "duration"


@dataclass(frozen=True)
class GraduationMetrics:
    current_penetration_pct: float
    cumulative_incremental_revenue: Decimal
    enrollment_duration_months: int


@dataclass(frozen=True)
class GraduationTargets:
    # A None target is excluded from evaluation.
    target_penetration: float | None = None
    target_incremental_revenue: Decimal | None = None
    target_duration_months: int | None = None
    criteria: GraduationCriteria = GraduationCriteria.ANY


@dataclass(frozen=True)
class ObjectiveProgress:
    objective: str
    current: float
    target: float
    progress_pct: float
    met: bool


@dataclass(frozen=True)
class GraduationDecision:
    graduate: bool
    criteria: GraduationCriteria
    met: tuple[str, ...]
    unmet: tuple[str, ...]
    objectives: tuple[ObjectiveProgress, ...]


def months_between(start: datetime, end: datetime) -> int:
    # Whole months in fixed-length blocks, never negative.
    days = (as_utc(end) - as_utc(start)).days
    return max(0, days // get_settings().graduation_month_days)


def _objective(name: str, current: float, target: float) -> ObjectiveProgress:
    if target > 0:
        progress = min(current / target * 100.0, 100.0)
    else:
        progress = 100.0
    return ObjectiveProgress(
        objective=name,
        current=current,
        target=target,
        progress_pct=round(max(progress, 0.0), 1),
        met=current >= target,
    )


def objective_progress(
    metrics: GraduationMetrics, targets: GraduationTargets
) -> tuple[ObjectiveProgress, ...]:
    objectives: list[ObjectiveProgress] = []
    if targets.target_penetration is not None:
        objectives.append(
            _objective(
                OBJECTIVE_PENETRATION,
                float(metrics.current_penetration_pct),
                float(targets.target_penetration),
            )
        )
    if targets.target_incremental_revenue is not None:
        objectives.append(
            _objective(
                OBJECTIVE_INCREMENTAL_REVENUE,
                float(metrics.cumulative_incremental_revenue),
                float(targets.target_incremental_revenue),
            )
        )
    if targets.target_duration_months is not None:
        objectives.append(
            _objective(
                OBJECTIVE_DURATION,
                float(metrics.enrollment_duration_months),
                float(targets.target_duration_months),
            )
        )
    return tuple(objectives)


def evaluate_graduation(metrics: GraduationMetrics, targets: GraduationTargets) -> GraduationDecision:
    """Decide whether an enrollment has graduated.

    ``any`` graduates once one defined target is met, ``all`` only when every
    defined target is met. An enrollment with no defined targets never graduates.
    """
    objectives = objective_progress(metrics, targets)
    met = tuple(item.objective for item in objectives if item.met)
    unmet = tuple(item.objective for item in objectives if not item.met)
    criteria = GraduationCriteria(targets.criteria)
    if not objectives:
        graduate = False
    elif criteria is GraduationCriteria.ALL:
        graduate = not unmet
    else:
        graduate = bool(met)
    return GraduationDecision(
        graduate=graduate,
        criteria=criteria,
        met=met,
        unmet=unmet,
        objectives=objectives,
    )
