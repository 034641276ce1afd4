from __future__ import annotations

from decimal import Decimal

from revgrowth.domain.state import GraduationCriteria
from revgrowth.services.program.graduation import (
    GraduationMetrics,
    GraduationTargets,
    evaluate_graduation,
    months_between,
)
from revgrowth.tests.utils.seed import utc


def _metrics(penetration: float = 40.0, revenue: str = "20000", months: int = 3) -> GraduationMetrics:
    return GraduationMetrics(
        current_penetration_pct=penetration,
        cumulative_incremental_revenue=Decimal(revenue),
        enrollment_duration_months=months,
    )


def _targets(criteria: GraduationCriteria) -> GraduationTargets:
    return GraduationTargets(
        target_penetration=60.0,
        target_incremental_revenue=Decimal("15000"),
        target_duration_months=12,
        criteria=criteria,
    )


def test_any_criteria_graduates_on_single_met_target() -> None:
    decision = evaluate_graduation(_metrics(), _targets(GraduationCriteria.ANY))
    assert decision.graduate is True
    assert decision.met == ("incremental_revenue",)
    assert set(decision.unmet) == {"penetration", "duration"}


def test_all_criteria_requires_every_target() -> None:
    decision = evaluate_graduation(_metrics(), _targets(GraduationCriteria.ALL))
    assert decision.graduate is False
    decision = evaluate_graduation(
        _metrics(penetration=65.0, months=12), _targets(GraduationCriteria.ALL)
    )
    assert decision.graduate is True
    assert decision.unmet == ()


def test_undefined_targets_are_excluded() -> None:
    targets = GraduationTargets(target_penetration=50.0, criteria=GraduationCriteria.ALL)
    decision = evaluate_graduation(_metrics(penetration=55.0), targets)
    assert decision.graduate is True
    assert [item.objective for item in decision.objectives] == ["penetration"]


def test_no_targets_never_graduates() -> None:
    for criteria in GraduationCriteria:
        decision = evaluate_graduation(_metrics(), GraduationTargets(criteria=criteria))
        assert decision.graduate is False
        assert decision.objectives == ()


def test_progress_is_capped_at_100() -> None:
    decision = evaluate_graduation(_metrics(revenue="45000"), _targets(GraduationCriteria.ANY))
    by_name = {item.objective: item for item in decision.objectives}
    assert by_name["incremental_revenue"].progress_pct == 100.0
    assert by_name["penetration"].progress_pct == 66.7
    assert by_name["duration"].progress_pct == 25.0


def test_months_between_counts_whole_30_day_blocks() -> None:
    assert months_between(utc(2025, 1, 1), utc(2025, 1, 30)) == 0
    assert months_between(utc(2025, 1, 1), utc(2025, 1, 31)) == 1
    assert months_between(utc(2025, 1, 1), utc(2026, 1, 1)) == 12
    assert months_between(utc(2025, 3, 1), utc(2025, 1, 1)) == 0
