from __future__ import annotations

from revgrowth.core.errors import InvalidWeightError
from revgrowth.services.scoring import (
    ScoringCeilings,
    ScoringSignals,
    WeightSet,
    compute_opportunity_score,
    normalize_signals,
    weights_error,
    weights_problem,
)


_CEILINGS = ScoringCeilings(revenue=100_000.0, category=10)
_DEFAULT = WeightSet(gap_size=40, revenue_potential=30, category_count=30)


def _signals(gap: float = 50.0, revenue: float = 50_000.0, categories: int = 5) -> ScoringSignals:
    return ScoringSignals(gap_size_pct=gap, revenue_potential=revenue, category_gap_count=categories)


def test_default_weights_score_midpoint_account() -> None:
    result = compute_opportunity_score(_signals(), _DEFAULT, _CEILINGS)
    assert result.ok is True
    assert result.score == 50
    assert result.sub_scores is not None
    assert result.sub_scores.revenue_potential == 50.0
    assert result.sub_scores.category_count == 50.0


def test_weights_over_100_are_rejected_with_total_in_message() -> None:
    result = compute_opportunity_score(
        _signals(), WeightSet(gap_size=45, revenue_potential=30, category_count=30), _CEILINGS
    )
    assert result.ok is False
    assert result.score is None
    assert result.error_code == "INVALID_TOTAL"
    assert result.error_message == "Weights must sum to 100%. Current total: 105%"


def test_weights_under_100_are_rejected() -> None:
    weights = WeightSet(gap_size=30, revenue_potential=30, category_count=30)
    assert weights_error(weights) == "Weights must sum to 100%. Current total: 90%"
    assert compute_opportunity_score(_signals(), weights, _CEILINGS).ok is False


def test_weights_within_tolerance_are_accepted() -> None:
    weights = WeightSet(gap_size=33.33, revenue_potential=33.33, category_count=33.34)
    assert weights_error(weights) is None
    assert compute_opportunity_score(_signals(), weights, _CEILINGS).ok is True


def test_negative_weight_is_rejected_even_when_total_is_100() -> None:
    weights = WeightSet(gap_size=-10, revenue_potential=60, category_count=50)
    assert weights_error(weights) == "Weights must be non-negative"
    problem = weights_problem(weights)
    assert isinstance(problem, InvalidWeightError)
    assert problem.code == "INVALID_WEIGHT"
    assert problem.details == {"field": "gap_size_weight", "value": -10}
    result = compute_opportunity_score(_signals(), weights, _CEILINGS)
    assert result.ok is False
    assert result.error_code == "INVALID_WEIGHT"


def test_total_problem_keeps_invalid_total_code() -> None:
    problem = weights_problem(WeightSet(gap_size=45, revenue_potential=30, category_count=30))
    assert problem is not None
    assert not isinstance(problem, InvalidWeightError)
    assert problem.code == "INVALID_TOTAL"
    assert problem.details == {"total": 105}


def test_score_is_monotonic_in_each_signal() -> None:
    base = compute_opportunity_score(_signals(), _DEFAULT, _CEILINGS).score
    assert compute_opportunity_score(_signals(gap=80), _DEFAULT, _CEILINGS).score >= base
    assert compute_opportunity_score(_signals(revenue=90_000), _DEFAULT, _CEILINGS).score >= base
    assert compute_opportunity_score(_signals(categories=9), _DEFAULT, _CEILINGS).score >= base
    assert compute_opportunity_score(_signals(gap=10), _DEFAULT, _CEILINGS).score <= base


def test_signals_beyond_ceiling_clamp_to_100() -> None:
    sub_scores = normalize_signals(_signals(gap=250, revenue=5_000_000, categories=40), _CEILINGS)
    assert sub_scores.gap_size == 100.0
    assert sub_scores.revenue_potential == 100.0
    assert sub_scores.category_count == 100.0
    result = compute_opportunity_score(_signals(gap=250, revenue=5_000_000, categories=40), _DEFAULT, _CEILINGS)
    assert result.score == 100


def test_zero_signals_score_zero() -> None:
    result = compute_opportunity_score(_signals(gap=0, revenue=0, categories=0), _DEFAULT, _CEILINGS)
    assert result.ok is True
    assert result.score == 0


def test_zero_ceiling_contributes_nothing() -> None:
    sub_scores = normalize_signals(_signals(), ScoringCeilings(revenue=0, category=0))
    assert sub_scores.revenue_potential == 0.0
    assert sub_scores.category_count == 0.0
