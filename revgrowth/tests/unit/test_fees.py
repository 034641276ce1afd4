from __future__ import annotations

from decimal import Decimal

import pytest

from revgrowth.core.errors import InvalidTierError, OverlappingTiersError
from revgrowth.services.fees import TierSpec, calculate_tiered_fee, normalize_tiers, tier_label


def _tier(low: str, high: str | None, rate: str, order: int = 0) -> TierSpec:
    return TierSpec(
        min_revenue=Decimal(low),
        max_revenue=Decimal(high) if high is not None else None,
        share_rate=Decimal(rate),
        display_order=order,
    )


_TWO_TIERS = [_tier("0", "10000", "15", 1), _tier("10000", None, "10", 2)]


def test_two_tier_fee_sums_each_slice() -> None:
    result = calculate_tiered_fee(Decimal("15000"), _TWO_TIERS)
    assert result.total_fee == Decimal("2000.00")
    assert [item.tier_label for item in result.breakdown] == ["$0 - $10,000", "$10,000 - Unlimited"]
    assert [item.fee for item in result.breakdown] == [Decimal("1500.00"), Decimal("500.00")]
    assert result.effective_rate == Decimal("13.33")


def test_escalating_tiers_split_revenue_across_both_rates() -> None:
    tiers = [_tier("0", "10000", "10", 1), _tier("10000", None, "20", 2)]
    result = calculate_tiered_fee(Decimal("15000"), tiers)
    assert [item.revenue_in_tier for item in result.breakdown] == [Decimal("10000.00"), Decimal("5000.00")]
    assert [item.fee for item in result.breakdown] == [Decimal("1000.00"), Decimal("1000.00")]
    assert [item.rate for item in result.breakdown] == [Decimal("10"), Decimal("20")]
    assert result.total_fee == Decimal("2000.00")


def test_revenue_inside_first_tier_only_touches_first_tier() -> None:
    result = calculate_tiered_fee(Decimal("4000"), _TWO_TIERS)
    assert result.total_fee == Decimal("600.00")
    assert len(result.breakdown) == 1


@pytest.mark.parametrize("amount", ["0", "-250"])
def test_non_positive_revenue_has_no_fee(amount: str) -> None:
    result = calculate_tiered_fee(Decimal(amount), _TWO_TIERS)
    assert result.total_fee == Decimal("0.00")
    assert result.breakdown == []
    assert result.effective_rate == Decimal("0.00")


def test_no_tiers_falls_back_to_flat_default_rate() -> None:
    result = calculate_tiered_fee(Decimal("1000"), [], fallback_rate=Decimal("15"))
    assert result.total_fee == Decimal("150.00")
    assert result.breakdown[0].tier_label == "Default"


def test_stored_order_is_not_trusted() -> None:
    shuffled = [_TWO_TIERS[1], _TWO_TIERS[0]]
    assert calculate_tiered_fee(Decimal("15000"), shuffled).total_fee == Decimal("2000.00")


def test_overlapping_tiers_are_rejected() -> None:
    with pytest.raises(OverlappingTiersError):
        normalize_tiers([_tier("0", "12000", "15"), _tier("10000", None, "10")])


def test_unbounded_tier_followed_by_another_overlaps() -> None:
    with pytest.raises(OverlappingTiersError):
        calculate_tiered_fee(Decimal("100"), [_tier("0", None, "15"), _tier("5000", "9000", "10")])


def test_revenue_in_gap_between_tiers_carries_no_fee() -> None:
    tiers = [_tier("0", "1000", "10"), _tier("2000", None, "20")]
    result = calculate_tiered_fee(Decimal("3000"), tiers)
    # 1000 at 10% plus 1000 at 20%; the 1000-2000 gap is free.
    assert result.total_fee == Decimal("300.00")


def test_malformed_tier_is_rejected() -> None:
    with pytest.raises(InvalidTierError):
        normalize_tiers([_tier("5000", "1000", "10")])
    with pytest.raises(InvalidTierError):
        normalize_tiers([_tier("0", None, "120")])


def test_tier_labels() -> None:
    assert tier_label(_tier("0", "10000", "15")) == "$0 - $10,000"
    assert tier_label(_tier("50000", None, "5")) == "$50,000 - Unlimited"


def test_breakdown_json_is_serializable_strings() -> None:
    payload = calculate_tiered_fee(Decimal("15000"), _TWO_TIERS).breakdown_json()
    assert payload[0] == {
        "tier_label": "$0 - $10,000",
        "rate": "15",
        "revenue_in_tier": "10000.00",
        "fee": "1500.00",
    }
