from __future__ import annotations

from datetime import datetime, timezone

import pytest

from revgrowth.core.errors import UnknownActionError
from revgrowth.services.credits.catalog import (
    UNLIMITED,
    action_cost,
    billing_period_for,
    plan_allowance,
    validate_billing_period,
)


def test_plan_allowances() -> None:
    assert plan_allowance("free") == 25
    assert plan_allowance("Professional") == 500
    assert plan_allowance("scale") == 2000
    assert plan_allowance("enterprise") == UNLIMITED
    assert plan_allowance(None) == 25
    assert plan_allowance("legacy-gold") == 25


def test_action_costs() -> None:
    assert action_cost("icp_analysis") == 15
    assert action_cost("ask_anything") == 2
    with pytest.raises(UnknownActionError) as excinfo:
        action_cost("summon_oracle")
    assert excinfo.value.code == "UNKNOWN_ACTION"


def test_billing_period_defaults_to_utc() -> None:
    now = datetime(2025, 3, 31, 23, 30, tzinfo=timezone.utc)
    assert billing_period_for(now) == "2025-03"


def test_billing_period_uses_tenant_timezone() -> None:
    now = datetime(2025, 3, 31, 23, 30, tzinfo=timezone.utc)
    # Already April 1st in Tokyo, still March in Los Angeles.
    assert billing_period_for(now, "Asia/Tokyo") == "2025-04"
    assert billing_period_for(now, "America/Los_Angeles") == "2025-03"


def test_invalid_timezone_falls_back_to_utc() -> None:
    now = datetime(2025, 3, 31, 23, 30, tzinfo=timezone.utc)
    assert billing_period_for(now, "Mars/Olympus_Mons") == "2025-03"


@pytest.mark.parametrize("value", ["2025-13", "2025-3", "25-03", "2025/03", "march"])
def test_validate_billing_period_rejects_malformed(value: str) -> None:
    with pytest.raises(ValueError):
        validate_billing_period(value)


def test_validate_billing_period_accepts_year_month() -> None:
    assert validate_billing_period("2025-12") == "2025-12"
