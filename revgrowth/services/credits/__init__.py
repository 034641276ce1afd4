from __future__ import annotations

# Re-export credit services for centralized imports.

from revgrowth.services.credits.catalog import (
    ACTION_COSTS,
    PLAN_ALLOWANCES,
    UNLIMITED,
    action_cost,
    billing_period_for,
    plan_allowance,
)
from revgrowth.services.credits.ledger import (
    CreditLedger,
    CreditUsage,
    ReservationResult,
    get_credit_ledger,
    reset_credit_ledger,
)

__all__ = [
    "ACTION_COSTS",
    "PLAN_ALLOWANCES",
    "UNLIMITED",
    "action_cost",
    "billing_period_for",
    "plan_allowance",
    "CreditLedger",
    "CreditUsage",
    "ReservationResult",
    "get_credit_ledger",
    "reset_credit_ledger",
]
