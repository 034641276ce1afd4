from __future__ import annotations

from datetime import datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
import logging

from revgrowth.core.errors import UnknownActionError
from revgrowth.core.timeutil import utc_now


logger = logging.getLogger(__name__)

UNLIMITED = -1

# Credits drawn per AI-assisted action.
ACTION_COSTS: dict[str, int] = {
    "ask_anything": 2,
    "generate_playbook": 10,
    "icp_analysis": 15,
    "daily_briefing": 5,
    "email_analysis": 3,
    "account_dossier": 8,
    "email_composer": 4,
}

ACTION_LABELS: dict[str, str] = {
    "ask_anything": "Ask Anything",
    "generate_playbook": "Playbook Generation",
    "icp_analysis": "ICP Analysis",
    "daily_briefing": "Daily Briefing",
    "email_analysis": "Email Analysis",
    "account_dossier": "Account Dossier",
    "email_composer": "Email Composer",
}

# Monthly allowance per plan type.
PLAN_ALLOWANCES: dict[str, int] = {
    "free": 25,
    "starter": 25,
    "professional": 500,
    "growth": 500,
    "scale": 2000,
    "enterprise": UNLIMITED,
}


def action_cost(action_type: str) -> int:
    try:
        return ACTION_COSTS[action_type]
    except KeyError as exc:
        raise UnknownActionError(
            f"Unknown action type: {action_type}",
            details={"action_type": action_type, "known": sorted(ACTION_COSTS)},
        ) from exc


def action_label(action_type: str) -> str:
    return ACTION_LABELS.get(action_type, action_type)


def plan_allowance(plan_type: str | None) -> int:
    # Unknown or missing plans get the free allowance.
    return PLAN_ALLOWANCES.get((plan_type or "free").lower(), PLAN_ALLOWANCES["free"])


def is_unlimited(allowance: int) -> bool:
    return allowance == UNLIMITED


def _resolve_zone(tz_name: str | None) -> ZoneInfo | None:
    if not tz_name:
        return None
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("tenant_timezone_invalid timezone=%s falling_back=UTC", tz_name)
        return None


def billing_period_for(now: datetime | None = None, tz_name: str | None = None) -> str:
    """Return the YYYY-MM billing period for ``now`` in the tenant's timezone."""
    current = now or utc_now()
    zone = _resolve_zone(tz_name)
    if zone is not None:
        current = current.astimezone(zone)
    return f"{current.year:04d}-{current.month:02d}"


def validate_billing_period(value: str) -> str:
    parts = value.split("-")
    if len(parts) != 2 or len(parts[0]) != 4 or len(parts[1]) != 2:
        raise ValueError("billing_period must be YYYY-MM")
    year, month = int(parts[0]), int(parts[1])
    if not 1 <= month <= 12 or year < 1970:
        raise ValueError("billing_period must be YYYY-MM")
    return value
