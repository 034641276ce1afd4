from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
import logging
from typing import Any, Iterable, Sequence
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from revgrowth.core.config import get_settings
from revgrowth.core.errors import InvalidTierError, OverlappingTiersError, TierNotFoundError
from revgrowth.domain.models import RevShareTier
from revgrowth.persistence.guards import tenant_predicate
from revgrowth.services.audit import SYSTEM_ACTOR, AuditActor, record_actor_event


logger = logging.getLogger(__name__)

_CENT = Decimal("0.01")
_HUNDRED = Decimal("100")
DEFAULT_TIER_LABEL = "Default"


@dataclass(frozen=True)
class TierSpec:
    # Validated, typed tier used by the calculator.
    min_revenue: Decimal
    max_revenue: Decimal | None
    share_rate: Decimal
    display_order: int = 0
    id: str | None = None


@dataclass(frozen=True)
class TierFee:
    tier_label: str
    rate: Decimal
    revenue_in_tier: Decimal
    fee: Decimal


@dataclass(frozen=True)
class FeeCalculation:
    incremental_revenue: Decimal
    total_fee: Decimal
    effective_rate: Decimal
    breakdown: list[TierFee]

    def breakdown_json(self) -> list[dict[str, Any]]:
        return [
            {
                "tier_label": item.tier_label,
                "rate": str(item.rate),
                "revenue_in_tier": str(item.revenue_in_tier),
                "fee": str(item.fee),
            }
            for item in self.breakdown
        ]


def _money(value: Decimal) -> Decimal:
    return value.quantize(_CENT, rounding=ROUND_HALF_UP)


def _format_amount(value: Decimal) -> str:
    return f"${value:,.0f}"


def tier_label(tier: TierSpec) -> str:
    upper = "Unlimited" if tier.max_revenue is None else _format_amount(tier.max_revenue)
    return f"{_format_amount(tier.min_revenue)} - {upper}"


def validate_tier(min_revenue: Decimal, max_revenue: Decimal | None, share_rate: Decimal) -> None:
    if min_revenue < 0:
        raise InvalidTierError("Minimum revenue must be non-negative")
    if max_revenue is not None and max_revenue <= min_revenue:
        raise InvalidTierError("Maximum revenue must be greater than minimum revenue")
    if share_rate < 0 or share_rate > _HUNDRED:
        raise InvalidTierError("Share rate must be between 0 and 100")


def normalize_tiers(tiers: Iterable[TierSpec]) -> list[TierSpec]:
    """Sort tiers by lower bound and reject any set whose ranges overlap.

    Stored order is never trusted. Gaps between tiers are allowed; revenue that
    falls in a gap carries no fee.
    """
    ordered = sorted(tiers, key=lambda tier: (tier.min_revenue, tier.display_order))
    for tier in ordered:
        validate_tier(tier.min_revenue, tier.max_revenue, tier.share_rate)
    for lower, upper in zip(ordered, ordered[1:]):
        if lower.max_revenue is None or upper.min_revenue < lower.max_revenue:
            raise OverlappingTiersError(
                "Active revenue share tiers overlap",
                details={"tiers": [tier_label(lower), tier_label(upper)]},
            )
    return ordered


def calculate_tiered_fee(
    incremental_revenue: Decimal,
    tiers: Sequence[TierSpec],
    *,
    fallback_rate: Decimal | None = None,
) -> FeeCalculation:
    """Convert incremental revenue into a fee by summing each tier's slice.

    Tiers compose additively: revenue between a tier's bounds is charged at that
    tier's rate. With no tiers a single unbounded tier at ``fallback_rate``
    (default 15%) applies.
    """
    revenue = Decimal(incremental_revenue)
    if tiers:
        ordered = normalize_tiers(tiers)
        labels = [tier_label(tier) for tier in ordered]
    else:
        rate = Decimal(str(fallback_rate if fallback_rate is not None else get_settings().default_share_rate_pct))
        ordered = [TierSpec(min_revenue=Decimal("0"), max_revenue=None, share_rate=rate)]
        labels = [DEFAULT_TIER_LABEL]

    breakdown: list[TierFee] = []
    if revenue > 0:
        for tier, label in zip(ordered, labels):
            if revenue <= tier.min_revenue:
                continue
            upper = revenue if tier.max_revenue is None else min(revenue, tier.max_revenue)
            in_tier = max(Decimal("0"), upper - tier.min_revenue)
            if in_tier <= 0:
                continue
            breakdown.append(
                TierFee(
                    tier_label=label,
                    rate=tier.share_rate,
                    revenue_in_tier=_money(in_tier),
                    fee=_money(in_tier * tier.share_rate / _HUNDRED),
                )
            )

    total = _money(sum((item.fee for item in breakdown), Decimal("0")))
    effective = _money(total / revenue * _HUNDRED) if revenue > 0 else Decimal("0.00")
    return FeeCalculation(
        incremental_revenue=_money(revenue),
        total_fee=total,
        effective_rate=effective,
        breakdown=breakdown,
    )


def _spec_from_row(row: RevShareTier) -> TierSpec:
    return TierSpec(
        min_revenue=Decimal(row.min_revenue),
        max_revenue=Decimal(row.max_revenue) if row.max_revenue is not None else None,
        share_rate=Decimal(row.share_rate),
        display_order=row.display_order,
        id=row.id,
    )


async def list_tiers(
    session: AsyncSession,
    tenant_id: str,
    *,
    active_only: bool = True,
) -> list[RevShareTier]:
    stmt = select(RevShareTier).where(tenant_predicate(RevShareTier, tenant_id))
    if active_only:
        stmt = stmt.where(RevShareTier.is_active.is_(True))
    result = await session.execute(
        stmt.order_by(RevShareTier.display_order, RevShareTier.min_revenue)
    )
    return list(result.scalars().all())


async def active_tier_specs(session: AsyncSession, tenant_id: str) -> list[TierSpec]:
    return [_spec_from_row(row) for row in await list_tiers(session, tenant_id)]


async def calculate_fee(
    session: AsyncSession,
    *,
    tenant_id: str,
    incremental_revenue: Decimal,
    fallback_rate: Decimal | None = None,
) -> FeeCalculation:
    tiers = await active_tier_specs(session, tenant_id)
    return calculate_tiered_fee(incremental_revenue, tiers, fallback_rate=fallback_rate)


async def _get_tier(session: AsyncSession, tenant_id: str, tier_id: str) -> RevShareTier:
    result = await session.execute(
        select(RevShareTier).where(
            tenant_predicate(RevShareTier, tenant_id),
            RevShareTier.id == tier_id,
        )
    )
    row = result.scalar_one_or_none()
    if row is None:
        raise TierNotFoundError("Revenue share tier not found", details={"tier_id": tier_id})
    return row


async def _ensure_no_overlap(
    session: AsyncSession,
    tenant_id: str,
    candidate: TierSpec,
    *,
    exclude_id: str | None = None,
) -> None:
    # Validate the would-be active set; the calculator repeats this check on every read.
    others = [spec for spec in await active_tier_specs(session, tenant_id) if spec.id != exclude_id]
    try:
        normalize_tiers([*others, candidate])
    except OverlappingTiersError as exc:
        raise InvalidTierError("Tier overlaps an existing active tier", details=exc.details) from exc


async def create_tier(
    session: AsyncSession,
    *,
    tenant_id: str,
    min_revenue: Decimal,
    max_revenue: Decimal | None,
    share_rate: Decimal,
    display_order: int = 0,
    actor: AuditActor = SYSTEM_ACTOR,
) -> RevShareTier:
    validate_tier(min_revenue, max_revenue, share_rate)
    candidate = TierSpec(min_revenue, max_revenue, share_rate, display_order)
    await _ensure_no_overlap(session, tenant_id, candidate)
    row = RevShareTier(
        id=uuid4().hex,
        tenant_id=tenant_id,
        min_revenue=min_revenue,
        max_revenue=max_revenue,
        share_rate=share_rate,
        display_order=display_order,
        is_active=True,
    )
    session.add(row)
    await record_actor_event(
        session=session,
        actor=actor,
        tenant_id=tenant_id,
        event_type="fees.tiers.created",
        resource_type="rev_share_tier",
        resource_id=row.id,
        metadata={"label": tier_label(candidate), "share_rate": str(share_rate)},
    )
    await session.commit()
    logger.info("rev_share_tier_created tenant_id=%s tier_id=%s", tenant_id, row.id)
    return row


async def update_tier(
    session: AsyncSession,
    *,
    tenant_id: str,
    tier_id: str,
    changes: dict[str, Any],
    actor: AuditActor = SYSTEM_ACTOR,
) -> RevShareTier:
    row = await _get_tier(session, tenant_id, tier_id)

    def _pick(key: str, current: Any) -> Any:
        value = changes.get(key)
        return current if value is None else value

    min_revenue = Decimal(_pick("min_revenue", row.min_revenue))
    # max_revenue is the one field where an explicit None is meaningful (unbounded).
    max_revenue = changes["max_revenue"] if "max_revenue" in changes else row.max_revenue
    max_revenue = Decimal(max_revenue) if max_revenue is not None else None
    share_rate = Decimal(_pick("share_rate", row.share_rate))
    display_order = int(_pick("display_order", row.display_order))
    is_active = bool(_pick("is_active", row.is_active))

    validate_tier(min_revenue, max_revenue, share_rate)
    if is_active:
        await _ensure_no_overlap(
            session,
            tenant_id,
            TierSpec(min_revenue, max_revenue, share_rate, display_order),
            exclude_id=row.id,
        )
    row.min_revenue = min_revenue
    row.max_revenue = max_revenue
    row.share_rate = share_rate
    row.display_order = display_order
    row.is_active = is_active
    await record_actor_event(
        session=session,
        actor=actor,
        tenant_id=tenant_id,
        event_type="fees.tiers.updated",
        resource_type="rev_share_tier",
        resource_id=row.id,
        metadata={key: str(value) for key, value in changes.items()},
    )
    await session.commit()
    return row


async def deactivate_tier(
    session: AsyncSession,
    *,
    tenant_id: str,
    tier_id: str,
    actor: AuditActor = SYSTEM_ACTOR,
) -> RevShareTier:
    # Tiers are soft-deleted so historical fee breakdowns keep their meaning.
    row = await _get_tier(session, tenant_id, tier_id)
    row.is_active = False
    await record_actor_event(
        session=session,
        actor=actor,
        tenant_id=tenant_id,
        event_type="fees.tiers.deactivated",
        resource_type="rev_share_tier",
        resource_id=row.id,
    )
    await session.commit()
    return row


async def seed_default_tiers(
    session: AsyncSession,
    *,
    tenant_id: str,
    actor: AuditActor = SYSTEM_ACTOR,
) -> list[RevShareTier]:
    existing = await list_tiers(session, tenant_id)
    if existing:
        return existing
    rate = Decimal(str(get_settings().default_share_rate_pct))
    row = await create_tier(
        session,
        tenant_id=tenant_id,
        min_revenue=Decimal("0"),
        max_revenue=None,
        share_rate=rate,
        display_order=1,
        actor=actor,
    )
    return [row]
