from __future__ import annotations

from decimal import Decimal

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from revgrowth.apps.api.deps import Principal, actor_for, get_db, require_role
from revgrowth.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from revgrowth.apps.api.response import SuccessEnvelope, success_response
from revgrowth.domain.models import RevShareTier
from revgrowth.services.fees import (
    FeeCalculation,
    TierSpec,
    calculate_fee,
    create_tier,
    deactivate_tier,
    list_tiers,
    seed_default_tiers,
    tier_label,
    update_tier,
)


router = APIRouter(prefix="/fees", tags=["fees"], responses=DEFAULT_ERROR_RESPONSES)


class TierResponse(BaseModel):
    id: str
    label: str
    min_revenue: float
    max_revenue: float | None
    share_rate: float
    display_order: int
    is_active: bool


class TierCreateRequest(BaseModel):
    min_revenue: Decimal = Field(default=Decimal("0"))
    max_revenue: Decimal | None = None
    share_rate: Decimal = Field(default=Decimal("15"))
    display_order: int = 0


class TierUpdateRequest(BaseModel):
    min_revenue: Decimal | None = None
    max_revenue: Decimal | None = None
    share_rate: Decimal | None = None
    display_order: int | None = None
    is_active: bool | None = None


class FeeCalculateRequest(BaseModel):
    incremental_revenue: Decimal = Field(ge=0)


class TierFeeResponse(BaseModel):
    tier_label: str
    rate: float
    revenue_in_tier: float
    fee: float


class FeeCalculationResponse(BaseModel):
    incremental_revenue: float
    total_fee: float
    effective_rate: float
    breakdown: list[TierFeeResponse]


def _tier_payload(row: RevShareTier) -> TierResponse:
    spec = TierSpec(
        min_revenue=Decimal(row.min_revenue),
        max_revenue=Decimal(row.max_revenue) if row.max_revenue is not None else None,
        share_rate=Decimal(row.share_rate),
    )
    return TierResponse(
        id=row.id,
        label=tier_label(spec),
        min_revenue=float(row.min_revenue),
        max_revenue=float(row.max_revenue) if row.max_revenue is not None else None,
        share_rate=float(row.share_rate),
        display_order=row.display_order,
        is_active=bool(row.is_active),
    )


def fee_payload(calculation: FeeCalculation) -> FeeCalculationResponse:
    return FeeCalculationResponse(
        incremental_revenue=float(calculation.incremental_revenue),
        total_fee=float(calculation.total_fee),
        effective_rate=float(calculation.effective_rate),
        breakdown=[
            TierFeeResponse(
                tier_label=item.tier_label,
                rate=float(item.rate),
                revenue_in_tier=float(item.revenue_in_tier),
                fee=float(item.fee),
            )
            for item in calculation.breakdown
        ],
    )


@router.get("/tiers", response_model=SuccessEnvelope[list[TierResponse]])
async def get_tiers(
    request: Request,
    include_inactive: bool = Query(default=False),
    principal: Principal = Depends(require_role("reader")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rows = await list_tiers(db, principal.tenant_id, active_only=not include_inactive)
    return success_response(request=request, data=[_tier_payload(row).model_dump() for row in rows])


@router.post("/tiers", response_model=SuccessEnvelope[TierResponse], status_code=201)
async def post_tier(
    payload: TierCreateRequest,
    request: Request,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    row = await create_tier(
        db,
        tenant_id=principal.tenant_id,
        min_revenue=payload.min_revenue,
        max_revenue=payload.max_revenue,
        share_rate=payload.share_rate,
        display_order=payload.display_order,
        actor=actor_for(principal, request),
    )
    return success_response(request=request, data=_tier_payload(row))


@router.patch("/tiers/{tier_id}", response_model=SuccessEnvelope[TierResponse])
async def patch_tier(
    tier_id: str,
    payload: TierUpdateRequest,
    request: Request,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Only fields present in the body change; an explicit null max_revenue makes the tier unbounded.
    row = await update_tier(
        db,
        tenant_id=principal.tenant_id,
        tier_id=tier_id,
        changes=payload.model_dump(exclude_unset=True),
        actor=actor_for(principal, request),
    )
    return success_response(request=request, data=_tier_payload(row))


@router.delete("/tiers/{tier_id}", response_model=SuccessEnvelope[TierResponse])
async def delete_tier(
    tier_id: str,
    request: Request,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    row = await deactivate_tier(
        db,
        tenant_id=principal.tenant_id,
        tier_id=tier_id,
        actor=actor_for(principal, request),
    )
    return success_response(request=request, data=_tier_payload(row))


@router.post("/tiers/seed-default", response_model=SuccessEnvelope[list[TierResponse]])
async def post_seed_default(
    request: Request,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rows = await seed_default_tiers(db, tenant_id=principal.tenant_id, actor=actor_for(principal, request))
    return success_response(request=request, data=[_tier_payload(row).model_dump() for row in rows])


@router.post("/calculate", response_model=SuccessEnvelope[FeeCalculationResponse])
async def post_calculate(
    payload: FeeCalculateRequest,
    request: Request,
    principal: Principal = Depends(require_role("reader")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    calculation = await calculate_fee(
        db,
        tenant_id=principal.tenant_id,
        incremental_revenue=payload.incremental_revenue,
    )
    return success_response(request=request, data=fee_payload(calculation))
