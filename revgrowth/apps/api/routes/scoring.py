from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from revgrowth.apps.api.deps import Principal, actor_for, get_db, require_role
from revgrowth.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from revgrowth.apps.api.response import SuccessEnvelope, success_response
from revgrowth.services.scoring import (
    ScoringWeightsView,
    WeightSet,
    compute_score,
    get_scoring_weights,
    rank_accounts,
    update_scoring_weights,
)


router = APIRouter(prefix="/scoring", tags=["scoring"], responses=DEFAULT_ERROR_RESPONSES)


class WeightsResponse(BaseModel):
    id: str | None
    name: str
    gap_size_weight: float
    revenue_potential_weight: float
    category_count_weight: float
    total: float
    description: str | None
    is_default: bool
    updated_by: str | None


class WeightsUpdateRequest(BaseModel):
    gap_size_weight: float = Field(ge=0, le=100)
    revenue_potential_weight: float = Field(ge=0, le=100)
    category_count_weight: float = Field(ge=0, le=100)
    description: str | None = Field(default=None, max_length=500)


class ScoreResponse(BaseModel):
    account_id: str
    score: int
    weights_used: dict[str, float]
    sub_scores: dict[str, float]


class RankedAccount(BaseModel):
    account_id: str
    name: str
    enrollment_status: str
    score: int


def _weights_payload(view: ScoringWeightsView) -> WeightsResponse:
    return WeightsResponse(
        id=view.id,
        name=view.name,
        gap_size_weight=view.weights.gap_size,
        revenue_potential_weight=view.weights.revenue_potential,
        category_count_weight=view.weights.category_count,
        total=view.weights.total,
        description=view.description,
        is_default=view.is_default,
        updated_by=view.updated_by,
    )


@router.get("/weights", response_model=SuccessEnvelope[WeightsResponse])
async def get_weights(
    request: Request,
    principal: Principal = Depends(require_role("reader")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    view = await get_scoring_weights(db, principal.tenant_id)
    return success_response(request=request, data=_weights_payload(view))


@router.put("/weights", response_model=SuccessEnvelope[WeightsResponse])
async def put_weights(
    payload: WeightsUpdateRequest,
    request: Request,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Invalid totals surface as 422 INVALID_TOTAL before anything is written.
    view = await update_scoring_weights(
        db,
        tenant_id=principal.tenant_id,
        weights=WeightSet(
            gap_size=payload.gap_size_weight,
            revenue_potential=payload.revenue_potential_weight,
            category_count=payload.category_count_weight,
        ),
        description=payload.description,
        actor=actor_for(principal, request),
    )
    return success_response(request=request, data=_weights_payload(view))


@router.get("/accounts/{account_id}", response_model=SuccessEnvelope[ScoreResponse])
async def get_account_score(
    account_id: str,
    request: Request,
    principal: Principal = Depends(require_role("reader")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    scored = await compute_score(db, tenant_id=principal.tenant_id, account_id=account_id)
    payload = ScoreResponse(
        account_id=scored.account_id,
        score=scored.score,
        weights_used=scored.weights_used.as_dict(),
        sub_scores={
            "gap_size": round(scored.sub_scores.gap_size, 2),
            "revenue_potential": round(scored.sub_scores.revenue_potential, 2),
            "category_count": round(scored.sub_scores.category_count, 2),
        },
    )
    return success_response(request=request, data=payload)


@router.get("/ranking", response_model=SuccessEnvelope[list[RankedAccount]])
async def get_ranking(
    request: Request,
    limit: int = Query(default=50, ge=1, le=500),
    principal: Principal = Depends(require_role("reader")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    ranked = await rank_accounts(db, tenant_id=principal.tenant_id, limit=limit)
    return success_response(request=request, data=[RankedAccount(**item).model_dump() for item in ranked])
