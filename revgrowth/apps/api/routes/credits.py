from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from revgrowth.apps.api.deps import Principal, actor_for, get_db, require_role
from revgrowth.apps.api.openapi import CREDIT_ERROR_RESPONSES, DEFAULT_ERROR_RESPONSES
from revgrowth.apps.api.response import SuccessEnvelope, success_response
from revgrowth.core.timeutil import as_utc
from revgrowth.services.credits import ACTION_COSTS, ReservationResult, get_credit_ledger
from revgrowth.services.credits.catalog import action_label, validate_billing_period


router = APIRouter(prefix="/credits", tags=["credits"], responses=DEFAULT_ERROR_RESPONSES)


class ReserveRequest(BaseModel):
    action_type: str = Field(min_length=1, max_length=64)


class CommitRequest(BaseModel):
    reservation_id: str = Field(min_length=1)
    action_type: str | None = None
    account_id: str | None = None
    metadata: dict[str, Any] | None = None


class ReleaseRequest(BaseModel):
    reservation_id: str = Field(min_length=1)


class ReservationResponse(BaseModel):
    allowed: bool
    reservation_id: str | None
    action_type: str
    cost: int
    remaining: int
    total_allowance: int
    unlimited: bool
    billing_period: str
    expires_at: str | None


class TransactionResponse(BaseModel):
    id: str
    reservation_id: str | None
    action_type: str
    credits_used: int
    account_id: str | None
    user_id: str | None
    created_at: str | None


class ReleaseResponse(BaseModel):
    reservation_id: str
    released: bool


class ActionUsageResponse(BaseModel):
    count: int
    credits_used: int
    label: str


class UsageResponse(BaseModel):
    billing_period: str
    total_allowance: int
    credits_used: int
    credits_remaining: int
    credits_reserved: int
    unlimited: bool
    percent_used: int
    breakdown: dict[str, ActionUsageResponse]
    recent_transactions: list[TransactionResponse]
    action_costs: dict[str, int]


class ActionCostResponse(BaseModel):
    action_type: str
    label: str
    cost: int


def _iso(value: datetime | None) -> str | None:
    return as_utc(value).isoformat() if value is not None else None


def build_credit_exception(action_type: str, result: ReservationResult) -> HTTPException:
    # Stable 402 payload so clients can show what the action needed versus what is left.
    detail = {
        "code": "CREDIT_LIMIT_EXCEEDED",
        "message": "Not enough AI credits remaining this billing period",
        "action_type": action_type,
        "credits_required": result.cost,
        "credits_remaining": max(0, result.remaining),
        "total_allowance": result.total_allowance,
        "billing_period": result.billing_period,
    }
    return HTTPException(status_code=status.HTTP_402_PAYMENT_REQUIRED, detail=detail)


def _transaction_payload(row: Any) -> TransactionResponse:
    return TransactionResponse(
        id=row.id,
        reservation_id=row.reservation_id,
        action_type=row.action_type,
        credits_used=row.credits_used,
        account_id=row.account_id,
        user_id=row.user_id,
        created_at=_iso(row.created_at),
    )


@router.post(
    "/reserve",
    response_model=SuccessEnvelope[ReservationResponse],
    responses=CREDIT_ERROR_RESPONSES,
)
async def post_reserve(
    payload: ReserveRequest,
    request: Request,
    principal: Principal = Depends(require_role("reader")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Any authenticated member may spend credits on AI actions.
    result = await get_credit_ledger().check_and_reserve(
        db,
        tenant_id=principal.tenant_id,
        action_type=payload.action_type,
        actor=actor_for(principal, request),
    )
    if not result.allowed:
        raise build_credit_exception(payload.action_type, result)
    data = ReservationResponse(
        allowed=True,
        reservation_id=result.reservation_id,
        action_type=payload.action_type,
        cost=result.cost,
        remaining=result.remaining,
        total_allowance=result.total_allowance,
        unlimited=result.unlimited,
        billing_period=result.billing_period,
        expires_at=_iso(result.expires_at),
    )
    return success_response(request=request, data=data)


@router.post("/commit", response_model=SuccessEnvelope[TransactionResponse])
async def post_commit(
    payload: CommitRequest,
    request: Request,
    principal: Principal = Depends(require_role("reader")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    transaction = await get_credit_ledger().commit(
        db,
        tenant_id=principal.tenant_id,
        reservation_id=payload.reservation_id,
        action_type=payload.action_type,
        account_id=payload.account_id,
        user_id=principal.subject_id,
        metadata=payload.metadata,
        actor=actor_for(principal, request),
    )
    return success_response(request=request, data=_transaction_payload(transaction))


@router.post("/release", response_model=SuccessEnvelope[ReleaseResponse])
async def post_release(
    payload: ReleaseRequest,
    request: Request,
    principal: Principal = Depends(require_role("reader")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    released = await get_credit_ledger().release(
        db,
        tenant_id=principal.tenant_id,
        reservation_id=payload.reservation_id,
        actor=actor_for(principal, request),
    )
    return success_response(
        request=request,
        data=ReleaseResponse(reservation_id=payload.reservation_id, released=released),
    )


@router.get("/usage", response_model=SuccessEnvelope[UsageResponse])
async def get_usage(
    request: Request,
    billing_period: str | None = Query(default=None, pattern=r"^\d{4}-\d{2}$"),
    principal: Principal = Depends(require_role("reader")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    try:
        period = validate_billing_period(billing_period) if billing_period else None
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"code": "INVALID_PERIOD", "message": "billing_period must be YYYY-MM"},
        ) from exc
    usage = await get_credit_ledger().get_usage(
        db, tenant_id=principal.tenant_id, billing_period=period
    )
    data = UsageResponse(
        billing_period=usage.billing_period,
        total_allowance=usage.total_allowance,
        credits_used=usage.credits_used,
        credits_remaining=usage.credits_remaining,
        credits_reserved=usage.credits_reserved,
        unlimited=usage.unlimited,
        percent_used=usage.percent_used,
        breakdown={
            action: ActionUsageResponse(count=item.count, credits_used=item.credits_used, label=item.label)
            for action, item in usage.breakdown.items()
        },
        recent_transactions=[_transaction_payload(row) for row in usage.recent_transactions],
        action_costs=usage.action_costs,
    )
    return success_response(request=request, data=data)


@router.get("/costs", response_model=SuccessEnvelope[list[ActionCostResponse]])
async def get_costs(
    request: Request,
    principal: Principal = Depends(require_role("reader")),
) -> dict:
    data = [
        ActionCostResponse(action_type=action, label=action_label(action), cost=cost).model_dump()
        for action, cost in sorted(ACTION_COSTS.items(), key=lambda item: item[1])
    ]
    return success_response(request=request, data=data)
