from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Literal

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from revgrowth.apps.api.deps import Principal, actor_for, get_db, require_role
from revgrowth.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from revgrowth.apps.api.response import SuccessEnvelope, success_response
from revgrowth.core.timeutil import as_utc
from revgrowth.domain.models import Account, ProgramAccount, ProgramRevenueSnapshot
from revgrowth.domain.state import GraduationCriteria
from revgrowth.services.program import (
    GraduationDecision,
    GraduationProgress,
    GraduationTargets,
    ProgramSummary,
    get_lifecycle_manager,
    get_snapshot_aggregator,
    list_programs,
)
from revgrowth.services.program.enrollment import default_targets
from revgrowth.services.program.snapshots import get_program_account, list_snapshots


router = APIRouter(prefix="/program", tags=["program"], responses=DEFAULT_ERROR_RESPONSES)


def _iso(value: datetime | None) -> str | None:
    return as_utc(value).isoformat() if value is not None else None


def _float(value: Decimal | float | None) -> float | None:
    return float(value) if value is not None else None


class EnrollRequest(BaseModel):
    account_id: str
    target_penetration: float | None = Field(default=None, ge=0, le=100)
    target_incremental_revenue: Decimal | None = Field(default=None, ge=0)
    target_duration_months: int | None = Field(default=None, ge=1, le=120)
    graduation_criteria: Literal["any", "all"] | None = None
    share_rate: Decimal | None = Field(default=None, ge=0, le=100)
    notes: str | None = Field(default=None, max_length=2000)


class SnapshotRequest(BaseModel):
    period_start: datetime
    period_end: datetime


class GraduateRequest(BaseModel):
    notes: str | None = Field(default=None, max_length=2000)


class AtRiskRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=2000)


class ProgramAccountResponse(BaseModel):
    id: str
    account_id: str
    status: str
    enrolled_at: str
    enrolled_by: str | None
    baseline_start: str
    baseline_end: str
    baseline_revenue: float
    baseline_categories: list[str]
    share_rate: float
    target_penetration: float | None
    target_incremental_revenue: float | None
    target_duration_months: int | None
    graduation_criteria: str
    graduated_at: str | None
    graduation_notes: str | None
    graduation_revenue: float | None
    graduation_penetration: float | None
    graduation_met_targets: list[str] | None
    enrollment_duration_days: int | None
    incremental_revenue: float | None
    categories_at_enrollment: int | None
    categories_achieved: int | None


class SnapshotResponse(BaseModel):
    id: str
    program_account_id: str
    sequence: int
    period_start: str
    period_end: str
    period_revenue: float
    period_categories: list[str]
    baseline_comparison: float
    incremental_revenue: float
    cumulative_incremental_revenue: float
    fee_amount: float
    created: bool | None = None


class ProgramSummaryResponse(BaseModel):
    id: str
    account_id: str
    account_name: str
    segment: str | None
    status: str
    enrolled_at: str
    baseline_revenue: float
    share_rate: float
    period_revenue: float
    incremental_revenue: float
    fee_amount: float
    snapshot_count: int


class ObjectiveResponse(BaseModel):
    objective: str
    current: float
    target: float
    progress_pct: float
    met: bool


class GraduationDecisionResponse(BaseModel):
    graduate: bool
    criteria: str
    met: list[str]
    unmet: list[str]
    objectives: list[ObjectiveResponse]


class EvaluateGraduationResponse(BaseModel):
    program: ProgramAccountResponse
    graduated: bool
    skipped_reason: str | None
    decision: GraduationDecisionResponse | None


class GraduationProgressResponse(BaseModel):
    program_account_id: str
    account_id: str
    current_penetration_pct: float
    cumulative_incremental_revenue: float
    enrollment_duration_months: int
    decision: GraduationDecisionResponse


class AccountStatusResponse(BaseModel):
    account_id: str
    enrollment_status: str
    at_risk_reason: str | None
    enrolled_at: str | None
    graduated_at: str | None


def _program_payload(row: ProgramAccount) -> ProgramAccountResponse:
    return ProgramAccountResponse(
        id=row.id,
        account_id=row.account_id,
        status=row.status,
        enrolled_at=_iso(row.enrolled_at) or "",
        enrolled_by=row.enrolled_by,
        baseline_start=_iso(row.baseline_start) or "",
        baseline_end=_iso(row.baseline_end) or "",
        baseline_revenue=float(row.baseline_revenue),
        baseline_categories=list(row.baseline_categories or []),
        share_rate=float(row.share_rate),
        target_penetration=row.target_penetration,
        target_incremental_revenue=_float(row.target_incremental_revenue),
        target_duration_months=row.target_duration_months,
        graduation_criteria=row.graduation_criteria,
        graduated_at=_iso(row.graduated_at),
        graduation_notes=row.graduation_notes,
        graduation_revenue=_float(row.graduation_revenue),
        graduation_penetration=row.graduation_penetration,
        graduation_met_targets=row.graduation_met_targets,
        enrollment_duration_days=row.enrollment_duration_days,
        incremental_revenue=_float(row.incremental_revenue),
        categories_at_enrollment=row.categories_at_enrollment,
        categories_achieved=row.categories_achieved,
    )


def _snapshot_payload(row: ProgramRevenueSnapshot, created: bool | None = None) -> SnapshotResponse:
    return SnapshotResponse(
        id=row.id,
        program_account_id=row.program_account_id,
        sequence=row.sequence,
        period_start=_iso(row.period_start) or "",
        period_end=_iso(row.period_end) or "",
        period_revenue=float(row.period_revenue),
        period_categories=list(row.period_categories or []),
        baseline_comparison=float(row.baseline_comparison),
        incremental_revenue=float(row.incremental_revenue),
        cumulative_incremental_revenue=float(row.cumulative_incremental_revenue),
        fee_amount=float(row.fee_amount),
        created=created,
    )


def _summary_payload(item: ProgramSummary) -> ProgramSummaryResponse:
    return ProgramSummaryResponse(
        id=item.program.id,
        account_id=item.program.account_id,
        account_name=item.account_name,
        segment=item.segment,
        status=item.program.status,
        enrolled_at=_iso(item.program.enrolled_at) or "",
        baseline_revenue=float(item.program.baseline_revenue),
        share_rate=float(item.program.share_rate),
        period_revenue=float(item.period_revenue),
        incremental_revenue=float(item.incremental_revenue),
        fee_amount=float(item.fee_amount),
        snapshot_count=item.snapshot_count,
    )


def _decision_payload(decision: GraduationDecision) -> GraduationDecisionResponse:
    return GraduationDecisionResponse(
        graduate=decision.graduate,
        criteria=decision.criteria.value,
        met=list(decision.met),
        unmet=list(decision.unmet),
        objectives=[
            ObjectiveResponse(
                objective=item.objective,
                current=item.current,
                target=item.target,
                progress_pct=item.progress_pct,
                met=item.met,
            )
            for item in decision.objectives
        ],
    )


def _progress_payload(progress: GraduationProgress) -> GraduationProgressResponse:
    return GraduationProgressResponse(
        program_account_id=progress.program.id,
        account_id=progress.program.account_id,
        current_penetration_pct=progress.metrics.current_penetration_pct,
        cumulative_incremental_revenue=float(progress.metrics.cumulative_incremental_revenue),
        enrollment_duration_months=progress.metrics.enrollment_duration_months,
        decision=_decision_payload(progress.decision),
    )


def _account_payload(row: Account) -> AccountStatusResponse:
    return AccountStatusResponse(
        account_id=row.id,
        enrollment_status=row.enrollment_status,
        at_risk_reason=row.at_risk_reason,
        enrolled_at=_iso(row.enrolled_at),
        graduated_at=_iso(row.graduated_at),
    )


def _targets_from(payload: EnrollRequest) -> GraduationTargets:
    # Fields left out of the request fall back to the configured defaults.
    defaults = default_targets()
    fields = payload.model_fields_set
    return GraduationTargets(
        target_penetration=(
            payload.target_penetration if "target_penetration" in fields else defaults.target_penetration
        ),
        target_incremental_revenue=(
            payload.target_incremental_revenue
            if "target_incremental_revenue" in fields
            else defaults.target_incremental_revenue
        ),
        target_duration_months=(
            payload.target_duration_months
            if "target_duration_months" in fields
            else defaults.target_duration_months
        ),
        criteria=GraduationCriteria(payload.graduation_criteria or defaults.criteria),
    )


@router.post("/enroll", response_model=SuccessEnvelope[ProgramAccountResponse], status_code=201)
async def post_enroll(
    payload: EnrollRequest,
    request: Request,
    principal: Principal = Depends(require_role("editor")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    program = await get_lifecycle_manager().enroll(
        db,
        tenant_id=principal.tenant_id,
        account_id=payload.account_id,
        targets=_targets_from(payload),
        share_rate=payload.share_rate,
        notes=payload.notes,
        actor=actor_for(principal, request),
    )
    return success_response(request=request, data=_program_payload(program))


@router.get("/accounts", response_model=SuccessEnvelope[list[ProgramSummaryResponse]])
async def get_programs(
    request: Request,
    status: Literal["active", "paused", "graduated"] | None = Query(default=None),
    principal: Principal = Depends(require_role("reader")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    summaries = await list_programs(db, tenant_id=principal.tenant_id, status=status)
    return success_response(request=request, data=[_summary_payload(item).model_dump() for item in summaries])


@router.get("/accounts/{program_account_id}", response_model=SuccessEnvelope[ProgramAccountResponse])
async def get_program(
    program_account_id: str,
    request: Request,
    principal: Principal = Depends(require_role("reader")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    program = await get_program_account(
        db, tenant_id=principal.tenant_id, program_account_id=program_account_id
    )
    return success_response(request=request, data=_program_payload(program))


@router.post(
    "/accounts/{program_account_id}/snapshots",
    response_model=SuccessEnvelope[SnapshotResponse],
)
async def post_snapshot(
    program_account_id: str,
    payload: SnapshotRequest,
    request: Request,
    principal: Principal = Depends(require_role("editor")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    actor = actor_for(principal, request)
    outcome = await get_snapshot_aggregator().record_snapshot(
        db,
        tenant_id=principal.tenant_id,
        program_account_id=program_account_id,
        period_start=payload.period_start,
        period_end=payload.period_end,
        actor=actor,
    )
    if outcome.created:
        await get_lifecycle_manager().evaluate_graduation(
            db,
            tenant_id=principal.tenant_id,
            program_account_id=program_account_id,
            actor=actor,
        )
    return success_response(request=request, data=_snapshot_payload(outcome.snapshot, outcome.created))


@router.get(
    "/accounts/{program_account_id}/snapshots",
    response_model=SuccessEnvelope[list[SnapshotResponse]],
)
async def get_snapshots(
    program_account_id: str,
    request: Request,
    principal: Principal = Depends(require_role("reader")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await get_program_account(db, tenant_id=principal.tenant_id, program_account_id=program_account_id)
    rows = await list_snapshots(
        db, tenant_id=principal.tenant_id, program_account_id=program_account_id
    )
    return success_response(request=request, data=[_snapshot_payload(row).model_dump() for row in rows])


@router.post(
    "/accounts/{program_account_id}/evaluate-graduation",
    response_model=SuccessEnvelope[EvaluateGraduationResponse],
)
async def post_evaluate_graduation(
    program_account_id: str,
    request: Request,
    principal: Principal = Depends(require_role("editor")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    outcome = await get_lifecycle_manager().evaluate_graduation(
        db,
        tenant_id=principal.tenant_id,
        program_account_id=program_account_id,
        actor=actor_for(principal, request),
    )
    payload = EvaluateGraduationResponse(
        program=_program_payload(outcome.program),
        graduated=outcome.graduated,
        skipped_reason=outcome.skipped_reason,
        decision=_decision_payload(outcome.decision) if outcome.decision is not None else None,
    )
    return success_response(request=request, data=payload)


@router.post(
    "/accounts/{program_account_id}/graduate",
    response_model=SuccessEnvelope[ProgramAccountResponse],
)
async def post_graduate(
    program_account_id: str,
    payload: GraduateRequest,
    request: Request,
    principal: Principal = Depends(require_role("editor")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    program = await get_lifecycle_manager().graduate(
        db,
        tenant_id=principal.tenant_id,
        program_account_id=program_account_id,
        notes=payload.notes,
        actor=actor_for(principal, request),
    )
    return success_response(request=request, data=_program_payload(program))


@router.post("/accounts/{program_account_id}/pause", response_model=SuccessEnvelope[ProgramAccountResponse])
async def post_pause(
    program_account_id: str,
    request: Request,
    principal: Principal = Depends(require_role("editor")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    program = await get_lifecycle_manager().pause(
        db,
        tenant_id=principal.tenant_id,
        program_account_id=program_account_id,
        actor=actor_for(principal, request),
    )
    return success_response(request=request, data=_program_payload(program))


@router.post("/accounts/{program_account_id}/resume", response_model=SuccessEnvelope[ProgramAccountResponse])
async def post_resume(
    program_account_id: str,
    request: Request,
    principal: Principal = Depends(require_role("editor")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    program = await get_lifecycle_manager().resume(
        db,
        tenant_id=principal.tenant_id,
        program_account_id=program_account_id,
        actor=actor_for(principal, request),
    )
    return success_response(request=request, data=_program_payload(program))


@router.get(
    "/accounts/{program_account_id}/graduation-progress",
    response_model=SuccessEnvelope[GraduationProgressResponse],
)
async def get_graduation_progress(
    program_account_id: str,
    request: Request,
    principal: Principal = Depends(require_role("reader")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    progress = await get_lifecycle_manager().graduation_progress(
        db, tenant_id=principal.tenant_id, program_account_id=program_account_id
    )
    return success_response(request=request, data=_progress_payload(progress))


@router.get("/graduation-ready", response_model=SuccessEnvelope[list[GraduationProgressResponse]])
async def get_graduation_ready(
    request: Request,
    principal: Principal = Depends(require_role("reader")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    ready = await get_lifecycle_manager().list_graduation_ready(db, tenant_id=principal.tenant_id)
    return success_response(request=request, data=[_progress_payload(item).model_dump() for item in ready])


@router.post("/at-risk/{account_id}", response_model=SuccessEnvelope[AccountStatusResponse])
async def post_at_risk(
    account_id: str,
    payload: AtRiskRequest,
    request: Request,
    principal: Principal = Depends(require_role("editor")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    account = await get_lifecycle_manager().flag_at_risk(
        db,
        tenant_id=principal.tenant_id,
        account_id=account_id,
        reason=payload.reason,
        actor=actor_for(principal, request),
    )
    return success_response(request=request, data=_account_payload(account))


@router.post("/recover/{account_id}", response_model=SuccessEnvelope[AccountStatusResponse])
async def post_recover(
    account_id: str,
    request: Request,
    principal: Principal = Depends(require_role("editor")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    account = await get_lifecycle_manager().recover(
        db,
        tenant_id=principal.tenant_id,
        account_id=account_id,
        actor=actor_for(principal, request),
    )
    return success_response(request=request, data=_account_payload(account))
