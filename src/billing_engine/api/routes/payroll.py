"""Payroll run endpoints."""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Path, Query, status

from billing_engine.api.dependencies import DbSession, StaffUserId
from billing_engine.api.schemas import (
    ErrorResponse,
    PayPeriodResponse,
    PayrollRunCreate,
    PayrollRunDetailResponse,
    PayrollRunListResponse,
    PayrollRunResponse,
)
from billing_engine.models import PayrollRunStatus
from billing_engine.services import PayrollAggregator, recent_periods

router = APIRouter(prefix="/payroll-runs", tags=["payroll-runs"])


@router.get("", response_model=PayrollRunListResponse)
async def list_payroll_runs(
    db: DbSession,
    run_status: Annotated[PayrollRunStatus | None, Query(alias="status")] = None,
) -> PayrollRunListResponse:
    runs = await PayrollAggregator(db).list_runs(run_status)
    return PayrollRunListResponse(
        items=[PayrollRunResponse.model_validate(r) for r in runs],
        total=len(runs),
    )


@router.post(
    "",
    response_model=PayrollRunResponse,
    status_code=status.HTTP_201_CREATED,
    responses={409: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
)
async def create_payroll_run(
    db: DbSession,
    staff_user_id: StaffUserId,
    payload: PayrollRunCreate,
) -> PayrollRunResponse:
    """Lock the period's approved commission into a new draft run."""
    run = await PayrollAggregator(db).create_run(
        payload.period_start,
        created_by=staff_user_id,
        notes=payload.notes,
    )
    return PayrollRunResponse.model_validate(run)


@router.get("/periods", response_model=list[PayPeriodResponse])
async def list_pay_periods(
    count: Annotated[int, Query(ge=1, le=26)] = 6,
) -> list[PayPeriodResponse]:
    """Most recent pay periods, newest first."""
    return [
        PayPeriodResponse(start=p.start, end=p.end, payout_date=p.payout_date)
        for p in recent_periods(count)
    ]


@router.get(
    "/{run_id}",
    response_model=PayrollRunDetailResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_payroll_run(
    db: DbSession,
    run_id: Annotated[UUID, Path()],
) -> PayrollRunDetailResponse:
    run = await PayrollAggregator(db).get_run(run_id)
    return PayrollRunDetailResponse.model_validate(run)


@router.post(
    "/{run_id}/approve",
    response_model=PayrollRunResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def approve_payroll_run(
    db: DbSession,
    staff_user_id: StaffUserId,
    run_id: Annotated[UUID, Path()],
) -> PayrollRunResponse:
    """Approve a draft run. The creator cannot approve their own run."""
    run = await PayrollAggregator(db).approve_run(run_id, staff_user_id)
    return PayrollRunResponse.model_validate(run)


@router.post(
    "/{run_id}/mark-paid",
    response_model=PayrollRunResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def mark_payroll_run_paid(
    db: DbSession,
    staff_user_id: StaffUserId,
    run_id: Annotated[UUID, Path()],
) -> PayrollRunResponse:
    run = await PayrollAggregator(db).mark_paid(run_id, staff_user_id)
    return PayrollRunResponse.model_validate(run)


@router.post(
    "/{run_id}/recalculate",
    response_model=PayrollRunResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def recalculate_payroll_run(
    db: DbSession,
    staff_user_id: StaffUserId,
    run_id: Annotated[UUID, Path()],
) -> PayrollRunResponse:
    """Recompute a draft run's totals after its entries or adjustments changed."""
    run = await PayrollAggregator(db).recalculate_totals(run_id)
    return PayrollRunResponse.model_validate(run)
