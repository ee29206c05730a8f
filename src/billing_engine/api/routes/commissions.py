"""Commission settings, ledger and payment endpoints."""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, HTTPException, Path, Query, status
from sqlalchemy import select

from billing_engine.api.dependencies import AppSettings, DbSession, Gateway, StaffUserId
from billing_engine.api.schemas import (
    AdjustmentCreate,
    AdjustmentResponse,
    ApproveEntriesRequest,
    ApproveEntriesResponse,
    CommissionSettingResponse,
    CommissionSettingUpdate,
    ErrorResponse,
    LedgerEntryResponse,
    RefundResponse,
)
from billing_engine.models import CommissionLedgerEntry, LedgerStatus
from billing_engine.services import (
    CommissionCalculator,
    CommissionSettingsService,
    PaymentService,
    PayrollAggregator,
)

router = APIRouter(tags=["commissions"])


# ============================================================================
# Commission settings
# ============================================================================


@router.get("/commission-settings", response_model=list[CommissionSettingResponse])
async def list_commission_settings(db: DbSession) -> list[CommissionSettingResponse]:
    settings = await CommissionSettingsService(db).list_settings()
    return [CommissionSettingResponse.model_validate(s) for s in settings]


@router.get(
    "/commission-settings/{setting_key}",
    response_model=CommissionSettingResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_commission_setting(
    db: DbSession,
    setting_key: Annotated[str, Path()],
) -> CommissionSettingResponse:
    setting = await CommissionSettingsService(db).get_setting(setting_key)
    if setting is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Commission setting {setting_key} not found",
        )
    return CommissionSettingResponse.model_validate(setting)


@router.put(
    "/commission-settings/{setting_key}",
    response_model=CommissionSettingResponse,
    responses={422: {"model": ErrorResponse}},
)
async def update_commission_setting(
    db: DbSession,
    staff_user_id: StaffUserId,
    setting_key: Annotated[str, Path()],
    payload: CommissionSettingUpdate,
) -> CommissionSettingResponse:
    """Create or change a rate. Takes effect for the next commission sweep."""
    setting = await CommissionSettingsService(db).update_setting(
        setting_key,
        payload.setting_value,
        updated_by=staff_user_id,
        description=payload.description,
    )
    return CommissionSettingResponse.model_validate(setting)


# ============================================================================
# Ledger
# ============================================================================


@router.get("/ledger", response_model=list[LedgerEntryResponse])
async def list_ledger_entries(
    db: DbSession,
    entry_status: Annotated[LedgerStatus | None, Query(alias="status")] = None,
    user_id: Annotated[UUID | None, Query()] = None,
    payment_id: Annotated[UUID | None, Query()] = None,
    limit: Annotated[int, Query(ge=1, le=500)] = 100,
) -> list[LedgerEntryResponse]:
    stmt = select(CommissionLedgerEntry).order_by(CommissionLedgerEntry.created_at.desc())
    if entry_status is not None:
        stmt = stmt.where(CommissionLedgerEntry.status == entry_status)
    if user_id is not None:
        stmt = stmt.where(CommissionLedgerEntry.user_id == user_id)
    if payment_id is not None:
        stmt = stmt.where(CommissionLedgerEntry.payment_id == payment_id)
    result = await db.execute(stmt.limit(limit))
    return [LedgerEntryResponse.model_validate(e) for e in result.scalars().all()]


@router.post("/ledger/approve", response_model=ApproveEntriesResponse)
async def approve_ledger_entries(
    db: DbSession,
    staff_user_id: StaffUserId,
    settings: AppSettings,
    payload: ApproveEntriesRequest,
) -> ApproveEntriesResponse:
    """Approve pending entries so the next payroll run picks them up."""
    calculator = CommissionCalculator(db, policy=settings.commission_policy())
    approved = await calculator.approve_entries(payload.entry_ids)
    return ApproveEntriesResponse(approved=approved)


# ============================================================================
# Adjustments
# ============================================================================


@router.post(
    "/adjustments",
    response_model=AdjustmentResponse,
    status_code=status.HTTP_201_CREATED,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def create_adjustment(
    db: DbSession,
    staff_user_id: StaffUserId,
    payload: AdjustmentCreate,
) -> AdjustmentResponse:
    adjustment = await PayrollAggregator(db).add_adjustment(
        user_id=payload.user_id,
        amount=payload.amount,
        adjustment_type=payload.adjustment_type,
        reason=payload.reason,
        created_by=staff_user_id,
        payroll_run_id=payload.payroll_run_id,
        related_payment_id=payload.related_payment_id,
        related_ledger_id=payload.related_ledger_id,
    )
    return AdjustmentResponse.model_validate(adjustment)


# ============================================================================
# Payments
# ============================================================================


@router.post(
    "/payments/{payment_id}/refund",
    response_model=RefundResponse,
    responses={404: {"model": ErrorResponse}, 502: {"model": ErrorResponse}},
)
async def refund_payment(
    db: DbSession,
    gateway: Gateway,
    staff_user_id: StaffUserId,
    payment_id: Annotated[UUID, Path()],
) -> RefundResponse:
    """Refund through the gateway and unwind the payment's commission."""
    outcome = await PaymentService(db, gateway).refund(payment_id, actor=staff_user_id)
    return RefundResponse(
        payment_id=outcome.payment_id,
        refund_id=outcome.refund_id,
        voided_entries=outcome.voided_entries,
        chargeback_adjustments=outcome.chargeback_adjustments,
        already_refunded=outcome.already_refunded,
    )
