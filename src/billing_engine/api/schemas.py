"""Pydantic schemas for API request/response models."""

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from billing_engine.models.enums import (
    AdjustmentType,
    LedgerStatus,
    PayrollRunStatus,
    SplitRole,
)


class ErrorResponse(BaseModel):
    """Error body returned by every failing endpoint."""

    detail: str
    code: str


# ============================================================================
# Commission settings
# ============================================================================


class CommissionSettingResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    setting_key: str
    setting_value: Decimal
    description: str | None = None
    updated_by: UUID | None = None
    updated_at: datetime


class CommissionSettingUpdate(BaseModel):
    setting_value: Decimal = Field(ge=0, le=1)
    description: str | None = None


# ============================================================================
# Ledger
# ============================================================================


class LedgerEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    ledger_entry_id: UUID
    payment_id: UUID
    user_id: UUID
    client_id: UUID | None = None
    gross_amount: Decimal
    net_amount: Decimal
    commission_amount: Decimal
    percentage: Decimal
    rate_source: str | None = None
    split_role: SplitRole
    status: LedgerStatus
    payroll_run_id: UUID | None = None
    created_at: datetime
    approved_at: datetime | None = None
    voided_at: datetime | None = None
    paid_at: datetime | None = None


class ApproveEntriesRequest(BaseModel):
    """Entries to approve; omit ``entry_ids`` to approve every pending entry."""

    entry_ids: list[UUID] | None = None


class ApproveEntriesResponse(BaseModel):
    approved: int


# ============================================================================
# Adjustments
# ============================================================================


class AdjustmentCreate(BaseModel):
    user_id: UUID
    amount: Decimal
    adjustment_type: AdjustmentType
    reason: str = Field(min_length=5)
    payroll_run_id: UUID | None = None
    related_payment_id: UUID | None = None
    related_ledger_id: UUID | None = None


class AdjustmentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    adjustment_id: UUID
    user_id: UUID
    payroll_run_id: UUID | None = None
    amount: Decimal
    adjustment_type: AdjustmentType
    reason: str | None = None
    related_payment_id: UUID | None = None
    related_ledger_id: UUID | None = None
    created_by: UUID | None = None
    created_at: datetime


# ============================================================================
# Payroll runs
# ============================================================================


class PayrollRunCreate(BaseModel):
    period_start: date
    notes: str | None = None


class PayrollRunResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    payroll_run_id: UUID
    period_start: date
    period_end: date
    payout_date: date
    status: PayrollRunStatus
    total_commission: Decimal
    total_adjustments: Decimal
    total_payout: Decimal
    transaction_count: int
    created_by: UUID | None = None
    approved_by: UUID | None = None
    approved_at: datetime | None = None
    paid_by: UUID | None = None
    paid_at: datetime | None = None
    notes: str | None = None
    created_at: datetime


class PayrollRunDetailResponse(PayrollRunResponse):
    entries: list[LedgerEntryResponse] = []
    adjustments: list[AdjustmentResponse] = []


class PayrollRunListResponse(BaseModel):
    items: list[PayrollRunResponse]
    total: int


class PayPeriodResponse(BaseModel):
    start: date
    end: date
    payout_date: date


# ============================================================================
# Payments
# ============================================================================


class RefundResponse(BaseModel):
    payment_id: UUID
    refund_id: str | None = None
    voided_entries: int
    chargeback_adjustments: list[UUID]
    already_refunded: bool

