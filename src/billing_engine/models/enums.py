"""Status and classification enums persisted on billing rows."""

from __future__ import annotations

from enum import Enum


class ScheduleStatus(str, Enum):
    """Payment schedule status values."""

    PENDING_INITIAL = "pending_initial"
    ACTIVE = "active"
    COMPLETED = "completed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class ChargeStatus(str, Enum):
    """Scheduled charge status values."""

    PENDING = "pending"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class PaymentStatus(str, Enum):
    """Settled payment status values."""

    SUCCEEDED = "succeeded"
    REFUNDED = "refunded"


class LedgerStatus(str, Enum):
    """Commission ledger entry status values."""

    PENDING = "pending"
    APPROVED = "approved"
    VOID = "void"
    PAID = "paid"


class SplitRole(str, Enum):
    """Staff function compensated by a ledger entry."""

    COACH = "coach"
    CLOSER = "closer"
    SETTER = "setter"


class PayrollRunStatus(str, Enum):
    """Payroll run status values."""

    DRAFT = "draft"
    APPROVED = "approved"
    PAID = "paid"


class LeadSource(str, Enum):
    """Where a client originated."""

    COMPANY_DRIVEN = "company_driven"
    COACH_DRIVEN = "coach_driven"


class AdjustmentType(str, Enum):
    """Kinds of manual commission correction."""

    BONUS = "bonus"
    DEDUCTION = "deduction"
    CORRECTION = "correction"
    CHARGEBACK = "chargeback"
    REFERRAL = "referral"
