"""ORM models for the billing engine."""

from billing_engine.models.base import Base, TimestampMixin, UTCDateTime, utc_now
from billing_engine.models.billing import Payment, PaymentSchedule, ScheduledCharge
from billing_engine.models.commission import (
    CommissionAdjustment,
    CommissionLedgerEntry,
    CommissionSetting,
    PayrollRun,
)
from billing_engine.models.enums import (
    AdjustmentType,
    ChargeStatus,
    LeadSource,
    LedgerStatus,
    PaymentStatus,
    PayrollRunStatus,
    ScheduleStatus,
    SplitRole,
)
from billing_engine.models.people import Client, StaffUser

__all__ = [
    "Base",
    "TimestampMixin",
    "UTCDateTime",
    "utc_now",
    "StaffUser",
    "Client",
    "PaymentSchedule",
    "ScheduledCharge",
    "Payment",
    "CommissionSetting",
    "CommissionLedgerEntry",
    "CommissionAdjustment",
    "PayrollRun",
    "AdjustmentType",
    "ChargeStatus",
    "LeadSource",
    "LedgerStatus",
    "PaymentStatus",
    "PayrollRunStatus",
    "ScheduleStatus",
    "SplitRole",
]
