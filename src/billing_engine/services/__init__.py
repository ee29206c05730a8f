"""Billing engine services."""

from billing_engine.services.charge_processor import ChargeProcessor, SweepSummary
from billing_engine.services.commission_calculator import CommissionCalculator
from billing_engine.services.commission_settings import CommissionSettingsService
from billing_engine.services.duplicate_resolver import DuplicateResolver
from billing_engine.services.fee_reconciler import FeeReconciler
from billing_engine.services.payment_service import PaymentService
from billing_engine.services.payroll_aggregator import PayrollAggregator, period_for, recent_periods
from billing_engine.services.schedule_cleaner import ScheduleCleaner
from billing_engine.services.schedule_service import Installment, ScheduleService

__all__ = [
    "ChargeProcessor",
    "SweepSummary",
    "CommissionCalculator",
    "CommissionSettingsService",
    "DuplicateResolver",
    "FeeReconciler",
    "PaymentService",
    "PayrollAggregator",
    "period_for",
    "recent_periods",
    "ScheduleCleaner",
    "Installment",
    "ScheduleService",
]
