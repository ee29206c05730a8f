"""Commission settings, ledger, adjustment and payroll run models."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING
from uuid import UUID, uuid4

from sqlalchemy import (
    CheckConstraint,
    Date,
    ForeignKey,
    Index,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from billing_engine.models.base import RATE, Base, TimestampMixin, status_enum, utc_now
from billing_engine.models.enums import (
    AdjustmentType,
    LedgerStatus,
    PayrollRunStatus,
    SplitRole,
)

if TYPE_CHECKING:
    from billing_engine.models.billing import Payment


# ===== Rate Settings =====


class CommissionSetting(Base):
    """A named commission rate, optionally scoped to one split role."""

    __tablename__ = "commission_setting"

    setting_key: Mapped[str] = mapped_column(String, primary_key=True)
    setting_value: Mapped[Decimal] = mapped_column(RATE, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_by: Mapped[UUID | None] = mapped_column(nullable=True)
    updated_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "setting_value >= 0 AND setting_value <= 1",
            name="commission_setting_value_check",
        ),
    )


# ===== Payroll Runs =====


class PayrollRun(Base, TimestampMixin):
    """Locked batch of commission entries for one biweekly period."""

    __tablename__ = "payroll_run"

    payroll_run_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    period_start: Mapped[date] = mapped_column(Date, nullable=False, unique=True)
    period_end: Mapped[date] = mapped_column(Date, nullable=False)
    payout_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[PayrollRunStatus] = mapped_column(
        status_enum(PayrollRunStatus, "payroll_run_status"),
        nullable=False,
        default=PayrollRunStatus.DRAFT,
    )
    total_commission: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)
    total_adjustments: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)
    total_payout: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)
    transaction_count: Mapped[int] = mapped_column(default=0, nullable=False)
    created_by: Mapped[UUID | None] = mapped_column(nullable=True)
    approved_by: Mapped[UUID | None] = mapped_column(nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(nullable=True)
    paid_by: Mapped[UUID | None] = mapped_column(nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint("period_end >= period_start", name="payroll_run_period_check"),
        # Exact decimal comparison needs a native NUMERIC backend
        CheckConstraint(
            "total_payout = total_commission + total_adjustments",
            name="payroll_run_payout_check",
        ).ddl_if(dialect="postgresql"),
    )

    # Relationships
    entries: Mapped[list[CommissionLedgerEntry]] = relationship(back_populates="payroll_run")
    adjustments: Mapped[list[CommissionAdjustment]] = relationship(
        back_populates="payroll_run"
    )


# ===== Ledger =====


class CommissionLedgerEntry(Base, TimestampMixin):
    """One commission attribution for one payment and one split role."""

    __tablename__ = "commission_ledger_entry"

    ledger_entry_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    payment_id: Mapped[UUID] = mapped_column(
        ForeignKey("payment.payment_id", ondelete="RESTRICT"), nullable=False
    )
    user_id: Mapped[UUID] = mapped_column(
        ForeignKey("staff_user.staff_user_id", ondelete="RESTRICT"), nullable=False
    )
    client_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("client.client_id", ondelete="SET NULL"), nullable=True
    )
    gross_amount: Mapped[Decimal] = mapped_column(nullable=False)
    net_amount: Mapped[Decimal] = mapped_column(nullable=False)
    commission_amount: Mapped[Decimal] = mapped_column(nullable=False)
    percentage: Mapped[Decimal] = mapped_column(RATE, nullable=False)
    rate_source: Mapped[str | None] = mapped_column(String, nullable=True)
    split_role: Mapped[SplitRole] = mapped_column(
        status_enum(SplitRole, "ledger_split_role"), nullable=False
    )
    status: Mapped[LedgerStatus] = mapped_column(
        status_enum(LedgerStatus, "ledger_status"),
        nullable=False,
        default=LedgerStatus.PENDING,
    )
    payroll_run_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("payroll_run.payroll_run_id", ondelete="RESTRICT"), nullable=True
    )
    approved_at: Mapped[datetime | None] = mapped_column(nullable=True)
    voided_at: Mapped[datetime | None] = mapped_column(nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(nullable=True)

    __table_args__ = (
        CheckConstraint("commission_amount >= 0", name="ledger_commission_amount_check"),
        CheckConstraint(
            "(status = 'void') = (voided_at IS NOT NULL)",
            name="ledger_voided_at_check",
        ),
        Index("ledger_payment_role_idx", "payment_id", "split_role"),
        Index("ledger_status_created_idx", "status", "created_at"),
    )

    # Relationships
    payment: Mapped[Payment] = relationship()
    payroll_run: Mapped[PayrollRun | None] = relationship(back_populates="entries")


class CommissionAdjustment(Base, TimestampMixin):
    """Signed manual correction to a staff member's payout."""

    __tablename__ = "commission_adjustment"

    adjustment_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(
        ForeignKey("staff_user.staff_user_id", ondelete="RESTRICT"), nullable=False
    )
    payroll_run_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("payroll_run.payroll_run_id", ondelete="RESTRICT"), nullable=True
    )
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    adjustment_type: Mapped[AdjustmentType] = mapped_column(
        status_enum(AdjustmentType, "commission_adjustment_type"), nullable=False
    )
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    related_payment_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("payment.payment_id", ondelete="SET NULL"), nullable=True
    )
    related_ledger_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("commission_ledger_entry.ledger_entry_id", ondelete="SET NULL"),
        nullable=True,
    )
    created_by: Mapped[UUID | None] = mapped_column(nullable=True)

    __table_args__ = (CheckConstraint("amount <> 0", name="commission_adjustment_amount_check"),)

    # Relationships
    payroll_run: Mapped[PayrollRun | None] = relationship(back_populates="adjustments")
