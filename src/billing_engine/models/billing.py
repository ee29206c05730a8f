"""Payment schedule, scheduled charge and settled payment models."""

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
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from billing_engine.models.base import Base, TimestampMixin, status_enum
from billing_engine.models.enums import ChargeStatus, PaymentStatus, ScheduleStatus

if TYPE_CHECKING:
    from billing_engine.models.people import Client


class PaymentSchedule(Base, TimestampMixin):
    """A client's agreed installment plan."""

    __tablename__ = "payment_schedule"

    payment_schedule_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    client_id: Mapped[UUID] = mapped_column(
        ForeignKey("client.client_id", ondelete="CASCADE"), nullable=False
    )
    gateway_customer_id: Mapped[str | None] = mapped_column(String, nullable=True)
    gateway_payment_method_id: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[ScheduleStatus] = mapped_column(
        status_enum(ScheduleStatus, "payment_schedule_status"),
        nullable=False,
        default=ScheduleStatus.PENDING_INITIAL,
    )
    needs_review: Mapped[bool] = mapped_column(default=False, nullable=False)

    # Relationships
    client: Mapped[Client] = relationship()
    charges: Mapped[list[ScheduledCharge]] = relationship(
        back_populates="schedule",
        order_by="ScheduledCharge.installment_number",
    )


class ScheduledCharge(Base, TimestampMixin):
    """One installment of a payment schedule."""

    __tablename__ = "scheduled_charge"

    scheduled_charge_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    payment_schedule_id: Mapped[UUID] = mapped_column(
        ForeignKey("payment_schedule.payment_schedule_id", ondelete="CASCADE"),
        nullable=False,
    )
    installment_number: Mapped[int] = mapped_column(nullable=False)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[ChargeStatus] = mapped_column(
        status_enum(ChargeStatus, "scheduled_charge_status"),
        nullable=False,
        default=ChargeStatus.PENDING,
    )
    attempt_count: Mapped[int] = mapped_column(default=0, nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    idempotency_key: Mapped[str | None] = mapped_column(String, nullable=True)
    claimed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    gateway_payment_id: Mapped[str | None] = mapped_column(String, nullable=True)
    charged_at: Mapped[datetime | None] = mapped_column(nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "payment_schedule_id",
            "installment_number",
            name="scheduled_charge_installment_unique",
        ),
        CheckConstraint("amount > 0", name="scheduled_charge_amount_check"),
        CheckConstraint("attempt_count >= 0", name="scheduled_charge_attempts_check"),
        # At most one in-flight charge per schedule
        Index(
            "scheduled_charge_one_processing",
            "payment_schedule_id",
            unique=True,
            postgresql_where=text("status = 'processing'"),
            sqlite_where=text("status = 'processing'"),
        ),
        Index("scheduled_charge_due_idx", "status", "due_date"),
    )

    # Relationships
    schedule: Mapped[PaymentSchedule] = relationship(back_populates="charges")


class Payment(Base, TimestampMixin):
    """Money received from a client, with settlement fee data once known."""

    __tablename__ = "payment"

    payment_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    client_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("client.client_id", ondelete="SET NULL"), nullable=True
    )
    scheduled_charge_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("scheduled_charge.scheduled_charge_id", ondelete="SET NULL"),
        nullable=True,
        unique=True,
    )
    gateway_payment_id: Mapped[str | None] = mapped_column(
        String, nullable=True, unique=True
    )
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    fee: Mapped[Decimal | None] = mapped_column(nullable=True)
    net_amount: Mapped[Decimal | None] = mapped_column(nullable=True)
    status: Mapped[PaymentStatus] = mapped_column(
        status_enum(PaymentStatus, "payment_status"),
        nullable=False,
        default=PaymentStatus.SUCCEEDED,
    )
    paid_at: Mapped[datetime] = mapped_column(nullable=False)
    refunded_at: Mapped[datetime | None] = mapped_column(nullable=True)
    commission_calculated: Mapped[bool] = mapped_column(default=False, nullable=False)

    __table_args__ = (
        CheckConstraint("amount > 0", name="payment_amount_check"),
        CheckConstraint("fee IS NULL OR fee >= 0", name="payment_fee_check"),
    )

    # Relationships
    client: Mapped[Client | None] = relationship()

    @property
    def commission_basis(self) -> Decimal:
        """Net amount when fees are known, otherwise the gross amount."""
        if self.net_amount is not None:
            return self.net_amount
        return self.amount
