"""Payment recording and refunds."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from billing_engine.exceptions import BillingEngineError, InvalidTransitionError, NotFoundError
from billing_engine.gateway.base import PaymentGateway
from billing_engine.models import (
    AdjustmentType,
    ChargeStatus,
    CommissionAdjustment,
    CommissionLedgerEntry,
    LedgerStatus,
    Payment,
    PaymentStatus,
    ScheduledCharge,
    utc_now,
)

logger = logging.getLogger(__name__)


@dataclass
class RefundOutcome:
    """What a refund changed."""

    payment_id: UUID
    refund_id: str | None = None
    voided_entries: int = 0
    chargeback_adjustments: list[UUID] = field(default_factory=list)
    already_refunded: bool = False


@dataclass
class PaymentRecordingResult:
    """Result of a payment recording pass."""

    processed: int = 0
    recorded: int = 0
    failed: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "recorded": self.recorded,
            "failed": self.failed,
            "errors": list(self.errors),
        }


class PaymentService:
    """Creates payments from settled charges and handles refunds."""

    def __init__(self, session: AsyncSession, gateway: PaymentGateway | None = None):
        self.session = session
        self.gateway = gateway

    async def record_charge_payment(self, charge_id: UUID) -> Payment:
        """Payment row for a succeeded scheduled charge (created once)."""
        existing = await self._payment_for_charge(charge_id)
        if existing is not None:
            return existing

        charge = await self.session.get(
            ScheduledCharge,
            charge_id,
            options=[selectinload(ScheduledCharge.schedule)],
            populate_existing=True,
        )
        if charge is None:
            raise NotFoundError("ScheduledCharge", charge_id)
        if charge.status != ChargeStatus.SUCCEEDED:
            raise InvalidTransitionError(
                charge.status, ChargeStatus.SUCCEEDED, "charge has not succeeded"
            )

        payment = Payment(
            client_id=charge.schedule.client_id,
            scheduled_charge_id=charge_id,
            gateway_payment_id=charge.gateway_payment_id,
            amount=charge.amount,
            status=PaymentStatus.SUCCEEDED,
            paid_at=charge.charged_at or utc_now(),
        )
        self.session.add(payment)
        try:
            await self.session.commit()
        except IntegrityError:
            await self.session.rollback()
            existing = await self._payment_for_charge(charge_id)
            if existing is None:
                raise
            return existing

        logger.info("Recorded payment %s for charge %s", payment.payment_id, charge_id)
        return payment

    async def select_unrecorded(self, limit: int | None = None) -> list[UUID]:
        """Succeeded charges that have no payment row yet, oldest first."""
        stmt = (
            select(ScheduledCharge.scheduled_charge_id)
            .outerjoin(Payment, Payment.scheduled_charge_id == ScheduledCharge.scheduled_charge_id)
            .where(
                ScheduledCharge.status == ChargeStatus.SUCCEEDED,
                Payment.payment_id.is_(None),
            )
            .order_by(ScheduledCharge.charged_at, ScheduledCharge.scheduled_charge_id)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def record_unrecorded(self, limit: int | None = None) -> PaymentRecordingResult:
        """Create payments for every succeeded charge still missing one.

        Works from the database rather than a sweep's in-memory results, so a
        charge whose sweep stopped after charging is picked up by the next pass.
        A failure on one charge is reported and the rest are still recorded.
        """
        result = PaymentRecordingResult()
        for charge_id in await self.select_unrecorded(limit):
            result.processed += 1
            try:
                await self.record_charge_payment(charge_id)
            except (BillingEngineError, SQLAlchemyError) as e:
                logger.exception("Recording payment for charge %s failed", charge_id)
                await self.session.rollback()
                result.failed += 1
                result.errors.append({"charge_id": str(charge_id), "message": str(e)})
                continue
            result.recorded += 1

        logger.info(
            "Payment recording: %d processed, %d recorded, %d failed",
            result.processed,
            result.recorded,
            result.failed,
        )
        return result

    async def refund(
        self, payment_id: UUID, actor: UUID | None = None, now: datetime | None = None
    ) -> RefundOutcome:
        """Refund a payment and unwind its commission.

        Unpaid entries are voided. Paid entries stay as they are; each gets
        a negative chargeback adjustment for the next payroll run instead.
        """
        now = now or utc_now()
        payment = await self.session.get(Payment, payment_id, populate_existing=True)
        if payment is None:
            raise NotFoundError("Payment", payment_id)

        outcome = RefundOutcome(payment_id=payment_id)
        if payment.status == PaymentStatus.REFUNDED:
            outcome.already_refunded = True
            return outcome

        if self.gateway is not None and payment.gateway_payment_id:
            refund = await self.gateway.refund(payment.gateway_payment_id)
            outcome.refund_id = refund.refund_id

        payment.status = PaymentStatus.REFUNDED
        payment.refunded_at = now

        voided = await self.session.execute(
            update(CommissionLedgerEntry)
            .where(
                CommissionLedgerEntry.payment_id == payment_id,
                CommissionLedgerEntry.status.in_([LedgerStatus.PENDING, LedgerStatus.APPROVED]),
            )
            .values(status=LedgerStatus.VOID, voided_at=now)
            .execution_options(synchronize_session=False)
        )
        outcome.voided_entries = voided.rowcount

        paid = await self.session.execute(
            select(CommissionLedgerEntry).where(
                CommissionLedgerEntry.payment_id == payment_id,
                CommissionLedgerEntry.status == LedgerStatus.PAID,
            )
        )
        for entry in paid.scalars().all():
            if not entry.commission_amount:
                continue
            adjustment = CommissionAdjustment(
                user_id=entry.user_id,
                amount=-entry.commission_amount,
                adjustment_type=AdjustmentType.CHARGEBACK,
                reason=f"Refund of payment {payment_id}",
                related_payment_id=payment_id,
                related_ledger_id=entry.ledger_entry_id,
                created_by=actor,
            )
            self.session.add(adjustment)
            await self.session.flush()
            outcome.chargeback_adjustments.append(adjustment.adjustment_id)

        await self.session.commit()
        logger.info(
            "Refunded payment %s: %d entries voided, %d chargebacks",
            payment_id,
            outcome.voided_entries,
            len(outcome.chargeback_adjustments),
        )
        return outcome

    async def _payment_for_charge(self, charge_id: UUID) -> Payment | None:
        result = await self.session.execute(
            select(Payment).where(Payment.scheduled_charge_id == charge_id)
        )
        return result.scalar_one_or_none()
