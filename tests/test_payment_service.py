"""Tests for payment recording and refunds."""

from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import func, select

from billing_engine.exceptions import InvalidTransitionError, NotFoundError, PersistenceError
from billing_engine.models import (
    AdjustmentType,
    CommissionAdjustment,
    CommissionLedgerEntry,
    LedgerStatus,
    Payment,
    PaymentStatus,
    ScheduledCharge,
)
from billing_engine.services.charge_processor import ChargeProcessor
from billing_engine.services.payment_service import PaymentService

from .conftest import NOW


async def only_charge(session, schedule) -> ScheduledCharge:
    result = await session.execute(
        select(ScheduledCharge)
        .where(ScheduledCharge.payment_schedule_id == schedule.payment_schedule_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


class TestRecordChargePayment:
    async def test_payment_created_once(self, session, gateway, make_schedule):
        schedule = await make_schedule([Decimal("300.00")])
        await ChargeProcessor(session, gateway).process_due(NOW)
        charge = await only_charge(session, schedule)
        service = PaymentService(session)

        payment = await service.record_charge_payment(charge.scheduled_charge_id)
        again = await service.record_charge_payment(charge.scheduled_charge_id)

        assert again.payment_id == payment.payment_id
        assert payment.amount == Decimal("300.00")
        assert payment.client_id == schedule.client_id
        assert payment.gateway_payment_id == charge.gateway_payment_id
        assert payment.paid_at == NOW
        assert payment.status == PaymentStatus.SUCCEEDED

    async def test_unsettled_charge_rejected(self, session, make_schedule):
        schedule = await make_schedule()
        charge = await only_charge(session, schedule)

        with pytest.raises(InvalidTransitionError):
            await PaymentService(session).record_charge_payment(charge.scheduled_charge_id)

    async def test_unknown_charge(self, session):
        with pytest.raises(NotFoundError):
            await PaymentService(session).record_charge_payment(uuid4())


class TestRecordUnrecorded:
    async def test_records_successes_from_an_earlier_sweep(self, session, gateway, make_schedule):
        schedule = await make_schedule([Decimal("120.00")])
        # The charging sweep stopped before it recorded anything
        await ChargeProcessor(session, gateway).process_due(NOW)
        charge = await only_charge(session, schedule)

        result = await PaymentService(session).record_unrecorded()

        assert result.to_dict() == {"processed": 1, "recorded": 1, "failed": 0, "errors": []}
        payment = (
            await session.execute(
                select(Payment).where(Payment.scheduled_charge_id == charge.scheduled_charge_id)
            )
        ).scalar_one()
        assert payment.amount == Decimal("120.00")

    async def test_second_pass_finds_nothing(self, session, gateway, make_schedule):
        await make_schedule([Decimal("120.00")])
        await ChargeProcessor(session, gateway).process_due(NOW)
        service = PaymentService(session)

        await service.record_unrecorded()
        again = await service.record_unrecorded()

        assert again.processed == 0
        assert await session.scalar(select(func.count()).select_from(Payment)) == 1

    async def test_unsettled_charges_ignored(self, session, make_schedule):
        await make_schedule()

        assert await PaymentService(session).select_unrecorded() == []

    async def test_one_failure_does_not_stop_the_rest(
        self, session, gateway, make_schedule, monkeypatch
    ):
        first = await make_schedule([Decimal("10.00")])
        second = await make_schedule([Decimal("20.00")])
        await ChargeProcessor(session, gateway).process_due(NOW)
        broken = (await only_charge(session, first)).scheduled_charge_id
        original = PaymentService.record_charge_payment

        async def record(self, charge_id):
            if charge_id == broken:
                raise PersistenceError("write conflict")
            return await original(self, charge_id)

        monkeypatch.setattr(PaymentService, "record_charge_payment", record)

        result = await PaymentService(session).record_unrecorded()

        assert result.processed == 2
        assert result.recorded == 1
        assert result.failed == 1
        assert result.errors[0]["charge_id"] == str(broken)
        recorded = (await session.execute(select(Payment))).scalar_one()
        assert recorded.scheduled_charge_id == (
            await only_charge(session, second)
        ).scheduled_charge_id


class TestRefund:
    async def test_refund_unwinds_commission(
        self, session, gateway, make_staff, make_client, make_payment, make_entry
    ):
        coach = await make_staff()
        closer = await make_staff("Closer", role="closer")
        client = await make_client(coach=coach, closer=closer)
        gateway.add_captured("pi_refund_me", Decimal("1000.00"))
        payment = await make_payment(client, gateway_payment_id="pi_refund_me")
        unpaid = await make_entry(payment, coach, status=LedgerStatus.APPROVED)
        paid = await make_entry(payment, closer, Decimal("20.00"), status=LedgerStatus.PAID)
        actor = uuid4()

        outcome = await PaymentService(session, gateway).refund(
            payment.payment_id, actor=actor, now=NOW
        )

        assert gateway.refunds == ["pi_refund_me"]
        assert outcome.refund_id is not None
        assert outcome.voided_entries == 1

        payment = await session.get(Payment, payment.payment_id, populate_existing=True)
        assert payment.status == PaymentStatus.REFUNDED
        assert payment.refunded_at == NOW

        unpaid = await session.get(
            CommissionLedgerEntry, unpaid.ledger_entry_id, populate_existing=True
        )
        paid = await session.get(
            CommissionLedgerEntry, paid.ledger_entry_id, populate_existing=True
        )
        assert unpaid.status == LedgerStatus.VOID
        assert paid.status == LedgerStatus.PAID

        [adjustment_id] = outcome.chargeback_adjustments
        adjustment = await session.get(CommissionAdjustment, adjustment_id)
        assert adjustment.amount == Decimal("-20.00")
        assert adjustment.adjustment_type == AdjustmentType.CHARGEBACK
        assert adjustment.user_id == closer.staff_user_id
        assert adjustment.related_ledger_id == paid.ledger_entry_id
        assert adjustment.created_by == actor
        assert adjustment.payroll_run_id is None

    async def test_second_refund_is_a_no_op(
        self, session, gateway, make_client, make_payment
    ):
        client = await make_client()
        gateway.add_captured("pi_once", Decimal("50.00"))
        payment = await make_payment(client, Decimal("50.00"), gateway_payment_id="pi_once")
        service = PaymentService(session, gateway)

        await service.refund(payment.payment_id, now=NOW)
        again = await service.refund(payment.payment_id, now=NOW)

        assert again.already_refunded is True
        assert gateway.refunds == ["pi_once"]

    async def test_unknown_payment(self, session, gateway):
        with pytest.raises(NotFoundError):
            await PaymentService(session, gateway).refund(uuid4())
