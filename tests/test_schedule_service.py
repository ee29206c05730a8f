"""Tests for schedule lifecycle operations."""

from datetime import date, timedelta
from decimal import Decimal
from uuid import uuid4

import pytest

from billing_engine.config import ChargePolicy
from billing_engine.exceptions import InvalidTransitionError, NotFoundError
from billing_engine.gateway.stub import DECLINE
from billing_engine.models import ChargeStatus, ScheduleStatus
from billing_engine.services.charge_processor import ChargeProcessor
from billing_engine.services.schedule_service import Installment, ScheduleService

from .conftest import NOW, TODAY


class TestCreateSchedule:
    async def test_installments_numbered_by_due_date(self, session, make_client):
        client = await make_client()
        service = ScheduleService(session)

        schedule = await service.create_schedule(
            client.client_id,
            [
                Installment(Decimal("200.00"), date(2025, 2, 15)),
                Installment(Decimal("100.00"), date(2025, 1, 15)),
            ],
            gateway_customer_id="cus_1",
            gateway_payment_method_id="pm_1",
        )

        schedule = await service.get_schedule(schedule.payment_schedule_id)
        assert schedule.status == ScheduleStatus.PENDING_INITIAL
        assert [(c.installment_number, c.amount) for c in schedule.charges] == [
            (1, Decimal("100.00")),
            (2, Decimal("200.00")),
        ]
        assert all(c.status == ChargeStatus.PENDING for c in schedule.charges)

    async def test_rejects_empty_and_non_positive(self, session, make_client):
        client = await make_client()
        service = ScheduleService(session)

        with pytest.raises(ValueError):
            await service.create_schedule(client.client_id, [])
        with pytest.raises(ValueError):
            await service.create_schedule(
                client.client_id, [Installment(Decimal("0"), TODAY)]
            )

    async def test_unknown_client(self, session):
        with pytest.raises(NotFoundError):
            await ScheduleService(session).create_schedule(
                uuid4(), [Installment(Decimal("10.00"), TODAY)]
            )


class TestScheduleTransitions:
    async def test_activate(self, session, make_schedule):
        schedule = await make_schedule(status=ScheduleStatus.PENDING_INITIAL)

        schedule = await ScheduleService(session).activate(schedule.payment_schedule_id)

        assert schedule.status == ScheduleStatus.ACTIVE

    async def test_cannot_activate_expired(self, session, make_schedule):
        schedule = await make_schedule(status=ScheduleStatus.EXPIRED)

        with pytest.raises(InvalidTransitionError):
            await ScheduleService(session).activate(schedule.payment_schedule_id)

    async def test_cancel_skips_unbilled_charges(self, session, gateway, make_schedule):
        schedule = await make_schedule([Decimal("50.00"), Decimal("50.00")])
        await ChargeProcessor(session, gateway).process_due(NOW)

        schedule = await ScheduleService(session).cancel(schedule.payment_schedule_id)

        assert schedule.status == ScheduleStatus.CANCELLED
        assert [c.status for c in schedule.charges] == [
            ChargeStatus.SUCCEEDED,
            ChargeStatus.SKIPPED,
        ]


class TestChargeActions:
    async def test_skip_charge(self, session, make_schedule):
        schedule = await make_schedule()
        service = ScheduleService(session)
        [charge] = (await service.get_schedule(schedule.payment_schedule_id)).charges

        skipped = await service.skip_charge(charge.scheduled_charge_id)

        assert skipped.status == ChargeStatus.SKIPPED

    async def test_retry_failed_charge_grants_one_attempt(self, session, gateway, make_schedule):
        schedule = await make_schedule()
        policy = ChargePolicy(max_attempts=1)
        gateway.script(DECLINE, DECLINE)
        processor = ChargeProcessor(session, gateway, policy)
        service = ScheduleService(session)

        await processor.process_due(NOW)
        [charge] = (await service.get_schedule(schedule.payment_schedule_id)).charges
        assert charge.status == ChargeStatus.FAILED

        retried = await service.retry_failed_charge(
            charge.scheduled_charge_id, TODAY + timedelta(days=1)
        )
        assert retried.status == ChargeStatus.PENDING
        assert retried.attempt_count == 1
        assert retried.idempotency_key is None

        summary = await processor.process_due(NOW + timedelta(days=1))
        assert summary.failed == 1
        first_key, second_key = [c.idempotency_key for c in gateway.calls]
        assert first_key != second_key

    async def test_cannot_retry_succeeded_charge(self, session, gateway, make_schedule):
        schedule = await make_schedule()
        service = ScheduleService(session)
        await ChargeProcessor(session, gateway).process_due(NOW)
        [charge] = (await service.get_schedule(schedule.payment_schedule_id)).charges

        with pytest.raises(InvalidTransitionError):
            await service.retry_failed_charge(charge.scheduled_charge_id, TODAY)
