"""Tests for scheduled charge processing."""

from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select, update

from billing_engine.config import ChargePolicy
from billing_engine.gateway.stub import DECLINE, TIMEOUT, TIMEOUT_AFTER_CHARGE
from billing_engine.models import ChargeStatus, PaymentSchedule, ScheduledCharge, ScheduleStatus
from billing_engine.services.charge_processor import (
    SKIPPED,
    SUCCEEDED,
    ChargeProcessor,
    idempotency_key_for,
)

from .conftest import NOW, TODAY


async def charges_of(session, schedule) -> list[ScheduledCharge]:
    result = await session.execute(
        select(ScheduledCharge)
        .where(ScheduledCharge.payment_schedule_id == schedule.payment_schedule_id)
        .order_by(ScheduledCharge.installment_number)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def reload_schedule(session, schedule) -> PaymentSchedule:
    return await session.get(
        PaymentSchedule, schedule.payment_schedule_id, populate_existing=True
    )


class TestProcessDue:
    async def test_due_charge_succeeds_and_completes_schedule(self, session, gateway, make_schedule):
        schedule = await make_schedule([Decimal("250.00")])

        summary = await ChargeProcessor(session, gateway).process_due(NOW)

        assert summary.processed == 1
        assert summary.succeeded == 1
        assert len(gateway.calls) == 1
        assert gateway.calls[0].amount == Decimal("250.00")

        [charge] = await charges_of(session, schedule)
        assert charge.status == ChargeStatus.SUCCEEDED
        assert charge.gateway_payment_id == gateway.successful_charges[0].gateway_payment_id
        assert charge.charged_at == NOW
        assert charge.idempotency_key == idempotency_key_for(charge.scheduled_charge_id, 1)
        assert summary.succeeded_charge_ids == [charge.scheduled_charge_id]

        schedule = await reload_schedule(session, schedule)
        assert schedule.status == ScheduleStatus.COMPLETED

    async def test_future_charges_are_not_due(self, session, gateway, make_schedule):
        schedule = await make_schedule([Decimal("100.00"), Decimal("100.00")])

        summary = await ChargeProcessor(session, gateway).process_due(NOW)

        assert summary.succeeded == 1
        first, second = await charges_of(session, schedule)
        assert first.status == ChargeStatus.SUCCEEDED
        assert second.status == ChargeStatus.PENDING
        schedule = await reload_schedule(session, schedule)
        assert schedule.status == ScheduleStatus.ACTIVE

    @pytest.mark.parametrize(
        "status", [ScheduleStatus.PENDING_INITIAL, ScheduleStatus.CANCELLED, ScheduleStatus.EXPIRED]
    )
    async def test_inactive_schedules_are_never_charged(
        self, session, gateway, make_schedule, status
    ):
        await make_schedule(status=status)

        summary = await ChargeProcessor(session, gateway).process_due(NOW)

        assert summary.processed == 0
        assert gateway.calls == []

    async def test_schedule_without_payment_method_is_skipped(
        self, session, gateway, make_schedule
    ):
        await make_schedule(payment_method_id=None)

        summary = await ChargeProcessor(session, gateway).process_due(NOW)

        assert summary.processed == 0
        assert gateway.calls == []


class TestAtMostOnce:
    async def test_second_claim_loses(self, session_factory, gateway, make_schedule):
        schedule = await make_schedule()

        async with session_factory() as a, session_factory() as b:
            [charge] = await charges_of(a, schedule)
            first = await ChargeProcessor(a, gateway).claim(charge.scheduled_charge_id, NOW)
            second = await ChargeProcessor(b, gateway).claim(charge.scheduled_charge_id, NOW)

        assert first is not None
        assert first.status == ChargeStatus.PROCESSING
        assert second is None

    async def test_stale_due_list_does_not_charge_twice(
        self, session_factory, gateway, make_schedule
    ):
        await make_schedule()

        async with session_factory() as a, session_factory() as b:
            sweep_a = ChargeProcessor(a, gateway)
            sweep_b = ChargeProcessor(b, gateway)
            due_a = await sweep_a.select_due(NOW)
            due_b = await sweep_b.select_due(NOW)
            assert due_a == due_b

            outcomes_a = [await sweep_a.process_charge(cid, NOW) for cid in due_a]
            outcomes_b = [await sweep_b.process_charge(cid, NOW) for cid in due_b]

        assert outcomes_a == [SUCCEEDED]
        assert outcomes_b == [SKIPPED]
        assert len(gateway.calls) == 1

    async def test_one_processing_charge_per_schedule(self, session, gateway, make_schedule):
        schedule = await make_schedule(
            [Decimal("100.00"), Decimal("100.00")], first_due=TODAY - timedelta(days=1)
        )
        first, second = await charges_of(session, schedule)
        await session.execute(
            update(ScheduledCharge)
            .where(ScheduledCharge.scheduled_charge_id == first.scheduled_charge_id)
            .values(status=ChargeStatus.PROCESSING, claimed_at=NOW, idempotency_key="other")
        )
        await session.commit()

        claimed = await ChargeProcessor(session, gateway).claim(second.scheduled_charge_id, NOW)

        assert claimed is None
        _, second = await charges_of(session, schedule)
        assert second.status == ChargeStatus.PENDING


class TestDeclines:
    async def test_decline_below_max_attempts_backs_off(self, session, gateway, make_schedule):
        schedule = await make_schedule()
        gateway.script(DECLINE)

        summary = await ChargeProcessor(session, gateway).process_due(NOW)

        assert summary.retried == 1
        [charge] = await charges_of(session, schedule)
        assert charge.status == ChargeStatus.PENDING
        assert charge.attempt_count == 1
        assert charge.due_date == TODAY + timedelta(days=3)
        assert charge.last_error == "Your card was declined."

    async def test_retry_uses_new_idempotency_key(self, session, gateway, make_schedule):
        schedule = await make_schedule()
        gateway.script(DECLINE)
        processor = ChargeProcessor(session, gateway)

        await processor.process_due(NOW)
        summary = await processor.process_due(NOW + timedelta(days=3))

        assert summary.succeeded == 1
        [charge] = await charges_of(session, schedule)
        keys = [c.idempotency_key for c in gateway.calls]
        assert keys == [
            idempotency_key_for(charge.scheduled_charge_id, 1),
            idempotency_key_for(charge.scheduled_charge_id, 2),
        ]
        assert charge.status == ChargeStatus.SUCCEEDED

    async def test_max_attempts_fails_and_flags_schedule(self, session, gateway, make_schedule):
        schedule = await make_schedule()
        gateway.script(DECLINE, DECLINE)
        processor = ChargeProcessor(session, gateway, ChargePolicy(max_attempts=2))

        first = await processor.process_due(NOW)
        second = await processor.process_due(NOW + timedelta(days=3))

        assert first.retried == 1
        assert second.failed == 1
        assert second.errors
        [charge] = await charges_of(session, schedule)
        assert charge.status == ChargeStatus.FAILED
        assert charge.attempt_count == 2

        schedule = await reload_schedule(session, schedule)
        assert schedule.needs_review is True
        assert schedule.status == ScheduleStatus.ACTIVE

        later = await processor.process_due(NOW + timedelta(days=30))
        assert later.processed == 0
        assert len(gateway.calls) == 2


class TestUnknownOutcomes:
    async def test_timeout_leaves_charge_processing(self, session, gateway, make_schedule):
        schedule = await make_schedule()
        gateway.script(TIMEOUT)

        summary = await ChargeProcessor(session, gateway).process_due(NOW)

        assert summary.unknown == 1
        assert summary.errors
        [charge] = await charges_of(session, schedule)
        assert charge.status == ChargeStatus.PROCESSING
        assert charge.attempt_count == 0

        # Still claimed, so the next sweep does not try again
        again = await ChargeProcessor(session, gateway).process_due(NOW + timedelta(minutes=5))
        assert again.processed == 0
        assert len(gateway.calls) == 1

    async def test_reconcile_releases_attempt_gateway_never_saw(
        self, session, gateway, make_schedule
    ):
        schedule = await make_schedule()
        gateway.script(TIMEOUT)
        processor = ChargeProcessor(session, gateway)
        await processor.process_due(NOW)

        summary = await processor.reconcile_processing(NOW + timedelta(minutes=31))

        assert summary.released == 1
        [charge] = await charges_of(session, schedule)
        assert charge.status == ChargeStatus.PENDING
        assert charge.attempt_count == 0
        assert charge.idempotency_key is None
        assert charge.claimed_at is None

    async def test_reconcile_completes_charge_that_went_through(
        self, session, gateway, make_schedule
    ):
        schedule = await make_schedule()
        gateway.script(TIMEOUT_AFTER_CHARGE)
        processor = ChargeProcessor(session, gateway)
        await processor.process_due(NOW)

        summary = await processor.reconcile_processing(NOW + timedelta(minutes=31))

        assert summary.succeeded == 1
        [charge] = await charges_of(session, schedule)
        assert charge.status == ChargeStatus.SUCCEEDED
        assert charge.gateway_payment_id is not None
        assert summary.succeeded_charge_ids == [charge.scheduled_charge_id]
        assert len(gateway.calls) == 1

    async def test_reconcile_ignores_fresh_claims(self, session, gateway, make_schedule):
        await make_schedule()
        gateway.script(TIMEOUT)
        processor = ChargeProcessor(session, gateway)
        await processor.process_due(NOW)

        summary = await processor.reconcile_processing(NOW + timedelta(minutes=5))

        assert summary.processed == 0

    async def test_late_outcome_does_not_overwrite_newer_attempt(
        self, session, gateway, make_schedule
    ):
        schedule = await make_schedule()
        processor = ChargeProcessor(session, gateway)
        [charge] = await charges_of(session, schedule)
        claimed = await processor.claim(charge.scheduled_charge_id, NOW)

        outcome = await processor.record_failure(claimed, "charge-stale-key", "declined", NOW)

        assert outcome == SKIPPED
        [charge] = await charges_of(session, schedule)
        assert charge.status == ChargeStatus.PROCESSING
