"""Tests for abandoned schedule cleanup."""

from datetime import timedelta

from billing_engine.config import CleanupPolicy
from billing_engine.models import PaymentSchedule, ScheduleStatus
from billing_engine.services.schedule_cleaner import ScheduleCleaner

from .conftest import NOW


async def status_of(session, schedule) -> ScheduleStatus:
    refreshed = await session.get(
        PaymentSchedule, schedule.payment_schedule_id, populate_existing=True
    )
    return refreshed.status


class TestScheduleCleaner:
    async def test_expires_abandoned_schedule(self, session, make_schedule):
        schedule = await make_schedule(
            status=ScheduleStatus.PENDING_INITIAL, created_at=NOW - timedelta(days=8)
        )

        result = await ScheduleCleaner(session).cleanup(NOW)

        assert result.processed == 1
        assert result.expired == 1
        assert result.expired_ids == [schedule.payment_schedule_id]
        assert result.to_dict() == {"processed": 1, "succeeded": 1, "failed": 0, "expired": 1}
        assert await status_of(session, schedule) == ScheduleStatus.EXPIRED

    async def test_recent_pending_schedule_kept(self, session, make_schedule):
        schedule = await make_schedule(
            status=ScheduleStatus.PENDING_INITIAL, created_at=NOW - timedelta(days=6)
        )

        result = await ScheduleCleaner(session).cleanup(NOW)

        assert result.expired == 0
        assert await status_of(session, schedule) == ScheduleStatus.PENDING_INITIAL

    async def test_active_schedules_never_expire(self, session, make_schedule):
        schedule = await make_schedule(created_at=NOW - timedelta(days=90))

        result = await ScheduleCleaner(session).cleanup(NOW)

        assert result.processed == 0
        assert await status_of(session, schedule) == ScheduleStatus.ACTIVE

    async def test_threshold_is_configurable(self, session, make_schedule):
        schedule = await make_schedule(
            status=ScheduleStatus.PENDING_INITIAL, created_at=NOW - timedelta(days=2)
        )

        result = await ScheduleCleaner(session, CleanupPolicy(abandon_after=timedelta(days=1))).cleanup(NOW)

        assert result.expired == 1
        assert await status_of(session, schedule) == ScheduleStatus.EXPIRED

    async def test_second_pass_is_a_no_op(self, session, make_schedule):
        await make_schedule(
            status=ScheduleStatus.PENDING_INITIAL, created_at=NOW - timedelta(days=8)
        )
        cleaner = ScheduleCleaner(session)

        await cleaner.cleanup(NOW)
        again = await cleaner.cleanup(NOW)

        assert again.processed == 0
