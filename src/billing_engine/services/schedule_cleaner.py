"""Expiry of payment schedules that never got past their initial state."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.config import CleanupPolicy
from billing_engine.models import PaymentSchedule, ScheduleStatus

logger = logging.getLogger(__name__)


@dataclass
class CleanupResult:
    processed: int = 0
    expired: int = 0
    expired_ids: list[UUID] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "succeeded": self.expired,
            "failed": self.processed - self.expired,
            "expired": self.expired,
        }


class ScheduleCleaner:
    """Marks abandoned pending_initial schedules expired.

    Charges are left as they are; an expired schedule is simply never
    selected for charging again.
    """

    def __init__(self, session: AsyncSession, policy: CleanupPolicy | None = None):
        self.session = session
        self.policy = policy or CleanupPolicy()

    async def cleanup(self, now: datetime) -> CleanupResult:
        cutoff = now - self.policy.abandon_after
        result = CleanupResult()

        stale = await self.session.execute(
            select(PaymentSchedule.payment_schedule_id).where(
                PaymentSchedule.status == ScheduleStatus.PENDING_INITIAL,
                PaymentSchedule.created_at < cutoff,
            )
        )
        for schedule_id in stale.scalars().all():
            result.processed += 1
            # Guarded so a schedule activated meanwhile is left alone
            updated = await self.session.execute(
                update(PaymentSchedule)
                .where(
                    PaymentSchedule.payment_schedule_id == schedule_id,
                    PaymentSchedule.status == ScheduleStatus.PENDING_INITIAL,
                )
                .values(status=ScheduleStatus.EXPIRED)
                .execution_options(synchronize_session=False)
            )
            if updated.rowcount == 1:
                result.expired += 1
                result.expired_ids.append(schedule_id)

        await self.session.commit()
        logger.info(
            "Schedule cleanup: %d abandoned, %d expired (cutoff %s)",
            result.processed,
            result.expired,
            cutoff.isoformat(),
        )
        return result
