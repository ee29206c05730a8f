"""Scheduled charge processing: claim, attempt, record.

Every charge attempt follows claim-before-act:

1. A conditional UPDATE moves the charge pending → processing. Zero rows
   affected means another sweep owns it (or it is no longer eligible).
2. The claim is committed before the gateway is called.
3. The outcome is written with another conditional UPDATE guarded on the
   attempt's idempotency key, so a late writer cannot clobber a newer state.

A gateway call that ends without a definitive answer leaves the charge in
processing. ``reconcile_processing`` later asks the gateway about the attempt
by its idempotency key and only then resolves or releases it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased, selectinload

from billing_engine.config import ChargePolicy
from billing_engine.exceptions import GatewayError, GatewayTimeoutError
from billing_engine.gateway.base import ChargeResult, PaymentGateway
from billing_engine.models import ChargeStatus, PaymentSchedule, ScheduledCharge, ScheduleStatus
from billing_engine.services.state_machine import ChargeStateMachine

logger = logging.getLogger(__name__)

# Per-charge outcomes
SUCCEEDED = "succeeded"
FAILED = "failed"
RETRIED = "retried"
UNKNOWN = "unknown"
SKIPPED = "skipped"
RELEASED = "released"


def idempotency_key_for(charge_id: UUID, attempt: int) -> str:
    """Gateway idempotency key for one attempt of a charge."""
    return f"charge-{charge_id}-attempt-{attempt}"


@dataclass
class SweepSummary:
    """Counts from one charge sweep."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    unknown: int = 0
    skipped: int = 0
    released: int = 0
    succeeded_charge_ids: list[UUID] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def count(self, outcome: str) -> None:
        setattr(self, outcome, getattr(self, outcome) + 1)

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "retried": self.retried,
            "unknown": self.unknown,
            "skipped": self.skipped,
            "released": self.released,
            "succeeded_charge_ids": [str(i) for i in self.succeeded_charge_ids],
            "errors": list(self.errors),
        }


class ChargeProcessor:
    """Attempts due scheduled charges through the payment gateway.

    Writes ScheduledCharge rows, plus the completion status and review flag
    of the owning schedule. Nothing else.
    """

    def __init__(
        self,
        session: AsyncSession,
        gateway: PaymentGateway,
        policy: ChargePolicy | None = None,
    ):
        self.session = session
        self.gateway = gateway
        self.policy = policy or ChargePolicy()

    async def select_due(self, now: datetime) -> list[UUID]:
        """Ids of pending charges due by ``now`` on chargeable schedules."""
        result = await self.session.execute(
            select(ScheduledCharge.scheduled_charge_id)
            .join(PaymentSchedule)
            .where(
                ScheduledCharge.status == ChargeStatus.PENDING,
                ScheduledCharge.due_date <= now.date(),
                PaymentSchedule.status == ScheduleStatus.ACTIVE,
                PaymentSchedule.gateway_customer_id.is_not(None),
                PaymentSchedule.gateway_payment_method_id.is_not(None),
            )
            .order_by(ScheduledCharge.due_date, ScheduledCharge.installment_number)
        )
        return list(result.scalars().all())

    async def claim(self, charge_id: UUID, now: datetime) -> ScheduledCharge | None:
        """Atomically move a due charge pending → processing.

        Returns the claimed charge (with its schedule loaded), or None when
        the charge is not claimable by this caller. The claim is committed.
        """
        charge = await self._load(charge_id)
        if charge is None or charge.status != ChargeStatus.PENDING:
            return None

        attempt = charge.attempt_count + 1
        key = idempotency_key_for(charge_id, attempt)
        sibling = aliased(ScheduledCharge)

        stmt = (
            update(ScheduledCharge)
            .where(
                ScheduledCharge.scheduled_charge_id == charge_id,
                ScheduledCharge.status == ChargeStatus.PENDING,
                ScheduledCharge.attempt_count == charge.attempt_count,
                ScheduledCharge.due_date <= now.date(),
                select(PaymentSchedule.payment_schedule_id)
                .where(
                    PaymentSchedule.payment_schedule_id == ScheduledCharge.payment_schedule_id,
                    PaymentSchedule.status == ScheduleStatus.ACTIVE,
                )
                .exists(),
                ~select(sibling.scheduled_charge_id)
                .where(
                    sibling.payment_schedule_id == ScheduledCharge.payment_schedule_id,
                    sibling.status == ChargeStatus.PROCESSING,
                )
                .exists(),
            )
            .values(status=ChargeStatus.PROCESSING, claimed_at=now, idempotency_key=key)
            .execution_options(synchronize_session=False)
        )
        try:
            result = await self.session.execute(stmt)
            await self.session.commit()
        except IntegrityError:
            # Partial unique index caught a concurrent claim on the schedule
            await self.session.rollback()
            return None

        if result.rowcount != 1:
            return None
        return await self._load(charge_id)

    async def attempt(self, charge: ScheduledCharge, now: datetime) -> str:
        """Call the gateway for a claimed charge and record the outcome."""
        schedule = charge.schedule
        key = charge.idempotency_key
        assert key is not None

        try:
            result = await self.gateway.create_charge(
                schedule.gateway_customer_id or "",
                schedule.gateway_payment_method_id or "",
                charge.amount,
                key,
            )
        except GatewayTimeoutError as e:
            logger.warning(
                "Charge %s outcome unknown (%s); left processing for reconciliation",
                charge.scheduled_charge_id,
                e,
            )
            return UNKNOWN
        except GatewayError as e:
            logger.warning("Charge %s declined: %s", charge.scheduled_charge_id, e)
            return await self.record_failure(charge, key, str(e), now)
        except Exception:
            logger.exception(
                "Unexpected error charging %s; left processing for reconciliation",
                charge.scheduled_charge_id,
            )
            return UNKNOWN

        return await self.record_success(charge, key, result, now)

    async def process_charge(self, charge_id: UUID, now: datetime) -> str:
        """Claim and attempt a single charge."""
        charge = await self.claim(charge_id, now)
        if charge is None:
            return SKIPPED
        return await self.attempt(charge, now)

    async def process_due(self, now: datetime) -> SweepSummary:
        """Attempt every due charge, one at a time."""
        summary = SweepSummary()
        for charge_id in await self.select_due(now):
            summary.processed += 1
            outcome = await self.process_charge(charge_id, now)
            summary.count(outcome)
            if outcome == SUCCEEDED:
                summary.succeeded_charge_ids.append(charge_id)
            elif outcome == FAILED:
                summary.errors.append(f"charge {charge_id}: failed after max attempts")
            elif outcome == UNKNOWN:
                summary.errors.append(f"charge {charge_id}: outcome unknown")

        logger.info(
            "Charge sweep: %d processed, %d succeeded, %d retried, %d failed, %d unknown, %d skipped",
            summary.processed,
            summary.succeeded,
            summary.retried,
            summary.failed,
            summary.unknown,
            summary.skipped,
        )
        return summary

    async def reconcile_processing(self, now: datetime) -> SweepSummary:
        """Resolve charges stuck in processing using the gateway's record.

        - attempt found and succeeded → success path
        - attempt found and failed → failure path
        - attempt never reached the gateway → back to pending, no attempt used
        - gateway still undecided → left alone
        """
        summary = SweepSummary()
        cutoff = now - self.policy.stale_claim_after
        result = await self.session.execute(
            select(ScheduledCharge.scheduled_charge_id)
            .where(
                ScheduledCharge.status == ChargeStatus.PROCESSING,
                ScheduledCharge.claimed_at < cutoff,
            )
            .order_by(ScheduledCharge.claimed_at)
        )

        for charge_id in result.scalars().all():
            summary.processed += 1
            charge = await self._load(charge_id)
            if charge is None or charge.status != ChargeStatus.PROCESSING:
                summary.skipped += 1
                continue
            key = charge.idempotency_key or ""

            try:
                found = await self.gateway.find_charge(key)
            except GatewayError as e:
                logger.warning("Lookup of charge %s failed: %s", charge_id, e)
                summary.unknown += 1
                summary.errors.append(f"charge {charge_id}: lookup failed: {e}")
                continue

            if found is None:
                outcome = await self.release(charge, key)
            elif found.succeeded:
                outcome = await self.record_success(charge, key, found, now)
            elif found.failed:
                outcome = await self.record_failure(
                    charge, key, found.failure_message or "declined", now
                )
            else:
                outcome = UNKNOWN

            summary.count(outcome)
            if outcome == SUCCEEDED:
                summary.succeeded_charge_ids.append(charge_id)

        logger.info(
            "Processing reconciliation: %d stale, %d succeeded, %d retried, %d failed, %d released",
            summary.processed,
            summary.succeeded,
            summary.retried,
            summary.failed,
            summary.released,
        )
        return summary

    async def record_success(
        self, charge: ScheduledCharge, key: str, result: ChargeResult, now: datetime
    ) -> str:
        ChargeStateMachine.validate_transition(charge.status, ChargeStatus.SUCCEEDED)
        written = await self._finish(
            charge,
            key,
            status=ChargeStatus.SUCCEEDED,
            charged_at=now,
            gateway_payment_id=result.gateway_payment_id,
            last_error=None,
        )
        if not written:
            await self.session.rollback()
            return SKIPPED

        await self._complete_schedule_if_settled(charge.payment_schedule_id)
        await self.session.commit()
        logger.info(
            "Charge %s succeeded (%s)", charge.scheduled_charge_id, result.gateway_payment_id
        )
        return SUCCEEDED

    async def record_failure(
        self, charge: ScheduledCharge, key: str, message: str, now: datetime
    ) -> str:
        attempts = charge.attempt_count + 1
        if attempts < self.policy.max_attempts:
            written = await self._finish(
                charge,
                key,
                status=ChargeStatus.PENDING,
                attempt_count=attempts,
                last_error=message,
                due_date=now.date() + self.policy.retry_backoff,
                claimed_at=None,
            )
            outcome = RETRIED
        else:
            written = await self._finish(
                charge,
                key,
                status=ChargeStatus.FAILED,
                attempt_count=attempts,
                last_error=message,
            )
            if written:
                await self.session.execute(
                    update(PaymentSchedule)
                    .where(PaymentSchedule.payment_schedule_id == charge.payment_schedule_id)
                    .values(needs_review=True)
                    .execution_options(synchronize_session=False)
                )
                logger.warning(
                    "Charge %s failed after %d attempts; schedule %s flagged for review",
                    charge.scheduled_charge_id,
                    attempts,
                    charge.payment_schedule_id,
                )
            outcome = FAILED

        if not written:
            await self.session.rollback()
            return SKIPPED
        await self.session.commit()
        return outcome

    async def release(self, charge: ScheduledCharge, key: str) -> str:
        """Return an attempt the gateway never saw to pending."""
        written = await self._finish(
            charge, key, status=ChargeStatus.PENDING, claimed_at=None, idempotency_key=None
        )
        if not written:
            await self.session.rollback()
            return SKIPPED
        await self.session.commit()
        logger.info("Released charge %s back to pending", charge.scheduled_charge_id)
        return RELEASED

    async def _finish(self, charge: ScheduledCharge, key: str, **values: Any) -> bool:
        """Conditionally write an attempt's outcome; False if it was resolved elsewhere."""
        result = await self.session.execute(
            update(ScheduledCharge)
            .where(
                ScheduledCharge.scheduled_charge_id == charge.scheduled_charge_id,
                ScheduledCharge.status == ChargeStatus.PROCESSING,
                ScheduledCharge.idempotency_key == key,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.info(
                "Charge %s attempt %s already resolved elsewhere", charge.scheduled_charge_id, key
            )
            return False
        return True

    async def _complete_schedule_if_settled(self, schedule_id: UUID) -> None:
        """Mark the schedule completed once every installment is settled."""
        counts = await self.session.execute(
            select(ScheduledCharge.status, func.count())
            .where(ScheduledCharge.payment_schedule_id == schedule_id)
            .group_by(ScheduledCharge.status)
        )
        by_status = {ChargeStatus(status): n for status, n in counts.all()}
        outstanding = sum(
            n for status, n in by_status.items() if status not in ChargeStateMachine.SETTLED
        )
        if outstanding or not by_status.get(ChargeStatus.SUCCEEDED):
            return

        result = await self.session.execute(
            update(PaymentSchedule)
            .where(
                PaymentSchedule.payment_schedule_id == schedule_id,
                PaymentSchedule.status == ScheduleStatus.ACTIVE,
            )
            .values(status=ScheduleStatus.COMPLETED)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            logger.info("Schedule %s completed", schedule_id)

    async def _load(self, charge_id: UUID) -> ScheduledCharge | None:
        return await self.session.get(
            ScheduledCharge,
            charge_id,
            options=[selectinload(ScheduledCharge.schedule)],
            populate_existing=True,
        )
