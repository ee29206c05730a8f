"""Payment schedule lifecycle operations used by staff tooling."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from billing_engine.exceptions import InvalidTransitionError, NotFoundError
from billing_engine.models import (
    ChargeStatus,
    Client,
    PaymentSchedule,
    ScheduledCharge,
    ScheduleStatus,
)
from billing_engine.services.state_machine import ChargeStateMachine, ScheduleStateMachine

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Installment:
    """One planned charge of a new schedule."""

    amount: Decimal
    due_date: date


class ScheduleService:
    """Creates schedules and applies staff actions to them."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create_schedule(
        self,
        client_id: UUID,
        installments: list[Installment],
        gateway_customer_id: str | None = None,
        gateway_payment_method_id: str | None = None,
    ) -> PaymentSchedule:
        """New pending_initial schedule with one charge per installment."""
        if not installments:
            raise ValueError("A schedule needs at least one installment")
        if any(i.amount <= 0 for i in installments):
            raise ValueError("Installment amounts must be positive")
        if await self.session.get(Client, client_id) is None:
            raise NotFoundError("Client", client_id)

        schedule = PaymentSchedule(
            client_id=client_id,
            gateway_customer_id=gateway_customer_id,
            gateway_payment_method_id=gateway_payment_method_id,
            status=ScheduleStatus.PENDING_INITIAL,
        )
        self.session.add(schedule)
        await self.session.flush()

        ordered = sorted(installments, key=lambda i: i.due_date)
        self.session.add_all(
            ScheduledCharge(
                payment_schedule_id=schedule.payment_schedule_id,
                installment_number=n,
                amount=i.amount,
                due_date=i.due_date,
                status=ChargeStatus.PENDING,
            )
            for n, i in enumerate(ordered, start=1)
        )
        await self.session.commit()
        logger.info(
            "Created schedule %s for client %s with %d installments",
            schedule.payment_schedule_id,
            client_id,
            len(ordered),
        )
        return schedule

    async def get_schedule(self, schedule_id: UUID) -> PaymentSchedule:
        schedule = await self.session.get(
            PaymentSchedule,
            schedule_id,
            options=[selectinload(PaymentSchedule.charges)],
            populate_existing=True,
        )
        if schedule is None:
            raise NotFoundError("PaymentSchedule", schedule_id)
        return schedule

    async def activate(self, schedule_id: UUID) -> PaymentSchedule:
        """Confirm a pending_initial schedule so its charges become due."""
        schedule = await self.get_schedule(schedule_id)
        await self._transition(schedule, ScheduleStatus.ACTIVE)
        return await self.get_schedule(schedule_id)

    async def cancel(self, schedule_id: UUID) -> PaymentSchedule:
        """Cancel a schedule and skip its unbilled charges."""
        schedule = await self.get_schedule(schedule_id)
        ScheduleStateMachine.validate_transition(schedule.status, ScheduleStatus.CANCELLED)

        await self.session.execute(
            update(ScheduledCharge)
            .where(
                ScheduledCharge.payment_schedule_id == schedule_id,
                ScheduledCharge.status == ChargeStatus.PENDING,
            )
            .values(status=ChargeStatus.SKIPPED)
            .execution_options(synchronize_session=False)
        )
        await self._transition(schedule, ScheduleStatus.CANCELLED)
        return await self.get_schedule(schedule_id)

    async def skip_charge(self, charge_id: UUID) -> ScheduledCharge:
        charge = await self._get_charge(charge_id)
        ChargeStateMachine.validate_transition(charge.status, ChargeStatus.SKIPPED)
        await self._update_charge(charge, ChargeStatus.SKIPPED)
        logger.info("Skipped charge %s", charge_id)
        return await self._get_charge(charge_id)

    async def retry_failed_charge(self, charge_id: UUID, due_date: date) -> ScheduledCharge:
        """Put a failed charge back in the queue for one more attempt.

        attempt_count is kept, so the next claim uses a fresh idempotency key
        and a further decline fails the charge again straight away.
        """
        charge = await self._get_charge(charge_id)
        ChargeStateMachine.validate_transition(charge.status, ChargeStatus.PENDING)
        await self._update_charge(
            charge,
            ChargeStatus.PENDING,
            due_date=due_date,
            idempotency_key=None,
            claimed_at=None,
        )
        logger.info("Charge %s queued for retry on %s", charge_id, due_date)
        return await self._get_charge(charge_id)

    async def _transition(self, schedule: PaymentSchedule, to_status: ScheduleStatus) -> None:
        ScheduleStateMachine.validate_transition(schedule.status, to_status)
        result = await self.session.execute(
            update(PaymentSchedule)
            .where(
                PaymentSchedule.payment_schedule_id == schedule.payment_schedule_id,
                PaymentSchedule.status == schedule.status,
            )
            .values(status=to_status)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.session.rollback()
            raise InvalidTransitionError(schedule.status, to_status, "schedule changed concurrently")
        await self.session.commit()
        logger.info("Schedule %s is now %s", schedule.payment_schedule_id, to_status.value)

    async def _update_charge(
        self, charge: ScheduledCharge, to_status: ChargeStatus, **values
    ) -> None:
        result = await self.session.execute(
            update(ScheduledCharge)
            .where(
                ScheduledCharge.scheduled_charge_id == charge.scheduled_charge_id,
                ScheduledCharge.status == charge.status,
            )
            .values(status=to_status, **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.session.rollback()
            raise InvalidTransitionError(charge.status, to_status, "charge changed concurrently")
        await self.session.commit()

    async def _get_charge(self, charge_id: UUID) -> ScheduledCharge:
        charge = await self.session.get(ScheduledCharge, charge_id, populate_existing=True)
        if charge is None:
            raise NotFoundError("ScheduledCharge", charge_id)
        return charge
