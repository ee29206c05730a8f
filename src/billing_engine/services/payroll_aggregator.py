"""Biweekly payroll runs over approved commission entries."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from billing_engine.exceptions import InvalidTransitionError, NotFoundError, PersistenceError
from billing_engine.models import (
    AdjustmentType,
    CommissionAdjustment,
    CommissionLedgerEntry,
    LedgerStatus,
    PayrollRun,
    PayrollRunStatus,
    StaffUser,
    utc_now,
)
from billing_engine.services.state_machine import PayrollRunStateMachine

logger = logging.getLogger(__name__)

# Periods run Monday through the second Sunday, anchored to Monday 2024-12-16
PERIOD_ANCHOR = date(2024, 12, 16)
PERIOD_DAYS = 14
# Payout is the Friday after the period ends
PAYOUT_OFFSET_DAYS = 5

MIN_REASON_LENGTH = 5


@dataclass(frozen=True)
class PayPeriod:
    """One biweekly commission period."""

    start: date
    end: date
    payout_date: date

    def contains(self, day: date) -> bool:
        return self.start <= day <= self.end

    @property
    def starts_at(self) -> datetime:
        """First instant of the period (UTC)."""
        return datetime.combine(self.start, time.min, tzinfo=timezone.utc)

    @property
    def ends_before(self) -> datetime:
        """First instant after the period (UTC)."""
        return datetime.combine(self.end + timedelta(days=1), time.min, tzinfo=timezone.utc)


def period_for(day: date) -> PayPeriod:
    """The period containing ``day``."""
    index = (day - PERIOD_ANCHOR).days // PERIOD_DAYS
    start = PERIOD_ANCHOR + timedelta(days=index * PERIOD_DAYS)
    end = start + timedelta(days=PERIOD_DAYS - 1)
    return PayPeriod(start=start, end=end, payout_date=end + timedelta(days=PAYOUT_OFFSET_DAYS))


def recent_periods(count: int, today: date | None = None) -> list[PayPeriod]:
    """The current period and the ``count - 1`` before it, newest first."""
    current = period_for(today or utc_now().date())
    return [period_for(current.start - timedelta(days=PERIOD_DAYS * i)) for i in range(count)]


class PayrollAggregator:
    """Creates, approves and pays payroll runs.

    Run creation locks its entries in the same transaction that inserts the
    run: either every selected entry ends up paid on the new run, or the run
    does not exist and no entry was touched.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    # ===== Creation =====

    async def create_run(
        self,
        period_start: date,
        created_by: UUID | None = None,
        notes: str | None = None,
        now: datetime | None = None,
    ) -> PayrollRun:
        now = now or utc_now()
        period = period_for(period_start)
        if period.start != period_start:
            raise ValueError(f"{period_start} is not a payroll period start (next: {period.start})")

        overlapping = await self.session.scalar(
            select(PayrollRun.payroll_run_id).where(
                PayrollRun.period_start <= period.end,
                PayrollRun.period_end >= period.start,
            )
        )
        if overlapping is not None:
            raise PersistenceError(f"A payroll run already exists for period {period.start}")

        try:
            entry_ids = await self._eligible_entry_ids(period)
            adjustment_ids = await self._eligible_adjustment_ids(period)

            run = PayrollRun(
                period_start=period.start,
                period_end=period.end,
                payout_date=period.payout_date,
                status=PayrollRunStatus.DRAFT,
                created_by=created_by,
                notes=notes,
            )
            self.session.add(run)
            await self.session.flush()

            await self._lock_entries(run.payroll_run_id, entry_ids, now)
            await self._link_adjustments(run.payroll_run_id, adjustment_ids)
            await self._apply_totals(run)
            await self.session.commit()
        except PersistenceError:
            await self.session.rollback()
            raise
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise PersistenceError(f"Payroll run creation failed: {e}") from e

        logger.info(
            "Created payroll run %s for %s..%s: %d entries, payout %s",
            run.payroll_run_id,
            period.start,
            period.end,
            run.transaction_count,
            run.total_payout,
        )
        return run

    async def _eligible_entry_ids(self, period: PayPeriod) -> list[UUID]:
        result = await self.session.execute(
            select(CommissionLedgerEntry.ledger_entry_id).where(
                CommissionLedgerEntry.status == LedgerStatus.APPROVED,
                CommissionLedgerEntry.payroll_run_id.is_(None),
                CommissionLedgerEntry.created_at >= period.starts_at,
                CommissionLedgerEntry.created_at < period.ends_before,
            )
        )
        return list(result.scalars().all())

    async def _eligible_adjustment_ids(self, period: PayPeriod) -> list[UUID]:
        result = await self.session.execute(
            select(CommissionAdjustment.adjustment_id).where(
                CommissionAdjustment.payroll_run_id.is_(None),
                CommissionAdjustment.created_at < period.ends_before,
            )
        )
        return list(result.scalars().all())

    async def _lock_entries(self, run_id: UUID, entry_ids: list[UUID], now: datetime) -> None:
        """Assign entries to the run and mark them paid, all or nothing."""
        if not entry_ids:
            return
        result = await self.session.execute(
            update(CommissionLedgerEntry)
            .where(
                CommissionLedgerEntry.ledger_entry_id.in_(entry_ids),
                CommissionLedgerEntry.status == LedgerStatus.APPROVED,
                CommissionLedgerEntry.payroll_run_id.is_(None),
            )
            .values(payroll_run_id=run_id, status=LedgerStatus.PAID, paid_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != len(entry_ids):
            raise PersistenceError(
                f"Locked {result.rowcount} of {len(entry_ids)} entries; entries changed concurrently"
            )

    async def _link_adjustments(self, run_id: UUID, adjustment_ids: list[UUID]) -> None:
        if not adjustment_ids:
            return
        await self.session.execute(
            update(CommissionAdjustment)
            .where(
                CommissionAdjustment.adjustment_id.in_(adjustment_ids),
                CommissionAdjustment.payroll_run_id.is_(None),
            )
            .values(payroll_run_id=run_id)
            .execution_options(synchronize_session=False)
        )

    # ===== Totals =====

    async def _apply_totals(self, run: PayrollRun) -> None:
        amounts = await self.session.execute(
            select(CommissionLedgerEntry.commission_amount).where(
                CommissionLedgerEntry.payroll_run_id == run.payroll_run_id,
                CommissionLedgerEntry.status != LedgerStatus.VOID,
            )
        )
        commissions = list(amounts.scalars().all())
        adjustments = await self.session.execute(
            select(CommissionAdjustment.amount).where(
                CommissionAdjustment.payroll_run_id == run.payroll_run_id
            )
        )

        run.total_commission = sum(commissions, Decimal("0"))
        run.total_adjustments = sum(adjustments.scalars().all(), Decimal("0"))
        run.total_payout = run.total_commission + run.total_adjustments
        run.transaction_count = len(commissions)
        await self.session.flush()

    async def recalculate_totals(self, run_id: UUID) -> PayrollRun:
        """Recompute a draft run's totals from its linked entries and adjustments."""
        run = await self._get(run_id)
        if not PayrollRunStateMachine.can_modify_adjustments(run.status):
            raise InvalidTransitionError(
                run.status, PayrollRunStatus.DRAFT, "only draft run totals can change"
            )
        await self._apply_totals(run)
        await self.session.commit()
        return run

    # ===== Transitions =====

    async def approve_run(
        self, run_id: UUID, actor: UUID, now: datetime | None = None
    ) -> PayrollRun:
        """Approve a draft run. The approver may not be the run's creator."""
        run = await self._get(run_id)
        PayrollRunStateMachine.validate_transition(run.status, PayrollRunStatus.APPROVED)
        if run.created_by is not None and run.created_by == actor:
            raise InvalidTransitionError(
                run.status,
                PayrollRunStatus.APPROVED,
                "approver must be a different user than the creator",
            )
        await self._transition(
            run,
            PayrollRunStatus.APPROVED,
            approved_by=actor,
            approved_at=now or utc_now(),
        )
        logger.info("Payroll run %s approved by %s", run_id, actor)
        return run

    async def mark_paid(self, run_id: UUID, actor: UUID, now: datetime | None = None) -> PayrollRun:
        run = await self._get(run_id)
        PayrollRunStateMachine.validate_transition(run.status, PayrollRunStatus.PAID)
        await self._transition(run, PayrollRunStatus.PAID, paid_by=actor, paid_at=now or utc_now())
        logger.info("Payroll run %s marked paid by %s", run_id, actor)
        return run

    async def _transition(self, run: PayrollRun, to_status: PayrollRunStatus, **values) -> None:
        result = await self.session.execute(
            update(PayrollRun)
            .where(
                PayrollRun.payroll_run_id == run.payroll_run_id,
                PayrollRun.status == run.status,
            )
            .values(status=to_status, **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.session.rollback()
            raise InvalidTransitionError(run.status, to_status, "run changed concurrently")
        await self.session.commit()
        await self.session.refresh(run)

    # ===== Adjustments =====

    async def add_adjustment(
        self,
        user_id: UUID,
        amount: Decimal,
        adjustment_type: AdjustmentType,
        reason: str,
        created_by: UUID | None = None,
        payroll_run_id: UUID | None = None,
        related_payment_id: UUID | None = None,
        related_ledger_id: UUID | None = None,
    ) -> CommissionAdjustment:
        """Record a signed correction, optionally attached to a draft run."""
        if not reason or len(reason.strip()) < MIN_REASON_LENGTH:
            raise ValueError(f"Reason must be at least {MIN_REASON_LENGTH} characters")
        if amount == 0:
            raise ValueError("Adjustment amount cannot be zero")
        if await self.session.get(StaffUser, user_id) is None:
            raise NotFoundError("StaffUser", user_id)

        run = None
        if payroll_run_id is not None:
            run = await self._get(payroll_run_id)
            if not PayrollRunStateMachine.can_modify_adjustments(run.status):
                raise InvalidTransitionError(
                    run.status,
                    PayrollRunStatus.DRAFT,
                    "adjustments can only be added to a draft run",
                )

        adjustment = CommissionAdjustment(
            user_id=user_id,
            amount=amount,
            adjustment_type=adjustment_type,
            reason=reason.strip(),
            payroll_run_id=payroll_run_id,
            related_payment_id=related_payment_id,
            related_ledger_id=related_ledger_id,
            created_by=created_by,
        )
        self.session.add(adjustment)
        await self.session.flush()
        if run is not None:
            await self._apply_totals(run)
        await self.session.commit()

        logger.info(
            "Adjustment %s (%s %s) for %s", adjustment.adjustment_id, adjustment_type.value, amount, user_id
        )
        return adjustment

    # ===== Queries =====

    async def list_runs(self, status: PayrollRunStatus | None = None) -> list[PayrollRun]:
        stmt = select(PayrollRun).order_by(PayrollRun.period_start.desc())
        if status is not None:
            stmt = stmt.where(PayrollRun.status == status)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_run(self, run_id: UUID) -> PayrollRun:
        """Run with its entries and adjustments loaded."""
        run = await self.session.get(
            PayrollRun,
            run_id,
            options=[selectinload(PayrollRun.entries), selectinload(PayrollRun.adjustments)],
            populate_existing=True,
        )
        if run is None:
            raise NotFoundError("PayrollRun", run_id)
        return run

    async def _get(self, run_id: UUID) -> PayrollRun:
        run = await self.session.get(PayrollRun, run_id, populate_existing=True)
        if run is None:
            raise NotFoundError("PayrollRun", run_id)
        return run
