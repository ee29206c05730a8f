"""Commission ledger entries derived from successful payments.

Rate policy, per split role:

1. A staff member's own ``commission_rate`` wins outright.
2. Otherwise, for a client that is not a resign and a payment made inside
   the initial term (client start + ``initial_term_months``), the rate for
   the client's lead source applies.
3. Otherwise the resign rate applies.

Role-scoped setting keys (``closer.company_lead_rate``) take precedence over
the global key. A missing setting blocks the whole payment: no entry is
written for any role until the setting exists.
"""

from __future__ import annotations

import calendar
import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from billing_engine.config import CommissionPolicy
from billing_engine.exceptions import ConfigError, NotFoundError
from billing_engine.models import (
    Client,
    CommissionLedgerEntry,
    LeadSource,
    LedgerStatus,
    Payment,
    PaymentStatus,
    SplitRole,
    StaffUser,
    utc_now,
)
from billing_engine.services.commission_settings import (
    COACH_LEAD_RATE,
    COMPANY_LEAD_RATE,
    RESIGN_RATE,
    CommissionSettingsService,
)

logger = logging.getLogger(__name__)

USER_OVERRIDE = "user_override"


def add_months(start: date, months: int) -> date:
    """Same day ``months`` later, clamped to the end of shorter months."""
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


@dataclass(frozen=True)
class RateDecision:
    """Rate chosen for one role and where it came from."""

    role: SplitRole
    user_id: UUID
    rate: Decimal
    source: str


@dataclass
class CommissionResult:
    """Outcome of calculating one payment."""

    payment_id: UUID
    created: list[UUID] = field(default_factory=list)
    skipped_roles: list[SplitRole] = field(default_factory=list)
    reason: str | None = None


@dataclass
class CommissionSweepResult:
    """Outcome of calculating every uncalculated payment."""

    processed: int = 0
    created: int = 0
    skipped: int = 0
    blocked: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "created": self.created,
            "skipped": self.skipped,
            "blocked": list(self.blocked),
        }


class CommissionCalculator:
    """Creates pending ledger entries for a payment, one per credited role."""

    def __init__(
        self,
        session: AsyncSession,
        settings: CommissionSettingsService | None = None,
        policy: CommissionPolicy | None = None,
    ):
        self.session = session
        self.settings = settings or CommissionSettingsService(session)
        self.policy = policy or CommissionPolicy()

    def in_initial_term(self, client: Client, paid_on: date) -> bool:
        if client.is_resign:
            return False
        return paid_on < add_months(client.start_date, self.policy.initial_term_months)

    async def resolve_rate(
        self, client: Client, role: SplitRole, staff: StaffUser, paid_on: date
    ) -> RateDecision:
        if staff.commission_rate is not None:
            return RateDecision(role, staff.staff_user_id, staff.commission_rate, USER_OVERRIDE)

        if self.in_initial_term(client, paid_on):
            key = (
                COMPANY_LEAD_RATE
                if client.lead_source == LeadSource.COMPANY_DRIVEN
                else COACH_LEAD_RATE
            )
        else:
            key = RESIGN_RATE

        rate, source = await self.settings.get_rate(key, role)
        return RateDecision(role, staff.staff_user_id, rate, source)

    def commission_amount(self, basis: Decimal, rate: Decimal) -> Decimal:
        return (basis * rate).quantize(self.policy.rounding_quantum, rounding=ROUND_HALF_UP)

    async def calculate(self, payment_id: UUID) -> CommissionResult:
        """Create ledger entries for a payment's credited roles.

        Safe to call repeatedly: a role that already has a live entry for
        the payment is skipped.

        Raises:
            NotFoundError: payment does not exist.
            ConfigError: a needed rate setting is missing; nothing is written.
        """
        payment = await self.session.get(
            Payment, payment_id, options=[selectinload(Payment.client)], populate_existing=True
        )
        if payment is None:
            raise NotFoundError("Payment", payment_id)

        result = CommissionResult(payment_id=payment_id)
        if payment.status != PaymentStatus.SUCCEEDED:
            result.reason = "refunded"
            return result
        client = payment.client
        if client is None:
            result.reason = "no_client"
            await self._mark_calculated(payment_id)
            await self.session.commit()
            return result

        credited = {
            role: staff_id
            for role in SplitRole
            if (staff_id := client.staff_for_role(role)) is not None
        }
        live_roles = await self._live_roles(payment_id)
        pending_roles = {r: s for r, s in credited.items() if r not in live_roles}
        result.skipped_roles = [r for r in credited if r in live_roles]

        # Resolve every rate before writing so a missing setting blocks the payment
        staff = await self._load_staff(set(pending_roles.values()))
        paid_on = payment.paid_at.date()
        decisions = [
            await self.resolve_rate(client, role, staff[staff_id], paid_on)
            for role, staff_id in pending_roles.items()
        ]

        basis = payment.commission_basis
        entries = [
            CommissionLedgerEntry(
                payment_id=payment_id,
                user_id=d.user_id,
                client_id=client.client_id,
                gross_amount=payment.amount,
                net_amount=basis,
                commission_amount=self.commission_amount(basis, d.rate),
                percentage=d.rate,
                rate_source=d.source,
                split_role=d.role,
                status=LedgerStatus.PENDING,
            )
            for d in decisions
        ]
        self.session.add_all(entries)
        await self._mark_calculated(payment_id)
        await self.session.commit()

        result.created = [e.ledger_entry_id for e in entries]
        for d, e in zip(decisions, entries):
            logger.info(
                "Commission %s for %s on payment %s: %s at %s (%s)",
                d.role.value,
                d.user_id,
                payment_id,
                e.commission_amount,
                d.rate,
                d.source,
            )
        return result

    async def calculate_pending(self, limit: int | None = None) -> CommissionSweepResult:
        """Calculate every succeeded payment not yet processed.

        Payments blocked by missing configuration are reported and retried
        on the next pass.
        """
        stmt = (
            select(Payment.payment_id)
            .where(
                Payment.status == PaymentStatus.SUCCEEDED,
                Payment.commission_calculated.is_(False),
            )
            .order_by(Payment.paid_at)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        payment_ids = (await self.session.execute(stmt)).scalars().all()

        sweep = CommissionSweepResult()
        for payment_id in payment_ids:
            sweep.processed += 1
            try:
                outcome = await self.calculate(payment_id)
            except ConfigError as e:
                sweep.blocked.append(
                    {"payment_id": str(payment_id), "setting_key": e.setting_key, "message": str(e)}
                )
                continue
            sweep.created += len(outcome.created)
            if not outcome.created:
                sweep.skipped += 1

        if sweep.blocked:
            logger.warning(
                "Commission blocked for %d payment(s) by missing settings", len(sweep.blocked)
            )
        return sweep

    async def approve_entries(
        self, entry_ids: list[UUID] | None = None, now: datetime | None = None
    ) -> int:
        """Approve pending entries (all of them when no ids are given)."""
        stmt = (
            update(CommissionLedgerEntry)
            .where(CommissionLedgerEntry.status == LedgerStatus.PENDING)
            .values(status=LedgerStatus.APPROVED, approved_at=now or utc_now())
            .execution_options(synchronize_session=False)
        )
        if entry_ids is not None:
            stmt = stmt.where(CommissionLedgerEntry.ledger_entry_id.in_(entry_ids))
        result = await self.session.execute(stmt)
        await self.session.commit()
        logger.info("Approved %d commission entries", result.rowcount)
        return result.rowcount

    async def _live_roles(self, payment_id: UUID) -> set[SplitRole]:
        result = await self.session.execute(
            select(CommissionLedgerEntry.split_role).where(
                CommissionLedgerEntry.payment_id == payment_id,
                CommissionLedgerEntry.status != LedgerStatus.VOID,
            )
        )
        return set(result.scalars().all())

    async def _load_staff(self, staff_ids: set[UUID]) -> dict[UUID, StaffUser]:
        if not staff_ids:
            return {}
        result = await self.session.execute(
            select(StaffUser).where(StaffUser.staff_user_id.in_(staff_ids))
        )
        return {s.staff_user_id: s for s in result.scalars().all()}

    async def _mark_calculated(self, payment_id: UUID) -> None:
        await self.session.execute(
            update(Payment)
            .where(Payment.payment_id == payment_id)
            .values(commission_calculated=True)
            .execution_options(synchronize_session=False)
        )
