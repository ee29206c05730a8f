"""Repair of duplicate coach attributions on a payment.

A payment can end up with more than one live coach entry when the
commission trigger fires twice or the client is reassigned between
invocations. The client's currently assigned coach is the authority.

Rules for a payment with several live coach entries:

- The current coach's entry is kept: their paid entry if there is one,
  otherwise their earliest. Every other unpaid entry is voided.
- Paid entries are never voided; payroll has already been issued on them.
  A paid entry left over for another coach, or a second paid entry, leaves
  the payment flagged for manual review.
- No entry for the current coach means no change and a flag.

Voids are conditional on the entry still being unpaid, so the resolver needs
no locks and can be re-run at any time; a second run changes nothing.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.models import (
    Client,
    CommissionLedgerEntry,
    LedgerStatus,
    Payment,
    SplitRole,
    utc_now,
)

logger = logging.getLogger(__name__)


@dataclass
class ResolutionResult:
    """Result of a resolver pass."""

    groups: int = 0
    voided: int = 0
    voided_entry_ids: list[UUID] = field(default_factory=list)
    flagged: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "groups": self.groups,
            "voided": self.voided,
            "voided_entry_ids": [str(i) for i in self.voided_entry_ids],
            "flagged": list(self.flagged),
        }


@dataclass(frozen=True)
class _Plan:
    void: list[CommissionLedgerEntry]
    flag_reason: str | None = None


class DuplicateResolver:
    """Keeps the current coach's entry per payment and voids the rest."""

    role = SplitRole.COACH

    def __init__(self, session: AsyncSession):
        self.session = session

    async def find_duplicates(self) -> dict[UUID, list[CommissionLedgerEntry]]:
        """Live coach entries grouped by payment, for payments with more than one."""
        result = await self.session.execute(
            select(CommissionLedgerEntry)
            .where(
                CommissionLedgerEntry.split_role == self.role,
                CommissionLedgerEntry.status != LedgerStatus.VOID,
            )
            .order_by(CommissionLedgerEntry.created_at, CommissionLedgerEntry.ledger_entry_id)
            .execution_options(populate_existing=True)
        )
        groups: dict[UUID, list[CommissionLedgerEntry]] = defaultdict(list)
        for entry in result.scalars().all():
            groups[entry.payment_id].append(entry)
        return {pid: entries for pid, entries in groups.items() if len(entries) > 1}

    async def current_coaches(self, payment_ids: list[UUID]) -> dict[UUID, UUID | None]:
        if not payment_ids:
            return {}
        result = await self.session.execute(
            select(Payment.payment_id, Client.assigned_coach_id)
            .outerjoin(Client, Payment.client_id == Client.client_id)
            .where(Payment.payment_id.in_(payment_ids))
        )
        return {row.payment_id: row.assigned_coach_id for row in result.all()}

    @staticmethod
    def plan(entries: list[CommissionLedgerEntry], current_coach: UUID | None) -> _Plan:
        """Decide which entries of one payment to void. ``entries`` are oldest first."""
        own = [e for e in entries if e.user_id == current_coach]
        if not own:
            return _Plan(void=[], flag_reason="no entry for current coach")

        # A paid entry of the current coach is the one payroll already used
        keep = next((e for e in own if e.status == LedgerStatus.PAID), own[0])
        others = [e for e in entries if e is not keep]
        stale_paid = [e for e in others if e.status == LedgerStatus.PAID]

        reason = None
        if any(e.user_id == current_coach for e in stale_paid):
            reason = "multiple paid coach entries"
        elif stale_paid:
            reason = "paid entry does not belong to current coach"
        return _Plan(void=[e for e in others if e.status != LedgerStatus.PAID], flag_reason=reason)

    async def resolve(self, now: datetime | None = None) -> ResolutionResult:
        now = now or utc_now()
        result = ResolutionResult()

        duplicates = await self.find_duplicates()
        coaches = await self.current_coaches(list(duplicates))
        result.groups = len(duplicates)

        for payment_id, entries in duplicates.items():
            current_coach = coaches.get(payment_id)
            plan = self.plan(entries, current_coach)

            for entry in plan.void:
                if await self._void(entry.ledger_entry_id, now):
                    result.voided += 1
                    result.voided_entry_ids.append(entry.ledger_entry_id)

            if plan.flag_reason:
                logger.warning(
                    "Payment %s needs manual review: %s", payment_id, plan.flag_reason
                )
                result.flagged.append(
                    {
                        "payment_id": str(payment_id),
                        "reason": plan.flag_reason,
                        "current_coach_id": str(current_coach) if current_coach else None,
                        "entry_ids": [str(e.ledger_entry_id) for e in entries],
                    }
                )

        await self.session.commit()
        logger.info(
            "Duplicate resolution: %d groups, %d voided, %d flagged",
            result.groups,
            result.voided,
            len(result.flagged),
        )
        return result

    async def _void(self, entry_id: UUID, now: datetime) -> bool:
        updated = await self.session.execute(
            update(CommissionLedgerEntry)
            .where(
                CommissionLedgerEntry.ledger_entry_id == entry_id,
                CommissionLedgerEntry.status.in_([LedgerStatus.PENDING, LedgerStatus.APPROVED]),
            )
            .values(status=LedgerStatus.VOID, voided_at=now)
            .execution_options(synchronize_session=False)
        )
        return updated.rowcount == 1
