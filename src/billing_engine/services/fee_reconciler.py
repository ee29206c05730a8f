"""Settlement fee backfill for succeeded payments."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.exceptions import GatewayError, ReconciliationError
from billing_engine.gateway.base import PaymentGateway
from billing_engine.models import Payment, PaymentStatus

logger = logging.getLogger(__name__)


@dataclass
class FeeReconciliationResult:
    """Result of a fee reconciliation pass."""

    processed: int = 0
    updated: int = 0
    pending: int = 0
    failed: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)

    @property
    def success(self) -> bool:
        """Whether the pass completed without gateway errors."""
        return self.failed == 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "updated": self.updated,
            "pending": self.pending,
            "failed": self.failed,
            "errors": list(self.errors),
        }


class FeeReconciler:
    """Backfills fee and net amount from the gateway's settlement record.

    Enrichment only: a payment's status is never changed here, and a
    payment whose settlement is not available yet is simply picked up by a
    later pass.
    """

    def __init__(self, session: AsyncSession, gateway: PaymentGateway):
        self.session = session
        self.gateway = gateway

    async def select_missing(self, limit: int | None = None) -> list[tuple[UUID, str, Decimal]]:
        """Succeeded payments with a gateway id and no fee yet."""
        stmt = (
            select(Payment.payment_id, Payment.gateway_payment_id, Payment.amount)
            .where(
                Payment.status == PaymentStatus.SUCCEEDED,
                Payment.fee.is_(None),
                Payment.gateway_payment_id.is_not(None),
            )
            .order_by(Payment.paid_at)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self.session.execute(stmt)
        return [(row.payment_id, row.gateway_payment_id, row.amount) for row in result.all()]

    async def reconcile(self, limit: int | None = None) -> FeeReconciliationResult:
        result = FeeReconciliationResult()

        for payment_id, gateway_payment_id, amount in await self.select_missing(limit):
            result.processed += 1
            try:
                settlement = await self.gateway.retrieve_settlement(gateway_payment_id)
            except ReconciliationError:
                result.pending += 1
                continue
            except GatewayError as e:
                logger.warning("Settlement lookup failed for payment %s: %s", payment_id, e)
                result.failed += 1
                result.errors.append(
                    {
                        "payment_id": str(payment_id),
                        "gateway_payment_id": gateway_payment_id,
                        "code": e.code,
                        "message": str(e),
                    }
                )
                continue

            updated = await self.session.execute(
                update(Payment)
                .where(Payment.payment_id == payment_id, Payment.fee.is_(None))
                .values(fee=settlement.fee, net_amount=amount - settlement.fee)
                .execution_options(synchronize_session=False)
            )
            await self.session.commit()
            if updated.rowcount:
                result.updated += 1

        logger.info(
            "Fee reconciliation: %d processed, %d updated, %d pending, %d failed",
            result.processed,
            result.updated,
            result.pending,
            result.failed,
        )
        return result
