"""Sweep jobs run by the cron endpoints and the CLI.

Each job takes an open session and gateway, runs one stateless pass and
returns a JSON-ready summary. Jobs may overlap with their own previous
invocation; the services they call rely on conditional updates, not locks.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.config import Settings
from billing_engine.exceptions import GatewayError
from billing_engine.gateway import PaymentGateway, StripeGateway, StubGateway
from billing_engine.models import utc_now
from billing_engine.services import (
    ChargeProcessor,
    CommissionCalculator,
    DuplicateResolver,
    FeeReconciler,
    PaymentService,
    ScheduleCleaner,
    SweepSummary,
)

logger = logging.getLogger(__name__)


def build_gateway(settings: Settings) -> PaymentGateway:
    """Gateway adapter for the configured credentials.

    Without GATEWAY_API_KEY the stub gateway is only allowed in debug mode.
    """
    if settings.gateway_api_key:
        return StripeGateway(settings.gateway_api_key, base_url=settings.gateway_base_url)
    if settings.debug:
        logger.warning("GATEWAY_API_KEY not set; using the stub gateway")
        return StubGateway()
    raise GatewayError("GATEWAY_API_KEY is not configured", "not_configured")


async def close_gateway(gateway: PaymentGateway) -> None:
    aclose = getattr(gateway, "aclose", None)
    if aclose is not None:
        await aclose()


async def _settle_successes(
    session: AsyncSession, gateway: PaymentGateway, settings: Settings
) -> dict[str, Any]:
    """Record payments for succeeded charges, backfill fees, then run commission.

    Payments are found from the database, so successes left behind by an
    earlier sweep that stopped early are settled here too. Fees are fetched
    before commission so the net amount is the basis wherever the gateway
    has already settled the charge.
    """
    payments = await PaymentService(session).record_unrecorded()
    fees = await FeeReconciler(session, gateway).reconcile()

    calculator = CommissionCalculator(session, policy=settings.commission_policy())
    commission = await calculator.calculate_pending()
    return {
        "payments": payments.to_dict(),
        "fees": fees.to_dict(),
        "commission": commission.to_dict(),
    }


async def process_payments(
    session: AsyncSession,
    gateway: PaymentGateway,
    settings: Settings,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Charge everything due, then record payments and commission."""
    now = now or utc_now()
    processor = ChargeProcessor(session, gateway, settings.charge_policy())
    summary = await processor.process_due(now)

    result = summary.to_dict()
    result.update(await _settle_successes(session, gateway, settings))
    return result


async def reconcile_processing(
    session: AsyncSession,
    gateway: PaymentGateway,
    settings: Settings,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Resolve stale processing claims through the gateway's record."""
    now = now or utc_now()
    processor = ChargeProcessor(session, gateway, settings.charge_policy())
    summary = await processor.reconcile_processing(now)

    result = summary.to_dict()
    result.update(await _settle_successes(session, gateway, settings))
    return result


async def cleanup_schedules(
    session: AsyncSession, settings: Settings, now: datetime | None = None
) -> dict[str, Any]:
    cleaner = ScheduleCleaner(session, settings.cleanup_policy())
    result = await cleaner.cleanup(now or utc_now())
    return result.to_dict()


async def reconcile_fees(
    session: AsyncSession, gateway: PaymentGateway, limit: int | None = None
) -> dict[str, Any]:
    result = await FeeReconciler(session, gateway).reconcile(limit)
    return result.to_dict()


async def resolve_duplicates(session: AsyncSession, now: datetime | None = None) -> dict[str, Any]:
    result = await DuplicateResolver(session).resolve(now or utc_now())
    return result.to_dict()
