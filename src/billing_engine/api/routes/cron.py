"""Scheduled sweep endpoints.

Hosting platforms call these on a timer, some with GET and some with POST,
so every sweep accepts both. When CRON_SECRET is set the caller must send
``Authorization: Bearer <secret>``.
"""

import logging
from typing import Any

from fastapi import APIRouter, Query

from billing_engine import jobs
from billing_engine.api.dependencies import AppSettings, CronAuthorized, DbSession, Gateway
from billing_engine.api.schemas import ErrorResponse

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/cron",
    tags=["cron"],
    dependencies=[CronAuthorized],
    responses={401: {"model": ErrorResponse}},
)

SWEEP_METHODS = ["GET", "POST"]


@router.api_route("/process-payments", methods=SWEEP_METHODS)
async def process_payments(db: DbSession, gateway: Gateway, settings: AppSettings) -> dict[str, Any]:
    """Charge every due installment, then record payments and commission."""
    result = await jobs.process_payments(db, gateway, settings)
    logger.info("Cron process-payments: %s", result)
    return result


@router.api_route("/reconcile-processing", methods=SWEEP_METHODS)
async def reconcile_processing(
    db: DbSession, gateway: Gateway, settings: AppSettings
) -> dict[str, Any]:
    """Resolve charges left in processing by an interrupted sweep."""
    result = await jobs.reconcile_processing(db, gateway, settings)
    logger.info("Cron reconcile-processing: %s", result)
    return result


@router.api_route("/cleanup-schedules", methods=SWEEP_METHODS)
async def cleanup_schedules(db: DbSession, settings: AppSettings) -> dict[str, Any]:
    """Expire schedules whose initial payment never completed."""
    result = await jobs.cleanup_schedules(db, settings)
    logger.info("Cron cleanup-schedules: %s", result)
    return result


@router.api_route("/reconcile-fees", methods=SWEEP_METHODS)
async def reconcile_fees(
    db: DbSession,
    gateway: Gateway,
    limit: int | None = Query(default=None, ge=1, le=1000),
) -> dict[str, Any]:
    result = await jobs.reconcile_fees(db, gateway, limit)
    logger.info("Cron reconcile-fees: %s", result)
    return result


@router.api_route("/resolve-duplicates", methods=SWEEP_METHODS)
async def resolve_duplicates(db: DbSession) -> dict[str, Any]:
    result = await jobs.resolve_duplicates(db)
    logger.info("Cron resolve-duplicates: %s", result)
    return result
