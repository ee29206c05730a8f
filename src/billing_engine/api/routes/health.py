"""Health, readiness and liveness endpoints."""

import logging
from datetime import datetime

from fastapi import APIRouter, Response, status
from pydantic import BaseModel
from sqlalchemy import select, text
from sqlalchemy.exc import SQLAlchemyError

from billing_engine.api.dependencies import DbSession, Gateway
from billing_engine.models import CommissionSetting, utc_now
from billing_engine.services.commission_settings import RATE_KEYS

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    status: str
    timestamp: datetime
    database: str
    gateway: str


class ReadinessResponse(BaseModel):
    """Ready once every global commission rate is configured."""

    status: str
    missing_settings: list[str] = []


@router.get("/health", response_model=HealthResponse)
async def health_check(db: DbSession, gateway: Gateway) -> HealthResponse:
    db_status = "unhealthy"
    try:
        await db.execute(text("SELECT 1"))
        db_status = "healthy"
    except SQLAlchemyError:
        logger.exception("Database health check failed")

    return HealthResponse(
        status="healthy" if db_status == "healthy" else "degraded",
        timestamp=utc_now(),
        database=db_status,
        gateway=gateway.gateway_name,
    )


@router.get(
    "/ready",
    response_model=ReadinessResponse,
    responses={503: {"model": ReadinessResponse}},
)
async def readiness_check(db: DbSession, response: Response) -> ReadinessResponse:
    """Commission sweeps block on missing rates, so report them here."""
    configured = set(
        (
            await db.execute(
                select(CommissionSetting.setting_key).where(
                    CommissionSetting.setting_key.in_(RATE_KEYS)
                )
            )
        ).scalars()
    )
    missing = [key for key in RATE_KEYS if key not in configured]
    if missing:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return ReadinessResponse(status="not_ready", missing_settings=missing)
    return ReadinessResponse(status="ready")


@router.get("/live")
async def liveness_check() -> dict[str, str]:
    return {"status": "alive"}
