"""FastAPI dependencies for dependency injection."""

import hmac
import logging
from collections.abc import AsyncGenerator
from typing import Annotated
from uuid import UUID

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.config import Settings, get_settings
from billing_engine.database import init_db
from billing_engine.gateway import PaymentGateway
from billing_engine.jobs import build_gateway

logger = logging.getLogger(__name__)


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Get database session dependency."""
    _, session_factory = init_db()
    async with session_factory() as session:
        try:
            yield session
        finally:
            await session.close()


def get_app_settings() -> Settings:
    return get_settings()


AppSettings = Annotated[Settings, Depends(get_app_settings)]


async def get_gateway(request: Request, settings: AppSettings) -> PaymentGateway:
    """Gateway shared by all requests of this app instance."""
    gateway = getattr(request.app.state, "gateway", None)
    if gateway is None:
        gateway = build_gateway(settings)
        request.app.state.gateway = gateway
    return gateway


async def verify_cron_secret(
    settings: AppSettings,
    authorization: Annotated[str | None, Header()] = None,
) -> None:
    """Reject cron calls without the shared secret, when one is configured."""
    if not settings.cron_secret:
        return
    expected = f"Bearer {settings.cron_secret}"
    if authorization is None or not hmac.compare_digest(authorization, expected):
        logger.warning("Rejected unauthorized cron request")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
        )


async def get_staff_user_id(
    x_staff_user_id: Annotated[str | None, Header()] = None,
) -> UUID:
    """Extract acting staff user ID from header."""
    if not x_staff_user_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Staff-User-ID header is required",
        )
    try:
        return UUID(x_staff_user_id)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid X-Staff-User-ID format",
        )


# Type aliases for cleaner dependency injection
DbSession = Annotated[AsyncSession, Depends(get_db_session)]
Gateway = Annotated[PaymentGateway, Depends(get_gateway)]
StaffUserId = Annotated[UUID, Depends(get_staff_user_id)]
CronAuthorized = Depends(verify_cron_secret)
