"""FastAPI application factory."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from billing_engine import __version__
from billing_engine.api.routes import (
    commissions_router,
    cron_router,
    health_router,
    payroll_router,
)
from billing_engine.config import get_settings
from billing_engine.database import dispose_db, init_db
from billing_engine.exceptions import (
    ConfigError,
    GatewayError,
    InvalidTransitionError,
    NotFoundError,
    PersistenceError,
)
from billing_engine.jobs import close_gateway
from billing_engine.logging_config import configure_logging
from billing_engine.services.commission_settings import set_cache_ttl

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    # Startup
    settings = get_settings()
    configure_logging(settings.log_level)
    set_cache_ttl(settings.settings_cache_seconds)
    init_db(settings.database_url)
    yield
    # Shutdown
    gateway = getattr(app.state, "gateway", None)
    if gateway is not None:
        await close_gateway(gateway)
    await dispose_db()


def _error(status_code: int, detail: str, code: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": detail, "code": code})


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Billing Engine API",
        description="Recurring payment scheduling and commission ledger",
        version=__version__,
        lifespan=lifespan,
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Exception handlers
    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
        return _error(status.HTTP_404_NOT_FOUND, str(exc), "NOT_FOUND")

    @app.exception_handler(InvalidTransitionError)
    async def transition_handler(request: Request, exc: InvalidTransitionError) -> JSONResponse:
        return _error(status.HTTP_409_CONFLICT, str(exc), "INVALID_TRANSITION")

    @app.exception_handler(PersistenceError)
    async def persistence_handler(request: Request, exc: PersistenceError) -> JSONResponse:
        return _error(status.HTTP_409_CONFLICT, str(exc), "CONFLICT")

    @app.exception_handler(ConfigError)
    async def config_handler(request: Request, exc: ConfigError) -> JSONResponse:
        return _error(status.HTTP_422_UNPROCESSABLE_ENTITY, str(exc), "MISSING_SETTING")

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        return _error(status.HTTP_422_UNPROCESSABLE_ENTITY, str(exc), "INVALID_REQUEST")

    @app.exception_handler(GatewayError)
    async def gateway_handler(request: Request, exc: GatewayError) -> JSONResponse:
        logger.warning("Gateway error on %s: %s (%s)", request.url.path, exc, exc.code)
        return _error(status.HTTP_502_BAD_GATEWAY, str(exc), exc.code or "GATEWAY_ERROR")

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle unexpected exceptions."""
        logger.exception("Unhandled error on %s", request.url.path)
        return _error(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            "An unexpected error occurred",
            "INTERNAL_ERROR",
        )

    # Include routers
    app.include_router(health_router)
    app.include_router(cron_router, prefix="/api")
    app.include_router(commissions_router, prefix="/api/v1")
    app.include_router(payroll_router, prefix="/api/v1")

    return app


# Default app instance for uvicorn
app = create_app()
