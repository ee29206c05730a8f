"""API routes."""

from billing_engine.api.routes.commissions import router as commissions_router
from billing_engine.api.routes.cron import router as cron_router
from billing_engine.api.routes.health import router as health_router
from billing_engine.api.routes.payroll import router as payroll_router

__all__ = ["commissions_router", "cron_router", "health_router", "payroll_router"]
