"""Billing engine command line interface.

Runs the same sweeps as the cron endpoints, for operators and for hosts
that schedule jobs with plain cron.

Usage:
    python -m billing_engine.cli process-payments
    python -m billing_engine.cli reconcile-fees --limit 100
    python -m billing_engine.cli create-payroll-run --period-start 2025-01-13 --created-by UUID
    python -m billing_engine.cli periods --count 4
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from collections.abc import Awaitable, Callable
from datetime import date
from typing import Any
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine import jobs
from billing_engine.config import Settings, get_settings
from billing_engine.database import dispose_db, init_db
from billing_engine.exceptions import BillingEngineError
from billing_engine.logging_config import configure_logging
from billing_engine.models import Base
from billing_engine.services import PayrollAggregator, recent_periods
from billing_engine.services.commission_settings import set_cache_ttl

logger = logging.getLogger(__name__)


def parse_date(s: str) -> date:
    """Parse ISO date string."""
    return date.fromisoformat(s)


def parse_uuid(s: str) -> UUID:
    """Parse UUID string."""
    return UUID(s)


class BillingCli:
    """Billing engine command line interface."""

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings
        self.parser = self._build_parser()

    def _build_parser(self) -> argparse.ArgumentParser:
        """Build argument parser."""
        parser = argparse.ArgumentParser(
            prog="python -m billing_engine.cli",
            description="Billing engine operational tools",
        )
        subparsers = parser.add_subparsers(dest="command", help="Commands")

        subparsers.add_parser("process-payments", help="Charge every due installment")
        subparsers.add_parser(
            "reconcile-processing",
            help="Resolve charges stuck in processing through the gateway",
        )
        subparsers.add_parser(
            "cleanup-schedules",
            help="Expire schedules whose initial payment never completed",
        )

        fees = subparsers.add_parser("reconcile-fees", help="Backfill processor fees")
        fees.add_argument(
            "--limit",
            type=int,
            default=None,
            help="Maximum number of payments to reconcile",
        )

        subparsers.add_parser(
            "resolve-duplicates",
            help="Void duplicate coach commission entries",
        )

        run = subparsers.add_parser("create-payroll-run", help="Create a draft payroll run")
        run.add_argument(
            "--period-start",
            type=parse_date,
            required=True,
            help="First day of the pay period (YYYY-MM-DD)",
        )
        run.add_argument(
            "--created-by",
            type=parse_uuid,
            required=True,
            help="Staff user creating the run",
        )
        run.add_argument("--notes", type=str, default=None, help="Free-text notes")

        periods = subparsers.add_parser("periods", help="List recent pay periods")
        periods.add_argument(
            "--count",
            type=int,
            default=6,
            help="Number of periods to show",
        )

        subparsers.add_parser("init-db", help="Create all tables (development only)")

        return parser

    def run(self, args: list[str] | None = None) -> int:
        """Run the CLI with given arguments."""
        parsed = self.parser.parse_args(args)

        if not parsed.command:
            self.parser.print_help()
            return 1

        settings = self.settings or get_settings()
        configure_logging(settings.log_level)
        set_cache_ttl(settings.settings_cache_seconds)

        handlers: dict[str, Callable[..., Awaitable[dict[str, Any] | list[Any]]]] = {
            "process-payments": self._cmd_process_payments,
            "reconcile-processing": self._cmd_reconcile_processing,
            "cleanup-schedules": self._cmd_cleanup_schedules,
            "reconcile-fees": self._cmd_reconcile_fees,
            "resolve-duplicates": self._cmd_resolve_duplicates,
            "create-payroll-run": self._cmd_create_payroll_run,
            "init-db": self._cmd_init_db,
        }

        if parsed.command == "periods":
            return self._print(self._periods(parsed.count))

        handler = handlers.get(parsed.command)
        if handler is None:
            print(f"Unknown command: {parsed.command}", file=sys.stderr)
            return 1

        try:
            result = asyncio.run(self._with_session(handler, parsed, settings))
        except BillingEngineError as e:
            logger.error("%s failed: %s", parsed.command, e)
            print(f"ERROR: {e}", file=sys.stderr)
            return 1
        return self._print(result)

    async def _with_session(
        self,
        handler: Callable[..., Awaitable[Any]],
        args: argparse.Namespace,
        settings: Settings,
    ) -> Any:
        _, factory = init_db(settings.database_url)
        try:
            async with factory() as session:
                return await handler(session, args, settings)
        finally:
            await dispose_db()

    @staticmethod
    def _print(result: Any) -> int:
        print(json.dumps(result, indent=2, default=str))
        return 0

    @staticmethod
    def _periods(count: int) -> list[dict[str, Any]]:
        return [
            {"start": p.start, "end": p.end, "payout_date": p.payout_date}
            for p in recent_periods(count)
        ]

    # ===== Sweeps =====

    async def _gateway_job(
        self,
        job: Callable[..., Awaitable[dict[str, Any]]],
        session: AsyncSession,
        settings: Settings,
        *args: Any,
    ) -> dict[str, Any]:
        gateway = jobs.build_gateway(settings)
        try:
            return await job(session, gateway, *args)
        finally:
            await jobs.close_gateway(gateway)

    async def _cmd_process_payments(
        self, session: AsyncSession, args: argparse.Namespace, settings: Settings
    ) -> dict[str, Any]:
        return await self._gateway_job(jobs.process_payments, session, settings, settings)

    async def _cmd_reconcile_processing(
        self, session: AsyncSession, args: argparse.Namespace, settings: Settings
    ) -> dict[str, Any]:
        return await self._gateway_job(jobs.reconcile_processing, session, settings, settings)

    async def _cmd_cleanup_schedules(
        self, session: AsyncSession, args: argparse.Namespace, settings: Settings
    ) -> dict[str, Any]:
        return await jobs.cleanup_schedules(session, settings)

    async def _cmd_reconcile_fees(
        self, session: AsyncSession, args: argparse.Namespace, settings: Settings
    ) -> dict[str, Any]:
        return await self._gateway_job(jobs.reconcile_fees, session, settings, args.limit)

    async def _cmd_resolve_duplicates(
        self, session: AsyncSession, args: argparse.Namespace, settings: Settings
    ) -> dict[str, Any]:
        return await jobs.resolve_duplicates(session)

    # ===== Payroll =====

    async def _cmd_create_payroll_run(
        self, session: AsyncSession, args: argparse.Namespace, settings: Settings
    ) -> dict[str, Any]:
        run = await PayrollAggregator(session).create_run(
            args.period_start, created_by=args.created_by, notes=args.notes
        )
        return {
            "payroll_run_id": run.payroll_run_id,
            "period_start": run.period_start,
            "period_end": run.period_end,
            "payout_date": run.payout_date,
            "status": run.status.value,
            "total_commission": run.total_commission,
            "total_adjustments": run.total_adjustments,
            "total_payout": run.total_payout,
            "transaction_count": run.transaction_count,
        }

    async def _cmd_init_db(
        self, session: AsyncSession, args: argparse.Namespace, settings: Settings
    ) -> dict[str, Any]:
        engine, _ = init_db()
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        return {"created_tables": sorted(Base.metadata.tables)}


def main() -> int:
    """CLI entry point."""
    cli = BillingCli()
    return cli.run()


if __name__ == "__main__":
    sys.exit(main())
