"""Pytest fixtures for billing engine tests."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from billing_engine.api.app import create_app
from billing_engine.api.dependencies import get_app_settings, get_db_session, get_gateway
from billing_engine.config import Settings
from billing_engine.database import make_session_factory
from billing_engine.gateway import StubGateway
from billing_engine.models import (
    Base,
    ChargeStatus,
    Client,
    CommissionLedgerEntry,
    CommissionSetting,
    LeadSource,
    LedgerStatus,
    Payment,
    PaymentSchedule,
    PaymentStatus,
    ScheduledCharge,
    ScheduleStatus,
    SplitRole,
    StaffUser,
)
from billing_engine.services.commission_settings import set_cache_ttl

# Use in-memory SQLite for tests (with async support)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# Wednesday inside the pay period 2025-01-13 .. 2025-01-26
NOW = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)
TODAY = NOW.date()


def make_settings(**overrides) -> Settings:
    values = dict(
        database_url=TEST_DATABASE_URL,
        host="127.0.0.1",
        port=8000,
        debug=True,
        log_level="DEBUG",
        cron_secret=None,
        gateway_api_key=None,
        gateway_base_url="https://api.stripe.test",
        max_charge_attempts=3,
        retry_backoff_days=3,
        stale_claim_minutes=30,
        abandon_after_days=7,
        initial_term_months=6,
        settings_cache_seconds=3600,
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture(autouse=True)
def reset_rate_cache():
    """Every test starts with an empty commission settings cache."""
    set_cache_ttl(3600)
    yield
    set_cache_ttl(3600)


@pytest_asyncio.fixture
async def engine():
    """Fresh in-memory database per test."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return make_session_factory(engine)


@pytest_asyncio.fixture
async def session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a database session for each test."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def gateway() -> StubGateway:
    return StubGateway()


@pytest.fixture
def settings() -> Settings:
    return make_settings()


# =============================================================================
# Factories
# =============================================================================


@pytest.fixture
def make_staff(session: AsyncSession):
    async def _make(
        name: str = "Coach",
        commission_rate: Decimal | None = None,
        role: str = "coach",
    ) -> StaffUser:
        staff = StaffUser(
            name=name,
            email=f"{uuid4().hex[:12]}@example.com",
            role=role,
            commission_rate=commission_rate,
        )
        session.add(staff)
        await session.commit()
        return staff

    return _make


@pytest.fixture
def make_client(session: AsyncSession):
    async def _make(
        coach: StaffUser | None = None,
        closer: StaffUser | None = None,
        setter: StaffUser | None = None,
        lead_source: LeadSource = LeadSource.COMPANY_DRIVEN,
        start_date: date = date(2025, 1, 1),
        is_resign: bool = False,
    ) -> Client:
        client = Client(
            name="Test Client",
            email="client@example.com",
            lead_source=lead_source,
            start_date=start_date,
            is_resign=is_resign,
            assigned_coach_id=coach.staff_user_id if coach else None,
            closer_id=closer.staff_user_id if closer else None,
            setter_id=setter.staff_user_id if setter else None,
        )
        session.add(client)
        await session.commit()
        return client

    return _make


@pytest.fixture
def make_schedule(session: AsyncSession, make_client):
    """Schedule with one charge per amount, due on consecutive days from ``first_due``."""

    async def _make(
        amounts: list[Decimal] | None = None,
        first_due: date = TODAY,
        status: ScheduleStatus = ScheduleStatus.ACTIVE,
        client: Client | None = None,
        customer_id: str | None = "cus_test",
        payment_method_id: str | None = "pm_test",
        created_at: datetime | None = None,
    ) -> PaymentSchedule:
        client = client or await make_client()
        schedule = PaymentSchedule(
            client_id=client.client_id,
            gateway_customer_id=customer_id,
            gateway_payment_method_id=payment_method_id,
            status=status,
        )
        if created_at is not None:
            schedule.created_at = created_at
        session.add(schedule)
        await session.flush()
        for n, amount in enumerate(amounts or [Decimal("100.00")], start=1):
            session.add(
                ScheduledCharge(
                    payment_schedule_id=schedule.payment_schedule_id,
                    installment_number=n,
                    amount=amount,
                    due_date=first_due + timedelta(days=n - 1),
                    status=ChargeStatus.PENDING,
                )
            )
        await session.commit()
        return schedule

    return _make


@pytest.fixture
def make_payment(session: AsyncSession):
    async def _make(
        client: Client | None,
        amount: Decimal = Decimal("1000.00"),
        paid_at: datetime = NOW,
        gateway_payment_id: str | None = None,
        fee: Decimal | None = None,
        net_amount: Decimal | None = None,
        status: PaymentStatus = PaymentStatus.SUCCEEDED,
    ) -> Payment:
        payment = Payment(
            client_id=client.client_id if client else None,
            gateway_payment_id=gateway_payment_id,
            amount=amount,
            fee=fee,
            net_amount=net_amount,
            status=status,
            paid_at=paid_at,
        )
        session.add(payment)
        await session.commit()
        return payment

    return _make


@pytest.fixture
def make_entry(session: AsyncSession):
    """Ledger entry written directly, bypassing the calculator."""

    async def _make(
        payment: Payment,
        user: StaffUser,
        commission_amount: Decimal = Decimal("100.00"),
        status: LedgerStatus = LedgerStatus.APPROVED,
        split_role: SplitRole = SplitRole.COACH,
        created_at: datetime = NOW,
    ) -> CommissionLedgerEntry:
        entry = CommissionLedgerEntry(
            payment_id=payment.payment_id,
            user_id=user.staff_user_id,
            client_id=payment.client_id,
            gross_amount=payment.amount,
            net_amount=payment.amount,
            commission_amount=commission_amount,
            percentage=Decimal("0.10"),
            rate_source="coach_lead_rate",
            split_role=split_role,
            status=status,
            created_at=created_at,
            voided_at=created_at if status == LedgerStatus.VOID else None,
        )
        session.add(entry)
        await session.commit()
        return entry

    return _make


@pytest.fixture
def set_rates(session: AsyncSession):
    async def _set(**rates: str) -> None:
        for key, value in rates.items():
            session.add(
                CommissionSetting(setting_key=key.replace("__", "."), setting_value=Decimal(value))
            )
        await session.commit()

    return _set


# =============================================================================
# API
# =============================================================================


@pytest_asyncio.fixture
async def api_settings() -> Settings:
    return make_settings()


@pytest_asyncio.fixture
async def client(
    session_factory, gateway: StubGateway, api_settings: Settings
) -> AsyncGenerator[AsyncClient, None]:
    """Create async HTTP client for API testing."""
    app = create_app()

    async def override_session() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_session
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_app_settings] = lambda: api_settings

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
