"""Pytest fixtures for billing back-office tests."""

from __future__ import annotations

from datetime import date, timedelta
from decimal import Decimal
from typing import AsyncGenerator
from uuid import UUID

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from aba_billing.api.app import create_app
from aba_billing.api.dependencies import get_session_maker
from aba_billing.config import Settings, get_settings
from aba_billing.models import Base, Invoice, PayrollEmployee, Timesheet
from aba_billing.services.mailer import OutboundEmail, SendResult
from aba_billing.services.rendering import RenderError


@pytest.fixture
def settings() -> Settings:
    """Settings with a default batch recipient and no SMTP."""
    return Settings(
        database_url="sqlite+aiosqlite://",
        host="127.0.0.1",
        port=8000,
        debug=False,
        environment="test",
        batch_recipients=("office@example.com",),
        app_url="https://billing.example.com",
    )


@pytest.fixture
async def engine(tmp_path):
    """File-backed SQLite engine so several sessions see committed state."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_maker(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest.fixture
async def session(session_maker) -> AsyncGenerator[AsyncSession, None]:
    """Create a database session for each test."""
    async with session_maker() as session:
        yield session
        await session.rollback()


# ============================================================================
# Collaborator fakes
# ============================================================================


class FakeRenderer:
    """Renders a small PDF-looking payload; fails for selected entity ids."""

    def __init__(self, fail_ids: set[UUID] | None = None):
        self.fail_ids = fail_ids or set()
        self.calls: list[tuple[str, UUID]] = []

    async def render(self, entity_type: str, entity_id: UUID) -> bytes:
        self.calls.append((entity_type, entity_id))
        if entity_id in self.fail_ids:
            raise RenderError(entity_type, entity_id, "template error")
        return b"%PDF-1.4 " + str(entity_id).encode()


class FakeTransport:
    """Records outbound emails; optionally reports failure."""

    def __init__(self, fail_with: str | None = None):
        self.fail_with = fail_with
        self.sent: list[OutboundEmail] = []

    async def send(self, email: OutboundEmail) -> SendResult:
        self.sent.append(email)
        if self.fail_with:
            return SendResult(success=False, error=self.fail_with)
        return SendResult(success=True, message_id=f"<msg-{len(self.sent)}@test>")


@pytest.fixture
def renderer() -> FakeRenderer:
    return FakeRenderer()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


# ============================================================================
# Seed data
# ============================================================================


async def make_timesheet(
    session: AsyncSession,
    client_name: str = "Jane Doe",
    is_bcba: bool = False,
    start: date = date(2024, 1, 1),
) -> Timesheet:
    timesheet = Timesheet(
        client_name=client_name,
        provider_name="Sam Provider",
        is_bcba=is_bcba,
        start_date=start,
        end_date=start + timedelta(days=6),
        total_minutes=600,
        status="APPROVED",
    )
    session.add(timesheet)
    await session.flush()
    return timesheet


async def make_invoice(session: AsyncSession, number: str = "INV-1001") -> Invoice:
    invoice = Invoice(
        invoice_number=number,
        client_name="Jane Doe",
        total_amount=Decimal("450.00"),
        issued_on=date(2024, 1, 31),
        status="APPROVED",
    )
    session.add(invoice)
    await session.flush()
    return invoice


async def make_employee(
    session: AsyncSession,
    full_name: str = "Alice Smith",
    rate: Decimal = Decimal("25.00"),
    external_id: str | None = None,
) -> PayrollEmployee:
    employee = PayrollEmployee(
        full_name=full_name,
        external_id=external_id,
        default_hourly_rate=rate,
        active=True,
    )
    session.add(employee)
    await session.flush()
    return employee


# ============================================================================
# API client
# ============================================================================


@pytest.fixture
async def client(
    session_maker,
    settings: Settings,
    renderer: FakeRenderer,
    transport: FakeTransport,
) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client against the app, bound to the test database and fakes."""
    app = create_app(renderer=renderer, transport=transport)
    app.dependency_overrides[get_session_maker] = lambda: session_maker
    app.dependency_overrides[get_settings] = lambda: settings

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
