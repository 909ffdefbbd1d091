"""Pytest configuration and fixtures for cafetal billing tests.

Provides an in-memory database, seeded growers and plans, a scripted
payment gateway, a fixed-clock call context and an authenticated client.
"""

import os

# Must be set before cafetal.config is imported
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("METRICS_CACHE_TTL", "0")
os.environ.setdefault("DEBUG", "false")

from datetime import date, datetime
from decimal import Decimal
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from cafetal.auth.jwt import create_access_token
from cafetal.auth.permissions import resolve_permissions
from cafetal.config import settings
from cafetal.database import Base, get_db
from cafetal.main import app
from cafetal.models.grower import CoffeeGrower
from cafetal.models.plan import SubscriptionPlan
from cafetal.services.context import RequestContext
from cafetal.services.gateway import GatewayResult, PaymentGateway, get_gateway

FIXED_NOW = datetime(2024, 3, 15, 12, 0, 0)


# ── Scripted gateway ─────────────────────────────────────────────

class StubGateway(PaymentGateway):
    """Deterministic gateway; queue results or exceptions per operation."""

    provider = "wompi"

    def __init__(self):
        self.charges: list = []
        self.refunds: list = []
        self.transactions: dict[str, object] = {}
        self.calls: list[tuple] = []
        # operation -> coroutine run while that call is "in flight"
        self.interleave: dict = {}
        self._counter = 0

    def _next_id(self) -> str:
        self._counter += 1
        return f"tx-{self._counter}"

    async def _interleave(self, operation, payment):
        competing = self.interleave.pop(operation, None)
        if competing is not None:
            await competing(payment)

    async def charge(self, payment, method_data):
        self.calls.append(("charge", payment.id))
        await self._interleave("charge", payment)
        outcome = self.charges.pop(0) if self.charges else "APPROVED"
        if isinstance(outcome, Exception):
            raise outcome
        return GatewayResult(
            provider_status=outcome,
            transaction_id=self._next_id(),
            reference=f"CAF-{payment.id}",
            message="Declined by issuer" if outcome == "DECLINED" else None,
            raw={"status": outcome},
        )

    async def refund(self, payment, amount, reason):
        self.calls.append(("refund", payment.id, amount))
        await self._interleave("refund", payment)
        outcome = self.refunds.pop(0) if self.refunds else "APPROVED"
        if isinstance(outcome, Exception):
            raise outcome
        return GatewayResult(
            provider_status=outcome,
            transaction_id=f"rf-{payment.id}",
            raw={"status": outcome, "amount_in_cents": int(amount * 100)},
        )

    async def get_transaction(self, transaction_id):
        self.calls.append(("get_transaction", transaction_id))
        outcome = self.transactions.get(transaction_id, "PENDING")
        if isinstance(outcome, Exception):
            raise outcome
        return GatewayResult(provider_status=outcome, transaction_id=transaction_id)


# ── Test Database Setup ──────────────────────────────────────────

@pytest_asyncio.fixture
async def test_engine():
    """Fresh in-memory SQLite database per test."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(test_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create database session for tests."""
    session_factory = async_sessionmaker(
        test_engine, class_=AsyncSession, expire_on_commit=False
    )
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def gateway() -> StubGateway:
    return StubGateway()


@pytest.fixture
def ctx() -> RequestContext:
    """Admin call context with a frozen clock."""
    return RequestContext(
        actor_id="admin-1",
        correlation_id="req-test",
        ip_address="127.0.0.1",
        clock=lambda: FIXED_NOW,
    )


@pytest.fixture(autouse=True)
def _no_report_cache():
    settings.metrics_cache_ttl = 0
    yield


@pytest_asyncio.fixture
async def client(db_session, gateway) -> AsyncGenerator[AsyncClient, None]:
    """Create test client with overridden database and gateway dependencies."""

    async def override_get_db():
        try:
            yield db_session
            await db_session.commit()
        except Exception:
            await db_session.rollback()
            raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_gateway] = lambda: gateway

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


# ── Test Data Fixtures ───────────────────────────────────────────

@pytest_asyncio.fixture
async def grower(db_session: AsyncSession) -> CoffeeGrower:
    grower = CoffeeGrower(
        first_name="Ana",
        last_name="Restrepo",
        email="ana@finca-la-esperanza.co",
        identification_number="1037654321",
    )
    db_session.add(grower)
    await db_session.commit()
    return grower


@pytest_asyncio.fixture
async def other_grower(db_session: AsyncSession) -> CoffeeGrower:
    grower = CoffeeGrower(
        first_name="Carlos",
        last_name="Gutierrez",
        email="carlos@cafe-alto.co",
        identification_number="71222333",
    )
    db_session.add(grower)
    await db_session.commit()
    return grower


@pytest_asyncio.fixture
async def deleted_grower(db_session: AsyncSession) -> CoffeeGrower:
    grower = CoffeeGrower(
        first_name="Luis",
        last_name="Mejia",
        deleted_at=datetime(2024, 1, 1),
    )
    db_session.add(grower)
    await db_session.commit()
    return grower


@pytest_asyncio.fixture
async def monthly_plan(db_session: AsyncSession) -> SubscriptionPlan:
    plan = SubscriptionPlan(
        name="Finca Basica",
        price=Decimal("50000.00"),
        currency="COP",
        billing_cycle="monthly",
        features=["harvest_reports"],
    )
    db_session.add(plan)
    await db_session.commit()
    return plan


@pytest_asyncio.fixture
async def yearly_plan(db_session: AsyncSession) -> SubscriptionPlan:
    plan = SubscriptionPlan(
        name="Finca Pro Anual",
        price=Decimal("1200000.00"),
        currency="COP",
        billing_cycle="yearly",
        features=["harvest_reports", "pest_tracking"],
    )
    db_session.add(plan)
    await db_session.commit()
    return plan


@pytest_asyncio.fixture
async def inactive_plan(db_session: AsyncSession) -> SubscriptionPlan:
    plan = SubscriptionPlan(
        name="Legacy",
        price=Decimal("30000.00"),
        currency="COP",
        billing_cycle="monthly",
        is_active=False,
    )
    db_session.add(plan)
    await db_session.commit()
    return plan


# ── Auth Fixtures ────────────────────────────────────────────────

@pytest.fixture
def admin_token() -> str:
    return create_access_token(
        actor_id="admin-1",
        role="admin",
        permissions=resolve_permissions("admin"),
    )


@pytest.fixture
def auth_headers(admin_token: str) -> dict:
    """Create authorization headers with an admin token."""
    return {"Authorization": f"Bearer {admin_token}"}


@pytest.fixture
def viewer_headers() -> dict:
    token = create_access_token(
        actor_id="viewer-1",
        role="billing_viewer",
        permissions=resolve_permissions("billing_viewer"),
    )
    return {"Authorization": f"Bearer {token}"}


# ── Helpers ──────────────────────────────────────────────────────

@pytest.fixture
def start_date() -> date:
    return date(2024, 3, 1)
