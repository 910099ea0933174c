"""Shared test fixtures."""

from __future__ import annotations

import os

# Settings are read at import time
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./codeshop_test.db")
os.environ["TOKEN_API_BASE_URL"] = ""
os.environ["EMAIL_API_KEY"] = ""
os.environ["ADMIN_API_KEY"] = "test-admin-key"
os.environ["MOMO_ACCESS_KEY"] = "test-access-key"
os.environ["MOMO_SECRET_KEY"] = "test-secret-key"
os.environ["RECONCILE_POLICY"] = "strict"
os.environ["RECONCILE_WAIT_SECONDS"] = "5"
os.environ["RECONCILE_POLL_INTERVAL_SECONDS"] = "0.01"
os.environ["LOG_FORMAT"] = "console"

from collections.abc import AsyncGenerator

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from codeshop.core.db import close_db, get_session_factory, init_db
from codeshop.core.deps import get_dispatcher, get_momo_client, get_token_gateway
from codeshop.integrations.momo_client import MomoClient
from codeshop.integrations.token_api_client import TokenApiClient
from codeshop.main import create_app
from codeshop.services import transaction_ledger, users
from codeshop.services.notifications import PremiumCodeNotice, TrialCodeNotice
from codeshop.services.token_acquisition import TokenAcquisitionGateway

PAY_URL = "https://test-payment.momo.vn/pay/abc"


class RecordingDispatcher:
    """Stands in for NotificationDispatcher; keeps every notice it is handed."""

    def __init__(self):
        self.sent: list[PremiumCodeNotice | TrialCodeNotice] = []

    async def send_premium_code(self, notice: PremiumCodeNotice) -> bool:
        self.sent.append(notice)
        return True

    async def send_trial_code(self, notice: TrialCodeNotice) -> bool:
        self.sent.append(notice)
        return True


class CountingTokenGateway(TokenAcquisitionGateway):
    """Local-only gateway that counts acquire() calls."""

    def __init__(self):
        super().__init__(TokenApiClient(base_url=""))
        self.calls = 0

    async def acquire(self, kind, company_name, email, national_id):
        self.calls += 1
        return await super().acquire(kind, company_name, email, national_id)


def momo_transport(pay_url: str | None = PAY_URL, status_code: int = 200) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        if pay_url is None:
            return httpx.Response(status_code, json={"resultCode": 99, "message": "Bad signature"})
        return httpx.Response(status_code, json={"resultCode": 0, "payUrl": pay_url})

    return httpx.MockTransport(handler)


@pytest_asyncio.fixture
async def database(tmp_path) -> AsyncGenerator[None, None]:
    """Fresh SQLite file per test, schema created from the models."""
    await init_db(f"sqlite+aiosqlite:///{tmp_path / 'codeshop.db'}", create_all=True)
    yield
    await close_db()


@pytest_asyncio.fixture
async def db(database) -> AsyncGenerator[AsyncSession, None]:
    async with get_session_factory()() as session:
        yield session


@pytest.fixture
def session_factory(database):
    return get_session_factory()


@pytest.fixture
def admin_headers() -> dict:
    return {"X-Admin-Key": "test-admin-key"}


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def token_gateway() -> CountingTokenGateway:
    return CountingTokenGateway()


@pytest_asyncio.fixture
async def client(database, dispatcher, token_gateway) -> AsyncGenerator[AsyncClient, None]:
    app = create_app()
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    app.dependency_overrides[get_token_gateway] = lambda: token_gateway
    app.dependency_overrides[get_momo_client] = lambda: MomoClient(transport=momo_transport())

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def pending_order(db):
    """A premium order awaiting its gateway callback."""

    async def _make(order_id: str = "ORD1", amount: int = 199000, email: str | None = None):
        # one buyer per order; the national ID is per order too
        email = email or f"buyer-{order_id.lower()}@example.com"
        user = await users.get_or_create(db, email=email, name="Acme", national_id=f"0790{order_id}")
        return await transaction_ledger.open_transaction(
            db,
            order_id=order_id,
            user_id=user.id,
            amount=amount,
            payment_data={
                "productType": "premium",
                "email": email,
                "nameCompany": "Acme",
                "cccd": f"0790{order_id}",
            },
        )

    return _make
