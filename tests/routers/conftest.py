"""
HTTP-level fixtures. Requests go through httpx's ASGI transport so the app
runs on the test's event loop, next to the aiosqlite engine.
"""
import httpx
import pytest
import pytest_asyncio

from plaid_fakes import FakePlaidClient
from ledgersync.core.database import get_db
from ledgersync.core.deps import get_current_user
from ledgersync.core.rate_limit import limiter
from ledgersync.main import app
from ledgersync.routers.plaid import get_plaid_client


@pytest.fixture
def fake_plaid():
    return FakePlaidClient()


@pytest_asyncio.fixture
async def anonymous_client(db):
    async def _db():
        yield db

    app.dependency_overrides[get_db] = _db
    limiter.reset()
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def client(anonymous_client, user, fake_plaid):
    app.dependency_overrides[get_current_user] = lambda: user
    app.dependency_overrides[get_plaid_client] = lambda: fake_plaid
    return anonymous_client
