"""
Shared fixtures: an in-memory SQLite database per test, with users and connections.

Environment is set before any ledgersync import so Settings (and the module
level engine in ledgersync.core.database) never point at Postgres or Redis.
"""
import os

os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["API_SECRET_KEY"] = "test-secret-key-with-at-least-32-characters"
os.environ["ENCRYPTION_KEY"] = "bGVkZ2Vyc3luYy1mZXJuZXQta2V5LWZvci10ZXN0cyE="
os.environ["RATE_LIMIT_STORAGE_URI"] = "memory://"
os.environ["PLAID_CLIENT_ID"] = "test-client"
os.environ["PLAID_SECRET"] = "test-secret"

import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from ledgersync.core.database import Base
from ledgersync.core.security import encrypt_value
from ledgersync.models.connection import PlaidConnection
from ledgersync.models.transaction import Transaction  # noqa: F401  (register table)
from ledgersync.models.user import User


# ── Database ─────────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite's implicit transactions break SAVEPOINT; emit BEGIN ourselves
    @event.listens_for(engine.sync_engine, "connect")
    def _no_implicit_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _explicit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def user(db):
    u = User(email="owner@example.com")
    db.add(u)
    await db.commit()
    return u


@pytest_asyncio.fixture
async def other_user(db):
    u = User(email="someone-else@example.com")
    db.add(u)
    await db.commit()
    return u


async def make_connection(db, user, item_id="item-1", access_token="access-sandbox-1", **kw):
    conn = PlaidConnection(
        user_id=user.id,
        item_id=item_id,
        encrypted_access_token=encrypt_value(access_token),
        institution_name=kw.pop("institution_name", "First Platypus Bank"),
        **kw,
    )
    db.add(conn)
    await db.commit()
    return conn


@pytest.fixture
def connection_factory(db):
    async def factory(user, **kw):
        return await make_connection(db, user, **kw)
    return factory

