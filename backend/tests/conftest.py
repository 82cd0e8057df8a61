"""
Pytest configuration and fixtures.

WHY: Fixtures provide reusable test setup/teardown logic, reducing
duplication and ensuring consistent test environments.
"""

import pytest
import pytest_asyncio
from datetime import datetime
from typing import AsyncGenerator
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from httpx import AsyncClient

from billing_engine.main import app
from billing_engine.models.base import Base
from billing_engine.db.session import get_db, get_session_factory
from billing_engine.services import email as email_module
from billing_engine.services.email import EmailService, MockEmailProvider
from billing_engine.services.notification_service import (
    NotificationService,
    get_notification_service,
)
from billing_engine.services.payment_gateways import PaymentRouter, get_payment_router
from tests.fakes import FakeGateway, FrozenClock


# WHY: Batch processors open one session per item, so every test gets its
# own SQLite file that all of those sessions can see. An in-memory
# database would be private to a single connection.
TEST_DATABASE_FILE = "billing_test.db"

# Reference time used by the frozen clock
TEST_NOW = datetime(2025, 1, 15, 12, 0, 0)


def _database_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / TEST_DATABASE_FILE}"


def _configure_sqlite(engine, begin: str = "BEGIN") -> None:
    """
    Make SQLite transactions behave like PostgreSQL's for the tests.

    WHY: pysqlite delays BEGIN until the first write, which breaks
    SAVEPOINT handling (begin_nested). Emitting BEGIN ourselves fixes it.
    WAL mode lets the batch sessions read while another session writes.

    begin="BEGIN IMMEDIATE" takes the write lock up front, so concurrent
    writers queue on the busy timeout instead of failing with "database
    is locked" when a read transaction tries to upgrade.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql(begin)


@pytest_asyncio.fixture(scope="function")
async def db_engine(tmp_path):
    """
    Create a test database engine.

    WHY: Function scope ensures each test gets a fresh database state,
    preventing test pollution and ensuring test isolation.
    """
    engine = create_async_engine(
        _database_url(tmp_path),
        echo=False,
        connect_args={"timeout": 30},
    )
    _configure_sqlite(engine)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    """
    Session factory bound to the test engine.

    WHY: Handed to BillingScheduleProcessor and DunningManager exactly like
    the production factory.
    """
    return async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture
async def serialized_session_factory(db_engine, tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """
    Session factory whose transactions serialize like row-locked writers.

    WHY: PostgreSQL makes a second writer wait on the locked row. SQLite has
    only a database lock; BEGIN IMMEDIATE plus the busy timeout gives
    concurrent sessions the same wait-then-proceed behaviour.
    """
    engine = create_async_engine(
        _database_url(tmp_path),
        echo=False,
        connect_args={"timeout": 30},
    )
    _configure_sqlite(engine, begin="BEGIN IMMEDIATE")

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)

    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """
    Create a test database session.

    Yields:
        AsyncSession: Database session for the test
    """
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def clock() -> FrozenClock:
    """
    Controllable clock injected as `now` into services.

    WHY: Due dates, retry backoff and billing dates are all relative to
    "now". A frozen clock makes them exact.
    """
    return FrozenClock(TEST_NOW)


@pytest.fixture
def fake_gateway() -> FakeGateway:
    """Card gateway that succeeds unless told otherwise."""
    return FakeGateway("stripe")


@pytest.fixture
def payment_router(fake_gateway) -> PaymentRouter:
    """Payment router with the fake card gateway registered."""
    return PaymentRouter([fake_gateway])


@pytest.fixture
def notification_service() -> NotificationService:
    """
    Notification service backed by the mock email provider.

    WHY: Real templates are rendered, but nothing leaves the process.
    Sent messages are inspected through MockEmailProvider.sent_emails.
    """
    return NotificationService(email_service=EmailService(provider=MockEmailProvider()))


@pytest_asyncio.fixture
async def client(
    session_factory,
    payment_router,
    notification_service,
) -> AsyncGenerator[AsyncClient, None]:
    """
    Create a test HTTP client.

    WHY: AsyncClient allows testing FastAPI endpoints without running
    a real server. ASGITransport does not run the lifespan, so the
    background scheduler never starts during tests.

    Yields:
        AsyncClient: HTTP client for making test requests
    """
    from httpx import ASGITransport

    async def override_get_db():
        """Request session on the test database, committed like get_db."""
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_payment_router] = lambda: payment_router
    app.dependency_overrides[get_notification_service] = lambda: notification_service

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture(autouse=True)
def use_mock_email_provider(monkeypatch):
    """
    Use mock email provider for all tests.

    WHY: Tests should not send real emails. Removing the Resend key makes
    every EmailService fall back to MockEmailProvider, which records the
    messages for assertions.
    """
    email_module.MockEmailProvider.clear_sent_emails()

    from billing_engine.core import config
    monkeypatch.setattr(config.settings, "RESEND_API_KEY", None)

    yield

    email_module.MockEmailProvider.clear_sent_emails()
