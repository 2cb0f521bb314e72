import os
from typing import AsyncGenerator

# Settings are read at import time by libs.db.config.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DB_TRANSACTION_MODE", "transactional")

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from libs.auth.dependencies import get_current_user
from libs.auth.models import ADMIN_ROLE, CLIENT_ROLE, COACH_ROLE, AuthUser
from libs.common.config import get_settings
from libs.db.base import Base
from libs.db.session import get_async_db
from services.classes_service import models as _class_models  # noqa: F401
from services.classes_service.dispatch import get_event_dispatcher

get_settings.cache_clear()


def _enable_sqlite_savepoints(engine) -> None:
    """Let pysqlite emit BEGIN/SAVEPOINT itself so nested transactions work."""

    @event.listens_for(engine.sync_engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")


@pytest_asyncio.fixture
async def test_engine():
    """
    Fresh in-memory database per test. StaticPool keeps every session on the
    one connection that holds the schema.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    _enable_sqlite_savepoints(engine)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(test_engine):
    return async_sessionmaker(
        bind=test_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """
    Yield a database session. Units of work commit for real; the database
    is discarded with the engine after the test.
    """
    session = session_factory()
    try:
        yield session
    finally:
        await session.close()


# ---------------------------------------------------------------------------
# API
# ---------------------------------------------------------------------------


class RecordingDispatcher:
    """Captures published events instead of posting them."""

    def __init__(self):
        self.audits = []
        self.notifications = []

    async def publish(self, audits=(), notifications=()):
        self.audits.extend(audits)
        self.notifications.extend(notifications)


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def client_user():
    return AuthUser(sub="client-1", email="client1@test.com", role=CLIENT_ROLE)


@pytest.fixture
def coach_user():
    return AuthUser(sub="coach-1", email="coach1@test.com", role=COACH_ROLE)


@pytest.fixture
def admin_user():
    return AuthUser(sub="admin-1", email="admin1@test.com", role=ADMIN_ROLE)


@pytest_asyncio.fixture
async def api_app(session_factory, dispatcher):
    from services.classes_service.app.main import create_app

    app = create_app()

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_async_db] = override_get_db
    app.dependency_overrides[get_event_dispatcher] = lambda: dispatcher
    yield app
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def api_client(api_app) -> AsyncGenerator[AsyncClient, None]:
    async with AsyncClient(
        transport=ASGITransport(app=api_app), base_url="http://test"
    ) as client:
        yield client


@pytest.fixture
def login(api_app):
    """Pick the authenticated caller for subsequent requests."""

    def _login(user: AuthUser) -> AuthUser:
        api_app.dependency_overrides[get_current_user] = lambda: user
        return user

    return _login
