"""
Global pytest fixtures for the storefront billing test suite.

Provides:
- Async database session on a temporary SQLite file
- Async FastAPI test client sharing that session
- Authentication helpers
- Shared HTTP client cleanup between tests
"""
import os
from typing import AsyncGenerator
from uuid import uuid4

# Set test environment BEFORE any app imports
os.environ["TESTING"] = "true"
os.environ["ENVIRONMENT"] = "development"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["SECURITY_ENCRYPTION_KEY"] = "test-encryption-key-at-least-32-bytes-long"
os.environ["JWT_SECRET"] = "test-jwt-secret-for-testing-at-least-32-bytes"
os.environ["MP_CLIENT_ID"] = "test-client-id"
os.environ["MP_CLIENT_SECRET"] = "test-client-secret"
os.environ["MP_REDIRECT_URI"] = "http://localhost:8000/api/payments/mercadopago/callback"
os.environ["MP_BILLING_ACCESS_TOKEN"] = "TEST-billing-access-token"
os.environ.pop("MP_WEBHOOK_SECRET", None)
os.environ.pop("MP_MARKETPLACE_FEE", None)
os.environ.pop("INTERNAL_JOB_SECRET", None)

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402

import app.models  # noqa: E402,F401  # register ORM mappings


# ============================================================================
# Async Database Fixtures
# ============================================================================


@pytest_asyncio.fixture
async def async_engine():
    """Create async SQLite engine for testing using a temporary file."""
    from sqlalchemy.ext.asyncio import create_async_engine

    db_file = f"test_{uuid4().hex}.sqlite"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_file}", echo=False)
    yield engine
    await engine.dispose()

    if os.path.exists(db_file):
        os.remove(db_file)


@pytest_asyncio.fixture
async def db_session(async_engine) -> AsyncGenerator:
    """Create database tables and provide async session."""
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from app.shared.db.base import Base

    async with async_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_maker = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    async with session_maker() as session:
        try:
            yield session
        finally:
            await session.rollback()
            await session.close()


@pytest_asyncio.fixture
async def db(db_session):
    """Alias for db_session to match integration tests."""
    return db_session


@pytest_asyncio.fixture
async def other_db(async_engine, db_session) -> AsyncGenerator:
    """A second session on the same database, for concurrent-delivery tests."""
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    session_maker = async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)
    async with session_maker() as session:
        try:
            yield session
        finally:
            await session.rollback()
            await session.close()


# ============================================================================
# FastAPI Test Client Fixtures
# ============================================================================


@pytest.fixture
def app():
    """Use the real storefront app for API tests."""
    from app.main import app as storefront_app

    return storefront_app


@pytest_asyncio.fixture
async def async_client(app, db) -> AsyncGenerator:
    """Async test client. Overrides get_db to share the test session."""
    from httpx import ASGITransport, AsyncClient

    from app.shared.db.session import get_db

    async def _override_get_db():
        yield db

    app.dependency_overrides[get_db] = _override_get_db
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.pop(get_db, None)


# ============================================================================
# Authentication Fixtures
# ============================================================================


@pytest_asyncio.fixture
async def store(db):
    """An active tenant with an owner; the common starting point."""
    from tests.factories import create_tenant, create_user

    tenant = await create_tenant(db, billing_status="ACTIVE")
    owner = await create_user(db, tenant, role="owner", email="owner@store.test")
    await db.commit()
    return tenant, owner


@pytest_asyncio.fixture
async def owner_headers(store) -> dict[str, str]:
    from tests.factories import bearer_headers

    _, owner = store
    return bearer_headers(owner.id)


# ============================================================================
# Utility Fixtures
# ============================================================================


@pytest.fixture(autouse=True)
def set_testing_env():
    """Ensure TESTING is set for all tests."""
    os.environ["TESTING"] = "true"
    yield


@pytest_asyncio.fixture(autouse=True)
async def cleanup_http_singleton():
    """The shared httpx client must not outlive the test's event loop."""
    from app.shared.core.http import close_http_client

    await close_http_client()
    yield
    await close_http_client()
