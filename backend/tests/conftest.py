"""
Pytest configuration and fixtures.

WHY: Fixtures provide reusable test setup/teardown logic, reducing
duplication and ensuring consistent test environments.
"""

import os

# WHY: Settings are read at import time; these must exist before any
# billing_core module is imported.
os.environ.setdefault("JWT_SECRET", "test-jwt-secret-not-for-production")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")

from datetime import timedelta
from typing import AsyncGenerator, Callable, Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from billing_core.core.auth import Principal, create_access_token
from billing_core.db.session import get_db
from billing_core.main import app
from billing_core.models.base import Base
from billing_core.services.directory import DirectoryClient, DirectoryUser, get_directory_client
from billing_core.services.gateway import GatewaySubscription, StripeGateway, get_gateway


# Test database URL
# WHY: Using SQLite for tests eliminates external database dependencies
# and makes tests faster.
TEST_ASYNC_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    """
    Create a test database engine.

    WHY: Function scope ensures each test gets a fresh database state.
    StaticPool keeps every session on the single in-memory connection,
    so commits made by the code under test stay visible.
    """
    engine = create_async_engine(
        TEST_ASYNC_DATABASE_URL,
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(db_engine) -> AsyncGenerator[AsyncSession, None]:
    """
    Create a test database session.

    Yields:
        AsyncSession: Database session for the test
    """
    async_session = async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    async with async_session() as session:
        yield session
        await session.rollback()


# ============================================================================
# External collaborators
# ============================================================================


@pytest.fixture
def gateway() -> MagicMock:
    """
    Mock payment gateway.

    WHY: Tests must never reach Stripe. Async methods become AsyncMocks
    via MagicMock(spec=...); defaults describe a freshly created incomplete
    subscription. Signature verification stays real so webhook tests
    exercise the HMAC check.
    """
    mock = MagicMock(spec=StripeGateway)
    mock.create_customer = AsyncMock(return_value="cus_test")
    mock.create_subscription = AsyncMock(
        return_value=GatewaySubscription(
            id="sub_test",
            status="incomplete",
            customer_id="cus_test",
            item_id="si_test",
            price_id="price_test",
        )
    )
    mock.cancel_subscription = AsyncMock(return_value=None)
    mock.update_subscription_quantity = AsyncMock(return_value=None)
    mock.update_subscription_price = AsyncMock(return_value=None)
    mock.update_subscription_metadata = AsyncMock(return_value=None)
    mock.list_subscriptions = AsyncMock(return_value=[])
    mock.verify_webhook_signature.side_effect = StripeGateway().verify_webhook_signature
    return mock


@pytest.fixture
def directory() -> AsyncMock:
    """
    Mock directory client.

    WHY: Every user id is known by default; tests override get_user to
    simulate unknown users or an unavailable directory.
    """
    mock = AsyncMock(spec=DirectoryClient)
    mock.get_user.side_effect = lambda user_id: DirectoryUser(id=user_id, email=f"{user_id}@example.com")
    mock.assign_role.return_value = None
    mock.revoke_role.return_value = None
    return mock


@pytest_asyncio.fixture
async def client(
    db_session: AsyncSession,
    gateway: MagicMock,
    directory: AsyncMock,
) -> AsyncGenerator[AsyncClient, None]:
    """
    Create a test HTTP client.

    WHY: AsyncClient allows testing FastAPI endpoints without running
    a real server. The database, gateway and directory dependencies are
    replaced with the test doubles above.

    Yields:
        AsyncClient: HTTP client for making test requests
    """

    async def override_get_db():
        """Override database dependency with test session."""
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_directory_client] = lambda: directory

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ============================================================================
# Identities
# ============================================================================


def make_token(
    user_id: str,
    roles: Optional[List[str]] = None,
    email_verified: bool = True,
    expires_delta: Optional[timedelta] = None,
) -> str:
    """Directory-style bearer token for a test user."""
    return create_access_token(
        {
            "sub": user_id,
            "email": f"{user_id}@example.com",
            "name": user_id.title(),
            "roles": roles or [],
            "email_verified": email_verified,
        },
        expires_delta=expires_delta,
    )


@pytest.fixture
def auth_headers() -> Callable[..., Dict[str, str]]:
    """
    Build Authorization headers.

    Usage:
        headers = auth_headers("user-1", roles=["administrator"])
    """

    def _headers(user_id: str = "user-1", **kwargs) -> Dict[str, str]:
        return {"Authorization": f"Bearer {make_token(user_id, **kwargs)}"}

    return _headers


@pytest.fixture
def principal() -> Principal:
    """Verified regular user."""
    return Principal(
        user_id="user-1",
        email="user-1@example.com",
        name="User One",
        roles=[],
        email_verified=True,
    )


@pytest.fixture
def admin_principal() -> Principal:
    """Global administrator."""
    return Principal(
        user_id="admin-1",
        email="admin-1@example.com",
        name="Admin One",
        roles=["administrator"],
        email_verified=True,
    )
