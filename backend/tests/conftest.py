"""Shared test configuration and fixtures.

Each test gets a fresh in-memory SQLite database (aiosqlite) with all tables
created from the model metadata, so tests need no running PostgreSQL.
Stripe is never contacted: tests patch the ``app.billing.stripe_client``
wrappers and build fake Stripe objects with ``factories.StripeObj``.
"""

import os

# Settings are read at import time, so configure them before importing the app.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_123")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_123")
os.environ.setdefault("STRIPE_STARTER_PRICE_ID", "price_starter_monthly")
os.environ.setdefault("STRIPE_PRO_PRICE_ID", "price_pro_monthly")
os.environ.setdefault("STRIPE_AGENCY_PRICE_ID", "price_agency_monthly")
os.environ.setdefault("STRIPE_STARTER_YEARLY_PRICE_ID", "price_starter_yearly")
os.environ.setdefault("STRIPE_PRO_YEARLY_PRICE_ID", "price_pro_yearly")
os.environ.setdefault("STRIPE_AGENCY_YEARLY_PRICE_ID", "price_agency_yearly")

import uuid  # noqa: E402
from collections.abc import AsyncGenerator  # noqa: E402
from datetime import datetime  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from app.database import Base, get_db  # noqa: E402
from app.main import app  # noqa: E402
from app.models.subscription import Subscription, SubscriptionStatus  # noqa: E402
from app.models.user import User  # noqa: E402
from factories import auth_headers_for  # noqa: E402


# ---------------------------------------------------------------------------
# Per-test database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def test_engine():
    """A fresh in-memory database; StaticPool keeps every session on one connection."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(test_engine) -> AsyncGenerator[AsyncSession, None]:
    session_factory = async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def client(db_session: AsyncSession) -> AsyncGenerator[AsyncClient, None]:
    """Provide an httpx AsyncClient wired to use the test DB session."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac

    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Convenience fixtures: users with subscriptions
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def make_user(db_session: AsyncSession):
    """Factory: create a committed user plus subscription row.

    Keyword arguments override subscription columns.
    """

    async def _make(**subscription_fields) -> User:
        unique = uuid.uuid4().hex[:8]
        user = User(email=f"user-{unique}@test.com", name="Test User", is_active=True)
        db_session.add(user)
        await db_session.flush()

        fields = {
            "plan": "starter",
            "status": "active",
            "status_enum": SubscriptionStatus.SUBSCRIBED,
            "stripe_customer_id": f"cus_{unique}",
            "stripe_subscription_id": f"sub_{unique}",
            "payment_method_on_file": True,
        }
        fields.update(subscription_fields)
        db_session.add(Subscription(user_id=user.id, **fields))
        await db_session.commit()
        await db_session.refresh(user)
        return user

    return _make


@pytest_asyncio.fixture
async def test_user(make_user) -> User:
    """A subscribed starter-plan user."""
    return await make_user()


@pytest_asyncio.fixture
async def auth_headers(test_user: User) -> dict[str, str]:
    """Return Authorization headers for the test user."""
    return auth_headers_for(test_user)


@pytest_asyncio.fixture
async def test_free_user(make_user) -> User:
    """A free-plan user who never subscribed."""
    return await make_user(
        plan="free",
        status="none",
        status_enum=SubscriptionStatus.UNSUBSCRIBED,
        stripe_customer_id=None,
        stripe_subscription_id=None,
        payment_method_on_file=False,
    )


@pytest_asyncio.fixture
async def free_auth_headers(test_free_user: User) -> dict[str, str]:
    """Return Authorization headers for the free-plan test user."""
    return auth_headers_for(test_free_user)


@pytest.fixture
def fixed_now() -> datetime:
    return datetime(2026, 3, 1, 12, 0, 0)
