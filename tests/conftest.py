"""Shared test fixtures and configuration."""

import os
import pytest
from unittest.mock import patch

# Set up test environment variables before importing modules
os.environ.setdefault("STRIPE_API_KEY", "sk_test_dummy_key_for_testing")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("API_KEY", "test_api_key_12345")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from club_billing.config import BillingSettings
from club_billing.connectors import SimulatorConnector
from club_billing.database import Base, create_async_engine, get_async_session_factory
from club_billing.reconciliation import SimulatorFetcher


@pytest.fixture
def mock_api_key():
    """Set up mock API key for authentication."""
    with patch.dict(os.environ, {"API_KEY": "test_api_key_12345"}):
        yield "test_api_key_12345"


@pytest.fixture
def auth_headers(mock_api_key):
    """Return headers with authentication."""
    return {
        "Authorization": f"Bearer {mock_api_key}",
        "X-Provider": "simulator",
        "X-Actor": "ops@club",
    }


@pytest.fixture
def billing_settings():
    """Policy settings pinned for tests, independent of the environment."""
    return BillingSettings(
        max_charge_attempts=3,
        retry_backoff_hours=24,
        charge_timeout_seconds=2.0,
        claim_timeout_seconds=600,
        charge_lead_days=0,
        default_access_days=30,
        access_timezone="UTC",
        max_queue_attempts=5,
        batch_size=100,
        report_min_rows=20,
        report_row_cap=100,
        telegram_grant_url=None,
        lms_grant_url=None,
    )


# Database fixtures
@pytest.fixture
async def db_engine():
    """Create an in-memory SQLite database for testing."""
    engine = create_async_engine(
        database_url="sqlite+aiosqlite:///:memory:",
        echo=False
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    """Session factory bound to the test engine.

    The in-memory engine shares one connection, so tests open sessions one at
    a time rather than holding one open while a worker runs.
    """
    return get_async_session_factory(db_engine)


@pytest.fixture
async def db_session(session_factory):
    """Create a database session for testing."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def seed(session_factory):
    """Persist ORM objects and return them (attributes stay loaded)."""
    async def _seed(*objects):
        async with session_factory() as session:
            session.add_all(objects)
            await session.commit()
        return objects[0] if len(objects) == 1 else objects
    return _seed


@pytest.fixture
def fetch(session_factory):
    """Load a fresh copy of one row by primary key."""
    async def _fetch(model, ident):
        async with session_factory() as session:
            return await session.get(model, ident)
    return _fetch


@pytest.fixture
def fetch_all(session_factory):
    """Load every row of a model."""
    from sqlalchemy import select

    async def _fetch_all(model):
        async with session_factory() as session:
            result = await session.execute(select(model))
            return list(result.scalars().all())
    return _fetch_all


# Provider doubles
@pytest.fixture
def simulator():
    return SimulatorConnector()


@pytest.fixture
def simulator_fetcher(simulator):
    return SimulatorFetcher(simulator)
