"""
Test fixtures for the Card Issuer API test suite.

This module provides shared fixtures used across all test files:

  - db_engine / db_session: Fresh in-memory SQLite database for each test
  - session_factory: Session factory bound to the test engine
  - client: Async HTTP test client with a valid x-api-key, asking for JSON
  - issued_card: A card issued through the API (limit 1000.00)
  - file_session_factory: File-backed SQLite for tests that need several
    connections at once (concurrency)

Key design decisions:
  - Secrets are set in the environment before the application is imported,
    because card_issuer.config builds its settings at import time.
  - In-memory SQLite (sqlite+aiosqlite://) is used for speed and isolation.
    Each test gets a completely fresh database — no state leaks between tests.
  - We override get_db AND get_session_factory, so both the administration
    endpoints and the authorization engine hit the test database.
  - In-memory SQLite shares one connection, so truly parallel requests use
    the file-backed fixture instead.
"""

import os

os.environ.setdefault("API_KEY", "test-api-key")
os.environ.setdefault("CVV_PEPPER", "test-pepper")
os.environ.setdefault("CARD_ENCRYPTION_KEY", "A" * 43 + "=")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")

import pytest_asyncio  # noqa: E402
from httpx import AsyncClient, ASGITransport  # noqa: E402
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker  # noqa: E402

from card_issuer.database import Base, get_db, get_session_factory  # noqa: E402
from card_issuer.main import app  # noqa: E402

# In-memory SQLite for fast, isolated tests
TEST_DATABASE_URL = "sqlite+aiosqlite://"

API_KEY = os.environ["API_KEY"]
TEST_PEPPER = os.environ["CVV_PEPPER"]

VISA_TEST_PAN = "4111111111111111"
SECOND_PAN = "5555555555554444"
UNKNOWN_PAN = "4012888888881881"


def card_payload(number: str = VISA_TEST_PAN, limit: str = "1000.00", **overrides) -> dict:
    payload = {
        "number": number,
        "holder_name": "Jane Doe",
        "expiration": "12/29",
        "cvv": "123",
        "authorized_limit": limit,
    }
    payload.update(overrides)
    return payload


def authorization_payload(
    card: str = VISA_TEST_PAN,
    amount: str = "100.00",
    merchant: str = "COFFEE_SHOP",
    cvv: str = "123",
) -> dict:
    return {"card": card, "cvv": cvv, "amount": amount, "merchant": merchant}


@pytest_asyncio.fixture
async def db_engine():
    """Create a fresh async engine with all tables for each test."""
    engine = create_async_engine(TEST_DATABASE_URL)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(db_engine):
    return async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest_asyncio.fixture
async def db_session(session_factory):
    """Provide an async session bound to the test engine."""
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def client(session_factory):
    """
    Async HTTP test client with the test database injected.

    Sends the API key and asks for JSON; tests that exercise XML or
    authentication set their own headers per request.
    """

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
        headers={"x-api-key": API_KEY, "Accept": "application/json"},
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def issued_card(client):
    """Issue the standard test card (limit 1000.00, CVV 123) via the API."""
    response = await client.post("/api/v1/cards", json=card_payload())
    assert response.status_code == 201, f"Card issue failed: {response.text}"
    return response.json()


@pytest_asyncio.fixture
async def file_session_factory(tmp_path):
    """Session factory over a file-backed SQLite database (real parallel connections)."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'issuer.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()
