"""
Pytest configuration and fixtures for testing
"""
import os

# Must be set before the app modules read settings
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret")
os.environ["RATE_LIMIT_PER_MINUTE"] = "100000"
os.environ.pop("REDIS_URL", None)
os.environ.pop("SERVICE_DATABASE_URL", None)

import asyncio
from datetime import datetime
from typing import Optional

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool

from auth_utils import create_jwt
from crud.account import AccountRepository
from database import Base, get_db, get_service_sessionmaker
from main import app
from routers.billing_router import get_payfast_service
from services.payfast_service import PayFastService

# Sandbox merchant credentials published in PayFast's integration docs
MERCHANT_ID = "10000100"
MERCHANT_KEY = "46f0cd694581a"
PASSPHRASE = "jt7NOE43FZPn"
SITE_URL = "https://mineai.test"


def make_session_factory(database_url: str):
    """
    Build an engine and session factory for a throwaway SQLite file.
    NullPool keeps connections from leaking between event loops.
    """
    engine = create_async_engine(database_url, echo=False, future=True, poolclass=NullPool)
    factory = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )
    return engine, factory


async def create_tables(engine):
    # Import models to ensure they're registered with Base
    import database_models  # noqa: F401
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def insert_account(factory, account_id: str, plan: str = "free", is_admin: bool = False,
                         trial_until: Optional[datetime] = None, email: Optional[str] = None):
    async with factory() as session:
        account = await AccountRepository(session).create_account({
            "id": account_id,
            "email": email or f"{account_id}@example.com",
            "plan": plan,
            "is_admin": is_admin,
            "trial_until": trial_until,
        })
        await session.commit()
        return account


async def load_account(factory, account_id: str):
    async with factory() as session:
        return await AccountRepository(session).get_account_by_id(account_id)


def auth_headers(account_id: str) -> dict:
    return {"Authorization": f"Bearer {create_jwt(account_id)}"}


def make_payfast_service(validate_answer: str = "VALID", status_code: int = 200, calls: Optional[list] = None,
                         **overrides) -> PayFastService:
    """
    PayFastService whose validate round-trip is answered locally.
    Every request body seen by the fake provider is appended to `calls`.
    """
    def handler(request: httpx.Request) -> httpx.Response:
        if calls is not None:
            calls.append(request)
        return httpx.Response(status_code, text=validate_answer)

    options = {
        "merchant_id": MERCHANT_ID,
        "merchant_key": MERCHANT_KEY,
        "passphrase": PASSPHRASE,
        "sandbox": True,
        "site_url": SITE_URL,
        "transport": httpx.MockTransport(handler),
    }
    options.update(overrides)
    return PayFastService(**options)


@pytest.fixture
async def test_sessionmaker(tmp_path):
    """
    Fixture that provides a session factory over an isolated SQLite database.

    This fixture:
    - Creates all tables before the test runs
    - Yields the factory (used by the privileged updater)
    - Disposes the engine after the test completes
    """
    engine, factory = make_session_factory(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await create_tables(engine)
    yield factory
    await engine.dispose()


@pytest.fixture
async def test_db(test_sessionmaker):
    """Fixture that yields a clean AsyncSession for the test."""
    async with test_sessionmaker() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


@pytest.fixture
def client(tmp_path):
    """
    FastAPI TestClient fixture with test database overrides.

    The privileged session factory points at the same database, and the
    PayFast service answers the validate round-trip with "VALID".
    """
    engine, factory = make_session_factory(f"sqlite+aiosqlite:///{tmp_path / 'api.db'}")
    asyncio.run(create_tables(engine))

    async def override_get_db():
        """Override get_db to use test database"""
        async with factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()

    provider_calls = []
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_service_sessionmaker] = lambda: factory
    app.dependency_overrides[get_payfast_service] = lambda: make_payfast_service(calls=provider_calls)

    test_client = TestClient(app)
    test_client.session_factory = factory
    test_client.provider_calls = provider_calls

    yield test_client

    # Cleanup: remove dependency overrides
    app.dependency_overrides.clear()
    asyncio.run(engine.dispose())
