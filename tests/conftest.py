"""Shared test fixtures for the nutrition sync test suite."""

from datetime import datetime

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession

from app.core.database import Base
# Import all models so their metadata is registered on Base
import app.models.database  # noqa: F401
import app.models.sync_history  # noqa: F401
from app.services.nutrition_sync import NutritionSyncService
from app.services.repositories import SyncRepositories

from tests.fakes import FakeProviderAdapter


@pytest_asyncio.fixture
async def engine():
    """
    In-memory SQLite engine for tests.

    Creates all tables before the test, drops them after. Each test gets
    a clean database.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_maker(engine):
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest_asyncio.fixture
async def async_session(session_maker):
    """Provide an in-memory SQLite async session for tests."""
    async with session_maker() as session:
        yield session


@pytest.fixture
def adapter():
    return FakeProviderAdapter()


@pytest.fixture
def service(async_session, adapter):
    return NutritionSyncService(SyncRepositories.from_session(async_session), adapter)


@pytest.fixture
def day():
    """A fixed day used as the sync window in tests."""
    return datetime(2025, 3, 10)
