"""
Pytest configuration and fixtures
"""

import os

# Settings are read at import time; keep the suite off any real database
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest
import pytest_asyncio
import asyncio
from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.pool import StaticPool
from core.database import build_engine, build_session_maker
from models.base import Base
import models  # noqa: F401
from sync.fetchers.lms_client import LmsClient
from sync.fetchers.prm_client import PrmClient
from fakes import RouteTransport

# In-memory SQLite; StaticPool keeps every session on the same database
TEST_DATABASE_URL = "sqlite+aiosqlite://"


@pytest.fixture(scope="session")
def event_loop():
    """Create event loop for async tests"""
    loop = asyncio.get_event_loop_policy().new_event_loop()
    yield loop
    loop.close()


@pytest_asyncio.fixture(scope="function")
async def test_engine():
    """Create test database engine"""
    engine = build_engine(
        TEST_DATABASE_URL,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    # Create all tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    # Drop all tables after test
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_maker(test_engine):
    return build_session_maker(test_engine)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_maker) -> AsyncGenerator[AsyncSession, None]:
    """Create database session for tests"""
    async with session_maker() as session:
        yield session
        await session.rollback()


@pytest.fixture
def make_lms():
    """Build an LmsClient over fake routes"""

    def factory(routes, page_size: int = 2, **kwargs) -> LmsClient:
        fake = routes if isinstance(routes, RouteTransport) else RouteTransport(routes)
        return LmsClient(
            api_key="test-key",
            base_url="https://lms.test",
            page_size=page_size,
            request_delay=0,
            rate_limit_backoff=0,
            max_retries=kwargs.pop("max_retries", 2),
            retry_delay=0,
            transport=fake.transport,
            **kwargs
        )

    return factory


@pytest.fixture
def make_prm():
    """Build a PrmClient over fake routes"""

    def factory(routes, page_size: int = 2, **kwargs) -> PrmClient:
        fake = routes if isinstance(routes, RouteTransport) else RouteTransport(routes)
        return PrmClient(
            api_key="test-key",
            base_url="https://prm.test",
            page_size=page_size,
            request_delay=0,
            rate_limit_backoff=0,
            max_retries=kwargs.pop("max_retries", 2),
            retry_delay=0,
            transport=fake.transport,
            **kwargs
        )

    return factory
