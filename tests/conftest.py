"""Shared test fixtures."""

from __future__ import annotations

import os
from collections.abc import AsyncGenerator
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession

os.environ.setdefault("QUESTLOG_DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from questlog.config import get_settings  # noqa: E402
from questlog.database import close_db, create_schema, get_engine, init_db  # noqa: E402


@pytest_asyncio.fixture
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """Fresh in-memory database with the full schema, one session."""
    get_settings.cache_clear()
    await init_db(get_settings().database_url)
    await create_schema()
    async with AsyncSession(get_engine(), expire_on_commit=False) as session:
        yield session
    await close_db()


@pytest.fixture
def mock_redis() -> MagicMock:
    """Redis stand-in that records pub/sub publishes."""
    redis = MagicMock()
    redis.publish = AsyncMock(return_value=1)
    return redis
