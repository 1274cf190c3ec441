"""Shared fixtures for Cherishly API tests.

Provides a mock database session, mock outbound clients, a FastAPI app with
dependency overrides, an async httpx client carrying a valid bearer token,
and an in-memory SQLite session for service-level tests.
"""

from __future__ import annotations

import os
import time
from collections.abc import Callable
from datetime import UTC
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from jose import jwt
from sqlalchemy import JSON, DateTime
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.types import TypeDecorator

# Set the JWT secret BEFORE importing application modules so the
# AuthenticationMiddleware verifies against a deterministic key.
_TEST_JWT_SECRET = "test-secret-key-for-cherishly-tests"
os.environ.setdefault("CHERISH_JWT_SECRET", _TEST_JWT_SECRET)

from cherish_api.config import APISettings
from cherish_api.dependencies import (
    get_ai_client,
    get_db_session,
    get_peer_client,
    get_settings,
    get_user_session,
)
from cherish_api.main import create_app
from cherish_api.services.ai_client import CompletionClient
from cherish_api.services.peer_client import PeerClient
from cherish_engine.state.tables import Base

TEST_USER = "test-user"


def _make_token(sub: str | None = TEST_USER, role: str | None = None, expires_in: int = 3600) -> str:
    now = int(time.time())
    claims: dict[str, Any] = {"iat": now, "exp": now + expires_in}
    if sub is not None:
        claims["sub"] = sub
    if role is not None:
        claims["role"] = role
    return jwt.encode(claims, os.environ["CHERISH_JWT_SECRET"], algorithm="HS256")


@pytest.fixture()
def make_token() -> Callable[..., str]:
    """Return ``make_token(sub=..., role=..., expires_in=...)`` issuing HS256 tokens."""
    return _make_token


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@pytest.fixture()
def test_settings() -> APISettings:
    return APISettings(
        database_url="sqlite+aiosqlite://",
        platform_env="dev",
        jwt_secret=os.environ["CHERISH_JWT_SECRET"],
        cors_origins=["http://localhost:5173"],
        remote_people_cache_ttl_seconds=600,
        sync_pull_max_limit=500,
    )


# ---------------------------------------------------------------------------
# Mock database session and clients
# ---------------------------------------------------------------------------


@pytest.fixture()
def mock_session() -> AsyncMock:
    """Return a mock AsyncSession.

    ``execute`` returns a result whose ``scalar_one_or_none()`` is ``None``
    and ``scalars().all()`` is ``[]``, which reads as an empty database.
    """
    session = AsyncMock()
    session.add = MagicMock()
    session.flush = AsyncMock()
    session.commit = AsyncMock()
    session.rollback = AsyncMock()
    session.close = AsyncMock()

    result_mock = MagicMock()
    result_mock.scalar_one_or_none.return_value = None
    result_mock.scalar_one.return_value = None
    result_mock.scalars.return_value.all.return_value = []
    result_mock.scalars.return_value.first.return_value = None

    session.execute = AsyncMock(return_value=result_mock)
    return session


@pytest.fixture()
def mock_ai_client() -> AsyncMock:
    client = AsyncMock(spec=CompletionClient)
    client.close = AsyncMock()
    return client


@pytest.fixture()
def mock_peer_client() -> AsyncMock:
    client = AsyncMock(spec=PeerClient)
    client.close = AsyncMock()
    return client


# ---------------------------------------------------------------------------
# FastAPI app and client
# ---------------------------------------------------------------------------


@pytest.fixture()
def app(
    test_settings: APISettings,
    mock_session: AsyncMock,
    mock_ai_client: AsyncMock,
    mock_peer_client: AsyncMock,
):
    """Create the app with every external dependency overridden."""
    application = create_app()

    async def _override_session():
        yield mock_session

    application.dependency_overrides[get_db_session] = _override_session
    application.dependency_overrides[get_user_session] = _override_session
    application.dependency_overrides[get_settings] = lambda: test_settings
    application.dependency_overrides[get_ai_client] = lambda: mock_ai_client
    application.dependency_overrides[get_peer_client] = lambda: mock_peer_client
    return application


@pytest_asyncio.fixture()
async def client(app) -> AsyncClient:
    """Yield an async httpx client bound to the app with a valid bearer token."""
    transport = ASGITransport(app=app)
    async with AsyncClient(
        transport=transport,
        base_url="http://test",
        headers={"Authorization": f"Bearer {_make_token()}"},
    ) as ac:
        yield ac


@pytest_asyncio.fixture()
async def anon_client(app) -> AsyncClient:
    """Like ``client`` but without an Authorization header."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


# ---------------------------------------------------------------------------
# SQLite session for service tests
# ---------------------------------------------------------------------------


def _patch_columns_for_sqlite() -> None:
    """Substitute Postgres-specific column types for SQLite compatibility."""

    class _UTCAwareDateTime(TypeDecorator):
        impl = DateTime
        cache_ok = True

        def process_result_value(self, value, dialect):  # type: ignore[override]
            if value is not None and value.tzinfo is None:
                return value.replace(tzinfo=UTC)
            return value

    for table in Base.metadata.tables.values():
        for column in table.columns:
            if isinstance(column.type, JSONB):
                column.type = JSON()
            elif isinstance(column.type, DateTime) and getattr(column.type, "timezone", False):
                column.type = _UTCAwareDateTime()


_patch_columns_for_sqlite()


@pytest_asyncio.fixture
async def async_session():
    """Provide an async session backed by an in-memory SQLite database."""
    engine = create_async_engine("sqlite+aiosqlite://", echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False)
    async with factory() as session:
        yield session

    await engine.dispose()
