"""Shared fixtures for cherish_engine tests.

Engine tests run against an in-memory SQLite database via aiosqlite.
JSONB columns are patched to plain JSON and timezone-aware DateTime columns
return UTC-aware values, matching what PostgreSQL hands back.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from datetime import UTC

import pytest
import pytest_asyncio
from sqlalchemy import JSON, DateTime
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.types import TypeDecorator

from cherish_engine.state.repository import (
    PersonRepository,
    SyncConnectionRepository,
    SyncLinkRepository,
    UserRoleRepository,
)
from cherish_engine.state.tables import Base, PersonTable, SyncConnectionTable


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


# ---------------------------------------------------------------------------
# Data fixtures
# ---------------------------------------------------------------------------

USER = "user-1"


@pytest_asyncio.fixture
async def pro_user(async_session: AsyncSession) -> str:
    """``user-1`` on the ``pro`` plan."""
    await UserRoleRepository(async_session).set_role(USER, "pro")
    return USER


@pytest_asyncio.fixture
async def connection(async_session: AsyncSession) -> SyncConnectionTable:
    """An active sync connection owned by ``user-1``."""
    return await SyncConnectionRepository(async_session, USER).create(
        "https://peer.example/", "s3cret-shared-key-0001", "cherishly"
    )


@pytest.fixture
def link_person(async_session: AsyncSession) -> Callable[..., Awaitable[PersonTable]]:
    """Return ``await link_person(conn, name, remote_uid)`` creating a linked person."""

    async def _link(conn: SyncConnectionTable, name: str, remote_uid: str) -> PersonTable:
        person = await PersonRepository(async_session, USER).create(name, "partner")
        await SyncLinkRepository(async_session, USER).upsert(
            conn.id, remote_uid, local_person_id=person.id, link_status="linked"
        )
        return person

    return _link
