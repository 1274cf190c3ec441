"""Repository classes providing CRUD access to the Cherishly state store.

Each repository takes an ``AsyncSession`` (and usually the owning
``user_id``) at construction time and operates within the caller's
transaction boundary.  All writes call ``session.flush()`` so that generated
defaults are populated; the caller is responsible for calling
``session.commit()`` (or relying on the ``get_session`` context manager).
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable, Sequence
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from cherish_engine.state.tables import (
    AllowancePeriodTable,
    CreditSettingTable,
    LLMUsageEventTable,
    MomentTable,
    PartnerConnectionTable,
    PartnerDislikeTable,
    PartnerLikeTable,
    PartnerNicknameTable,
    PartnerProfileDetailTable,
    PersonTable,
    SyncConflictTable,
    SyncConnectionTable,
    SyncCursorTable,
    SyncMergeLogTable,
    SyncOutboxTable,
    SyncPersonCandidateTable,
    SyncPersonLinkTable,
    SyncRemotePeopleCacheTable,
    UserRoleTable,
)

logger = logging.getLogger(__name__)


def _dialect_name(session: AsyncSession) -> str:
    bind = session.get_bind()
    return str(getattr(getattr(bind, "dialect", None), "name", ""))


async def _dialect_upsert(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
    update_columns: list[str],
) -> Any:
    """Dialect-aware upsert: PostgreSQL ``ON CONFLICT DO UPDATE`` or SQLite equivalent.

    Parameters
    ----------
    session:
        The active async session.
    table:
        The SQLAlchemy table class to upsert into.
    values:
        Column-value mapping for the row to insert.
    index_elements:
        Column names forming the unique constraint for conflict detection.
    update_columns:
        Column names to update when a conflict occurs.
    """
    stmt: Any
    if "postgresql" in _dialect_name(session):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=index_elements,
            set_={col: getattr(stmt.excluded, col) for col in update_columns},
        )
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=index_elements,
            set_={col: values[col] for col in update_columns},
        )
    return await session.execute(stmt)


async def _dialect_insert_nothing(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
) -> Any:
    """Dialect-aware insert with ``ON CONFLICT DO NOTHING``.

    ``result.rowcount`` is ``0`` when the row already existed.
    """
    stmt: Any
    if "postgresql" in _dialect_name(session):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values).on_conflict_do_nothing(index_elements=index_elements)
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values).on_conflict_do_nothing(index_elements=index_elements)
    return await session.execute(stmt)


# ---------------------------------------------------------------------------
# Allowance
# ---------------------------------------------------------------------------


class UserRoleRepository:
    """Read/write access to ``user_roles``."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_role(self, user_id: str) -> str | None:
        stmt = select(UserRoleTable.role).where(UserRoleTable.user_id == user_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def set_role(self, user_id: str, role: str) -> None:
        now = datetime.now(UTC)
        await _dialect_upsert(
            self._session,
            UserRoleTable,
            {"user_id": user_id, "role": role, "created_at": now, "updated_at": now},
            index_elements=["user_id"],
            update_columns=["role", "updated_at"],
        )
        await self._session.flush()

    async def list_user_ids(self) -> list[str]:
        """Return every known user id, ordered for stable batch processing."""
        result = await self._session.execute(select(UserRoleTable.user_id).order_by(UserRoleTable.user_id))
        return list(result.scalars().all())


class CreditSettingsRepository:
    """Global key/value allowance configuration."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_all(self) -> dict[str, int]:
        result = await self._session.execute(select(CreditSettingTable.key, CreditSettingTable.value))
        return {key: int(value) for key, value in result.all()}

    async def set(self, key: str, value: int, *, updated_by: str | None = None) -> None:
        await _dialect_upsert(
            self._session,
            CreditSettingTable,
            {"key": key, "value": value, "updated_by": updated_by, "updated_at": datetime.now(UTC)},
            index_elements=["key"],
            update_columns=["value", "updated_by", "updated_at"],
        )
        await self._session.flush()


class AllowanceRepository:
    """CRUD for ``ai_allowance_periods`` scoped to one user."""

    def __init__(self, session: AsyncSession, user_id: str) -> None:
        self._session = session
        self._user_id = user_id

    async def get_active(self, at: datetime) -> AllowancePeriodTable | None:
        """Return the period containing *at* (``start <= at < end``)."""
        stmt = (
            select(AllowancePeriodTable)
            .where(
                AllowancePeriodTable.user_id == self._user_id,
                AllowancePeriodTable.period_start <= at,
                AllowancePeriodTable.period_end > at,
            )
            .order_by(AllowancePeriodTable.period_start.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_start(self, period_start: datetime) -> AllowancePeriodTable | None:
        stmt = (
            select(AllowancePeriodTable)
            .where(
                AllowancePeriodTable.user_id == self._user_id,
                AllowancePeriodTable.period_start == period_start,
            )
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_latest_ended_before(self, boundary: datetime) -> AllowancePeriodTable | None:
        """Return the most recent period whose end is at or before *boundary*."""
        stmt = (
            select(AllowancePeriodTable)
            .where(
                AllowancePeriodTable.user_id == self._user_id,
                AllowancePeriodTable.period_end <= boundary,
            )
            .order_by(AllowancePeriodTable.period_end.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def insert_if_absent(self, values: dict[str, Any]) -> bool:
        """Insert a period unless one already exists for ``(user_id, period_start)``.

        Returns ``True`` when this call created the row.
        """
        now = datetime.now(UTC)
        row = {
            "id": str(uuid.uuid4()),
            "user_id": self._user_id,
            "tokens_used": 0,
            "created_at": now,
            "updated_at": now,
            **values,
        }
        result = await _dialect_insert_nothing(
            self._session,
            AllowancePeriodTable,
            row,
            index_elements=["user_id", "period_start"],
        )
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def close(self, period_id: str, closed_at: datetime) -> None:
        stmt = (
            update(AllowancePeriodTable)
            .where(
                AllowancePeriodTable.id == period_id,
                AllowancePeriodTable.user_id == self._user_id,
                AllowancePeriodTable.closed_at.is_(None),
            )
            .values(closed_at=closed_at, updated_at=closed_at)
        )
        await self._session.execute(stmt)
        await self._session.flush()

    async def add_tokens_used(self, period_id: str, tokens: int) -> None:
        """Atomically increment ``tokens_used`` in the database."""
        stmt = (
            update(AllowancePeriodTable)
            .where(
                AllowancePeriodTable.id == period_id,
                AllowancePeriodTable.user_id == self._user_id,
            )
            .values(
                tokens_used=AllowancePeriodTable.tokens_used + tokens,
                updated_at=datetime.now(UTC),
            )
        )
        await self._session.execute(stmt)
        await self._session.flush()

    async def overwrite(self, period_id: str, tokens_granted: int, tokens_used: int) -> None:
        stmt = (
            update(AllowancePeriodTable)
            .where(
                AllowancePeriodTable.id == period_id,
                AllowancePeriodTable.user_id == self._user_id,
            )
            .values(
                tokens_granted=tokens_granted,
                tokens_used=tokens_used,
                updated_at=datetime.now(UTC),
            )
        )
        await self._session.execute(stmt)
        await self._session.flush()


class UsageEventRepository:
    """Append-only access to ``llm_usage_events``."""

    def __init__(self, session: AsyncSession, user_id: str) -> None:
        self._session = session
        self._user_id = user_id

    async def insert_once(
        self,
        *,
        idempotency_key: str,
        feature: str,
        prompt_tokens: int,
        completion_tokens: int,
        credits_charged: float,
        model: str | None = None,
        provider: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> bool:
        """Insert a usage event; return ``False`` if this user already used the key."""
        values = {
            "id": str(uuid.uuid4()),
            "user_id": self._user_id,
            "idempotency_key": idempotency_key,
            "feature": feature,
            "model": model,
            "provider": provider,
            "prompt_tokens": prompt_tokens,
            "completion_tokens": completion_tokens,
            "total_tokens": prompt_tokens + completion_tokens,
            "credits_charged": credits_charged,
            "metadata_json": details,
            "created_at": datetime.now(UTC),
        }
        result = await _dialect_insert_nothing(
            self._session,
            LLMUsageEventTable,
            values,
            index_elements=["user_id", "idempotency_key"],
        )
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def list_recent(self, limit: int = 50) -> Sequence[LLMUsageEventTable]:
        stmt = (
            select(LLMUsageEventTable)
            .where(LLMUsageEventTable.user_id == self._user_id)
            .order_by(LLMUsageEventTable.created_at.desc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def get_by_key(self, idempotency_key: str) -> LLMUsageEventTable | None:
        stmt = select(LLMUsageEventTable).where(
            LLMUsageEventTable.user_id == self._user_id,
            LLMUsageEventTable.idempotency_key == idempotency_key,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def count_for_key(self, idempotency_key: str) -> int:
        stmt = select(func.count()).where(
            LLMUsageEventTable.user_id == self._user_id,
            LLMUsageEventTable.idempotency_key == idempotency_key,
        )
        result = await self._session.execute(stmt)
        return int(result.scalar_one())


# ---------------------------------------------------------------------------
# People and moments
# ---------------------------------------------------------------------------


class PersonRepository:
    """CRUD for ``partners`` scoped to one user."""

    def __init__(self, session: AsyncSession, user_id: str) -> None:
        self._session = session
        self._user_id = user_id

    async def get(self, person_id: str) -> PersonTable | None:
        stmt = select(PersonTable).where(PersonTable.id == person_id, PersonTable.user_id == self._user_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_uid(self, person_uid: str) -> PersonTable | None:
        stmt = select(PersonTable).where(
            PersonTable.person_uid == person_uid,
            PersonTable.user_id == self._user_id,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_active(self) -> Sequence[PersonTable]:
        """Non-archived, non-tombstoned people in stable creation order."""
        stmt = (
            select(PersonTable)
            .where(
                PersonTable.user_id == self._user_id,
                PersonTable.archived.is_(False),
                PersonTable.merged_into_person_id.is_(None),
            )
            .order_by(PersonTable.created_at, PersonTable.id)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def list_by_ids(self, person_ids: Iterable[str]) -> Sequence[PersonTable]:
        ids = list(person_ids)
        if not ids:
            return []
        stmt = select(PersonTable).where(PersonTable.user_id == self._user_id, PersonTable.id.in_(ids))
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def create(
        self,
        name: str,
        relationship_type: str = "partner",
        *,
        person_uid: str | None = None,
        updated_at: datetime | None = None,
    ) -> PersonTable:
        row = PersonTable(user_id=self._user_id, name=name, relationship_type=relationship_type)
        if person_uid is not None:
            row.person_uid = person_uid
        if updated_at is not None:
            row.updated_at = updated_at
        self._session.add(row)
        await self._session.flush()
        return row

    async def tombstone(self, person_id: str, merged_into: str) -> None:
        stmt = (
            update(PersonTable)
            .where(PersonTable.id == person_id, PersonTable.user_id == self._user_id)
            .values(archived=True, merged_into_person_id=merged_into, updated_at=datetime.now(UTC))
        )
        await self._session.execute(stmt)
        await self._session.flush()

    async def restore(self, person_id: str, *, archived: bool, merged_into_person_id: str | None) -> None:
        stmt = (
            update(PersonTable)
            .where(PersonTable.id == person_id, PersonTable.user_id == self._user_id)
            .values(
                archived=archived,
                merged_into_person_id=merged_into_person_id,
                updated_at=datetime.now(UTC),
            )
        )
        await self._session.execute(stmt)
        await self._session.flush()


class MomentRepository:
    """CRUD for ``moments`` scoped to one user."""

    def __init__(self, session: AsyncSession, user_id: str) -> None:
        self._session = session
        self._user_id = user_id

    async def get(self, moment_id: str) -> MomentTable | None:
        stmt = select(MomentTable).where(MomentTable.id == moment_id, MomentTable.user_id == self._user_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_uid(self, moment_uid: str) -> MomentTable | None:
        stmt = select(MomentTable).where(
            MomentTable.moment_uid == moment_uid,
            MomentTable.user_id == self._user_id,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_referencing(self, person_ids: Iterable[str], *, include_deleted: bool = True) -> list[MomentTable]:
        """Return moments whose ``partner_ids`` contain any of *person_ids*.

        PostgreSQL uses JSONB containment; other dialects filter in Python
        because SQLite has no array-contains operator.
        """
        wanted = set(person_ids)
        if not wanted:
            return []

        stmt = select(MomentTable).where(MomentTable.user_id == self._user_id)
        if not include_deleted:
            stmt = stmt.where(MomentTable.deleted_at.is_(None))
        if "postgresql" in _dialect_name(self._session):
            stmt = stmt.where(or_(*(MomentTable.partner_ids.contains([pid]) for pid in sorted(wanted))))
        stmt = stmt.order_by(MomentTable.created_at, MomentTable.id)

        result = await self._session.execute(stmt)
        return [m for m in result.scalars().all() if wanted.intersection(m.partner_ids or [])]

    async def create(self, **fields: Any) -> MomentTable:
        row = MomentTable(user_id=self._user_id, **fields)
        self._session.add(row)
        await self._session.flush()
        return row

    async def set_partner_ids(self, moment_id: str, partner_ids: list[str]) -> None:
        stmt = (
            update(MomentTable)
            .where(MomentTable.id == moment_id, MomentTable.user_id == self._user_id)
            .values(partner_ids=list(partner_ids))
        )
        await self._session.execute(stmt)
        await self._session.flush()

    async def soft_delete(self, moment_id: str, at: datetime | None = None) -> None:
        now = at or datetime.now(UTC)
        stmt = (
            update(MomentTable)
            .where(MomentTable.id == moment_id, MomentTable.user_id == self._user_id)
            .values(deleted_at=now, updated_at=now)
        )
        await self._session.execute(stmt)
        await self._session.flush()


# Tables whose ``partner_id`` column points at a person.
_PERSON_DETAIL_TABLES: tuple[Any, ...] = (
    PartnerLikeTable,
    PartnerDislikeTable,
    PartnerNicknameTable,
    PartnerProfileDetailTable,
    PartnerConnectionTable,
)


class PersonDetailRepository:
    """Bulk operations over the per-person detail tables."""

    def __init__(self, session: AsyncSession, user_id: str) -> None:
        self._session = session
        self._user_id = user_id

    async def list_preferences(self, person_id: str) -> tuple[list[str], list[str]]:
        """Return ``(likes, dislikes)`` item texts for one person."""
        out: list[list[str]] = []
        for table in (PartnerLikeTable, PartnerDislikeTable):
            stmt = (
                select(table.item)
                .where(table.user_id == self._user_id, table.partner_id == person_id)
                .order_by(table.created_at)
            )
            result = await self._session.execute(stmt)
            out.append(list(result.scalars().all()))
        return out[0], out[1]

    async def repoint(self, from_person_id: str, to_person_id: str) -> dict[str, int]:
        """Move every detail row from one person to another.

        ``partner_connections`` is rewritten in both directions.  Returns
        the number of rows touched per table.
        """
        counts: dict[str, int] = {}
        for table in _PERSON_DETAIL_TABLES:
            stmt = (
                update(table)
                .where(table.user_id == self._user_id, table.partner_id == from_person_id)
                .values(partner_id=to_person_id)
                .execution_options(synchronize_session=False)
            )
            result = await self._session.execute(stmt)
            counts[table.__tablename__] = result.rowcount or 0  # type: ignore[attr-defined]

        stmt = (
            update(PartnerConnectionTable)
            .where(
                PartnerConnectionTable.user_id == self._user_id,
                PartnerConnectionTable.connected_partner_id == from_person_id,
            )
            .values(connected_partner_id=to_person_id)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        counts["partner_connections.connected"] = result.rowcount or 0  # type: ignore[attr-defined]
        await self._session.flush()
        return counts


# ---------------------------------------------------------------------------
# Sync connections
# ---------------------------------------------------------------------------


class SyncConnectionRepository:
    """Access to ``sync_connections``.

    Most methods are scoped to the user given at construction.  The
    ``*_all_users`` methods are for HMAC-authenticated peer requests, which
    arrive before any user identity is known.
    """

    def __init__(self, session: AsyncSession, user_id: str | None = None) -> None:
        self._session = session
        self._user_id = user_id

    def _require_user(self) -> str:
        if self._user_id is None:
            raise RuntimeError("SyncConnectionRepository was constructed without a user_id")
        return self._user_id

    async def get_active(self, connection_id: str | None = None) -> SyncConnectionTable | None:
        """Return the user's active connection, or the given one if still active."""
        stmt = select(SyncConnectionTable).where(
            SyncConnectionTable.user_id == self._require_user(),
            SyncConnectionTable.status == "active",
        )
        if connection_id is not None:
            stmt = stmt.where(SyncConnectionTable.id == connection_id)
        stmt = stmt.order_by(SyncConnectionTable.created_at).limit(1)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_active(self) -> Sequence[SyncConnectionTable]:
        stmt = (
            select(SyncConnectionTable)
            .where(
                SyncConnectionTable.user_id == self._require_user(),
                SyncConnectionTable.status == "active",
            )
            .order_by(SyncConnectionTable.created_at)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def create(
        self, remote_base_url: str, shared_secret: str, remote_app: str = "cherishly"
    ) -> SyncConnectionTable:
        row = SyncConnectionTable(
            user_id=self._require_user(),
            remote_base_url=remote_base_url.rstrip("/"),
            shared_secret=shared_secret,
            remote_app=remote_app,
            status="active",
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def revoke(self, connection_id: str) -> bool:
        """Mark an active connection revoked.  Returns ``False`` if it was not active."""
        now = datetime.now(UTC)
        stmt = (
            update(SyncConnectionTable)
            .where(SyncConnectionTable.id == connection_id, SyncConnectionTable.status == "active")
            .values(status="revoked", revoked_at=now, updated_at=now)
        )
        if self._user_id is not None:
            stmt = stmt.where(SyncConnectionTable.user_id == self._user_id)
        result = await self._session.execute(stmt)
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def list_by_status_all_users(self, status: str) -> Sequence[SyncConnectionTable]:
        """Return connections in *status* across every user (peer authentication)."""
        stmt = (
            select(SyncConnectionTable)
            .where(SyncConnectionTable.status == status)
            .order_by(SyncConnectionTable.created_at, SyncConnectionTable.id)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()


# ---------------------------------------------------------------------------
# Sync links and candidates
# ---------------------------------------------------------------------------


class SyncLinkRepository:
    """CRUD for ``sync_person_links`` scoped to one user."""

    def __init__(self, session: AsyncSession, user_id: str) -> None:
        self._session = session
        self._user_id = user_id

    async def get(self, link_id: str) -> SyncPersonLinkTable | None:
        stmt = select(SyncPersonLinkTable).where(
            SyncPersonLinkTable.id == link_id,
            SyncPersonLinkTable.user_id == self._user_id,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_remote(self, connection_id: str, remote_person_uid: str) -> SyncPersonLinkTable | None:
        stmt = select(SyncPersonLinkTable).where(
            SyncPersonLinkTable.user_id == self._user_id,
            SyncPersonLinkTable.connection_id == connection_id,
            SyncPersonLinkTable.remote_person_uid == remote_person_uid,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_for_connection(self, connection_id: str) -> Sequence[SyncPersonLinkTable]:
        stmt = (
            select(SyncPersonLinkTable)
            .where(
                SyncPersonLinkTable.user_id == self._user_id,
                SyncPersonLinkTable.connection_id == connection_id,
            )
            .order_by(SyncPersonLinkTable.created_at, SyncPersonLinkTable.id)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def list_enabled_linked(self, connection_id: str) -> Sequence[SyncPersonLinkTable]:
        """Links that drive replication: ``linked``, enabled, attached to a person."""
        stmt = (
            select(SyncPersonLinkTable)
            .where(
                SyncPersonLinkTable.user_id == self._user_id,
                SyncPersonLinkTable.connection_id == connection_id,
                SyncPersonLinkTable.link_status == "linked",
                SyncPersonLinkTable.is_enabled.is_(True),
                SyncPersonLinkTable.local_person_id.is_not(None),
            )
            .order_by(SyncPersonLinkTable.created_at, SyncPersonLinkTable.id)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def list_for_local_person(self, person_id: str) -> Sequence[SyncPersonLinkTable]:
        stmt = (
            select(SyncPersonLinkTable)
            .where(
                SyncPersonLinkTable.user_id == self._user_id,
                SyncPersonLinkTable.local_person_id == person_id,
            )
            .order_by(SyncPersonLinkTable.created_at, SyncPersonLinkTable.id)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def upsert(
        self,
        connection_id: str,
        remote_person_uid: str,
        *,
        local_person_id: str | None,
        link_status: str,
        is_enabled: bool = True,
    ) -> SyncPersonLinkTable:
        """Create or update the single link for ``(connection, remote uid, user)``."""
        now = datetime.now(UTC)
        await _dialect_upsert(
            self._session,
            SyncPersonLinkTable,
            {
                "id": str(uuid.uuid4()),
                "user_id": self._user_id,
                "connection_id": connection_id,
                "remote_person_uid": remote_person_uid,
                "local_person_id": local_person_id,
                "link_status": link_status,
                "is_enabled": is_enabled,
                "created_at": now,
                "updated_at": now,
            },
            index_elements=["connection_id", "remote_person_uid", "user_id"],
            update_columns=["local_person_id", "link_status", "is_enabled", "updated_at"],
        )
        await self._session.flush()
        stmt = (
            select(SyncPersonLinkTable)
            .where(
                SyncPersonLinkTable.user_id == self._user_id,
                SyncPersonLinkTable.connection_id == connection_id,
                SyncPersonLinkTable.remote_person_uid == remote_person_uid,
            )
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one()

    async def repoint(self, link_id: str, local_person_id: str) -> None:
        stmt = (
            update(SyncPersonLinkTable)
            .where(SyncPersonLinkTable.id == link_id, SyncPersonLinkTable.user_id == self._user_id)
            .values(local_person_id=local_person_id, updated_at=datetime.now(UTC))
        )
        await self._session.execute(stmt)
        await self._session.flush()

    async def delete(self, link_id: str) -> None:
        stmt = delete(SyncPersonLinkTable).where(
            SyncPersonLinkTable.id == link_id,
            SyncPersonLinkTable.user_id == self._user_id,
        )
        await self._session.execute(stmt)
        await self._session.flush()

    async def restore(self, values: dict[str, Any]) -> str:
        """Write a snapshotted link back: update in place by id, else re-insert.

        Returns ``"updated"`` or ``"inserted"``.
        """
        columns = ("connection_id", "local_person_id", "remote_person_uid", "link_status", "is_enabled")
        existing = await self.get(values["id"])
        if existing is not None:
            for col in columns:
                setattr(existing, col, values[col])
            existing.updated_at = datetime.now(UTC)
            await self._session.flush()
            return "updated"

        row = SyncPersonLinkTable(id=values["id"], user_id=self._user_id, **{c: values[c] for c in columns})
        self._session.add(row)
        await self._session.flush()
        return "inserted"


class SyncCandidateRepository:
    """CRUD for ``sync_person_candidates`` scoped to one user."""

    def __init__(self, session: AsyncSession, user_id: str) -> None:
        self._session = session
        self._user_id = user_id

    async def upsert(
        self,
        connection_id: str,
        remote_person_uid: str,
        *,
        remote_person_name: str | None,
        local_person_id: str | None,
        confidence: float,
        reasons: list[str],
    ) -> None:
        now = datetime.now(UTC)
        await _dialect_upsert(
            self._session,
            SyncPersonCandidateTable,
            {
                "id": str(uuid.uuid4()),
                "user_id": self._user_id,
                "connection_id": connection_id,
                "remote_person_uid": remote_person_uid,
                "remote_person_name": remote_person_name,
                "local_person_id": local_person_id,
                "confidence": confidence,
                "reasons": reasons,
                "status": "pending",
                "created_at": now,
                "updated_at": now,
            },
            index_elements=["connection_id", "remote_person_uid"],
            update_columns=["remote_person_name", "local_person_id", "confidence", "reasons", "status", "updated_at"],
        )
        await self._session.flush()

    async def list_for_connection(self, connection_id: str) -> Sequence[SyncPersonCandidateTable]:
        stmt = (
            select(SyncPersonCandidateTable)
            .where(
                SyncPersonCandidateTable.user_id == self._user_id,
                SyncPersonCandidateTable.connection_id == connection_id,
            )
            .order_by(SyncPersonCandidateTable.remote_person_uid)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def set_status(self, connection_id: str, remote_person_uid: str, status: str) -> int:
        stmt = (
            update(SyncPersonCandidateTable)
            .where(
                SyncPersonCandidateTable.user_id == self._user_id,
                SyncPersonCandidateTable.connection_id == connection_id,
                SyncPersonCandidateTable.remote_person_uid == remote_person_uid,
            )
            .values(status=status, updated_at=datetime.now(UTC))
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount or 0  # type: ignore[attr-defined]

    async def clear_pending(self, connection_id: str) -> int:
        stmt = delete(SyncPersonCandidateTable).where(
            SyncPersonCandidateTable.user_id == self._user_id,
            SyncPersonCandidateTable.connection_id == connection_id,
            SyncPersonCandidateTable.status == "pending",
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount or 0  # type: ignore[attr-defined]


# ---------------------------------------------------------------------------
# Outbox and cursors
# ---------------------------------------------------------------------------


class SyncOutboxRepository:
    """Append/read access to ``sync_outbox``.  Rows are never updated."""

    def __init__(self, session: AsyncSession, user_id: str) -> None:
        self._session = session
        self._user_id = user_id

    async def append(
        self,
        connection_id: str,
        entity_type: str,
        entity_uid: str,
        operation: str,
        payload: dict[str, Any],
    ) -> SyncOutboxTable:
        row = SyncOutboxTable(
            user_id=self._user_id,
            connection_id=connection_id,
            entity_type=entity_type,
            entity_uid=entity_uid,
            operation=operation,
            payload=payload,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def list_since(self, connection_id: str, since_id: int, limit: int) -> Sequence[SyncOutboxTable]:
        """Return rows with ``id > since_id`` in ascending id order, at most *limit*."""
        stmt = (
            select(SyncOutboxTable)
            .where(
                SyncOutboxTable.user_id == self._user_id,
                SyncOutboxTable.connection_id == connection_id,
                SyncOutboxTable.id > since_id,
            )
            .order_by(SyncOutboxTable.id)
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def existing_entity_uids(self, connection_id: str, entity_type: str) -> set[str]:
        stmt = select(SyncOutboxTable.entity_uid).where(
            SyncOutboxTable.user_id == self._user_id,
            SyncOutboxTable.connection_id == connection_id,
            SyncOutboxTable.entity_type == entity_type,
        )
        result = await self._session.execute(stmt)
        return set(result.scalars().all())


class SyncCursorRepository:
    """Per-connection replication high-water marks."""

    def __init__(self, session: AsyncSession, user_id: str) -> None:
        self._session = session
        self._user_id = user_id

    async def get(self, connection_id: str) -> SyncCursorTable | None:
        stmt = (
            select(SyncCursorTable)
            .where(
                SyncCursorTable.user_id == self._user_id,
                SyncCursorTable.connection_id == connection_id,
            )
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def advance_pulled(self, connection_id: str, outbox_id: int) -> int:
        """Move ``last_pulled_outbox_id`` forward to *outbox_id*; never backwards.

        Returns the stored value after the call.
        """
        cursor = await self.get(connection_id)
        if cursor is None:
            cursor = SyncCursorTable(
                user_id=self._user_id,
                connection_id=connection_id,
                last_pulled_outbox_id=outbox_id,
                last_remote_outbox_id=0,
            )
            self._session.add(cursor)
        elif outbox_id > cursor.last_pulled_outbox_id:
            cursor.last_pulled_outbox_id = outbox_id
            cursor.updated_at = datetime.now(UTC)
        await self._session.flush()
        return cursor.last_pulled_outbox_id

    async def advance_remote(self, connection_id: str, outbox_id: int) -> int:
        """Record how far this side has pulled from the peer's outbox; never backwards."""
        cursor = await self.get(connection_id)
        if cursor is None:
            cursor = SyncCursorTable(
                user_id=self._user_id,
                connection_id=connection_id,
                last_pulled_outbox_id=0,
                last_remote_outbox_id=outbox_id,
            )
            self._session.add(cursor)
        elif outbox_id > cursor.last_remote_outbox_id:
            cursor.last_remote_outbox_id = outbox_id
            cursor.updated_at = datetime.now(UTC)
        await self._session.flush()
        return cursor.last_remote_outbox_id


# ---------------------------------------------------------------------------
# Conflicts, merge log, remote people cache
# ---------------------------------------------------------------------------


class SyncConflictRepository:
    def __init__(self, session: AsyncSession, user_id: str) -> None:
        self._session = session
        self._user_id = user_id

    async def record(
        self,
        connection_id: str,
        entity_type: str,
        entity_uid: str,
        conflict_type: str,
        *,
        local_payload: dict[str, Any] | None = None,
        remote_payload: dict[str, Any] | None = None,
        suggested_resolution: str | None = None,
    ) -> SyncConflictTable:
        row = SyncConflictTable(
            user_id=self._user_id,
            connection_id=connection_id,
            entity_type=entity_type,
            entity_uid=entity_uid,
            conflict_type=conflict_type,
            local_payload=local_payload,
            remote_payload=remote_payload,
            suggested_resolution=suggested_resolution,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def resolve_for_entity(self, connection_id: str, entity_uid: str, resolution: str) -> int:
        """Resolve every open conflict on *entity_uid*; returns the count."""
        stmt = (
            update(SyncConflictTable)
            .where(
                SyncConflictTable.user_id == self._user_id,
                SyncConflictTable.connection_id == connection_id,
                SyncConflictTable.entity_uid == entity_uid,
                SyncConflictTable.resolved_at.is_(None),
            )
            .values(resolution=resolution, resolved_at=datetime.now(UTC))
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount or 0  # type: ignore[attr-defined]

    async def list_open(self, connection_id: str) -> Sequence[SyncConflictTable]:
        stmt = (
            select(SyncConflictTable)
            .where(
                SyncConflictTable.user_id == self._user_id,
                SyncConflictTable.connection_id == connection_id,
                SyncConflictTable.resolved_at.is_(None),
            )
            .order_by(SyncConflictTable.created_at)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()


class MergeLogRepository:
    def __init__(self, session: AsyncSession, user_id: str) -> None:
        self._session = session
        self._user_id = user_id

    async def create(
        self,
        kept_person_id: str,
        merged_person_id: str,
        *,
        merged_person_snapshot: dict[str, Any],
        links_snapshot: list[dict[str, Any]],
        moments_snapshot: list[dict[str, Any]],
    ) -> SyncMergeLogTable:
        row = SyncMergeLogTable(
            user_id=self._user_id,
            kept_person_id=kept_person_id,
            merged_person_id=merged_person_id,
            merged_person_snapshot=merged_person_snapshot,
            links_snapshot=links_snapshot,
            moments_snapshot=moments_snapshot,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get_open(self, log_id: str) -> SyncMergeLogTable | None:
        """Return the log if it exists, belongs to the user and was not undone."""
        stmt = (
            select(SyncMergeLogTable)
            .where(
                SyncMergeLogTable.id == log_id,
                SyncMergeLogTable.user_id == self._user_id,
                SyncMergeLogTable.undone_at.is_(None),
            )
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def mark_undone(self, log_id: str) -> None:
        stmt = (
            update(SyncMergeLogTable)
            .where(SyncMergeLogTable.id == log_id, SyncMergeLogTable.user_id == self._user_id)
            .values(undone_at=datetime.now(UTC))
        )
        await self._session.execute(stmt)
        await self._session.flush()


class RemotePeopleCacheRepository:
    def __init__(self, session: AsyncSession, user_id: str) -> None:
        self._session = session
        self._user_id = user_id

    async def get(self, connection_id: str) -> SyncRemotePeopleCacheTable | None:
        stmt = (
            select(SyncRemotePeopleCacheTable)
            .where(
                SyncRemotePeopleCacheTable.connection_id == connection_id,
                SyncRemotePeopleCacheTable.user_id == self._user_id,
            )
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def put(self, connection_id: str, people: list[dict[str, Any]], fetched_at: datetime | None = None) -> None:
        await _dialect_upsert(
            self._session,
            SyncRemotePeopleCacheTable,
            {
                "connection_id": connection_id,
                "user_id": self._user_id,
                "people": people,
                "fetched_at": fetched_at or datetime.now(UTC),
            },
            index_elements=["connection_id"],
            update_columns=["people", "fetched_at"],
        )
        await self._session.flush()
