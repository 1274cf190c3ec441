"""SQLAlchemy 2.0 ORM table definitions for the Cherishly state store.

All tables use the ``Mapped`` / ``mapped_column`` declaration style.  Every
user-owned row carries ``user_id``; repositories scope all queries by it and
PostgreSQL row-level security enforces the same boundary underneath.
"""

from __future__ import annotations

import uuid
from datetime import UTC, date, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Date,
    DateTime,
    Float,
    Index,
    Integer,
    PrimaryKeyConstraint,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# Cross-dialect JSON type: JSONB on PostgreSQL, plain JSON on SQLite.
_JsonType = JSONB().with_variant(JSON(), "sqlite")

# SQLite only auto-increments INTEGER PRIMARY KEY columns.
_BigIdType = BigInteger().with_variant(Integer(), "sqlite")


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


def _new_id() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all Cherishly tables."""


# ---------------------------------------------------------------------------
# AI allowance
# ---------------------------------------------------------------------------


class UserRoleTable(Base):
    """Plan role per user (``free``, ``pro``, ``pro_gift``, ``admin``)."""

    __tablename__ = "user_roles"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    role: Mapped[str] = mapped_column(String(32), nullable=False, default="free")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )


class CreditSettingTable(Base):
    """Global allowance configuration as key/integer pairs."""

    __tablename__ = "ai_credit_settings"

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[int] = mapped_column(Integer, nullable=False)
    updated_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )


class AllowancePeriodTable(Base):
    """One token budget per user per billing cycle.

    The unique constraint on ``(user_id, period_start)`` is what makes
    concurrent "ensure allowance" calls safe: the loser of the race hits
    ``ON CONFLICT DO NOTHING`` and re-reads the winner's row.
    """

    __tablename__ = "ai_allowance_periods"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    period_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    period_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    tokens_granted: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    tokens_used: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    base_tokens: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    rollover_tokens: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    source: Mapped[str] = mapped_column(String(16), nullable=False, default="free")
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(_JsonType, nullable=True)
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("user_id", "period_start", name="uq_allowance_user_period"),
        Index("ix_allowance_user_end", "user_id", "period_end"),
    )


class LLMUsageEventTable(Base):
    """Append-only log of AI usage and admin balance adjustments."""

    __tablename__ = "llm_usage_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    idempotency_key: Mapped[str] = mapped_column(String(255), nullable=False)
    feature: Mapped[str] = mapped_column(String(64), nullable=False)
    model: Mapped[str | None] = mapped_column(String(128), nullable=True)
    provider: Mapped[str | None] = mapped_column(String(64), nullable=True)
    prompt_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    completion_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    credits_charged: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(_JsonType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "idempotency_key", name="uq_llm_usage_user_key"),
        Index("ix_llm_usage_user_created", "user_id", "created_at"),
    )


# ---------------------------------------------------------------------------
# People and moments
# ---------------------------------------------------------------------------


class PersonTable(Base):
    """A tracked individual ("partner") owned by one user."""

    __tablename__ = "partners"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    person_uid: Mapped[str] = mapped_column(String(64), nullable=False, default=_new_id)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    relationship_type: Mapped[str] = mapped_column(String(64), nullable=False, default="partner")
    archived: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    merged_into_person_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("user_id", "person_uid", name="uq_partners_user_person_uid"),
        Index("ix_partners_user", "user_id"),
    )


class MomentTable(Base):
    """A dated memory or life event referencing one or more people."""

    __tablename__ = "moments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    moment_uid: Mapped[str] = mapped_column(String(64), nullable=False, default=_new_id)
    title: Mapped[str] = mapped_column(String(512), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    moment_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    happened_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    impact_level: Mapped[int | None] = mapped_column(Integer, nullable=True)
    attachments: Mapped[list[Any] | None] = mapped_column(_JsonType, nullable=True)
    event_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    is_celebrated_annually: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    partner_ids: Mapped[list[str]] = mapped_column(_JsonType, nullable=False, default=list)
    source: Mapped[str] = mapped_column(String(16), nullable=False, default="local")
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("user_id", "moment_uid", name="uq_moments_user_moment_uid"),
        Index("ix_moments_user", "user_id"),
    )


class PartnerLikeTable(Base):
    __tablename__ = "partner_likes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    partner_id: Mapped[str] = mapped_column(String(36), nullable=False)
    item: Mapped[str] = mapped_column(String(512), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)


class PartnerDislikeTable(Base):
    __tablename__ = "partner_dislikes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    partner_id: Mapped[str] = mapped_column(String(36), nullable=False)
    item: Mapped[str] = mapped_column(String(512), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)


class PartnerNicknameTable(Base):
    __tablename__ = "partner_nicknames"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    partner_id: Mapped[str] = mapped_column(String(36), nullable=False)
    nickname: Mapped[str] = mapped_column(String(128), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)


class PartnerProfileDetailTable(Base):
    __tablename__ = "partner_profile_details"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    partner_id: Mapped[str] = mapped_column(String(36), nullable=False)
    category: Mapped[str] = mapped_column(String(64), nullable=False)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)


class PartnerConnectionTable(Base):
    """Relationship edge between two people of the same user."""

    __tablename__ = "partner_connections"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    partner_id: Mapped[str] = mapped_column(String(36), nullable=False)
    connected_partner_id: Mapped[str] = mapped_column(String(36), nullable=False)
    relationship_label: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)


# ---------------------------------------------------------------------------
# Sync
# ---------------------------------------------------------------------------


class SyncConnectionTable(Base):
    """Trust relationship with one remote instance for one user.

    The partial unique index allows any number of revoked rows but at most
    one ``active`` connection per user.
    """

    __tablename__ = "sync_connections"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    remote_app: Mapped[str] = mapped_column(String(64), nullable=False, default="cherishly")
    remote_base_url: Mapped[str] = mapped_column(String(1024), nullable=False)
    shared_secret: Mapped[str] = mapped_column(String(256), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active")
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (
        Index(
            "uq_sync_connections_one_active",
            "user_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
        Index("ix_sync_connections_status", "status"),
    )


class SyncPersonLinkTable(Base):
    """Confirmed mapping between a local person and a remote ``person_uid``.

    ``local_person_id`` is null for ``excluded`` links that were never
    attached to a local person.
    """

    __tablename__ = "sync_person_links"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    connection_id: Mapped[str] = mapped_column(String(36), nullable=False)
    local_person_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    remote_person_uid: Mapped[str] = mapped_column(String(64), nullable=False)
    link_status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    is_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("connection_id", "remote_person_uid", "user_id", name="uq_sync_links_conn_remote_user"),
        Index("ix_sync_links_local_person", "local_person_id"),
    )


class SyncPersonCandidateTable(Base):
    """Scored, unconfirmed match proposal. Never applied automatically."""

    __tablename__ = "sync_person_candidates"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    connection_id: Mapped[str] = mapped_column(String(36), nullable=False)
    remote_person_uid: Mapped[str] = mapped_column(String(64), nullable=False)
    remote_person_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    local_person_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    reasons: Mapped[list[str] | None] = mapped_column(_JsonType, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (UniqueConstraint("connection_id", "remote_person_uid", name="uq_sync_candidates_conn_remote"),)


class SyncOutboxTable(Base):
    """Append-only replication queue; ids are strictly increasing."""

    __tablename__ = "sync_outbox"

    id: Mapped[int] = mapped_column(_BigIdType, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    connection_id: Mapped[str] = mapped_column(String(36), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(16), nullable=False)
    entity_uid: Mapped[str] = mapped_column(String(64), nullable=False)
    operation: Mapped[str] = mapped_column(String(16), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(_JsonType, nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_sync_outbox_conn_id", "connection_id", "id"),
        Index("ix_sync_outbox_entity", "connection_id", "entity_type", "entity_uid"),
    )


class SyncCursorTable(Base):
    """Per (user, connection) replication high-water marks.

    ``last_pulled_outbox_id`` is how far the peer has read *our* outbox;
    ``last_remote_outbox_id`` is how far we have read the peer's.
    """

    __tablename__ = "sync_cursors"

    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    connection_id: Mapped[str] = mapped_column(String(36), nullable=False)
    last_pulled_outbox_id: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    last_remote_outbox_id: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (PrimaryKeyConstraint("user_id", "connection_id"),)


class SyncConflictTable(Base):
    __tablename__ = "sync_conflicts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    connection_id: Mapped[str] = mapped_column(String(36), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(16), nullable=False)
    entity_uid: Mapped[str] = mapped_column(String(64), nullable=False)
    conflict_type: Mapped[str] = mapped_column(String(32), nullable=False)
    local_payload: Mapped[dict[str, Any] | None] = mapped_column(_JsonType, nullable=True)
    remote_payload: Mapped[dict[str, Any] | None] = mapped_column(_JsonType, nullable=True)
    suggested_resolution: Mapped[str | None] = mapped_column(String(32), nullable=True)
    resolution: Mapped[str | None] = mapped_column(String(32), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (Index("ix_sync_conflicts_conn_entity", "connection_id", "entity_uid"),)


class SyncMergeLogTable(Base):
    """Undo record written before any destructive merge step."""

    __tablename__ = "sync_merge_log"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    kept_person_id: Mapped[str] = mapped_column(String(36), nullable=False)
    merged_person_id: Mapped[str] = mapped_column(String(36), nullable=False)
    merged_person_snapshot: Mapped[dict[str, Any]] = mapped_column(_JsonType, nullable=False)
    links_snapshot: Mapped[list[Any]] = mapped_column(_JsonType, nullable=False, default=list)
    moments_snapshot: Mapped[list[Any]] = mapped_column(_JsonType, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    undone_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class SyncRemotePeopleCacheTable(Base):
    """Last successful remote people listing per connection."""

    __tablename__ = "sync_remote_people_cache"

    connection_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    people: Mapped[list[Any]] = mapped_column(_JsonType, nullable=False, default=list)
    fetched_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
