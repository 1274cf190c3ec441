"""Application of inbound pushed events to the local store.

People are upserted by ``person_uid`` with last-writer-wins on ``updated_at``
(person deletes are ignored).  Moments are upserted by ``moment_uid``; when
the local copy is newer than the incoming one the event is not applied and a
``sync_conflicts`` row records both sides for manual resolution.

Each event runs in its own savepoint: a database error on one event is
reported as a conflict for that event and the rest of the batch still applies.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import pydantic
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from cherish_engine.state.repository import (
    MomentRepository,
    PersonRepository,
    SyncConflictRepository,
    SyncLinkRepository,
)
from cherish_engine.state.tables import MomentTable
from cherish_engine.sync.snapshots import MomentSnapshot, PersonSnapshot, SyncEvent

logger = logging.getLogger(__name__)

_DEFAULT_IMPACT_LEVEL = 2


@dataclass
class ApplyResult:
    applied: int = 0
    conflicts: list[dict[str, str]] = field(default_factory=list)


def _aware(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _is_newer(candidate: datetime | None, than: datetime | None) -> bool:
    """Strictly-newer comparison; a missing incoming timestamp never wins."""
    candidate, than = _aware(candidate), _aware(than)
    if candidate is None:
        return False
    if than is None:
        return True
    return candidate > than


class InboundApplier:
    """Apply a batch of :class:`SyncEvent` for the user owning *connection_id*."""

    def __init__(self, session: AsyncSession, user_id: str, connection_id: str) -> None:
        self._session = session
        self._user_id = user_id
        self._connection_id = connection_id
        self._people = PersonRepository(session, user_id)
        self._moments = MomentRepository(session, user_id)

    async def apply(self, events: list[SyncEvent]) -> ApplyResult:
        result = ApplyResult()
        links = await SyncLinkRepository(self._session, self._user_id).list_enabled_linked(self._connection_id)
        person_map = {link.remote_person_uid: link.local_person_id for link in links if link.local_person_id}

        for event in events:
            try:
                async with self._session.begin_nested():
                    reason = await self._apply_one(event, person_map)
            except SQLAlchemyError as exc:
                logger.warning("Inbound %s %s not applied: %s", event.entity_type, event.entity_uid, exc)
                reason = f"Apply failed: {type(exc).__name__}"

            if reason is None:
                result.applied += 1
            else:
                result.conflicts.append(
                    {"entity_uid": event.entity_uid, "entity_type": event.entity_type, "reason": reason}
                )

        logger.info(
            "Inbound push connection=%s applied=%d conflicts=%d",
            self._connection_id,
            result.applied,
            len(result.conflicts),
        )
        return result

    async def _apply_one(self, event: SyncEvent, person_map: dict[str, str]) -> str | None:
        """Apply one event in the current savepoint; return a conflict reason or ``None``."""
        try:
            snapshot = event.snapshot()
        except pydantic.ValidationError as exc:
            return f"Invalid payload: {exc.error_count()} error(s)"

        if isinstance(snapshot, PersonSnapshot):
            await self._apply_person(event, snapshot)
            return None
        if await self._apply_moment(event, snapshot, person_map):
            return None
        return "Both sides modified since last sync"

    async def _apply_person(self, event: SyncEvent, snapshot: PersonSnapshot) -> None:
        if event.operation == "delete":
            return

        existing = await self._people.get_by_uid(event.entity_uid)
        if existing is None:
            await self._people.create(
                snapshot.name or "Unknown",
                snapshot.relationship_label or "friend",
                person_uid=event.entity_uid,
                updated_at=snapshot.updated_at,
            )
            return

        if _is_newer(snapshot.updated_at, existing.updated_at):
            existing.name = snapshot.name
            if snapshot.relationship_label:
                existing.relationship_type = snapshot.relationship_label
            existing.updated_at = _aware(snapshot.updated_at)  # type: ignore[assignment]
            await self._session.flush()

    async def _apply_moment(
        self,
        event: SyncEvent,
        snapshot: PersonSnapshot | MomentSnapshot,
        person_map: dict[str, str],
    ) -> bool:
        """Return ``False`` when a conflict was recorded instead of applying."""
        assert isinstance(snapshot, MomentSnapshot)
        existing = await self._moments.get_by_uid(event.entity_uid)

        if event.operation == "delete":
            if existing is not None and existing.deleted_at is None:
                await self._moments.soft_delete(existing.id)
            return True

        fields = _moment_fields(snapshot)
        partner_id = await self._resolve_partner(snapshot.person_uid, person_map)
        if partner_id is not None:
            fields["partner_ids"] = [partner_id]

        if existing is None:
            fields.setdefault("partner_ids", [])
            await self._moments.create(moment_uid=event.entity_uid, **fields)
            return True

        if _is_newer(existing.updated_at, snapshot.updated_at):
            await SyncConflictRepository(self._session, self._user_id).record(
                self._connection_id,
                "moment",
                event.entity_uid,
                "update_conflict",
                local_payload=_moment_payload(existing),
                remote_payload=event.payload,
                suggested_resolution="keep_local",
            )
            return False

        for key, value in fields.items():
            setattr(existing, key, value)
        await self._session.flush()
        return True

    async def _resolve_partner(self, person_uid: str | None, person_map: dict[str, str]) -> str | None:
        """Local person id for a snapshot's ``person_uid``.

        The sender writes the uid as the receiver knows it, which is either
        the remote uid of one of our links or the ``person_uid`` of a linked
        local person.
        """
        if not person_uid:
            return None
        if person_uid in person_map:
            return person_map[person_uid]
        person = await self._people.get_by_uid(person_uid)
        if person is not None and person.id in person_map.values():
            return person.id
        return None


def _moment_fields(snapshot: MomentSnapshot) -> dict[str, Any]:
    happened_at = _aware(snapshot.happened_at)
    moment_date = snapshot.moment_date
    if moment_date is None:
        moment_date = happened_at.date() if happened_at else datetime.now(UTC).date()
    return {
        "title": snapshot.title,
        "description": snapshot.description,
        "moment_date": moment_date,
        "happened_at": happened_at,
        "impact_level": snapshot.impact_level or _DEFAULT_IMPACT_LEVEL,
        "attachments": snapshot.attachments,
        "event_type": snapshot.event_type,
        "is_celebrated_annually": snapshot.is_celebrated_annually,
        "updated_at": _aware(snapshot.updated_at) or datetime.now(UTC),
        "source": "sync",
    }


def _moment_payload(moment: MomentTable) -> dict[str, Any]:
    return {
        "id": moment.id,
        "title": moment.title,
        "description": moment.description,
        "updated_at": moment.updated_at.isoformat() if moment.updated_at else None,
        "partner_ids": list(moment.partner_ids or []),
    }
