"""Outbox writer and reader: the only path by which local changes reach a peer.

Every mutation of a linked person, or of a moment that references one,
appends exactly one full-snapshot row per affected connection.  Peers read
rows back with :meth:`OutboxWriter.read_batch` in ascending id order.

Person rows are keyed by the *remote* ``person_uid`` of the link so that the
receiver upserts the person it already knows instead of creating a copy.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from cherish_engine.state.repository import (
    MomentRepository,
    PersonRepository,
    SyncConnectionRepository,
    SyncCursorRepository,
    SyncLinkRepository,
    SyncOutboxRepository,
)
from cherish_engine.state.tables import MomentTable, PersonTable, SyncConnectionTable, SyncOutboxTable
from cherish_engine.sync.snapshots import moment_snapshot, person_snapshot

logger = logging.getLogger(__name__)


@dataclass
class PullBatch:
    events: list[dict[str, Any]] = field(default_factory=list)
    last_outbox_id: int = 0


@dataclass
class BackfillResult:
    queued_people: int = 0
    queued_moments: int = 0


def outbox_event(row: SyncOutboxTable) -> dict[str, Any]:
    """Wire representation of one outbox row."""
    return {
        "id": row.id,
        "entity_type": row.entity_type,
        "entity_uid": row.entity_uid,
        "operation": row.operation,
        "payload": row.payload,
        "occurred_at": row.occurred_at.isoformat() if row.occurred_at else None,
    }


class OutboxWriter:
    """Append and read ``sync_outbox`` rows for one user."""

    def __init__(self, session: AsyncSession, user_id: str) -> None:
        self._session = session
        self._user_id = user_id
        self._outbox = SyncOutboxRepository(session, user_id)
        self._links = SyncLinkRepository(session, user_id)

    async def _link_maps(self, connection_id: str | None = None) -> dict[str, dict[str, str]]:
        """Map ``connection_id -> {local_person_id: remote_person_uid}`` over enabled links."""
        connections = SyncConnectionRepository(self._session, self._user_id)
        if connection_id is not None:
            conn = await connections.get_active(connection_id)
            active: Sequence[SyncConnectionTable] = [conn] if conn is not None else []
        else:
            active = await connections.list_active()

        maps: dict[str, dict[str, str]] = {}
        for conn in active:
            links = await self._links.list_enabled_linked(conn.id)
            maps[conn.id] = {link.local_person_id: link.remote_person_uid for link in links if link.local_person_id}
        return maps

    # -- Append --------------------------------------------------------------

    async def record_person_change(self, person: PersonTable, operation: str = "upsert") -> int:
        """Append one person row per connection that links *person*."""
        payload = person_snapshot(person).model_dump(mode="json")
        appended = 0
        for connection_id, by_person in (await self._link_maps()).items():
            remote_uid = by_person.get(person.id)
            if remote_uid is None:
                continue
            await self._outbox.append(connection_id, "person", remote_uid, operation, payload)
            appended += 1
        if appended:
            logger.debug("Outbox: person %s %s -> %d connection(s)", person.id, operation, appended)
        return appended

    async def record_moment_change(self, moment: MomentTable, operation: str = "upsert") -> int:
        """Append one moment row per connection linking any of its people."""
        appended = 0
        for connection_id, by_person in (await self._link_maps()).items():
            remote_uid = _first_linked_uid(moment.partner_ids or [], by_person)
            if remote_uid is None:
                continue
            payload = moment_snapshot(moment, remote_uid).model_dump(mode="json")
            await self._outbox.append(connection_id, "moment", moment.moment_uid, operation, payload)
            appended += 1
        if appended:
            logger.debug("Outbox: moment %s %s -> %d connection(s)", moment.id, operation, appended)
        return appended

    async def backfill(self, connection_id: str | None = None) -> BackfillResult:
        """Enqueue every linked person and their live moments not yet in the outbox.

        Re-running is a no-op for entities already present (matched on
        ``entity_type`` + ``entity_uid``).
        """
        result = BackfillResult()
        people_repo = PersonRepository(self._session, self._user_id)
        moments_repo = MomentRepository(self._session, self._user_id)

        for conn_id, by_person in (await self._link_maps(connection_id)).items():
            if not by_person:
                continue

            queued_people = await self._outbox.existing_entity_uids(conn_id, "person")
            for person in await people_repo.list_by_ids(by_person):
                remote_uid = by_person[person.id]
                if person.archived or remote_uid in queued_people:
                    continue
                payload = person_snapshot(person).model_dump(mode="json")
                await self._outbox.append(conn_id, "person", remote_uid, "upsert", payload)
                queued_people.add(remote_uid)
                result.queued_people += 1

            queued_moments = await self._outbox.existing_entity_uids(conn_id, "moment")
            for moment in await moments_repo.list_referencing(by_person, include_deleted=False):
                if moment.moment_uid in queued_moments:
                    continue
                remote_uid = _first_linked_uid(moment.partner_ids or [], by_person)
                if remote_uid is None:
                    continue
                payload = moment_snapshot(moment, remote_uid).model_dump(mode="json")
                await self._outbox.append(conn_id, "moment", moment.moment_uid, "upsert", payload)
                queued_moments.add(moment.moment_uid)
                result.queued_moments += 1

        logger.info(
            "Backfill user=%s queued_people=%d queued_moments=%d",
            self._user_id,
            result.queued_people,
            result.queued_moments,
        )
        return result

    # -- Read ----------------------------------------------------------------

    async def read_batch(self, connection_id: str, since_outbox_id: int, limit: int) -> PullBatch:
        """Return rows after *since_outbox_id* and advance the pull cursor.

        Nothing is returned while the connection has no enabled links.  The
        cursor update shares the caller's transaction, so a failed request
        leaves it where it was and the batch is served again.
        """
        if limit <= 0:
            return PullBatch(events=[], last_outbox_id=since_outbox_id)

        if not await self._links.list_enabled_linked(connection_id):
            return PullBatch(events=[], last_outbox_id=since_outbox_id)

        rows = await self._outbox.list_since(connection_id, since_outbox_id, limit)
        if not rows:
            return PullBatch(events=[], last_outbox_id=since_outbox_id)

        last_id = rows[-1].id
        await SyncCursorRepository(self._session, self._user_id).advance_pulled(connection_id, last_id)
        return PullBatch(events=[outbox_event(r) for r in rows], last_outbox_id=last_id)


def _first_linked_uid(partner_ids: list[str], by_person: dict[str, str]) -> str | None:
    for pid in partner_ids:
        uid = by_person.get(pid)
        if uid is not None:
            return uid
    return None
