"""User-facing sync operations: connections, remote people, mapping, merge.

All methods act for one authenticated user.  Outbound calls to the peer go
through :class:`PeerClient` and surface failures as :class:`UpstreamError`.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from typing import Any

import pydantic
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from cherish_api.schemas import MappingAction
from cherish_api.services.peer_client import PeerClient
from cherish_engine.errors import CherishError, NotFoundError, UpstreamError, ValidationError
from cherish_engine.state.database import set_user_context
from cherish_engine.state.repository import (
    PersonRepository,
    RemotePeopleCacheRepository,
    SyncCandidateRepository,
    SyncConflictRepository,
    SyncConnectionRepository,
    SyncCursorRepository,
    SyncLinkRepository,
)
from cherish_engine.state.tables import SyncConnectionTable
from cherish_engine.sync.apply import InboundApplier
from cherish_engine.sync.matching import LocalPerson, RemotePerson, best_match, suggest_matches
from cherish_engine.sync.merge import MergeEngine
from cherish_engine.sync.outbox import OutboxWriter
from cherish_engine.sync.snapshots import SyncEvent, person_snapshot

logger = logging.getLogger(__name__)

# Link states that take a remote person out of matching for good.
_SETTLED_LINK_STATES = frozenset({"linked", "excluded"})


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


def _remote_people(raw: list[dict[str, Any]]) -> list[RemotePerson]:
    people: list[RemotePerson] = []
    for item in raw:
        uid = item.get("person_uid")
        if not uid:
            continue
        people.append(
            RemotePerson(
                person_uid=str(uid),
                name=str(item.get("name") or ""),
                relationship_label=item.get("relationship_label"),
            )
        )
    return people


class SyncService:
    """Sync workflow for one user.

    Parameters
    ----------
    session:
        Request-scoped async session.
    user_id:
        The authenticated user.
    peer:
        Shared signed HTTP client for the remote instance.
    cache_ttl_seconds:
        How long a fetched remote people list is served from cache.
    """

    def __init__(
        self,
        session: AsyncSession,
        user_id: str,
        peer: PeerClient,
        *,
        cache_ttl_seconds: int = 600,
    ) -> None:
        self._session = session
        self._user_id = user_id
        self._peer = peer
        self._cache_ttl = timedelta(seconds=cache_ttl_seconds)
        self._connections = SyncConnectionRepository(session, user_id)
        self._links = SyncLinkRepository(session, user_id)
        self._people = PersonRepository(session, user_id)
        self._candidates = SyncCandidateRepository(session, user_id)
        self._conflicts = SyncConflictRepository(session, user_id)

    # -- Connections ---------------------------------------------------------

    async def connection(self, connection_id: str | None = None) -> SyncConnectionTable:
        conn = await self._connections.get_active(connection_id)
        if conn is None:
            raise NotFoundError("No active sync connection")
        return conn

    async def create_connection(self, remote_base_url: str, shared_secret: str, remote_app: str) -> SyncConnectionTable:
        if await self._connections.get_active() is not None:
            raise ValidationError("An active sync connection already exists; disconnect it first")
        conn = await self._connections.create(remote_base_url, shared_secret, remote_app)
        logger.info("Sync connection %s created for user=%s (%s)", conn.id, self._user_id, remote_app)
        return conn

    async def status(self) -> dict[str, Any]:
        conn = await self._connections.get_active()
        if conn is None:
            return {"connected": False, "connection": None}

        cursor = await SyncCursorRepository(self._session, self._user_id).get(conn.id)
        links = await self._links.list_for_connection(conn.id)
        open_conflicts = await self._conflicts.list_open(conn.id)
        return {
            "connected": True,
            "connection": {
                "id": conn.id,
                "remote_app": conn.remote_app,
                "remote_base_url": conn.remote_base_url,
                "status": conn.status,
                "created_at": conn.created_at,
            },
            "last_pulled_outbox_id": cursor.last_pulled_outbox_id if cursor else 0,
            "linked": sum(1 for link in links if link.link_status == "linked"),
            "excluded": sum(1 for link in links if link.link_status == "excluded"),
            "open_conflicts": len(open_conflicts),
        }

    async def disconnect(self, connection_id: str | None = None) -> dict[str, bool]:
        """Revoke locally, then tell the peer.  The local revocation stands either way."""
        conn = await self.connection(connection_id)
        conn_id, base_url, secret = conn.id, conn.remote_base_url, conn.shared_secret

        local_revoked = await self._connections.revoke(conn_id)
        await self._session.commit()
        await set_user_context(self._session, self._user_id)
        logger.info("Sync connection %s revoked by user=%s", conn_id, self._user_id)

        remote_notified = False
        try:
            await self._peer.revoke(base_url, self._user_id, secret=secret, connection_id=conn_id)
            remote_notified = True
        except UpstreamError as exc:
            logger.warning("Peer not notified of revocation for %s: %s", conn_id, exc)
        return {"local_revoked": local_revoked, "remote_notified": remote_notified}

    # -- Remote people -------------------------------------------------------

    async def _fetch_remote_people(
        self, conn: SyncConnectionTable, *, force_refresh: bool = False
    ) -> tuple[list[dict[str, Any]], bool]:
        """Return ``(people, from_cache)``.

        A fresh cache entry is served unless *force_refresh*; a peer failure
        falls back to any cached copy and only raises when there is none.
        """
        cache_repo = RemotePeopleCacheRepository(self._session, self._user_id)
        cached = await cache_repo.get(conn.id)
        now = datetime.now(UTC)
        if cached is not None and not force_refresh and now - _aware(cached.fetched_at) < self._cache_ttl:
            return list(cached.people or []), True

        try:
            people = await self._peer.list_people(
                conn.remote_base_url, secret=conn.shared_secret, connection_id=conn.id
            )
        except UpstreamError:
            if cached is not None:
                logger.warning("Peer list-people failed for %s; serving cached copy", conn.id)
                return list(cached.people or []), True
            raise

        await cache_repo.put(conn.id, people, now)
        return people, False

    async def _local_people(self) -> list[LocalPerson]:
        return [LocalPerson(id=p.id, name=p.name, person_uid=p.person_uid) for p in await self._people.list_active()]

    async def remote_people(self, connection_id: str | None = None, *, force_refresh: bool = False) -> dict[str, Any]:
        conn = await self.connection(connection_id)
        raw, from_cache = await self._fetch_remote_people(conn, force_refresh=force_refresh)
        remote = _remote_people(raw)
        local = await self._local_people()
        links = {link.remote_person_uid: link for link in await self._links.list_for_connection(conn.id)}

        people: list[dict[str, Any]] = []
        create_local: list[dict[str, Any]] = []
        for person in remote:
            link = links.get(person.person_uid)
            match = best_match(person, local)
            entry = {
                "person_uid": person.person_uid,
                "name": person.name,
                "relationship_label": person.relationship_label,
                "link_status": link.link_status if link else None,
                "local_person_id": link.local_person_id if link else None,
                "best_match": match.as_dict() if match.local_person_id else None,
            }
            people.append(entry)
            if link is None and match.local_person_id is None:
                create_local.append(entry)

        linked_local_ids = {link.local_person_id for link in links.values() if link.local_person_id}
        create_remote = [
            {"id": p.id, "name": p.name, "person_uid": p.person_uid} for p in local if p.id not in linked_local_ids
        ]
        return {
            "connection_id": conn.id,
            "from_cache": from_cache,
            "people": people,
            "suggested_create_local": create_local,
            "suggested_create_remote": create_remote,
        }

    # -- Matching ------------------------------------------------------------

    async def suggest_matches(
        self, connection_id: str | None = None, *, force_refresh: bool = False
    ) -> list[dict[str, Any]]:
        """Score remote people against local people and store them as candidates.

        Never touches links.  Remote people already linked or excluded on
        this connection are skipped.
        """
        conn = await self.connection(connection_id)
        raw, _ = await self._fetch_remote_people(conn, force_refresh=force_refresh)
        settled = [
            link.remote_person_uid
            for link in await self._links.list_for_connection(conn.id)
            if link.link_status in _SETTLED_LINK_STATES
        ]
        suggestions = suggest_matches(_remote_people(raw), await self._local_people(), skip_remote_uids=settled)

        await self._candidates.clear_pending(conn.id)
        for s in suggestions:
            await self._candidates.upsert(
                conn.id,
                s.remote_person_uid,
                remote_person_name=s.remote_person_name,
                local_person_id=s.local_person_id,
                confidence=s.confidence,
                reasons=list(s.reasons),
            )
        logger.info("Suggested %d match(es) for connection %s", len(suggestions), conn.id)
        return [s.as_dict() for s in suggestions]

    # -- Mapping actions -----------------------------------------------------

    async def apply_mapping(self, actions: list[MappingAction], connection_id: str | None = None) -> dict[str, Any]:
        """Apply each action independently; one failure never rolls back another."""
        conn = await self.connection(connection_id)
        results: list[dict[str, Any]] = []
        for action in actions:
            entry: dict[str, Any] = {
                "action": action.action,
                "remote_person_uid": action.remote_person_uid,
                "local_person_id": action.local_person_id,
            }
            try:
                async with self._session.begin_nested():
                    entry.update(await self._apply_action(conn, action))
                entry["success"] = True
            except (CherishError, SQLAlchemyError) as exc:
                logger.warning("Mapping action %s failed: %s", action.action, exc)
                entry["success"] = False
                entry["error"] = str(exc)
            results.append(entry)

        succeeded = sum(1 for r in results if r["success"])
        return {
            "success": succeeded == len(results),
            "total": len(results),
            "succeeded": succeeded,
            "failed": len(results) - succeeded,
            "results": results,
        }

    async def _apply_action(self, conn: SyncConnectionTable, action: MappingAction) -> dict[str, Any]:
        if action.action == "link":
            return await self._link(conn, action)
        if action.action == "exclude":
            return await self._exclude(conn, action)
        if action.action == "create_local":
            return await self._create_local(conn, action)
        return await self._create_remote(conn, action)

    async def _link(self, conn: SyncConnectionTable, action: MappingAction) -> dict[str, Any]:
        if not action.remote_person_uid or not action.local_person_id:
            raise ValidationError("link requires remote_person_uid and local_person_id")
        person = await self._people.get(action.local_person_id)
        if person is None:
            raise NotFoundError("Person not found")
        await self._links.upsert(conn.id, action.remote_person_uid, local_person_id=person.id, link_status="linked")
        await self._candidates.set_status(conn.id, action.remote_person_uid, "accepted")
        await self._conflicts.resolve_for_entity(conn.id, action.remote_person_uid, "linked_manually")
        return {"local_person_id": person.id}

    async def _exclude(self, conn: SyncConnectionTable, action: MappingAction) -> dict[str, Any]:
        if not action.remote_person_uid:
            raise ValidationError("exclude requires remote_person_uid")
        await self._links.upsert(
            conn.id,
            action.remote_person_uid,
            local_person_id=None,
            link_status="excluded",
            is_enabled=False,
        )
        await self._candidates.set_status(conn.id, action.remote_person_uid, "rejected")
        await self._conflicts.resolve_for_entity(conn.id, action.remote_person_uid, "excluded")
        return {}

    async def _create_local(self, conn: SyncConnectionTable, action: MappingAction) -> dict[str, Any]:
        uid = action.remote_person_uid
        if not uid:
            raise ValidationError("create_local requires remote_person_uid")

        name, label = action.remote_person_name, action.relationship_label
        if not name:
            raw, _ = await self._fetch_remote_people(conn)
            found = next((p for p in _remote_people(raw) if p.person_uid == uid), None)
            if found is None:
                raise NotFoundError("Remote person not found")
            name, label = found.name, label or found.relationship_label

        # The local copy keeps the remote uid so later scoring sees "Same person ID".
        person = await self._people.get_by_uid(uid)
        if person is None:
            person = await self._people.create(name or "Unknown", label or "friend", person_uid=uid)

        await self._links.upsert(conn.id, uid, local_person_id=person.id, link_status="linked")
        await self._candidates.set_status(conn.id, uid, "accepted")
        await self._conflicts.resolve_for_entity(conn.id, uid, "created_local")
        return {"local_person_id": person.id}

    async def _create_remote(self, conn: SyncConnectionTable, action: MappingAction) -> dict[str, Any]:
        if not action.local_person_id:
            raise ValidationError("create_remote requires local_person_id")
        person = await self._people.get(action.local_person_id)
        if person is None:
            raise NotFoundError("Person not found")

        event = {
            "entity_type": "person",
            "entity_uid": person.person_uid,
            "operation": "upsert",
            "payload": person_snapshot(person).model_dump(mode="json"),
        }
        result = await self._peer.push(
            conn.remote_base_url, [event], secret=conn.shared_secret, connection_id=conn.id
        )
        if result.get("conflicts"):
            raise UpstreamError("Peer rejected the person: " + str(result["conflicts"][0].get("reason")))

        await self._links.upsert(conn.id, person.person_uid, local_person_id=person.id, link_status="linked")
        await self._conflicts.resolve_for_entity(conn.id, person.person_uid, "created_remote")
        return {"local_person_id": person.id, "remote_person_uid": person.person_uid}

    # -- Merge, backfill, conflicts -------------------------------------------

    async def merge(self, keep_person_id: str, drop_person_id: str) -> dict[str, Any]:
        result = await MergeEngine(self._session, self._user_id).merge(keep_person_id, drop_person_id)
        return result.as_dict()

    async def undo_merge(self, merge_log_id: str) -> dict[str, Any]:
        result = await MergeEngine(self._session, self._user_id).undo(merge_log_id)
        return result.as_dict()

    async def pull_now(self, connection_id: str | None = None, *, limit: int = 100) -> dict[str, Any]:
        """Pull the peer's outbox past our remote cursor and apply it locally.

        The cursor moves only after the batch was applied in this
        transaction; events that fail validation are reported as conflicts
        and do not hold the cursor back.
        """
        conn = await self.connection(connection_id)
        cursors = SyncCursorRepository(self._session, self._user_id)
        cursor = await cursors.get(conn.id)
        since = cursor.last_remote_outbox_id if cursor else 0

        body = await self._peer.pull(
            conn.remote_base_url, since, limit, secret=conn.shared_secret, connection_id=conn.id
        )
        events: list[SyncEvent] = []
        rejected: list[dict[str, Any]] = []
        for raw in body.get("events") or []:
            try:
                events.append(SyncEvent.model_validate(raw))
            except pydantic.ValidationError as exc:
                rejected.append(
                    {"entity_uid": str(raw.get("entity_uid")), "reason": f"Invalid event: {exc.error_count()} error(s)"}
                )

        result = await InboundApplier(self._session, self._user_id, conn.id).apply(events)
        last_id = int(body.get("last_outbox_id") or since)
        stored = await cursors.advance_remote(conn.id, last_id)
        logger.info("Pulled %d event(s) from peer for %s, cursor=%d", len(events), conn.id, stored)
        return {
            "received": len(events) + len(rejected),
            "applied": result.applied,
            "conflicts": rejected + result.conflicts,
            "last_outbox_id": stored,
        }

    async def backfill(self, connection_id: str | None = None) -> dict[str, int]:
        if connection_id is not None:
            await self.connection(connection_id)
        result = await OutboxWriter(self._session, self._user_id).backfill(connection_id)
        return {"queued_people": result.queued_people, "queued_moments": result.queued_moments}

    async def list_conflicts(self, connection_id: str | None = None) -> list[dict[str, Any]]:
        conn = await self.connection(connection_id)
        return [
            {
                "id": c.id,
                "entity_type": c.entity_type,
                "entity_uid": c.entity_uid,
                "conflict_type": c.conflict_type,
                "local_payload": c.local_payload,
                "remote_payload": c.remote_payload,
                "suggested_resolution": c.suggested_resolution,
                "created_at": c.created_at,
            }
            for c in await self._conflicts.list_open(conn.id)
        ]
