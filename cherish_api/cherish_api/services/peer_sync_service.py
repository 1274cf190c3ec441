"""Server-to-server sync endpoints' service layer.

Every request is authenticated by HMAC over the raw body.  The sender's
``x-sync-connection-id`` names *its* connection, which means nothing here,
so the signature is checked against all of this instance's active
connections and the first that verifies identifies the user.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from cherish_engine.errors import SyncAuthError
from cherish_engine.state.database import set_user_context
from cherish_engine.state.repository import PersonRepository, SyncConnectionRepository
from cherish_engine.state.tables import SyncConnectionTable
from cherish_engine.sync.apply import InboundApplier
from cherish_engine.sync.outbox import OutboxWriter
from cherish_engine.sync.signing import find_verifying
from cherish_engine.sync.snapshots import SyncEvent

logger = logging.getLogger(__name__)


class PeerSyncService:
    def __init__(self, session: AsyncSession, *, pull_max_limit: int = 500) -> None:
        self._session = session
        self._pull_max_limit = pull_max_limit
        self._connections = SyncConnectionRepository(session)

    async def authenticate(self, body: bytes, signature: str | None) -> SyncConnectionTable:
        """Return the active connection whose secret verifies *body*.

        Raises
        ------
        SyncAuthError
            Missing signature, or no active connection verifies it.  Revoked
            connections are never candidates.
        """
        if not signature:
            raise SyncAuthError("Missing signature")
        conn = find_verifying(await self._connections.list_by_status_all_users("active"), body, signature)
        if conn is None:
            logger.warning("Peer request rejected: signature matches no active connection")
            raise SyncAuthError("Invalid signature")
        await set_user_context(self._session, conn.user_id)
        return conn

    async def pull(self, conn: SyncConnectionTable, since_outbox_id: int, limit: int) -> dict[str, Any]:
        batch = await OutboxWriter(self._session, conn.user_id).read_batch(
            conn.id, since_outbox_id, min(limit, self._pull_max_limit)
        )
        logger.info("Peer pull connection=%s since=%d returned=%d", conn.id, since_outbox_id, len(batch.events))
        return {"events": batch.events, "last_outbox_id": batch.last_outbox_id}

    async def push(self, conn: SyncConnectionTable, events: list[SyncEvent]) -> dict[str, Any]:
        result = await InboundApplier(self._session, conn.user_id, conn.id).apply(events)
        return {"applied": result.applied, "conflicts": result.conflicts}

    async def list_people(self, conn: SyncConnectionTable) -> dict[str, Any]:
        people = await PersonRepository(self._session, conn.user_id).list_active()
        return {
            "people": [
                {"person_uid": p.person_uid, "name": p.name, "relationship_label": p.relationship_type}
                for p in people
            ]
        }

    async def revoke(self, body: bytes, signature: str | None, revoked_by: str | None = None) -> dict[str, Any]:
        """Revoke the connection the peer signed for; idempotent.

        A signature that only verifies against an already revoked
        connection answers ``already_revoked`` without changing anything.
        """
        if not signature:
            raise SyncAuthError("Missing signature")

        active = find_verifying(await self._connections.list_by_status_all_users("active"), body, signature)
        if active is not None:
            await set_user_context(self._session, active.user_id)
            await self._connections.revoke(active.id)
            logger.info("Sync connection %s revoked by peer (revoked_by=%s)", active.id, revoked_by)
            return {"ok": True}

        revoked = find_verifying(await self._connections.list_by_status_all_users("revoked"), body, signature)
        if revoked is not None:
            return {"ok": True, "already_revoked": True}

        logger.warning("Peer revoke rejected: signature matches no connection")
        raise SyncAuthError("Invalid signature")
