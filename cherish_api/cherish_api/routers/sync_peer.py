"""Server-to-server sync endpoints, authenticated by HMAC over the raw body.

The bearer middleware lets ``/api/v1/sync/peer/*`` through; each handler
reads the raw bytes, verifies ``x-sync-signature`` against this instance's
own connection secrets, and only then parses the JSON.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request

from cherish_api.dependencies import PublicSessionDep, SettingsDep
from cherish_api.schemas import PullRequest, PullResponse, PushRequest, RevokeRequest
from cherish_api.services.peer_sync_service import PeerSyncService
from cherish_engine.state.tables import SyncConnectionTable
from cherish_engine.sync.signing import SIGNATURE_HEADER

router = APIRouter(prefix="/sync/peer", tags=["sync-peer"])


async def _read(request: Request) -> tuple[bytes, str | None]:
    return await request.body(), request.headers.get(SIGNATURE_HEADER)


async def _authenticate(
    request: Request, service: PeerSyncService, body: bytes, signature: str | None
) -> SyncConnectionTable:
    conn = await service.authenticate(body, signature)
    # Picked up by the access log.
    request.state.sync_connection_id = conn.id
    return conn


@router.post("/pull", response_model=PullResponse)
async def peer_pull(request: Request, session: PublicSessionDep, settings: SettingsDep) -> dict[str, Any]:
    """Outbox rows after ``since_outbox_id``, ascending, at most ``limit``."""
    body, signature = await _read(request)
    service = PeerSyncService(session, pull_max_limit=settings.sync_pull_max_limit)
    conn = await _authenticate(request, service, body, signature)
    req = PullRequest.model_validate_json(body or b"{}")
    return await service.pull(conn, req.since_outbox_id, req.limit)


@router.post("/push")
async def peer_push(request: Request, session: PublicSessionDep, settings: SettingsDep) -> dict[str, Any]:
    body, signature = await _read(request)
    service = PeerSyncService(session, pull_max_limit=settings.sync_pull_max_limit)
    conn = await _authenticate(request, service, body, signature)
    req = PushRequest.model_validate_json(body or b"{}")
    return await service.push(conn, req.events)


@router.post("/list-people")
async def peer_list_people(request: Request, session: PublicSessionDep, settings: SettingsDep) -> dict[str, Any]:
    """Active (non-archived, non-merged) people of the connection's owner."""
    body, signature = await _read(request)
    service = PeerSyncService(session, pull_max_limit=settings.sync_pull_max_limit)
    conn = await _authenticate(request, service, body, signature)
    return await service.list_people(conn)


@router.post("/revoke")
async def peer_revoke(request: Request, session: PublicSessionDep, settings: SettingsDep) -> dict[str, Any]:
    body, signature = await _read(request)
    req = RevokeRequest.model_validate_json(body or b"{}")
    service = PeerSyncService(session, pull_max_limit=settings.sync_pull_max_limit)
    return await service.revoke(body, signature, req.revoked_by)
