"""User-facing sync endpoints: connections, matching, mapping, merge/undo."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Query

from cherish_api.dependencies import PeerClientDep, SessionDep, SettingsDep, UserDep
from cherish_api.schemas import (
    ApplyMappingRequest,
    ConnectionCreate,
    ConnectionRef,
    ConnectionResponse,
    MergeRequest,
    UndoMergeRequest,
)
from cherish_api.services.sync_service import SyncService
from cherish_engine.state.tables import SyncConnectionTable

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sync", tags=["sync"])


def _service(session: Any, user_id: str, peer: Any, settings: Any) -> SyncService:
    return SyncService(session, user_id, peer, cache_ttl_seconds=settings.remote_people_cache_ttl_seconds)


@router.post("/connections", response_model=ConnectionResponse, status_code=201)
async def create_connection(
    body: ConnectionCreate,
    session: SessionDep,
    user_id: UserDep,
    peer: PeerClientDep,
    settings: SettingsDep,
) -> SyncConnectionTable:
    """Register the single active connection to a peer instance."""
    return await _service(session, user_id, peer, settings).create_connection(
        body.remote_base_url, body.shared_secret, body.remote_app
    )


@router.get("/status")
async def sync_status(
    session: SessionDep, user_id: UserDep, peer: PeerClientDep, settings: SettingsDep
) -> dict[str, Any]:
    return await _service(session, user_id, peer, settings).status()


@router.post("/disconnect")
async def disconnect(
    body: ConnectionRef,
    session: SessionDep,
    user_id: UserDep,
    peer: PeerClientDep,
    settings: SettingsDep,
) -> dict[str, bool]:
    """Revoke locally, then best-effort notify the peer."""
    return await _service(session, user_id, peer, settings).disconnect(body.connection_id)


@router.get("/remote-people")
async def remote_people(
    session: SessionDep,
    user_id: UserDep,
    peer: PeerClientDep,
    settings: SettingsDep,
    connection_id: str | None = Query(default=None),
    force_refresh: bool = Query(default=False),
) -> dict[str, Any]:
    return await _service(session, user_id, peer, settings).remote_people(connection_id, force_refresh=force_refresh)


@router.post("/suggest-matches")
async def suggest_matches(
    body: ConnectionRef,
    session: SessionDep,
    user_id: UserDep,
    peer: PeerClientDep,
    settings: SettingsDep,
) -> dict[str, Any]:
    """Score remote people against local people.  Proposes only, never links."""
    candidates = await _service(session, user_id, peer, settings).suggest_matches(body.connection_id)
    return {"candidates": candidates}


@router.post("/apply-mapping")
async def apply_mapping(
    body: ApplyMappingRequest,
    session: SessionDep,
    user_id: UserDep,
    peer: PeerClientDep,
    settings: SettingsDep,
) -> dict[str, Any]:
    """Apply link/exclude/create actions independently.

    Always HTTP 200 once the batch runs; inspect each entry of ``results``.
    """
    return await _service(session, user_id, peer, settings).apply_mapping(body.actions, body.connection_id)


@router.post("/merge")
async def merge_people(
    body: MergeRequest,
    session: SessionDep,
    user_id: UserDep,
    peer: PeerClientDep,
    settings: SettingsDep,
) -> dict[str, Any]:
    return await _service(session, user_id, peer, settings).merge(body.keep_person_id, body.drop_person_id)


@router.post("/merge/undo")
async def undo_merge(
    body: UndoMergeRequest,
    session: SessionDep,
    user_id: UserDep,
    peer: PeerClientDep,
    settings: SettingsDep,
) -> dict[str, Any]:
    return await _service(session, user_id, peer, settings).undo_merge(body.merge_log_id)


@router.post("/pull-now")
async def pull_now(
    body: ConnectionRef,
    session: SessionDep,
    user_id: UserDep,
    peer: PeerClientDep,
    settings: SettingsDep,
    limit: int = Query(default=100, ge=1, le=500),
) -> dict[str, Any]:
    """Fetch the peer's outbox past our remote cursor and apply it here."""
    return await _service(session, user_id, peer, settings).pull_now(body.connection_id, limit=limit)


@router.post("/backfill")
async def backfill(
    body: ConnectionRef,
    session: SessionDep,
    user_id: UserDep,
    peer: PeerClientDep,
    settings: SettingsDep,
) -> dict[str, int]:
    """Enqueue linked people and their moments not yet in the outbox."""
    return await _service(session, user_id, peer, settings).backfill(body.connection_id)


@router.get("/conflicts")
async def list_conflicts(
    session: SessionDep,
    user_id: UserDep,
    peer: PeerClientDep,
    settings: SettingsDep,
    connection_id: str | None = Query(default=None),
) -> dict[str, Any]:
    return {"conflicts": await _service(session, user_id, peer, settings).list_conflicts(connection_id)}
