"""Signed HTTP client for calling a peer instance's sync endpoints."""

from __future__ import annotations

import json
import logging
from typing import Any

import httpx

from cherish_engine.errors import UpstreamError
from cherish_engine.sync.signing import signed_headers

logger = logging.getLogger(__name__)

_PEER_PREFIX = "/api/v1/sync/peer"


class PeerClient:
    """POST signed JSON bodies to ``{remote_base_url}/api/v1/sync/peer/*``.

    One client is shared by all connections; the base URL and secret are
    passed per call.  Non-2xx answers and transport failures raise
    :class:`UpstreamError` (502) so that the initiating action reports a
    failure instead of dropping it.
    """

    def __init__(self, timeout: float = 15.0, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._client = httpx.AsyncClient(timeout=httpx.Timeout(timeout), transport=transport)

    async def _post(
        self,
        remote_base_url: str,
        endpoint: str,
        body: dict[str, Any],
        *,
        secret: str,
        connection_id: str,
    ) -> dict[str, Any]:
        raw = json.dumps(body, separators=(",", ":")).encode("utf-8")
        url = f"{remote_base_url.rstrip('/')}{_PEER_PREFIX}/{endpoint}"
        try:
            resp = await self._client.post(url, content=raw, headers=signed_headers(secret, raw, connection_id))
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            logger.warning("Peer %s returned %d for %s", remote_base_url, status, endpoint)
            raise UpstreamError(f"Peer {endpoint} failed: HTTP {status}", upstream_status=status) from exc
        except httpx.RequestError as exc:
            logger.warning("Peer %s unreachable for %s: %s", remote_base_url, endpoint, exc)
            raise UpstreamError(f"Peer {endpoint} failed: unreachable") from exc

        if not resp.content:
            return {}
        try:
            data = resp.json()
        except ValueError as exc:
            logger.warning("Peer %s sent a non-JSON body for %s", remote_base_url, endpoint)
            raise UpstreamError(f"Peer {endpoint} failed: invalid JSON") from exc
        if not isinstance(data, dict):
            raise UpstreamError(f"Peer {endpoint} failed: invalid JSON")
        return data

    async def push(
        self, remote_base_url: str, events: list[dict[str, Any]], *, secret: str, connection_id: str
    ) -> dict[str, Any]:
        return await self._post(
            remote_base_url, "push", {"events": events}, secret=secret, connection_id=connection_id
        )

    async def pull(
        self, remote_base_url: str, since_outbox_id: int, limit: int, *, secret: str, connection_id: str
    ) -> dict[str, Any]:
        return await self._post(
            remote_base_url,
            "pull",
            {"since_outbox_id": since_outbox_id, "limit": limit},
            secret=secret,
            connection_id=connection_id,
        )

    async def list_people(self, remote_base_url: str, *, secret: str, connection_id: str) -> list[dict[str, Any]]:
        body = await self._post(remote_base_url, "list-people", {}, secret=secret, connection_id=connection_id)
        return list(body.get("people") or [])

    async def revoke(self, remote_base_url: str, revoked_by: str, *, secret: str, connection_id: str) -> dict[str, Any]:
        return await self._post(
            remote_base_url, "revoke", {"revoked_by": revoked_by}, secret=secret, connection_id=connection_id
        )

    async def close(self) -> None:
        await self._client.aclose()
