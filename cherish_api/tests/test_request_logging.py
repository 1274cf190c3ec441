"""Tests for RequestLoggingMiddleware."""

from __future__ import annotations

import logging
import uuid

import pytest
from httpx import ASGITransport, AsyncClient
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from cherish_api.middleware.logging import CorrelationIdFilter, RequestLoggingMiddleware, route_group


def _make_app() -> Starlette:
    async def _ok(request: Request) -> JSONResponse:
        return JSONResponse({"status": "ok"})

    async def _missing(request: Request) -> JSONResponse:
        return JSONResponse({"error": "nope"}, status_code=404)

    async def _peer_pull(request: Request) -> JSONResponse:
        request.state.sync_connection_id = "conn-verified"
        return JSONResponse({"events": [], "last_outbox_id": 0})

    async def _suggest(request: Request) -> JSONResponse:
        request.state.user_id = "user-1"
        logging.getLogger("cherish_engine.allowance.engine").info("Usage recorded")
        return JSONResponse({"charged": True})

    app = Starlette(
        routes=[
            Route("/ok", _ok),
            Route("/missing", _missing),
            Route("/api/v1/sync/peer/pull", _peer_pull, methods=["POST"]),
            Route("/api/v1/suggestions/activity", _suggest, methods=["POST"]),
        ]
    )
    app.add_middleware(RequestLoggingMiddleware)
    return app


async def _get(path: str, headers: dict[str, str] | None = None):
    async with AsyncClient(transport=ASGITransport(app=_make_app()), base_url="http://test") as ac:
        return await ac.get(path, headers=headers)


async def _post(path: str, headers: dict[str, str] | None = None):
    async with AsyncClient(transport=ASGITransport(app=_make_app()), base_url="http://test") as ac:
        return await ac.post(path, content=b"{}", headers=headers)


def _access_records(caplog) -> list[logging.LogRecord]:
    return [r for r in caplog.records if r.name == "cherish_api.access"]


@pytest.mark.asyncio
async def test_sensitive_headers_masked(caplog) -> None:
    caplog.set_level(logging.INFO, logger="cherish_api.access")
    await _get(
        "/ok",
        headers={
            "Authorization": "Bearer secret-token",
            "X-Sync-Signature": "abcdef",
            "X-Client": "ios",
        },
    )

    (record,) = _access_records(caplog)
    headers = record.request["headers"]
    assert headers["authorization"] == "***"
    assert headers["x-sync-signature"] == "***"
    assert headers["x-client"] == "ios"


@pytest.mark.asyncio
async def test_correlation_id_generated_when_absent(caplog) -> None:
    caplog.set_level(logging.INFO, logger="cherish_api.access")
    resp = await _get("/ok")

    generated = resp.headers["X-Correlation-ID"]
    assert uuid.UUID(generated).version == 4
    (record,) = _access_records(caplog)
    assert record.request["correlation_id"] == generated
    assert record.request["user_id"] == "anonymous"


@pytest.mark.asyncio
async def test_level_follows_status(caplog) -> None:
    caplog.set_level(logging.INFO, logger="cherish_api.access")
    await _get("/ok")
    await _get("/missing")

    ok, missing = _access_records(caplog)
    assert ok.levelno == logging.INFO
    assert missing.levelno == logging.WARNING
    assert missing.request["status_code"] == 404


@pytest.mark.parametrize(
    "path, group",
    [
        ("/api/v1/sync/peer/push", "peer"),
        ("/api/v1/sync/merge/undo", "sync"),
        ("/api/v1/suggestions/activity", "ai"),
        ("/api/v1/allowance/ensure", "allowance"),
        ("/api/v1/admin/allowance", "allowance"),
        ("/api/v1/moments/m-1", "people"),
        ("/favicon.ico", "other"),
    ],
)
def test_route_group(path, group) -> None:
    assert route_group(path) == group


@pytest.mark.asyncio
async def test_peer_call_records_claimed_and_verified_connection(caplog) -> None:
    caplog.set_level(logging.INFO, logger="cherish_api.access")
    await _post(
        "/api/v1/sync/peer/pull",
        headers={"X-Sync-Signature": "ab" * 32, "X-Sync-Connection-Id": "conn-claimed"},
    )

    (record,) = _access_records(caplog)
    assert record.request["route_group"] == "peer"
    assert record.request["auth"] == "hmac"
    assert record.request["sync_connection_hint"] == "conn-claimed"
    assert record.request["sync_connection_id"] == "conn-verified"
    assert record.request["headers"]["x-sync-signature"] == "***"


@pytest.mark.asyncio
async def test_suggestion_call_flags_idempotency_and_shares_correlation_id(caplog) -> None:
    caplog.set_level(logging.INFO)
    caplog.handler.addFilter(CorrelationIdFilter())
    resp = await _post(
        "/api/v1/suggestions/activity",
        headers={"Authorization": "Bearer t", "Idempotency-Key": "key-1", "X-Correlation-ID": "corr-42"},
    )

    assert resp.headers["X-Correlation-ID"] == "corr-42"
    (access,) = _access_records(caplog)
    assert access.request["auth"] == "bearer"
    assert access.request["user_id"] == "user-1"
    assert access.request["idempotency_key_present"] is True
    assert access.request["headers"]["idempotency-key"] == "***"
    assert "sync_connection_id" not in access.request

    (engine_record,) = [r for r in caplog.records if r.name == "cherish_engine.allowance.engine"]
    assert engine_record.correlation_id == "corr-42"
