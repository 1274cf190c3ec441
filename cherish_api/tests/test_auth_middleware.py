"""Tests for cherish_api.middleware.auth.AuthenticationMiddleware."""

from __future__ import annotations

from datetime import UTC, datetime
from unittest.mock import AsyncMock, patch

import pytest
from jose import jwt

from cherish_api.middleware.auth import _is_public_path


def _view() -> dict:
    return {
        "period_id": "period-1",
        "period_start": datetime(2026, 10, 1, tzinfo=UTC),
        "period_end": datetime(2026, 11, 1, tzinfo=UTC),
        "source": "premium",
        "role": "pro",
        "ai_enabled": True,
        "tokens_granted": 300_000,
        "tokens_used": 0,
        "tokens_remaining": 300_000,
        "tokens_per_credit": 200,
        "credits_granted": 1500.0,
        "credits_used": 0.0,
        "credits_remaining": 1500.0,
        "plan_base_credits": 1500.0,
        "rollover_credits": 0.0,
        "low_balance": False,
    }


class TestPublicPaths:
    @pytest.mark.parametrize(
        "path",
        ["/api/v1/health", "/docs", "/openapi.json", "/api/v1/sync/peer/pull", "/api/v1/sync/peer/revoke"],
    )
    def test_public(self, path):
        assert _is_public_path(path) is True

    @pytest.mark.parametrize(
        "path",
        ["/api/v1/allowance", "/api/v1/sync/status", "/api/v1/sync/peer", "/api/v1/people", "/api/v1/moments"],
    )
    def test_protected(self, path):
        assert _is_public_path(path) is False


class TestBearerAuth:
    @pytest.mark.asyncio
    async def test_health_needs_no_token(self, anon_client):
        resp = await anon_client.get("/api/v1/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "healthy"

    @pytest.mark.asyncio
    async def test_missing_header(self, anon_client):
        resp = await anon_client.get("/api/v1/allowance")
        assert resp.status_code == 401
        assert resp.json() == {"error": "Missing Authorization header"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "method, path",
        [
            ("GET", "/api/v1/people"),
            ("POST", "/api/v1/people"),
            ("PATCH", "/api/v1/people/p-1"),
            ("POST", "/api/v1/moments"),
            ("DELETE", "/api/v1/moments/m-1"),
        ],
    )
    async def test_people_and_moments_need_token(self, anon_client, mock_session, method, path):
        resp = await anon_client.request(method, path, json={"name": "Mallory"} if method != "DELETE" else None)

        assert resp.status_code == 401
        assert resp.json() == {"error": "Missing Authorization header"}
        mock_session.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_wrong_scheme(self, anon_client):
        resp = await anon_client.get("/api/v1/allowance", headers={"Authorization": "Basic dXNlcjpwYXNz"})
        assert resp.status_code == 401
        assert "Bearer" in resp.json()["error"]

    @pytest.mark.asyncio
    async def test_bad_signature(self, anon_client):
        token = jwt.encode({"sub": "test-user"}, "some-other-secret", algorithm="HS256")
        resp = await anon_client.get("/api/v1/allowance", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 401
        assert resp.json()["error"].startswith("Invalid token")

    @pytest.mark.asyncio
    async def test_expired(self, anon_client, make_token):
        token = make_token(expires_in=-60)
        resp = await anon_client.get("/api/v1/allowance", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 401
        assert resp.json() == {"error": "Token has expired"}

    @pytest.mark.asyncio
    async def test_missing_subject(self, anon_client, make_token):
        token = make_token(sub=None)
        resp = await anon_client.get("/api/v1/allowance", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 401
        assert resp.json() == {"error": "Invalid token: missing subject"}

    @pytest.mark.asyncio
    async def test_valid_token_reaches_handler_as_subject(self, anon_client, make_token):
        token = make_token(sub="user-42")
        with patch("cherish_api.routers.allowance.AllowanceService") as service_cls:
            service_cls.return_value.balance_view = AsyncMock(return_value=_view())
            resp = await anon_client.get("/api/v1/allowance", headers={"Authorization": f"Bearer {token}"})

        assert resp.status_code == 200
        assert resp.json()["credits_remaining"] == 1500.0
        assert service_cls.call_args.args[1] == "user-42"

    @pytest.mark.asyncio
    async def test_role_claim_forwarded(self, anon_client, make_token):
        token = make_token(sub="svc", role="service_role")
        with patch("cherish_api.routers.allowance.AllowanceService") as service_cls:
            service_cls.return_value.ensure = AsyncMock(return_value={"success": True, "processed": 0, "failed": 0})
            resp = await anon_client.post(
                "/api/v1/allowance/ensure",
                json={"batch_init": True},
                headers={"Authorization": f"Bearer {token}"},
            )

        assert resp.status_code == 200
        assert service_cls.call_args.args[1:] == ("svc", "service_role")


class TestPeerPathsBypassBearer:
    @pytest.mark.asyncio
    async def test_peer_call_without_bearer_is_judged_by_signature(self, anon_client):
        resp = await anon_client.post("/api/v1/sync/peer/pull", content=b"{}")
        assert resp.status_code == 401
        assert resp.json() == {"error": "Missing signature"}
