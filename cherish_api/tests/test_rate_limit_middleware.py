"""Tests for cherish_api/middleware/rate_limit.py

Covers:
- Requests within the limit pass through with rate-limit headers.
- Requests past the limit receive 429 with Retry-After.
- Exempt paths bypass rate limiting entirely.
- AI-backed paths use the lower per-minute cap.
- Disabled middleware is a transparent pass-through.
- The in-memory limiter resets windows and sweeps stale keys.
"""

from __future__ import annotations

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from cherish_api.middleware.rate_limit import (
    InMemoryRateLimiter,
    RateLimitConfig,
    RateLimitMiddleware,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class _FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now


def _make_app(config: RateLimitConfig | None = None) -> Starlette:
    """Build a minimal Starlette app with the rate-limit middleware."""

    async def _ok(request: Request) -> JSONResponse:
        return JSONResponse({"status": "ok"})

    app = Starlette(
        routes=[
            Route("/api/v1/people", _ok),
            Route("/api/v1/health", _ok),
            Route("/api/v1/suggestions/activity", _ok, methods=["POST"]),
        ],
    )
    cfg = config or RateLimitConfig(
        default_requests_per_minute=3,
        ai_requests_per_minute=1,
        exempt_paths={"/api/v1/health"},
    )
    app.add_middleware(RateLimitMiddleware, config=cfg)
    return app


@pytest_asyncio.fixture()
async def client() -> AsyncClient:
    """Yield an async client bound to a test app with a 3-rpm limit."""
    async with AsyncClient(transport=ASGITransport(app=_make_app()), base_url="http://test") as ac:
        yield ac


# ---------------------------------------------------------------------------
# InMemoryRateLimiter unit tests
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_limiter_counts_within_window() -> None:
    limiter = InMemoryRateLimiter(clock=_FakeClock())

    first = await limiter.hit("k", 2, 60.0)
    second = await limiter.hit("k", 2, 60.0)
    third = await limiter.hit("k", 2, 60.0)

    assert (first.allowed, first.remaining) == (True, 1)
    assert (second.allowed, second.remaining) == (True, 0)
    assert (third.allowed, third.remaining) == (False, 0)
    assert first.reset_at == third.reset_at == 1060.0


@pytest.mark.asyncio
async def test_limiter_window_resets() -> None:
    clock = _FakeClock()
    limiter = InMemoryRateLimiter(clock=clock)
    await limiter.hit("k", 1, 60.0)
    assert not (await limiter.hit("k", 1, 60.0)).allowed

    clock.now += 60.0
    decision = await limiter.hit("k", 1, 60.0)
    assert decision.allowed
    assert decision.reset_at == 1120.0


@pytest.mark.asyncio
async def test_limiter_keys_are_independent() -> None:
    limiter = InMemoryRateLimiter(clock=_FakeClock())
    await limiter.hit("user:a", 1, 60.0)

    assert (await limiter.hit("user:b", 1, 60.0)).allowed
    assert not (await limiter.hit("user:a", 1, 60.0)).allowed


@pytest.mark.asyncio
async def test_limiter_sweeps_stale_keys() -> None:
    clock = _FakeClock()
    limiter = InMemoryRateLimiter(sweep_interval=30.0, clock=clock)
    await limiter.hit("old", 5, 10.0)
    assert len(limiter) == 1

    clock.now += 31.0
    await limiter.hit("new", 5, 10.0)
    assert len(limiter) == 1


# ---------------------------------------------------------------------------
# Middleware
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_within_limit_sets_headers(client: AsyncClient) -> None:
    resp = await client.get("/api/v1/people")

    assert resp.status_code == 200
    assert resp.headers["X-RateLimit-Limit"] == "3"
    assert resp.headers["X-RateLimit-Remaining"] == "2"
    assert int(resp.headers["X-RateLimit-Reset"]) >= 1


@pytest.mark.asyncio
async def test_exceeding_limit_returns_429(client: AsyncClient) -> None:
    for _ in range(3):
        assert (await client.get("/api/v1/people")).status_code == 200

    resp = await client.get("/api/v1/people")
    assert resp.status_code == 429
    body = resp.json()
    assert body["error"] == "Rate limit exceeded. Try again later."
    assert resp.headers["X-RateLimit-Remaining"] == "0"
    assert int(resp.headers["Retry-After"]) == body["retry_after"]


@pytest.mark.asyncio
async def test_exempt_path_has_no_limit(client: AsyncClient) -> None:
    for _ in range(10):
        resp = await client.get("/api/v1/health")
        assert resp.status_code == 200
        assert "X-RateLimit-Limit" not in resp.headers


@pytest.mark.asyncio
async def test_ai_path_uses_lower_cap(client: AsyncClient) -> None:
    first = await client.post("/api/v1/suggestions/activity")
    second = await client.post("/api/v1/suggestions/activity")

    assert first.headers["X-RateLimit-Limit"] == "1"
    assert second.status_code == 429
    # The default bucket is untouched by AI calls.
    assert (await client.get("/api/v1/people")).status_code == 200


@pytest.mark.asyncio
async def test_disabled_is_pass_through() -> None:
    app = _make_app(RateLimitConfig(enabled=False, default_requests_per_minute=1))
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        for _ in range(5):
            resp = await ac.get("/api/v1/people")
            assert resp.status_code == 200
            assert "X-RateLimit-Limit" not in resp.headers
