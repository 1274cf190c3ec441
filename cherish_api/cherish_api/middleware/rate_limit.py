"""Rate-limiting middleware: fixed window, per user and per IP.

The middleware talks to a :class:`RateLimiter` port and ships with
:class:`InMemoryRateLimiter`, a fixed-window counter keyed by client.

.. warning:: **Single-replica limitation**

   :class:`InMemoryRateLimiter` holds its counters in process memory.  Each
   replica enforces its own budget, so *N* replicas allow *N x* the
   configured rate, and a restart resets every counter.  For horizontally
   scaled deployments provide a :class:`RateLimiter` backed by a shared
   store (e.g. a Redis ``INCR`` + ``EXPIRE`` counter) and pass it to the
   middleware; nothing else changes.
"""

from __future__ import annotations

import asyncio
import fnmatch
import logging
import time
from dataclasses import dataclass
from typing import Any, Protocol

from pydantic import BaseModel
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class RateLimitConfig(BaseModel):
    """Rate-limiting configuration parameters.

    Attributes:
        enabled: Master toggle.  When ``False`` the middleware is a
            pass-through.
        default_requests_per_minute: Budget per client per window.
        ai_requests_per_minute: Lower budget for endpoints that call the
            AI gateway.
        ai_endpoints: ``fnmatch`` patterns of AI-backed paths.
        exempt_paths: Paths that bypass rate limiting entirely.
    """

    enabled: bool = True
    default_requests_per_minute: int = 60
    ai_requests_per_minute: int = 10
    ai_endpoints: list[str] = ["/api/v1/suggestions/*"]
    exempt_paths: set[str] = {"/api/v1/health"}
    window_seconds: float = 60.0


# ---------------------------------------------------------------------------
# Limiter port and in-memory implementation
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    reset_at: float  # monotonic seconds


class RateLimiter(Protocol):
    """Counter backend used by :class:`RateLimitMiddleware`."""

    async def hit(self, key: str, limit: int, window_seconds: float) -> RateLimitDecision: ...


_SWEEP_INTERVAL_SECONDS: float = 60.0


class InMemoryRateLimiter:
    """Fixed-window counter: ``key -> (count, reset_at)``.

    Expired windows are swept at most once per ``sweep_interval`` seconds,
    on the next hit, to bound memory.
    """

    def __init__(self, sweep_interval: float = _SWEEP_INTERVAL_SECONDS, clock: Any = None) -> None:
        self._clock = clock or time.monotonic
        self._windows: dict[str, tuple[int, float]] = {}
        self._lock = asyncio.Lock()
        self._sweep_interval = sweep_interval
        self._next_sweep = self._clock() + sweep_interval

    def __len__(self) -> int:
        return len(self._windows)

    async def hit(self, key: str, limit: int, window_seconds: float) -> RateLimitDecision:
        now = self._clock()
        async with self._lock:
            if now >= self._next_sweep:
                self._sweep(now)

            count, reset_at = self._windows.get(key, (0, 0.0))
            if now >= reset_at:
                count, reset_at = 0, now + window_seconds
            count += 1
            self._windows[key] = (count, reset_at)

        return RateLimitDecision(
            allowed=count <= limit,
            remaining=max(limit - count, 0),
            reset_at=reset_at,
        )

    def _sweep(self, now: float) -> None:
        stale = [k for k, (_, reset_at) in self._windows.items() if now >= reset_at]
        for k in stale:
            del self._windows[k]
        self._next_sweep = now + self._sweep_interval
        if stale:
            logger.debug("Rate-limit sweep removed %d stale keys", len(stale))


# ---------------------------------------------------------------------------
# Middleware
# ---------------------------------------------------------------------------


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Starlette middleware enforcing per-client rate limits.

    Clients are keyed by ``request.state.user_id`` when the auth middleware
    has set it, otherwise by client IP.  Responses carry
    ``X-RateLimit-Limit``, ``X-RateLimit-Remaining`` and
    ``X-RateLimit-Reset``; an exhausted budget answers ``429`` with
    ``Retry-After``.
    """

    def __init__(self, app: Any, config: RateLimitConfig | None = None, limiter: RateLimiter | None = None) -> None:
        super().__init__(app)
        self._config = config or RateLimitConfig()
        self._limiter: RateLimiter = limiter or InMemoryRateLimiter()
        logger.info(
            "RateLimitMiddleware initialised (enabled=%s, rpm=%d, ai_rpm=%d)",
            self._config.enabled,
            self._config.default_requests_per_minute,
            self._config.ai_requests_per_minute,
        )

    def _client_key(self, request: Request) -> str:
        user_id: str | None = getattr(request.state, "user_id", None)
        if user_id:
            return f"user:{user_id}"
        ip = request.client.host if request.client else "unknown"
        return f"ip:{ip}"

    def _limit_for_path(self, path: str) -> int:
        """Per-window limit for *path*; ``0`` means exempt."""
        if path in self._config.exempt_paths:
            return 0
        for pattern in self._config.ai_endpoints:
            if fnmatch.fnmatch(path, pattern):
                return self._config.ai_requests_per_minute
        return self._config.default_requests_per_minute

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if not self._config.enabled:
            return await call_next(request)

        limit = self._limit_for_path(request.url.path)
        if limit == 0:
            return await call_next(request)

        client_key = self._client_key(request)
        decision = await self._limiter.hit(f"{client_key}:{limit}", limit, self._config.window_seconds)
        reset_in = max(int(decision.reset_at - time.monotonic()) + 1, 1)

        if not decision.allowed:
            logger.warning("Rate limit exceeded: key=%s path=%s limit=%d", client_key, request.url.path, limit)
            return JSONResponse(
                status_code=429,
                content={"error": "Rate limit exceeded. Try again later.", "retry_after": reset_in},
                headers={
                    "Retry-After": str(reset_in),
                    "X-RateLimit-Limit": str(limit),
                    "X-RateLimit-Remaining": "0",
                    "X-RateLimit-Reset": str(reset_in),
                },
            )

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(limit)
        response.headers["X-RateLimit-Remaining"] = str(decision.remaining)
        response.headers["X-RateLimit-Reset"] = str(reset_in)
        return response
