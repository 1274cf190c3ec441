"""Authentication middleware that extracts and validates JWT bearer tokens.

Extracts ``Authorization: Bearer <token>`` from every request, validates
the HS256 JWT with python-jose, and populates ``request.state`` with
``user_id`` (the ``sub`` claim) and ``token_role`` (the optional ``role``
claim; ``service_role`` marks trusted service callers).

Endpoints listed in ``_PUBLIC_PATHS`` bypass authentication.  Peer sync
endpoints are public here because they authenticate by HMAC signature.
"""

from __future__ import annotations

import logging
import secrets
from typing import Any

from jose import ExpiredSignatureError, JWTError, jwt
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from cherish_api.config import PlatformEnv, load_api_settings

logger = logging.getLogger(__name__)

# Paths that do not require authentication.
_PUBLIC_PATHS: frozenset[str] = frozenset(
    {
        "/api/v1/health",
        "/docs",
        "/openapi.json",
        "/redoc",
        "/favicon.ico",
    }
)

# Prefixes that skip bearer auth (docs assets, HMAC-authenticated peer calls).
_PUBLIC_PREFIXES: tuple[str, ...] = (
    "/docs",
    "/redoc",
    "/api/v1/sync/peer/",
)


def _is_public_path(path: str) -> bool:
    """Return ``True`` if the path should bypass authentication."""
    if path in _PUBLIC_PATHS:
        return True
    return any(path.startswith(prefix) for prefix in _PUBLIC_PREFIXES)


def _unauthorized(message: str) -> JSONResponse:
    return JSONResponse(status_code=401, content={"error": message})


class AuthenticationMiddleware(BaseHTTPMiddleware):
    """Starlette middleware that enforces Bearer token authentication.

    On each request the middleware:

    1. Checks whether the path is public and skips auth.
    2. Extracts the ``Authorization: Bearer <token>`` header.
    3. Decodes and verifies the JWT (signature, expiry, audience if set).
    4. Stores ``user_id`` and ``token_role`` on ``request.state``.
    5. Returns a 401 JSON response on failure.
    """

    def __init__(self, app: Any) -> None:
        super().__init__(app)
        settings = load_api_settings()
        secret = settings.jwt_secret.get_secret_value()
        if not secret:
            if settings.platform_env != PlatformEnv.DEV:
                raise RuntimeError(
                    f"CHERISH_JWT_SECRET must be set in {settings.platform_env.value} mode. Refusing to start."
                )
            secret = f"dev-{secrets.token_hex(32)}"
            logger.warning(
                "CHERISH_JWT_SECRET not set; generated random per-process dev secret. "
                "Tokens will not survive process restarts."
            )
        self._secret = secret
        self._algorithm = settings.jwt_algorithm
        self._audience = settings.jwt_audience
        logger.info("AuthenticationMiddleware initialised (alg=%s)", self._algorithm)

    def _decode(self, token: str) -> dict[str, Any]:
        return jwt.decode(
            token,
            self._secret,
            algorithms=[self._algorithm],
            audience=self._audience,
            options={"verify_aud": self._audience is not None},
        )

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.method == "OPTIONS" or _is_public_path(request.url.path):
            return await call_next(request)

        auth_header = request.headers.get("authorization")
        if not auth_header:
            return _unauthorized("Missing Authorization header")

        parts = auth_header.split(None, 1)
        if len(parts) != 2 or parts[0].lower() != "bearer":
            return _unauthorized("Authorization header must use Bearer scheme")

        try:
            claims = self._decode(parts[1])
        except ExpiredSignatureError:
            return _unauthorized("Token has expired")
        except JWTError as exc:
            return _unauthorized(f"Invalid token: {exc}")

        user_id = claims.get("sub")
        if not user_id:
            return _unauthorized("Invalid token: missing subject")

        request.state.user_id = str(user_id)
        request.state.token_role = claims.get("role")
        return await call_next(request)
