"""Structured access logging and per-request correlation ids.

Every request gets a ``correlation_id`` (the incoming ``X-Correlation-ID``
header or a fresh UUID-4).  It is echoed on the response, stored in a
context variable for the duration of the request so that
:class:`CorrelationIdFilter` can stamp it on every record emitted by the
engine and services, and included in the ``cherish_api.access`` record.

The access record also says which surface was hit (``ai``, ``sync``,
``peer`` ...), how the caller authenticated, whether an ``Idempotency-Key``
was supplied and, for peer calls, which sync connection was claimed in the
routing header and which one actually verified the signature.
"""

from __future__ import annotations

import contextvars
import logging
import time
import uuid
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from cherish_engine.sync.signing import CONNECTION_HEADER, SIGNATURE_HEADER

logger = logging.getLogger("cherish_api.access")

# Header names whose values must be masked in log output.
_SENSITIVE_HEADERS: frozenset[str] = frozenset({"authorization", "cookie", SIGNATURE_HEADER, "idempotency-key"})
_MASK: str = "***"

_CORRELATION_HEADER: str = "X-Correlation-ID"

# Longest prefix first.
_ROUTE_GROUPS: tuple[tuple[str, str], ...] = (
    ("/api/v1/sync/peer/", "peer"),
    ("/api/v1/sync/", "sync"),
    ("/api/v1/suggestions", "ai"),
    ("/api/v1/allowance", "allowance"),
    ("/api/v1/admin/", "allowance"),
    ("/api/v1/people", "people"),
    ("/api/v1/moments", "people"),
    ("/api/v1/health", "health"),
)

_correlation_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("correlation_id", default="")


def get_correlation_id() -> str:
    """Return the current request's correlation id (empty outside a request)."""
    return _correlation_id_var.get()


def route_group(path: str) -> str:
    for prefix, group in _ROUTE_GROUPS:
        if path.startswith(prefix):
            return group
    return "other"


def _auth_scheme(request: Request) -> str:
    if SIGNATURE_HEADER in request.headers:
        return "hmac"
    if "authorization" in request.headers:
        return "bearer"
    return "none"


def _safe_headers(request: Request) -> dict[str, str]:
    """Return a copy of the request headers with sensitive values masked."""
    return {key: _MASK if key.lower() in _SENSITIVE_HEADERS else value for key, value in request.headers.items()}


class CorrelationIdFilter(logging.Filter):
    """Stamp ``correlation_id`` on every record passing through a handler."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "correlation_id", None):
            record.correlation_id = _correlation_id_var.get()  # type: ignore[attr-defined]
        return True


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log every request once it completes; the level follows the status class."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        correlation_id = request.headers.get(_CORRELATION_HEADER) or str(uuid.uuid4())
        token = _correlation_id_var.set(correlation_id)

        start = time.monotonic()
        response: Response | None = None
        try:
            response = await call_next(request)
            response.headers[_CORRELATION_HEADER] = correlation_id
            return response
        finally:
            status_code = response.status_code if response is not None else 500
            path = request.url.path
            log_payload: dict[str, Any] = {
                "method": request.method,
                "path": path,
                "route_group": route_group(path),
                "query": str(request.url.query) if request.url.query else None,
                "status_code": status_code,
                "duration_ms": round((time.monotonic() - start) * 1000, 2),
                "client": request.client.host if request.client else None,
                "correlation_id": correlation_id,
                "auth": _auth_scheme(request),
                "user_id": getattr(request.state, "user_id", "anonymous"),
                "idempotency_key_present": "idempotency-key" in request.headers,
                "headers": _safe_headers(request),
            }
            if CONNECTION_HEADER in request.headers or hasattr(request.state, "sync_connection_id"):
                log_payload["sync_connection_hint"] = request.headers.get(CONNECTION_HEADER)
                log_payload["sync_connection_id"] = getattr(request.state, "sync_connection_id", None)

            if status_code >= 500:
                logger.error("request completed", extra={"request": log_payload})
            elif status_code >= 400:
                logger.warning("request completed", extra={"request": log_payload})
            else:
                logger.info("request completed", extra={"request": log_payload})
            _correlation_id_var.reset(token)
