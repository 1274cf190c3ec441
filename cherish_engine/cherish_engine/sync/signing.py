"""HMAC-SHA256 request signing for server-to-server sync calls.

The signature is the lowercase hex digest of ``HMAC-SHA256(secret, raw_body)``
carried in ``x-sync-signature``; ``x-sync-connection-id`` travels alongside as
a routing hint only.  A receiver never trusts that header for authentication:
it looks for *its own* connection whose secret verifies the body.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from collections.abc import Iterable
from typing import Protocol, TypeVar

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-sync-signature"
CONNECTION_HEADER = "x-sync-connection-id"


class _HasSecret(Protocol):
    shared_secret: str


_C = TypeVar("_C", bound=_HasSecret)


def sign(secret: str, body: bytes) -> str:
    """Return the hex HMAC-SHA256 of *body* keyed by *secret*."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify(secret: str, body: bytes, signature: str | None) -> bool:
    """Constant-time check of *signature* against the expected digest."""
    if not signature or not secret:
        return False
    expected = sign(secret, body).encode("ascii")
    # Header values may carry arbitrary latin-1 bytes; compare as bytes.
    return hmac.compare_digest(expected, signature.strip().lower().encode("utf-8", "replace"))


def find_verifying(connections: Iterable[_C], body: bytes, signature: str | None) -> _C | None:
    """Return the first connection whose secret verifies *body*, else ``None``.

    Every candidate is checked so that timing does not reveal which
    connection matched.
    """
    match: _C | None = None
    for conn in connections:
        if verify(conn.shared_secret, body, signature) and match is None:
            match = conn
    return match


def signed_headers(secret: str, body: bytes, connection_id: str) -> dict[str, str]:
    """Headers for an outbound signed request."""
    return {
        "Content-Type": "application/json",
        SIGNATURE_HEADER: sign(secret, body),
        CONNECTION_HEADER: connection_id,
    }
