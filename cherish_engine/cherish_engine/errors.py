"""Domain error taxonomy shared by the allowance and sync engines.

The API layer maps each class to an HTTP status in ``create_app()``; the
engines themselves never import anything HTTP-related.
"""

from __future__ import annotations


class CherishError(Exception):
    """Base class for all domain errors raised by the engine."""


class NotFoundError(CherishError, LookupError):
    """The entity does not exist, belongs to another user, or is in a terminal state."""


class ValidationError(CherishError, ValueError):
    """The request is structurally invalid (missing fields, self-merge, ...)."""


class SyncAuthError(CherishError):
    """A server-to-server request carried a missing or non-verifying signature."""


class AllowanceDeniedError(CherishError, PermissionError):
    """The user's plan or remaining balance does not permit an AI call.

    Parameters
    ----------
    reason:
        Human-readable explanation surfaced to the client.
    """

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)


class UpstreamError(CherishError):
    """An outbound call (AI gateway or peer instance) failed.

    Parameters
    ----------
    message:
        Distinguishable reason, e.g. ``"Rate limit exceeded"``.
    status_code:
        HTTP status the API layer should answer with.
    upstream_status:
        Raw status returned by the upstream, when one was received.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int = 502,
        upstream_status: int | None = None,
    ) -> None:
        self.status_code = status_code
        self.upstream_status = upstream_status
        super().__init__(message)


class ForbiddenError(CherishError, PermissionError):
    """The caller is authenticated but lacks the role the operation needs."""
