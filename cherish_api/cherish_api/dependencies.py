"""FastAPI dependency injection for database sessions, HTTP clients, and settings."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from cherish_api.config import APISettings, load_api_settings
from cherish_api.services.ai_client import CompletionClient
from cherish_api.services.peer_client import PeerClient
from cherish_engine.state.database import get_engine, set_user_context

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

_settings_cache: APISettings | None = None


def get_settings() -> APISettings:
    """Return the cached :class:`APISettings` singleton."""
    global _settings_cache  # noqa: PLW0603
    if _settings_cache is None:
        _settings_cache = load_api_settings()
    return _settings_cache


SettingsDep = Annotated[APISettings, Depends(get_settings)]

# ---------------------------------------------------------------------------
# Database session
# ---------------------------------------------------------------------------

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_engine(settings: APISettings) -> AsyncEngine:
    """Create and cache the global async engine."""
    global _engine, _session_factory  # noqa: PLW0603
    _engine = get_engine(settings.database_url)
    _session_factory = async_sessionmaker(_engine, expire_on_commit=False)
    return _engine


async def dispose_engine() -> None:
    """Dispose the global engine pool (call during shutdown)."""
    global _engine, _session_factory  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the global async session factory."""
    if _session_factory is None:
        raise RuntimeError(
            "Database engine has not been initialised. Ensure init_engine() is called during application startup."
        )
    return _session_factory


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an ``AsyncSession`` **without** a user RLS context.

    .. warning:: **No Row-Level Security**

       Queries through this session are not restricted to one user.  Use it
       only where no user identity exists yet: the health check and the
       HMAC-authenticated peer endpoints, which bind the user themselves
       once a connection's signature verifies.

    The session commits on clean exit and rolls back on exception.
    """
    session = get_session_factory()()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


async def get_user_session(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """Yield an ``AsyncSession`` with the RLS user context set.

    This is the session dependency for every bearer-authenticated endpoint.
    """
    user_id = getattr(request.state, "user_id", None)
    if user_id is None:
        raise HTTPException(status_code=401, detail="Authentication required")

    session = get_session_factory()()
    try:
        await set_user_context(session, user_id)
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


SessionDep = Annotated[AsyncSession, Depends(get_user_session)]

# WARNING: PublicSessionDep has no user RLS context.  Peer and health only.
PublicSessionDep = Annotated[AsyncSession, Depends(get_db_session)]

# ---------------------------------------------------------------------------
# Outbound HTTP clients
# ---------------------------------------------------------------------------

_ai_client: CompletionClient | None = None
_peer_client: PeerClient | None = None


def init_http_clients(settings: APISettings) -> None:
    """Create and cache the global AI gateway and peer clients."""
    global _ai_client, _peer_client  # noqa: PLW0603
    _ai_client = CompletionClient(
        base_url=settings.ai_gateway_url,
        api_key=settings.ai_gateway_api_key.get_secret_value(),
        model=settings.ai_model,
        timeout=settings.ai_timeout,
    )
    _peer_client = PeerClient(timeout=settings.peer_timeout)


async def dispose_http_clients() -> None:
    """Close both clients' connection pools."""
    global _ai_client, _peer_client  # noqa: PLW0603
    if _ai_client is not None:
        await _ai_client.close()
        _ai_client = None
    if _peer_client is not None:
        await _peer_client.close()
        _peer_client = None


def get_ai_client() -> CompletionClient:
    if _ai_client is None:
        raise RuntimeError(
            "AI client has not been initialised. Ensure init_http_clients() is called during application startup."
        )
    return _ai_client


def get_peer_client() -> PeerClient:
    if _peer_client is None:
        raise RuntimeError(
            "Peer client has not been initialised. Ensure init_http_clients() is called during application startup."
        )
    return _peer_client


AIClientDep = Annotated[CompletionClient, Depends(get_ai_client)]
PeerClientDep = Annotated[PeerClient, Depends(get_peer_client)]

# ---------------------------------------------------------------------------
# Caller identity (populated by AuthenticationMiddleware)
# ---------------------------------------------------------------------------


def get_user_id(request: Request) -> str:
    """Extract the user id from authenticated request state."""
    user_id = getattr(request.state, "user_id", None)
    if user_id is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    return user_id


UserDep = Annotated[str, Depends(get_user_id)]


def get_token_role(request: Request) -> str | None:
    """The JWT ``role`` claim, if the token carried one."""
    return getattr(request.state, "token_role", None)


TokenRoleDep = Annotated[str | None, Depends(get_token_role)]
