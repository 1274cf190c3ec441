"""API router modules for the Cherishly service."""

from __future__ import annotations

from cherish_api.routers import allowance, health, people, suggestions, sync, sync_peer

__all__ = [
    "allowance",
    "health",
    "people",
    "suggestions",
    "sync",
    "sync_peer",
]
