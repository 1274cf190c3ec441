"""Middleware components for the Cherishly API."""

from __future__ import annotations

from cherish_api.middleware.auth import AuthenticationMiddleware
from cherish_api.middleware.logging import RequestLoggingMiddleware
from cherish_api.middleware.rate_limit import InMemoryRateLimiter, RateLimitConfig, RateLimiter, RateLimitMiddleware

__all__ = [
    "AuthenticationMiddleware",
    "InMemoryRateLimiter",
    "RateLimitConfig",
    "RateLimitMiddleware",
    "RateLimiter",
    "RequestLoggingMiddleware",
]
