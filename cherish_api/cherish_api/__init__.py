"""Cherishly API: AI allowance and peer sync endpoints."""

__version__ = "0.4.0"
