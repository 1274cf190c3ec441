"""Cherishly core engine: persistence, AI allowance accounting and peer sync."""

__version__ = "0.4.0"
