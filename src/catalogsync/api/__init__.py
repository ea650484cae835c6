"""
API module - Rate-limited access to the marketplace REST API.

- APIClient: search scan pages, single and multi-get entity fetches
- Token providers: bearer token source with one-shot refresh
"""

from .auth import CallbackTokenProvider, StaticTokenProvider, TokenProvider
from .client import APIClient, ScanPage


__all__ = [
    "APIClient",
    "ScanPage",
    "TokenProvider",
    "StaticTokenProvider",
    "CallbackTokenProvider",
]
