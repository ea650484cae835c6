"""
Core module - Configuration, logging and request rate control.

The sync orchestrator lives in ``catalogsync.core.orchestrator``; it is not
re-exported here because it depends on the api and scan packages.
"""

from .config import AppConfig, ClientConfig, LoggingConfig, RateLimitConfig, ScanConfig, load_config
from .logging import configure_logging
from .rate_limiter import RateLimiter, RequestBudget


__all__ = [
    # Configuration
    "AppConfig",
    "ClientConfig",
    "LoggingConfig",
    "RateLimitConfig",
    "ScanConfig",
    "load_config",
    "configure_logging",
    # Rate limiting
    "RateLimiter",
    "RequestBudget",
]
