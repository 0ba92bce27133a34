"""
AmbuSync Shared Infrastructure Library

Provides configuration management, the backend HTTP client, and PostgreSQL
connection pooling used by the ``ambusync`` core library.
"""

from shared.config import AmbuSyncConfig, configure_logging, get_config, reload_config
from shared.clients import CircuitBreaker, CircuitOpenError, HttpClient, RetryPolicy
from shared.db import ConnectionPool, PoolSettings, close_pool, get_pool

__all__ = [
    "AmbuSyncConfig",
    "configure_logging",
    "get_config",
    "reload_config",
    "HttpClient",
    "CircuitBreaker",
    "CircuitOpenError",
    "RetryPolicy",
    "ConnectionPool",
    "PoolSettings",
    "get_pool",
    "close_pool",
]
