"""Database helpers for the credits engine."""

from .postgres import (
    ResilientConnectionPool,
    create_connection_pool,
    ensure_conninfo,
    mask_dsn,
    normalize_dsn,
)
from .retry import is_retryable_db_error, with_db_retries

__all__ = [
    "ResilientConnectionPool",
    "create_connection_pool",
    "ensure_conninfo",
    "is_retryable_db_error",
    "mask_dsn",
    "normalize_dsn",
    "with_db_retries",
]
