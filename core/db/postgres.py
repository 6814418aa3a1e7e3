"""PostgreSQL connection pooling for the ledger and signup-risk stores."""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, Optional

import psycopg
from psycopg.conninfo import make_conninfo
from psycopg_pool import ConnectionPool

from db.postgres import mask_dsn as _mask_dsn
from db.postgres import normalize_dsn as _normalize_dsn

log = logging.getLogger("core.db.postgres")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw.strip())
    except (TypeError, ValueError):
        return default
    return value if value > 0 else default


_DEFAULT_POOL_MIN = _env_int("PG_POOL_MIN", 1)
_DEFAULT_POOL_MAX = _env_int("PG_POOL_MAX", 10)
_DEFAULT_POOL_RECYCLE = _env_int("PG_POOL_RECYCLE_SEC", 300)
_DEFAULT_STATEMENT_TIMEOUT = _env_int("PG_CONN_STATEMENT_TIMEOUT_MS", 15_000)
_DEFAULT_LOCK_TIMEOUT = _env_int("PG_CONN_LOCK_TIMEOUT_MS", 5_000)
_DEFAULT_KEEPALIVES_IDLE = _env_int("PG_KEEPALIVES_IDLE", 30)
_DEFAULT_KEEPALIVES_INTERVAL = _env_int("PG_KEEPALIVES_INTERVAL", 10)
_DEFAULT_KEEPALIVES_COUNT = _env_int("PG_KEEPALIVES_COUNT", 3)


def normalize_dsn(raw: str) -> str:
    """Expose the shared DSN normaliser."""

    return _normalize_dsn(raw)


def mask_dsn(dsn: str) -> str:
    """Expose the shared DSN masker."""

    return _mask_dsn(dsn)


def ensure_conninfo(raw_dsn: str, *, application_name: Optional[str] = None) -> str:
    """Append keepalive and timeout parameters to a PostgreSQL DSN.

    ``lock_timeout`` bounds how long a mutation may wait on a contended
    wallet row before the retry layer takes over.
    """

    base = normalize_dsn(raw_dsn)
    options = (
        f"-c statement_timeout={_DEFAULT_STATEMENT_TIMEOUT} "
        f"-c lock_timeout={_DEFAULT_LOCK_TIMEOUT}"
    )
    conn_kwargs: Dict[str, Any] = {
        "keepalives": 1,
        "keepalives_idle": _DEFAULT_KEEPALIVES_IDLE,
        "keepalives_interval": _DEFAULT_KEEPALIVES_INTERVAL,
        "keepalives_count": _DEFAULT_KEEPALIVES_COUNT,
        "options": options,
    }
    if application_name:
        conn_kwargs["application_name"] = application_name
    return make_conninfo(base, **conn_kwargs)


class ResilientConnectionPool(ConnectionPool):
    """A psycopg connection pool that discards closed connections."""

    def getconn(self, timeout: Optional[float] = None) -> psycopg.Connection[Any]:  # type: ignore[override]
        while True:
            conn = super().getconn(timeout=timeout)
            if getattr(conn, "closed", False):
                super().putconn(conn)
                continue
            return conn


def create_connection_pool(
    raw_dsn: str,
    *,
    application_name: str = "credits-ledger",
    min_size: Optional[int] = None,
    max_size: Optional[int] = None,
    timeout: float = 10.0,
    max_lifetime: Optional[int] = None,
) -> ResilientConnectionPool:
    """Create and open a :class:`ResilientConnectionPool` with sensible defaults."""

    conninfo = ensure_conninfo(raw_dsn, application_name=application_name)
    pool_min = min_size or _DEFAULT_POOL_MIN
    pool_max = max(max_size or _DEFAULT_POOL_MAX, pool_min)
    lifetime = max_lifetime or _DEFAULT_POOL_RECYCLE
    pool = ResilientConnectionPool(
        conninfo=conninfo,
        min_size=pool_min,
        max_size=pool_max,
        timeout=timeout,
        max_lifetime=lifetime,
        kwargs={"autocommit": True},
        open=True,
    )
    pool.wait()
    log.info(
        "db.pool.ready",
        extra={
            "meta": {
                "dsn": mask_dsn(raw_dsn),
                "app": application_name,
                "pool_min": pool_min,
                "pool_max": pool_max,
                "recycle": lifetime,
                "timeout": timeout,
            }
        },
    )
    return pool


__all__ = [
    "ResilientConnectionPool",
    "create_connection_pool",
    "ensure_conninfo",
    "mask_dsn",
    "normalize_dsn",
]
