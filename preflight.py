#!/usr/bin/env python3
"""Environment and connectivity preflight checks for the credits engine."""

from __future__ import annotations

import logging
import os
from typing import Optional

import psycopg
import redis
from dotenv import load_dotenv

from db.postgres import check_health, mask_dsn, normalize_dsn

LOG = logging.getLogger("preflight")

DB_ENV_KEYS = ["DATABASE_URL", "POSTGRES_DSN"]
LEDGER_BACKEND_KEY = "LEDGER_BACKEND"
COUNTER_BACKEND_KEY = "COUNTER_BACKEND"


def _load_env() -> None:
    """Load .env file if present."""

    load_dotenv(override=False)


class CheckError(RuntimeError):
    """Custom error with friendly output."""


def _resolve_db_url() -> Optional[str]:
    for key in DB_ENV_KEYS:
        value = os.getenv(key)
        if value and value.strip():
            return value.strip()
    backend = (os.getenv(LEDGER_BACKEND_KEY) or "").strip().lower()
    if backend and backend != "memory":
        raise CheckError("DATABASE_URL required (set LEDGER_BACKEND=memory to skip Postgres)")
    return None


def _resolve_redis_url() -> Optional[str]:
    value = (os.getenv("REDIS_URL") or "").strip()
    if value:
        return value
    backend = (os.getenv(COUNTER_BACKEND_KEY) or "").strip().lower()
    if backend == "redis":
        raise CheckError("REDIS_URL required when COUNTER_BACKEND=redis")
    return None


def _check_postgres(dsn: str) -> str:
    try:
        with psycopg.connect(normalize_dsn(dsn), connect_timeout=5) as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT to_regclass('credit_ledger') IS NOT NULL")
                row = cur.fetchone()
            if not (row and row[0]):
                return "connected (schema not created yet)"
            health = check_health(conn)
    except (psycopg.Error, ValueError) as exc:
        raise CheckError(f"Postgres connection failed ({mask_dsn(dsn)}): {exc}") from exc
    return f"connected (wallets={health['wallets']}, entries={health['ledger_entries']})"


def _check_redis(url: str) -> str:
    try:
        client = redis.Redis.from_url(url, socket_connect_timeout=5, socket_timeout=5)
        pong = client.ping()
    except redis.RedisError as exc:
        raise CheckError(f"Redis connection failed: {exc}") from exc
    return "ok" if pong else "no pong"


def main() -> int:
    logging.basicConfig(level=logging.INFO, format="[%(levelname)s] %(message)s")
    _load_env()

    try:
        db_url = _resolve_db_url()
        db_status = "skipped (memory mode)"
        if db_url:
            db_status = _check_postgres(db_url)

        redis_url = _resolve_redis_url()
        redis_status = "skipped (process-local counters)"
        if redis_url:
            redis_status = _check_redis(redis_url)
    except CheckError as exc:
        LOG.error("%s", exc)
        return 1

    LOG.info("Preflight succeeded: db=%s, redis=%s", db_status, redis_status)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
