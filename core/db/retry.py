"""Retry helpers for transient PostgreSQL errors."""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, Optional

import psycopg
from psycopg import errors as pg_errors

RETRYABLE_MESSAGES = (
    "SSL connection has been closed unexpectedly",
    "Connection reset by peer",
    "server closed the connection unexpectedly",
    "terminating connection due to administrator command",
    "connection already closed",
    "timeout expired",
)

# Lock contention on a wallet row; the caller replays the whole transaction.
RETRYABLE_ERRORS = (
    pg_errors.SerializationFailure,
    pg_errors.DeadlockDetected,
    pg_errors.LockNotAvailable,
)


def is_retryable_db_error(exc: BaseException) -> bool:
    if isinstance(exc, RETRYABLE_ERRORS):
        return True
    message = str(exc)
    return isinstance(exc, psycopg.OperationalError) and any(
        fragment in message for fragment in RETRYABLE_MESSAGES
    )


def with_db_retries(
    fn: Callable[[], Any],
    *,
    attempts: int = 3,
    backoff: float = 0.2,
    logger: Optional[logging.Logger] = None,
    context: Optional[Dict[str, Any]] = None,
    on_retry: Optional[Callable[[BaseException, int], None]] = None,
) -> Any:
    """Execute ``fn`` retrying on transient PostgreSQL failures."""

    context_meta: Dict[str, Any] = dict(context or {})
    attempts = max(1, int(attempts))
    for attempt in range(1, attempts + 1):
        try:
            result = fn()
            if logger and attempt > 1:
                logger.info("ledger.db.retry_ok", extra={"meta": {"attempt": attempt, **context_meta}})
            return result
        except Exception as exc:  # noqa: BLE001 - classified below, re-raised when fatal
            if not is_retryable_db_error(exc) or attempt == attempts:
                if logger and isinstance(exc, psycopg.Error):
                    logger.error(
                        "ledger.db.giveup",
                        extra={"meta": {"err": str(exc), "attempt": attempt, **context_meta}},
                    )
                raise
            if logger:
                logger.warning(
                    "ledger.db.retry",
                    extra={"meta": {"err": str(exc), "attempt": attempt, **context_meta}},
                )
            if on_retry is not None:
                on_retry(exc, attempt)
            time.sleep(backoff * attempt)
    raise AssertionError("unreachable")  # pragma: no cover


__all__ = ["RETRYABLE_ERRORS", "RETRYABLE_MESSAGES", "is_retryable_db_error", "with_db_retries"]
