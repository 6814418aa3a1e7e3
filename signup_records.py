"""Per-account signup risk records and verification bookkeeping."""

from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, TypeVar

import psycopg
from psycopg_pool import ConnectionPool

from abuse import SUSPICIOUS_THRESHOLD, AbuseCheckResult, CreditTier, SignupSignals
from core.db.postgres import create_connection_pool, normalize_dsn
from core.db.retry import with_db_retries
from db.postgres import SIGNUP_RISK_SCHEMA, ensure_schema
from helpers.errors import PersistenceError
from logging_utils import build_log_extra
from metrics import DB_RETRIES_TOTAL

log = logging.getLogger("signup-records")

T = TypeVar("T")


class VerificationKind(str, Enum):
    PHONE = "phone"
    CAPTCHA = "captcha"
    IDENTITY = "identity"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SignupRiskRecord:
    account_id: str
    ip_address: Optional[str] = None
    device_fingerprint: Optional[str] = None
    user_agent: Optional[str] = None
    email_domain: Optional[str] = None
    risk_score: int = 0
    credit_tier: CreditTier = CreditTier.FULL
    suspicion_reasons: List[str] = field(default_factory=list)
    is_disposable_email: bool = False
    phone_verified: bool = False
    captcha_completed: bool = False
    identity_verified: bool = False
    behavior_score: int = 50
    trial_credits_granted: int = 0
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @property
    def is_suspicious(self) -> bool:
        return self.risk_score >= SUSPICIOUS_THRESHOLD

    @classmethod
    def from_check(
        cls,
        account_id: str,
        signals: SignupSignals,
        result: AbuseCheckResult,
        *,
        now: Optional[datetime] = None,
    ) -> "SignupRiskRecord":
        stamp = now or _utcnow()
        return cls(
            account_id=account_id,
            ip_address=signals.ip_address,
            device_fingerprint=signals.device_fingerprint,
            user_agent=signals.user_agent,
            email_domain=result.email_domain or None,
            risk_score=result.risk_score,
            credit_tier=result.credit_tier,
            suspicion_reasons=list(result.suspicion_reasons),
            is_disposable_email=result.is_disposable_email,
            captcha_completed=signals.captcha_completed,
            identity_verified=bool(signals.identity_proof),
            created_at=stamp,
            updated_at=stamp,
        )

    def abuse_result(self) -> AbuseCheckResult:
        """Rebuild the gating view of the stored decision."""

        return AbuseCheckResult(
            allowed=self.credit_tier is not CreditTier.BLOCKED,
            credit_tier=self.credit_tier,
            risk_score=self.risk_score,
            is_suspicious=self.is_suspicious,
            suspicion_reasons=list(self.suspicion_reasons),
            email_domain=self.email_domain or "",
            is_disposable_email=self.is_disposable_email,
        )


def apply_verification(
    record: SignupRiskRecord,
    kind: VerificationKind,
    *,
    min_behavior_score: int,
    now: Optional[datetime] = None,
) -> SignupRiskRecord:
    """Return a copy of ``record`` with the verification applied.

    A throttled account moves to the full tier once its phone is verified,
    unless its behavior score has dropped below ``min_behavior_score``.
    Blocked accounts are never upgraded here.
    """

    kind = VerificationKind(kind)
    updated = replace(record, suspicion_reasons=list(record.suspicion_reasons))
    if kind is VerificationKind.PHONE:
        updated.phone_verified = True
    elif kind is VerificationKind.CAPTCHA:
        updated.captcha_completed = True
    else:
        updated.identity_verified = True

    if (
        updated.phone_verified
        and updated.credit_tier is CreditTier.THROTTLED
        and updated.behavior_score >= min_behavior_score
    ):
        updated.credit_tier = CreditTier.FULL
        log.info(
            "signup.tier_upgraded",
            extra=build_log_extra(account_id=record.account_id, behavior_score=updated.behavior_score),
        )
    updated.updated_at = now or _utcnow()
    return updated


def _empty_stats() -> Dict[str, Any]:
    return {
        "totalSignups": 0,
        "suspiciousSignups": 0,
        "blockedSignups": 0,
        "throttledSignups": 0,
        "phoneVerifiedSignups": 0,
        "disposableEmailAttempts": 0,
        "verificationRate": 0,
    }


def _finish_stats(stats: Dict[str, Any]) -> Dict[str, Any]:
    total = stats["totalSignups"]
    stats["verificationRate"] = round(stats["phoneVerifiedSignups"] / total * 100) if total else 0
    return stats


class _MemorySignupRecordStorage:
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._records: Dict[str, SignupRiskRecord] = {}

    def start(self) -> None:
        return

    def stop(self) -> None:
        return

    def create(self, record: SignupRiskRecord) -> bool:
        with self._lock:
            if record.account_id in self._records:
                return False
            self._records[record.account_id] = replace(record)
            return True

    def get(self, account_id: str) -> Optional[SignupRiskRecord]:
        with self._lock:
            record = self._records.get(account_id)
            return replace(record) if record else None

    def save(self, record: SignupRiskRecord) -> None:
        with self._lock:
            if record.account_id not in self._records:
                raise KeyError(record.account_id)
            self._records[record.account_id] = replace(record)

    def stats(self) -> Dict[str, Any]:
        stats = _empty_stats()
        with self._lock:
            records = list(self._records.values())
        for record in records:
            stats["totalSignups"] += 1
            stats["suspiciousSignups"] += int(record.is_suspicious)
            stats["blockedSignups"] += int(record.credit_tier is CreditTier.BLOCKED)
            stats["throttledSignups"] += int(record.credit_tier is CreditTier.THROTTLED)
            stats["phoneVerifiedSignups"] += int(record.phone_verified)
            stats["disposableEmailAttempts"] += int(record.is_disposable_email)
        return _finish_stats(stats)


_RECORD_COLUMNS = (
    "account_id, ip_address, device_fingerprint, user_agent, email_domain, risk_score, "
    "credit_tier, suspicion_reasons, is_disposable_email, phone_verified, captcha_completed, "
    "identity_verified, behavior_score, trial_credits_granted, created_at, updated_at"
)


def _record_from_row(row: Sequence[Any]) -> SignupRiskRecord:
    reasons = row[7]
    if isinstance(reasons, (str, bytes)):
        reasons = json.loads(reasons)
    return SignupRiskRecord(
        account_id=str(row[0]),
        ip_address=row[1],
        device_fingerprint=row[2],
        user_agent=row[3],
        email_domain=row[4],
        risk_score=int(row[5]),
        credit_tier=CreditTier(row[6]),
        suspicion_reasons=list(reasons or []),
        is_disposable_email=bool(row[8]),
        phone_verified=bool(row[9]),
        captcha_completed=bool(row[10]),
        identity_verified=bool(row[11]),
        behavior_score=int(row[12]),
        trial_credits_granted=int(row[13]),
        created_at=row[14],
        updated_at=row[15],
    )


class _PostgresSignupRecordStorage:
    def __init__(self, dsn: str, *, pool: Optional[ConnectionPool] = None) -> None:
        if not dsn:
            raise RuntimeError("DATABASE_URL is required for signup record storage")
        self._dsn = normalize_dsn(dsn)
        self._pool: Optional[ConnectionPool] = pool
        self._pool_lock = threading.RLock()
        self._prepared = False

    def start(self) -> None:
        with self._pool_lock:
            if self._pool is None:
                self._pool = create_connection_pool(self._dsn, application_name="credits-signup-risk")
            if self._prepared:
                return
            self._with_connection(lambda conn: ensure_schema(conn, SIGNUP_RISK_SCHEMA), op="prepare")
            self._prepared = True

    def stop(self) -> None:
        with self._pool_lock:
            pool = self._pool
            self._pool = None
            self._prepared = False
        if pool is not None:
            pool.close()

    def _with_connection(self, fn: Callable[[psycopg.Connection], T], *, op: str, **ctx: Any) -> T:
        def run() -> T:
            if self._pool is None:
                self.start()
            assert self._pool is not None
            with self._pool.connection() as conn:
                return fn(conn)

        try:
            return with_db_retries(
                run,
                logger=log,
                context={"op": op, **ctx},
                on_retry=lambda exc, attempt: DB_RETRIES_TOTAL.labels(op=f"signup_{op}").inc(),
            )
        except psycopg.OperationalError as exc:
            raise PersistenceError(op, f"signup record operation {op} failed: {exc}") from exc

    def create(self, record: SignupRiskRecord) -> bool:
        def operation(conn: psycopg.Connection) -> bool:
            with conn.transaction():
                with conn.cursor() as cur:
                    cur.execute(
                        f"""
                        INSERT INTO signup_risk_records ({_RECORD_COLUMNS})
                        VALUES (%s, %s, %s, %s, %s, %s, %s, %s::jsonb, %s, %s, %s, %s, %s, %s, %s, %s)
                        ON CONFLICT (account_id) DO NOTHING
                        """,
                        (
                            record.account_id,
                            record.ip_address,
                            record.device_fingerprint,
                            record.user_agent,
                            record.email_domain,
                            record.risk_score,
                            record.credit_tier.value,
                            json.dumps(record.suspicion_reasons, ensure_ascii=False),
                            record.is_disposable_email,
                            record.phone_verified,
                            record.captcha_completed,
                            record.identity_verified,
                            record.behavior_score,
                            record.trial_credits_granted,
                            record.created_at,
                            record.updated_at,
                        ),
                    )
                    return cur.rowcount == 1

        return self._with_connection(operation, op="create", account=record.account_id)

    def get(self, account_id: str) -> Optional[SignupRiskRecord]:
        def operation(conn: psycopg.Connection) -> Optional[SignupRiskRecord]:
            with conn.cursor() as cur:
                cur.execute(
                    f"SELECT {_RECORD_COLUMNS} FROM signup_risk_records WHERE account_id=%s",
                    (account_id,),
                )
                row = cur.fetchone()
                return _record_from_row(row) if row else None

        return self._with_connection(operation, op="get", account=account_id)

    def save(self, record: SignupRiskRecord) -> None:
        def operation(conn: psycopg.Connection) -> int:
            with conn.transaction():
                with conn.cursor() as cur:
                    cur.execute(
                        """
                        UPDATE signup_risk_records
                           SET credit_tier = %s,
                               phone_verified = %s,
                               captcha_completed = %s,
                               identity_verified = %s,
                               behavior_score = %s,
                               trial_credits_granted = %s,
                               updated_at = %s
                         WHERE account_id = %s
                        """,
                        (
                            record.credit_tier.value,
                            record.phone_verified,
                            record.captcha_completed,
                            record.identity_verified,
                            record.behavior_score,
                            record.trial_credits_granted,
                            record.updated_at,
                            record.account_id,
                        ),
                    )
                    return cur.rowcount

        if not self._with_connection(operation, op="save", account=record.account_id):
            raise KeyError(record.account_id)

    def stats(self) -> Dict[str, Any]:
        def operation(conn: psycopg.Connection) -> Dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT COUNT(*),
                           COUNT(*) FILTER (WHERE risk_score >= %s),
                           COUNT(*) FILTER (WHERE credit_tier = 'blocked'),
                           COUNT(*) FILTER (WHERE credit_tier = 'throttled'),
                           COUNT(*) FILTER (WHERE phone_verified),
                           COUNT(*) FILTER (WHERE is_disposable_email)
                      FROM signup_risk_records
                    """,
                    (SUSPICIOUS_THRESHOLD,),
                )
                row = cur.fetchone() or (0, 0, 0, 0, 0, 0)
            stats = _empty_stats()
            for key, value in zip(
                (
                    "totalSignups",
                    "suspiciousSignups",
                    "blockedSignups",
                    "throttledSignups",
                    "phoneVerifiedSignups",
                    "disposableEmailAttempts",
                ),
                row,
            ):
                stats[key] = int(value or 0)
            return _finish_stats(stats)

        return self._with_connection(operation, op="stats")


class SignupRiskRecordStore:
    """Facade that selects the signup record backend."""

    def __init__(
        self,
        dsn: Optional[str] = None,
        *,
        backend: Optional[str] = None,
        pool: Optional[ConnectionPool] = None,
    ) -> None:
        backend = (backend or ("postgres" if dsn else "memory")).lower()
        self.backend = backend
        if backend == "memory":
            if os.getenv("FORBID_MEMORY_DB", "").lower() in {"1", "true", "yes", "on"}:
                raise RuntimeError("Memory signup record backend is disabled by configuration")
            self._impl: Any = _MemorySignupRecordStorage()
        elif backend == "postgres":
            if not dsn:
                raise RuntimeError("DATABASE_URL must be set for persistent signup records")
            self._impl = _PostgresSignupRecordStorage(dsn, pool=pool)
        else:
            raise RuntimeError(f"Unsupported signup record backend: {backend}")

    @classmethod
    def from_settings(cls, config: Any) -> "SignupRiskRecordStore":
        return cls(config.DATABASE_URL, backend=config.LEDGER_BACKEND_EFFECTIVE)

    def start(self) -> None:
        self._impl.start()

    def stop(self) -> None:
        self._impl.stop()

    def create(self, record: SignupRiskRecord) -> bool:
        created = self._impl.create(record)
        if created:
            log.info(
                "signup.record_created",
                extra=build_log_extra(
                    account_id=record.account_id,
                    tier=record.credit_tier.value,
                    risk_score=record.risk_score,
                ),
            )
        return created

    def get(self, account_id: str) -> Optional[SignupRiskRecord]:
        return self._impl.get(account_id)

    def save(self, record: SignupRiskRecord) -> None:
        self._impl.save(record)

    def stats(self) -> Dict[str, Any]:
        return self._impl.stats()


__all__ = [
    "SignupRiskRecord",
    "SignupRiskRecordStore",
    "VerificationKind",
    "apply_verification",
]
