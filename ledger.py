# -*- coding: utf-8 -*-
"""Append-only credit ledger with a per-account wallet cache."""

from __future__ import annotations

import json
import logging
import os
import threading
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, TypeVar

import psycopg
from psycopg.errors import UniqueViolation
from psycopg_pool import ConnectionPool

from core.constants import HISTORY_MAX_LIMIT, REFERENCE_PURCHASE
from core.db.postgres import create_connection_pool, normalize_dsn
from core.db.retry import with_db_retries
from db.postgres import LEDGER_SCHEMA, ensure_schema
from helpers.errors import (
    IdempotencyConflict,
    InsufficientBalance,
    PersistenceError,
    ValidationError,
)
from metrics import DB_RETRIES_TOTAL, LEDGER_MUTATIONS_TOTAL

log = logging.getLogger(__name__)

T = TypeVar("T")

_MAX_KEY_LENGTH = 255
_MAX_DESCRIPTION_LENGTH = 500


class EntryType(str, Enum):
    GRANT = "GRANT"
    DEBIT = "DEBIT"
    REFUND = "REFUND"
    ADJUSTMENT = "ADJUSTMENT"

    @property
    def sign(self) -> int:
        return -1 if self is EntryType.DEBIT else 1

    @classmethod
    def coerce(cls, value: Any) -> "EntryType":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value or "").strip().upper())
        except ValueError:
            raise ValidationError(f"unknown ledger entry type: {value!r}") from None


@dataclass(frozen=True)
class LedgerEntry:
    """One immutable balance-affecting event."""

    id: str
    account_id: str
    type: EntryType
    amount: int
    balance_after: int
    description: str
    reference_type: Optional[str]
    reference_id: Optional[str]
    metadata: Dict[str, Any]
    idempotency_key: str
    created_at: datetime

    @property
    def signed_amount(self) -> int:
        return self.type.sign * self.amount


@dataclass
class Wallet:
    """Balance cache and running aggregates of one account."""

    account_id: str
    balance: int = 0
    total_granted: int = 0
    total_spent: int = 0
    total_purchased: int = 0
    total_refunded: int = 0
    total_adjusted: int = 0
    last_credit_at: Optional[datetime] = None
    last_debit_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def as_dict(self) -> Dict[str, Any]:
        return {
            "balance": self.balance,
            "totalGranted": self.total_granted,
            "totalSpent": self.total_spent,
            "totalPurchased": self.total_purchased,
        }


@dataclass
class MutationResult:
    """Outcome of :meth:`LedgerStorage.mutate`.

    ``already_processed`` marks an idempotent hit: the key was committed
    earlier and the stored entry is reported instead of a new one.
    """

    ledger_entry_id: str
    new_balance: int
    old_balance: int
    already_processed: bool = False
    entry: Optional[LedgerEntry] = None


@dataclass
class BalanceRecalcResult:
    """Result of recalculating a wallet balance from the ledger."""

    account_id: str
    previous: int
    calculated: int
    updated: bool


def _aggregate_column(entry_type: EntryType, reference_type: Optional[str]) -> str:
    if entry_type is EntryType.DEBIT:
        return "total_spent"
    if entry_type is EntryType.REFUND:
        return "total_refunded"
    if entry_type is EntryType.ADJUSTMENT:
        return "total_adjusted"
    if reference_type == REFERENCE_PURCHASE:
        return "total_purchased"
    return "total_granted"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _LedgerHelpers:
    """Utility helpers shared by ledger backends."""

    @staticmethod
    def _json_meta(meta: Optional[Dict[str, Any]]) -> Optional[str]:
        if not meta:
            return None
        return json.dumps(meta, ensure_ascii=False, sort_keys=True, default=str)

    @staticmethod
    def _new_entry_id() -> str:
        return str(uuid.uuid4())

    @staticmethod
    def _validate_mutation(
        account_id: Any,
        entry_type: Any,
        amount: Any,
        description: Any,
        idempotency_key: Any,
    ) -> tuple[str, EntryType, int, str, str]:
        account = str(account_id or "").strip()
        if not account:
            raise ValidationError("account_id is required")
        kind = EntryType.coerce(entry_type)
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise ValidationError(f"amount must be an integer, got {type(amount).__name__}")
        if amount <= 0:
            raise ValidationError(f"amount must be positive, got {amount}")
        key = str(idempotency_key or "").strip()
        if not key:
            raise ValidationError("idempotency_key is required")
        if len(key) > _MAX_KEY_LENGTH:
            raise ValidationError("idempotency_key is too long")
        text = str(description or "").strip()
        if len(text) > _MAX_DESCRIPTION_LENGTH:
            raise ValidationError("description is too long")
        return account, kind, amount, text, key

    @staticmethod
    def _check_owner(entry: LedgerEntry, account_id: str) -> None:
        if entry.account_id != account_id:
            raise IdempotencyConflict(
                entry.idempotency_key, account_id=account_id, owner_id=entry.account_id
            )

    @staticmethod
    def _log_operation(
        entry: LedgerEntry,
        old_balance: int,
    ) -> None:
        LEDGER_MUTATIONS_TOTAL.labels(type=entry.type.value, result="applied").inc()
        log.info(
            "ledger.mutate.applied account=%s type=%s key=%s amount=%s ref=%s:%s old=%s new=%s",
            entry.account_id,
            entry.type.value,
            entry.idempotency_key,
            entry.amount,
            entry.reference_type,
            entry.reference_id,
            old_balance,
            entry.balance_after,
        )

    @staticmethod
    def _log_duplicate(entry: LedgerEntry) -> None:
        LEDGER_MUTATIONS_TOTAL.labels(type=entry.type.value, result="already_processed").inc()
        log.info(
            "ledger.mutate.already_processed account=%s key=%s entry=%s",
            entry.account_id,
            entry.idempotency_key,
            entry.id,
        )


_ENTRY_COLUMNS = (
    "id, account_id, type, amount, balance_after, description, reference_type, "
    "reference_id, metadata, idempotency_key, created_at"
)

_WALLET_COLUMNS = (
    "account_id, balance, total_granted, total_spent, total_purchased, total_refunded, "
    "total_adjusted, last_credit_at, last_debit_at, created_at, updated_at"
)


def _entry_from_row(row: Sequence[Any]) -> LedgerEntry:
    metadata = row[8]
    if isinstance(metadata, (str, bytes)):
        metadata = json.loads(metadata)
    return LedgerEntry(
        id=str(row[0]),
        account_id=str(row[1]),
        type=EntryType.coerce(row[2]),
        amount=int(row[3]),
        balance_after=int(row[4]),
        description=row[5] or "",
        reference_type=row[6],
        reference_id=row[7],
        metadata=dict(metadata or {}),
        idempotency_key=str(row[9]),
        created_at=row[10],
    )


def _wallet_from_row(row: Sequence[Any]) -> Wallet:
    return Wallet(
        account_id=str(row[0]),
        balance=int(row[1]),
        total_granted=int(row[2]),
        total_spent=int(row[3]),
        total_purchased=int(row[4]),
        total_refunded=int(row[5]),
        total_adjusted=int(row[6]),
        last_credit_at=row[7],
        last_debit_at=row[8],
        created_at=row[9],
        updated_at=row[10],
    )


class _PostgresLedgerStorage(_LedgerHelpers):
    """Ledger storage backed by PostgreSQL with row-locked wallet updates."""

    def __init__(self, dsn: str, *, pool: Optional[ConnectionPool] = None):
        if not dsn:
            raise RuntimeError("DATABASE_URL is required for ledger storage")
        self._dsn = normalize_dsn(dsn)
        self.log = log
        self._pool: Optional[ConnectionPool] = pool
        self._pool_lock = threading.RLock()
        self._prepared = False
        self._default_retries = 3

    # ------------------------------------------------------------------
    #   Lifecycle helpers
    # ------------------------------------------------------------------
    def start(self) -> None:
        with self._pool_lock:
            if self._pool is None:
                self._pool = create_connection_pool(self._dsn, application_name="credits-ledger")
                self.log.info("ledger.pool.started")
            if self._prepared:
                return
            self._with_connection(
                lambda conn: ensure_schema(conn, LEDGER_SCHEMA), op="prepare"
            )
            self._prepared = True

    def stop(self) -> None:
        with self._pool_lock:
            pool = self._pool
            self._pool = None
            self._prepared = False
        if not pool:
            return
        try:
            pool.close()
        except Exception as exc:  # pragma: no cover - shutdown path
            self.log.warning("ledger.pool.close_failed", extra={"meta": {"error": str(exc)}})
        else:
            self.log.info("ledger.pool.closed")

    # ------------------------------------------------------------------
    #   Internal helpers
    # ------------------------------------------------------------------
    def _ensure_pool(self) -> ConnectionPool:
        if self._pool is None:
            self.start()
        if self._pool is None:
            raise RuntimeError("Postgres connection pool is not available")
        return self._pool

    def _with_connection(
        self,
        fn: Callable[[psycopg.Connection], T],
        *,
        op: str,
        retries: Optional[int] = None,
        **ctx: Any,
    ) -> T:
        attempts = max(int(retries or self._default_retries), 1)

        def run() -> T:
            pool = self._ensure_pool()
            with pool.connection() as conn:
                return fn(conn)

        try:
            return with_db_retries(
                run,
                attempts=attempts,
                logger=self.log,
                context={"op": op, **ctx},
                on_retry=lambda exc, attempt: DB_RETRIES_TOTAL.labels(op=op).inc(),
            )
        except psycopg.OperationalError as exc:
            raise PersistenceError(op, f"ledger operation {op} failed: {exc}") from exc

    @staticmethod
    def _ensure_wallet_row(cur: psycopg.Cursor[Any], account_id: str) -> None:
        cur.execute(
            "INSERT INTO credit_wallets (account_id) VALUES (%s) ON CONFLICT (account_id) DO NOTHING",
            (account_id,),
        )

    @staticmethod
    def _select_entry_by_key(cur: psycopg.Cursor[Any], key: str) -> Optional[LedgerEntry]:
        cur.execute(
            f"SELECT {_ENTRY_COLUMNS} FROM credit_ledger WHERE idempotency_key=%s",
            (key,),
        )
        row = cur.fetchone()
        return _entry_from_row(row) if row else None

    # ------------------------------------------------------------------
    #   Public API
    # ------------------------------------------------------------------
    def ping(self) -> bool:
        def operation(conn: psycopg.Connection) -> None:
            with conn.cursor() as cur:
                cur.execute("SELECT 1")
                cur.fetchone()

        try:
            self._with_connection(operation, op="ping", retries=1)
            return True
        except Exception:
            log.exception("ledger ping failed")
            return False

    def get_or_create_wallet(self, account_id: str) -> Wallet:
        def operation(conn: psycopg.Connection) -> Wallet:
            with conn.transaction():
                with conn.cursor() as cur:
                    self._ensure_wallet_row(cur, account_id)
                    cur.execute(
                        f"SELECT {_WALLET_COLUMNS} FROM credit_wallets WHERE account_id=%s",
                        (account_id,),
                    )
                    row = cur.fetchone()
                    if row is None:
                        raise PersistenceError("get_or_create_wallet", "wallet row vanished")
                    return _wallet_from_row(row)

        return self._with_connection(operation, op="get_or_create_wallet", account=account_id)

    def get_entry_by_key(self, idempotency_key: str) -> Optional[LedgerEntry]:
        def operation(conn: psycopg.Connection) -> Optional[LedgerEntry]:
            with conn.cursor() as cur:
                return self._select_entry_by_key(cur, idempotency_key)

        return self._with_connection(operation, op="get_entry_by_key", key=idempotency_key)

    def find_first_entry(
        self,
        account_id: str,
        reference_type: str,
        entry_type: Optional[EntryType] = None,
    ) -> Optional[LedgerEntry]:
        sql = f"SELECT {_ENTRY_COLUMNS} FROM credit_ledger WHERE account_id=%s AND reference_type=%s"
        params: List[Any] = [account_id, reference_type]
        if entry_type is not None:
            sql += " AND type=%s"
            params.append(EntryType.coerce(entry_type).value)
        sql += " ORDER BY created_at ASC LIMIT 1"

        def operation(conn: psycopg.Connection) -> Optional[LedgerEntry]:
            with conn.cursor() as cur:
                cur.execute(sql, tuple(params))
                row = cur.fetchone()
                return _entry_from_row(row) if row else None

        return self._with_connection(
            operation, op="find_first_entry", account=account_id, reference_type=reference_type
        )

    def list_entries(
        self,
        account_id: str,
        *,
        limit: int = 50,
        offset: int = 0,
        entry_type: Optional[EntryType] = None,
    ) -> List[LedgerEntry]:
        sql = f"SELECT {_ENTRY_COLUMNS} FROM credit_ledger WHERE account_id=%s"
        params: List[Any] = [account_id]
        if entry_type is not None:
            sql += " AND type=%s"
            params.append(EntryType.coerce(entry_type).value)
        sql += " ORDER BY created_at DESC LIMIT %s OFFSET %s"
        params.extend([limit, offset])

        def operation(conn: psycopg.Connection) -> List[LedgerEntry]:
            with conn.cursor() as cur:
                cur.execute(sql, tuple(params))
                return [_entry_from_row(row) for row in cur.fetchall()]

        return self._with_connection(operation, op="list_entries", account=account_id)

    def mutate(
        self,
        account_id: str,
        entry_type: EntryType,
        amount: int,
        description: str,
        reference_type: Optional[str],
        reference_id: Optional[str],
        metadata: Optional[Dict[str, Any]],
        idempotency_key: str,
    ) -> MutationResult:
        meta_json = self._json_meta(metadata)
        aggregate = _aggregate_column(entry_type, reference_type)
        stamp_column = "last_debit_at" if entry_type is EntryType.DEBIT else "last_credit_at"

        def operation(conn: psycopg.Connection) -> MutationResult:
            with conn.transaction():
                with conn.cursor() as cur:
                    self._ensure_wallet_row(cur, account_id)
                    cur.execute(
                        "SELECT balance FROM credit_wallets WHERE account_id=%s FOR UPDATE",
                        (account_id,),
                    )
                    row = cur.fetchone()
                    old_balance = int(row[0]) if row else 0

                    existing = self._select_entry_by_key(cur, idempotency_key)
                    if existing is not None:
                        self._check_owner(existing, account_id)
                        return MutationResult(
                            existing.id,
                            existing.balance_after,
                            old_balance,
                            already_processed=True,
                            entry=existing,
                        )

                    new_balance = old_balance + entry_type.sign * amount
                    if new_balance < 0:
                        raise InsufficientBalance(old_balance, amount)

                    entry = LedgerEntry(
                        id=self._new_entry_id(),
                        account_id=account_id,
                        type=entry_type,
                        amount=amount,
                        balance_after=new_balance,
                        description=description,
                        reference_type=reference_type,
                        reference_id=reference_id,
                        metadata=dict(metadata or {}),
                        idempotency_key=idempotency_key,
                        created_at=_utcnow(),
                    )
                    cur.execute(
                        f"""
                        INSERT INTO credit_ledger ({_ENTRY_COLUMNS})
                        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, COALESCE(%s::jsonb, '{{}}'::jsonb), %s, %s)
                        """,
                        (
                            entry.id,
                            account_id,
                            entry_type.value,
                            amount,
                            new_balance,
                            description,
                            reference_type,
                            reference_id,
                            meta_json,
                            idempotency_key,
                            entry.created_at,
                        ),
                    )
                    cur.execute(
                        f"""
                        UPDATE credit_wallets
                           SET balance = %s,
                               {aggregate} = {aggregate} + %s,
                               {stamp_column} = %s,
                               updated_at = %s
                         WHERE account_id = %s
                        """,
                        (new_balance, amount, entry.created_at, entry.created_at, account_id),
                    )
                    return MutationResult(entry.id, new_balance, old_balance, entry=entry)

        try:
            return self._with_connection(
                operation,
                op="mutate",
                account=account_id,
                key=idempotency_key,
                type=entry_type.value,
                amount=amount,
            )
        except UniqueViolation:
            # Lost the insert race for this key; the winner has committed.
            existing = self.get_entry_by_key(idempotency_key)
            if existing is None:
                raise PersistenceError("mutate", "idempotency key conflict without a committed entry")
            self._check_owner(existing, account_id)
            return MutationResult(
                existing.id,
                existing.balance_after,
                existing.balance_after,
                already_processed=True,
                entry=existing,
            )

    def recalc_wallet(self, account_id: str) -> BalanceRecalcResult:
        def operation(conn: psycopg.Connection) -> BalanceRecalcResult:
            with conn.transaction():
                with conn.cursor() as cur:
                    self._ensure_wallet_row(cur, account_id)
                    cur.execute(
                        "SELECT balance FROM credit_wallets WHERE account_id=%s FOR UPDATE",
                        (account_id,),
                    )
                    row = cur.fetchone()
                    previous = int(row[0]) if row else 0

                    cur.execute(
                        """
                        SELECT COALESCE(SUM(CASE WHEN type='DEBIT' THEN -amount ELSE amount END), 0)
                          FROM credit_ledger
                         WHERE account_id = %s
                        """,
                        (account_id,),
                    )
                    calc_row = cur.fetchone()
                    calculated = int(calc_row[0]) if calc_row else 0

                    updated = calculated != previous
                    if updated:
                        cur.execute(
                            "UPDATE credit_wallets SET balance = %s, updated_at = now() WHERE account_id = %s",
                            (calculated, account_id),
                        )
                    return BalanceRecalcResult(account_id, previous, calculated, updated)

        return self._with_connection(operation, op="recalc_wallet", account=account_id)


class _MemoryLedgerStorage(_LedgerHelpers):
    """In-memory ledger implementation for tests and single-process runs."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._wallets: Dict[str, Wallet] = {}
        self._entries: Dict[str, LedgerEntry] = {}
        self._by_key: Dict[str, str] = {}
        self._by_account: Dict[str, List[str]] = {}

    def _ensure_wallet(self, account_id: str) -> Wallet:
        wallet = self._wallets.get(account_id)
        if wallet is None:
            wallet = Wallet(account_id=account_id)
            self._wallets[account_id] = wallet
        return wallet

    def _account_entries(self, account_id: str) -> List[LedgerEntry]:
        return [self._entries[entry_id] for entry_id in self._by_account.get(account_id, [])]

    @staticmethod
    def _detached(entry: LedgerEntry) -> LedgerEntry:
        return replace(entry, metadata=dict(entry.metadata))

    def ping(self) -> bool:
        return True

    def start(self) -> None:
        return

    def stop(self) -> None:
        return

    def get_or_create_wallet(self, account_id: str) -> Wallet:
        with self._lock:
            return replace(self._ensure_wallet(account_id))

    def get_entry_by_key(self, idempotency_key: str) -> Optional[LedgerEntry]:
        with self._lock:
            entry_id = self._by_key.get(idempotency_key)
            return self._detached(self._entries[entry_id]) if entry_id else None

    def find_first_entry(
        self,
        account_id: str,
        reference_type: str,
        entry_type: Optional[EntryType] = None,
    ) -> Optional[LedgerEntry]:
        kind = EntryType.coerce(entry_type) if entry_type is not None else None
        with self._lock:
            for entry in self._account_entries(account_id):
                if entry.reference_type != reference_type:
                    continue
                if kind is not None and entry.type is not kind:
                    continue
                return self._detached(entry)
        return None

    def list_entries(
        self,
        account_id: str,
        *,
        limit: int = 50,
        offset: int = 0,
        entry_type: Optional[EntryType] = None,
    ) -> List[LedgerEntry]:
        kind = EntryType.coerce(entry_type) if entry_type is not None else None
        with self._lock:
            entries = [
                self._detached(entry)
                for entry in reversed(self._account_entries(account_id))
                if kind is None or entry.type is kind
            ]
        return entries[offset : offset + limit]

    def mutate(
        self,
        account_id: str,
        entry_type: EntryType,
        amount: int,
        description: str,
        reference_type: Optional[str],
        reference_id: Optional[str],
        metadata: Optional[Dict[str, Any]],
        idempotency_key: str,
    ) -> MutationResult:
        with self._lock:
            wallet = self._ensure_wallet(account_id)
            old_balance = wallet.balance

            existing_id = self._by_key.get(idempotency_key)
            if existing_id is not None:
                existing = self._entries[existing_id]
                self._check_owner(existing, account_id)
                return MutationResult(
                    existing.id,
                    existing.balance_after,
                    old_balance,
                    already_processed=True,
                    entry=self._detached(existing),
                )

            new_balance = old_balance + entry_type.sign * amount
            if new_balance < 0:
                raise InsufficientBalance(old_balance, amount)

            now = _utcnow()
            entry = LedgerEntry(
                id=self._new_entry_id(),
                account_id=account_id,
                type=entry_type,
                amount=amount,
                balance_after=new_balance,
                description=description,
                reference_type=reference_type,
                reference_id=reference_id,
                metadata=dict(metadata or {}),
                idempotency_key=idempotency_key,
                created_at=now,
            )
            self._entries[entry.id] = entry
            self._by_key[idempotency_key] = entry.id
            self._by_account.setdefault(account_id, []).append(entry.id)

            aggregate = _aggregate_column(entry_type, reference_type)
            setattr(wallet, aggregate, getattr(wallet, aggregate) + amount)
            wallet.balance = new_balance
            if entry_type is EntryType.DEBIT:
                wallet.last_debit_at = now
            else:
                wallet.last_credit_at = now
            wallet.updated_at = now

        return MutationResult(entry.id, new_balance, old_balance, entry=self._detached(entry))

    def recalc_wallet(self, account_id: str) -> BalanceRecalcResult:
        with self._lock:
            wallet = self._ensure_wallet(account_id)
            previous = wallet.balance
            calculated = sum(entry.signed_amount for entry in self._account_entries(account_id))
            updated = calculated != previous
            if updated:
                wallet.balance = calculated
                wallet.updated_at = _utcnow()
        return BalanceRecalcResult(account_id, previous, calculated, updated)


class LedgerStorage(_LedgerHelpers):
    """Facade that selects the ledger backend and validates every mutation."""

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
            forbid_memory = os.getenv("FORBID_MEMORY_DB", "").lower() in {"1", "true", "yes", "on"}
            if forbid_memory:
                raise RuntimeError("Memory ledger backend is disabled by configuration")
            self._impl: Any = _MemoryLedgerStorage()
            self._started = True
        elif backend == "postgres":
            if not dsn:
                raise RuntimeError("DATABASE_URL must be set for persistent ledger storage")
            self._impl = _PostgresLedgerStorage(dsn, pool=pool)
            self._started = False
        else:
            raise RuntimeError(f"Unsupported ledger backend: {backend}")

    @classmethod
    def from_settings(cls, config: Any) -> "LedgerStorage":
        return cls(config.DATABASE_URL, backend=config.LEDGER_BACKEND_EFFECTIVE)

    def start(self) -> None:
        self._impl.start()
        self._started = True

    def stop(self) -> None:
        try:
            self._impl.stop()
        finally:
            self._started = False

    def _ready(self) -> Any:
        if not self._started:
            self.start()
        return self._impl

    def mutate(
        self,
        account_id: str,
        entry_type: Any,
        amount: int,
        description: str = "",
        reference_type: Optional[str] = None,
        reference_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        *,
        idempotency_key: str,
    ) -> MutationResult:
        """Append one ledger entry and update the wallet in the same transaction.

        Raises :class:`ValidationError` for malformed input and
        :class:`InsufficientBalance` when a debit would overdraw the wallet.
        A repeated ``idempotency_key`` returns the committed entry with
        ``already_processed=True``.
        """

        account, kind, amount, text, key = self._validate_mutation(
            account_id, entry_type, amount, description, idempotency_key
        )
        try:
            result = self._ready().mutate(
                account, kind, amount, text, reference_type, reference_id, metadata, key
            )
        except InsufficientBalance:
            LEDGER_MUTATIONS_TOTAL.labels(type=kind.value, result="insufficient_balance").inc()
            log.info(
                "ledger.mutate.rejected account=%s type=%s key=%s amount=%s",
                account,
                kind.value,
                key,
                amount,
            )
            raise
        if result.entry is not None:
            if result.already_processed:
                self._log_duplicate(result.entry)
            else:
                self._log_operation(result.entry, result.old_balance)
        return result

    def get_wallet(self, account_id: str) -> Wallet:
        return self.get_or_create_wallet(account_id)

    def has_credits(self, account_id: str, amount: int) -> bool:
        return self.get_or_create_wallet(account_id).balance >= int(amount)

    def list_entries(
        self,
        account_id: str,
        *,
        limit: int = 50,
        offset: int = 0,
        entry_type: Optional[Any] = None,
    ) -> List[LedgerEntry]:
        limit = max(1, min(int(limit), HISTORY_MAX_LIMIT))
        offset = max(0, int(offset))
        kind = EntryType.coerce(entry_type) if entry_type else None
        return self._ready().list_entries(account_id, limit=limit, offset=offset, entry_type=kind)

    def recalc_wallet(self, account_id: str) -> BalanceRecalcResult:
        result = self._ready().recalc_wallet(account_id)
        if result.updated:
            log.warning(
                "ledger.recalc.drift account=%s previous=%s calculated=%s",
                account_id,
                result.previous,
                result.calculated,
            )
        return result

    def __getattr__(self, name: str) -> Any:
        if name.startswith("__") or name in {"_impl", "_started"}:
            raise AttributeError(name)
        return getattr(self._ready(), name)


__all__ = [
    "BalanceRecalcResult",
    "EntryType",
    "IdempotencyConflict",
    "InsufficientBalance",
    "LedgerEntry",
    "LedgerStorage",
    "MutationResult",
    "PersistenceError",
    "ValidationError",
    "Wallet",
]
