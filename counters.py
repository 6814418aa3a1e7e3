"""TTL-bounded counters backing the abuse heuristics.

Fingerprint/IP reuse counts and subnet velocity buckets are advisory state.
A process-local store serves single-instance deployments and tests; the Redis
store is shared between instances. Both expose the same interface so the
risk scorer does not care which one it talks to.
"""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Iterator, Optional, Tuple

import redis

from metrics import COUNTER_PURGED_TOTAL

_logger = logging.getLogger("counters")


class CounterStore(ABC):
    """Integer counters with per-key expiry."""

    @abstractmethod
    def get(self, key: str) -> int:
        """Return the current value, ``0`` for missing or expired keys."""

    @abstractmethod
    def increment(self, key: str, *, ttl: int, amount: int = 1) -> int:
        """Add ``amount`` and (re)set the expiry to ``ttl`` seconds."""

    @abstractmethod
    def expire(self, key: str, ttl: int) -> bool:
        ...

    @abstractmethod
    def delete(self, key: str) -> None:
        ...

    @abstractmethod
    def items(self, prefix: str = "") -> Iterator[Tuple[str, int]]:
        """Yield live ``(key, value)`` pairs whose key starts with ``prefix``."""

    def purge_expired(self) -> int:
        return 0


class MemoryCounterStore(CounterStore):
    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._store: Dict[str, Tuple[float, int]] = {}

    def _live(self, key: str, now: float) -> Optional[Tuple[float, int]]:
        entry = self._store.get(key)
        if not entry:
            return None
        if entry[0] <= now:
            self._store.pop(key, None)
            return None
        return entry

    def get(self, key: str) -> int:
        with self._lock:
            entry = self._live(key, self._clock())
            return entry[1] if entry else 0

    def increment(self, key: str, *, ttl: int, amount: int = 1) -> int:
        now = self._clock()
        with self._lock:
            entry = self._live(key, now)
            value = (entry[1] if entry else 0) + int(amount)
            self._store[key] = (now + max(int(ttl), 1), value)
            return value

    def expire(self, key: str, ttl: int) -> bool:
        now = self._clock()
        with self._lock:
            entry = self._live(key, now)
            if entry is None:
                return False
            self._store[key] = (now + max(int(ttl), 1), entry[1])
            return True

    def delete(self, key: str) -> None:
        with self._lock:
            self._store.pop(key, None)

    def items(self, prefix: str = "") -> Iterator[Tuple[str, int]]:
        now = self._clock()
        with self._lock:
            snapshot = [
                (key, value)
                for key, (expires_at, value) in self._store.items()
                if key.startswith(prefix) and expires_at > now
            ]
        return iter(snapshot)

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [key for key, (expires_at, _) in self._store.items() if expires_at <= now]
            for key in expired:
                del self._store[key]
        if expired:
            COUNTER_PURGED_TOTAL.inc(len(expired))
            _logger.info("counters.purged | removed=%s", len(expired))
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._store)


class RedisCounterStore(CounterStore):
    """Counters stored as Redis integers; Redis enforces the expiry itself."""

    def __init__(self, client: "redis.Redis", *, prefix: str = "credits") -> None:
        self._client = client
        self._prefix = prefix.rstrip(":")

    def _key(self, key: str) -> str:
        return f"{self._prefix}:counter:{key}"

    def _strip(self, raw: Any) -> str:
        text = raw.decode("utf-8") if isinstance(raw, bytes) else str(raw)
        return text[len(self._key("")) :]

    def get(self, key: str) -> int:
        try:
            raw = self._client.get(self._key(key))
        except redis.RedisError as exc:
            _logger.warning("counters.redis.get_failed | key=%s err=%s", key, exc)
            return 0
        return int(raw) if raw is not None else 0

    def increment(self, key: str, *, ttl: int, amount: int = 1) -> int:
        full_key = self._key(key)
        try:
            pipe = self._client.pipeline(transaction=True)
            pipe.incrby(full_key, int(amount))
            pipe.expire(full_key, max(int(ttl), 1))
            value, _ = pipe.execute()
        except redis.RedisError as exc:
            _logger.warning("counters.redis.incr_failed | key=%s err=%s", key, exc)
            return 0
        return int(value)

    def expire(self, key: str, ttl: int) -> bool:
        try:
            return bool(self._client.expire(self._key(key), max(int(ttl), 1)))
        except redis.RedisError as exc:
            _logger.warning("counters.redis.expire_failed | key=%s err=%s", key, exc)
            return False

    def delete(self, key: str) -> None:
        try:
            self._client.delete(self._key(key))
        except redis.RedisError as exc:
            _logger.warning("counters.redis.delete_failed | key=%s err=%s", key, exc)

    def items(self, prefix: str = "") -> Iterator[Tuple[str, int]]:
        try:
            keys = list(self._client.scan_iter(match=f"{self._key(prefix)}*", count=500))
            if not keys:
                return iter(())
            values = self._client.mget(keys)
        except redis.RedisError as exc:
            _logger.warning("counters.redis.scan_failed | prefix=%s err=%s", prefix, exc)
            return iter(())
        pairs = [
            (self._strip(raw_key), int(value))
            for raw_key, value in zip(keys, values)
            if value is not None
        ]
        return iter(pairs)


class PeriodicPurger:
    """Background thread calling ``store.purge_expired()`` on an interval."""

    def __init__(self, store: CounterStore, interval: float) -> None:
        self._store = store
        self._interval = max(float(interval), 1.0)
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def _run(self) -> None:
        while not self._stop.wait(self._interval):
            try:
                self._store.purge_expired()
            except Exception:
                _logger.exception("counters.purge_failed")

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="counter-purge", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        thread = self._thread
        self._thread = None
        if thread is not None:
            thread.join(timeout=timeout)


def create_counter_store(config: Any) -> CounterStore:
    """Build the counter store selected by ``COUNTER_BACKEND``."""

    if config.COUNTER_BACKEND_EFFECTIVE == "redis":
        client = redis.from_url(config.REDIS_URL)
        _logger.info("counters.backend | backend=redis prefix=%s", config.REDIS_PREFIX)
        return RedisCounterStore(client, prefix=config.REDIS_PREFIX)
    _logger.warning("counters.backend | backend=memory (process-local, not shared between instances)")
    return MemoryCounterStore()


__all__ = [
    "CounterStore",
    "MemoryCounterStore",
    "PeriodicPurger",
    "RedisCounterStore",
    "create_counter_store",
]
