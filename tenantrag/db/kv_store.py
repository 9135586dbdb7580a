# tenantrag/db/kv_store.py

"""
Counter and cache store.

Quota counters, tenant/API-key caches and session history all live in
one key-value backend with per-key expiry:

• RedisStore - shared across processes (REDIS_URL)
• MemoryStore - single-process fallback and test double

Every operation is individually atomic. Backend failures surface as
StoreUnavailableError so callers can decide to fail open.
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, Optional, Tuple

import redis

from tenantrag.config import MEMORY_STORE_SWEEP_INTERVAL, REDIS_URL
from tenantrag.errors import StoreUnavailableError

logger = logging.getLogger(__name__)


class KeyValueStore(ABC):
    """Minimal interface shared by both backends."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        pass

    @abstractmethod
    def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        pass

    @abstractmethod
    def delete(self, key: str) -> None:
        pass

    @abstractmethod
    def incr(self, key: str) -> int:
        pass

    @abstractmethod
    def expire(self, key: str, seconds: int) -> None:
        pass

    @abstractmethod
    def ping(self) -> bool:
        pass

    def incr_with_expiry(self, key: str, seconds: int) -> int:
        """
        Increment a counter, attaching an expiry on first use.

        The expiry is only set when the post-increment value is 1, so
        concurrent increments never extend a live bucket.
        """

        value = self.incr(key)

        if value == 1:
            self.expire(key, seconds)

        return value


class RedisStore(KeyValueStore):

    def __init__(self, url: str, client: Optional[redis.Redis] = None):

        self._client = client or redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
        )

        logger.info("Redis store initialized")

    def _call(self, op: str, fn: Callable, *args, **kwargs):

        try:
            return fn(*args, **kwargs)

        except redis.RedisError as e:

            logger.debug(
                "Redis operation failed",
                extra={"operation": op, "error": str(e)},
            )

            raise StoreUnavailableError(f"Redis {op} failed: {e}") from e

    def get(self, key: str) -> Optional[str]:
        return self._call("get", self._client.get, key)

    def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        self._call("set", self._client.set, key, value, ex=ttl)

    def delete(self, key: str) -> None:
        self._call("delete", self._client.delete, key)

    def incr(self, key: str) -> int:
        return int(self._call("incr", self._client.incr, key))

    def expire(self, key: str, seconds: int) -> None:
        self._call("expire", self._client.expire, key, seconds)

    def ping(self) -> bool:

        try:
            return bool(self._call("ping", self._client.ping))
        except StoreUnavailableError:
            return False


class MemoryStore(KeyValueStore):
    """
    In-process store.

    Expired keys are dropped when read, and swept in bulk once every
    `sweep_every` writes so buckets nobody reads again still go away.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.time,
        sweep_every: int = MEMORY_STORE_SWEEP_INTERVAL,
    ):

        self._clock = clock
        self._sweep_every = max(1, sweep_every)
        self._writes = 0
        self._lock = threading.Lock()
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}

    def __len__(self) -> int:
        """Entries held, including expired ones not yet swept."""

        with self._lock:
            return len(self._data)

    def _live(self, key: str) -> Optional[Tuple[str, Optional[float]]]:

        entry = self._data.get(key)

        if entry is None:
            return None

        expires_at = entry[1]

        if expires_at is not None and expires_at <= self._clock():
            del self._data[key]
            return None

        return entry

    def _after_write(self) -> None:
        """Caller must hold the lock."""

        self._writes += 1

        if self._writes % self._sweep_every:
            return

        now = self._clock()

        expired = [
            key for key, (_, expires_at) in self._data.items()
            if expires_at is not None and expires_at <= now
        ]

        for key in expired:
            del self._data[key]

        if expired:
            logger.debug("Expired keys swept", extra={"keys": len(expired)})

    def get(self, key: str) -> Optional[str]:

        with self._lock:
            entry = self._live(key)

        return entry[0] if entry else None

    def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:

        expires_at = self._clock() + ttl if ttl else None

        with self._lock:
            self._data[key] = (str(value), expires_at)
            self._after_write()

    def delete(self, key: str) -> None:

        with self._lock:
            self._data.pop(key, None)

    def incr(self, key: str) -> int:

        with self._lock:

            entry = self._live(key)

            if entry is None:
                value, expires_at = 1, None
            else:
                value, expires_at = int(entry[0]) + 1, entry[1]

            self._data[key] = (str(value), expires_at)
            self._after_write()

        return value

    def expire(self, key: str, seconds: int) -> None:

        with self._lock:

            entry = self._live(key)

            if entry is not None:
                self._data[key] = (entry[0], self._clock() + seconds)
                self._after_write()

    def ttl(self, key: str) -> Optional[float]:
        """Seconds until expiry, None when the key never expires or is absent."""

        with self._lock:
            entry = self._live(key)

        if entry is None or entry[1] is None:
            return None

        return entry[1] - self._clock()

    def ping(self) -> bool:
        return True


def build_store(url: Optional[str] = REDIS_URL) -> KeyValueStore:

    if url:
        return RedisStore(url)

    logger.warning("REDIS_URL not set, using in-process store")

    return MemoryStore()
