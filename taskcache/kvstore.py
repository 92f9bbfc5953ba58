"""Key-value store adapter for cache records, locks and cooldown markers.

Two interchangeable backends implement the same async contract:

- RedisStore: shared, persistent store for multi-instance deployments.
- MemoryStore: process-local fallback with emulated TTL expiry and locks.

Use create_store() to pick one from configuration; callers never need to
know which backend is active.
"""

import json
import logging
import math
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

import redis.asyncio as aioredis

logger = logging.getLogger(__name__)

# Sentinel TTL values, matching Redis semantics
TTL_MISSING = -2  # Key never set or already expired
TTL_NO_EXPIRY = -1  # Key exists without an expiry

# Batch size for SCAN-based prefix deletion
SCAN_BATCH_SIZE = 500


@dataclass(frozen=True)
class CacheRecord:
    """A cached dataset plus the time it was fetched.

    Attributes:
        data: The cached payload (must be JSON-serializable).
        fetched_at: Fetch time in epoch milliseconds.
    """

    data: Any
    fetched_at: int

    def to_json(self) -> str:
        """Serialize to the persisted layout ``{"data", "fetchedAt"}``."""
        return json.dumps({"data": self.data, "fetchedAt": self.fetched_at})

    @classmethod
    def from_json(cls, raw: str | bytes | None) -> "CacheRecord | None":
        """Deserialize a stored payload.

        Returns None for missing or malformed payloads; a corrupted entry is
        a cache miss, never an error.
        """
        if raw is None:
            return None
        try:
            payload = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("Discarding malformed cache payload")
            return None
        if not isinstance(payload, dict) or "data" not in payload:
            logger.warning("Discarding cache payload without data field")
            return None
        fetched_at = payload.get("fetchedAt")
        if not isinstance(fetched_at, (int, float)) or isinstance(fetched_at, bool):
            logger.warning("Discarding cache payload without fetchedAt")
            return None
        return cls(data=payload["data"], fetched_at=int(fetched_at))


class KeyValueStore(Protocol):
    """Async store contract shared by all backends."""

    async def get(self, key: str) -> CacheRecord | None: ...

    async def set(self, key: str, record: CacheRecord, ttl_seconds: float) -> None: ...

    async def ttl(self, key: str) -> int: ...

    async def acquire_lock(self, lock_key: str, ttl_seconds: float) -> bool: ...

    async def release_lock(self, lock_key: str) -> None: ...

    async def delete_key(self, key: str) -> None: ...

    async def delete_by_prefix(self, prefix: str) -> int: ...

    async def close(self) -> None: ...


def _ttl_ms(ttl_seconds: float) -> int:
    """Convert a TTL in seconds to a positive millisecond count."""
    return max(1, int(math.ceil(ttl_seconds * 1000)))


class MemoryStore:
    """In-process store with manual expiry bookkeeping.

    Values are kept serialized so reads return fresh copies, exactly like a
    remote store would. Expiry is checked on every read; locks are a map of
    key to expiry instant, swept lazily on each acquire attempt.

    Not shared across processes: never mix with RedisStore-backed instances
    in one deployment.
    """

    backend_name = "memory"

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        """Initialize the store.

        Args:
            clock: Returns the current time in seconds. Injectable for tests.
        """
        self._clock = clock
        self._entries: dict[str, tuple[str, float]] = {}
        self._locks: dict[str, float] = {}

    def _live_entry(self, key: str) -> tuple[str, float] | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry[1] <= self._clock():
            del self._entries[key]
            return None
        return entry

    async def get(self, key: str) -> CacheRecord | None:
        entry = self._live_entry(key)
        if entry is None:
            return None
        return CacheRecord.from_json(entry[0])

    async def set(self, key: str, record: CacheRecord, ttl_seconds: float) -> None:
        expires_at = self._clock() + _ttl_ms(ttl_seconds) / 1000
        self._entries[key] = (record.to_json(), expires_at)

    async def ttl(self, key: str) -> int:
        entry = self._live_entry(key)
        if entry is None:
            return TTL_MISSING
        # Round up so a live key never reports zero remaining
        return max(1, math.ceil(entry[1] - self._clock()))

    async def acquire_lock(self, lock_key: str, ttl_seconds: float) -> bool:
        now = self._clock()
        # Lazy sweep of expired locks
        for key in [k for k, expires_at in self._locks.items() if expires_at <= now]:
            del self._locks[key]
        if lock_key in self._locks:
            return False
        self._locks[lock_key] = now + _ttl_ms(ttl_seconds) / 1000
        return True

    async def release_lock(self, lock_key: str) -> None:
        self._locks.pop(lock_key, None)

    async def delete_key(self, key: str) -> None:
        self._entries.pop(key, None)

    async def delete_by_prefix(self, prefix: str) -> int:
        keys = [key for key in self._entries if key.startswith(prefix)]
        for key in keys:
            del self._entries[key]
        return len(keys)

    async def close(self) -> None:
        self._entries.clear()
        self._locks.clear()

    def __len__(self) -> int:
        return len(self._entries)


def _escape_glob(prefix: str) -> str:
    """Escape Redis glob metacharacters in a literal prefix."""
    return "".join(f"\\{ch}" if ch in "*?[]\\" else ch for ch in prefix)


class RedisStore:
    """Redis-backed store shared by every process pointing at the same server.

    Lock acquisition uses a single atomic ``SET key 1 NX PX ttl``; that is
    the only atomicity the cache engine relies on.
    """

    backend_name = "redis"

    def __init__(self, client: Any) -> None:
        """Initialize with an existing ``redis.asyncio.Redis`` client.

        The client must be created with ``decode_responses=True``.
        """
        self._redis = client

    @classmethod
    def from_url(cls, url: str) -> "RedisStore":
        """Create a store from a ``redis://`` or ``rediss://`` URL."""
        return cls(aioredis.from_url(url, decode_responses=True))

    async def get(self, key: str) -> CacheRecord | None:
        raw = await self._redis.get(key)
        return CacheRecord.from_json(raw)

    async def set(self, key: str, record: CacheRecord, ttl_seconds: float) -> None:
        await self._redis.set(key, record.to_json(), px=_ttl_ms(ttl_seconds))

    async def ttl(self, key: str) -> int:
        # PTTL, rounded up like MemoryStore so sub-second expiries stay live
        value = await self._redis.pttl(key)
        if not isinstance(value, int):
            return TTL_NO_EXPIRY
        if value < 0:
            return value
        return math.ceil(value / 1000)

    async def acquire_lock(self, lock_key: str, ttl_seconds: float) -> bool:
        result = await self._redis.set(lock_key, "1", nx=True, px=_ttl_ms(ttl_seconds))
        return bool(result)

    async def release_lock(self, lock_key: str) -> None:
        await self._redis.delete(lock_key)

    async def delete_key(self, key: str) -> None:
        await self._redis.delete(key)

    async def delete_by_prefix(self, prefix: str) -> int:
        pattern = f"{_escape_glob(prefix)}*"
        keys = [key async for key in self._redis.scan_iter(match=pattern, count=SCAN_BATCH_SIZE)]
        if not keys:
            return 0
        deleted = await self._redis.delete(*keys)
        logger.debug("Deleted %d keys matching %s", deleted, pattern)
        return int(deleted)

    async def close(self) -> None:
        await self._redis.aclose()


def create_store(redis_url: str | None = None) -> MemoryStore | RedisStore:
    """Select the store backend from configuration.

    Args:
        redis_url: Redis connection URL. When empty, the in-memory fallback
            is used (single-instance deployments and local development).

    Returns:
        A store implementing the KeyValueStore contract.
    """
    if redis_url:
        logger.info("Using Redis cache store")
        return RedisStore.from_url(redis_url)
    logger.info("REDIS_URL not set, using in-memory cache store")
    return MemoryStore()
