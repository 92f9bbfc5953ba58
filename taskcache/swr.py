"""Stale-while-revalidate cache engine with single-flight refresh.

Decision order for every read (first match wins):

1. Fresh hit: record age <= fresh_ttl, served without upstream contact.
2. Cooldown: upstream recently rate-limited us and a record within
   stale_max_age exists, served stale without upstream contact.
3. Refresh: try to take the per-key lock.
   - Winner fetches, writes the record and returns it ("miss" or "refresh").
     On failure it falls back to stale data; a 429 also sets the global
     cooldown.
   - Losers get the stale record if one is usable, otherwise wait briefly
     for the winner and re-read once ("warm"), else ServiceUnavailableError.

The per-key lock lives in the shared store, so N concurrent callers for a
cold key (in one process or many) produce exactly one upstream call.

Store failures never escape: a failed read counts as a miss (or no
cooldown), failed writes are logged, and a failed lock attempt serves stale
data or raises ServiceUnavailableError.
"""

import asyncio
import inspect
import logging
import math
import time
from collections import Counter
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypeVar

from taskcache.errors import (
    ServiceUnavailableError,
    failure_retry_after,
    is_rate_limited,
)
from taskcache.kvstore import CacheRecord, KeyValueStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_FRESH_TTL_SECONDS = 60.0
DEFAULT_STALE_MAX_AGE_SECONDS = 300.0
DEFAULT_LOCK_TTL_SECONDS = 10.0

# How long a lock loser waits for the winner before re-reading the store
DEFAULT_WARM_WAIT_SECONDS = 0.4

# Back-off used when a rate-limit signal carries no usable retry hint
DEFAULT_RATE_LIMIT_BACKOFF_SECONDS = 1.0

# Retry hint attached to ServiceUnavailableError
UNAVAILABLE_RETRY_AFTER_SECONDS = 1

LOCK_PREFIX = "lock:"
COOLDOWN_PREFIX = "cooldown:"


class CacheStatus(str, Enum):
    """How a cached read was served (surfaced as the X-Cache header)."""

    HIT = "hit"  # Fresh record, no upstream call
    STALE = "stale"  # Stale record served as fallback
    MISS = "miss"  # Fetched, no prior record
    REFRESH = "refresh"  # Fetched, replaced a prior record
    WARM = "warm"  # Written by a concurrent caller while we waited


@dataclass
class CacheOptions:
    """Per-call cache timing configuration, all in seconds."""

    fresh_ttl: float = DEFAULT_FRESH_TTL_SECONDS
    stale_max_age: float = DEFAULT_STALE_MAX_AGE_SECONDS
    lock_ttl: float = DEFAULT_LOCK_TTL_SECONDS


@dataclass
class CacheResult:
    """Data returned by SWRCache.with_cache plus cache-state metadata.

    Attributes:
        data: The dataset (fresh or stale).
        status: How the data was served.
        cooldown: Remaining global cooldown in seconds, when stale data was
            served because of an active cooldown.
        retry_after: Back-off in seconds, when stale data was served right
            after the upstream rate-limited a refresh.
    """

    data: Any
    status: CacheStatus
    cooldown: int | None = None
    retry_after: float | None = None
    age_seconds: float | None = field(default=None, compare=False)

    @property
    def headers(self) -> dict[str, str]:
        """Response headers describing the cache state."""
        headers = {"X-Cache": self.status.value}
        if self.status == CacheStatus.HIT:
            headers["X-Cache-Fresh"] = "true"
        if self.cooldown is not None:
            headers["X-Cooldown"] = str(self.cooldown)
        if self.retry_after is not None:
            headers["Retry-After"] = format_seconds(self.retry_after)
        return headers


def format_seconds(value: float) -> str:
    """Render whole seconds without a trailing '.0'."""
    return str(int(value)) if float(value).is_integer() else str(value)


class SWRCache:
    """Stale-while-revalidate engine over a KeyValueStore.

    The engine keeps no cache state of its own besides counters; records,
    locks and the cooldown marker all live in the store so that every
    process sharing the store cooperates.
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        upstream: str = "notion",
        defaults: CacheOptions | None = None,
        warm_wait: float = DEFAULT_WARM_WAIT_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the engine.

        Args:
            store: Backend holding records, locks and the cooldown marker.
            upstream: Name of the rate-limited upstream; the cooldown key is
                ``cooldown:<upstream>``.
            defaults: Timing used when a call does not override it.
            warm_wait: Seconds a lock loser waits before re-reading.
            clock: Returns the current time in seconds. Injectable for tests.
        """
        self.store = store
        self.defaults = defaults or CacheOptions()
        self.cooldown_key = f"{COOLDOWN_PREFIX}{upstream}"
        self._warm_wait = warm_wait
        self._clock = clock
        self._counts: Counter[str] = Counter()

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    async def _guarded(self, action: str, key: str, call: Awaitable[T], default: T) -> T:
        """Await a store call, logging a failure and returning default instead."""
        try:
            return await call
        except Exception as e:
            self._counts["store_errors"] += 1
            logger.error("Store %s failed for %s: %s", action, key, e)
            return default

    async def cooldown_remaining(self) -> int:
        """Seconds left on the global cooldown (0 when inactive)."""
        remaining = await self.store.ttl(self.cooldown_key)
        return remaining if remaining > 0 else 0

    async def set_cooldown(self, seconds: float) -> None:
        """Start (or overwrite) the global cooldown window."""
        marker = CacheRecord(data=1, fetched_at=self._now_ms())
        await self.store.set(self.cooldown_key, marker, seconds)
        logger.warning("Upstream cooldown set for %ss", format_seconds(seconds))

    async def invalidate(self, prefix: str) -> int:
        """Delete every cached record under a namespace prefix."""
        deleted = await self.store.delete_by_prefix(prefix)
        logger.info("Invalidated %d cache entries under %s", deleted, prefix)
        return deleted

    async def with_cache(
        self,
        key: str,
        fetch_fn: Callable[[], Awaitable[Any] | Any],
        *,
        fresh_ttl: float | None = None,
        stale_max_age: float | None = None,
        lock_ttl: float | None = None,
    ) -> CacheResult:
        """Serve a dataset from cache, refreshing it from upstream when needed.

        Args:
            key: Cache key for the dataset (non-empty).
            fetch_fn: Zero-argument callable producing the dataset. Failures
                with ``status == 429`` trigger the global cooldown, honouring
                their ``retry_after``.
            fresh_ttl: Max age (s) served without revalidation.
            stale_max_age: Max age (s) servable as fallback; also the TTL of
                written records.
            lock_ttl: Lifetime (s) of the per-key refresh lock.

        Returns:
            CacheResult with the data and its cache status.

        Raises:
            ValueError: If key is empty.
            ServiceUnavailableError: If another caller holds the refresh
                lock (or the store is unreachable) and no data is servable.
            Exception: The fetch failure itself, when no stale data exists.
        """
        if not key:
            raise ValueError("cache key must be non-empty")

        fresh_ttl = self.defaults.fresh_ttl if fresh_ttl is None else fresh_ttl
        stale_max_age = self.defaults.stale_max_age if stale_max_age is None else stale_max_age
        lock_ttl = self.defaults.lock_ttl if lock_ttl is None else lock_ttl

        cooldown = await self._guarded("cooldown read", key, self.cooldown_remaining(), 0)
        cached = await self._guarded("read", key, self.store.get(key), None)
        age = (self._now_ms() - cached.fetched_at) / 1000 if cached else math.inf
        usable = cached is not None and age <= stale_max_age

        if cached is not None and age <= fresh_ttl:
            logger.debug("Cache hit (fresh) for %s [age=%.1fs]", key, age)
            return self._result(cached.data, CacheStatus.HIT, age=age)

        if cooldown > 0 and usable:
            logger.debug("Cache hit (stale, cooldown %ds) for %s [age=%.1fs]", cooldown, key, age)
            return self._result(cached.data, CacheStatus.STALE, age=age, cooldown=cooldown)

        lock_key = f"{LOCK_PREFIX}{key}"
        locked = await self._guarded(
            "lock", lock_key, self.store.acquire_lock(lock_key, lock_ttl), None
        )
        if locked:
            try:
                return await self._refresh(key, fetch_fn, cached, age, stale_max_age)
            finally:
                await self._guarded("unlock", lock_key, self.store.release_lock(lock_key), None)

        # Another caller is refreshing this key, or the store is unreachable
        if usable:
            status = CacheStatus.HIT if age <= fresh_ttl else CacheStatus.STALE
            logger.debug("Refresh not possible for %s, serving %s data", key, status.value)
            return self._result(cached.data, status, age=age)

        if locked is None:
            raise self._unavailable(key, "store unreachable while locking")

        logger.debug("Refresh in progress for %s, waiting %.2fs", key, self._warm_wait)
        await asyncio.sleep(self._warm_wait)
        warmed = await self._guarded("read", key, self.store.get(key), None)
        if warmed is not None:
            age = (self._now_ms() - warmed.fetched_at) / 1000
            return self._result(warmed.data, CacheStatus.WARM, age=age)

        raise self._unavailable(key, "nothing written by the concurrent refresh")

    def _unavailable(self, key: str, reason: str) -> ServiceUnavailableError:
        self._counts["unavailable"] += 1
        logger.warning("No data available for %s: %s", key, reason)
        return ServiceUnavailableError(key, retry_after=UNAVAILABLE_RETRY_AFTER_SECONDS)

    async def _refresh(
        self,
        key: str,
        fetch_fn: Callable[[], Awaitable[Any] | Any],
        cached: CacheRecord | None,
        age: float,
        stale_max_age: float,
    ) -> CacheResult:
        """Fetch and store a dataset while holding the key's lock."""
        usable = cached is not None and age <= stale_max_age
        self._counts["fetches"] += 1
        start = time.monotonic()
        try:
            data = fetch_fn()
            if inspect.isawaitable(data):
                data = await data
        except Exception as e:
            self._counts["fetch_failures"] += 1
            elapsed = time.monotonic() - start
            if is_rate_limited(e):
                self._counts["rate_limited"] += 1
                backoff = failure_retry_after(e) or DEFAULT_RATE_LIMIT_BACKOFF_SECONDS
                await self._guarded("cooldown write", key, self.set_cooldown(backoff), None)
                if usable:
                    logger.warning(
                        "Rate limited refreshing %s after %.2fs, serving stale data", key, elapsed
                    )
                    return self._result(
                        cached.data, CacheStatus.STALE, age=age, retry_after=backoff
                    )
            if usable:
                logger.warning(
                    "Refresh failed for %s after %.2fs, serving stale data: %s", key, elapsed, e
                )
                return self._result(cached.data, CacheStatus.STALE, age=age)
            logger.error("Refresh failed for %s after %.2fs with no fallback: %s", key, elapsed, e)
            raise

        record = CacheRecord(data=data, fetched_at=self._now_ms())
        await self._guarded("write", key, self.store.set(key, record, stale_max_age), None)
        status = CacheStatus.REFRESH if cached is not None else CacheStatus.MISS
        logger.info(
            "Cache %s for %s fetched in %.2fs", status.value, key, time.monotonic() - start
        )
        return self._result(data, status, age=0.0)

    def _result(self, data: Any, status: CacheStatus, *, age: float, **meta: Any) -> CacheResult:
        self._counts[status.value] += 1
        return CacheResult(data=data, status=status, age_seconds=age, **meta)

    async def describe(self, key: str) -> dict[str, Any]:
        """Inspect one cached key (existence, age and remaining TTL)."""
        cached = await self.store.get(key)
        if cached is None:
            return {"exists": False, "age_seconds": None, "ttl": None}
        ttl = await self.store.ttl(key)
        return {
            "exists": True,
            "age_seconds": int((self._now_ms() - cached.fetched_at) / 1000),
            "ttl": ttl if ttl > 0 else None,
        }

    def get_stats(self) -> dict[str, int]:
        """In-process counters by cache status and fetch outcome."""
        keys = [status.value for status in CacheStatus]
        keys += ["fetches", "fetch_failures", "rate_limited", "unavailable", "store_errors"]
        return {name: self._counts[name] for name in keys}
