"""taskcache - stale-while-revalidate and periodic refresh caching for upstream datasets."""

from taskcache.errors import ServiceUnavailableError, TaskCacheError
from taskcache.kvstore import CacheRecord, KeyValueStore, MemoryStore, RedisStore, create_store
from taskcache.refresh_store import PeriodicRefreshStore, StoreStats
from taskcache.swr import CacheOptions, CacheResult, CacheStatus, SWRCache
from taskcache.version import __version__

__all__ = [
    "__version__",
    "CacheOptions",
    "CacheRecord",
    "CacheResult",
    "CacheStatus",
    "KeyValueStore",
    "MemoryStore",
    "PeriodicRefreshStore",
    "RedisStore",
    "ServiceUnavailableError",
    "StoreStats",
    "SWRCache",
    "TaskCacheError",
    "create_store",
]
