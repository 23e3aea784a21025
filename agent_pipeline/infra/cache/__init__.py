"""
Cache Module

Response caching over a pluggable key-value store (Redis in production,
in-memory for local runs and tests).
"""

from agent_pipeline.infra.cache.response_cache import (
    DEFAULT_CATEGORY_POLICIES,
    CacheContext,
    CacheEntry,
    CacheMetadata,
    CacheOrFetchResult,
    CacheStats,
    CategoryPolicy,
    FetchResult,
    ResponseCache,
)
from agent_pipeline.infra.cache.store import InMemoryKeyValueStore, RedisKeyValueStore
from agent_pipeline.infra.telemetry.logger import get_logger

logger = get_logger(__name__)

# Store singleton (lock-free benign-race pattern)
_store: RedisKeyValueStore | None = None

def get_redis_store() -> RedisKeyValueStore:
    """Shared Redis-backed store built from ``REDIS_URL``."""
    global _store
    if _store is not None:
        return _store

    from agent_pipeline.core.config import get_settings

    url = get_settings().REDIS_URL
    _store = RedisKeyValueStore.from_url(url)
    logger.info("redis_store_created", url=url)
    return _store

async def close_redis_store() -> None:
    """Close the shared store's connection pool."""
    global _store
    if _store is None:
        return
    try:
        await _store.close()
    except OSError as exc:
        logger.warning("redis_close_failed", error=str(exc))
    _store = None

__all__ = [
    "DEFAULT_CATEGORY_POLICIES",
    "CacheContext",
    "CacheEntry",
    "CacheMetadata",
    "CacheOrFetchResult",
    "CacheStats",
    "CategoryPolicy",
    "FetchResult",
    "InMemoryKeyValueStore",
    "RedisKeyValueStore",
    "ResponseCache",
    "close_redis_store",
    "get_redis_store",
]
