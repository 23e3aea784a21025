"""
Key-Value Store Adapters
==========================

Two implementations of ``KeyValueStore``:

  - ``InMemoryKeyValueStore``: single-process store for local runs and tests.
    TTLs are evaluated lazily against an injectable clock, so expiry can be
    tested without sleeping.
  - ``RedisKeyValueStore``: ``redis.asyncio`` adapter. Plain keys map to
    strings, counters to ``INCRBYFLOAT``, series to sorted sets.

Both raise ``StoreUnavailableError`` when the backend fails; callers decide
whether that is fatal (the cache and metrics layers degrade instead).
"""

from __future__ import annotations

import asyncio
import bisect
import fnmatch
import time
from collections.abc import Callable
from typing import Any

from redis import asyncio as aioredis
from redis.exceptions import RedisError

from agent_pipeline.core.exceptions import StoreUnavailableError
from agent_pipeline.infra.telemetry.logger import get_logger

logger = get_logger(__name__)

def _number(value: float) -> float | int:
    return int(value) if float(value).is_integer() else value

# ── In-memory ──────────────────────────────────────────────────────

class InMemoryKeyValueStore:
    """
    Dict-backed store with TTL, counters and score-ordered series.

    Args:
        clock: Wall-clock source in seconds. Tests pass a fake to move time.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._values: dict[str, str] = {}
        self._expiry: dict[str, float] = {}
        self._series: dict[str, list[tuple[float, str]]] = {}
        self._lock = asyncio.Lock()

    def _expired(self, key: str) -> bool:
        deadline = self._expiry.get(key)
        if deadline is not None and self._clock() >= deadline:
            self._values.pop(key, None)
            self._expiry.pop(key, None)
            return True
        return False

    async def get(self, key: str) -> str | None:
        if self._expired(key):
            return None
        return self._values.get(key)

    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        self._values[key] = value
        if ttl_seconds:
            self._expiry[key] = self._clock() + ttl_seconds
        else:
            self._expiry.pop(key, None)

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._expired(key):
                continue
            if self._values.pop(key, None) is not None:
                removed += 1
            elif self._series.pop(key, None) is not None:
                removed += 1
            self._expiry.pop(key, None)
        return removed

    async def keys_matching(self, pattern: str) -> list[str]:
        live = [key for key in list(self._values) if not self._expired(key)]
        live.extend(self._series)
        return sorted(key for key in live if fnmatch.fnmatchcase(key, pattern))

    async def increment(self, key: str, amount: float = 1, ttl_seconds: int | None = None) -> float:
        async with self._lock:
            self._expired(key)
            current = float(self._values.get(key, "0"))
            current += amount
            self._values[key] = str(_number(current))
            if ttl_seconds:
                self._expiry[key] = self._clock() + ttl_seconds
            return current

    async def append_to_series(self, key: str, score: float, member: str) -> None:
        series = self._series.setdefault(key, [])
        bisect.insort(series, (score, member))

    async def query_series(self, key: str, min_score: float, max_score: float) -> list[str]:
        return [m for s, m in self._series.get(key, []) if min_score <= s <= max_score]

    async def prune_series_below(self, key: str, max_score: float) -> int:
        series = self._series.get(key)
        if not series:
            return 0
        keep = [(s, m) for s, m in series if s > max_score]
        removed = len(series) - len(keep)
        self._series[key] = keep
        return removed

    def __len__(self) -> int:
        return sum(1 for key in list(self._values) if not self._expired(key))

# ── Redis ──────────────────────────────────────────────────────────

class RedisKeyValueStore:
    """``KeyValueStore`` over an async Redis client (``decode_responses=True``)."""

    def __init__(self, client: aioredis.Redis, *, scan_count: int = 500) -> None:
        self._client = client
        self._scan_count = scan_count

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> RedisKeyValueStore:
        client = aioredis.from_url(
            url,
            decode_responses=True,
            socket_timeout=5.0,
            socket_connect_timeout=2.0,
            max_connections=kwargs.pop("max_connections", 20),
            retry_on_timeout=True,
        )
        return cls(client, **kwargs)

    async def get(self, key: str) -> str | None:
        try:
            return await self._client.get(key)
        except RedisError as exc:
            raise StoreUnavailableError("get", exc) from exc

    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        try:
            await self._client.set(key, value, ex=ttl_seconds or None)
        except RedisError as exc:
            raise StoreUnavailableError("set", exc) from exc

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        try:
            return int(await self._client.delete(*keys))
        except RedisError as exc:
            raise StoreUnavailableError("delete", exc) from exc

    async def keys_matching(self, pattern: str) -> list[str]:
        # SCAN instead of KEYS so large keyspaces do not block the server
        try:
            return [
                key async for key in self._client.scan_iter(match=pattern, count=self._scan_count)
            ]
        except RedisError as exc:
            raise StoreUnavailableError("scan", exc) from exc

    async def increment(self, key: str, amount: float = 1, ttl_seconds: int | None = None) -> float:
        # INCRBYFLOAT throughout: INCRBY rejects a key that already holds a fraction
        try:
            value = float(await self._client.incrbyfloat(key, amount))
            if ttl_seconds:
                await self._client.expire(key, ttl_seconds)
            return value
        except RedisError as exc:
            raise StoreUnavailableError("increment", exc) from exc

    async def append_to_series(self, key: str, score: float, member: str) -> None:
        try:
            await self._client.zadd(key, {member: score})
        except RedisError as exc:
            raise StoreUnavailableError("zadd", exc) from exc

    async def query_series(self, key: str, min_score: float, max_score: float) -> list[str]:
        try:
            return list(await self._client.zrangebyscore(key, min_score, max_score))
        except RedisError as exc:
            raise StoreUnavailableError("zrangebyscore", exc) from exc

    async def prune_series_below(self, key: str, max_score: float) -> int:
        try:
            return int(await self._client.zremrangebyscore(key, "-inf", max_score))
        except RedisError as exc:
            raise StoreUnavailableError("zremrangebyscore", exc) from exc

    async def ping(self) -> bool:
        try:
            return bool(await self._client.ping())
        except RedisError as exc:
            raise StoreUnavailableError("ping", exc) from exc

    async def close(self) -> None:
        await self._client.aclose()
