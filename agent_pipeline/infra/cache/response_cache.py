"""
Response Cache — Memoized Agent Answers
==========================================

Caches agent answers in the key-value store, keyed by the normalized query
plus its ownership context, with a TTL chosen from the query's category:

  STATUS   30s   ("what are you working on?"), goes stale fast
  HELP     3600s ("how do I create a sprint?"), stable reference answers
  PROJECT  120s  (everything else)

Guarantees:
  - Store failures never escape: reads degrade to a miss, writes and
    invalidations are logged and skipped.
  - ``cache_or_fetch`` runs at most one upstream fetch per key at a time in
    this process; concurrent misses for the same key await the same fetch.
"""

from __future__ import annotations

import asyncio
import functools
import hashlib
import math
import re
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field, ValidationError

from agent_pipeline.core.exceptions import StoreUnavailableError
from agent_pipeline.core.interfaces import KeyValueStore
from agent_pipeline.core.types import CacheCategory
from agent_pipeline.infra.telemetry.logger import get_logger
from agent_pipeline.infra.telemetry.tracer import get_tracer
from agent_pipeline.utils.background import BackgroundTasks

if TYPE_CHECKING:
    from agent_pipeline.infra.telemetry.metrics import MetricsCollector

logger = get_logger(__name__)
tracer = get_tracer(__name__)

_WHITESPACE = re.compile(r"\s+")

# ── Category policy ────────────────────────────────────────────────

@dataclass(frozen=True)
class CategoryPolicy:
    """TTL, advisory entry ceiling and keyword patterns for a category."""

    ttl_seconds: int
    max_entries: int
    patterns: tuple[str, ...]

DEFAULT_CATEGORY_POLICIES: dict[CacheCategory, CategoryPolicy] = {
    CacheCategory.STATUS: CategoryPolicy(
        ttl_seconds=30,
        max_entries=100,
        patterns=(
            "status", "working on", "progress", "current task",
            "what are you doing", "are you busy", "update on",
        ),
    ),
    CacheCategory.HELP: CategoryPolicy(
        ttl_seconds=3600,
        max_entries=500,
        patterns=(
            "how to", "how do", "how can", "what is", "what does", "explain",
            "help", "guide", "documentation", "best practice", "example",
        ),
    ),
    CacheCategory.PROJECT: CategoryPolicy(
        ttl_seconds=120,
        max_entries=200,
        patterns=(
            "story", "stories", "task", "epic", "sprint", "project",
            "backlog", "pending", "overview", "details", "deployment",
        ),
    ),
}

# Checked in this order; first match wins
_CATEGORY_ORDER = (CacheCategory.STATUS, CacheCategory.HELP, CacheCategory.PROJECT)

# ── Data model ─────────────────────────────────────────────────────

@dataclass(frozen=True)
class CacheContext:
    """Ownership context folded into the cache key."""

    owner_id: str
    project_context_id: str | None = None
    scope_id: str | None = None

class CacheMetadata(BaseModel):
    original_query: str
    latency_ms: float
    model_used: str
    category: CacheCategory
    project_context_id: str | None = None

class CacheEntry(BaseModel):
    """A cached answer as stored (JSON) under its derived key."""

    response: str
    owner_id: str
    cached_at: datetime
    expires_at: datetime
    hit_count: int = Field(default=0, ge=0)
    metadata: CacheMetadata

@dataclass
class FetchResult:
    """What a ``fetch_fn`` hands back on a cache miss."""

    response: str
    latency_ms: float | None = None
    model_used: str = "unknown"

@dataclass
class CacheOrFetchResult:
    response: str
    from_cache: bool
    category: CacheCategory
    latency_ms: float | None = None

@dataclass
class CacheStats:
    total_hits: int = 0
    total_misses: int = 0
    hit_rate: float = 0.0
    entries_by_category: dict[str, int] = field(
        default_factory=lambda: dict.fromkeys((c.value for c in CacheCategory), 0)
    )
    avg_response_time_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalHits": self.total_hits,
            "totalMisses": self.total_misses,
            "hitRate": round(self.hit_rate, 4),
            "entriesByCategory": dict(self.entries_by_category),
            "avgResponseTime": round(self.avg_response_time_ms, 2),
        }

FetchFn = Callable[[], Awaitable[FetchResult | str]]

# ── Response cache ─────────────────────────────────────────────────

class ResponseCache:
    """
    Category-aware response cache with in-flight fetch deduplication.

    Usage:
        cache = ResponseCache(store, metrics=collector)
        result = await cache.cache_or_fetch(
            query, CacheContext(owner_id=agent_id, project_context_id=pid), fetch
        )
    """

    def __init__(
        self,
        store: KeyValueStore,
        metrics: MetricsCollector | None = None,
        *,
        prefix: str = "agent_response",
        stats_prefix: str = "agent_response_stats",
        policies: dict[CacheCategory, CategoryPolicy] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._metrics = metrics
        self._prefix = prefix
        self._stats_prefix = stats_prefix
        self._policies = policies or DEFAULT_CATEGORY_POLICIES
        self._clock = clock
        self._inflight: dict[str, asyncio.Task[CacheOrFetchResult]] = {}
        self._inflight_lock = asyncio.Lock()
        self._background = BackgroundTasks(logger)

    @classmethod
    def from_settings(cls, store: KeyValueStore, metrics: MetricsCollector | None = None) -> ResponseCache:
        from agent_pipeline.core.config import get_settings

        s = get_settings()
        ttls = {
            CacheCategory.STATUS: s.CACHE_TTL_STATUS,
            CacheCategory.HELP: s.CACHE_TTL_HELP,
            CacheCategory.PROJECT: s.CACHE_TTL_PROJECT,
        }
        policies = {
            cat: CategoryPolicy(ttls[cat], pol.max_entries, pol.patterns)
            for cat, pol in DEFAULT_CATEGORY_POLICIES.items()
        }
        return cls(
            store,
            metrics,
            prefix=s.CACHE_PREFIX,
            stats_prefix=s.CACHE_STATS_PREFIX,
            policies=policies,
        )

    # ── Keys and categories ────────────────────────────────────────

    @staticmethod
    def normalize_query(query: str) -> str:
        return _WHITESPACE.sub(" ", query.strip().lower())

    def generate_key(self, query: str, context: CacheContext) -> str:
        """``{prefix}:{owner_id}:{digest}``; identical inputs give identical keys."""
        components = [self.normalize_query(query), context.owner_id]
        if context.project_context_id:
            components.append(context.project_context_id)
        if context.scope_id:
            components.append(context.scope_id)
        digest = hashlib.sha256(":".join(components).encode("utf-8")).hexdigest()[:16]
        return f"{self._prefix}:{context.owner_id}:{digest}"

    def detect_category(self, query: str) -> CacheCategory:
        lowered = query.lower()
        for category in _CATEGORY_ORDER:
            if any(pattern in lowered for pattern in self._policies[category].patterns):
                return category
        return CacheCategory.PROJECT

    def get_ttl(self, category: CacheCategory) -> int:
        return self._policies[category].ttl_seconds

    def _stats_key(self, name: str) -> str:
        return f"{self._stats_prefix}:{name}"

    # ── Primitive operations ───────────────────────────────────────

    async def get(self, key: str) -> CacheEntry | None:
        try:
            raw = await self._store.get(key)
        except (StoreUnavailableError, OSError) as exc:
            logger.warning("cache_get_failed", key=key, error=str(exc))
            return None

        if raw is None:
            await self._bump(self._stats_key("misses"))
            return None

        try:
            entry = CacheEntry.model_validate_json(raw)
        except ValidationError as exc:
            logger.warning("cache_entry_corrupt", key=key, error=str(exc))
            return None

        # The per-entry counter lives exactly as long as the entry
        remaining_s = max(1, math.ceil(entry.expires_at.timestamp() - self._clock()))
        self._background.spawn(
            self._increment_hits(key, remaining_s), event="cache_hit_increment_failed", key=key
        )
        return entry

    async def set(self, key: str, entry: CacheEntry, ttl_seconds: int) -> None:
        try:
            await self._store.set(key, entry.model_dump_json(), ttl_seconds)
            logger.debug("cache_set", key=key, ttl_s=ttl_seconds)
        except (StoreUnavailableError, OSError) as exc:
            logger.warning("cache_set_failed", key=key, error=str(exc))

    async def invalidate(self, pattern: str) -> int:
        try:
            keys = await self._store.keys_matching(pattern)
            if not keys:
                return 0
            await self._store.delete(*keys)
        except (StoreUnavailableError, OSError) as exc:
            logger.warning("cache_invalidate_failed", pattern=pattern, error=str(exc))
            return 0
        logger.info("cache_invalidated", pattern=pattern, count=len(keys))
        return len(keys)

    async def _increment_hits(self, key: str, ttl_seconds: int) -> None:
        await self._store.increment(f"{key}:hits", 1, ttl_seconds)
        await self._store.increment(self._stats_key("hits"), 1)

    async def _bump(self, key: str, amount: float = 1) -> None:
        try:
            await self._store.increment(key, amount)
        except (StoreUnavailableError, OSError) as exc:
            logger.warning("cache_stats_update_failed", key=key, error=str(exc))

    # ── Cache-through ──────────────────────────────────────────────

    async def lookup(self, query: str, context: CacheContext) -> CacheOrFetchResult | None:
        """Read-only check: the cached answer for ``query`` or None (hit/miss recorded)."""
        category = self.detect_category(query)
        cached = await self.get(self.generate_key(query, context))
        await self._record_access(cached is not None, category)
        if cached is None:
            return None
        return CacheOrFetchResult(
            response=cached.response,
            from_cache=True,
            category=category,
            latency_ms=cached.metadata.latency_ms,
        )

    async def cache_or_fetch(
        self, query: str, context: CacheContext, fetch_fn: FetchFn
    ) -> CacheOrFetchResult:
        """
        Return a cached answer, or fetch, store and return a fresh one.

        Concurrent misses on the same key share a single fetch; the fetch's
        exception, if any, propagates to every waiter. The in-flight entry is
        dropped when the fetch finishes, whether it succeeded or not.
        """
        with tracer.span(
            "cache.cache_or_fetch",
            attributes={"owner_id": context.owner_id},
        ) as span:
            cached = await self.lookup(query, context)
            span.set_attribute("from_cache", cached is not None)
            if cached is not None:
                logger.debug("cache_hit", owner_id=context.owner_id, category=cached.category.value)
                return cached
            return await self.fetch_shared(query, context, fetch_fn)

    async def fetch_shared(
        self, query: str, context: CacheContext, fetch_fn: FetchFn
    ) -> CacheOrFetchResult:
        """Run ``fetch_fn`` and cache its answer, joining an identical fetch already in flight."""
        key = self.generate_key(query, context)
        category = self.detect_category(query)

        async with self._inflight_lock:
            task = self._inflight.get(key)
            joined = task is not None
            if task is None:
                task = asyncio.create_task(
                    self._perform_fetch(key, category, query, context, fetch_fn)
                )
                self._inflight[key] = task
                task.add_done_callback(functools.partial(self._release_inflight, key))

        if joined:
            logger.debug("cache_inflight_joined", key=key)
        # Shielded so one cancelled waiter does not cancel the shared fetch
        return await asyncio.shield(task)

    def _release_inflight(self, key: str, task: asyncio.Task[CacheOrFetchResult]) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        if not task.cancelled() and task.exception() is not None:
            logger.warning("cache_fetch_failed", key=key, error=str(task.exception()))

    async def _perform_fetch(
        self,
        key: str,
        category: CacheCategory,
        query: str,
        context: CacheContext,
        fetch_fn: FetchFn,
    ) -> CacheOrFetchResult:
        started = time.monotonic()
        fetched = await fetch_fn()
        if isinstance(fetched, str):
            fetched = FetchResult(response=fetched)
        latency_ms = fetched.latency_ms
        if latency_ms is None:
            latency_ms = (time.monotonic() - started) * 1000

        ttl = self.get_ttl(category)
        cached_at = datetime.fromtimestamp(self._clock(), tz=UTC)
        entry = CacheEntry(
            response=fetched.response,
            owner_id=context.owner_id,
            cached_at=cached_at,
            expires_at=cached_at + timedelta(seconds=ttl),
            metadata=CacheMetadata(
                original_query=query,
                latency_ms=latency_ms,
                model_used=fetched.model_used,
                category=category,
                project_context_id=context.project_context_id,
            ),
        )
        # Stored before waiters resume so the next caller sees a hit
        await self.set(key, entry, ttl)
        self._background.spawn(
            self._record_entry(category, latency_ms), event="cache_stats_update_failed"
        )
        return CacheOrFetchResult(
            response=fetched.response,
            from_cache=False,
            category=category,
            latency_ms=latency_ms,
        )

    async def _record_entry(self, category: CacheCategory, latency_ms: float) -> None:
        await self._store.increment(self._stats_key(f"entries:{category.value}"), 1)
        await self._store.increment(self._stats_key("response_time:sum"), latency_ms)
        await self._store.increment(self._stats_key("response_time:count"), 1)

    async def _record_access(self, hit: bool, category: CacheCategory) -> None:
        if self._metrics is not None:
            await self._metrics.record_cache_hit(hit, category.value)

    @property
    def inflight_count(self) -> int:
        return len(self._inflight)

    # ── Invalidation helpers ───────────────────────────────────────

    async def invalidate_owner(self, owner_id: str) -> int:
        return await self.invalidate(f"{self._prefix}:{owner_id}:*")

    async def invalidate_project(self, project_id: str) -> int:
        """
        Drop entries tied to a project.

        The project id is hashed into the key, so every entry is scanned and
        matched on its stored metadata (or, for entries written without a
        project context, on the original query text).
        """
        try:
            keys = await self._store.keys_matching(f"{self._prefix}:*")
        except (StoreUnavailableError, OSError) as exc:
            logger.warning("cache_project_invalidate_failed", project_id=project_id, error=str(exc))
            return 0

        removed = 0
        for key in keys:
            if key.endswith(":hits"):
                continue
            try:
                raw = await self._store.get(key)
                if raw is None:
                    continue
                meta = CacheEntry.model_validate_json(raw).metadata
                if meta.project_context_id == project_id or project_id in meta.original_query:
                    await self._store.delete(key, f"{key}:hits")
                    removed += 1
            except ValidationError:
                continue
            except (StoreUnavailableError, OSError) as exc:
                logger.warning("cache_project_invalidate_failed", key=key, error=str(exc))
                break

        logger.info("cache_project_invalidated", project_id=project_id, count=removed)
        return removed

    async def clear_all(self) -> int:
        return await self.invalidate(f"{self._prefix}:*")

    # ── Stats ──────────────────────────────────────────────────────

    async def get_stats(self) -> CacheStats:
        async def read(name: str) -> float:
            raw = await self._store.get(self._stats_key(name))
            return float(raw) if raw else 0.0

        try:
            hits = int(await read("hits"))
            misses = int(await read("misses"))
            entries = {c.value: int(await read(f"entries:{c.value}")) for c in CacheCategory}
            rt_sum = await read("response_time:sum")
            rt_count = await read("response_time:count")
        except (StoreUnavailableError, OSError, ValueError) as exc:
            logger.warning("cache_stats_failed", error=str(exc))
            return CacheStats()

        total = hits + misses
        return CacheStats(
            total_hits=hits,
            total_misses=misses,
            hit_rate=hits / total if total > 0 else 0.0,
            entries_by_category=entries,
            avg_response_time_ms=rt_sum / rt_count if rt_count > 0 else 0.0,
        )

    async def flush_background(self) -> None:
        """Wait for pending hit-count and stats writes."""
        await self._background.drain()
