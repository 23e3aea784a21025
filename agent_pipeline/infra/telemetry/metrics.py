"""
Metrics Collector — Pipeline Health Telemetry
===============================================

Records latency, cache, queue, stream and error observations and derives
the health summary and alert list consumed by operational dashboards.

Design:
  - Observations are written to the shared key-value store so every
    instance contributes to the same windows (counters + time series).
  - Time series are score-ordered by timestamp and pruned to the retention
    window (default 1 hour) on every write.
  - Response-time buckets are cumulative: a sample increments every bucket
    whose boundary is >= the sample.
  - Each collector also mirrors observations into its own Prometheus
    ``CollectorRegistry`` for scraping.
  - Recording never raises and never gates the caller; store failures are
    logged and the observation is skipped.

Key layout (``{prefix}`` defaults to ``agent_metrics``):
  - {prefix}:response_times:series            raw samples
  - {prefix}:response_times:bucket:{le}:{lbl} cumulative buckets
  - {prefix}:requests:{lbl} / :total          request counters
  - {prefix}:cache:{hits|misses}:{category}   cache counters (+ :total)
  - {prefix}:queue_depth:{tier}               last reported depth
  - {prefix}:stream:{first_chunk|chunk}:{sum|count}
  - {prefix}:errors:{type} / :total
"""

from __future__ import annotations

import math
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import orjson
from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest

from agent_pipeline.core.exceptions import StoreUnavailableError
from agent_pipeline.core.interfaces import KeyValueStore
from agent_pipeline.core.types import AlertSeverity, AlertStatus
from agent_pipeline.infra.telemetry.logger import get_logger

logger = get_logger(__name__)

RESPONSE_TIME_BUCKETS_MS: tuple[int, ...] = (100, 250, 500, 1000, 2000, 3000, 5000)
STREAM_LATENCY_BUCKETS_MS: tuple[int, ...] = (50, 100, 250, 500, 1000, 2000)

_STORE_ERRORS = (StoreUnavailableError, OSError)

# ── Value types ────────────────────────────────────────────────────

@dataclass
class MetricSample:
    timestamp: float
    value: float
    labels: dict[str, str] = field(default_factory=dict)

    def encode(self) -> str:
        # The id keeps identical (timestamp, value) samples distinct in a sorted set
        return orjson.dumps(
            {"t": self.timestamp, "v": self.value, "l": self.labels, "id": uuid.uuid4().hex[:8]}
        ).decode("utf-8")

    @classmethod
    def decode(cls, raw: str) -> MetricSample:
        data = orjson.loads(raw)
        return cls(timestamp=data["t"], value=data["v"], labels=data.get("l") or {})

@dataclass
class AlertThresholds:
    response_time_p99_ms: float = 3000.0
    cache_hit_rate_low: float = 0.30
    queue_depth_high: int = 100

@dataclass
class AlertState:
    name: str
    severity: AlertSeverity
    status: AlertStatus
    value: float
    threshold: float
    message: str
    triggered_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "severity": self.severity.value,
            "status": self.status.value,
            "value": self.value,
            "threshold": self.threshold,
            "message": self.message,
            "triggeredAt": self.triggered_at.isoformat() if self.triggered_at else None,
        }

@dataclass
class MetricsSummary:
    response_time: dict[str, float] = field(
        default_factory=lambda: {"p50": 0.0, "p90": 0.0, "p99": 0.0, "avg": 0.0}
    )
    throughput: dict[str, float] = field(
        default_factory=lambda: {"requests_per_second": 0.0, "total_requests": 0}
    )
    cache: dict[str, float] = field(
        default_factory=lambda: {"hit_rate": 0.0, "total_hits": 0, "total_misses": 0}
    )
    queue: dict[str, float] = field(
        default_factory=lambda: {"current_depth": 0, "avg_wait_time_ms": 0.0, "processing_rate": 0.0}
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "responseTime": dict(self.response_time),
            "throughput": {
                "requestsPerSecond": self.throughput["requests_per_second"],
                "totalRequests": self.throughput["total_requests"],
            },
            "cache": {
                "hitRate": self.cache["hit_rate"],
                "totalHits": self.cache["total_hits"],
                "totalMisses": self.cache["total_misses"],
            },
            "queue": {
                "currentDepth": self.queue["current_depth"],
                "avgWaitTime": self.queue["avg_wait_time_ms"],
                "processingRate": self.queue["processing_rate"],
            },
        }

def _labels_to_string(labels: dict[str, Any] | None) -> str:
    if not labels:
        return "unlabeled"
    parts = [f"{k}={v}" for k, v in sorted(labels.items()) if v is not None]
    return ",".join(parts) or "unlabeled"

# ── Metrics Collector ──────────────────────────────────────────────

class MetricsCollector:
    """
    Store-backed pipeline metrics with percentile and alert evaluation.

    Args:
        store: Shared key-value store holding counters and series.
        prefix: Key prefix for every metric key.
        retention_s: Sliding window kept in each series.
        thresholds: Alert thresholds.
        clock: Wall clock in seconds (injectable for tests).
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        prefix: str = "agent_metrics",
        retention_s: float = 3600.0,
        gauge_ttl_s: int = 7 * 24 * 60 * 60,
        thresholds: AlertThresholds | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._prefix = prefix
        self._retention_s = retention_s
        self._gauge_ttl_s = gauge_ttl_s
        self._thresholds = thresholds or AlertThresholds()
        self._clock = clock
        self._depth_source: Callable[[], Awaitable[int]] | None = None

        self.registry = CollectorRegistry()
        self.response_time = Histogram(
            "agent_response_time_ms",
            "Agent response time in milliseconds",
            buckets=RESPONSE_TIME_BUCKETS_MS,
            registry=self.registry,
        )
        self.cache_lookups = Counter(
            "agent_cache_lookups",
            "Response cache lookups",
            labelnames=["category", "result"],
            registry=self.registry,
        )
        self.queue_depth = Gauge(
            "agent_queue_depth",
            "Pending dispatch jobs",
            labelnames=["tier"],
            registry=self.registry,
        )
        self.queue_wait = Histogram(
            "agent_queue_wait_ms",
            "Time between job submission and start",
            buckets=(10, 50, 100, 500, 1000, 5000, 30000),
            registry=self.registry,
        )
        self.stream_chunk_latency = Histogram(
            "agent_stream_chunk_latency_ms",
            "Stream chunk latency in milliseconds",
            labelnames=["position"],
            buckets=STREAM_LATENCY_BUCKETS_MS,
            registry=self.registry,
        )
        self.errors = Counter(
            "agent_pipeline_errors",
            "Pipeline errors by type",
            labelnames=["type"],
            registry=self.registry,
        )

    @classmethod
    def from_settings(cls, store: KeyValueStore) -> MetricsCollector:
        from agent_pipeline.core.config import get_settings

        s = get_settings()
        return cls(
            store,
            prefix=s.METRICS_PREFIX,
            retention_s=s.METRICS_RETENTION_S,
            gauge_ttl_s=s.METRICS_TTL_S,
            thresholds=AlertThresholds(
                response_time_p99_ms=s.ALERT_RESPONSE_TIME_P99_MS,
                cache_hit_rate_low=s.ALERT_CACHE_HIT_RATE_LOW,
                queue_depth_high=s.ALERT_QUEUE_DEPTH_HIGH,
            ),
        )

    @property
    def thresholds(self) -> AlertThresholds:
        return self._thresholds

    def attach_depth_source(self, source: Callable[[], Awaitable[int]]) -> None:
        """Read current queue depth from ``source`` instead of the last stored gauge."""
        self._depth_source = source

    def _key(self, *parts: object) -> str:
        return ":".join([self._prefix, *(str(p) for p in parts)])

    # ── Series helpers ─────────────────────────────────────────────

    async def _append(self, series: str, value: float, labels: dict[str, str] | None = None) -> None:
        now = self._clock()
        key = self._key(series, "series")
        sample = MetricSample(timestamp=now, value=value, labels=labels or {})
        await self._store.append_to_series(key, now, sample.encode())
        await self._store.prune_series_below(key, now - self._retention_s)

    async def _read_series(
        self, series: str, start: float | None = None, end: float | None = None
    ) -> list[MetricSample]:
        now = self._clock()
        lo = now - self._retention_s if start is None else start
        hi = now if end is None else end
        raw = await self._store.query_series(self._key(series, "series"), lo, hi)
        return [MetricSample.decode(r) for r in raw]

    async def _read_number(self, *parts: object) -> float:
        raw = await self._store.get(self._key(*parts))
        return float(raw) if raw else 0.0

    # ── Recording ──────────────────────────────────────────────────

    async def record_response_time(self, ms: float, labels: dict[str, Any] | None = None) -> None:
        """Raw sample plus every cumulative bucket with boundary >= ``ms``."""
        self.response_time.observe(ms)
        label_str = _labels_to_string(labels)
        try:
            for bucket in RESPONSE_TIME_BUCKETS_MS:
                if ms <= bucket:
                    await self._store.increment(self._key("response_times", "bucket", bucket, label_str), 1)
            await self._append(
                "response_times", ms, {k: str(v) for k, v in (labels or {}).items() if v is not None}
            )
            await self._store.increment(self._key("requests", label_str), 1)
            await self._store.increment(self._key("requests", "total"), 1)
        except _STORE_ERRORS as exc:
            logger.warning("metrics_record_failed", metric="response_time", error=str(exc))

    async def record_cache_hit(self, hit: bool, category: str) -> None:
        result = "hits" if hit else "misses"
        self.cache_lookups.labels(category=category, result=result).inc()
        try:
            await self._store.increment(self._key("cache", result, category), 1)
            await self._store.increment(self._key("cache", result, "total"), 1)
        except _STORE_ERRORS as exc:
            logger.warning("metrics_record_failed", metric="cache", error=str(exc))

    async def record_queue_depth(self, depth: int, tier: str) -> None:
        self.queue_depth.labels(tier=tier).set(depth)
        try:
            await self._store.set(self._key("queue_depth", tier), str(depth), self._gauge_ttl_s)
            if tier == "total":
                await self._append("queue_depth", depth)
        except _STORE_ERRORS as exc:
            logger.warning("metrics_record_failed", metric="queue_depth", error=str(exc))

    async def record_queue_wait(self, wait_ms: float) -> None:
        self.queue_wait.observe(wait_ms)
        try:
            await self._append("queue_wait", wait_ms)
        except _STORE_ERRORS as exc:
            logger.warning("metrics_record_failed", metric="queue_wait", error=str(exc))

    async def record_stream_chunk(self, latency_ms: float, chunk_index: int) -> None:
        """First chunk (time to first token) is tracked apart from later chunks."""
        position = "first_chunk" if chunk_index == 0 else "chunk"
        self.stream_chunk_latency.labels(position=position).observe(latency_ms)
        try:
            await self._store.increment(self._key("stream", position, "sum"), latency_ms)
            await self._store.increment(self._key("stream", position, "count"), 1)
            for bucket in STREAM_LATENCY_BUCKETS_MS:
                if latency_ms <= bucket:
                    await self._store.increment(self._key("stream", "bucket", bucket), 1)
        except _STORE_ERRORS as exc:
            logger.warning("metrics_record_failed", metric="stream_chunk", error=str(exc))

    async def record_error(self, error_type: str) -> None:
        self.errors.labels(type=error_type).inc()
        try:
            await self._store.increment(self._key("errors", error_type), 1)
            await self._store.increment(self._key("errors", "total"), 1)
        except _STORE_ERRORS as exc:
            logger.warning("metrics_record_failed", metric="error", error=str(exc))

    # ── Derived values ─────────────────────────────────────────────

    @staticmethod
    def calculate_percentile(sorted_values: list[float], p: float) -> float:
        """Nearest-rank percentile: index ``ceil(p/100 * n) - 1`` clamped to the list."""
        n = len(sorted_values)
        if n == 0:
            return 0
        index = math.ceil(p / 100 * n) - 1
        return sorted_values[max(0, min(index, n - 1))]

    @staticmethod
    def _throughput(samples: list[MetricSample]) -> float:
        if len(samples) < 2:
            return 0.0
        duration = samples[-1].timestamp - samples[0].timestamp
        return len(samples) / duration if duration > 0 else 0.0

    def _processing_rate(self, samples: list[MetricSample], window_s: float = 60.0) -> float:
        cutoff = self._clock() - window_s
        return sum(1 for s in samples if s.timestamp > cutoff) / window_s

    async def get_metrics(self) -> MetricsSummary:
        try:
            samples = await self._read_series("response_times")
            values = sorted(s.value for s in samples)
            hits = int(await self._read_number("cache", "hits", "total"))
            misses = int(await self._read_number("cache", "misses", "total"))
            if self._depth_source is not None:
                depth = await self._depth_source()
            else:
                depth = int(await self._read_number("queue_depth", "total"))
            waits = await self._read_series("queue_wait")
            total_requests = int(await self._read_number("requests", "total"))
        except _STORE_ERRORS as exc:
            logger.error("metrics_summary_failed", error=str(exc))
            return MetricsSummary()

        lookups = hits + misses
        return MetricsSummary(
            response_time={
                "p50": self.calculate_percentile(values, 50),
                "p90": self.calculate_percentile(values, 90),
                "p99": self.calculate_percentile(values, 99),
                "avg": sum(values) / len(values) if values else 0.0,
            },
            throughput={
                "requests_per_second": self._throughput(samples),
                "total_requests": total_requests,
            },
            cache={
                "hit_rate": hits / lookups if lookups > 0 else 0.0,
                "total_hits": hits,
                "total_misses": misses,
            },
            queue={
                "current_depth": depth,
                "avg_wait_time_ms": sum(w.value for w in waits) / len(waits) if waits else 0.0,
                "processing_rate": self._processing_rate(samples),
            },
        )

    async def get_historical_metrics(self, start: datetime, end: datetime) -> list[dict[str, Any]]:
        try:
            samples = await self._read_series("response_times", start.timestamp(), end.timestamp())
        except _STORE_ERRORS as exc:
            logger.error("metrics_history_failed", error=str(exc))
            return []
        return [
            {
                "metric": "response_time",
                "data": [
                    {"timestamp": datetime.fromtimestamp(s.timestamp, tz=UTC).isoformat(), "value": s.value}
                    for s in samples
                ],
            }
        ]

    async def get_alert_status(self) -> list[AlertState]:
        """Evaluate every alert against the current summary; nothing is persisted."""
        summary = await self.get_metrics()
        now = datetime.fromtimestamp(self._clock(), tz=UTC)
        t = self._thresholds
        alerts: list[AlertState] = []

        p99 = summary.response_time["p99"]
        firing = p99 > t.response_time_p99_ms
        alerts.append(AlertState(
            name="response_time_p99",
            severity=AlertSeverity.CRITICAL,
            status=AlertStatus.FIRING if firing else AlertStatus.RESOLVED,
            value=p99,
            threshold=t.response_time_p99_ms,
            message=(
                f"P99 response time ({p99}ms) exceeds threshold ({t.response_time_p99_ms}ms)"
                if firing
                else "P99 response time is within threshold"
            ),
            triggered_at=now if firing else None,
        ))

        hit_rate = summary.cache["hit_rate"]
        firing = hit_rate < t.cache_hit_rate_low
        alerts.append(AlertState(
            name="cache_hit_rate_low",
            severity=AlertSeverity.WARNING,
            status=AlertStatus.FIRING if firing else AlertStatus.RESOLVED,
            value=hit_rate,
            threshold=t.cache_hit_rate_low,
            message=(
                f"Cache hit rate ({hit_rate * 100:.1f}%) is below threshold ({t.cache_hit_rate_low * 100:.0f}%)"
                if firing
                else "Cache hit rate is within threshold"
            ),
            triggered_at=now if firing else None,
        ))

        depth = summary.queue["current_depth"]
        firing = depth > t.queue_depth_high
        alerts.append(AlertState(
            name="queue_depth_high",
            severity=AlertSeverity.WARNING,
            status=AlertStatus.FIRING if firing else AlertStatus.RESOLVED,
            value=depth,
            threshold=t.queue_depth_high,
            message=(
                f"Queue depth ({depth}) exceeds threshold ({t.queue_depth_high})"
                if firing
                else "Queue depth is within threshold"
            ),
            triggered_at=now if firing else None,
        ))

        return alerts

    def export_prometheus(self) -> bytes:
        """Prometheus text exposition for this collector's registry."""
        return generate_latest(self.registry)
