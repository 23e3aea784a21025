"""
Metrics Collector — Unit Tests
==============================

Percentiles, cumulative buckets, retention, alert evaluation and the
degraded behaviour when the shared store is unreachable.
"""

from datetime import UTC, datetime

import pytest

from agent_pipeline.core.types import AlertSeverity, AlertStatus
from agent_pipeline.infra.telemetry.metrics import (
    AlertThresholds,
    MetricSample,
    MetricsCollector,
    MetricsSummary,
)
from tests.conftest import FailingStore


def _alert(alerts, name):
    return next(a for a in alerts if a.name == name)


class TestPercentile:
    def test_empty(self):
        assert MetricsCollector.calculate_percentile([], 99) == 0

    def test_nearest_rank(self):
        values = [float(v) for v in range(1, 101)]
        assert MetricsCollector.calculate_percentile(values, 50) == 50.0
        assert MetricsCollector.calculate_percentile(values, 90) == 90.0
        assert MetricsCollector.calculate_percentile(values, 99) == 99.0

    def test_ten_values_median(self):
        assert MetricsCollector.calculate_percentile([float(v) for v in range(1, 11)], 50) == 5.0

    def test_small_list(self):
        assert MetricsCollector.calculate_percentile([10.0, 20.0, 30.0], 50) == 20.0
        assert MetricsCollector.calculate_percentile([10.0, 20.0, 30.0], 99) == 30.0
        assert MetricsCollector.calculate_percentile([10.0], 0) == 10.0


class TestSampleEncoding:
    def test_identical_samples_encode_differently(self):
        sample = MetricSample(timestamp=1.0, value=5.0)
        assert sample.encode() != sample.encode()

    def test_decode(self):
        raw = MetricSample(timestamp=1.5, value=250.0, labels={"agent_id": "a1"}).encode()
        decoded = MetricSample.decode(raw)
        assert decoded.timestamp == 1.5
        assert decoded.value == 250.0
        assert decoded.labels == {"agent_id": "a1"}


class TestRecording:
    @pytest.mark.asyncio
    async def test_cumulative_buckets(self, metrics, store):
        await metrics.record_response_time(400)

        for bucket in (100, 250):
            assert await store.get(f"agent_metrics:response_times:bucket:{bucket}:unlabeled") is None
        for bucket in (500, 1000, 2000, 3000, 5000):
            assert await store.get(f"agent_metrics:response_times:bucket:{bucket}:unlabeled") == "1"

    @pytest.mark.asyncio
    async def test_labelled_counters(self, metrics, store):
        await metrics.record_response_time(90, {"agent_id": "a1", "source": "cache"})

        assert await store.get("agent_metrics:response_times:bucket:100:agent_id=a1,source=cache") == "1"
        assert await store.get("agent_metrics:requests:agent_id=a1,source=cache") == "1"
        assert await store.get("agent_metrics:requests:total") == "1"

    @pytest.mark.asyncio
    async def test_cache_counters(self, metrics, store):
        await metrics.record_cache_hit(True, "status")
        await metrics.record_cache_hit(False, "status")
        await metrics.record_cache_hit(False, "help")

        assert await store.get("agent_metrics:cache:hits:status") == "1"
        assert await store.get("agent_metrics:cache:misses:status") == "1"
        assert await store.get("agent_metrics:cache:misses:total") == "2"

    @pytest.mark.asyncio
    async def test_queue_depth_gauge(self, metrics, store):
        await metrics.record_queue_depth(7, "HIGH")
        await metrics.record_queue_depth(12, "total")

        assert await store.get("agent_metrics:queue_depth:HIGH") == "7"
        assert (await metrics.get_metrics()).queue["current_depth"] == 12

    @pytest.mark.asyncio
    async def test_stream_chunks(self, metrics, store):
        await metrics.record_stream_chunk(120.0, 0)
        await metrics.record_stream_chunk(40.0, 1)
        await metrics.record_stream_chunk(60.0, 2)

        assert await store.get("agent_metrics:stream:first_chunk:count") == "1"
        assert await store.get("agent_metrics:stream:first_chunk:sum") == "120"
        assert await store.get("agent_metrics:stream:chunk:count") == "2"
        assert await store.get("agent_metrics:stream:bucket:50") == "1"
        assert await store.get("agent_metrics:stream:bucket:250") == "3"

    @pytest.mark.asyncio
    async def test_errors(self, metrics, store):
        await metrics.record_error("provider_error")
        await metrics.record_error("stream_aborted")

        assert await store.get("agent_metrics:errors:provider_error") == "1"
        assert await store.get("agent_metrics:errors:total") == "2"


class TestSummary:
    @pytest.mark.asyncio
    async def test_empty_summary(self, metrics):
        summary = await metrics.get_metrics()
        assert summary.response_time == {"p50": 0, "p90": 0, "p99": 0, "avg": 0.0}
        assert summary.throughput["requests_per_second"] == 0.0
        assert summary.cache["hit_rate"] == 0.0

    @pytest.mark.asyncio
    async def test_percentiles_and_throughput(self, metrics, clock):
        for ms in (100, 200, 300, 400):
            await metrics.record_response_time(ms)
            clock.advance(10)

        summary = await metrics.get_metrics()
        assert summary.response_time["p50"] == 200
        assert summary.response_time["p99"] == 400
        assert summary.response_time["avg"] == 250
        # 4 samples spread over 30 seconds
        assert summary.throughput["requests_per_second"] == pytest.approx(4 / 30)
        assert summary.throughput["total_requests"] == 4
        # samples at -40s, -30s, -20s, -10s all inside the last minute
        assert summary.queue["processing_rate"] == pytest.approx(4 / 60)

    @pytest.mark.asyncio
    async def test_retention_window(self, metrics, clock):
        await metrics.record_response_time(5000)
        clock.advance(3601)
        await metrics.record_response_time(100)

        summary = await metrics.get_metrics()
        assert summary.response_time["p99"] == 100

    @pytest.mark.asyncio
    async def test_queue_wait_average(self, metrics):
        await metrics.record_queue_wait(100)
        await metrics.record_queue_wait(300)
        assert (await metrics.get_metrics()).queue["avg_wait_time_ms"] == 200

    @pytest.mark.asyncio
    async def test_to_dict(self, metrics):
        await metrics.record_cache_hit(True, "help")
        payload = (await metrics.get_metrics()).to_dict()

        assert set(payload) == {"responseTime", "throughput", "cache", "queue"}
        assert payload["cache"] == {"hitRate": 1.0, "totalHits": 1, "totalMisses": 0}
        assert set(payload["queue"]) == {"currentDepth", "avgWaitTime", "processingRate"}

    @pytest.mark.asyncio
    async def test_historical(self, metrics, clock):
        start = clock()
        await metrics.record_response_time(100)
        clock.advance(10)
        await metrics.record_response_time(200)

        history = await metrics.get_historical_metrics(
            datetime.fromtimestamp(start + 5, tz=UTC), datetime.fromtimestamp(clock(), tz=UTC)
        )
        assert history[0]["metric"] == "response_time"
        assert [point["value"] for point in history[0]["data"]] == [200]


class TestAlerts:
    @pytest.mark.asyncio
    async def test_p99_firing(self, metrics):
        await metrics.record_response_time(3500)

        alert = _alert(await metrics.get_alert_status(), "response_time_p99")
        assert alert.status == AlertStatus.FIRING
        assert alert.severity == AlertSeverity.CRITICAL
        assert alert.value == 3500
        assert alert.triggered_at is not None
        assert "3500" in alert.message

    @pytest.mark.asyncio
    async def test_p99_resolved(self, metrics):
        await metrics.record_response_time(1500)

        alert = _alert(await metrics.get_alert_status(), "response_time_p99")
        assert alert.status == AlertStatus.RESOLVED
        assert alert.triggered_at is None

    @pytest.mark.asyncio
    async def test_cache_hit_rate_fires_without_traffic(self, metrics):
        alert = _alert(await metrics.get_alert_status(), "cache_hit_rate_low")
        assert alert.status == AlertStatus.FIRING
        assert alert.value == 0.0

    @pytest.mark.asyncio
    async def test_cache_hit_rate_at_threshold_resolved(self, metrics):
        for hit in (True, True, True, False, False, False, False, False, False, False):
            await metrics.record_cache_hit(hit, "help")

        alert = _alert(await metrics.get_alert_status(), "cache_hit_rate_low")
        assert alert.value == pytest.approx(0.3)
        assert alert.status == AlertStatus.RESOLVED

    @pytest.mark.asyncio
    async def test_cache_hit_rate_low(self, metrics):
        await metrics.record_cache_hit(True, "project")
        for _ in range(4):
            await metrics.record_cache_hit(False, "project")

        alert = _alert(await metrics.get_alert_status(), "cache_hit_rate_low")
        assert alert.status == AlertStatus.FIRING
        assert alert.severity == AlertSeverity.WARNING
        assert alert.value == pytest.approx(0.2)

    @pytest.mark.asyncio
    async def test_queue_depth(self, metrics):
        await metrics.record_queue_depth(150, "total")

        alert = _alert(await metrics.get_alert_status(), "queue_depth_high")
        assert alert.status == AlertStatus.FIRING
        assert alert.to_dict()["triggeredAt"] is not None

    @pytest.mark.asyncio
    async def test_custom_thresholds(self, store, clock):
        collector = MetricsCollector(
            store, clock=clock, thresholds=AlertThresholds(response_time_p99_ms=1000)
        )
        await collector.record_response_time(1500)

        alert = _alert(await collector.get_alert_status(), "response_time_p99")
        assert alert.status == AlertStatus.FIRING


class TestStoreUnavailable:
    def setup_method(self):
        self.metrics = MetricsCollector(FailingStore())

    @pytest.mark.asyncio
    async def test_recording_never_raises(self):
        await self.metrics.record_response_time(100)
        await self.metrics.record_cache_hit(True, "help")
        await self.metrics.record_queue_depth(3, "total")
        await self.metrics.record_queue_wait(10)
        await self.metrics.record_stream_chunk(5, 0)
        await self.metrics.record_error("stream_error")

    @pytest.mark.asyncio
    async def test_summary_zeroed(self):
        assert (await self.metrics.get_metrics()).to_dict() == MetricsSummary().to_dict()

    @pytest.mark.asyncio
    async def test_history_empty(self):
        now = datetime.now(UTC)
        assert await self.metrics.get_historical_metrics(now, now) == []

    @pytest.mark.asyncio
    async def test_prometheus_still_updated(self):
        await self.metrics.record_error("stream_error")
        assert b'agent_pipeline_errors_total{type="stream_error"} 1.0' in self.metrics.export_prometheus()


class TestPrometheus:
    @pytest.mark.asyncio
    async def test_export(self, metrics):
        await metrics.record_response_time(420)
        await metrics.record_cache_hit(False, "status")

        text = metrics.export_prometheus()
        assert b"agent_response_time_ms_bucket" in text
        assert b'agent_cache_lookups_total{category="status",result="misses"} 1.0' in text

    def test_registries_are_isolated(self, store):
        a = MetricsCollector(store)
        b = MetricsCollector(store)
        assert a.registry is not b.registry
