"""
Telemetry Layer — Unified Observability
========================================

All other layers depend on this.

Provides:
  - Structured logging with request-scoped context
  - Distributed tracing (OpenTelemetry)
  - Pipeline metrics with percentiles and alerting (store-backed, Prometheus mirror)

Usage:
    from agent_pipeline.infra.telemetry import get_logger, get_tracer

    logger = get_logger(__name__)
    with get_tracer(__name__).span("my_operation") as span:
        span.set_attribute("agent_id", agent_id)
        logger.info("completed", chunks=12)
"""

from agent_pipeline.infra.telemetry.logger import (
    StructuredLogger,
    clear_request_context,
    get_logger,
    set_request_context,
    setup_logging,
)
from agent_pipeline.infra.telemetry.metrics import (
    AlertState,
    AlertThresholds,
    MetricSample,
    MetricsCollector,
    MetricsSummary,
)
from agent_pipeline.infra.telemetry.tracer import Tracer, get_tracer

__all__ = [
    "AlertState",
    "AlertThresholds",
    "MetricSample",
    "MetricsCollector",
    "MetricsSummary",
    "StructuredLogger",
    "Tracer",
    "clear_request_context",
    "get_logger",
    "get_tracer",
    "set_request_context",
    "setup_logging",
]
