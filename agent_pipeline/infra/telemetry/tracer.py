"""
Tracing — OpenTelemetry Spans for Pipeline Operations
========================================================

Wraps the OpenTelemetry API so pipeline code can open spans with one call:

    tracer = get_tracer(__name__)

    async def cache_or_fetch(...):
        with tracer.span("cache.cache_or_fetch", attributes={"category": cat}) as span:
            ...
            span.set_attribute("from_cache", True)

Without an SDK/exporter configured by the host application the OpenTelemetry
API hands out non-recording spans, so tracing costs next to nothing in tests
and local runs.
"""

from __future__ import annotations

from collections.abc import Generator
from contextlib import contextmanager
from typing import Any

from opentelemetry import trace as otel_trace
from opentelemetry.trace import Span, Status, StatusCode

_KINDS = {
    "internal": otel_trace.SpanKind.INTERNAL,
    "server": otel_trace.SpanKind.SERVER,
    "client": otel_trace.SpanKind.CLIENT,
    "producer": otel_trace.SpanKind.PRODUCER,
    "consumer": otel_trace.SpanKind.CONSUMER,
}

def _clean(attributes: dict[str, Any] | None) -> dict[str, Any]:
    # OTel only accepts primitive attribute values; drop Nones, stringify the rest
    if not attributes:
        return {}
    cleaned: dict[str, Any] = {}
    for key, value in attributes.items():
        if value is None:
            continue
        cleaned[key] = value if isinstance(value, (str, bool, int, float)) else str(value)
    return cleaned

class Tracer:
    """Named tracer with a context-manager span helper."""

    def __init__(self, name: str):
        self._name = name
        self._tracer = otel_trace.get_tracer(name)

    @property
    def name(self) -> str:
        return self._name

    @contextmanager
    def span(
        self,
        name: str,
        *,
        attributes: dict[str, Any] | None = None,
        kind: str = "internal",
    ) -> Generator[Span, None, None]:
        """
        Open a span as the current span.

        Exceptions are recorded on the span, the status set to ERROR, and the
        exception re-raised unchanged.
        """
        with self._tracer.start_as_current_span(
            name,
            kind=_KINDS.get(kind, otel_trace.SpanKind.INTERNAL),
            attributes=_clean(attributes),
            record_exception=False,
            set_status_on_exception=False,
        ) as span:
            try:
                yield span
            except BaseException as exc:
                span.record_exception(exc)
                span.set_status(Status(StatusCode.ERROR, type(exc).__name__))
                raise

def get_tracer(name: str) -> Tracer:
    return Tracer(name)
