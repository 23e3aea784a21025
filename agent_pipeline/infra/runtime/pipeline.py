"""
Response Pipeline — Request Control Flow
===========================================

Wires the response cache, dispatch queue and stream delivery into the
lifecycle every inbound agent request follows:

  LOOKUP → (hit)  RESPOND from cache
         → (miss) CLASSIFY → STREAM (interactive, client attached)
                           → ENQUEUE (everything else; drained by ``process_job``)

Streamed and drained answers are written back into the cache through
the cache's shared fetch, so concurrent misses for the same question share one
completion. The pipeline owns no policy of its own.
"""

from __future__ import annotations

import time
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from agent_pipeline.core.exceptions import StreamAbortedError, StreamTimeoutError
from agent_pipeline.core.interfaces import ClientTransport, Job
from agent_pipeline.core.types import CacheCategory, RequestType
from agent_pipeline.infra.cache.response_cache import (
    CacheContext,
    CacheOrFetchResult,
    FetchResult,
    ResponseCache,
)
from agent_pipeline.infra.runtime.queue import DispatchRequest, PriorityDispatchQueue
from agent_pipeline.infra.runtime.streamer import StreamDelivery
from agent_pipeline.infra.runtime.transport import DetachedTransport
from agent_pipeline.infra.telemetry.logger import get_logger, set_request_context

if TYPE_CHECKING:
    from agent_pipeline.infra.telemetry.metrics import MetricsCollector

logger = get_logger(__name__)

INTERACTIVE_TYPES: frozenset[str] = frozenset({RequestType.DIRECT_CHAT, RequestType.STATUS_QUERY})

# Times a joiner may take over a shared stream whose leader went away
MAX_LEADER_HANDOFFS = 3

class ResponseOutcome(StrEnum):
    CACHED = "cached"
    STREAMED = "streamed"
    QUEUED = "queued"

@dataclass
class PipelineResult:
    outcome: ResponseOutcome
    category: CacheCategory
    response: str | None = None
    job_id: str | None = None
    latency_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "category": self.category.value,
            "response": self.response,
            "jobId": self.job_id,
            "latencyMs": round(self.latency_ms, 2),
        }

class ResponsePipeline:
    """
    Coordinates cache, queue and streaming for one process.

    Request payloads carry ``prompt`` and optionally ``system_context``,
    ``project_id`` and ``conversation_id``.
    """

    def __init__(
        self,
        cache: ResponseCache,
        queue: PriorityDispatchQueue,
        streamer: StreamDelivery,
        metrics: MetricsCollector | None = None,
        *,
        interactive_types: Iterable[str] = INTERACTIVE_TYPES,
    ) -> None:
        self.cache = cache
        self.queue = queue
        self.streamer = streamer
        self.metrics = metrics
        self._interactive_types = frozenset(interactive_types)

    @staticmethod
    def _context(request: DispatchRequest) -> CacheContext:
        return CacheContext(
            owner_id=request.agent_id,
            project_context_id=request.payload.get("project_id"),
            scope_id=request.workspace_id,
        )

    async def handle(
        self, request: DispatchRequest, transport: ClientTransport | None = None
    ) -> PipelineResult:
        set_request_context(request_id=request.id, user_id=request.requester_id, tenant_id=request.workspace_id)
        started = time.monotonic()
        query = request.payload["prompt"]
        context = self._context(request)

        cached = await self.cache.lookup(query, context)
        if cached is not None:
            latency_ms = (time.monotonic() - started) * 1000
            if transport is not None:
                await self._deliver_cached(transport, request, cached.response)
            await self._record(latency_ms, request, "cache")
            logger.info("request_served_from_cache", request_type=str(request.type), category=cached.category.value)
            return PipelineResult(
                outcome=ResponseOutcome.CACHED,
                category=cached.category,
                response=cached.response,
                latency_ms=latency_ms,
            )

        if transport is not None and request.type in self._interactive_types:
            streamed: list[bool] = []
            result = await self._lead_or_join(request, transport, streamed)
            if not streamed:
                # Joined another client's in-flight stream; replay its answer here
                await self._deliver_cached(transport, request, result.response)
            latency_ms = (time.monotonic() - started) * 1000
            return PipelineResult(
                outcome=ResponseOutcome.STREAMED if streamed else ResponseOutcome.CACHED,
                category=result.category,
                response=result.response,
                latency_ms=latency_ms,
            )

        job_id = await self.queue.enqueue(request)
        return PipelineResult(
            outcome=ResponseOutcome.QUEUED,
            category=self.cache.detect_category(query),
            job_id=job_id,
            latency_ms=(time.monotonic() - started) * 1000,
        )

    async def process_job(self, job: Job) -> dict[str, Any]:
        """Drain handler: completes a queued request and caches the answer."""
        request = DispatchRequest.from_payload(job.payload)
        set_request_context(request_id=request.id, user_id=request.requester_id, tenant_id=request.workspace_id)
        if self.metrics is not None:
            if job.wait_time_ms is not None:
                await self.metrics.record_queue_wait(job.wait_time_ms)
            # The job has left the pending set
            await self.queue.report_depth()
        result = await self._stream_through_cache(request, DetachedTransport())
        return {"response": result.response, "fromCache": result.from_cache}

    async def _lead_or_join(
        self, request: DispatchRequest, transport: ClientTransport, streamed: list[bool]
    ) -> CacheOrFetchResult:
        """
        Stream to ``transport``, or wait on an identical stream already running.

        A joined stream belongs to another client; if that client leaves or
        times out, a still-connected joiner takes over as the new leader.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                return await self._stream_through_cache(request, transport, shared_only=True, streamed=streamed)
            except (StreamAbortedError, StreamTimeoutError) as exc:
                if streamed or not transport.connected or attempt == MAX_LEADER_HANDOFFS:
                    raise
                logger.info("shared_stream_lost_leader", code=exc.code, attempt=attempt)

    async def _stream_through_cache(
        self,
        request: DispatchRequest,
        transport: ClientTransport,
        *,
        shared_only: bool = False,
        streamed: list[bool] | None = None,
    ) -> CacheOrFetchResult:
        async def fetch() -> FetchResult:
            if streamed is not None:
                streamed.append(True)
            end = await self.streamer.stream_response(
                transport,
                prompt=request.payload["prompt"],
                system_context=request.payload.get("system_context"),
                agent_id=request.agent_id,
                conversation_id=request.payload.get("conversation_id"),
                workspace_id=request.workspace_id,
                requester_id=request.requester_id,
            )
            return FetchResult(response=end["fullResponse"], latency_ms=end["totalTimeMs"])

        query, context = request.payload["prompt"], self._context(request)
        if shared_only:
            # Lookup already done by the caller
            return await self.cache.fetch_shared(query, context, fetch)
        return await self.cache.cache_or_fetch(query, context, fetch)

    @staticmethod
    async def _deliver_cached(transport: ClientTransport, request: DispatchRequest, response: str) -> None:
        # Same event shapes as a live stream, in a single chunk
        if not transport.connected:
            return
        message_id = f"cached-{request.id}"
        await transport.send("start", {
            "messageId": message_id,
            "agentId": request.agent_id,
            "timestamp": datetime.now(UTC).isoformat(),
        })
        await transport.send("chunk", {"messageId": message_id, "chunk": response, "index": 0, "isLast": True})
        await transport.send("end", {
            "messageId": message_id,
            "totalChunks": 1,
            "totalTimeMs": 0,
            "fullResponse": response,
        })

    async def _record(self, latency_ms: float, request: DispatchRequest, source: str) -> None:
        if self.metrics is not None:
            await self.metrics.record_response_time(latency_ms, {"request_type": str(request.type), "source": source})
