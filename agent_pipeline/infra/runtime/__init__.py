"""
Runtime Layer — Dispatch, Streaming and Request Flow
======================================================

Provides:
  - PriorityDispatchQueue: tiered, dynamically aged request scheduling
  - InMemoryJobQueue: single-process priority job engine with a drain loop
  - StreamDelivery: cancellable token streaming to one client
  - SSETransport / RedisPublisher: client and broadcast delivery adapters
  - ResponsePipeline: cache → classify → stream or enqueue
"""

from agent_pipeline.infra.runtime.engine import InMemoryJobQueue
from agent_pipeline.infra.runtime.pipeline import PipelineResult, ResponseOutcome, ResponsePipeline
from agent_pipeline.infra.runtime.queue import (
    DEFAULT_LANES,
    DispatchRequest,
    LaneConfig,
    PriorityDispatchQueue,
    QueueStats,
    tier_for_priority,
)
from agent_pipeline.infra.runtime.streamer import StreamConfig, StreamDelivery, StreamSession
from agent_pipeline.infra.runtime.transport import (
    DetachedTransport,
    RedisPublisher,
    SSETransport,
    sse_event,
)

__all__ = [
    "DEFAULT_LANES",
    "DetachedTransport",
    "DispatchRequest",
    "InMemoryJobQueue",
    "LaneConfig",
    "PipelineResult",
    "PriorityDispatchQueue",
    "QueueStats",
    "RedisPublisher",
    "ResponseOutcome",
    "ResponsePipeline",
    "SSETransport",
    "StreamConfig",
    "StreamDelivery",
    "StreamSession",
    "sse_event",
    "tier_for_priority",
]
