"""
Priority Dispatch Queue — Tiered Scheduling of Agent Requests
================================================================

Classifies inbound agent requests into priority tiers and submits them to a
priority-ordered job engine:

  system_check                 → CRITICAL (1)    LIFO
  direct_chat, status_query    → HIGH (20)
  task_update                  → NORMAL (50)
  bulk_report                  → LOW (80)
  background_task              → BATCH (100)

Dynamic priority (applied at submission):
  - Age boost: 1 point per elapsed second since creation, capped at 30
  - VIP boost: 20 points for requesters in the VIP set
  - Result clamped to [1, 100]; boosts only ever lower the value

Lanes carry a fairness weight and concurrency ceiling per tier. They are
reported for capacity planning; enforcement belongs to the job engine.
"""

from __future__ import annotations

import math
import threading
import time
import uuid
from collections.abc import Callable, Iterable
from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any

from agent_pipeline.core.interfaces import Job, JobQueueEngine
from agent_pipeline.core.types import PriorityLevel, RequestType, clamp_priority
from agent_pipeline.infra.telemetry.logger import get_logger
from agent_pipeline.infra.telemetry.tracer import get_tracer

if TYPE_CHECKING:
    from agent_pipeline.infra.telemetry.metrics import MetricsCollector

logger = get_logger(__name__)
tracer = get_tracer(__name__)

MAX_AGE_BOOST = 30
VIP_BOOST = 20

PRIORITY_BY_TYPE: dict[str, PriorityLevel] = {
    RequestType.SYSTEM_CHECK: PriorityLevel.CRITICAL,
    RequestType.DIRECT_CHAT: PriorityLevel.HIGH,
    RequestType.STATUS_QUERY: PriorityLevel.HIGH,
    RequestType.TASK_UPDATE: PriorityLevel.NORMAL,
    RequestType.BULK_REPORT: PriorityLevel.LOW,
    RequestType.BACKGROUND_TASK: PriorityLevel.BATCH,
}

@dataclass
class DispatchRequest:
    """An agent request awaiting dispatch. Only ``computed_priority`` changes."""

    type: str
    agent_id: str
    workspace_id: str | None = None
    requester_id: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: float = field(default_factory=time.time)
    computed_priority: int | None = None

    def to_payload(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> DispatchRequest:
        return cls(**data)

@dataclass(frozen=True)
class LaneConfig:
    weight: int
    max_concurrency: int

DEFAULT_LANES: dict[PriorityLevel, LaneConfig] = {
    PriorityLevel.CRITICAL: LaneConfig(weight=10, max_concurrency=10),
    PriorityLevel.HIGH: LaneConfig(weight=5, max_concurrency=20),
    PriorityLevel.NORMAL: LaneConfig(weight=3, max_concurrency=10),
    PriorityLevel.LOW: LaneConfig(weight=2, max_concurrency=5),
    PriorityLevel.BATCH: LaneConfig(weight=1, max_concurrency=2),
}

@dataclass
class QueueStats:
    total_pending: int = 0
    by_priority_tier: dict[str, int] = field(default_factory=dict)
    average_wait_time_ms: float = 0.0
    processing_rate: float = 0.0
    estimated_wait_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalPending": self.total_pending,
            "byPriorityTier": dict(self.by_priority_tier),
            "averageWaitTimeMs": round(self.average_wait_time_ms, 2),
            "processingRate": round(self.processing_rate, 4),
            "estimatedWaitMs": round(self.estimated_wait_ms, 2),
        }

def tier_for_priority(value: int) -> PriorityLevel:
    """Lane owning a numeric priority: the most urgent tier whose base is >= value."""
    for tier in sorted(PriorityLevel):
        if value <= tier:
            return tier
    return PriorityLevel.BATCH

class PriorityDispatchQueue:
    """
    Classifies requests and submits them to the job engine.

    The VIP set is instance-owned and guarded by a ``threading.Lock`` so it
    can be updated from admin handlers while requests are being scored.
    """

    def __init__(
        self,
        engine: JobQueueEngine,
        metrics: MetricsCollector | None = None,
        *,
        vip_users: Iterable[str] = (),
        lanes: dict[PriorityLevel, LaneConfig] | None = None,
        wait_sample_size: int = 100,
        rate_window_s: float = 60.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._engine = engine
        self._metrics = metrics
        self._lanes = lanes or DEFAULT_LANES
        self._wait_sample_size = wait_sample_size
        self._rate_window_s = rate_window_s
        self._rate_history_limit = 1000
        self._clock = clock
        self._vip_users: set[str] = set(vip_users)
        self._vip_lock = threading.Lock()
        if metrics is not None:
            metrics.attach_depth_source(self.current_depth)

    @classmethod
    def from_settings(cls, engine: JobQueueEngine, metrics: MetricsCollector | None = None) -> PriorityDispatchQueue:
        from agent_pipeline.core.config import get_settings

        s = get_settings()
        return cls(
            engine,
            metrics,
            vip_users=s.VIP_USERS,
            wait_sample_size=s.QUEUE_WAIT_SAMPLE_SIZE,
            rate_window_s=s.QUEUE_RATE_WINDOW_S,
        )

    # ── VIP registry ───────────────────────────────────────────────

    def add_vip(self, user_id: str) -> None:
        with self._vip_lock:
            self._vip_users.add(user_id)

    def remove_vip(self, user_id: str) -> None:
        with self._vip_lock:
            self._vip_users.discard(user_id)

    def is_vip(self, user_id: str | None) -> bool:
        if not user_id:
            return False
        with self._vip_lock:
            return user_id in self._vip_users

    # ── Priority ───────────────────────────────────────────────────

    @staticmethod
    def calculate_priority(request: DispatchRequest) -> PriorityLevel:
        return PRIORITY_BY_TYPE.get(request.type, PriorityLevel.NORMAL)

    def apply_dynamic_priority(self, request: DispatchRequest, base_priority: int) -> int:
        age_s = self._clock() - request.created_at
        age_boost = min(max(math.floor(age_s), 0), MAX_AGE_BOOST)
        priority = base_priority - age_boost
        if self.is_vip(request.requester_id):
            priority -= VIP_BOOST
        return clamp_priority(priority)

    # ── Submission ─────────────────────────────────────────────────

    async def enqueue(self, request: DispatchRequest, override_priority: int | None = None) -> str:
        """Submit ``request``; returns the engine's job id."""
        base = self.calculate_priority(request)
        if override_priority is not None:
            priority = clamp_priority(override_priority)
        else:
            priority = self.apply_dynamic_priority(request, base)
        request.computed_priority = priority
        # Newest-first for self-superseding critical events
        lifo = base is PriorityLevel.CRITICAL

        with tracer.span(
            "queue.enqueue",
            attributes={"request_type": str(request.type), "priority": priority, "lifo": lifo},
        ):
            job = await self._engine.submit(
                str(request.type),
                request.to_payload(),
                priority=priority,
                lifo=lifo,
                job_id=request.id,
            )

        logger.info(
            "request_enqueued",
            job_id=job.id,
            request_type=str(request.type),
            agent_id=request.agent_id,
            priority=priority,
            tier=tier_for_priority(priority).name,
            lifo=lifo,
        )
        await self.report_depth()
        return job.id

    async def requeue(self, job_id: str, new_priority: int) -> str | None:
        """Resubmit a waiting job at ``new_priority``; no-op once it has started."""
        pending = await self._engine.list_pending()
        job = next((j for j in pending if j.id == job_id), None)
        if job is None or not await self._engine.remove(job_id):
            logger.warning("requeue_skipped_not_pending", job_id=job_id)
            return None

        priority = clamp_priority(new_priority)
        payload = dict(job.payload)
        payload["computed_priority"] = priority
        payload["id"] = uuid.uuid4().hex
        replacement = await self._engine.submit(
            job.type, payload, priority=priority, lifo=job.lifo, job_id=payload["id"]
        )
        logger.info(
            "request_requeued",
            old_job_id=job_id,
            job_id=replacement.id,
            old_priority=job.priority,
            priority=priority,
        )
        await self.report_depth()
        return replacement.id

    async def current_depth(self) -> int:
        return len(await self._engine.list_pending())

    async def report_depth(self) -> None:
        """Push per-tier and total pending counts to the metrics gauges."""
        if self._metrics is None:
            return
        counts = self._count_by_tier(await self._engine.list_pending())
        for tier, count in counts.items():
            await self._metrics.record_queue_depth(count, tier)
        await self._metrics.record_queue_depth(sum(counts.values()), "total")

    @staticmethod
    def _count_by_tier(jobs: list[Job]) -> dict[str, int]:
        counts = {tier.name: 0 for tier in PriorityLevel}
        for job in jobs:
            counts[tier_for_priority(job.priority).name] += 1
        return counts

    # ── Stats ──────────────────────────────────────────────────────

    async def get_queue_stats(self) -> QueueStats:
        pending = await self._engine.list_pending()
        history = await self._engine.list_completed(self._rate_history_limit)
        sample = history[: self._wait_sample_size]

        waits = [w for w in (job.wait_time_ms for job in sample) if w is not None]
        cutoff = self._clock() - self._rate_window_s
        recent = sum(1 for job in history if job.finished_at is not None and job.finished_at >= cutoff)
        rate = recent / self._rate_window_s

        return QueueStats(
            total_pending=len(pending),
            by_priority_tier=self._count_by_tier(pending),
            average_wait_time_ms=sum(waits) / len(waits) if waits else 0.0,
            processing_rate=rate,
            estimated_wait_ms=(len(pending) / rate) * 1000 if rate > 0 else 0.0,
        )

    async def get_lane_stats(self) -> dict[str, dict[str, int]]:
        counts = self._count_by_tier(await self._engine.list_pending())
        return {
            tier.name: {
                "priority": int(tier),
                "weight": lane.weight,
                "maxConcurrency": lane.max_concurrency,
                "pending": counts.get(tier.name, 0),
            }
            for tier, lane in self._lanes.items()
        }
