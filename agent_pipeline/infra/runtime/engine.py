"""
In-Memory Job Engine — Priority-Ordered Work Queue
=====================================================

Single-process implementation of ``JobQueueEngine`` used for local runs and
tests. Lower priority values are served first; at equal priority, LIFO jobs
are served before FIFO jobs and the most recent LIFO job wins.

Design:
  - Heap of ``(priority, lifo-first, sequence, job_id)``; LIFO jobs use a
    negated sequence so the newest sorts first.
  - Removal of a waiting job rebuilds the heap (removals are rare).
  - Completed/failed jobs are kept in a bounded history for wait-time and
    throughput statistics.
  - Background drain loop with N workers dispatching to a handler.
"""

from __future__ import annotations

import asyncio
import contextlib
import heapq
import itertools
import time
import uuid
from collections import deque
from collections.abc import Awaitable, Callable
from typing import Any

from agent_pipeline.core.interfaces import Job, JobStatus
from agent_pipeline.infra.telemetry.logger import get_logger

logger = get_logger(__name__)

JobHandler = Callable[[Job], Awaitable[Any]]

class InMemoryJobQueue:
    """
    Priority job engine with a bounded completion history.

    Args:
        clock: Wall clock in seconds (injectable for tests).
        history_size: Completed/failed jobs retained for statistics.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.time,
        history_size: int = 1000,
    ) -> None:
        self._clock = clock
        self._heap: list[tuple[int, int, int, str]] = []
        self._jobs: dict[str, Job] = {}
        self._completed: deque[Job] = deque(maxlen=history_size)
        self._seq = itertools.count()
        self._available = asyncio.Event()
        self._running = False
        self._workers: list[asyncio.Task[None]] = []

    async def submit(
        self,
        job_type: str,
        payload: dict[str, Any],
        *,
        priority: int,
        lifo: bool = False,
        job_id: str | None = None,
    ) -> Job:
        job_id = job_id or uuid.uuid4().hex
        existing = self._jobs.get(job_id)
        if existing is not None:
            # Same id while still known: keep the original submission
            logger.debug("job_duplicate_ignored", job_id=job_id)
            return existing

        job = Job(
            id=job_id,
            type=job_type,
            payload=payload,
            priority=priority,
            lifo=lifo,
            submitted_at=self._clock(),
        )
        seq = next(self._seq)
        heapq.heappush(self._heap, (priority, 0 if lifo else 1, -seq if lifo else seq, job_id))
        self._jobs[job_id] = job
        self._available.set()
        return job

    def take(self) -> Job | None:
        """Pop the next waiting job and mark it active, or None when idle."""
        while self._heap:
            _, _, _, job_id = heapq.heappop(self._heap)
            job = self._jobs.get(job_id)
            if job is None or job.status is not JobStatus.WAITING:
                continue
            job.status = JobStatus.ACTIVE
            job.started_at = self._clock()
            job.attempts += 1
            return job
        self._available.clear()
        return None

    async def take_wait(self, timeout: float | None = None) -> Job | None:
        """Like ``take`` but waits up to ``timeout`` seconds for work."""
        job = self.take()
        if job is not None:
            return job
        try:
            await asyncio.wait_for(self._available.wait(), timeout=timeout)
        except TimeoutError:
            return None
        return self.take()

    def complete(self, job_id: str, *, failed: bool = False) -> Job | None:
        job = self._jobs.pop(job_id, None)
        if job is None:
            return None
        job.status = JobStatus.FAILED if failed else JobStatus.COMPLETED
        job.finished_at = self._clock()
        self._completed.append(job)
        return job

    async def list_pending(self) -> list[Job]:
        ordered = sorted(self._heap)
        return [
            self._jobs[entry[3]]
            for entry in ordered
            if entry[3] in self._jobs and self._jobs[entry[3]].status is JobStatus.WAITING
        ]

    async def list_active(self) -> list[Job]:
        return [job for job in self._jobs.values() if job.status is JobStatus.ACTIVE]

    async def list_completed(self, limit: int = 100) -> list[Job]:
        """Most recently finished first."""
        return list(itertools.islice(reversed(self._completed), limit))

    async def get_job(self, job_id: str) -> Job | None:
        job = self._jobs.get(job_id)
        if job is not None:
            return job
        return next((j for j in self._completed if j.id == job_id), None)

    async def remove(self, job_id: str) -> bool:
        job = self._jobs.get(job_id)
        if job is None or job.status is not JobStatus.WAITING:
            return False
        del self._jobs[job_id]
        self._heap = [entry for entry in self._heap if entry[3] != job_id]
        heapq.heapify(self._heap)
        return True

    @property
    def depth(self) -> int:
        return sum(1 for job in self._jobs.values() if job.status is JobStatus.WAITING)

    # ── Drain loop ─────────────────────────────────────────────────

    async def start_drain(self, handler: JobHandler, *, concurrency: int = 4) -> None:
        """Start ``concurrency`` workers dispatching jobs to ``handler``."""
        if self._running:
            return
        self._running = True

        async def worker(worker_id: int) -> None:
            while self._running:
                job = await self.take_wait(timeout=1.0)
                if job is None:
                    continue
                try:
                    await handler(job)
                except asyncio.CancelledError:
                    self.complete(job.id, failed=True)
                    raise
                except Exception as exc:
                    logger.error("drain_handler_error", exc=exc, job_id=job.id, worker=worker_id)
                    self.complete(job.id, failed=True)
                else:
                    self.complete(job.id)

        self._workers = [asyncio.create_task(worker(i)) for i in range(concurrency)]
        logger.info("job_drain_started", concurrency=concurrency)

    async def stop(self) -> None:
        """Stop the drain loop."""
        self._running = False
        for task in self._workers:
            if not task.done():
                task.cancel()
        for task in self._workers:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._workers = []

    def get_stats(self) -> dict[str, Any]:
        return {
            "waiting": self.depth,
            "active": sum(1 for job in self._jobs.values() if job.status is JobStatus.ACTIVE),
            "completed_history": len(self._completed),
            "workers": len(self._workers),
        }
