"""
Detached Side Effects
=====================

Runs fire-and-forget coroutines (hit counters, stats bookkeeping) as asyncio
tasks whose failures are logged and never reach the caller's result path.

Usage:
    tasks = BackgroundTasks(logger)
    tasks.spawn(self._increment_hits(key), event="cache_hit_increment_failed")
    ...
    await tasks.drain()   # on shutdown or in tests
"""

from __future__ import annotations

import asyncio
from collections.abc import Coroutine
from typing import Any

from agent_pipeline.infra.telemetry.logger import StructuredLogger


class BackgroundTasks:
    """Owns a set of detached tasks and logs their exceptions."""

    def __init__(self, logger: StructuredLogger) -> None:
        self._logger = logger
        self._tasks: set[asyncio.Task[Any]] = set()

    def spawn(self, coro: Coroutine[Any, Any, Any], *, event: str, **fields: Any) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro)
        self._tasks.add(task)

        def _done(t: asyncio.Task[Any]) -> None:
            self._tasks.discard(t)
            if t.cancelled():
                return
            exc = t.exception()
            if exc is not None:
                self._logger.warning(event, error=str(exc), error_type=type(exc).__name__, **fields)

        task.add_done_callback(_done)
        return task

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every task spawned so far (including ones spawned while waiting)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
