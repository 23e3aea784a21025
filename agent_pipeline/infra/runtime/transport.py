"""
Delivery Adapters — Client Transport and Broadcast Channel
=============================================================

  - ``SSETransport``: queue-backed ``ClientTransport`` whose frames are
    served by a FastAPI ``StreamingResponse``. A watcher polls
    ``Request.is_disconnected()`` and fires the disconnect callbacks.
  - ``RedisPublisher``: ``Publisher`` over Redis ``PUBLISH`` with orjson
    payloads, used to fan stream events out to other instances.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncIterator, Callable
from typing import Any

import orjson
from fastapi import Request
from redis import asyncio as aioredis
from redis.exceptions import RedisError

from agent_pipeline.core.exceptions import StoreUnavailableError
from agent_pipeline.infra.telemetry.logger import get_logger

logger = get_logger(__name__)

def sse_event(event: str, data: dict[str, Any]) -> str:
    """Format SSE event using fast JSON serialization."""
    return f"event: {event}\ndata: {orjson.dumps(data).decode('utf-8')}\n\n"

# ── SSE transport ──────────────────────────────────────────────────

class SSETransport:
    """
    Client transport backed by an ``asyncio.Queue`` of SSE frames.

    Usage:
        transport = SSETransport(request)
        task = asyncio.create_task(delivery.stream_response(transport, ...))
        task.add_done_callback(lambda _: transport.close())
        return StreamingResponse(transport.frames(), media_type="text/event-stream")
    """

    def __init__(
        self,
        request: Request | None = None,
        *,
        poll_interval_s: float = 0.5,
        max_buffer: int = 256,
    ) -> None:
        self._request = request
        self._poll_interval_s = poll_interval_s
        self._frames: asyncio.Queue[str | None] = asyncio.Queue(maxsize=max_buffer)
        self._connected = True
        self._callbacks: list[Callable[[], None]] = []
        self._watcher: asyncio.Task[None] | None = None

    @property
    def connected(self) -> bool:
        return self._connected

    async def send(self, event: str, data: dict[str, Any]) -> None:
        if not self._connected:
            return
        await self._frames.put(sse_event(event, data))

    def on_disconnect(self, callback: Callable[[], None]) -> Callable[[], None]:
        self._callbacks.append(callback)

        def unregister() -> None:
            with contextlib.suppress(ValueError):
                self._callbacks.remove(callback)

        return unregister

    def mark_disconnected(self) -> None:
        """Flag the client as gone and run every registered callback once."""
        if not self._connected:
            return
        self._connected = False
        logger.info("client_disconnected", callbacks=len(self._callbacks))
        for callback in list(self._callbacks):
            callback()
        # Unblock a producer waiting on a full buffer
        while not self._frames.empty():
            self._frames.get_nowait()

    def close(self) -> None:
        """End the frame stream once the producer is done."""
        with contextlib.suppress(asyncio.QueueFull):
            self._frames.put_nowait(None)

    async def _watch_disconnect(self, request: Request) -> None:
        while self._connected:
            if await request.is_disconnected():
                self.mark_disconnected()
                return
            await asyncio.sleep(self._poll_interval_s)

    async def frames(self) -> AsyncIterator[str]:
        """SSE frames until ``close()``; treats consumer shutdown as a disconnect."""
        if self._request is not None and self._watcher is None:
            self._watcher = asyncio.create_task(self._watch_disconnect(self._request))
        finished = False
        try:
            while True:
                frame = await self._frames.get()
                if frame is None:
                    finished = True
                    return
                yield frame
        finally:
            if self._watcher is not None and not self._watcher.done():
                self._watcher.cancel()
            if not finished:
                self.mark_disconnected()

class DetachedTransport:
    """Transport for background jobs with no attached client; events are broadcast only."""

    @property
    def connected(self) -> bool:
        return False

    async def send(self, event: str, data: dict[str, Any]) -> None:
        return None

    def on_disconnect(self, callback: Callable[[], None]) -> Callable[[], None]:
        return lambda: None

# ── Broadcast ──────────────────────────────────────────────────────

class RedisPublisher:
    """Cross-instance fan-out over Redis pub/sub."""

    def __init__(self, client: aioredis.Redis) -> None:
        self._client = client

    @classmethod
    def from_url(cls, url: str) -> RedisPublisher:
        return cls(aioredis.from_url(url, decode_responses=True, socket_timeout=5.0))

    async def publish(self, channel: str, payload: dict[str, Any]) -> None:
        try:
            await self._client.publish(channel, orjson.dumps(payload))
        except RedisError as exc:
            raise StoreUnavailableError("publish", exc) from exc

    async def close(self) -> None:
        await self._client.aclose()
