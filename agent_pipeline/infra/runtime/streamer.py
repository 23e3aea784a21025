"""
Stream Delivery — Token-by-Token Agent Responses
===================================================

Drives one agent answer from the completion provider to one client
connection, then persists it and broadcasts completion for other instances.

Lifecycle per call (``StreamSession.state``):

  NOT_STARTED → STREAMING → COMPLETED | ABORTED | FAILED

Event protocol (client transport, mirrored on the publish channel):

  start  {messageId, agentId, timestamp}
  chunk  {messageId, chunk, index, isLast}
  end    {messageId, totalChunks, totalTimeMs, fullResponse}
  error  {messageId, error, code, partialResponse}

Cancellation is cooperative: a client disconnect trips a token that is
checked before each token is processed. A token already in flight from the
provider completes, but nothing after the trip is emitted. Deadlines, when
enforced, trip the same token and end the stream as ``STREAM_TIMEOUT``.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from agent_pipeline.core.exceptions import (
    CircuitOpenError,
    ProviderError,
    StoreUnavailableError,
    StreamAbortedError,
    StreamError,
    StreamTimeoutError,
)
from agent_pipeline.core.interfaces import (
    ClientTransport,
    CompletionProvider,
    MessageRecord,
    MessageStore,
    Publisher,
    TokenDelta,
)
from agent_pipeline.core.types import StreamState
from agent_pipeline.infra.telemetry.logger import get_logger, restore_request_context, set_request_context
from agent_pipeline.infra.telemetry.tracer import get_tracer
from agent_pipeline.utils.cancellation import (
    CancellationReason,
    CancellationToken,
    cancel_on_disconnect,
)

if TYPE_CHECKING:
    from agent_pipeline.core.circuit_breaker import CircuitBreaker
    from agent_pipeline.infra.telemetry.metrics import MetricsCollector

logger = get_logger(__name__)
tracer = get_tracer(__name__)

@dataclass
class StreamConfig:
    """Streaming configuration. Deadlines are SLOs unless ``enforce_deadlines``."""

    channel: str = "agent-stream"
    first_chunk_timeout_ms: float = 3000.0
    between_chunks_timeout_ms: float = 5000.0
    total_timeout_ms: float = 120000.0
    enforce_deadlines: bool = False

    @classmethod
    def from_settings(cls) -> StreamConfig:
        from agent_pipeline.core.config import get_settings

        s = get_settings()
        return cls(
            channel=s.STREAM_CHANNEL,
            first_chunk_timeout_ms=s.STREAM_FIRST_CHUNK_MS,
            between_chunks_timeout_ms=s.STREAM_BETWEEN_CHUNKS_MS,
            total_timeout_ms=s.STREAM_TOTAL_MS,
            enforce_deadlines=s.STREAM_ENFORCE_DEADLINES,
        )

@dataclass
class StreamSession:
    """Per-call streaming state; owned by the ``stream_response`` call that made it."""

    message_id: str
    agent_id: str
    started_at: float
    chunks: list[str] = field(default_factory=list)
    first_chunk_at: float | None = None
    last_chunk_at: float | None = None
    aborted: bool = False
    state: StreamState = StreamState.NOT_STARTED

    def transition(self, new_state: StreamState) -> None:
        if self.state.is_terminal:
            raise RuntimeError(f"Session {self.message_id} already {self.state}")
        self.state = new_state

    @property
    def partial_response(self) -> str:
        return "".join(self.chunks)

@asynccontextmanager
async def _closing(stream: AsyncIterator[TokenDelta]):
    # Closes provider generators on early exit so no upstream request leaks
    try:
        yield stream
    finally:
        aclose = getattr(stream, "aclose", None)
        if aclose is not None:
            await aclose()

class StreamDelivery:
    """
    Streams completions to client transports.

    Usage:
        delivery = StreamDelivery(provider, publisher, message_store, metrics)
        end = await delivery.stream_response(
            transport, prompt=prompt, system_context=ctx, agent_id=agent_id
        )
    """

    def __init__(
        self,
        provider: CompletionProvider,
        publisher: Publisher,
        message_store: MessageStore,
        metrics: MetricsCollector | None = None,
        *,
        circuit_breaker: CircuitBreaker | None = None,
        config: StreamConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._provider = provider
        self._publisher = publisher
        self._message_store = message_store
        self._metrics = metrics
        self._breaker = circuit_breaker
        self._config = config or StreamConfig()
        self._clock = clock
        self._sessions: dict[str, StreamSession] = {}

    @property
    def active_sessions(self) -> int:
        return len(self._sessions)

    def get_session(self, message_id: str) -> StreamSession | None:
        return self._sessions.get(message_id)

    # ── Entry point ────────────────────────────────────────────────

    async def stream_response(
        self,
        transport: ClientTransport,
        *,
        prompt: str,
        system_context: str | None = None,
        agent_id: str,
        conversation_id: str | None = None,
        workspace_id: str | None = None,
        requester_id: str | None = None,
        message_id: str | None = None,
    ) -> dict[str, Any]:
        """
        Stream one answer to ``transport`` and return the ``end`` payload.

        Raises:
            StreamAbortedError: The client disconnected mid-stream.
            StreamTimeoutError: An enforced deadline expired.
            CircuitOpenError: The agent's circuit is open.
            StreamError: The provider or persistence failed (``ProviderError``
                for provider failures).
        """
        message_id = message_id or uuid.uuid4().hex
        if message_id in self._sessions:
            raise ValueError(f"Stream {message_id} is already active")

        session = StreamSession(message_id=message_id, agent_id=agent_id, started_at=self._clock())
        self._sessions[message_id] = session
        bound = set_request_context(message_id=message_id, user_id=requester_id, tenant_id=workspace_id)
        token = CancellationToken()

        try:
            with tracer.span(
                "stream.stream_response",
                attributes={"message_id": message_id, "agent_id": agent_id},
            ) as span, cancel_on_disconnect(transport, token):
                try:
                    session.transition(StreamState.STREAMING)
                    await self._emit(transport, "start", {
                        "messageId": message_id,
                        "agentId": agent_id,
                        "timestamp": datetime.now(UTC).isoformat(),
                    })
                    self._check_circuit(agent_id)

                    await self._consume(session, token, transport, prompt, system_context)
                    if token.cancelled:
                        raise self._cancellation_error(session, token)

                    end = await self._finish(
                        session, transport,
                        MessageRecord(
                            message_id=message_id,
                            agent_id=agent_id,
                            content=session.partial_response,
                            conversation_id=conversation_id,
                            workspace_id=workspace_id,
                            requester_id=requester_id,
                            metadata={"total_chunks": len(session.chunks)},
                        ),
                    )
                    span.set_attribute("total_chunks", end["totalChunks"])
                    return end
                except (StreamAbortedError, StreamTimeoutError) as exc:
                    session.aborted = True
                    session.transition(StreamState.ABORTED)
                    if isinstance(exc, StreamTimeoutError) and self._breaker is not None:
                        self._breaker.record_failure(agent_id)
                    logger.info(
                        "stream_aborted",
                        code=exc.code,
                        chunks=len(session.chunks),
                        reason=token.reason,
                    )
                    await self._fail(session, transport, exc)
                    raise
                except asyncio.CancelledError:
                    session.aborted = True
                    session.transition(StreamState.ABORTED)
                    logger.info("stream_task_cancelled", chunks=len(session.chunks))
                    await self._fail(
                        session, transport, StreamAbortedError(message_id, session.partial_response)
                    )
                    raise
                except StreamError as exc:
                    session.transition(StreamState.FAILED)
                    if isinstance(exc, ProviderError) and self._breaker is not None:
                        self._breaker.record_failure(agent_id)
                    logger.error("stream_failed", exc=exc, code=exc.code, chunks=len(session.chunks))
                    await self._fail(session, transport, exc)
                    raise
                except Exception as exc:
                    session.transition(StreamState.FAILED)
                    logger.error("stream_failed", exc=exc, code="STREAM_ERROR", chunks=len(session.chunks))
                    await self._fail(session, transport, exc)
                    raise
        finally:
            self._sessions.pop(message_id, None)
            restore_request_context(bound)

    # ── Phases ─────────────────────────────────────────────────────

    def _check_circuit(self, agent_id: str) -> None:
        if self._breaker is None or self._breaker.allow_request(agent_id):
            return
        raise CircuitOpenError(agent_id, self._breaker.retry_in(agent_id))

    async def _consume(
        self,
        session: StreamSession,
        token: CancellationToken,
        transport: ClientTransport,
        prompt: str,
        system_context: str | None,
    ) -> None:
        try:
            async with _closing(self._provider.stream_completion(prompt, system_context)) as stream:
                iterator = aiter(stream)
                while not token.cancelled:
                    try:
                        delta = await self._next_delta(iterator, session, token)
                    except StopAsyncIteration:
                        break
                    if delta is None or token.cancelled:
                        break
                    if delta.text:
                        await self._emit_chunk(session, transport, delta.text)
        except StreamError:
            raise
        except Exception as exc:
            raise ProviderError(
                f"Completion stream failed: {exc}", original_error=exc
            ) from exc

    async def _next_delta(
        self,
        iterator: AsyncIterator[TokenDelta],
        session: StreamSession,
        token: CancellationToken,
    ) -> TokenDelta | None:
        if not self._config.enforce_deadlines:
            return await anext(iterator)

        deadline, remaining_ms = self._next_deadline(session)
        try:
            return await asyncio.wait_for(anext(iterator), timeout=max(remaining_ms, 0) / 1000)
        except TimeoutError:
            token.cancel(CancellationReason.DEADLINE, detail=deadline)
            return None

    def _next_deadline(self, session: StreamSession) -> tuple[str, float]:
        now = self._clock()
        total_left = self._config.total_timeout_ms - (now - session.started_at) * 1000
        if session.last_chunk_at is None:
            name = "first_chunk"
            left = self._config.first_chunk_timeout_ms - (now - session.started_at) * 1000
        else:
            name = "between_chunks"
            left = self._config.between_chunks_timeout_ms - (now - session.last_chunk_at) * 1000
        if total_left <= left:
            return "total", total_left
        return name, left

    async def _emit_chunk(self, session: StreamSession, transport: ClientTransport, text: str) -> None:
        now = self._clock()
        index = len(session.chunks)
        session.chunks.append(text)
        if index == 0:
            session.first_chunk_at = now
            latency_ms = (now - session.started_at) * 1000
            logger.debug("stream_first_chunk", ttfc_ms=round(latency_ms, 2))
        else:
            latency_ms = (now - (session.last_chunk_at or now)) * 1000
        session.last_chunk_at = now

        if self._metrics is not None:
            await self._metrics.record_stream_chunk(latency_ms, index)

        await self._emit(transport, "chunk", {
            "messageId": session.message_id,
            "chunk": text,
            "index": index,
            "isLast": False,
        })

    async def _finish(
        self, session: StreamSession, transport: ClientTransport, record: MessageRecord
    ) -> dict[str, Any]:
        stored = await self._message_store.store_message(record)
        total_ms = (self._clock() - session.started_at) * 1000
        end = {
            "messageId": session.message_id,
            "totalChunks": len(session.chunks),
            "totalTimeMs": round(total_ms, 2),
            "fullResponse": record.content,
        }
        await self._emit(transport, "end", end)
        session.transition(StreamState.COMPLETED)

        if self._breaker is not None:
            self._breaker.record_success(session.agent_id)
        if self._metrics is not None:
            await self._metrics.record_response_time(total_ms, {"agent_id": session.agent_id})
        logger.info(
            "stream_completed",
            stored_id=stored.id,
            total_chunks=len(session.chunks),
            total_ms=round(total_ms, 2),
        )
        return end

    async def _fail(self, session: StreamSession, transport: ClientTransport, exc: BaseException) -> None:
        code = exc.code if isinstance(exc, StreamError) else "STREAM_ERROR"
        if self._metrics is not None:
            await self._metrics.record_error(code.lower())
        await self._emit(transport, "error", {
            "messageId": session.message_id,
            "error": str(exc),
            "code": code,
            "partialResponse": session.partial_response,
        })

    @staticmethod
    def _cancellation_error(session: StreamSession, token: CancellationToken) -> StreamError:
        if token.reason == CancellationReason.DEADLINE:
            return StreamTimeoutError(session.message_id, token.detail or "total", session.partial_response)
        return StreamAbortedError(session.message_id, session.partial_response)

    # ── Delivery ───────────────────────────────────────────────────

    async def _emit(self, transport: ClientTransport, event: str, payload: dict[str, Any]) -> None:
        """Send to the client if still connected, then broadcast for other instances."""
        if transport.connected:
            try:
                await transport.send(event, payload)
            except (OSError, RuntimeError) as exc:
                logger.warning("stream_send_failed", stream_event=event, error=str(exc))
        try:
            await self._publisher.publish(self._config.channel, {"event": event, "data": payload})
        except (StoreUnavailableError, OSError) as exc:
            logger.warning("stream_broadcast_failed", stream_event=event, error=str(exc))
