"""
Shared fixtures and fakes for the pipeline unit tests.

Fakes here stand in for the external collaborators (completion provider,
client transport, publish channel, message store); the key-value store and
job engine use the real in-memory adapters.
"""

import asyncio
import time
from typing import Any

import pytest

from agent_pipeline.core.exceptions import StoreUnavailableError
from agent_pipeline.core.interfaces import MessageRecord, StoredMessage, TokenDelta
from agent_pipeline.infra.cache.response_cache import ResponseCache
from agent_pipeline.infra.cache.store import InMemoryKeyValueStore
from agent_pipeline.infra.telemetry.metrics import MetricsCollector


class FakeClock:
    """Manually advanced wall clock."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeProvider:
    """Completion provider yielding a fixed token list."""

    def __init__(
        self,
        tokens: list[str],
        *,
        delay: float = 0.0,
        first_delay: float = 0.0,
        fail_after: int | None = None,
        error: Exception | None = None,
        gate: asyncio.Event | None = None,
    ):
        self.tokens = tokens
        self.delay = delay
        self.first_delay = first_delay
        self.fail_after = fail_after
        self.error = error or RuntimeError("upstream exploded")
        self.gate = gate
        self.calls = 0
        self.yielded = 0
        self.closed = False

    async def stream_completion(self, prompt: str, system_context: str | None = None):
        self.calls += 1
        try:
            if self.gate is not None:
                await self.gate.wait()
            if self.first_delay:
                await asyncio.sleep(self.first_delay)
            for index, token in enumerate(self.tokens):
                if self.fail_after is not None and index == self.fail_after:
                    raise self.error
                if self.delay:
                    await asyncio.sleep(self.delay)
                self.yielded += 1
                yield TokenDelta(text=token, model="fake-model")
            if self.fail_after is not None and self.fail_after >= len(self.tokens):
                raise self.error
        finally:
            self.closed = True


class RecordingTransport:
    """Client transport that records events and can disconnect on demand."""

    def __init__(self, *, disconnect_after_chunks: int | None = None):
        self.events: list[tuple[str, dict[str, Any]]] = []
        self.callbacks: list = []
        self._connected = True
        self._disconnect_after_chunks = disconnect_after_chunks

    @property
    def connected(self) -> bool:
        return self._connected

    async def send(self, event: str, data: dict[str, Any]) -> None:
        self.events.append((event, data))
        if (
            event == "chunk"
            and self._disconnect_after_chunks is not None
            and len(self.of("chunk")) >= self._disconnect_after_chunks
        ):
            self.disconnect()

    def on_disconnect(self, callback):
        self.callbacks.append(callback)

        def unregister():
            if callback in self.callbacks:
                self.callbacks.remove(callback)

        return unregister

    def disconnect(self) -> None:
        self._connected = False
        for callback in list(self.callbacks):
            callback()

    def of(self, event: str) -> list[dict[str, Any]]:
        return [data for name, data in self.events if name == event]


class RecordingPublisher:
    def __init__(self):
        self.published: list[tuple[str, dict[str, Any]]] = []

    async def publish(self, channel: str, payload: dict[str, Any]) -> None:
        self.published.append((channel, payload))

    def of(self, event: str) -> list[dict[str, Any]]:
        return [p["data"] for _, p in self.published if p["event"] == event]


class MemoryMessageStore:
    def __init__(self):
        self.records: list[MessageRecord] = []

    async def store_message(self, record: MessageRecord) -> StoredMessage:
        self.records.append(record)
        return StoredMessage(id=f"row-{len(self.records)}", message_id=record.message_id, created_at=time.time())


class FailingStore:
    """Key-value store whose every operation fails."""

    def __getattr__(self, name):
        async def fail(*args, **kwargs):
            raise StoreUnavailableError(name, ConnectionError("connection refused"))

        return fail


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return InMemoryKeyValueStore(clock=clock)


@pytest.fixture
def metrics(store, clock):
    return MetricsCollector(store, clock=clock)


@pytest.fixture
def cache(store, metrics, clock):
    return ResponseCache(store, metrics, clock=clock)


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def message_store():
    return MemoryMessageStore()
