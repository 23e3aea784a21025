"""
Collaborator Contracts
=======================

Structural interfaces for everything the pipeline consumes but does not own.
Concrete adapters live under ``agent_pipeline.infra``; tests substitute
fakes. Components receive these through their constructors.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Protocol, runtime_checkable

# ── Key-value store ────────────────────────────────────────────────

@runtime_checkable
class KeyValueStore(Protocol):
    """TTL key-value store with counters and score-ordered series.

    Implementations raise ``StoreUnavailableError`` on backend failure.
    """

    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None: ...

    async def delete(self, *keys: str) -> int: ...

    async def keys_matching(self, pattern: str) -> list[str]: ...

    async def increment(self, key: str, amount: float = 1, ttl_seconds: int | None = None) -> float: ...

    async def append_to_series(self, key: str, score: float, member: str) -> None: ...

    async def query_series(self, key: str, min_score: float, max_score: float) -> list[str]: ...

    async def prune_series_below(self, key: str, max_score: float) -> int: ...

# ── Job-queue engine ───────────────────────────────────────────────

class JobStatus(StrEnum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"

@dataclass
class Job:
    """A unit of work as seen by the queue engine."""

    id: str
    type: str
    payload: dict[str, Any]
    priority: int
    lifo: bool = False
    submitted_at: float = 0.0
    started_at: float | None = None
    finished_at: float | None = None
    status: JobStatus = JobStatus.WAITING
    attempts: int = 0

    @property
    def wait_time_ms(self) -> float | None:
        if self.started_at is None:
            return None
        return (self.started_at - self.submitted_at) * 1000

class JobQueueEngine(Protocol):
    """Priority-ordered job engine (lower priority value runs first)."""

    async def submit(
        self,
        job_type: str,
        payload: dict[str, Any],
        *,
        priority: int,
        lifo: bool = False,
        job_id: str | None = None,
    ) -> Job: ...

    async def list_pending(self) -> list[Job]: ...

    async def list_completed(self, limit: int = 100) -> list[Job]: ...

    async def remove(self, job_id: str) -> bool: ...

# ── Completion provider ────────────────────────────────────────────

@dataclass(frozen=True)
class TokenDelta:
    """One incremental piece of a completion."""

    text: str
    model: str | None = None

class CompletionProvider(Protocol):
    """Produces a lazy, finite, non-restartable token stream."""

    def stream_completion(
        self, prompt: str, system_context: str | None = None
    ) -> AsyncIterator[TokenDelta]: ...

# ── Persistence ────────────────────────────────────────────────────

@dataclass
class MessageRecord:
    """An agent response ready to be stored."""

    message_id: str
    agent_id: str
    content: str
    conversation_id: str | None = None
    workspace_id: str | None = None
    requester_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

@dataclass
class StoredMessage:
    id: str
    message_id: str
    created_at: float

class MessageStore(Protocol):
    async def store_message(self, record: MessageRecord) -> StoredMessage: ...

# ── Fan-out and client transport ───────────────────────────────────

class Publisher(Protocol):
    """Cross-instance publish channel; delivery semantics are external."""

    async def publish(self, channel: str, payload: dict[str, Any]) -> None: ...

class ClientTransport(Protocol):
    """Duplex connection to one client."""

    @property
    def connected(self) -> bool: ...

    async def send(self, event: str, data: dict[str, Any]) -> None: ...

    def on_disconnect(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register ``callback``; returns a function that unregisters it."""
        ...
