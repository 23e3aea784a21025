"""
Cooperative Cancellation
========================

Provides a cancellation flag for long-running loops (token streaming) that is
checked once per iteration. Tripping the token never interrupts work already
in progress; the loop notices on its next check.

Usage:
    token = CancellationToken()
    with cancel_on_disconnect(transport, token):
        async for delta in stream:
            if token.cancelled:
                break
            ...
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager

from agent_pipeline.core.interfaces import ClientTransport

class CancellationReason:
    DISCONNECT = "disconnect"
    DEADLINE = "deadline"

class CancellationToken:
    """
    One-shot cancellation flag. The first reason wins.

    Attributes:
        reason: Why the token was tripped (None while active).
        detail: Free-form detail, e.g. which deadline expired.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self.reason: str | None = None
        self.detail: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self, reason: str = CancellationReason.DISCONNECT, detail: str | None = None) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self.reason = reason
        self.detail = detail

@contextmanager
def cancel_on_disconnect(transport: ClientTransport, token: CancellationToken) -> Iterator[CancellationToken]:
    """Trip ``token`` when ``transport`` disconnects; unregistered on every exit."""
    unregister = transport.on_disconnect(lambda: token.cancel(CancellationReason.DISCONNECT))
    try:
        yield token
    finally:
        unregister()
