"""
Circuit Breaker — Per-Agent Provider Gate
===========================================

Counts consecutive provider failures per key (usually the agent id):

  CLOSED    → OPEN       after ``failure_threshold`` consecutive failures
  OPEN      → HALF_OPEN  once ``reset_timeout_s`` has elapsed
  HALF_OPEN → CLOSED     after ``half_open_successes`` successes
  HALF_OPEN → OPEN       on any failure

The breaker is a policy object injected into ``StreamDelivery``; it never
calls the provider itself.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from agent_pipeline.infra.telemetry.logger import get_logger

logger = get_logger(__name__)

class CircuitState(StrEnum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"

@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = 5
    reset_timeout_s: float = 30.0
    half_open_successes: int = 3

    @classmethod
    def from_settings(cls) -> CircuitBreakerConfig:
        from agent_pipeline.core.config import get_settings

        s = get_settings()
        return cls(
            failure_threshold=s.CIRCUIT_FAILURE_THRESHOLD,
            reset_timeout_s=s.CIRCUIT_RESET_TIMEOUT_S,
            half_open_successes=s.CIRCUIT_HALF_OPEN_SUCCESSES,
        )

@dataclass
class _Circuit:
    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    last_failure_at: float | None = None
    opened_at: float | None = None
    half_open_successes: int = 0

class CircuitBreaker:
    """Keyed circuit breaker. Thread-safe; all operations are synchronous."""

    def __init__(
        self,
        config: CircuitBreakerConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config or CircuitBreakerConfig()
        self._clock = clock
        self._circuits: dict[str, _Circuit] = {}
        self._lock = threading.Lock()

    def _circuit(self, key: str) -> _Circuit:
        circuit = self._circuits.get(key)
        if circuit is None:
            circuit = self._circuits[key] = _Circuit()
        return circuit

    def _transition(self, key: str, circuit: _Circuit, new_state: CircuitState) -> None:
        old_state = circuit.state
        circuit.state = new_state
        circuit.half_open_successes = 0
        if new_state == CircuitState.OPEN:
            circuit.opened_at = self._clock()
            logger.warning("circuit_opened", circuit=key, failures=circuit.failure_count)
        elif new_state == CircuitState.CLOSED:
            circuit.failure_count = 0
            circuit.opened_at = None
            logger.info("circuit_closed", circuit=key)
        else:
            logger.info("circuit_half_open", circuit=key)
        logger.debug("circuit_transition", circuit=key, old=old_state.value, new=new_state.value)

    def allow_request(self, key: str) -> bool:
        """True if a call may proceed; moves OPEN → HALF_OPEN when the timeout has passed."""
        with self._lock:
            circuit = self._circuit(key)
            if circuit.state != CircuitState.OPEN:
                return True
            if circuit.opened_at is not None and (
                self._clock() - circuit.opened_at >= self._config.reset_timeout_s
            ):
                self._transition(key, circuit, CircuitState.HALF_OPEN)
                return True
            return False

    def retry_in(self, key: str) -> float:
        """Seconds until an open circuit will admit a trial call."""
        with self._lock:
            circuit = self._circuits.get(key)
            if circuit is None or circuit.state != CircuitState.OPEN or circuit.opened_at is None:
                return 0.0
            elapsed = self._clock() - circuit.opened_at
            return max(0.0, self._config.reset_timeout_s - elapsed)

    def record_success(self, key: str) -> None:
        with self._lock:
            circuit = self._circuit(key)
            if circuit.state == CircuitState.HALF_OPEN:
                circuit.half_open_successes += 1
                if circuit.half_open_successes >= self._config.half_open_successes:
                    self._transition(key, circuit, CircuitState.CLOSED)
            circuit.failure_count = 0

    def record_failure(self, key: str) -> None:
        with self._lock:
            circuit = self._circuit(key)
            circuit.failure_count += 1
            circuit.last_failure_at = self._clock()
            if circuit.state == CircuitState.HALF_OPEN:
                self._transition(key, circuit, CircuitState.OPEN)
            elif (
                circuit.state == CircuitState.CLOSED
                and circuit.failure_count >= self._config.failure_threshold
            ):
                self._transition(key, circuit, CircuitState.OPEN)

    def get_state(self, key: str) -> CircuitState:
        with self._lock:
            circuit = self._circuits.get(key)
            return circuit.state if circuit else CircuitState.CLOSED

    def get_failure_count(self, key: str) -> int:
        with self._lock:
            circuit = self._circuits.get(key)
            return circuit.failure_count if circuit else 0

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            counts = dict.fromkeys(CircuitState, 0)
            for circuit in self._circuits.values():
                counts[circuit.state] += 1
            return {
                "total_circuits": len(self._circuits),
                "open_circuits": counts[CircuitState.OPEN],
                "half_open_circuits": counts[CircuitState.HALF_OPEN],
                "closed_circuits": counts[CircuitState.CLOSED],
            }

    def reset(self, key: str) -> None:
        with self._lock:
            self._circuits.pop(key, None)
        logger.info("circuit_reset", circuit=key)

    def reset_all(self) -> None:
        with self._lock:
            self._circuits.clear()
        logger.info("circuits_reset_all")
