"""Exception classes for the response pipeline.

Includes:
- Base exception with an API-friendly ``to_dict``
- Store (transient infrastructure) failures
- Stream failures carrying an event code and the partial response
"""

from datetime import UTC, datetime
from typing import Any


class PipelineException(Exception):
    """Base exception for all pipeline errors."""

    def __init__(
        self, detail: str, status_code: int = 500, error_code: str = "INTERNAL_ERROR"
    ):
        self.detail = detail
        self.status_code = status_code
        self.error_code = error_code
        self.timestamp = datetime.now(UTC).isoformat()
        super().__init__(detail)

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API response."""
        return {
            "error": self.error_code,
            "detail": self.detail,
            "status_code": self.status_code,
            "timestamp": self.timestamp,
        }


class StoreUnavailableError(PipelineException):
    """Raised by key-value store adapters when the backing store fails."""

    def __init__(self, operation: str, original_error: Exception | None = None):
        detail = f"Store operation '{operation}' failed"
        if original_error is not None:
            detail = f"{detail}: {original_error}"
        super().__init__(detail=detail, status_code=503, error_code="STORE_UNAVAILABLE")
        self.operation = operation
        self.original_error = original_error


# =============================================================================
# STREAM EXCEPTIONS
# =============================================================================


class StreamError(PipelineException):
    """Base for failures that end a streaming session.

    ``code`` is the value sent in the ``error`` stream event.
    """

    def __init__(
        self,
        detail: str,
        code: str = "STREAM_ERROR",
        partial_response: str = "",
        original_error: Exception | None = None,
        status_code: int = 502,
    ):
        super().__init__(detail=detail, status_code=status_code, error_code=code)
        self.code = code
        self.partial_response = partial_response
        self.original_error = original_error

    def to_dict(self) -> dict[str, Any]:
        base = super().to_dict()
        base["partial_response"] = self.partial_response
        return base


class ProviderError(StreamError):
    """Completion provider failed mid-stream or refused the request."""

    def __init__(
        self,
        detail: str,
        code: str = "PROVIDER_ERROR",
        original_error: Exception | None = None,
    ):
        super().__init__(detail=detail, code=code, original_error=original_error)


class StreamAbortedError(StreamError):
    """Client disconnected; the stream was cancelled cooperatively."""

    def __init__(self, message_id: str, partial_response: str = ""):
        super().__init__(
            detail=f"Stream {message_id} aborted: client disconnected",
            code="STREAM_ABORTED",
            partial_response=partial_response,
            status_code=499,
        )
        self.message_id = message_id


class StreamTimeoutError(StreamError):
    """A stream deadline expired; handled like an abort."""

    def __init__(self, message_id: str, deadline: str, partial_response: str = ""):
        super().__init__(
            detail=f"Stream {message_id} exceeded {deadline} deadline",
            code="STREAM_TIMEOUT",
            partial_response=partial_response,
            status_code=504,
        )
        self.message_id = message_id
        self.deadline = deadline


class CircuitOpenError(StreamError):
    """Circuit breaker rejected the provider call."""

    def __init__(self, circuit: str, retry_in_s: float = 0.0):
        super().__init__(
            detail=f"Circuit '{circuit}' is open; retry in {retry_in_s:.1f}s",
            code="CIRCUIT_OPEN",
            status_code=503,
        )
        self.circuit = circuit
        self.retry_in_s = retry_in_s
