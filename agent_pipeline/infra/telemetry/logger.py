"""
Structured Logger — Pipeline Event Logging
============================================

Event-style structured logging for the response pipeline. Every log call
takes an event name plus keyword fields:

    logger.warning("cache_get_failed", key=key, error=str(exc))

Records are rendered as JSON outside development and as a single readable
line during development. Request-scoped identifiers (request id, trace id,
message id, requester, tenant) are carried in context variables so that
cache, queue and stream code never have to thread them through by hand.
"""

from __future__ import annotations

import logging
import logging.handlers
import os
import sys
import traceback
from contextvars import ContextVar, Token
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import orjson

# ── Context Variables ──────────────────────────────────────────────

_request_id: ContextVar[str | None] = ContextVar("request_id", default=None)
_trace_id: ContextVar[str | None] = ContextVar("trace_id", default=None)
_message_id: ContextVar[str | None] = ContextVar("message_id", default=None)
_user_id: ContextVar[str | None] = ContextVar("user_id", default=None)
_tenant_id: ContextVar[str | None] = ContextVar("tenant_id", default=None)

_CONTEXT_VARS: dict[str, ContextVar[str | None]] = {
    "request_id": _request_id,
    "trace_id": _trace_id,
    "message_id": _message_id,
    "user_id": _user_id,
    "tenant_id": _tenant_id,
}

def set_request_context(**values: str | None) -> dict[str, Token[str | None]]:
    """Bind request-scoped identifiers for log enrichment.

    Unknown names raise ``KeyError``; ``None`` values are ignored. Returns
    tokens that ``restore_request_context`` uses to put back the previous values.
    """
    tokens: dict[str, Token[str | None]] = {}
    for name, value in values.items():
        if value is not None:
            tokens[name] = _CONTEXT_VARS[name].set(value)
    return tokens

def restore_request_context(tokens: dict[str, Token[str | None]]) -> None:
    """Undo a ``set_request_context`` call made in the same context."""
    for name, token in tokens.items():
        _CONTEXT_VARS[name].reset(token)

def clear_request_context(*names: str) -> None:
    """Reset the named identifiers, or all of them when none are given."""
    for name in names or tuple(_CONTEXT_VARS):
        _CONTEXT_VARS[name].set(None)

def current_context() -> dict[str, str]:
    return {name: var.get() for name, var in _CONTEXT_VARS.items() if var.get() is not None}

# ── Structured Formatter ──────────────────────────────────────────

_RESERVED = frozenset({
    "name", "msg", "args", "created", "relativeCreated",
    "exc_info", "exc_text", "stack_info", "lineno", "funcName",
    "pathname", "filename", "module", "levelno", "levelname",
    "thread", "threadName", "process", "processName", "msecs",
    "taskName", "message",
})

_SCALARS = (str, int, float, bool, type(None))

class StructuredFormatter(logging.Formatter):
    """Render a record with its event fields and bound context."""

    def __init__(self, *, json_output: bool = True, include_traceback: bool = True):
        super().__init__()
        self._json = json_output
        self._include_tb = include_traceback
        self._pid = os.getpid()

    def _fields(self, record: logging.LogRecord) -> dict[str, Any]:
        fields: dict[str, Any] = {}
        for key, val in record.__dict__.items():
            if key.startswith("_") or key in _RESERVED:
                continue
            fields[key] = val if isinstance(val, _SCALARS) else str(val)
        return fields

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "event": record.getMessage(),
            "line": record.lineno,
            "pid": self._pid,
        }

        context = current_context()
        if context:
            entry["context"] = context

        fields = self._fields(record)
        if fields:
            entry["data"] = fields

        if record.exc_info and self._include_tb:
            exc_type, exc_value, exc_tb = record.exc_info
            entry["exception"] = {
                "type": exc_type.__name__ if exc_type else None,
                "message": str(exc_value) if exc_value else None,
                "traceback": traceback.format_exception(exc_type, exc_value, exc_tb)
                if exc_tb
                else None,
            }

        if self._json:
            return orjson.dumps(entry, default=str).decode("utf-8")

        # Development rendering: one line, fields appended as key=value
        rid = context.get("request_id", "-")[:8]
        extras = " ".join(f"{k}={v}" for k, v in fields.items())
        line = (
            f"{entry['timestamp']} | {entry['level']:8s} | {rid} | "
            f"{entry['logger']}:{entry['line']} | {entry['event']}"
        )
        if extras:
            line = f"{line} | {extras}"
        if "exception" in entry:
            line = f"{line}\n{''.join(entry['exception']['traceback'] or [])}"
        return line

# ── Structured Logger ─────────────────────────────────────────────

class StructuredLogger:
    """
    Thin wrapper over a stdlib logger taking ``event, **fields``.

    Usage:
        log = get_logger(__name__)
        log.info("stream_completed", message_id=mid, total_chunks=3)
        log.error("stream_failed", exc=err, code="PROVIDER_ERROR")
    """

    __slots__ = ("_logger", "_name")

    def __init__(self, name: str):
        self._name = name
        self._logger = logging.getLogger(name)

    @property
    def name(self) -> str:
        return self._name

    def is_enabled_for(self, level: int) -> bool:
        return self._logger.isEnabledFor(level)

    def _log(self, level: int, event: str, exc: BaseException | None = None, **fields: Any) -> None:
        if not self._logger.isEnabledFor(level):
            return
        self._logger.log(level, event, extra=fields, exc_info=exc, stacklevel=3)

    def debug(self, event: str, **fields: Any) -> None:
        self._log(logging.DEBUG, event, **fields)

    def info(self, event: str, **fields: Any) -> None:
        self._log(logging.INFO, event, **fields)

    def warning(self, event: str, **fields: Any) -> None:
        self._log(logging.WARNING, event, **fields)

    def error(self, event: str, exc: BaseException | None = None, **fields: Any) -> None:
        self._log(logging.ERROR, event, exc=exc, **fields)

    def bind(self, **context: Any) -> BoundLogger:
        """Child logger that adds ``context`` to every call."""
        return BoundLogger(self, context)

class BoundLogger:
    """Logger with pre-bound fields (e.g. a stream's message id)."""

    __slots__ = ("_context", "_parent")

    def __init__(self, parent: StructuredLogger, context: dict[str, Any]):
        self._parent = parent
        self._context = context

    def debug(self, event: str, **fields: Any) -> None:
        self._parent.debug(event, **{**self._context, **fields})

    def info(self, event: str, **fields: Any) -> None:
        self._parent.info(event, **{**self._context, **fields})

    def warning(self, event: str, **fields: Any) -> None:
        self._parent.warning(event, **{**self._context, **fields})

    def error(self, event: str, exc: BaseException | None = None, **fields: Any) -> None:
        self._parent.error(event, exc=exc, **{**self._context, **fields})

# ── Setup ──────────────────────────────────────────────────────────

_initialized = False

def setup_logging(
    *,
    level: str = "INFO",
    json_output: bool | None = None,
    log_dir: str | None = None,
) -> None:
    """
    Configure root logging once per process.

    Args:
        level: Root log level name.
        json_output: Force JSON rendering. ``None`` picks JSON unless the
            environment is ``development``.
        log_dir: Also write a rotating ``pipeline.log`` here.
    """
    global _initialized
    if _initialized:
        return
    _initialized = True

    if json_output is None:
        from agent_pipeline.core.config import get_settings

        json_output = get_settings().ENVIRONMENT != "development"

    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(StructuredFormatter(json_output=json_output))
    root.addHandler(console)

    if log_dir:
        log_path = Path(log_dir)
        log_path.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_path / "pipeline.log",
            maxBytes=20 * 1024 * 1024,
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setFormatter(StructuredFormatter(json_output=True))
        root.addHandler(file_handler)

    for noisy in ("asyncio", "redis", "sqlalchemy.engine", "uvicorn.access", "httpx"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

def get_logger(name: str) -> StructuredLogger:
    return StructuredLogger(name)
