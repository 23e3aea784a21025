"""Unit tests for structured logging, tracing and the cancellation helpers."""

import asyncio
import logging

import orjson
import pytest

from agent_pipeline.infra.telemetry.logger import (
    StructuredFormatter,
    clear_request_context,
    current_context,
    get_logger,
    set_request_context,
)
from agent_pipeline.infra.telemetry.tracer import get_tracer
from agent_pipeline.utils.background import BackgroundTasks
from agent_pipeline.utils.cancellation import CancellationReason, CancellationToken, cancel_on_disconnect
from tests.conftest import RecordingTransport


def _record(event="cache_set", **fields):
    record = logging.LogRecord("agent_pipeline.test", logging.INFO, __file__, 10, event, None, None)
    record.__dict__.update(fields)
    return record


class TestRequestContext:
    def setup_method(self):
        clear_request_context()

    def teardown_method(self):
        clear_request_context()

    def test_set_and_clear(self):
        set_request_context(request_id="r1", message_id="m1", user_id=None)
        assert current_context() == {"request_id": "r1", "message_id": "m1"}

        clear_request_context("message_id")
        assert current_context() == {"request_id": "r1"}

        clear_request_context()
        assert current_context() == {}

    def test_unknown_name_rejected(self):
        with pytest.raises(KeyError):
            set_request_context(session="s1")


class TestFormatter:
    def setup_method(self):
        clear_request_context()

    def teardown_method(self):
        clear_request_context()

    def test_json_output(self):
        set_request_context(request_id="r1")
        line = StructuredFormatter(json_output=True).format(_record(key="agent_response:a:b", ttl_s=30))
        entry = orjson.loads(line)

        assert entry["event"] == "cache_set"
        assert entry["level"] == "INFO"
        assert entry["context"] == {"request_id": "r1"}
        assert entry["data"] == {"key": "agent_response:a:b", "ttl_s": 30}

    def test_text_output(self):
        line = StructuredFormatter(json_output=False).format(_record(count=2))
        assert "cache_set" in line
        assert line.endswith("count=2")

    def test_non_scalar_fields_stringified(self):
        entry = orjson.loads(StructuredFormatter().format(_record(reason=CancellationReason)))
        assert isinstance(entry["data"]["reason"], str)


class TestStructuredLogger:
    def test_fields_reach_record(self, caplog):
        log = get_logger("agent_pipeline.test")
        with caplog.at_level(logging.INFO, logger="agent_pipeline.test"):
            log.info("stream_completed", total_chunks=3)
        [record] = caplog.records
        assert record.getMessage() == "stream_completed"
        assert record.total_chunks == 3

    def test_error_carries_exception(self, caplog):
        log = get_logger("agent_pipeline.test")
        with caplog.at_level(logging.ERROR, logger="agent_pipeline.test"):
            log.error("stream_failed", exc=ValueError("bad"), code="STREAM_ERROR")
        [record] = caplog.records
        assert record.exc_info[0] is ValueError
        assert record.code == "STREAM_ERROR"

    def test_bound_logger(self, caplog):
        log = get_logger("agent_pipeline.test").bind(agent_id="a1")
        with caplog.at_level(logging.WARNING, logger="agent_pipeline.test"):
            log.warning("slow_chunk", gap_ms=900)
        [record] = caplog.records
        assert record.agent_id == "a1"
        assert record.gap_ms == 900


class TestTracer:
    def test_span_reraises(self):
        tracer = get_tracer("agent_pipeline.test")
        with pytest.raises(RuntimeError), tracer.span("op", attributes={"k": None, "n": 1}):
            raise RuntimeError("boom")

    def test_span_yields_span(self):
        with get_tracer("agent_pipeline.test").span("op") as span:
            span.set_attribute("from_cache", True)


class TestCancellation:
    def test_first_reason_wins(self):
        token = CancellationToken()
        token.cancel(CancellationReason.DEADLINE, detail="first_chunk")
        token.cancel(CancellationReason.DISCONNECT)
        assert token.cancelled
        assert token.reason == CancellationReason.DEADLINE
        assert token.detail == "first_chunk"

    def test_disconnect_trips_token_and_unregisters(self):
        transport = RecordingTransport()
        token = CancellationToken()
        with cancel_on_disconnect(transport, token):
            assert len(transport.callbacks) == 1
            transport.disconnect()
        assert token.cancelled
        assert token.reason == CancellationReason.DISCONNECT
        assert transport.callbacks == []

    def test_unregisters_on_error(self):
        transport = RecordingTransport()
        with pytest.raises(ValueError), cancel_on_disconnect(transport, CancellationToken()):
            raise ValueError("boom")
        assert transport.callbacks == []


class TestBackgroundTasks:
    @pytest.mark.asyncio
    async def test_failures_logged_not_raised(self, caplog):
        tasks = BackgroundTasks(get_logger("agent_pipeline.test"))

        async def fail():
            raise RuntimeError("counter down")

        async def ok():
            await asyncio.sleep(0)

        with caplog.at_level(logging.WARNING, logger="agent_pipeline.test"):
            tasks.spawn(fail(), event="stats_failed", key="k1")
            tasks.spawn(ok(), event="unused")
            assert tasks.pending == 2
            await tasks.drain()

        assert tasks.pending == 0
        [record] = caplog.records
        assert record.getMessage() == "stats_failed"
        assert record.error_type == "RuntimeError"
        assert record.key == "k1"
