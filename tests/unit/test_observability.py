"""Unit tests for observability module."""

import json
import logging
import sys

from opentelemetry import trace as trace_api
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import StatusCode
from prometheus_client import REGISTRY
import pytest

from search_bridge.config import reset_settings
from search_bridge.observability import (
    CALLBACK_CALLS,
    OPERATION_LATENCY,
    JsonFormatter,
    configure_logging,
    create_span,
    get_metrics,
    get_operation_context,
    init_tracing,
    track_latency,
)
from search_bridge.observability.context import bind_operation


def _record(msg="test message", name="test", level=logging.INFO):
    return logging.LogRecord(
        name=name,
        level=level,
        pathname="test.py",
        lineno=1,
        msg=msg,
        args=(),
        exc_info=None,
    )


def _latency_count(operation):
    value = REGISTRY.get_sample_value("search_bridge_operation_latency_seconds_count", {"operation": operation})
    return value or 0.0


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.mark.unit
class TestJsonFormatter:
    """Tests for structured JSON logging."""

    def test_format_includes_trace_context(self):
        data = json.loads(JsonFormatter().format(_record()))

        assert data["message"] == "test message"
        assert data["level"] == "INFO"
        assert "timestamp" in data
        assert data["trace_id"]
        assert data["span_id"]

    def test_component_from_logger_name(self):
        data = json.loads(JsonFormatter().format(_record(name="search_bridge.enquire")))

        assert data["component"] == "enquire"

    def test_operation_bound_in_context(self):
        with bind_operation("get_mset"):
            data = json.loads(JsonFormatter().format(_record()))

        assert data["operation"] == "get_mset"
        assert "operation" not in get_operation_context()

    def test_extra_fields_redacted(self):
        record = _record()
        record.docid = 7
        record.token = "hunter2"
        record.payload = b"raw"

        data = json.loads(JsonFormatter().format(record))

        assert data["docid"] == 7
        assert data["token"] == "[REDACTED]"
        assert data["payload"] == "raw"

    def test_long_message_truncated(self):
        data = json.loads(JsonFormatter().format(_record(msg="x" * 3000)))

        assert len(data["message"]) == JsonFormatter.MAX_MESSAGE_LEN + 3

    def test_exception_included(self):
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = logging.LogRecord("test", logging.ERROR, "test.py", 1, "failed", (), sys.exc_info())

        data = json.loads(JsonFormatter().format(record))

        assert "RuntimeError: boom" in data["exception"]


@pytest.mark.unit
class TestConfigureLogging:
    def test_json_handler(self, restore_root_logger):
        configure_logging("debug", json_output=True)

        assert restore_root_logger.level == logging.DEBUG
        assert len(restore_root_logger.handlers) == 1
        assert isinstance(restore_root_logger.handlers[0].formatter, JsonFormatter)

    def test_plain_handler_and_overrides(self, restore_root_logger):
        configure_logging("warning", json_output=False, logger_levels={"search_bridge.storage": "debug"})

        assert not isinstance(restore_root_logger.handlers[0].formatter, JsonFormatter)
        assert logging.getLogger("search_bridge.storage").level == logging.DEBUG
        logging.getLogger("search_bridge.storage").setLevel(logging.NOTSET)


@pytest.mark.unit
class TestTracing:
    @staticmethod
    def _setup_exporter() -> InMemorySpanExporter:
        exporter = InMemorySpanExporter()
        provider = trace_api.get_tracer_provider()
        if not isinstance(provider, TracerProvider):
            provider = init_tracing("test-service")
        provider.add_span_processor(SimpleSpanProcessor(exporter))
        return exporter

    def test_span_attributes(self):
        exporter = self._setup_exporter()

        with create_span("unit.span", attributes={"search.docid": 3}):
            pass

        spans = [span for span in exporter.get_finished_spans() if span.name == "unit.span"]
        assert spans[0].attributes["search.docid"] == 3

    def test_span_error_status(self):
        exporter = self._setup_exporter()

        with pytest.raises(ValueError), create_span("unit.failing"):
            raise ValueError("bad")

        spans = [span for span in exporter.get_finished_spans() if span.name == "unit.failing"]
        assert spans[0].status.status_code == StatusCode.ERROR

    def test_disabled_yields_invalid_span(self, monkeypatch):
        monkeypatch.setenv("SEARCH_BRIDGE_TRACING_ENABLED", "false")
        reset_settings()

        with create_span("unit.disabled") as span:
            assert span is trace_api.INVALID_SPAN


@pytest.mark.unit
class TestMetrics:
    def test_track_latency_observes(self):
        before = _latency_count("unit_test")

        with track_latency(OPERATION_LATENCY, operation="unit_test"):
            pass

        assert _latency_count("unit_test") == before + 1

    def test_track_latency_observes_on_error(self):
        before = _latency_count("unit_test_error")

        with pytest.raises(RuntimeError), track_latency(OPERATION_LATENCY, operation="unit_test_error"):
            raise RuntimeError

        assert _latency_count("unit_test_error") == before + 1

    def test_disabled_metrics_not_recorded(self, monkeypatch):
        monkeypatch.setenv("SEARCH_BRIDGE_METRICS_ENABLED", "false")
        reset_settings()
        before = _latency_count("unit_test_disabled")

        OPERATION_LATENCY.labels(operation="unit_test_disabled").observe(0.5)

        assert _latency_count("unit_test_disabled") == before

    def test_exposition(self):
        CALLBACK_CALLS.labels(role="unit").inc()

        assert b"search_bridge_callback_calls_total" in get_metrics()
