"""Observability helpers: structured logging, OpenTelemetry tracing and Prometheus metrics."""

from search_bridge.observability.context import get_operation_context, operation_context, set_operation_context
from search_bridge.observability.logging import JsonFormatter, configure_logging
from search_bridge.observability.metrics import (
    CALLBACK_CALLS,
    CALLBACK_ERRORS,
    DOCUMENTS_CHECKED,
    OPERATION_LATENCY,
    get_metrics,
    init_metrics,
    track_latency,
)
from search_bridge.observability.tracing import create_span, get_tracer, init_tracing


__all__ = [
    "CALLBACK_CALLS",
    "CALLBACK_ERRORS",
    "DOCUMENTS_CHECKED",
    "OPERATION_LATENCY",
    "JsonFormatter",
    "configure_logging",
    "create_span",
    "get_metrics",
    "get_operation_context",
    "get_tracer",
    "init_metrics",
    "init_tracing",
    "operation_context",
    "set_operation_context",
    "track_latency",
]
