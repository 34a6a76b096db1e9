"""Context propagation for correlating log lines with the engine operation that emitted them."""

from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar
from typing import TYPE_CHECKING
from uuid import uuid4


if TYPE_CHECKING:
    from collections.abc import Generator

operation_context: ContextVar[dict | None] = ContextVar("operation_context", default=None)


def generate_trace_id() -> str:
    """Generate a 32-char hex trace ID."""
    return uuid4().hex


def generate_span_id() -> str:
    """Generate a 16-char hex span ID."""
    return uuid4().hex[:16]


def get_operation_context() -> dict:
    """Get current context with trace_id, span_id and the active operation name (if any)."""
    ctx = operation_context.get()
    if ctx is None or not ctx.get("trace_id"):
        ctx = {"trace_id": generate_trace_id(), "span_id": generate_span_id()}
        operation_context.set(ctx)
    return ctx


def set_operation_context(trace_id: str, span_id: str, **extra: object) -> None:
    operation_context.set({"trace_id": trace_id, "span_id": span_id, **extra})


def update_span_id(span_id: str) -> None:
    """Update span_id while preserving trace_id and extras."""
    ctx = operation_context.get() or {}
    operation_context.set({**ctx, "span_id": span_id})


@contextmanager
def bind_operation(name: str) -> Generator[dict, None, None]:
    """Tag log records emitted inside the block with ``operation=name``."""
    ctx = get_operation_context()
    token = operation_context.set({**ctx, "operation": name})
    try:
        yield operation_context.get() or {}
    finally:
        operation_context.reset(token)
