from __future__ import annotations

import contextvars
import uuid
from contextlib import contextmanager
from typing import Iterator

_TRACE_ID: contextvars.ContextVar[str] = contextvars.ContextVar("trace_id", default="no-trace")


def get_trace_id() -> str:
    return _TRACE_ID.get()


def set_trace_id(trace_id: str) -> contextvars.Token[str]:
    return _TRACE_ID.set(trace_id)


def reset_trace_id(token: contextvars.Token[str]) -> None:
    _TRACE_ID.reset(token)


def new_trace_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


@contextmanager
def traced(prefix: str) -> Iterator[str]:
    """Bind a fresh trace id for background work (scheduler ticks, queue drains)."""
    trace_id = new_trace_id(prefix)
    token = set_trace_id(trace_id)
    try:
        yield trace_id
    finally:
        reset_trace_id(token)
