"""Correlation ids for tracing one poll cycle or queue drain through the logs."""

import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Optional


_correlation_id: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def generate_correlation_id(prefix: str = "req") -> str:
    """Generate a short id such as ``feed_1a2b3c4d``."""
    return f"{prefix}_{uuid.uuid4().hex[:8]}"


def set_correlation_id(correlation_id: str) -> None:
    _correlation_id.set(correlation_id)


def get_correlation_id() -> Optional[str]:
    return _correlation_id.get()


def clear_correlation_id() -> None:
    _correlation_id.set(None)


@contextmanager
def correlation_scope(prefix: str) -> Iterator[str]:
    """Run a block under a fresh correlation id, restoring the previous one."""
    correlation_id = generate_correlation_id(prefix)
    token = _correlation_id.set(correlation_id)
    try:
        yield correlation_id
    finally:
        _correlation_id.reset(token)
