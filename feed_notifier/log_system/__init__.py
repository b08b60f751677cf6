"""Logging system for feed_notifier."""

from .correlation import (
    clear_correlation_id,
    correlation_scope,
    generate_correlation_id,
    get_correlation_id,
    set_correlation_id,
)
from .unified_logger import UnifiedLogger

__all__ = [
    "UnifiedLogger",
    "clear_correlation_id",
    "correlation_scope",
    "generate_correlation_id",
    "get_correlation_id",
    "set_correlation_id",
]
