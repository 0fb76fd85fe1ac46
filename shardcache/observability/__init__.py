"""
Observability module: metrics and structured logging.
"""

from shardcache.observability.metrics import (
    Counter,
    Histogram,
    LibraryMetrics,
    MetricsCollector,
)
from shardcache.observability.logging import (
    JsonFormatter,
    LogLevel,
    StructuredLogger,
    setup_logging,
)

__all__ = [
    "Counter",
    "Histogram",
    "LibraryMetrics",
    "MetricsCollector",
    "JsonFormatter",
    "LogLevel",
    "StructuredLogger",
    "setup_logging",
]
