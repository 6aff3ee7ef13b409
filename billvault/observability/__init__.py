"""
Observability module: Metrics and structured logging.
"""

from billvault.observability.metrics import (
    MetricsCollector,
    Counter,
    Gauge,
    Histogram,
    ArchivalMetrics,
    ReadMetrics,
)
from billvault.observability.logging import (
    StructuredLogger,
    LogLevel,
    JsonFormatter,
    current_context,
    setup_logging,
)

__all__ = [
    "MetricsCollector",
    "Counter",
    "Gauge",
    "Histogram",
    "ArchivalMetrics",
    "ReadMetrics",
    "StructuredLogger",
    "LogLevel",
    "JsonFormatter",
    "current_context",
    "setup_logging",
]
