"""
Tracing, metrics and logging for selfheal
"""

from .config import TelemetryConfig
from .init import configure_logging, initialize_observability, shutdown_observability
from .metrics import MetricsCollector, get_metrics
from .tracer import get_tracer, trace_async, trace_operation

__all__ = [
    "TelemetryConfig",
    "initialize_observability",
    "shutdown_observability",
    "configure_logging",
    "get_metrics",
    "MetricsCollector",
    "get_tracer",
    "trace_async",
    "trace_operation",
]
