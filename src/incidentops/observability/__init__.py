"""
Observability module for incidentops

Provides OpenTelemetry tracing, Prometheus metrics and structured logging
for monitoring incident processing.
"""

from .config import ObservabilityConfig
from .init import (
    initialize_observability,
    is_observability_initialized,
    shutdown_observability,
)
from .metrics import MetricsCollector, get_metrics
from .tracer import add_event, get_tracer, set_attribute, trace_async, trace_operation

__all__ = [
    "MetricsCollector",
    "ObservabilityConfig",
    "add_event",
    "get_metrics",
    "get_tracer",
    "initialize_observability",
    "is_observability_initialized",
    "set_attribute",
    "shutdown_observability",
    "trace_async",
    "trace_operation",
]
