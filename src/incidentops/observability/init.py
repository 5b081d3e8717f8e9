"""
Observability initialization

Configures tracing, metrics and structured logging in one call.
"""

import logging
import logging.config
from typing import Optional

from opentelemetry import trace

from .config import ObservabilityConfig
from .metrics import initialize_metrics
from .tracer import initialize_tracing

logger = logging.getLogger(__name__)

_initialized = False
_config: Optional[ObservabilityConfig] = None


class TraceContextFilter(logging.Filter):
    """Adds trace_id and span_id of the current span to log records"""

    def filter(self, record: logging.LogRecord) -> bool:
        span = trace.get_current_span()
        if span.is_recording():
            context = span.get_span_context()
            record.trace_id = format(context.trace_id, "032x")
            record.span_id = format(context.span_id, "016x")
        else:
            record.trace_id = ""
            record.span_id = ""
        return True


def configure_logging(config: ObservabilityConfig) -> None:
    """Configure stdlib logging with JSON or text output"""
    log_config = {
        "version": 1,
        "disable_existing_loggers": False,
        "filters": {"trace_context": {"()": TraceContextFilter}},
        "formatters": {
            "json": {
                "class": "pythonjsonlogger.jsonlogger.JsonFormatter",
                "format": "%(asctime)s %(name)s %(levelname)s %(message)s %(trace_id)s %(span_id)s",
            },
            "text": {"format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s"},
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": config.logging.level,
                "formatter": config.logging.format,
                "filters": ["trace_context"] if config.logging.include_trace_context else [],
                "stream": "ext://sys.stderr",
            }
        },
        "root": {"level": config.logging.level, "handlers": ["console"]},
        "loggers": {"incidentops": {"level": config.logging.level, "propagate": True}},
    }
    logging.config.dictConfig(log_config)


def initialize_observability(config: ObservabilityConfig) -> None:
    """Initialize logging, tracing and metrics once per process"""
    global _initialized, _config

    if _initialized:
        logger.warning("Observability already initialized, skipping")
        return

    _config = config
    if not config.enabled:
        logger.info("Observability is disabled")
        return

    if config.logging.enabled:
        configure_logging(config)
    initialize_tracing(config)
    initialize_metrics(config)

    _initialized = True
    logger.info(f"Observability initialized for environment: {config.environment}")


def is_observability_initialized() -> bool:
    return _initialized


def shutdown_observability() -> None:
    """Flush and shut down the tracer provider"""
    global _initialized

    if not _initialized:
        return

    provider = trace.get_tracer_provider()
    shutdown = getattr(provider, "shutdown", None)
    if callable(shutdown):
        shutdown()

    _initialized = False
    logger.info("Observability shutdown complete")
