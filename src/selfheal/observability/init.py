"""
Observability bootstrap

`initialize_observability(get_config().telemetry)` is meant to be called once
by the process hosting the engine (worker, CLI, service).
"""

import logging
import logging.config
from typing import Any, Optional

from opentelemetry import trace

from .config import TelemetryConfig
from .metrics import initialize_metrics, reset_metrics
from .tracer import initialize_tracing, shutdown_tracing

logger = logging.getLogger(__name__)

_initialized = False

JSON_FIELDS = "%(asctime)s %(name)s %(levelname)s %(message)s"
TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class TraceContextFilter(logging.Filter):
    """Stamp records with the active trace and span ids (empty outside a span)"""

    def filter(self, record: logging.LogRecord) -> bool:
        span = trace.get_current_span()
        ctx = span.get_span_context()
        recording = span.is_recording() and ctx.is_valid
        record.trace_id = format(ctx.trace_id, "032x") if recording else ""
        record.span_id = format(ctx.span_id, "016x") if recording else ""
        return True


def _logging_dict(config: TelemetryConfig, level: str) -> dict[str, Any]:
    fields = JSON_FIELDS
    if config.logging.include_trace_ids:
        fields += " %(trace_id)s %(span_id)s"

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "filters": {"trace_context": {"()": TraceContextFilter}},
        "formatters": {
            "json": {"()": "pythonjsonlogger.jsonlogger.JsonFormatter", "fmt": fields},
            "text": {"format": TEXT_FORMAT},
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": config.logging.format,
                "filters": ["trace_context"],
                "stream": f"ext://sys.{config.logging.stream}",
            }
        },
        "root": {"level": level, "handlers": ["console"]},
    }


def configure_logging(config: TelemetryConfig, level: Optional[str] = None) -> None:
    """Route all logging to one console handler, JSON unless configured otherwise"""
    log_level = (level or config.logging.level).upper()
    logging.config.dictConfig(_logging_dict(config, log_level))


def initialize_observability(config: TelemetryConfig) -> None:
    """
    Set up logging, tracing and metrics from one TelemetryConfig

    Logging goes first so the other subsystems' start-up messages use it.
    A subsystem that fails to start is logged and skipped; the engine runs
    fine without any of them.
    """
    global _initialized

    if _initialized:
        logger.warning("Observability already initialized, skipping")
        return
    if not config.enabled:
        logger.info("Observability is disabled")
        return

    if config.logging.enabled:
        configure_logging(config)

    for name, setup in (("tracing", initialize_tracing), ("metrics", initialize_metrics)):
        try:
            setup(config)
        except Exception as e:
            logger.error(f"Failed to initialize {name}: {e}")

    _initialized = True
    logger.info(f"Observability initialized for environment {config.environment}")


def shutdown_observability() -> None:
    """Flush spans and drop the global metrics collector"""
    global _initialized

    if not _initialized:
        return
    try:
        shutdown_tracing()
    except Exception as e:
        logger.error(f"Error shutting down tracing: {e}")
    reset_metrics()
    _initialized = False
    logger.info("Observability shut down")
