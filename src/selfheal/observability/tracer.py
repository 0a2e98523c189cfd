"""
OpenTelemetry tracing for selfheal operations

Spans are named `selfheal.<operation>`. Until `initialize_tracing` runs every
helper here works against a no-op tracer, so library users who never set up
telemetry pay nothing.
"""

import functools
import logging
import time
from contextlib import contextmanager
from typing import Any, Awaitable, Callable, Iterator, Optional, ParamSpec, TypeVar

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased
from opentelemetry.trace import Status, StatusCode

from .config import TelemetryConfig

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")

_provider: Optional[TracerProvider] = None
_tracer: Optional[trace.Tracer] = None


def _span_value(value: Any) -> Any:
    # OTel attributes only take primitives; enums go through their value
    if isinstance(value, (str, bool, int, float)):
        return value
    return getattr(value, "value", str(value))


def initialize_tracing(config: TelemetryConfig) -> Optional[TracerProvider]:
    """Install an SDK tracer provider, exporting over OTLP when configured"""
    global _provider, _tracer

    if not config.tracing_active:
        logger.info("Tracing is disabled")
        return None

    provider = TracerProvider(
        resource=Resource.create(config.resource_attributes),
        sampler=TraceIdRatioBased(config.tracing.sample_rate),
    )

    if config.exports_traces:
        exporter = OTLPSpanExporter(
            endpoint=config.tracing.otlp_endpoint,
            headers=config.tracing.otlp_headers,
            insecure=config.tracing.otlp_insecure,
        )
        provider.add_span_processor(BatchSpanProcessor(exporter))
        logger.info(f"Exporting spans to {config.tracing.otlp_endpoint}")

    trace.set_tracer_provider(provider)
    _provider = provider
    _tracer = provider.get_tracer("selfheal", config.tracing.service_version)
    logger.info(f"Tracing initialized (sample_rate={config.tracing.sample_rate})")
    return provider


def shutdown_tracing() -> None:
    """Flush pending spans and fall back to the no-op tracer"""
    global _provider, _tracer
    if _provider is not None:
        _provider.shutdown()
    _provider = None
    _tracer = None


def get_tracer() -> trace.Tracer:
    return _tracer or trace.NoOpTracer()


@contextmanager
def trace_operation(
    operation_name: str, attributes: Optional[dict[str, Any]] = None
) -> Iterator[trace.Span]:
    """
    Run a block inside a span

    None-valued attributes are dropped. An exception marks the span as
    errored and propagates unchanged.
    """
    with get_tracer().start_as_current_span(
        operation_name, record_exception=False, set_status_on_exception=False
    ) as span:
        for key, value in (attributes or {}).items():
            if value is not None:
                span.set_attribute(key, _span_value(value))
        try:
            yield span
        except Exception as e:
            span.record_exception(e)
            span.set_status(Status(StatusCode.ERROR, str(e)))
            raise


def trace_async(operation_name: Optional[str] = None):
    """Trace a coroutine function; the span also records its duration"""

    def decorator(func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
        name = operation_name or f"{func.__module__}.{func.__qualname__}"

        @functools.wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            with trace_operation(name) as span:
                started = time.perf_counter()
                try:
                    return await func(*args, **kwargs)
                finally:
                    span.set_attribute(
                        "selfheal.duration_ms", (time.perf_counter() - started) * 1000
                    )

        return wrapper

    return decorator


def add_event(name: str, attributes: Optional[dict[str, Any]] = None) -> None:
    span = trace.get_current_span()
    if span.is_recording():
        span.add_event(
            name, {k: _span_value(v) for k, v in (attributes or {}).items() if v is not None}
        )


def set_attribute(key: str, value: Any) -> None:
    span = trace.get_current_span()
    if span.is_recording() and value is not None:
        span.set_attribute(key, _span_value(value))
