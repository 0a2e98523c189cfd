"""
Test suite for observability helpers

Tests Prometheus metric recording, the optional global collector, tracing
helpers without an initialized provider, and logging configuration.
"""

import logging
from unittest.mock import patch

import pytest
from pythonjsonlogger.jsonlogger import JsonFormatter

from selfheal.models import ExecutionOptions
from selfheal.observability.config import TelemetryConfig
from selfheal.observability.init import (
    TraceContextFilter,
    configure_logging,
    initialize_observability,
    shutdown_observability,
)
from selfheal.observability.metrics import (
    MetricsCollector,
    get_metrics,
    initialize_metrics,
    reset_metrics,
)
from selfheal.observability.tracer import trace_async, trace_operation

from conftest import make_action, make_context


@pytest.fixture
def collector():
    return MetricsCollector(TelemetryConfig())


class TestMetricsCollector:
    """Test metric recording"""

    def test_record_execution(self, collector):
        collector.record_execution("notify", "completed")
        collector.record_execution("notify", "completed")

        value = collector.registry.get_sample_value(
            "selfheal_executions_total", {"action_type": "notify", "status": "completed"}
        )
        assert value == 2.0

    def test_record_pattern_and_escalation(self, collector):
        collector.record_pattern("stuck_workflow", "high")
        collector.record_escalation(2)

        assert collector.registry.get_sample_value(
            "selfheal_patterns_detected_total", {"pattern_type": "stuck_workflow", "severity": "high"}
        ) == 1.0
        assert collector.registry.get_sample_value("selfheal_escalations_total", {"level": "2"}) == 1.0

    def test_active_execution_gauge(self, collector):
        with collector.track_active_execution():
            assert collector.registry.get_sample_value("selfheal_active_executions") == 1.0
        assert collector.registry.get_sample_value("selfheal_active_executions") == 0.0

    def test_collectors_are_independent(self):
        first = MetricsCollector(TelemetryConfig())
        second = MetricsCollector(TelemetryConfig())
        first.record_timeout("retry")

        assert second.registry.get_sample_value(
            "selfheal_execution_timeouts_total", {"action_type": "retry"}
        ) is None

    def test_metrics_text(self, collector):
        collector.record_rollback("notify", "completed")
        text = collector.get_metrics_text()
        assert "selfheal_rollbacks_total" in text
        assert "selfheal_system_info" in text


class TestGlobalMetrics:
    """Test the optional process-global collector"""

    def teardown_method(self):
        reset_metrics()

    def test_disabled(self):
        reset_metrics()
        initialize_metrics(TelemetryConfig(metrics={"enabled": False}))
        assert get_metrics() is None

    def test_enabled(self):
        initialize_metrics(TelemetryConfig())
        assert isinstance(get_metrics(), MetricsCollector)

    @pytest.mark.asyncio
    async def test_executor_records_metrics(self, executor_service, stored_action, collector):
        with patch("selfheal.executor.get_metrics", return_value=collector):
            await executor_service.execute_action(stored_action, make_context())

        assert collector.registry.get_sample_value(
            "selfheal_executions_total", {"action_type": "notify", "status": "completed"}
        ) == 1.0
        assert collector.registry.get_sample_value(
            "selfheal_execution_duration_seconds_count", {"action_type": "notify"}
        ) == 1.0

    @pytest.mark.asyncio
    async def test_timeout_metric(self, executor_service, storage, collector):
        action = await storage.save_action(make_action(id="a-slow", action_type="retry"))
        with patch("selfheal.executor.get_metrics", return_value=collector):
            await executor_service.execute_action(
                action, make_context(), ExecutionOptions(timeout_seconds=0.01)
            )
        await executor_service.wait_for_orphans()

        assert collector.registry.get_sample_value(
            "selfheal_execution_timeouts_total", {"action_type": "retry"}
        ) == 1.0


class TestTracing:
    """Test tracing helpers without an SDK provider"""

    @pytest.mark.asyncio
    async def test_trace_async_passes_through(self):
        @trace_async("test.operation")
        async def add(a, b):
            return a + b

        assert await add(2, 3) == 5

    @pytest.mark.asyncio
    async def test_trace_async_propagates_errors(self):
        @trace_async()
        async def fail():
            raise ValueError("nope")

        with pytest.raises(ValueError):
            await fail()

    def test_trace_operation(self):
        with trace_operation("test.block", {"key": "value"}) as span:
            assert span is not None


class TestLogging:
    """Test logging configuration"""

    def setup_method(self):
        self._handlers = logging.getLogger().handlers[:]
        self._level = logging.getLogger().level

    def teardown_method(self):
        root = logging.getLogger()
        root.handlers = self._handlers
        root.setLevel(self._level)

    def test_json_formatter(self):
        configure_logging(TelemetryConfig())

        root = logging.getLogger()
        assert any(isinstance(h.formatter, JsonFormatter) for h in root.handlers)
        assert root.level == logging.INFO

    def test_text_format_and_level(self):
        configure_logging(TelemetryConfig(logging={"format": "text"}), level="debug")

        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert not any(isinstance(h.formatter, JsonFormatter) for h in root.handlers)

    def test_trace_filter_without_span(self):
        record = logging.LogRecord("selfheal", logging.INFO, __file__, 1, "msg", None, None)

        assert TraceContextFilter().filter(record)
        assert record.trace_id == ""
        assert record.span_id == ""


class TestTelemetryConfig:
    """Test telemetry settings"""

    def test_header_list_string(self):
        config = TelemetryConfig(tracing={"otlp_headers": "api-key=abc, tenant=t1"})
        assert config.tracing.otlp_headers == {"api-key": "abc", "tenant": "t1"}

    def test_buckets_sorted(self):
        config = TelemetryConfig(metrics={"duration_buckets": [5.0, 0.5, 1.0, 0.5]})
        assert config.metrics.duration_buckets == [0.5, 1.0, 5.0]

    def test_invalid_buckets(self):
        with pytest.raises(ValueError):
            TelemetryConfig(metrics={"duration_buckets": [0.0, 1.0]})

    def test_export_flags(self):
        config = TelemetryConfig()
        assert not config.exports_traces
        assert not config.serves_metrics

        config = TelemetryConfig(tracing={"otlp_endpoint": "http://collector:4317"})
        assert config.exports_traces
        assert config.resource_attributes["service.name"] == "selfheal"

        config = TelemetryConfig(enabled=False, tracing={"otlp_endpoint": "http://collector:4317"})
        assert not config.exports_traces


class TestInitialization:
    """Test observability bootstrap"""

    def teardown_method(self):
        shutdown_observability()
        reset_metrics()

    def test_initialize_and_shutdown(self):
        config = TelemetryConfig(tracing={"enabled": False}, logging={"enabled": False})

        initialize_observability(config)
        assert isinstance(get_metrics(), MetricsCollector)

        shutdown_observability()
        assert get_metrics() is None

    def test_disabled(self):
        initialize_observability(TelemetryConfig(enabled=False))
        assert get_metrics() is None
