"""
Prometheus metrics for selfheal

Counts detected patterns, action executions, rollbacks and escalations, and
times detection scans and executor runs.
"""

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Optional

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
    start_http_server,
)

from .config import TelemetryConfig

logger = logging.getLogger(__name__)


@dataclass
class MetricsCollector:
    """
    Central metrics collector for selfheal operations

    Every collector owns its own CollectorRegistry so several engines (or test
    cases) can live in one process without duplicate-timeseries errors.
    """

    config: TelemetryConfig
    registry: CollectorRegistry = field(default_factory=CollectorRegistry)

    # Detection
    patterns_detected_total: Counter = field(init=False)
    detector_errors_total: Counter = field(init=False)
    detection_duration: Histogram = field(init=False)

    # Execution
    executions_total: Counter = field(init=False)
    execution_duration: Histogram = field(init=False)
    execution_timeouts_total: Counter = field(init=False)
    active_executions: Gauge = field(init=False)

    # Compensation and escalation
    rollbacks_total: Counter = field(init=False)
    escalations_total: Counter = field(init=False)

    system_info: Info = field(init=False)

    def __post_init__(self):
        self._initialize_metrics()

        if self.config.serves_metrics:
            self._start_metrics_server()

    def _initialize_metrics(self):
        labels = list(self.config.metrics.default_labels.keys())
        buckets = self.config.metrics.duration_buckets

        self.patterns_detected_total = Counter(
            "selfheal_patterns_detected_total",
            "Patterns returned by detection scans",
            labelnames=["pattern_type", "severity"] + labels,
            registry=self.registry,
        )

        self.detector_errors_total = Counter(
            "selfheal_detector_errors_total",
            "Detector runs that raised",
            labelnames=["pattern_type"] + labels,
            registry=self.registry,
        )

        self.detection_duration = Histogram(
            "selfheal_detection_duration_seconds",
            "Duration of a full detection scan",
            labelnames=labels,
            buckets=buckets,
            registry=self.registry,
        )

        self.executions_total = Counter(
            "selfheal_executions_total",
            "Action executions by terminal or parked status",
            labelnames=["action_type", "status"] + labels,
            registry=self.registry,
        )

        self.execution_duration = Histogram(
            "selfheal_execution_duration_seconds",
            "Duration of executor plugin runs",
            labelnames=["action_type"] + labels,
            buckets=buckets,
            registry=self.registry,
        )

        self.execution_timeouts_total = Counter(
            "selfheal_execution_timeouts_total",
            "Executor runs that exceeded their deadline",
            labelnames=["action_type"] + labels,
            registry=self.registry,
        )

        self.active_executions = Gauge(
            "selfheal_active_executions",
            "Executor plugin runs currently in flight",
            labelnames=labels,
            registry=self.registry,
        )

        self.rollbacks_total = Counter(
            "selfheal_rollbacks_total",
            "Rollback attempts by outcome",
            labelnames=["action_type", "outcome"] + labels,
            registry=self.registry,
        )

        self.escalations_total = Counter(
            "selfheal_escalations_total",
            "Escalation notices sent, by chain level",
            labelnames=["level"] + labels,
            registry=self.registry,
        )

        self.system_info = Info(
            "selfheal_system", "System information", registry=self.registry
        )
        self.system_info.info(
            {
                "version": self.config.tracing.service_version,
                "environment": self.config.environment,
            }
        )

        logger.info("Prometheus metrics initialized")

    def _start_metrics_server(self):
        try:
            start_http_server(port=self.config.metrics.port, registry=self.registry)
            logger.info(f"Metrics server started on port {self.config.metrics.port}")
        except Exception as e:
            logger.error(f"Failed to start metrics server: {e}")

    def _get_default_labels(self) -> dict[str, str]:
        return self.config.metrics.default_labels.copy()

    @contextmanager
    def time_operation(self, metric: Histogram, labels: dict[str, str]):
        """Context manager to time operations"""
        start_time = time.time()
        try:
            yield
        finally:
            combined_labels = {**self._get_default_labels(), **labels}
            metric.labels(**combined_labels).observe(time.time() - start_time)

    @contextmanager
    def track_active_execution(self):
        """Context manager to track in-flight executor runs"""
        gauge = self.active_executions
        labels = self._get_default_labels()
        if labels:
            gauge = gauge.labels(**labels)
        gauge.inc()
        try:
            yield
        finally:
            gauge.dec()

    def record_pattern(self, pattern_type: str, severity: str):
        labels = {
            **self._get_default_labels(),
            "pattern_type": pattern_type,
            "severity": severity,
        }
        self.patterns_detected_total.labels(**labels).inc()

    def record_detector_error(self, pattern_type: str):
        labels = {**self._get_default_labels(), "pattern_type": pattern_type}
        self.detector_errors_total.labels(**labels).inc()

    def record_detection_duration(self, seconds: float):
        histogram = self.detection_duration
        labels = self._get_default_labels()
        if labels:
            histogram = histogram.labels(**labels)
        histogram.observe(seconds)

    def record_execution(self, action_type: str, status: str):
        """Record an execution reaching `status`"""
        labels = {
            **self._get_default_labels(),
            "action_type": action_type,
            "status": status,
        }
        self.executions_total.labels(**labels).inc()

    def record_timeout(self, action_type: str):
        labels = {**self._get_default_labels(), "action_type": action_type}
        self.execution_timeouts_total.labels(**labels).inc()

    def record_rollback(self, action_type: str, outcome: str):
        labels = {
            **self._get_default_labels(),
            "action_type": action_type,
            "outcome": outcome,
        }
        self.rollbacks_total.labels(**labels).inc()

    def record_escalation(self, level: int):
        labels = {**self._get_default_labels(), "level": str(level)}
        self.escalations_total.labels(**labels).inc()

    def get_metrics_text(self) -> str:
        """Get metrics in Prometheus text format"""
        return generate_latest(self.registry).decode("utf-8")


# Global metrics instance
_metrics: Optional[MetricsCollector] = None


def initialize_metrics(config: TelemetryConfig) -> None:
    """Initialize global metrics collector"""
    global _metrics
    if not config.metrics_active:
        logger.info("Metrics collection is disabled")
        return
    _metrics = MetricsCollector(config)


def get_metrics() -> Optional[MetricsCollector]:
    """Get the global metrics collector, None until initialized"""
    return _metrics


def reset_metrics() -> None:
    """Drop the global collector (used between test runs)"""
    global _metrics
    _metrics = None
