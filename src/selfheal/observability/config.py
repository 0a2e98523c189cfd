"""
Telemetry settings

Nested under `SelfHealConfig.telemetry`, so every field can be overridden
from the environment, e.g. SELFHEAL_TELEMETRY__TRACING__OTLP_ENDPOINT.
"""

from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator


class TracingConfig(BaseModel):
    """OpenTelemetry tracing"""

    enabled: bool = True
    service_name: str = "selfheal"
    service_version: str = "0.1.0"

    otlp_endpoint: Optional[str] = Field(
        default=None, description="OTLP gRPC collector, e.g. http://localhost:4317"
    )
    otlp_headers: dict[str, str] = Field(default_factory=dict)
    otlp_insecure: bool = True

    sample_rate: float = Field(default=1.0, ge=0.0, le=1.0)
    resource_attributes: dict[str, str] = Field(default_factory=dict)

    @field_validator("otlp_headers", mode="before")
    @classmethod
    def parse_header_list(cls, value):
        # YAML may give the OTLP header list form: "k1=v1,k2=v2"
        if not isinstance(value, str):
            return value
        pairs = (item.split("=", 1) for item in value.split(",") if "=" in item)
        return {key.strip(): val.strip() for key, val in pairs}


class MetricsConfig(BaseModel):
    """Prometheus metrics"""

    enabled: bool = True
    start_server: bool = Field(
        default=False, description="Expose /metrics over HTTP on `port`"
    )
    port: int = Field(default=9464, ge=1024, le=65535)
    default_labels: dict[str, str] = Field(default_factory=dict)

    # Plugin executions routinely run for seconds, detection scans for less
    duration_buckets: list[float] = Field(
        default_factory=lambda: [0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0]
    )

    @field_validator("duration_buckets")
    @classmethod
    def buckets_ascending(cls, value: list[float]) -> list[float]:
        if not value or any(b <= 0 for b in value):
            raise ValueError("duration_buckets must be non-empty and positive")
        return sorted(set(value))


class LoggingConfig(BaseModel):
    """Console logging"""

    enabled: bool = True
    level: str = "INFO"
    format: Literal["json", "text"] = "json"
    include_trace_ids: bool = True
    stream: Literal["stderr", "stdout"] = "stderr"


class TelemetryConfig(BaseModel):
    """Tracing, metrics and logging settings"""

    enabled: bool = True
    environment: str = "development"

    tracing: TracingConfig = Field(default_factory=TracingConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @property
    def resource_attributes(self) -> dict[str, str]:
        return {
            "service.name": self.tracing.service_name,
            "service.version": self.tracing.service_version,
            "deployment.environment": self.environment,
            **self.tracing.resource_attributes,
        }

    @property
    def tracing_active(self) -> bool:
        return self.enabled and self.tracing.enabled

    @property
    def metrics_active(self) -> bool:
        return self.enabled and self.metrics.enabled

    @property
    def exports_traces(self) -> bool:
        return self.tracing_active and self.tracing.otlp_endpoint is not None

    @property
    def serves_metrics(self) -> bool:
        return self.metrics_active and self.metrics.start_server
