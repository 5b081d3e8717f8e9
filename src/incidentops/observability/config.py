"""
Telemetry configuration for OpenTelemetry, Prometheus and logging
"""

import os
from typing import Optional

from pydantic import BaseModel, Field


class TracingConfig(BaseModel):
    """OpenTelemetry tracing configuration"""

    enabled: bool = True
    service_name: str = "incidentops"
    service_version: str = "0.1.0"
    otlp_endpoint: Optional[str] = Field(
        default=None, description="OTLP endpoint URL (e.g., http://localhost:4317)"
    )
    otlp_headers: dict[str, str] = Field(default_factory=dict)
    otlp_insecure: bool = True
    sample_rate: float = Field(default=1.0, ge=0.0, le=1.0)

    @classmethod
    def from_env(cls) -> "TracingConfig":
        """Create tracing config from standard OTEL_* environment variables"""
        return cls(
            enabled=os.getenv("OTEL_TRACING_ENABLED", "true").lower() == "true",
            service_name=os.getenv("OTEL_SERVICE_NAME", "incidentops"),
            otlp_endpoint=os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT"),
            otlp_headers=cls._parse_headers(os.getenv("OTEL_EXPORTER_OTLP_HEADERS", "")),
            otlp_insecure=os.getenv("OTEL_EXPORTER_OTLP_INSECURE", "true").lower()
            == "true",
            sample_rate=float(os.getenv("OTEL_TRACE_SAMPLE_RATE", "1.0")),
        )

    @staticmethod
    def _parse_headers(headers_str: str) -> dict[str, str]:
        headers = {}
        for header in headers_str.split(","):
            if "=" in header:
                key, value = header.split("=", 1)
                headers[key.strip()] = value.strip()
        return headers


class MetricsConfig(BaseModel):
    """Prometheus metrics configuration"""

    enabled: bool = True
    port: int = Field(default=9090, ge=1024, le=65535)
    start_server: bool = False
    default_labels: dict[str, str] = Field(default_factory=dict)
    duration_buckets: list[float] = Field(
        default_factory=lambda: [0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0]
    )


class LoggingConfig(BaseModel):
    """Structured logging configuration"""

    enabled: bool = True
    level: str = "INFO"
    format: str = Field(default="json", description="Log format (json|text)")
    include_trace_context: bool = True


class ObservabilityConfig(BaseModel):
    """Complete telemetry configuration"""

    enabled: bool = True
    environment: str = "development"
    tracing: TracingConfig = Field(default_factory=TracingConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def from_settings(cls, settings) -> "ObservabilityConfig":
        """Build from an IncidentOpsConfig"""
        telemetry = settings.telemetry
        return cls(
            environment=telemetry.environment,
            tracing=TracingConfig(
                enabled=telemetry.enable_tracing,
                service_name=telemetry.service_name,
                otlp_endpoint=telemetry.otlp_endpoint,
            ),
            metrics=MetricsConfig(enabled=telemetry.enable_metrics),
            logging=LoggingConfig(level=settings.log_level),
        )

    def get_resource_attributes(self) -> dict[str, str]:
        return {
            "service.name": self.tracing.service_name,
            "service.version": self.tracing.service_version,
            "deployment.environment": self.environment,
        }

    def should_export_traces(self) -> bool:
        return self.enabled and self.tracing.enabled and self.tracing.otlp_endpoint is not None
