"""
Prometheus metrics collection for incidentops

Covers incident outcomes, pipeline phase timing, model calls, remediation
actions, rollbacks and circuit-breaker openings.
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

from .config import ObservabilityConfig

logger = logging.getLogger(__name__)


@dataclass
class MetricsCollector:
    """Central metrics collector for incident processing"""

    config: ObservabilityConfig
    registry: CollectorRegistry = field(default_factory=CollectorRegistry)

    incidents_total: Counter = field(init=False)
    phase_duration: Histogram = field(init=False)
    active_incidents: Gauge = field(init=False)

    model_calls_total: Counter = field(init=False)
    model_duration: Histogram = field(init=False)
    rca_confidence: Histogram = field(init=False)

    remediation_actions_total: Counter = field(init=False)
    rollbacks_total: Counter = field(init=False)
    breaker_opens_total: Counter = field(init=False)

    system_info: Info = field(init=False)

    def __post_init__(self):
        labels = list(self.config.metrics.default_labels.keys())
        buckets = self.config.metrics.duration_buckets

        self.incidents_total = Counter(
            "incidentops_incidents_total",
            "Incidents processed by final status",
            labelnames=["severity", "status"] + labels,
            registry=self.registry,
        )
        self.phase_duration = Histogram(
            "incidentops_phase_duration_seconds",
            "Duration of incident pipeline phases",
            labelnames=["phase"] + labels,
            buckets=buckets,
            registry=self.registry,
        )
        self.active_incidents = Gauge(
            "incidentops_active_incidents",
            "Incidents currently being processed",
            labelnames=labels,
            registry=self.registry,
        )
        self.model_calls_total = Counter(
            "incidentops_model_calls_total",
            "Model invocations by outcome",
            labelnames=["model", "outcome"] + labels,
            registry=self.registry,
        )
        self.model_duration = Histogram(
            "incidentops_model_duration_seconds",
            "Duration of model invocations",
            labelnames=["model"] + labels,
            buckets=buckets,
            registry=self.registry,
        )
        self.rca_confidence = Histogram(
            "incidentops_rca_confidence",
            "Confidence scores of produced RCA results",
            labelnames=labels,
            buckets=[0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7, 0.8, 0.9, 1.0],
            registry=self.registry,
        )
        self.remediation_actions_total = Counter(
            "incidentops_remediation_actions_total",
            "Remediation actions by type and outcome",
            labelnames=["action_type", "outcome"] + labels,
            registry=self.registry,
        )
        self.rollbacks_total = Counter(
            "incidentops_rollbacks_total",
            "Rollbacks by outcome",
            labelnames=["action_type", "outcome"] + labels,
            registry=self.registry,
        )
        self.breaker_opens_total = Counter(
            "incidentops_circuit_breaker_opens_total",
            "Circuit breaker openings by dependency",
            labelnames=["dependency"] + labels,
            registry=self.registry,
        )
        self.system_info = Info(
            "incidentops_system", "System information", registry=self.registry
        )
        self.system_info.info(
            {
                "version": self.config.tracing.service_version,
                "environment": self.config.environment,
            }
        )

        if self.config.metrics.start_server:
            start_http_server(port=self.config.metrics.port, registry=self.registry)
            logger.info(f"Metrics server started on port {self.config.metrics.port}")

    def _child(self, metric, **labels: str):
        """Labelled child of a metric, or the metric itself when it has no labels"""
        labels = {**self.config.metrics.default_labels, **labels}
        return metric.labels(**labels) if labels else metric

    @contextmanager
    def time_phase(self, phase: str):
        start_time = time.time()
        try:
            yield
        finally:
            self._child(self.phase_duration, phase=phase).observe(
                time.time() - start_time
            )

    @contextmanager
    def track_active_incident(self):
        gauge = self._child(self.active_incidents)
        gauge.inc()
        try:
            yield
        finally:
            gauge.dec()

    def record_incident(self, severity: str, status: str):
        self._child(self.incidents_total, severity=severity, status=status).inc()

    def record_model_call(self, model: str, outcome: str, duration: float):
        self._child(self.model_calls_total, model=model, outcome=outcome).inc()
        self._child(self.model_duration, model=model).observe(duration)

    def record_rca_confidence(self, confidence: float):
        self._child(self.rca_confidence).observe(confidence)

    def record_action(self, action_type: str, outcome: str):
        self._child(
            self.remediation_actions_total, action_type=action_type, outcome=outcome
        ).inc()

    def record_rollback(self, action_type: str, success: bool):
        outcome = "success" if success else "failure"
        self._child(self.rollbacks_total, action_type=action_type, outcome=outcome).inc()

    def record_breaker_open(self, dependency: str):
        self._child(self.breaker_opens_total, dependency=dependency).inc()

    def get_metrics_text(self) -> str:
        """Metrics in Prometheus text exposition format"""
        return generate_latest(self.registry).decode("utf-8")


_metrics: Optional[MetricsCollector] = None


def initialize_metrics(config: ObservabilityConfig) -> Optional[MetricsCollector]:
    """Create the global collector when metrics are enabled"""
    global _metrics
    if not config.enabled or not config.metrics.enabled:
        logger.info("Metrics collection is disabled")
        return None
    _metrics = MetricsCollector(config)
    return _metrics


def get_metrics() -> Optional[MetricsCollector]:
    """Global collector, or None when metrics were never initialized"""
    return _metrics


def reset_metrics() -> None:
    global _metrics
    _metrics = None
