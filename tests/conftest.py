"""
Pytest configuration and shared fixtures for incidentops tests

Provides a fast test configuration, sample alerts and incidents, and the
in-memory collaborators the engines are wired with.
"""

from datetime import datetime, timezone

import pytest

from incidentops.concurrency import CircuitBreakerRegistry
from incidentops.config import IncidentOpsConfig, LLMRouterConfig
from incidentops.gatherers import StaticDataGatherer
from incidentops.llm_client import BaseModelClient, LLMRouter, MockModelClient
from incidentops.models import (
    AlertData,
    GatheredData,
    Incident,
    IncidentAlert,
    IncidentSeverity,
    LogEntry,
    MetricData,
    RecommendedAction,
    SystemStatus,
)
from incidentops.notifications import LoggingNotifier
from incidentops.observability.metrics import reset_metrics
from incidentops.rca import RCAEngine
from incidentops.remediation import RemediationEngine
from incidentops.store import MemoryIncidentStore
from incidentops.tools import simulated_tool_registry

SAMPLE_REPLY = """ROOT_CAUSE: Database connection pool exhausted on api-service
EVIDENCE:
- Connection timeout errors in application logs
- db_connections_active at pool maximum
- p99 latency alert firing
CONFIDENCE: 0.85
CONTRIBUTING_FACTORS:
- Pool size too small for peak traffic
RECOMMENDED_ACTIONS:
- restart_service: Restart api-service to release connections (autonomous_safe)
- scale_resources: Scale out api-service (autonomous_safe) [replicas=4, original_replicas=2]
TIMELINE:
- T-10m: Traffic spike
- T0: Alert fired
PREVENTION:
- Alert on pool saturation
"""


class FailingModelClient(BaseModelClient):
    """Model backend that always raises the given error"""

    def __init__(self, error: Exception):
        super().__init__(LLMRouterConfig(provider="mock"))
        self.error = error
        self.calls = 0

    async def run(self, model_id, request):
        self.calls += 1
        raise self.error


@pytest.fixture
def failing_client():
    """Factory for model clients that always raise"""
    return FailingModelClient


@pytest.fixture
def sample_reply():
    """Well-formed seven-section model reply"""
    return SAMPLE_REPLY


@pytest.fixture(autouse=True)
def _reset_metrics():
    reset_metrics()
    yield
    reset_metrics()


@pytest.fixture
def test_config():
    """Provide a test configuration with mock models and no backoff delays"""
    config = IncidentOpsConfig()
    config.llm.routers = {
        "primary": LLMRouterConfig(provider="mock", model="mock-primary"),
        "fallback": LLMRouterConfig(provider="mock", model="mock-fallback"),
    }
    config.llm.capacity_retry_base_delay = 0.0
    config.remediation.retry_base_delay = 0.0
    config.remediation.notification_retry_delay = 0.0
    config.remediation.attempt_timeout = 5.0
    config.performance.gather_timeout = 1.0
    return config


@pytest.fixture
def fixed_now():
    return datetime(2024, 5, 1, 10, 5, tzinfo=timezone.utc)


@pytest.fixture
def sample_alert():
    """Alert describing a database connection timeout on api-service"""
    return IncidentAlert(
        source="prometheus",
        alert_type="HighLatency",
        severity="P1",
        message="Database connection timeout",
        affected_services=["api-service"],
        metadata={"region": "eu-west-1"},
    )


@pytest.fixture
def make_incident(fixed_now):
    """Factory for incidents with sensible defaults"""

    def factory(**overrides) -> Incident:
        fields = {
            "id": "inc-test-001",
            "title": "HighLatency: Database connection timeout",
            "description": "Message: Database connection timeout",
            "severity": IncidentSeverity.P1,
            "source": "prometheus",
            "affected_services": {"api-service"},
            "created_at": fixed_now,
            "updated_at": fixed_now,
            "metadata": {"restart_attempts": 0, "failed_attempts": 0},
        }
        fields.update(overrides)
        return Incident(**fields)

    return factory


@pytest.fixture
def sample_incident(make_incident):
    return make_incident()


@pytest.fixture
def full_data(fixed_now):
    """Gathered data with every core source present"""
    return GatheredData(
        logs=[
            LogEntry(
                timestamp=fixed_now,
                service="api-service",
                level="error",
                message="Timeout acquiring connection from pool",
            )
        ],
        metrics=[
            MetricData(
                metric_name="db_connections_active",
                timestamp=fixed_now,
                value=100,
                labels={"service": "api-service"},
            )
        ],
        alerts=[
            AlertData(
                id="alrt-1",
                severity="P1",
                trigger_condition="p99 latency > 2000ms",
                timestamp=fixed_now,
                service="api-service",
            )
        ],
        system_status=[SystemStatus(service="api-service", status="degraded")],
    )


@pytest.fixture
def make_action():
    """Factory for recommended actions"""

    def factory(action_type="restart_service", **overrides) -> RecommendedAction:
        fields = {
            "action_type": action_type,
            "description": f"Run {action_type}",
            "target": "api-service",
            "risk_level": "autonomous_safe",
        }
        fields.update(overrides)
        return RecommendedAction(**fields)

    return factory


@pytest.fixture
def memory_store():
    return MemoryIncidentStore(max_size=100)


@pytest.fixture
def notifier():
    return LoggingNotifier()


@pytest.fixture
def breakers():
    return CircuitBreakerRegistry(failure_threshold=3, reset_timeout_seconds=60)


@pytest.fixture
def tool_registry():
    return simulated_tool_registry()


@pytest.fixture
def remediation_engine(test_config, tool_registry, notifier, memory_store, breakers):
    return RemediationEngine(
        tool_registry,
        notifier,
        store=memory_store,
        config=test_config,
        breakers=breakers,
    )


@pytest.fixture
def make_router(test_config):
    """Factory for routers with explicit primary and fallback clients"""

    def factory(primary=None, fallback=None) -> LLMRouter:
        router = LLMRouter(test_config)
        router.register_client(
            "primary",
            primary or MockModelClient(test_config.get_llm_router_config("primary"), reply=SAMPLE_REPLY),
        )
        router.register_client(
            "fallback",
            fallback or MockModelClient(test_config.get_llm_router_config("fallback"), reply=SAMPLE_REPLY),
        )
        return router

    return factory


@pytest.fixture
def rca_engine(test_config, make_router):
    return RCAEngine(test_config, router=make_router())


@pytest.fixture
def static_gatherer():
    return StaticDataGatherer.from_yaml()
