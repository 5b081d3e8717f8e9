"""
Test suite for injected collaborators and observability helpers
"""

import pytest

from incidentops.exceptions import ToolLookupError
from incidentops.gatherers import DataGatherer, StaticDataGatherer
from incidentops.models import RemediationExecutedEvent
from incidentops.notifications import LoggingNotifier, Notifier
from incidentops.observability import (
    initialize_observability,
    is_observability_initialized,
    shutdown_observability,
)
from incidentops.observability.config import ObservabilityConfig
from incidentops.observability.metrics import get_metrics, initialize_metrics
from incidentops.observability.tracer import trace_async, trace_operation
from incidentops.orchestrator import IncidentOrchestrator
from incidentops.tools import ToolExecutor, ToolRegistry, simulated_tool_registry


@pytest.fixture
def orchestrator_factory(
    memory_store, static_gatherer, rca_engine, remediation_engine, test_config
):
    def factory():
        return IncidentOrchestrator(
            memory_store, static_gatherer, rca_engine, remediation_engine, config=test_config
        )

    return factory


class TestToolRegistry:
    """Test tool lookup and simulated tools"""

    @pytest.mark.asyncio
    async def test_unknown_service(self):
        with pytest.raises(ToolLookupError, match="Unknown tool service: remediation"):
            await ToolRegistry().execute_tool("remediation", "restart_service", {})

    @pytest.mark.asyncio
    async def test_unknown_tool(self, tool_registry):
        with pytest.raises(ToolLookupError, match="Unknown tool 'drop_table'"):
            await tool_registry.execute_tool("remediation", "drop_table", {})

    @pytest.mark.asyncio
    async def test_simulated_scale(self, tool_registry):
        result = await tool_registry.execute_tool(
            "remediation", "scale_resources", {"target": "api-service", "params": {"replicas": 4}}
        )

        assert result["success"] is True
        assert result["simulated"] is True
        assert result["replicas"] == 4

    def test_custom_service_name(self):
        registry = simulated_tool_registry("k8s")

        assert "restart_service" in registry.list_tools()["k8s"]
        assert isinstance(registry, ToolExecutor)


class TestLoggingNotifier:
    """Test the logging notifier"""

    @pytest.mark.asyncio
    async def test_records_and_logs(self, caplog):
        notifier = LoggingNotifier()
        event = RemediationExecutedEvent(
            incident_id="inc-1",
            action_type="restart_service",
            target="api-service",
            success=True,
            message="Restarted",
            execution_id="exec-1",
        )

        with caplog.at_level("INFO", logger="incidentops.notifications"):
            await notifier.send(event)

        assert notifier.sent == [event]
        assert "restart_service on api-service succeeded for incident inc-1" in caplog.text
        assert isinstance(notifier, Notifier)


class TestStaticDataGatherer:
    """Test fixture-backed gathering"""

    @pytest.mark.asyncio
    async def test_filters_by_service(self, static_gatherer, make_incident):
        incident = make_incident()

        logs = await static_gatherer.get_logs(incident)
        status = await static_gatherer.get_system_status(incident)

        assert logs
        assert all(entry.service == "api-service" for entry in logs)
        assert [s.service for s in status] == ["api-service"]

    @pytest.mark.asyncio
    async def test_unrelated_service(self, static_gatherer, make_incident):
        incident = make_incident(affected_services={"billing"})

        assert await static_gatherer.get_logs(incident) == []

    @pytest.mark.asyncio
    async def test_runbooks_ranked(self, static_gatherer, make_incident):
        runbooks = await static_gatherer.search_runbooks(make_incident())

        assert runbooks
        scores = [r.relevance_score for r in runbooks]
        assert scores == sorted(scores, reverse=True)

    def test_empty_fixtures(self):
        gatherer = StaticDataGatherer()

        assert gatherer.logs == []
        assert isinstance(gatherer, DataGatherer)


class TestObservabilityHelpers:
    """Test tracing and metrics helpers without exporters"""

    @pytest.mark.asyncio
    async def test_trace_async_passthrough(self):
        @trace_async("test.operation")
        async def double(value):
            return value * 2

        assert await double(21) == 42

    def test_trace_operation_reraises(self):
        with pytest.raises(RuntimeError):
            with trace_operation("test.failure"):
                raise RuntimeError("boom")

    @pytest.mark.asyncio
    async def test_pipeline_metrics(self, orchestrator_factory, sample_alert):
        metrics = initialize_metrics(ObservabilityConfig())
        assert get_metrics() is metrics

        await orchestrator_factory().handle_alert(sample_alert)

        text = metrics.get_metrics_text()
        assert 'incidentops_incidents_total{severity="P1",status="resolved"} 1.0' in text
        assert 'phase="analyze"' in text
        assert "incidentops_active_incidents 0.0" in text

    def test_disabled_observability(self):
        initialize_observability(ObservabilityConfig(enabled=False))

        assert is_observability_initialized() is False
        assert get_metrics() is None
        shutdown_observability()
