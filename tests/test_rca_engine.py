"""
Test suite for the RCA engine

Tests model fallback, data-quality confidence adjustment and risk
reclassification of recommended actions.
"""

import pytest

from incidentops.exceptions import CapacityExceededError, ProcessingError, RCAParseError
from incidentops.llm_client import MockModelClient
from incidentops.models import ActionRiskLevel, GatheredData
from incidentops.observability.config import ObservabilityConfig
from incidentops.observability.metrics import initialize_metrics
from incidentops.rca import LIMITED_DATA_NOTE, RCAEngine


class TestRCAEngine:
    """Test one analysis pass"""

    @pytest.mark.asyncio
    async def test_analyze_with_full_data(self, rca_engine, sample_incident, full_data):
        result = await rca_engine.analyze(sample_incident, full_data)

        assert result.incident_id == sample_incident.id
        assert result.confidence_score == 0.85
        assert LIMITED_DATA_NOTE not in result.contributing_factors
        assert all(a.target == "api-service" for a in result.recommended_actions)

    @pytest.mark.asyncio
    async def test_prompt_sent_with_system_message(
        self, test_config, make_router, sample_incident, full_data, sample_reply
    ):
        primary = MockModelClient(test_config.get_llm_router_config("primary"), reply=sample_reply)
        engine = RCAEngine(test_config, router=make_router(primary=primary))

        await engine.analyze(sample_incident, full_data, ["Similar incident inc-9"])

        model_id, request = primary.requests[0]
        assert model_id == "mock-primary"
        assert request.messages[0]["role"] == "system"
        assert "expert SRE" in request.messages[0]["content"]
        assert "1. Similar incident inc-9" in request.messages[1]["content"]

    @pytest.mark.asyncio
    async def test_limited_data_lowers_confidence(self, rca_engine, sample_incident):
        """P1 database timeout with no logs, metrics or alerts"""
        result = await rca_engine.analyze(sample_incident, GatheredData())

        assert result.confidence_score <= 0.85 - 0.1
        assert LIMITED_DATA_NOTE in result.contributing_factors

    @pytest.mark.asyncio
    async def test_fallback_on_primary_failure(
        self, test_config, make_router, failing_client, sample_incident, full_data, sample_reply
    ):
        primary = failing_client(RuntimeError("connection refused"))
        fallback = MockModelClient(test_config.get_llm_router_config("fallback"), reply=sample_reply)
        engine = RCAEngine(test_config, router=make_router(primary=primary, fallback=fallback))

        result = await engine.analyze(sample_incident, full_data)

        assert result.root_cause.startswith("Database connection pool exhausted")
        assert primary.calls == 1
        assert fallback.requests[0][0] == "mock-fallback"

    @pytest.mark.asyncio
    async def test_capacity_errors_retried_before_fallback(
        self, test_config, make_router, failing_client, sample_incident, full_data
    ):
        primary = failing_client(CapacityExceededError("overloaded"))
        engine = RCAEngine(test_config, router=make_router(primary=primary))

        await engine.analyze(sample_incident, full_data)

        assert primary.calls == test_config.llm.capacity_retry_attempts

    @pytest.mark.asyncio
    async def test_both_models_fail(
        self, test_config, make_router, failing_client, sample_incident, full_data
    ):
        engine = RCAEngine(
            test_config,
            router=make_router(
                primary=failing_client(RuntimeError("primary down")),
                fallback=failing_client(RuntimeError("fallback down")),
            ),
        )

        with pytest.raises(ProcessingError) as exc_info:
            await engine.analyze(sample_incident, full_data)

        assert str(exc_info.value) == "AI analysis failed: all models unavailable"
        assert isinstance(exc_info.value.cause, RuntimeError)

    @pytest.mark.asyncio
    async def test_unparseable_reply(self, test_config, make_router, sample_incident, full_data):
        primary = MockModelClient(
            test_config.get_llm_router_config("primary"), reply="I could not determine anything."
        )
        engine = RCAEngine(test_config, router=make_router(primary=primary))

        with pytest.raises(RCAParseError):
            await engine.analyze(sample_incident, full_data)

    @pytest.mark.asyncio
    async def test_classifier_overrides_model_risk(
        self, test_config, make_router, sample_incident, full_data
    ):
        reply = (
            "ROOT_CAUSE: Slow queries on the primary database\n"
            "CONFIDENCE: 0.6\n"
            "RECOMMENDED_ACTIONS:\n"
            "- database_operation: Kill long running queries (autonomous_safe) [query=SELECT 1]\n"
            "- clear_cache: Flush query cache (requires_approval)\n"
        )
        primary = MockModelClient(test_config.get_llm_router_config("primary"), reply=reply)
        engine = RCAEngine(test_config, router=make_router(primary=primary))

        result = await engine.analyze(sample_incident, full_data)

        database_op, clear_cache = result.recommended_actions
        assert database_op.risk_level == ActionRiskLevel.REQUIRES_APPROVAL
        assert clear_cache.risk_level == ActionRiskLevel.AUTONOMOUS_SAFE

    @pytest.mark.asyncio
    async def test_confidence_recorded_in_metrics(self, rca_engine, sample_incident, full_data):
        metrics = initialize_metrics(ObservabilityConfig())

        await rca_engine.analyze(sample_incident, full_data)

        text = metrics.get_metrics_text()
        assert "incidentops_rca_confidence_count 1.0" in text
        assert 'incidentops_model_calls_total{model="mock-primary",outcome="success"} 1.0' in text
