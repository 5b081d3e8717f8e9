"""
Test suite for incident orchestration

Tests the end-to-end pipeline against the static gatherer, mock models and
simulated tools, plus escalation, resumption and approved-action paths.
"""

from datetime import timedelta

import pytest

import incidentops
from incidentops.concurrency import SemaphoreManager
from incidentops.exceptions import NotFoundError, ProcessingError
from incidentops.gatherers import StaticDataGatherer
from incidentops.models import (
    AlertRejection,
    IncidentAlert,
    IncidentSeverity,
    IncidentStatus,
    ProcessingResult,
)
from incidentops.orchestrator import IncidentOrchestrator, create_orchestrator
from incidentops.rca import RCAEngine
from incidentops.remediation import RemediationEngine
from incidentops.store import MemoryIncidentStore
from incidentops.tools import ToolRegistry


class LogOutageGatherer(StaticDataGatherer):
    """Static gatherer whose log backend is unreachable"""

    async def get_logs(self, incident):
        raise ConnectionError("log backend unreachable")


class BrokenListStore(MemoryIncidentStore):
    async def list(self, limit=None):
        raise ConnectionError("store offline")


def status_path(incident):
    return [e.metadata["to"] for e in incident.timeline if e.event_type == "status_changed"]


@pytest.fixture
def orchestrator(
    memory_store, static_gatherer, rca_engine, remediation_engine, test_config, fixed_now
):
    return IncidentOrchestrator(
        store=memory_store,
        gatherer=static_gatherer,
        rca_engine=rca_engine,
        remediation_engine=remediation_engine,
        config=test_config,
        clock=lambda: fixed_now,
        semaphores=SemaphoreManager(),
    )


class TestHandleAlert:
    """Test driving a single alert to a terminal status"""

    @pytest.mark.asyncio
    async def test_resolves_incident(self, orchestrator, sample_alert, memory_store):
        result = await orchestrator.handle_alert(sample_alert)

        assert result.status == IncidentStatus.RESOLVED
        assert result.error is None
        assert result.rca.root_cause == "Database connection pool exhausted on api-service"
        assert result.remediation.executed_actions == ["restart_service"]
        assert result.remediation.pending_approval == ["scale_resources"]

        stored = await memory_store.get(result.incident.id)
        assert status_path(stored) == ["investigating", "analyzing", "remediating", "resolved"]
        assert stored.restart_attempts == 1
        assert stored.metadata["region"] == "eu-west-1"
        assert stored.metadata["rca"]["confidence_score"] == pytest.approx(0.85)
        assert stored.metadata["remediation"]["approval_request"]["status"] == "pending"
        assert "data_gaps" not in stored.metadata

    @pytest.mark.asyncio
    async def test_gathering_gap_recorded(
        self, memory_store, rca_engine, remediation_engine, test_config, sample_alert
    ):
        orchestrator = IncidentOrchestrator(
            memory_store,
            LogOutageGatherer.from_yaml(),
            rca_engine,
            remediation_engine,
            config=test_config,
        )

        result = await orchestrator.handle_alert(sample_alert)

        assert result.incident.metadata["data_gaps"] == ["logs"]
        assert result.rca is not None
        assert result.rca.confidence_score < 0.85

    @pytest.mark.asyncio
    async def test_model_failure_escalates(
        self,
        memory_store,
        static_gatherer,
        remediation_engine,
        test_config,
        make_router,
        failing_client,
        sample_alert,
    ):
        rca_engine = RCAEngine(
            test_config,
            router=make_router(
                primary=failing_client(RuntimeError("primary down")),
                fallback=failing_client(RuntimeError("fallback down")),
            ),
        )
        orchestrator = IncidentOrchestrator(
            memory_store, static_gatherer, rca_engine, remediation_engine, config=test_config
        )

        result = await orchestrator.handle_alert(sample_alert)

        assert result.escalated is True
        assert result.rca is None
        assert result.error == "AI analysis failed: all models unavailable"
        assert result.incident.failed_attempts == 1
        assert result.incident.metadata["error_type"] == "ProcessingError"
        assert status_path(result.incident) == ["investigating", "analyzing", "escalated"]

    @pytest.mark.asyncio
    async def test_remediation_failure_escalates(
        self,
        memory_store,
        static_gatherer,
        rca_engine,
        test_config,
        notifier,
        breakers,
        sample_alert,
    ):
        engine = RemediationEngine(
            ToolRegistry(), notifier, store=memory_store, config=test_config, breakers=breakers
        )
        orchestrator = IncidentOrchestrator(
            memory_store, static_gatherer, rca_engine, engine, config=test_config
        )

        result = await orchestrator.handle_alert(sample_alert)

        assert result.escalated is True
        assert result.error is None
        assert result.remediation.failed_actions == ["restart_service"]
        assert result.incident.failed_attempts == 1
        assert result.incident.metadata["remediation"]["success"] is False

    @pytest.mark.asyncio
    async def test_processing_deadline_escalates(
        self, orchestrator, memory_store, make_incident, fixed_now
    ):
        incident = await memory_store.create(make_incident())
        orchestrator.clock = lambda: fixed_now + timedelta(minutes=10)

        result = await orchestrator.process_incident(incident)

        assert result.escalated is True
        assert result.error is None
        assert status_path(result.incident) == ["investigating", "escalated"]
        assert result.incident.timeline[-1].description == (
            "Processing time limit exceeded for P1 incident"
        )

    @pytest.mark.asyncio
    async def test_failed_attempt_ceiling_escalates(
        self, orchestrator, memory_store, make_incident
    ):
        incident = await memory_store.create(
            make_incident(metadata={"restart_attempts": 0, "failed_attempts": 3})
        )

        result = await orchestrator.process_incident(incident)

        assert result.escalated is True
        assert result.incident.failed_attempts == 4

    @pytest.mark.asyncio
    async def test_handle_alerts_concurrently(self, orchestrator, sample_alert, test_config):
        test_config.performance.max_concurrent_incidents = 2
        alerts = [
            sample_alert.model_copy(update={"message": f"Database connection timeout #{i}"})
            for i in range(4)
        ]

        results = await orchestrator.handle_alerts(alerts)

        assert [r.status for r in results] == [IncidentStatus.RESOLVED] * 4
        assert len({r.incident.id for r in results}) == 4
        stats = orchestrator.semaphores.get_semaphore("incident_pipeline").get_stats()
        assert stats.total_acquisitions == 4
        assert stats.capacity == 2

    @pytest.mark.asyncio
    async def test_invalid_alert_does_not_abort_batch(
        self, orchestrator, sample_alert, memory_store
    ):
        blank = sample_alert.model_copy(update={"message": "   "})

        results = await orchestrator.handle_alerts([sample_alert, blank, sample_alert])

        assert len(results) == 3
        assert isinstance(results[1], AlertRejection)
        assert results[1].error == "Alert message is required"
        assert results[1].error_type == "ValidationError"
        assert results[1].alert is blank
        for result in (results[0], results[2]):
            assert isinstance(result, ProcessingResult)
            assert result.status == IncidentStatus.RESOLVED
        assert len(await memory_store.list()) == 2

    @pytest.mark.asyncio
    async def test_store_failure_rejects_only_that_alert(
        self,
        static_gatherer,
        rca_engine,
        tool_registry,
        notifier,
        breakers,
        test_config,
        sample_alert,
    ):
        class FlakyCreateStore(MemoryIncidentStore):
            def __init__(self):
                super().__init__()
                self.creates = 0

            async def create(self, incident):
                self.creates += 1
                if self.creates == 1:
                    raise ConnectionError("store offline")
                return await super().create(incident)

        store = FlakyCreateStore()
        engine = RemediationEngine(
            tool_registry, notifier, store=store, config=test_config, breakers=breakers
        )
        orchestrator = IncidentOrchestrator(
            store,
            static_gatherer,
            rca_engine,
            engine,
            config=test_config,
            semaphores=SemaphoreManager(),
        )

        results = await orchestrator.handle_alerts([sample_alert, sample_alert])

        rejections = [r for r in results if isinstance(r, AlertRejection)]
        assert len(rejections) == 1
        assert rejections[0].error_type == "ConnectionError"
        assert sum(isinstance(r, ProcessingResult) for r in results) == 1


class TestHistoricalContext:
    """Test summaries of similar past incidents"""

    @pytest.mark.asyncio
    async def test_similar_resolved_incidents(self, orchestrator, memory_store, make_incident):
        for i in range(4):
            await memory_store.create(
                make_incident(
                    id=f"inc-old-{i}",
                    status=IncidentStatus.RESOLVED,
                    metadata={"rca": {"root_cause": "Pool exhausted"}},
                )
            )
        await memory_store.create(
            make_incident(id="inc-other", status=IncidentStatus.RESOLVED, affected_services={"web"})
        )
        current = await memory_store.create(make_incident(id="inc-now"))

        context = await orchestrator.historical_context(current)

        assert len(context) == 3
        assert context[0].startswith("Similar incident inc-old-")
        assert "(P1, api-service): Pool exhausted" in context[0]

    @pytest.mark.asyncio
    async def test_no_history(self, orchestrator, sample_incident):
        context = await orchestrator.historical_context(sample_incident)

        assert context == ["No similar historical incidents found in system memory"]

    @pytest.mark.asyncio
    async def test_store_failure(
        self, static_gatherer, rca_engine, remediation_engine, test_config, sample_incident
    ):
        orchestrator = IncidentOrchestrator(
            BrokenListStore(), static_gatherer, rca_engine, remediation_engine, config=test_config
        )

        context = await orchestrator.historical_context(sample_incident)

        assert context == [
            "Historical context retrieval failed, analysis based on current data only"
        ]


class TestEscalationSweep:
    """Test idle escalation and resuming escalated incidents"""

    @pytest.mark.asyncio
    async def test_escalate_overdue(self, orchestrator, memory_store, make_incident, fixed_now):
        await memory_store.create(make_incident(id="inc-p0", severity=IncidentSeverity.P0))
        await memory_store.create(make_incident(id="inc-p3", severity=IncidentSeverity.P3))

        escalated = await orchestrator.escalate_overdue(fixed_now + timedelta(minutes=6))

        assert [i.id for i in escalated] == ["inc-p0"]
        assert escalated[0].status == IncidentStatus.ESCALATED
        assert escalated[0].failed_attempts == 1
        assert (await memory_store.get("inc-p3")).status == IncidentStatus.RECEIVED

    @pytest.mark.asyncio
    async def test_escalate_overdue_uses_configured_thresholds(
        self, orchestrator, memory_store, make_incident, fixed_now, test_config
    ):
        test_config.workflow.idle_escalation_thresholds["P3"] = 1
        await memory_store.create(make_incident(id="inc-p3", severity=IncidentSeverity.P3))

        escalated = await orchestrator.escalate_overdue(fixed_now + timedelta(minutes=2))

        assert [i.id for i in escalated] == ["inc-p3"]

    @pytest.mark.asyncio
    async def test_resume_escalated(self, orchestrator, memory_store, make_incident, fixed_now):
        incident = await memory_store.create(make_incident())
        orchestrator.clock = lambda: fixed_now + timedelta(minutes=10)
        escalated = await orchestrator.process_incident(incident)
        assert escalated.status == IncidentStatus.ESCALATED

        resumed_at = fixed_now + timedelta(minutes=11)
        orchestrator.clock = lambda: resumed_at
        result = await orchestrator.resume_escalated(incident.id)

        assert result.status == IncidentStatus.RESOLVED
        assert result.incident.failed_attempts == 1
        assert result.incident.metadata["processing_started_at"] == resumed_at.isoformat()
        assert status_path(result.incident) == [
            "investigating",
            "escalated",
            "investigating",
            "analyzing",
            "remediating",
            "resolved",
        ]

    @pytest.mark.asyncio
    async def test_resumed_run_has_its_own_deadline(
        self, orchestrator, memory_store, make_incident, fixed_now
    ):
        incident = await memory_store.create(make_incident())
        orchestrator.clock = lambda: fixed_now + timedelta(minutes=10)
        await orchestrator.process_incident(incident)

        times = iter([fixed_now + timedelta(minutes=11), fixed_now + timedelta(minutes=17)])
        orchestrator.clock = lambda: next(times, fixed_now + timedelta(minutes=17))
        result = await orchestrator.resume_escalated(incident.id)

        assert result.escalated is True
        assert result.incident.failed_attempts == 2
        assert result.incident.timeline[-1].description == (
            "Processing time limit exceeded for P1 incident"
        )

    @pytest.mark.asyncio
    async def test_resume_leaves_idle_deadline_alone(
        self, orchestrator, memory_store, make_incident, fixed_now
    ):
        resumed_at = fixed_now + timedelta(minutes=18)
        incident = await memory_store.create(
            make_incident(metadata={"processing_started_at": resumed_at.isoformat()})
        )

        overdue = await orchestrator.escalate_overdue(fixed_now + timedelta(minutes=20))

        assert [i.id for i in overdue] == [incident.id]

    @pytest.mark.asyncio
    async def test_resume_requires_escalated(self, orchestrator, memory_store, sample_incident):
        await memory_store.create(sample_incident)

        with pytest.raises(ProcessingError, match="only escalated incidents can resume"):
            await orchestrator.resume_escalated(sample_incident.id)

    @pytest.mark.asyncio
    async def test_resume_missing(self, orchestrator):
        with pytest.raises(NotFoundError):
            await orchestrator.resume_escalated("inc-missing")


class TestApprovedActions:
    """Test executing actions after human approval"""

    @pytest.mark.asyncio
    async def test_execute_approved(self, orchestrator, memory_store, sample_alert):
        handled = await orchestrator.handle_alert(sample_alert)

        result = await orchestrator.execute_approved_actions(handled.incident.id, "alice")

        assert result.executed_actions == ["scale_resources"]
        stored = await memory_store.get(handled.incident.id)
        request = stored.metadata["remediation"]["approval_request"]
        assert request["status"] == "approved"
        assert request["approved_by"] == "alice"
        assert stored.metadata["approved_remediation"]["success"] is True

    @pytest.mark.asyncio
    async def test_nothing_pending(self, orchestrator, memory_store, sample_alert):
        handled = await orchestrator.handle_alert(sample_alert)
        await orchestrator.execute_approved_actions(handled.incident.id, "alice")

        with pytest.raises(ProcessingError, match="No pending approval request"):
            await orchestrator.execute_approved_actions(handled.incident.id, "alice")


class TestFactory:
    """Test wiring orchestrators from configuration"""

    @pytest.mark.asyncio
    async def test_create_orchestrator(self, test_config, sample_alert):
        orchestrator = create_orchestrator(test_config)

        assert isinstance(orchestrator.store, MemoryIncidentStore)
        assert isinstance(orchestrator.gatherer, StaticDataGatherer)

        result = await orchestrator.handle_alert(sample_alert)
        assert result.status == IncidentStatus.RESOLVED

    @pytest.mark.asyncio
    async def test_package_handle_alert(self, test_config):
        result = await incidentops.handle_alert(
            {
                "source": "prometheus",
                "alert_type": "HighLatency",
                "severity": "P1",
                "message": "Database connection timeout",
                "affected_services": ["api-service"],
            },
            config=test_config,
        )

        assert isinstance(result, incidentops.ProcessingResult)
        assert result.status == IncidentStatus.RESOLVED

    def test_alert_model_exported(self):
        assert incidentops.IncidentAlert is IncidentAlert
