"""
Incident orchestration

Drives one incident end-to-end::

    RECEIVED -> INVESTIGATING -> ANALYZING -> REMEDIATING -> RESOLVED | ESCALATED

Data gathering happens while INVESTIGATING; the RCA runs while ANALYZING.
Whatever goes wrong, the incident finishes RESOLVED or ESCALATED and the
caller receives a ProcessingResult.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Optional, Union

from .concurrency.circuit_breaker import CircuitBreakerRegistry
from .concurrency.semaphore import SemaphoreManager, get_semaphore_manager
from .config import IncidentOpsConfig, get_config
from .exceptions import IncidentOpsError, ProcessingError, ValidationError
from .gatherers import DataGatherer, StaticDataGatherer
from .models import (
    AlertRejection,
    GatheredData,
    Incident,
    IncidentAlert,
    IncidentStatus,
    ProcessingResult,
    RCAResult,
    RecommendedAction,
    RemediationResult,
    utc_now,
)
from .notifications import LoggingNotifier, Notifier
from .observability.metrics import get_metrics
from .observability.tracer import add_event, set_attribute, trace_async
from .rca import RCAEngine
from .remediation import RemediationEngine
from .store import create_store
from .store.base import IncidentStore
from .tools import ToolExecutor, simulated_tool_registry
from .workflow import (
    PROCESSING_STARTED_KEY,
    TERMINAL_STATUSES,
    EscalationPolicy,
    create_incident_from_alert,
    requires_escalation,
)

logger = logging.getLogger(__name__)

MAX_HISTORICAL_ITEMS = 3


class EscalationRequired(Exception):
    """Internal signal that a phase boundary demands escalation"""


class IncidentOrchestrator:
    """
    Sequences gathering, analysis and remediation for incidents

    The data-gathering and tool-execution strategies are injected, so the
    same orchestrator drives simulated and real environments.
    """

    def __init__(
        self,
        store: IncidentStore,
        gatherer: DataGatherer,
        rca_engine: RCAEngine,
        remediation_engine: RemediationEngine,
        config: Optional[IncidentOpsConfig] = None,
        clock: Callable[[], datetime] = utc_now,
        semaphores: Optional[SemaphoreManager] = None,
    ):
        self.config = config or get_config()
        self.semaphores = semaphores or get_semaphore_manager()
        self.store = store
        self.gatherer = gatherer
        self.rca_engine = rca_engine
        self.remediation_engine = remediation_engine
        self.clock = clock

    async def handle_alert(self, alert: IncidentAlert) -> ProcessingResult:
        """
        Open an incident for an alert and drive it to a terminal status

        Raises:
            ValidationError: If the alert itself is malformed
        """
        incident = create_incident_from_alert(alert, now=self.clock())
        incident = await self.store.create(incident)
        return await self.process_incident(incident)

    async def handle_alerts(
        self, alerts: list[IncidentAlert]
    ) -> list[Union[ProcessingResult, AlertRejection]]:
        """
        Process alerts concurrently, bounded by the incident pipeline semaphore

        Results come back in input order. An alert that cannot be opened as an
        incident yields an AlertRejection and does not affect the others.
        """
        semaphore = self.semaphores.get_semaphore(
            "incident_pipeline", self.config.performance.max_concurrent_incidents
        )

        async def run(alert: IncidentAlert) -> Union[ProcessingResult, AlertRejection]:
            async with semaphore.acquire():
                try:
                    return await self.handle_alert(alert)
                except Exception as e:
                    if isinstance(e, ValidationError):
                        logger.warning(f"Rejected alert from {alert.source}: {e}")
                    else:
                        logger.exception(f"Failed to handle alert from {alert.source}")
                    return AlertRejection(alert=alert, error=str(e), error_type=type(e).__name__)

        return list(await asyncio.gather(*(run(alert) for alert in alerts)))

    @trace_async("incident.process")
    async def process_incident(self, incident: Incident) -> ProcessingResult:
        set_attribute("incident.id", incident.id)
        set_attribute("incident.severity", incident.severity.value)

        metrics = get_metrics()
        rca: Optional[RCAResult] = None
        remediation: Optional[RemediationResult] = None

        try:
            if metrics:
                with metrics.track_active_incident():
                    incident, rca, remediation = await self._run_pipeline(incident)
            else:
                incident, rca, remediation = await self._run_pipeline(incident)
            error = None
        except EscalationRequired as e:
            error = None
            incident = await self._escalate(incident.id, str(e))
        except Exception as e:
            if not isinstance(e, IncidentOpsError):
                logger.exception(f"Unexpected failure processing incident {incident.id}")
            else:
                logger.error(f"Processing failed for incident {incident.id}: {e}")
            error = str(e)
            incident = await self._escalate(
                incident.id, f"Processing failed: {e}", {"error": error, "error_type": type(e).__name__}
            )

        if metrics:
            metrics.record_incident(incident.severity.value, incident.status.value)
        add_event("incident_finished", {"status": incident.status.value})
        return ProcessingResult(incident=incident, rca=rca, remediation=remediation, error=error)

    async def _run_pipeline(
        self, incident: Incident
    ) -> tuple[Incident, RCAResult, RemediationResult]:
        incident = await self._transition(
            incident, IncidentStatus.INVESTIGATING, "Gathering observability data"
        )
        data = await self._timed("gather", self.gather_data(incident))
        if data.gaps:
            incident = await self.store.update(
                incident.id, {"metadata": {"data_gaps": data.gaps}}
            )
        self._check_escalation(incident)

        incident = await self._transition(
            incident, IncidentStatus.ANALYZING, "Running root cause analysis"
        )
        history = await self.historical_context(incident)
        rca = await self._timed("analyze", self.rca_engine.analyze(incident, data, history))
        incident = await self.store.update(
            incident.id, {"metadata": {"rca": rca.model_dump(mode="json")}}
        )
        self._check_escalation(incident)

        incident = await self._transition(
            incident, IncidentStatus.REMEDIATING, "Executing recommended actions"
        )
        remediation = await self._timed(
            "remediate", self.remediation_engine.execute(rca.recommended_actions, incident)
        )
        # Counters such as restart_attempts were persisted during remediation
        incident = await self.store.get(incident.id)

        summary = self._remediation_summary(remediation)
        if remediation.success:
            incident = await self.store.update_status(
                incident.id,
                IncidentStatus.RESOLVED,
                f"Resolved: {rca.root_cause}",
                metadata={"remediation": summary},
            )
        else:
            incident = await self.store.update_status(
                incident.id,
                IncidentStatus.ESCALATED,
                "Remediation did not complete successfully",
                metadata={
                    "remediation": summary,
                    "failed_attempts": incident.failed_attempts + 1,
                },
            )
        return incident, rca, remediation

    async def _timed(self, phase: str, awaitable):
        metrics = get_metrics()
        if not metrics:
            return await awaitable
        with metrics.time_phase(phase):
            return await awaitable

    async def _transition(
        self, incident: Incident, status: IncidentStatus, reason: str
    ) -> Incident:
        updated = await self.store.update_status(incident.id, status, reason)
        add_event("incident_transition", {"status": status.value})
        return updated

    def _check_escalation(self, incident: Incident) -> None:
        """
        Raise EscalationRequired when the processing deadline has passed

        The deadline counts from creation, or from the latest resume.
        """
        if requires_escalation(
            incident,
            self.clock(),
            EscalationPolicy.PROCESSING,
            self.config.workflow.processing_time_limits,
            self.config.workflow.max_failed_attempts,
        ):
            raise EscalationRequired(
                f"Processing time limit exceeded for {incident.severity.value} incident"
            )

    async def _escalate(
        self, incident_id: str, reason: str, metadata: Optional[dict[str, Any]] = None
    ) -> Incident:
        """Move an incident to ESCALATED unless it already finished"""
        incident = await self.store.get(incident_id)
        if incident.status in TERMINAL_STATUSES:
            return incident
        fields = dict(metadata or {})
        fields["failed_attempts"] = incident.failed_attempts + 1
        logger.warning(f"Escalating incident {incident_id}: {reason}")
        return await self.store.update_status(
            incident_id, IncidentStatus.ESCALATED, reason, metadata=fields
        )

    async def gather_data(self, incident: Incident) -> GatheredData:
        """
        Collect observability data concurrently

        A failing or timed out call leaves its list empty and is recorded in
        ``gaps``; the other calls are unaffected.
        """
        timeout = self.config.performance.gather_timeout
        calls = {
            "logs": self.gatherer.get_logs(incident),
            "metrics": self.gatherer.get_metrics(incident),
            "alerts": self.gatherer.get_alerts(incident),
            "system_status": self.gatherer.get_system_status(incident),
            "runbooks": self.gatherer.search_runbooks(incident),
        }
        results = await asyncio.gather(
            *(asyncio.wait_for(call, timeout=timeout) for call in calls.values()),
            return_exceptions=True,
        )

        collected: dict[str, Any] = {}
        gaps = []
        for name, outcome in zip(calls, results):
            if isinstance(outcome, BaseException):
                logger.warning(f"Gathering {name} for incident {incident.id} failed: {outcome!r}")
                gaps.append(name)
                collected[name] = []
            else:
                collected[name] = outcome
        return GatheredData(**collected, gaps=gaps)

    async def historical_context(self, incident: Incident) -> list[str]:
        """Summaries of resolved incidents that share an affected service"""
        try:
            past = await self.store.list()
        except Exception as e:
            logger.warning(f"Historical context retrieval failed: {e}")
            return ["Historical context retrieval failed, analysis based on current data only"]

        context = []
        for other in past:
            if other.id == incident.id or other.status != IncidentStatus.RESOLVED:
                continue
            if not other.affected_services & incident.affected_services:
                continue
            rca = other.metadata.get("rca") or {}
            root_cause = rca.get("root_cause", "unknown")
            context.append(
                f"Similar incident {other.id} ({other.severity.value}, "
                f"{', '.join(sorted(other.affected_services))}): {root_cause[:200]}"
            )
            if len(context) >= MAX_HISTORICAL_ITEMS:
                break

        if not context:
            return ["No similar historical incidents found in system memory"]
        return context

    @staticmethod
    def _remediation_summary(remediation: RemediationResult) -> dict[str, Any]:
        summary = {
            "success": remediation.success,
            "executed_actions": remediation.executed_actions,
            "failed_actions": remediation.failed_actions,
            "pending_approval": remediation.pending_approval,
            "errors": remediation.errors,
        }
        if remediation.approval_request is not None:
            summary["approval_request"] = remediation.approval_request.model_dump(mode="json")
        return summary

    async def escalate_overdue(self, now: Optional[datetime] = None) -> list[Incident]:
        """Escalate open incidents past the idle escalation deadline"""
        overdue = await self.store.check_escalations(
            now or self.clock(), self.config.workflow.idle_escalation_thresholds
        )
        escalated = []
        for incident in overdue:
            escalated.append(
                await self._escalate(incident.id, "Idle escalation deadline exceeded")
            )
        return escalated

    async def resume_escalated(self, incident_id: str) -> ProcessingResult:
        """
        Return an escalated incident to investigation and run the pipeline again

        Raises:
            NotFoundError: If the incident does not exist
            ProcessingError: If the incident is not escalated
        """
        incident = await self.store.get(incident_id)
        if incident.status != IncidentStatus.ESCALATED:
            raise ProcessingError(
                f"Incident {incident_id} is {incident.status.value}, only escalated incidents can resume"
            )
        # The processing deadline restarts now; the idle deadline does not
        incident = await self.store.update(
            incident_id, {"metadata": {PROCESSING_STARTED_KEY: self.clock().isoformat()}}
        )
        # process_incident takes the ESCALATED -> INVESTIGATING edge
        return await self.process_incident(incident)

    async def execute_approved_actions(self, incident_id: str, approver: str) -> RemediationResult:
        """
        Run the actions a human approved for an incident

        Raises:
            NotFoundError: If the incident does not exist
            ProcessingError: If nothing is awaiting approval
        """
        incident = await self.store.get(incident_id)
        request = (incident.metadata.get("remediation") or {}).get("approval_request")
        if not request or request.get("status") != "pending":
            raise ProcessingError(f"No pending approval request for incident {incident_id}")

        actions = [RecommendedAction.model_validate(a) for a in request["actions"]]
        logger.info(f"{approver} approved {len(actions)} actions for incident {incident_id}")
        result = await self.remediation_engine.execute(actions, incident, approved=True)

        request["status"] = "approved"
        request["approved_by"] = approver
        await self.store.update(
            incident_id,
            {
                "metadata": {
                    "remediation": {
                        **incident.metadata["remediation"],
                        "approval_request": request,
                    },
                    "approved_remediation": self._remediation_summary(result),
                }
            },
        )
        return result


def create_orchestrator(
    config: Optional[IncidentOpsConfig] = None,
    gatherer: Optional[DataGatherer] = None,
    tool_executor: Optional[ToolExecutor] = None,
    notifier: Optional[Notifier] = None,
    store: Optional[IncidentStore] = None,
) -> IncidentOrchestrator:
    """
    Wire an orchestrator from configuration

    Collaborators left unset default to the development implementations:
    fixture-backed gathering, simulated tools and logging notifications.
    """
    config = config or get_config()
    store = store or create_store(config.storage)
    breakers = CircuitBreakerRegistry(
        failure_threshold=config.remediation.breaker_failure_threshold,
        reset_timeout_seconds=config.remediation.breaker_reset_timeout,
    )
    remediation_engine = RemediationEngine(
        tool_executor or simulated_tool_registry(config.remediation.tool_service),
        notifier or LoggingNotifier(),
        store=store,
        config=config,
        breakers=breakers,
    )
    return IncidentOrchestrator(
        store=store,
        gatherer=gatherer or StaticDataGatherer.from_yaml(),
        rca_engine=RCAEngine(config),
        remediation_engine=remediation_engine,
        config=config,
    )
