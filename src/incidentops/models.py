"""
Core data models for incidentops

Defines incidents, gathered observability data, RCA results and the
remediation records exchanged between the pipeline stages, using Pydantic
for type validation and serialization.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_serializer, model_validator
from pydantic import ValidationError as PydanticValidationError

from .exceptions import ValidationError


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class IncidentSeverity(str, Enum):
    P0 = "P0"
    P1 = "P1"
    P2 = "P2"
    P3 = "P3"


class IncidentStatus(str, Enum):
    RECEIVED = "received"
    INVESTIGATING = "investigating"
    ANALYZING = "analyzing"
    REMEDIATING = "remediating"
    RESOLVED = "resolved"
    ESCALATED = "escalated"


class ActionRiskLevel(str, Enum):
    AUTONOMOUS_SAFE = "autonomous_safe"
    REQUIRES_APPROVAL = "requires_approval"


class TimelineEvent(BaseModel):
    """Single entry in an incident's timeline"""

    id: str
    timestamp: datetime = Field(default_factory=utc_now)
    event_type: str
    description: str
    metadata: dict[str, Any] = Field(default_factory=dict)


class Incident(BaseModel):
    """Incident record driven through the response lifecycle"""

    id: str
    title: str
    description: str = ""
    severity: IncidentSeverity
    status: IncidentStatus = IncidentStatus.RECEIVED
    source: str
    affected_services: set[str] = Field(default_factory=set)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    metadata: dict[str, Any] = Field(default_factory=dict)
    timeline: list[TimelineEvent] = Field(default_factory=list)

    @field_serializer("affected_services")
    def _serialize_services(self, services: set[str]) -> list[str]:
        return sorted(services)

    @property
    def restart_attempts(self) -> int:
        return int(self.metadata.get("restart_attempts", 0))

    @property
    def failed_attempts(self) -> int:
        return int(self.metadata.get("failed_attempts", 0))

    @property
    def primary_service(self) -> str:
        """First affected service in sorted order, or empty string"""
        return sorted(self.affected_services)[0] if self.affected_services else ""


class IncidentAlert(BaseModel):
    """Inbound alert that opens an incident"""

    source: str
    alert_type: str
    severity: Optional[str] = None
    message: str
    affected_services: list[str] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=utc_now)
    metadata: dict[str, Any] = Field(default_factory=dict)


# Observability records returned by data gatherers


class LogEntry(BaseModel):
    timestamp: datetime
    service: str
    level: str
    message: str
    metadata: dict[str, Any] = Field(default_factory=dict)


class MetricData(BaseModel):
    metric_name: str
    timestamp: datetime
    value: float
    labels: dict[str, str] = Field(default_factory=dict)


class AlertData(BaseModel):
    id: str
    severity: str
    trigger_condition: str
    timestamp: datetime
    service: str
    status: str = "firing"


class SystemStatus(BaseModel):
    service: str
    status: str  # healthy | degraded | down
    dependencies: list[str] = Field(default_factory=list)
    health_checks: dict[str, Any] = Field(default_factory=dict)


class RunbookEntry(BaseModel):
    id: str
    title: str
    content: str
    incident_types: list[str] = Field(default_factory=list)
    procedures: list[str] = Field(default_factory=list)
    relevance_score: float = 0.0


class GatheredData(BaseModel):
    """Observability data collected for one analysis pass"""

    logs: list[LogEntry] = Field(default_factory=list)
    metrics: list[MetricData] = Field(default_factory=list)
    alerts: list[AlertData] = Field(default_factory=list)
    system_status: list[SystemStatus] = Field(default_factory=list)
    runbooks: list[RunbookEntry] = Field(default_factory=list)
    # Names of gatherer calls that failed during collection
    gaps: list[str] = Field(default_factory=list)

    def missing_core_sources(self) -> list[str]:
        return [
            name for name in ("logs", "metrics", "alerts") if not getattr(self, name)
        ]


class ValidationResult(BaseModel):
    valid: bool
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


# Typed parameters for well-known action types


class RestartParams(BaseModel):
    model_config = ConfigDict(extra="allow")

    graceful: bool = True
    timeout_seconds: Optional[int] = Field(default=None, gt=0)


class ScaleParams(BaseModel):
    model_config = ConfigDict(extra="allow")

    replicas: Optional[int] = Field(default=None, ge=0)
    cpu: Optional[str] = None
    memory: Optional[str] = None
    original_replicas: int = Field(default=1, ge=0)

    @model_validator(mode="after")
    def _require_target_size(self) -> "ScaleParams":
        if self.replicas is None and self.cpu is None and self.memory is None:
            raise ValueError("Scale action requires replicas, cpu, or memory parameters")
        return self


class DatabaseOperationParams(BaseModel):
    model_config = ConfigDict(extra="allow")

    query: Optional[str] = None
    migration: Optional[str] = None

    @model_validator(mode="after")
    def _require_statement(self) -> "DatabaseOperationParams":
        if not self.query and not self.migration:
            raise ValueError("Database operation requires query or migration parameter")
        return self


class ConfigurationParams(BaseModel):
    model_config = ConfigDict(extra="allow")

    requires_restart: bool = False
    backup_config: Optional[dict[str, Any]] = None


ActionParams = Union[
    RestartParams, ScaleParams, DatabaseOperationParams, ConfigurationParams, dict
]

ACTION_PARAM_MODELS: dict[str, type[BaseModel]] = {
    "restart_service": RestartParams,
    "scale_resources": ScaleParams,
    "database_operation": DatabaseOperationParams,
    "update_configuration": ConfigurationParams,
}


class RecommendedAction(BaseModel):
    """Remediation step recommended by an RCA"""

    action_type: str
    description: str = ""
    target: str = ""
    risk_level: Optional[ActionRiskLevel] = None
    params: dict[str, Any] = Field(default_factory=dict)
    estimated_impact: str = "To be determined"

    def typed_params(self) -> ActionParams:
        """Parameters parsed into the struct registered for this action type.

        Unknown action types get the raw dict back.
        """
        model = ACTION_PARAM_MODELS.get(self.action_type)
        if model is None:
            return dict(self.params)
        try:
            return model.model_validate(self.params)
        except PydanticValidationError as e:
            messages = "; ".join(err["msg"] for err in e.errors())
            raise ValidationError(
                f"Invalid parameters for {self.action_type}: {messages}", field="params"
            ) from e


class RCAResult(BaseModel):
    """Root cause analysis produced from a model reply"""

    model_config = ConfigDict(frozen=True)

    incident_id: str
    root_cause: str
    evidence: list[str] = Field(default_factory=list)
    confidence_score: float = Field(ge=0.0, le=1.0)
    contributing_factors: list[str] = Field(default_factory=list)
    recommended_actions: list[RecommendedAction] = Field(default_factory=list)
    analysis_timeline: list[str] = Field(default_factory=list)
    prevention_strategies: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)

    @model_validator(mode="after")
    def _check_confidence_evidence(self) -> "RCAResult":
        if self.confidence_score >= 0.8 and len(self.evidence) < 3:
            raise ValueError("High confidence scores require at least 3 pieces of evidence")
        return self


class RiskAssessment(BaseModel):
    risk_level: ActionRiskLevel
    risk_factors: list[str] = Field(default_factory=list)
    mitigation_steps: list[str] = Field(default_factory=list)
    requires_approval: bool


class RollbackPlan(BaseModel):
    rollback_actions: list[RecommendedAction] = Field(default_factory=list)
    rollback_conditions: list[str] = Field(default_factory=list)
    rollback_timeout: float = 300.0  # seconds


class ExecutionResult(BaseModel):
    action_type: str
    success: bool
    message: str
    execution_time_ms: float = 0.0
    output: dict[str, Any] = Field(default_factory=dict)
    rollback_plan: Optional[RollbackPlan] = None


class ExecutionReport(BaseModel):
    execution_id: str
    action: RecommendedAction
    result: ExecutionResult
    timestamp: datetime = Field(default_factory=utc_now)


class RollbackResult(BaseModel):
    action_type: str
    success: bool
    rolled_back_actions: list[str] = Field(default_factory=list)
    pending_approval: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    execution_time_ms: float = 0.0


class RemediationResult(BaseModel):
    """Outcome of executing an incident's recommended actions"""

    success: bool
    executed_actions: list[str] = Field(default_factory=list)
    failed_actions: list[str] = Field(default_factory=list)
    pending_approval: list[str] = Field(default_factory=list)
    total_actions: int = 0
    execution_time_ms: float = 0.0
    errors: list[str] = Field(default_factory=list)
    reports: list[ExecutionReport] = Field(default_factory=list)
    rollbacks: list[RollbackResult] = Field(default_factory=list)
    approval_request: Optional["ApprovalRequest"] = None


class ApprovalRequest(BaseModel):
    approval_id: str
    incident_id: str
    actions: list[RecommendedAction]
    status: str = "pending"
    estimated_approval_time: str = "15m"
    requested_at: datetime = Field(default_factory=utc_now)


RemediationResult.model_rebuild()


class NotificationEvent(BaseModel):
    event_type: str = "notification"
    recipient: str
    subject: str
    body: str
    priority: str = "normal"  # low | normal | high | urgent
    incident_id: str


class RemediationExecutedEvent(BaseModel):
    event_type: str = "remediation_executed"
    incident_id: str
    action_type: str
    target: str
    success: bool
    message: str
    execution_id: str
    timestamp: datetime = Field(default_factory=utc_now)


Notification = Union[NotificationEvent, RemediationExecutedEvent]


class ProcessingResult(BaseModel):
    """Structured outcome returned for every handled alert"""

    incident: Incident
    rca: Optional[RCAResult] = None
    remediation: Optional[RemediationResult] = None
    error: Optional[str] = None

    @property
    def status(self) -> IncidentStatus:
        return self.incident.status

    @property
    def escalated(self) -> bool:
        return self.incident.status == IncidentStatus.ESCALATED


class AlertRejection(BaseModel):
    """An alert in a batch that never became an incident"""

    alert: IncidentAlert
    error: str
    error_type: str
