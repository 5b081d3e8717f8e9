"""
Remediation execution

Routes each recommended action to immediate execution or to human approval,
runs executions through retry with backoff under a shared circuit breaker,
verifies results and rolls back failed actions.
"""

import asyncio
import logging
import random
import string
import time
from typing import Any, Optional

from .concurrency.circuit_breaker import CircuitBreakerRegistry, get_breaker_registry
from .concurrency.retry import retry_with_backoff
from .config import IncidentOpsConfig, get_config
from .exceptions import ProcessingError, ToolLookupError, ValidationError
from .models import (
    ActionRiskLevel,
    ApprovalRequest,
    ExecutionReport,
    ExecutionResult,
    Incident,
    IncidentSeverity,
    Notification,
    NotificationEvent,
    RecommendedAction,
    RemediationExecutedEvent,
    RemediationResult,
    RollbackPlan,
    RollbackResult,
    ValidationResult,
    utc_now,
)
from .notifications import Notifier
from .observability.metrics import get_metrics
from .observability.tracer import add_event, set_attribute, trace_async, trace_operation
from .risk import RiskClassifier
from .store.base import IncidentStore
from .tools import ToolExecutor
from .workflow import enforce_business_rules

logger = logging.getLogger(__name__)


def validate_action(action: RecommendedAction) -> ValidationResult:
    """Check required fields and type-specific parameters"""
    errors = []
    warnings = []

    if not action.action_type.strip():
        errors.append("Action type is required")
    if not action.target.strip():
        errors.append("Target is required")
    if not action.description.strip():
        errors.append("Description is required")
    if action.risk_level is None:
        errors.append("Valid risk level is required")
    if not action.estimated_impact.strip():
        warnings.append("Estimated impact should be specified")

    if action.action_type == "restart_service" and "service" not in action.target.lower():
        warnings.append("Restart target should specify a service name")

    try:
        action.typed_params()
    except ValidationError as e:
        errors.append(str(e))

    return ValidationResult(valid=not errors, errors=errors, warnings=warnings)


def define_rollback_plan(
    action: RecommendedAction, default_timeout: float = 300.0
) -> RollbackPlan:
    """Counter-actions for an action, derived from its type"""
    action_type = action.action_type

    if "restart" in action_type:
        return RollbackPlan(
            rollback_actions=[
                _rollback_step("check_service_health", "Verify service health after restart", action)
            ],
            rollback_conditions=["Service fails health check after restart"],
            rollback_timeout=120,
        )

    if "scale" in action_type:
        original = action.params.get("original_replicas", 1)
        return RollbackPlan(
            rollback_actions=[
                _rollback_step(
                    "scale_resources",
                    f"Scale back to {original} replicas",
                    action,
                    params={"replicas": original},
                )
            ],
            rollback_conditions=["Scaling causes resource exhaustion or instability"],
            rollback_timeout=180,
        )

    if "config" in action_type:
        return RollbackPlan(
            rollback_actions=[
                _rollback_step(
                    "restore_configuration",
                    "Restore previous configuration",
                    action,
                    params={"backup_config": action.params.get("backup_config")},
                )
            ],
            rollback_conditions=["Configuration change causes service errors"],
            rollback_timeout=240,
        )

    if "database" in action_type:
        return RollbackPlan(
            rollback_actions=[
                _rollback_step(
                    "restore_database_backup",
                    "Restore database from pre-change backup",
                    action,
                    risk_level=ActionRiskLevel.REQUIRES_APPROVAL,
                )
            ],
            rollback_conditions=["Database operation causes data inconsistency"],
            rollback_timeout=600,
        )

    return RollbackPlan(
        rollback_actions=[
            _rollback_step("verify_system_health", "Verify overall system health", action)
        ],
        rollback_conditions=["Action produces unexpected side effects"],
        rollback_timeout=default_timeout,
    )


def _rollback_step(
    action_type: str,
    description: str,
    source: RecommendedAction,
    params: Optional[dict[str, Any]] = None,
    risk_level: ActionRiskLevel = ActionRiskLevel.AUTONOMOUS_SAFE,
) -> RecommendedAction:
    return RecommendedAction(
        action_type=action_type,
        description=description,
        target=source.target,
        risk_level=risk_level,
        params=params or {},
        estimated_impact=f"Reverts {source.action_type}",
    )


def verify_action_result(
    result: Any,
    expected: Optional[dict[str, Any]] = None,
    require_explicit: bool = False,
) -> bool:
    """
    Decide whether a tool result counts as success

    An explicit ``success: False`` or ``status: "failed"`` always fails, and
    every ``expected`` key must match. An explicit ``success: True`` or
    ``status: "completed"`` passes.

    Without either signal, the result passes when it carries no ``error`` or
    ``errors`` field. This default is an optimistic approximation and not
    real verification. Set ``require_explicit`` to reject such results.
    """
    if not isinstance(result, dict):
        return False
    if result.get("success") is False or result.get("status") == "failed":
        return False
    for key, value in (expected or {}).items():
        if result.get(key) != value:
            return False
    if result.get("success") is True or result.get("status") == "completed":
        return True
    if require_explicit:
        return False
    return not result.get("error") and not result.get("errors")


def _random_suffix(length: int = 9) -> str:
    return "".join(random.choices(string.ascii_lowercase + string.digits, k=length))


def generate_execution_id() -> str:
    return f"exec-{int(time.time() * 1000)}-{_random_suffix()}"


def format_execution_report(
    action: RecommendedAction, result: ExecutionResult
) -> ExecutionReport:
    return ExecutionReport(
        execution_id=generate_execution_id(),
        action=action,
        result=result,
        timestamp=utc_now(),
    )


class RemediationEngine:
    """
    Executes recommended actions for an incident

    Actions run strictly in input order. Circuit-breaker state is shared
    with every other engine using the same registry.
    """

    def __init__(
        self,
        tool_executor: ToolExecutor,
        notifier: Notifier,
        store: Optional[IncidentStore] = None,
        config: Optional[IncidentOpsConfig] = None,
        classifier: Optional[RiskClassifier] = None,
        breakers: Optional[CircuitBreakerRegistry] = None,
    ):
        self.config = config or get_config()
        self.settings = self.config.remediation
        self.tools = tool_executor
        self.notifier = notifier
        self.store = store
        self.classifier = classifier or RiskClassifier(
            max_restart_attempts=self.settings.max_restart_attempts,
            max_autonomous_replicas=self.settings.max_autonomous_replicas,
        )
        self.breakers = breakers or get_breaker_registry()

    @trace_async("remediation.execute")
    async def execute(
        self,
        actions: list[RecommendedAction],
        incident: Incident,
        approved: bool = False,
    ) -> RemediationResult:
        """
        Execute or defer every action

        Per-action failures are collected and never stop later actions.
        With ``approved`` set, actions skip approval routing (used once a
        human has signed off on a pending set).
        """
        start_time = time.time()
        working = incident.model_copy(deep=True)
        result = RemediationResult(success=False, total_actions=len(actions))
        pending: list[RecommendedAction] = []

        set_attribute("incident.id", incident.id)
        set_attribute("remediation.total_actions", len(actions))

        for action in actions:
            try:
                await self._process_action(action, working, result, pending, approved)
            except (ValidationError, ProcessingError) as e:
                logger.warning(f"Action {action.action_type} rejected: {e}")
                self._record_failure(result, action, str(e))
            except Exception as e:
                logger.exception(f"Unexpected error executing {action.action_type}")
                self._record_failure(result, action, f"Unexpected error: {e}")

        if pending:
            result.approval_request = self.request_approval(pending, working)

        result.success = bool(result.executed_actions or result.pending_approval) and not (
            result.failed_actions
        )
        result.execution_time_ms = (time.time() - start_time) * 1000

        logger.info(
            f"Remediation for incident {incident.id}: {len(result.executed_actions)} executed, "
            f"{len(result.failed_actions)} failed, {len(result.pending_approval)} pending approval"
        )
        return result

    async def _process_action(
        self,
        action: RecommendedAction,
        incident: Incident,
        result: RemediationResult,
        pending: list[RecommendedAction],
        approved: bool,
    ) -> None:
        validation = validate_action(action)
        for warning in validation.warnings:
            logger.debug(f"Action {action.action_type}: {warning}")
        if not validation.valid:
            self._record_failure(
                result, action, f"Validation failed: {'; '.join(validation.errors)}"
            )
            return

        enforce_business_rules(action.action_type, action.target)

        if not approved:
            assessment = self.classifier.assess(action, incident)
            autonomous = (
                assessment.risk_level == ActionRiskLevel.AUTONOMOUS_SAFE
                and not assessment.requires_approval
            )
            if not autonomous:
                result.pending_approval.append(action.action_type)
                pending.append(action)
                self._record_metric(action, "pending_approval")
                await self._send_approval_notification(
                    action, incident, assessment.risk_factors
                )
                return

        execution = await self.execute_action(action, incident)
        result.reports.append(format_execution_report(action, execution))

        if execution.success:
            result.executed_actions.append(action.action_type)
            self._record_metric(action, "executed")
            await self._send_execution_notification(action, incident, execution)
            if action.action_type == "restart_service":
                await self._increment_restart_counter(incident)
            return

        self._record_failure(result, action, execution.message)
        await self._send_execution_notification(action, incident, execution)
        if execution.rollback_plan is not None:
            result.rollbacks.append(
                await self.execute_rollback(execution.rollback_plan, incident, action)
            )

    def _record_failure(
        self, result: RemediationResult, action: RecommendedAction, message: str
    ) -> None:
        result.failed_actions.append(action.action_type)
        result.errors.append(f"{action.action_type}: {message}")
        self._record_metric(action, "failed")

    @staticmethod
    def _record_metric(action: RecommendedAction, outcome: str) -> None:
        metrics = get_metrics()
        if metrics:
            metrics.record_action(action.action_type, outcome)

    async def _run_tool(self, action: RecommendedAction, incident: Incident) -> dict[str, Any]:
        service = self.settings.tool_service
        args = {
            "target": action.target,
            "params": dict(action.params),
            "incident_id": incident.id,
            "description": action.description,
        }
        return await retry_with_backoff(
            lambda: self.tools.execute_tool(service, action.action_type, args),
            name=service,
            registry=self.breakers,
            attempts=self.settings.retry_attempts,
            base_delay=self.settings.retry_base_delay,
            timeout=self.settings.attempt_timeout,
            give_up_on=(ToolLookupError,),
        )

    async def execute_action(
        self, action: RecommendedAction, incident: Incident
    ) -> ExecutionResult:
        """Run one action and verify its result; never raises on tool failure"""
        plan = define_rollback_plan(action, self.settings.rollback_timeout)
        start_time = time.time()

        with trace_operation(
            "remediation.action",
            {"action.type": action.action_type, "action.target": action.target},
        ):
            try:
                output = await self._run_tool(action, incident)
            except Exception as e:
                logger.error(f"Execution of {action.action_type} on {action.target} failed: {e}")
                return ExecutionResult(
                    action_type=action.action_type,
                    success=False,
                    message=f"Execution failed: {e}",
                    execution_time_ms=(time.time() - start_time) * 1000,
                    rollback_plan=plan,
                )

            verified = verify_action_result(
                output, require_explicit=self.settings.require_explicit_success
            )
            add_event("action_executed", {"verified": verified})

        message = (
            f"{action.action_type} completed on {action.target}"
            if verified
            else f"{action.action_type} result could not be verified"
        )
        return ExecutionResult(
            action_type=action.action_type,
            success=verified,
            message=message,
            execution_time_ms=(time.time() - start_time) * 1000,
            output=output if isinstance(output, dict) else {"raw": output},
            rollback_plan=plan,
        )

    async def execute_rollback(
        self,
        plan: RollbackPlan,
        incident: Incident,
        source_action: RecommendedAction,
    ) -> RollbackResult:
        """
        Run a rollback plan within its timeout

        Steps that require approval are sent for approval instead of run.
        Failures are reported in the result and logged, never raised.
        """
        start_time = time.time()
        rollback = RollbackResult(action_type=source_action.action_type, success=False)

        async def run_steps() -> None:
            for step in plan.rollback_actions:
                if step.risk_level == ActionRiskLevel.REQUIRES_APPROVAL:
                    rollback.pending_approval.append(step.action_type)
                    await self._send_approval_notification(
                        step, incident, [f"Rollback of failed {source_action.action_type}"]
                    )
                    continue
                try:
                    output = await self._run_tool(step, incident)
                except Exception as e:
                    rollback.errors.append(f"{step.action_type}: {e}")
                    continue
                if verify_action_result(output):
                    rollback.rolled_back_actions.append(step.action_type)
                else:
                    rollback.errors.append(f"{step.action_type}: result could not be verified")

        try:
            await asyncio.wait_for(run_steps(), timeout=plan.rollback_timeout)
        except asyncio.TimeoutError:
            rollback.errors.append(f"Rollback timed out after {plan.rollback_timeout}s")

        rollback.success = not rollback.errors
        rollback.execution_time_ms = (time.time() - start_time) * 1000

        if rollback.success:
            logger.info(f"Rollback of {source_action.action_type} for incident {incident.id} completed")
        else:
            logger.error(
                f"Rollback of {source_action.action_type} for incident {incident.id} failed: "
                f"{'; '.join(rollback.errors)}"
            )
        metrics = get_metrics()
        if metrics:
            metrics.record_rollback(source_action.action_type, rollback.success)
        return rollback

    def request_approval(
        self, actions: list[RecommendedAction], incident: Incident
    ) -> ApprovalRequest:
        return ApprovalRequest(
            approval_id=f"approval-{int(time.time() * 1000)}-{_random_suffix()}",
            incident_id=incident.id,
            actions=list(actions),
            estimated_approval_time="15m",
        )

    async def _increment_restart_counter(self, incident: Incident) -> None:
        attempts = incident.restart_attempts + 1
        incident.metadata["restart_attempts"] = attempts
        if self.store is None:
            return
        try:
            await self.store.update(incident.id, {"metadata": {"restart_attempts": attempts}})
        except Exception as e:
            logger.warning(f"Failed to persist restart counter for incident {incident.id}: {e}")

    async def _notify(self, event: Notification) -> None:
        try:
            await retry_with_backoff(
                lambda: self.notifier.send(event),
                name="notifications",
                registry=self.breakers,
                attempts=self.settings.notification_retry_attempts,
                base_delay=self.settings.notification_retry_delay,
                timeout=self.settings.attempt_timeout,
            )
        except Exception as e:
            logger.warning(f"Failed to send {event.event_type} for incident {event.incident_id}: {e}")

    async def _send_execution_notification(
        self, action: RecommendedAction, incident: Incident, execution: ExecutionResult
    ) -> None:
        await self._notify(
            RemediationExecutedEvent(
                incident_id=incident.id,
                action_type=action.action_type,
                target=action.target,
                success=execution.success,
                message=execution.message,
                execution_id=generate_execution_id(),
            )
        )

    async def _send_approval_notification(
        self,
        action: RecommendedAction,
        incident: Incident,
        risk_factors: list[str],
    ) -> None:
        factors = "\n".join(f"- {factor}" for factor in risk_factors) or "- None recorded"
        await self._notify(
            NotificationEvent(
                recipient=self.settings.notification_recipient,
                subject=f"Approval Required - Incident {incident.id}",
                body=(
                    f"Action {action.action_type} on {action.target} requires approval.\n"
                    f"Description: {action.description}\n"
                    f"Severity: {incident.severity.value}\n"
                    f"Risk factors:\n{factors}"
                ),
                priority="urgent" if incident.severity == IncidentSeverity.P0 else "high",
                incident_id=incident.id,
            )
        )
