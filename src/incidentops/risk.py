"""
Risk classification for recommended remediation actions

Classification is deterministic and fails closed: anything not matched by an
explicit rule requires human approval.
"""

import logging
from typing import Optional

from .exceptions import ValidationError
from .models import (
    ActionRiskLevel,
    Incident,
    IncidentSeverity,
    RecommendedAction,
    RiskAssessment,
    ScaleParams,
)

logger = logging.getLogger(__name__)

HIGH_RISK_TERMS = (
    "database",
    "db",
    "schema",
    "delete",
    "drop",
    "truncate",
    "firewall",
    "security",
    "credential",
    "network",
    "dns",
    "certificate",
)
CONFIG_TERMS = ("config", "configuration", "update", "modify", "change")
SAFE_ACTION_TERMS = ("restart", "reboot", "scale_up", "scale_down", "clear_cache", "flush")

DEFAULT_MAX_RESTART_ATTEMPTS = 3
DEFAULT_MAX_AUTONOMOUS_REPLICAS = 10


def _contains_any(text: str, terms: tuple[str, ...]) -> bool:
    text = text.lower()
    return any(term in text for term in terms)


def requested_replicas(action: RecommendedAction) -> Optional[int]:
    """Replica count requested by a scale action, if any"""
    if action.action_type != "scale_resources":
        return None
    try:
        params = action.typed_params()
    except ValidationError:
        return None
    return params.replicas if isinstance(params, ScaleParams) else None


class RiskClassifier:
    """Assigns a risk tier to remediation actions"""

    def __init__(
        self,
        max_restart_attempts: int = DEFAULT_MAX_RESTART_ATTEMPTS,
        max_autonomous_replicas: int = DEFAULT_MAX_AUTONOMOUS_REPLICAS,
    ):
        self.max_restart_attempts = max_restart_attempts
        self.max_autonomous_replicas = max_autonomous_replicas

    def classify(
        self, action: RecommendedAction, incident: Incident
    ) -> ActionRiskLevel:
        """Risk tier for an action in the context of an incident.

        The restart ceiling and the large-scale rule override the table.
        After those, the first matching rule wins:

        1. high-risk vocabulary in action type or target
        2. P0 incident and configuration vocabulary in type or description
        3. safe vocabulary in action type
        4. P2/P3 incident and configuration vocabulary
        5. otherwise approval is required
        """
        if (
            action.action_type == "restart_service"
            and incident.restart_attempts >= self.max_restart_attempts
        ):
            return ActionRiskLevel.REQUIRES_APPROVAL

        replicas = requested_replicas(action)
        if replicas is not None and replicas > self.max_autonomous_replicas:
            return ActionRiskLevel.REQUIRES_APPROVAL

        action_type = action.action_type.lower()
        type_and_description = f"{action_type} {action.description}"

        if _contains_any(f"{action_type} {action.target}", HIGH_RISK_TERMS):
            return ActionRiskLevel.REQUIRES_APPROVAL

        is_config = _contains_any(type_and_description, CONFIG_TERMS)

        if incident.severity == IncidentSeverity.P0 and is_config:
            return ActionRiskLevel.REQUIRES_APPROVAL

        if _contains_any(action_type, SAFE_ACTION_TERMS):
            return ActionRiskLevel.AUTONOMOUS_SAFE

        if incident.severity in (IncidentSeverity.P2, IncidentSeverity.P3) and is_config:
            return ActionRiskLevel.AUTONOMOUS_SAFE

        return ActionRiskLevel.REQUIRES_APPROVAL

    def assess(self, action: RecommendedAction, incident: Incident) -> RiskAssessment:
        """Classify an action and collect contextual risk factors"""
        risk_level = self.classify(action, incident)
        risk_factors: list[str] = []
        mitigation_steps: list[str] = []
        requires_approval = risk_level == ActionRiskLevel.REQUIRES_APPROVAL

        action_type = action.action_type.lower()
        target = action.target.lower()

        if (
            action.action_type == "restart_service"
            and incident.restart_attempts >= self.max_restart_attempts
        ):
            risk_factors.append(
                f"Restart limit exceeded ({self.max_restart_attempts} attempts)"
            )
            mitigation_steps.append("Investigate root cause before further restarts")
            requires_approval = True

        if "database" in action_type or "db" in target:
            risk_factors.append("Database operations require approval")
            mitigation_steps.append("Create database backup before execution")
            mitigation_steps.append("Validate operation in staging environment")
            requires_approval = True

        replicas = requested_replicas(action)
        if replicas is not None and replicas > self.max_autonomous_replicas:
            risk_factors.append(
                f"Large scale operation (>{self.max_autonomous_replicas} replicas)"
            )
            mitigation_steps.append("Confirm capacity and cost impact")
            requires_approval = True

        if "network" in action_type or "firewall" in action_type:
            risk_factors.append("Network changes can affect multiple services")
            mitigation_steps.append("Prepare connectivity verification checks")
            requires_approval = True

        if "config" in action_type or "setting" in action_type:
            mitigation_steps.append("Backup current configuration")
            mitigation_steps.append("Validate configuration syntax before applying")

        if incident.severity == IncidentSeverity.P0 and not requires_approval:
            risk_factors.append("P0 incident - expedited autonomous execution approved")
        elif incident.severity in (IncidentSeverity.P2, IncidentSeverity.P3):
            risk_factors.append("Lower severity incident - standard change process applies")

        return RiskAssessment(
            risk_level=(
                ActionRiskLevel.REQUIRES_APPROVAL if requires_approval else risk_level
            ),
            risk_factors=risk_factors,
            mitigation_steps=mitigation_steps,
            requires_approval=requires_approval,
        )

