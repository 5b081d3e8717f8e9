"""
Incident lifecycle state machine

Validates status transitions and computes escalation deadlines. Two
threshold tables exist:

* ``EscalationPolicy.PROCESSING`` (P0=2m, P1=5m, P2=15m, P3=30m) bounds how
  long the orchestrator may spend processing an incident. The orchestrator
  checks it between pipeline phases.
* ``EscalationPolicy.IDLE`` (P0=5m, P1=15m, P2=1h, P3=4h) bounds how long an
  incident may sit unresolved. The store's escalation sweep uses it.

The tables are not interchangeable; every caller names the policy it uses.
"""

import logging
import random
import string
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional, Union

from .exceptions import ProcessingError, StateTransitionError, ValidationError
from .models import (
    Incident,
    IncidentAlert,
    IncidentSeverity,
    IncidentStatus,
    TimelineEvent,
    utc_now,
)

logger = logging.getLogger(__name__)

VALID_TRANSITIONS: dict[IncidentStatus, frozenset[IncidentStatus]] = {
    IncidentStatus.RECEIVED: frozenset(
        {IncidentStatus.INVESTIGATING, IncidentStatus.ESCALATED}
    ),
    IncidentStatus.INVESTIGATING: frozenset(
        {
            IncidentStatus.ANALYZING,
            IncidentStatus.ESCALATED,
            IncidentStatus.INVESTIGATING,
        }
    ),
    IncidentStatus.ANALYZING: frozenset(
        {IncidentStatus.REMEDIATING, IncidentStatus.ESCALATED, IncidentStatus.ANALYZING}
    ),
    IncidentStatus.REMEDIATING: frozenset(
        {IncidentStatus.RESOLVED, IncidentStatus.ESCALATED, IncidentStatus.REMEDIATING}
    ),
    IncidentStatus.RESOLVED: frozenset({IncidentStatus.RESOLVED}),
    IncidentStatus.ESCALATED: frozenset(
        {IncidentStatus.INVESTIGATING, IncidentStatus.ESCALATED}
    ),
}

TERMINAL_STATUSES = frozenset({IncidentStatus.RESOLVED, IncidentStatus.ESCALATED})


class EscalationPolicy(str, Enum):
    PROCESSING = "processing"
    IDLE = "idle"


PROCESSING_TIME_LIMITS: dict[IncidentSeverity, timedelta] = {
    IncidentSeverity.P0: timedelta(minutes=2),
    IncidentSeverity.P1: timedelta(minutes=5),
    IncidentSeverity.P2: timedelta(minutes=15),
    IncidentSeverity.P3: timedelta(minutes=30),
}

IDLE_ESCALATION_THRESHOLDS: dict[IncidentSeverity, timedelta] = {
    IncidentSeverity.P0: timedelta(minutes=5),
    IncidentSeverity.P1: timedelta(minutes=15),
    IncidentSeverity.P2: timedelta(hours=1),
    IncidentSeverity.P3: timedelta(hours=4),
}

MAX_FAILED_ATTEMPTS = 3

# Metadata key stamped when an escalated incident is resumed
PROCESSING_STARTED_KEY = "processing_started_at"

DESTRUCTIVE_VERBS = ("delete", "drop", "destroy", "terminate", "kill")
PRODUCTION_MARKERS = ("prod", "production", "live")


def _coerce_status(value: Union[IncidentStatus, str], field: str) -> IncidentStatus:
    try:
        return IncidentStatus(value)
    except ValueError:
        raise ValidationError(f"Invalid workflow state: {value}", field=field) from None


def valid_transition(
    from_status: Union[IncidentStatus, str], to_status: Union[IncidentStatus, str]
) -> bool:
    """Whether the lifecycle table allows moving from one status to another.

    Raises:
        ValidationError: If either value is not a known status
    """
    source = _coerce_status(from_status, "from_status")
    target = _coerce_status(to_status, "to_status")
    return target in VALID_TRANSITIONS[source]


def apply_transition(
    incident: Incident,
    to_status: Union[IncidentStatus, str],
    now: Optional[datetime] = None,
    reason: str = "",
) -> Incident:
    """Return a copy of the incident moved to ``to_status``.

    A timeline event records the change.

    Raises:
        StateTransitionError: If the edge is not allowed
    """
    target = _coerce_status(to_status, "to_status")
    if not valid_transition(incident.status, target):
        raise StateTransitionError(incident.status.value, target.value)

    now = now or utc_now()
    updated = incident.model_copy(deep=True)
    updated.timeline.append(
        create_timeline_event(
            "status_changed",
            reason or f"Status changed from {incident.status.value} to {target.value}",
            {"from": incident.status.value, "to": target.value},
            now=now,
        )
    )
    updated.status = target
    updated.updated_at = now
    return updated


def _thresholds(
    policy: EscalationPolicy, overrides: Optional[dict[str, float]] = None
) -> dict[IncidentSeverity, timedelta]:
    table = (
        PROCESSING_TIME_LIMITS
        if policy == EscalationPolicy.PROCESSING
        else IDLE_ESCALATION_THRESHOLDS
    )
    if not overrides:
        return table
    merged = dict(table)
    for severity, minutes in overrides.items():
        merged[IncidentSeverity(severity)] = timedelta(minutes=minutes)
    return merged


def processing_window_start(incident: Incident) -> datetime:
    """When the current processing run began.

    ``created_at`` for a first run. A resumed incident carries a later
    ``processing_started_at`` stamp in its metadata, which wins.
    """
    stamp = incident.metadata.get(PROCESSING_STARTED_KEY)
    if not stamp:
        return incident.created_at
    started = datetime.fromisoformat(stamp) if isinstance(stamp, str) else stamp
    return max(incident.created_at, started)


def escalation_deadline(
    incident: Incident,
    policy: EscalationPolicy = EscalationPolicy.IDLE,
    overrides: Optional[dict[str, float]] = None,
) -> datetime:
    """Start of the policy's window plus its threshold for the severity.

    The idle window always starts at ``created_at``; the processing window
    starts at ``processing_window_start``.
    """
    start = (
        processing_window_start(incident)
        if policy == EscalationPolicy.PROCESSING
        else incident.created_at
    )
    return start + _thresholds(policy, overrides)[incident.severity]


def requires_escalation(
    incident: Incident,
    now: Optional[datetime] = None,
    policy: EscalationPolicy = EscalationPolicy.IDLE,
    overrides: Optional[dict[str, float]] = None,
    max_failed_attempts: int = MAX_FAILED_ATTEMPTS,
) -> bool:
    """Whether an incident must be escalated.

    Resolved and escalated incidents never require escalation. Otherwise the
    failed-attempt ceiling forces escalation regardless of severity or age,
    and past that the policy deadline decides.
    """
    if incident.status in TERMINAL_STATUSES:
        return False
    if incident.failed_attempts >= max_failed_attempts:
        return True
    now = now or utc_now()
    return now > escalation_deadline(incident, policy, overrides)


def check_processing_time(
    incident: Incident, now: Optional[datetime] = None
) -> dict[str, Any]:
    """Compare elapsed processing time against the processing limit"""
    now = now or utc_now()
    elapsed = now - processing_window_start(incident)
    limit = PROCESSING_TIME_LIMITS[incident.severity]
    within_limits = elapsed <= limit
    return {
        "within_limits": within_limits,
        "escalation_required": not within_limits,
        "elapsed": elapsed,
        "limit": limit,
    }


def enforce_business_rules(action_type: str, target: str) -> None:
    """Reject destructive operations aimed at production targets.

    Raises:
        ProcessingError: If a destructive verb targets a production system
    """
    action_lower = action_type.lower()
    target_lower = target.lower()
    if any(verb in action_lower for verb in DESTRUCTIVE_VERBS) and any(
        marker in target_lower for marker in PRODUCTION_MARKERS
    ):
        raise ProcessingError(
            f"Destructive operation '{action_type}' on production target "
            f"'{target}' requires manual approval"
        )


def classify_alert_severity(alert: IncidentAlert) -> IncidentSeverity:
    """Severity stated by the alert, or one inferred from its message"""
    if alert.severity:
        try:
            return IncidentSeverity(alert.severity.upper())
        except ValueError:
            logger.debug(f"Alert severity '{alert.severity}' not recognized, inferring")

    message = alert.message.lower()
    error_rate = alert.metadata.get("error_rate")
    response_time = alert.metadata.get("response_time")

    if any(word in message for word in ("down", "outage", "critical")):
        return IncidentSeverity.P0
    if (
        "error" in message
        or "failure" in message
        or (isinstance(error_rate, (int, float)) and error_rate > 50)
    ):
        return IncidentSeverity.P1
    if (
        "slow" in message
        or "degraded" in message
        or (isinstance(response_time, (int, float)) and response_time > 1000)
    ):
        return IncidentSeverity.P2
    return IncidentSeverity.P3


def _random_suffix(length: int = 9) -> str:
    return "".join(random.choices(string.ascii_lowercase + string.digits, k=length))


def generate_incident_id(now: Optional[datetime] = None) -> str:
    now = now or utc_now()
    return f"inc-{int(now.timestamp() * 1000)}-{_random_suffix()}"


def create_timeline_event(
    event_type: str,
    description: str,
    metadata: Optional[dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> TimelineEvent:
    now = now or utc_now()
    return TimelineEvent(
        id=f"evt-{int(now.timestamp() * 1000)}-{_random_suffix()}",
        timestamp=now,
        event_type=event_type,
        description=description,
        metadata=metadata or {},
    )


def validate_alert(alert: IncidentAlert) -> None:
    """Raises ValidationError for alerts missing required content"""
    for field in ("source", "alert_type", "message"):
        if not getattr(alert, field).strip():
            raise ValidationError(f"Alert {field} is required", field=field)


def _build_title(alert: IncidentAlert) -> str:
    title = f"{alert.alert_type}: {alert.message}"
    if len(title) > 100:
        title = title[:97] + "..."
    return title


def _build_description(alert: IncidentAlert) -> str:
    parts = [
        f"Alert Type: {alert.alert_type}",
        f"Source: {alert.source}",
        f"Message: {alert.message}",
    ]
    if alert.affected_services:
        parts.append(f"Affected Services: {', '.join(alert.affected_services)}")
    for key, value in alert.metadata.items():
        parts.append(f"{key}: {value}")
    return "\n".join(parts)


def create_incident_from_alert(
    alert: IncidentAlert, now: Optional[datetime] = None
) -> Incident:
    """Open a new RECEIVED incident for an inbound alert"""
    validate_alert(alert)
    now = now or utc_now()
    severity = classify_alert_severity(alert)

    incident = Incident(
        id=generate_incident_id(now),
        title=_build_title(alert),
        description=_build_description(alert),
        severity=severity,
        status=IncidentStatus.RECEIVED,
        source=alert.source,
        affected_services=set(alert.affected_services),
        created_at=now,
        updated_at=now,
        metadata={
            "alert_type": alert.alert_type,
            "alert_timestamp": alert.timestamp.isoformat(),
            "restart_attempts": 0,
            "failed_attempts": 0,
            **alert.metadata,
        },
    )
    incident.timeline.append(
        create_timeline_event(
            "incident_created",
            f"Incident created from {alert.source} alert",
            {"severity": severity.value},
            now=now,
        )
    )
    return incident
