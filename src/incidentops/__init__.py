"""
incidentops - AI-assisted incident response orchestration

Turns alerts into incidents, gathers observability data, asks a language
model for a root cause analysis and executes the recommended remediation
under risk classification, retries, circuit breaking and rollback.
"""

__version__ = "0.1.0"

# Core API exports
from .config import IncidentOpsConfig
from .models import AlertRejection, IncidentAlert, ProcessingResult
from .orchestrator import IncidentOrchestrator, create_orchestrator


async def handle_alert(
    alert_data: dict, config: IncidentOpsConfig | None = None
) -> ProcessingResult:
    """Process a single alert with the default collaborators"""
    orchestrator = create_orchestrator(config)
    try:
        return await orchestrator.handle_alert(IncidentAlert.model_validate(alert_data))
    finally:
        await orchestrator.store.close()


__all__ = [
    "handle_alert",
    "AlertRejection",
    "IncidentAlert",
    "IncidentOpsConfig",
    "IncidentOrchestrator",
    "ProcessingResult",
    "create_orchestrator",
    "__version__",
]
