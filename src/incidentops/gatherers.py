"""
Data-gathering collaborators

The orchestrator only consumes gatherer results. Real deployments inject a
gatherer backed by their logging, metrics and alerting systems; the static
gatherer serves fixtures for development and tests.
"""

import logging
from pathlib import Path
from typing import Any, Optional, Protocol, runtime_checkable

import yaml

from .models import (
    AlertData,
    Incident,
    LogEntry,
    MetricData,
    RunbookEntry,
    SystemStatus,
)

logger = logging.getLogger(__name__)

SAMPLE_FIXTURES = Path(__file__).parent / "data" / "sample_observability.yaml"


@runtime_checkable
class DataGatherer(Protocol):
    """Source of observability data for an incident"""

    async def get_logs(self, incident: Incident) -> list[LogEntry]: ...

    async def get_metrics(self, incident: Incident) -> list[MetricData]: ...

    async def get_alerts(self, incident: Incident) -> list[AlertData]: ...

    async def get_system_status(self, incident: Incident) -> list[SystemStatus]: ...

    async def search_runbooks(self, incident: Incident) -> list[RunbookEntry]: ...


class StaticDataGatherer:
    """
    Serves observability records from an in-memory fixture

    Records are filtered to the incident's affected services when they carry
    a service name. Runbooks match on incident type keywords in the title.
    """

    def __init__(self, fixtures: Optional[dict[str, list[dict[str, Any]]]] = None):
        fixtures = fixtures or {}
        self.logs = [LogEntry.model_validate(item) for item in fixtures.get("logs", [])]
        self.metrics = [
            MetricData.model_validate(item) for item in fixtures.get("metrics", [])
        ]
        self.alerts = [AlertData.model_validate(item) for item in fixtures.get("alerts", [])]
        self.system_status = [
            SystemStatus.model_validate(item) for item in fixtures.get("system_status", [])
        ]
        self.runbooks = [
            RunbookEntry.model_validate(item) for item in fixtures.get("runbooks", [])
        ]

    @classmethod
    def from_yaml(cls, path: Path = SAMPLE_FIXTURES) -> "StaticDataGatherer":
        with open(path, encoding="utf-8") as f:
            fixtures = yaml.safe_load(f) or {}
        logger.info(f"Loaded observability fixtures from {path}")
        return cls(fixtures)

    @staticmethod
    def _for_services(records: list, incident: Incident) -> list:
        if not incident.affected_services:
            return list(records)
        return [r for r in records if r.service in incident.affected_services]

    async def get_logs(self, incident: Incident) -> list[LogEntry]:
        return self._for_services(self.logs, incident)

    async def get_metrics(self, incident: Incident) -> list[MetricData]:
        if not incident.affected_services:
            return list(self.metrics)
        return [
            m
            for m in self.metrics
            if m.labels.get("service", "") in incident.affected_services
            or "service" not in m.labels
        ]

    async def get_alerts(self, incident: Incident) -> list[AlertData]:
        return self._for_services(self.alerts, incident)

    async def get_system_status(self, incident: Incident) -> list[SystemStatus]:
        return self._for_services(self.system_status, incident)

    async def search_runbooks(self, incident: Incident) -> list[RunbookEntry]:
        text = f"{incident.title} {incident.description}".lower()
        matches = [
            r
            for r in self.runbooks
            if any(t.lower() in text for t in r.incident_types)
        ]
        return sorted(matches, key=lambda r: r.relevance_score, reverse=True)
