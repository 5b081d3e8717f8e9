"""
Incident store interface

Backends implement record-level reads and writes. The keyed-store
operations (create, get, update, list) and the queries built on them live
here so every backend shares the same semantics: updates merge ``metadata``
shallowly, touch ``updated_at`` and append a timeline event.
"""

import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import datetime
from typing import Any, Optional, Union

from ..exceptions import NotFoundError, ValidationError
from ..models import (
    Incident,
    IncidentSeverity,
    IncidentStatus,
    TimelineEvent,
    utc_now,
)
from ..workflow import (
    TERMINAL_STATUSES,
    EscalationPolicy,
    apply_transition,
    create_timeline_event,
    requires_escalation,
)

logger = logging.getLogger(__name__)

PROTECTED_FIELDS = frozenset({"id", "created_at"})


class IncidentStore(ABC):
    """Keyed incident record store"""

    @abstractmethod
    async def _read(self, incident_id: str) -> Optional[Incident]:
        """Stored record or None"""

    @abstractmethod
    async def _write(self, incident: Incident) -> None:
        """Insert or replace a record"""

    @abstractmethod
    async def _read_all(self) -> list[Incident]:
        """All stored records, oldest first"""

    async def close(self) -> None:
        pass

    async def create(self, incident: Incident) -> Incident:
        if await self._read(incident.id) is not None:
            raise ValidationError(f"Incident already exists: {incident.id}", field="id")
        await self._write(incident)
        logger.info(f"Created incident {incident.id} ({incident.severity.value})")
        return incident

    async def get(self, incident_id: str) -> Incident:
        """
        Raises:
            NotFoundError: If no incident has this id
        """
        incident = await self._read(incident_id)
        if incident is None:
            raise NotFoundError("Incident", incident_id)
        return incident

    async def update(self, incident_id: str, fields: dict[str, Any]) -> Incident:
        """
        Apply a partial update

        ``metadata`` is merged shallowly: new keys override, other keys are
        kept. Concurrent updates are last-write-wins.

        Raises:
            NotFoundError: If no incident has this id
            ValidationError: For protected or unknown fields
        """
        protected = PROTECTED_FIELDS & fields.keys()
        if protected:
            raise ValidationError(
                f"Cannot update protected fields: {', '.join(sorted(protected))}",
                field=sorted(protected)[0],
            )
        unknown = set(fields) - set(Incident.model_fields)
        if unknown:
            raise ValidationError(
                f"Unknown incident fields: {', '.join(sorted(unknown))}",
                field=sorted(unknown)[0],
            )

        incident = await self.get(incident_id)
        now = utc_now()
        data = incident.model_dump()
        changes = dict(fields)
        if "metadata" in changes:
            data["metadata"] = {**data["metadata"], **(changes.pop("metadata") or {})}
        data.update(changes)
        data["updated_at"] = now

        updated = Incident.model_validate(data)
        updated.timeline.append(
            create_timeline_event(
                "incident_updated",
                f"Updated fields: {', '.join(sorted(fields))}",
                {"fields": sorted(fields)},
                now=now,
            )
        )
        await self._write(updated)
        return updated

    async def update_status(
        self,
        incident_id: str,
        status: Union[IncidentStatus, str],
        reason: str = "",
        metadata: Optional[dict[str, Any]] = None,
    ) -> Incident:
        """
        Move an incident along a lifecycle edge

        Raises:
            NotFoundError: If no incident has this id
            StateTransitionError: If the edge is not allowed
        """
        incident = await self.get(incident_id)
        updated = apply_transition(incident, status, reason=reason)
        if metadata:
            updated.metadata = {**updated.metadata, **metadata}
        await self._write(updated)
        logger.info(
            f"Incident {incident_id} status {incident.status.value} -> {updated.status.value}"
        )
        return updated

    async def add_timeline_event(
        self,
        incident_id: str,
        event_type: str,
        description: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> TimelineEvent:
        incident = await self.get(incident_id)
        event = create_timeline_event(event_type, description, metadata)
        incident.timeline.append(event)
        await self._write(incident)
        return event

    async def get_history(self, incident_id: str) -> list[TimelineEvent]:
        incident = await self.get(incident_id)
        return sorted(incident.timeline, key=lambda e: e.timestamp)

    async def search(
        self,
        severity: Optional[IncidentSeverity] = None,
        status: Optional[IncidentStatus] = None,
        source: Optional[str] = None,
        affected_service: Optional[str] = None,
        created_after: Optional[datetime] = None,
        created_before: Optional[datetime] = None,
    ) -> list[Incident]:
        results = []
        for incident in await self.list():
            if severity is not None and incident.severity != severity:
                continue
            if status is not None and incident.status != status:
                continue
            if source is not None and incident.source != source:
                continue
            if affected_service is not None and affected_service not in incident.affected_services:
                continue
            if created_after is not None and incident.created_at < created_after:
                continue
            if created_before is not None and incident.created_at > created_before:
                continue
            results.append(incident)
        return results

    async def correlate(self) -> dict[str, list[str]]:
        """Open incident ids grouped by shared affected service"""
        groups: dict[str, list[str]] = defaultdict(list)
        for incident in await self.list():
            if incident.status in TERMINAL_STATUSES:
                continue
            for service in incident.affected_services:
                groups[service].append(incident.id)
        return {service: ids for service, ids in groups.items() if len(ids) > 1}

    async def check_escalations(
        self,
        now: Optional[datetime] = None,
        thresholds: Optional[dict[str, float]] = None,
    ) -> list[Incident]:
        """Open incidents past the idle escalation deadline"""
        now = now or utc_now()
        return [
            incident
            for incident in await self.list()
            if requires_escalation(incident, now, EscalationPolicy.IDLE, thresholds)
        ]

    # Keep last: the name shadows the builtin in class-level annotations
    async def list(self, limit: Optional[int] = None) -> list[Incident]:
        """Incidents, newest first"""
        incidents = sorted(await self._read_all(), key=lambda i: i.created_at, reverse=True)
        return incidents[:limit] if limit is not None else incidents
