"""
In-memory incident store

Thread-safe and bounded; the oldest records are evicted first once
``max_size`` is exceeded. Intended for development, tests and single-process
deployments.
"""

import logging
import threading
from collections import OrderedDict
from typing import Optional

from ..models import Incident
from .base import IncidentStore

logger = logging.getLogger(__name__)


class MemoryIncidentStore(IncidentStore):
    def __init__(self, max_size: int = 10000):
        self.max_size = max_size
        self._records: OrderedDict[str, Incident] = OrderedDict()
        self._lock = threading.RLock()
        self._evictions = 0

    async def _read(self, incident_id: str) -> Optional[Incident]:
        with self._lock:
            incident = self._records.get(incident_id)
            return incident.model_copy(deep=True) if incident else None

    async def _write(self, incident: Incident) -> None:
        with self._lock:
            self._records[incident.id] = incident.model_copy(deep=True)
            while len(self._records) > self.max_size:
                evicted, _ = self._records.popitem(last=False)
                self._evictions += 1
                logger.warning(f"Evicted incident {evicted} from memory store")

    async def _read_all(self) -> list[Incident]:
        with self._lock:
            return [incident.model_copy(deep=True) for incident in self._records.values()]

    def get_stats(self) -> dict[str, int]:
        with self._lock:
            return {
                "size": len(self._records),
                "max_size": self.max_size,
                "evictions": self._evictions,
            }
