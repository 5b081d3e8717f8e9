"""
Async semaphores bounding concurrent incident processing
"""

import asyncio
import logging
import time
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Optional

logger = logging.getLogger(__name__)

HOLD_TIME_WINDOW = 1000


@dataclass
class SemaphoreStats:
    """Usage statistics for a named semaphore"""

    name: str
    capacity: int
    available: int
    total_acquisitions: int
    total_timeouts: int
    hold_times: list[float] = field(default_factory=list)

    @property
    def in_use(self) -> int:
        return self.capacity - self.available

    def to_dict(self) -> dict[str, Any]:
        average = sum(self.hold_times) / len(self.hold_times) if self.hold_times else 0.0
        return {
            "name": self.name,
            "capacity": self.capacity,
            "in_use": self.in_use,
            "total_acquisitions": self.total_acquisitions,
            "total_timeouts": self.total_timeouts,
            "average_hold_time": average,
        }


class AsyncSemaphore:
    """asyncio.Semaphore with acquisition timeout and statistics"""

    def __init__(
        self, value: int, name: str = "unnamed", hold_time_window: int = HOLD_TIME_WINDOW
    ):
        if value < 1:
            raise ValueError("Semaphore capacity must be at least 1")

        self.name = name
        self.capacity = value
        self._semaphore = asyncio.Semaphore(value)
        self._in_use = 0
        self._total_acquisitions = 0
        self._total_timeouts = 0
        # Only the most recent hold times feed the average
        self._hold_times: deque[float] = deque(maxlen=hold_time_window)

    @asynccontextmanager
    async def acquire(self, timeout: Optional[float] = None):
        """
        Hold one permit for the duration of the block

        Raises:
            asyncio.TimeoutError: If no permit is available within timeout
        """
        try:
            if timeout is not None:
                await asyncio.wait_for(self._semaphore.acquire(), timeout=timeout)
            else:
                await self._semaphore.acquire()
        except asyncio.TimeoutError:
            self._total_timeouts += 1
            logger.warning(
                f"Semaphore '{self.name}' acquisition timeout after {timeout}s"
            )
            raise

        started = time.monotonic()
        self._in_use += 1
        self._total_acquisitions += 1
        try:
            yield
        finally:
            self._hold_times.append(time.monotonic() - started)
            self._in_use -= 1
            self._semaphore.release()

    def get_stats(self) -> SemaphoreStats:
        return SemaphoreStats(
            name=self.name,
            capacity=self.capacity,
            available=self.capacity - self._in_use,
            total_acquisitions=self._total_acquisitions,
            total_timeouts=self._total_timeouts,
            hold_times=list(self._hold_times),
        )


class SemaphoreManager:
    """Registry of named semaphores"""

    def __init__(self, default_capacities: Optional[dict[str, int]] = None):
        self._semaphores: dict[str, AsyncSemaphore] = {}
        self._default_capacities = {
            "incident_pipeline": 5,
            **(default_capacities or {}),
        }

    def get_semaphore(
        self, name: str, capacity: Optional[int] = None
    ) -> AsyncSemaphore:
        """Get or create a named semaphore"""
        if name not in self._semaphores:
            if capacity is None:
                capacity = self._default_capacities.get(name, 10)
            self._semaphores[name] = AsyncSemaphore(capacity, name)
            logger.info(f"Created semaphore '{name}' with capacity {capacity}")
        return self._semaphores[name]

    def list_semaphores(self) -> dict[str, SemaphoreStats]:
        return {name: sem.get_stats() for name, sem in self._semaphores.items()}


_semaphore_manager = SemaphoreManager()


def get_semaphore_manager() -> SemaphoreManager:
    """Get the global semaphore manager"""
    return _semaphore_manager
