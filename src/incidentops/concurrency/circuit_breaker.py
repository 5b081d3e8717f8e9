"""
Circuit breaker registry for remediation dependencies

One breaker per dependency name, shared by every incident in the process.
Each name has its own asyncio.Lock so concurrent failures reported for the
same dependency are never lost.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from ..exceptions import CircuitOpenError
from ..observability.metrics import get_metrics

logger = logging.getLogger(__name__)


@dataclass
class CircuitBreakerState:
    """Failure bookkeeping for one dependency"""

    failures: int = 0
    last_failure_time: float = 0.0
    is_open: bool = False


class CircuitBreakerRegistry:
    """
    Per-dependency circuit breakers

    A breaker opens after ``failure_threshold`` consecutive failures and
    rejects calls until ``reset_timeout_seconds`` have passed since the last
    failure. The first call after the cooldown finds the breaker reset to
    closed. Any success resets the failure count.
    """

    def __init__(
        self,
        failure_threshold: int = 3,
        reset_timeout_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.reset_timeout_seconds = reset_timeout_seconds
        self._clock = clock
        self._states: dict[str, CircuitBreakerState] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _entry(self, name: str) -> tuple[CircuitBreakerState, asyncio.Lock]:
        if name not in self._states:
            self._states[name] = CircuitBreakerState()
            self._locks[name] = asyncio.Lock()
        return self._states[name], self._locks[name]

    async def before_call(self, name: str) -> None:
        """
        Admit or reject a call to ``name``

        Raises:
            CircuitOpenError: If the breaker is open and still cooling down
        """
        state, lock = self._entry(name)
        async with lock:
            if not state.is_open:
                return
            elapsed = self._clock() - state.last_failure_time
            if elapsed < self.reset_timeout_seconds:
                raise CircuitOpenError(name)
            logger.info(f"Circuit breaker for {name} reset after {elapsed:.1f}s cooldown")
            state.failures = 0
            state.is_open = False

    async def record_success(self, name: str) -> None:
        state, lock = self._entry(name)
        async with lock:
            state.failures = 0
            state.is_open = False

    async def record_failure(self, name: str) -> None:
        state, lock = self._entry(name)
        async with lock:
            state.failures += 1
            state.last_failure_time = self._clock()
            if state.failures >= self.failure_threshold and not state.is_open:
                state.is_open = True
                logger.warning(
                    f"Circuit breaker opened for {name} after {state.failures} failures"
                )
                metrics = get_metrics()
                if metrics:
                    metrics.record_breaker_open(name)

    def state(self, name: str) -> CircuitBreakerState:
        """Snapshot of the breaker state for ``name``"""
        state, _ = self._entry(name)
        return CircuitBreakerState(
            failures=state.failures,
            last_failure_time=state.last_failure_time,
            is_open=state.is_open,
        )

    def reset(self, name: Optional[str] = None) -> None:
        names = [name] if name else list(self._states)
        for key in names:
            self._states[key] = CircuitBreakerState()


_registry: Optional[CircuitBreakerRegistry] = None


def get_breaker_registry() -> CircuitBreakerRegistry:
    """Process-wide registry shared by concurrently running incidents"""
    global _registry
    if _registry is None:
        _registry = CircuitBreakerRegistry()
    return _registry
