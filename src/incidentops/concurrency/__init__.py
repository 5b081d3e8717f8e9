"""
Concurrency control for incidentops

Provides the shared circuit-breaker registry, the retry-with-backoff wrapper
and named semaphores bounding concurrent incident processing.
"""

from .circuit_breaker import (
    CircuitBreakerRegistry,
    CircuitBreakerState,
    get_breaker_registry,
)
from .retry import retry_with_backoff
from .semaphore import AsyncSemaphore, SemaphoreManager, get_semaphore_manager

__all__ = [
    "AsyncSemaphore",
    "CircuitBreakerRegistry",
    "CircuitBreakerState",
    "SemaphoreManager",
    "get_breaker_registry",
    "get_semaphore_manager",
    "retry_with_backoff",
]
