"""
Retry with exponential backoff, guarded by a circuit breaker
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from .circuit_breaker import CircuitBreakerRegistry

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    *,
    name: str,
    registry: Optional[CircuitBreakerRegistry] = None,
    attempts: int = 3,
    base_delay: float = 1.0,
    timeout: Optional[float] = None,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    give_up_on: tuple[type[BaseException], ...] = (),
) -> T:
    """
    Run ``operation`` up to ``attempts`` times.

    The breaker for ``name`` is consulted before every attempt, so an open
    breaker fails fast with CircuitOpenError without calling the operation.
    Each attempt is bounded by ``timeout``; a timeout counts as a failure.
    The delay before attempt n+1 is ``base_delay * 2 ** (n - 1)``. Exceptions
    outside ``retry_on`` are recorded against the breaker and raised at once.
    Exceptions in ``give_up_on`` are caller errors: raised at once and not
    recorded against the breaker.

    Args:
        operation: Zero-argument coroutine factory
        name: Dependency name keying the circuit breaker
        registry: Breaker registry; no breaker protection when None
        attempts: Maximum attempts
        base_delay: Initial backoff delay in seconds
        timeout: Per-attempt timeout in seconds
        retry_on: Exception types worth another attempt
        give_up_on: Exception types raised without retry or breaker update

    Raises:
        ValueError: If attempts is below 1
    """
    if attempts < 1:
        raise ValueError(f"attempts must be at least 1, got {attempts}")

    last_error: Optional[BaseException] = None

    for attempt in range(1, attempts + 1):
        if registry is not None:
            await registry.before_call(name)

        try:
            if timeout is not None:
                result = await asyncio.wait_for(operation(), timeout=timeout)
            else:
                result = await operation()
        except give_up_on:
            raise
        except asyncio.TimeoutError as e:
            last_error = e
            logger.warning(f"{name} attempt {attempt}/{attempts} timed out after {timeout}s")
        except retry_on as e:
            last_error = e
            logger.warning(f"{name} attempt {attempt}/{attempts} failed: {e}")
        except Exception as e:
            if registry is not None:
                await registry.record_failure(name)
            logger.error(f"{name} failed with non-retryable error: {e}")
            raise
        else:
            if registry is not None:
                await registry.record_success(name)
            return result

        if registry is not None:
            await registry.record_failure(name)

        if attempt < attempts:
            delay = base_delay * (2 ** (attempt - 1))
            logger.debug(f"Retrying {name} in {delay:.2f}s")
            await asyncio.sleep(delay)

    raise last_error
