"""
ChronoHeal - Retry Utilities
============================

Exponential-backoff retry for calls made OUTSIDE an IncidentRun's phases.

The controller never retries a collaborator call mid-run; a failed phase
resolves the run to FAILED. Retry is only for fire-and-forget deliveries
such as handing a finished run to the incident store.

Usage:
    from shared.utils.retry import with_retry, RetryConfig

    @with_retry(RetryConfig(max_attempts=3, base_delay=0.5))
    async def deliver(run):
        return await client.post("/api/v1/incidents", data=run)
"""

import asyncio
from dataclasses import dataclass, field
from functools import wraps
from typing import Callable, Type, TypeVar, Any, Optional
from collections.abc import Awaitable

from shared.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass
class RetryConfig:
    """
    Configuration for retry behavior.

    Attributes:
        max_attempts: Maximum number of attempts (including the first)
        base_delay: Delay before the first retry, in seconds
        max_delay: Cap on any single delay, in seconds
        backoff_multiplier: Growth factor between successive delays
        retryable_exceptions: Exception types that trigger a retry
        on_retry: Optional callback invoked before each retry
    """
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0
    retryable_exceptions: tuple[Type[Exception], ...] = field(
        default_factory=lambda: (Exception,)
    )
    on_retry: Optional[Callable[[int, Exception], None]] = None


def calculate_delay(
    attempt: int,
    base_delay: float,
    max_delay: float,
    backoff_multiplier: float
) -> float:
    """Delay for a 0-indexed retry attempt, capped at ``max_delay``."""
    delay = base_delay * (backoff_multiplier ** attempt)
    return min(delay, max_delay)


def with_retry(config: Optional[RetryConfig] = None):
    """
    Decorator adding retry with exponential backoff to an async function.

    The last exception is re-raised once attempts are exhausted.
    """
    if config is None:
        config = RetryConfig()

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            for attempt in range(config.max_attempts):
                try:
                    return await func(*args, **kwargs)

                except config.retryable_exceptions as e:
                    if attempt + 1 >= config.max_attempts:
                        logger.error(
                            f"All {config.max_attempts} attempts exhausted for {func.__name__}",
                            extra={
                                "function": func.__name__,
                                "error": str(e),
                                "attempts": config.max_attempts
                            }
                        )
                        raise

                    delay = calculate_delay(
                        attempt,
                        config.base_delay,
                        config.max_delay,
                        config.backoff_multiplier
                    )

                    logger.warning(
                        f"Retry {attempt + 1}/{config.max_attempts} for {func.__name__} after {delay:.2f}s",
                        extra={
                            "function": func.__name__,
                            "attempt": attempt + 1,
                            "delay": delay,
                            "error": str(e)
                        }
                    )

                    if config.on_retry:
                        config.on_retry(attempt + 1, e)

                    await asyncio.sleep(delay)

            raise RuntimeError("Retry loop exited unexpectedly")

        return wrapper
    return decorator
