"""
riskguard/resilience/retry.py
==============================
Async retry with exponential back-off — RiskGuard

Wraps any zero-argument coroutine factory and retries it on transient
failures (network, timeout, 429 rate-limit, 5xx server errors) with
exponential back-off. Failures are classified into error kinds by
``riskguard.errors.classify_error``; only kinds listed in
``RetryConfig.retryable_kinds`` are retried.

Usage::

    from riskguard.resilience.retry import RetryConfig, retry_async

    result = await retry_async(
        lambda: client.chat.completions.create(**kwargs),
        RetryConfig(max_retries=3),
        name="openai",
    )

Back-off waits use ``asyncio.sleep``: no lock is held while waiting and
cancelling the surrounding task stops the loop.

This module does NOT:
    - Decide whether a collaborator is healthy (see circuit_breaker.py)
    - Create or manage client instances
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from riskguard.errors import (
    KIND_NETWORK,
    KIND_RATE_LIMITED,
    KIND_SERVER_ERROR,
    KIND_TIMEOUT,
    RetryExhaustedError,
    classify_error,
)

logger = logging.getLogger("riskguard.resilience.retry")


DEFAULT_RETRYABLE_KINDS: frozenset[str] = frozenset({
    KIND_NETWORK, KIND_TIMEOUT, KIND_RATE_LIMITED, KIND_SERVER_ERROR,
})


@dataclass(frozen=True)
class RetryConfig:
    """Retry policy; total attempts = max_retries + 1 (initial)."""

    max_retries: int = 3
    base_delay_ms: int = 200
    max_delay_ms: int = 5_000
    backoff_multiplier: float = 2.0
    retryable_kinds: frozenset[str] = field(default=DEFAULT_RETRYABLE_KINDS)

    def delay_seconds(self, attempt: int) -> float:
        """Wait after failed ``attempt`` (1-based): min(base * mult^(attempt-1), max)."""
        delay_ms = self.base_delay_ms * (self.backoff_multiplier ** (attempt - 1))
        return min(delay_ms, self.max_delay_ms) / 1000.0

    @classmethod
    def from_settings(cls, settings: Any) -> "RetryConfig":
        return cls(
            max_retries=settings.retry_max_retries,
            base_delay_ms=settings.retry_base_delay_ms,
            max_delay_ms=settings.retry_max_delay_ms,
            backoff_multiplier=settings.retry_backoff_multiplier,
        )


async def retry_async(
    fn: Callable[[], Awaitable[Any]],
    config: RetryConfig | None = None,
    name: str = "operation",
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> Any:
    """
    Await ``fn()`` with automatic retry.

    Args:
        fn:     Zero-argument callable returning a fresh awaitable per attempt.
        config: Retry policy (defaults to ``RetryConfig()``).
        name:   Label used in log lines.
        sleep:  Awaitable sleep (injected by tests).

    Returns:
        Whatever ``fn()`` resolves to.

    Raises:
        The original exception if its kind is not retryable (fn invoked once).
        RetryExhaustedError: if every attempt failed with a retryable kind.
    """
    config = config or RetryConfig()
    total_attempts = config.max_retries + 1

    for attempt in range(1, total_attempts + 1):
        try:
            return await fn()
        except Exception as exc:
            kind = classify_error(exc)

            if kind not in config.retryable_kinds:
                logger.warning(
                    "%s failed with non-retryable error (%s): %s", name, kind, exc,
                )
                raise

            if attempt >= total_attempts:
                logger.error(
                    "%s failed after %d attempts (%s): %s", name, attempt, kind, exc,
                )
                raise RetryExhaustedError(attempt, exc) from exc

            delay = config.delay_seconds(attempt)
            logger.warning(
                "%s failed (attempt %d/%d, %s): %s; retrying in %.2fs",
                name, attempt, total_attempts, kind, exc, delay,
            )
            await sleep(delay)

    # unreachable: the loop either returns or raises
    raise RuntimeError(f"{name}: retry loop exited without result")
