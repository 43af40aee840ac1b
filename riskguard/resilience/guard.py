"""
riskguard/resilience/guard.py
==============================
ResilienceGuard — RiskGuard

Composes the retry loop and a per-collaborator circuit breaker:

    retry_async( breaker(name).call(fn) )

Each attempt goes through the breaker, so an opening circuit stops the
retry loop immediately (CircuitOpenError is not a retryable kind).
Breakers live in a registry keyed by collaborator name; the first call
for a name creates its breaker and every later call shares it.
"""

import asyncio
import logging
import threading
import time
from typing import Any, Awaitable, Callable

from riskguard.resilience.circuit_breaker import CircuitBreaker
from riskguard.resilience.retry import RetryConfig, retry_async

logger = logging.getLogger("riskguard.resilience.guard")

# Collaborator names are a small fixed set; breakers are never evicted.
MAX_BREAKERS = 256


class ResilienceGuard:
    """
    Args:
        failure_threshold: Passed to every breaker created.
        reset_timeout_ms:  Passed to every breaker created.
        retry_config:      Default retry policy for ``call``.
        on_breaker_open:   ``fn(breaker)`` invoked when any breaker opens
                           (wired to the audit trail by services.py).
        clock:             Monotonic clock shared by all breakers.
        sleep:             Back-off sleep (injected by tests).
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        reset_timeout_ms: int = 30_000,
        retry_config: RetryConfig | None = None,
        on_breaker_open: Callable[[CircuitBreaker], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.failure_threshold = failure_threshold
        self.reset_timeout_ms = reset_timeout_ms
        self.retry_config = retry_config or RetryConfig()
        self.on_breaker_open = on_breaker_open
        self._clock = clock
        self._sleep = sleep
        self._breakers: dict[str, CircuitBreaker] = {}
        self._registry_lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Any, **kwargs: Any) -> "ResilienceGuard":
        return cls(
            failure_threshold=settings.breaker_failure_threshold,
            reset_timeout_ms=settings.breaker_reset_timeout_ms,
            retry_config=RetryConfig.from_settings(settings),
            **kwargs,
        )

    def _handle_open(self, breaker: CircuitBreaker) -> None:
        if self.on_breaker_open is not None:
            self.on_breaker_open(breaker)

    def breaker(self, name: str) -> CircuitBreaker:
        """
        Return THE breaker for ``name`` (created once, then shared for the
        life of the guard).

        Raises:
            ValueError: ``MAX_BREAKERS`` names are already registered.
        """
        with self._registry_lock:
            breaker = self._breakers.get(name)
            if breaker is None:
                if len(self._breakers) >= MAX_BREAKERS:
                    raise ValueError(
                        f"Breaker registry full ({MAX_BREAKERS}); refusing new breaker '{name}'"
                    )
                breaker = CircuitBreaker(
                    name,
                    failure_threshold=self.failure_threshold,
                    reset_timeout_ms=self.reset_timeout_ms,
                    clock=self._clock,
                    on_open=self._handle_open,
                )
                self._breakers[name] = breaker
            return breaker

    async def call(
        self,
        name: str,
        fn: Callable[[], Awaitable[Any]],
        retry_config: RetryConfig | None = None,
    ) -> Any:
        """
        Await ``fn()`` with breaker protection and retry.

        Raises:
            CircuitOpenError:    the breaker for ``name`` is open.
            RetryExhaustedError: every attempt failed with a retryable kind.
            The original exception for non-retryable failures.
        """
        breaker = self.breaker(name)
        return await retry_async(
            lambda: breaker.call(fn),
            retry_config or self.retry_config,
            name=name,
            sleep=self._sleep,
        )

    def states(self) -> dict[str, str]:
        """Current state of every known breaker, by name."""
        return {name: breaker.state.value for name, breaker in self._breakers.items()}
