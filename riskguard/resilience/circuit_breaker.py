"""
riskguard/resilience/circuit_breaker.py
========================================
Circuit breaker for unreliable collaborators — RiskGuard

States:
    CLOSED     normal operation; consecutive failures are counted
    OPEN       collaborator is failing; calls fail fast with CircuitOpenError
    HALF_OPEN  reset timeout elapsed; exactly ONE trial call is admitted

Transitions:
    CLOSED    -> OPEN       failure_count reaches failure_threshold
    OPEN      -> HALF_OPEN  reset_timeout_ms elapsed since last failure
    HALF_OPEN -> CLOSED     trial succeeds (failure_count reset to 0)
    HALF_OPEN -> OPEN       trial fails (fresh last_failure_time)

The half-open trial is serialised by an ``asyncio.Lock``; callers that
arrive while the trial runs fail fast instead of queueing behind it.
"""

import asyncio
import logging
import time
from enum import Enum
from typing import Any, Awaitable, Callable

from riskguard.errors import CircuitOpenError

logger = logging.getLogger("riskguard.resilience.circuit_breaker")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    One breaker per collaborator name, shared by every caller.

    Args:
        name:              Collaborator name (e.g. ``openai``).
        failure_threshold: Consecutive failures that open the circuit.
        reset_timeout_ms:  Time OPEN before a half-open trial is allowed.
        clock:             Monotonic seconds (injected by tests).
        on_open:           Called as ``on_open(breaker)`` on every
                           transition into OPEN.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        reset_timeout_ms: int = 30_000,
        clock: Callable[[], float] = time.monotonic,
        on_open: Callable[["CircuitBreaker"], None] | None = None,
    ) -> None:
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout_ms = reset_timeout_ms
        self._clock = clock
        self._on_open_hook = on_open

        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.last_failure_time: float | None = None
        self._trial_lock = asyncio.Lock()

        logger.info("Circuit breaker '%s' initialized in CLOSED state", name)

    async def call(self, fn: Callable[[], Awaitable[Any]]) -> Any:
        """
        Await ``fn()`` under breaker protection.

        Raises:
            CircuitOpenError: circuit OPEN, or a half-open trial is running.
            Any exception raised by ``fn``.
        """
        if self.state == CircuitState.OPEN:
            if not self._should_attempt_reset():
                raise CircuitOpenError(self.name)
            self.state = CircuitState.HALF_OPEN
            logger.info("Circuit '%s' transitioned from OPEN to HALF_OPEN", self.name)

        if self.state == CircuitState.HALF_OPEN:
            if self._trial_lock.locked():
                raise CircuitOpenError(
                    self.name, f"Circuit '{self.name}' is HALF_OPEN, trial in progress",
                )
            async with self._trial_lock:
                return await self._attempt(fn)

        return await self._attempt(fn)

    async def _attempt(self, fn: Callable[[], Awaitable[Any]]) -> Any:
        try:
            result = await fn()
        except Exception as exc:
            self._on_failure()
            logger.warning(
                "Circuit '%s' recorded failure: %s: %s", self.name, type(exc).__name__, exc,
            )
            raise
        self._on_success()
        return result

    def _on_success(self) -> None:
        if self.state == CircuitState.HALF_OPEN:
            logger.info("Circuit '%s' transitioned from HALF_OPEN to CLOSED", self.name)
        self.state = CircuitState.CLOSED
        self.failure_count = 0

    def _on_failure(self) -> None:
        self.failure_count += 1
        self.last_failure_time = self._clock()

        if self.state == CircuitState.HALF_OPEN:
            self._open("half-open trial failed")
        elif self.state == CircuitState.CLOSED and self.failure_count >= self.failure_threshold:
            self._open(f"{self.failure_count} consecutive failures")

    def _open(self, reason: str) -> None:
        self.state = CircuitState.OPEN
        logger.warning("Circuit '%s' transitioned to OPEN: %s", self.name, reason)
        if self._on_open_hook is not None:
            try:
                self._on_open_hook(self)
            except Exception as exc:
                logger.error("Circuit '%s' on_open hook failed: %s", self.name, exc)

    def _should_attempt_reset(self) -> bool:
        if self.last_failure_time is None:
            return True
        elapsed_ms = (self._clock() - self.last_failure_time) * 1000
        return elapsed_ms >= self.reset_timeout_ms

    def reset(self) -> None:
        """Manually reset the circuit breaker to CLOSED."""
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.last_failure_time = None
        logger.info("Circuit '%s' manually reset to CLOSED state", self.name)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "last_failure_time": self.last_failure_time,
        }
