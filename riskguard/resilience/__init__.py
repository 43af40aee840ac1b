# riskguard/resilience/__init__.py
# =================================
# Resilience primitives — RiskGuard
#
# Responsibility:
#   - Exponential-backoff retry over classified error kinds
#   - Per-collaborator circuit breakers (closed / open / half_open)
#   - ResilienceGuard composing both behind one call()
#
# Public API:
#   - ResilienceGuard.call(name, fn, retry_config=None)
#   - retry_async(fn, config)
#   - CircuitBreaker.call(fn)

from riskguard.resilience.circuit_breaker import (  # noqa: F401
    CircuitBreaker,
    CircuitState,
)
from riskguard.resilience.guard import ResilienceGuard  # noqa: F401
from riskguard.resilience.retry import RetryConfig, retry_async  # noqa: F401
