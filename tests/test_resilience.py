"""
tests/test_resilience.py
=========================
Resilience Tests — retry, circuit breaker, guard

Test categories:
    1. Error classification (our errors, timeouts, status codes)
    2. Retry: attempt counts, back-off schedule, non-retryable errors
    3. Circuit breaker state machine (open, fail fast, single half-open
       trial, recovery, on_open hook)
    4. ResilienceGuard composition and breaker registry

All tests are offline; clocks and sleeps are injected.
"""

import asyncio
import os
import sys
import unittest

# Ensure project root is on sys.path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from riskguard.errors import (
    CircuitOpenError,
    RetryExhaustedError,
    UpstreamUnavailable,
    ValidationError,
    classify_error,
)
from riskguard.resilience.circuit_breaker import CircuitBreaker, CircuitState
from riskguard.resilience.guard import MAX_BREAKERS, ResilienceGuard
from riskguard.resilience.retry import RetryConfig, retry_async


class _Clock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class _StatusError(Exception):
    def __init__(self, status):
        self.status = status
        super().__init__(f"HTTP {status}")


class _Recorder:
    """Async callable failing ``failures`` times, then returning ``value``."""

    def __init__(self, failures=0, exc=None, value="ok"):
        self.failures = failures
        self.exc = exc or ConnectionError("connection reset")
        self.value = value
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc
        return self.value


class _Sleeps:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


# ===================================================================
# Classification
# ===================================================================


class TestClassifyError(unittest.TestCase):

    def test_kinds(self):
        self.assertEqual(classify_error(ValidationError("x")), "validation")
        self.assertEqual(classify_error(CircuitOpenError("openai")), "circuit_open")
        self.assertEqual(classify_error(asyncio.TimeoutError()), "timeout")
        self.assertEqual(classify_error(ConnectionError()), "network")
        self.assertEqual(classify_error(_StatusError(429)), "rate_limited")
        self.assertEqual(classify_error(_StatusError(503)), "server_error")
        self.assertEqual(classify_error(_StatusError(404)), "client_error")
        self.assertEqual(classify_error(ValueError("x")), "unknown")


# ===================================================================
# Retry
# ===================================================================


class TestRetry(unittest.IsolatedAsyncioTestCase):

    async def test_success_first_try(self):
        fn = _Recorder()
        self.assertEqual(await retry_async(fn, RetryConfig(), sleep=_Sleeps()), "ok")
        self.assertEqual(fn.calls, 1)

    async def test_recovers_after_transient_failures(self):
        fn, sleeps = _Recorder(failures=2), _Sleeps()
        result = await retry_async(fn, RetryConfig(max_retries=3), sleep=sleeps)
        self.assertEqual(result, "ok")
        self.assertEqual(fn.calls, 3)
        self.assertEqual(sleeps.delays, [0.2, 0.4])

    async def test_exhaustion_calls_max_retries_plus_one(self):
        fn = _Recorder(failures=99)
        with self.assertRaises(RetryExhaustedError) as ctx:
            await retry_async(fn, RetryConfig(max_retries=3), sleep=_Sleeps())
        self.assertEqual(fn.calls, 4)
        self.assertEqual(ctx.exception.attempts, 4)
        self.assertIsInstance(ctx.exception.last_error, ConnectionError)
        self.assertIsInstance(ctx.exception, UpstreamUnavailable)

    async def test_non_retryable_called_once(self):
        fn = _Recorder(failures=99, exc=ValueError("bad reply"))
        with self.assertRaises(ValueError):
            await retry_async(fn, RetryConfig(max_retries=3), sleep=_Sleeps())
        self.assertEqual(fn.calls, 1)

    async def test_delay_is_capped(self):
        config = RetryConfig(base_delay_ms=1000, max_delay_ms=3000, backoff_multiplier=2.0)
        self.assertEqual(
            [config.delay_seconds(a) for a in (1, 2, 3, 4)],
            [1.0, 2.0, 3.0, 3.0],
        )


# ===================================================================
# Circuit breaker
# ===================================================================


class TestCircuitBreaker(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.clock = _Clock()
        self.opened = []
        self.breaker = CircuitBreaker(
            "store", failure_threshold=3, reset_timeout_ms=30_000,
            clock=self.clock, on_open=self.opened.append,
        )

    async def _fail(self, times):
        for _ in range(times):
            with self.assertRaises(ConnectionError):
                await self.breaker.call(_Recorder(failures=1))

    async def test_opens_at_threshold(self):
        await self._fail(2)
        self.assertEqual(self.breaker.state, CircuitState.CLOSED)
        await self._fail(1)
        self.assertEqual(self.breaker.state, CircuitState.OPEN)
        self.assertEqual(self.opened, [self.breaker])

    async def test_success_resets_failure_count(self):
        await self._fail(2)
        await self.breaker.call(_Recorder())
        self.assertEqual(self.breaker.failure_count, 0)

    async def test_open_fails_fast(self):
        await self._fail(3)
        fn = _Recorder()
        with self.assertRaises(CircuitOpenError):
            await self.breaker.call(fn)
        self.assertEqual(fn.calls, 0)

    async def test_half_open_trial_success_closes(self):
        await self._fail(3)
        self.clock.advance(30)
        self.assertEqual(await self.breaker.call(_Recorder()), "ok")
        self.assertEqual(self.breaker.state, CircuitState.CLOSED)

    async def test_half_open_trial_failure_reopens(self):
        await self._fail(3)
        self.clock.advance(30)
        await self._fail(1)
        self.assertEqual(self.breaker.state, CircuitState.OPEN)
        self.assertEqual(len(self.opened), 2)
        with self.assertRaises(CircuitOpenError):
            await self.breaker.call(_Recorder())

    async def test_half_open_admits_single_trial(self):
        await self._fail(3)
        self.clock.advance(30)
        release = asyncio.Event()
        calls = []

        async def slow():
            calls.append(1)
            await release.wait()
            return "ok"

        trial = asyncio.create_task(self.breaker.call(slow))
        await asyncio.sleep(0)
        with self.assertRaises(CircuitOpenError):
            await self.breaker.call(slow)
        release.set()
        self.assertEqual(await trial, "ok")
        self.assertEqual(len(calls), 1)
        self.assertEqual(self.breaker.state, CircuitState.CLOSED)

    async def test_hook_failure_does_not_break_breaker(self):
        def bad_hook(_breaker):
            raise RuntimeError("audit down")

        breaker = CircuitBreaker("x", failure_threshold=1, clock=self.clock, on_open=bad_hook)
        with self.assertRaises(ConnectionError):
            await breaker.call(_Recorder(failures=1))
        self.assertEqual(breaker.state, CircuitState.OPEN)


# ===================================================================
# Guard
# ===================================================================


class TestResilienceGuard(unittest.IsolatedAsyncioTestCase):

    async def test_breaker_is_shared_per_name(self):
        guard = ResilienceGuard()
        self.assertIs(guard.breaker("openai"), guard.breaker("openai"))
        self.assertIsNot(guard.breaker("openai"), guard.breaker("signal_store"))

    async def test_registry_never_evicts(self):
        guard = ResilienceGuard()
        first = guard.breaker("openai")
        first.failure_count = 3
        for i in range(MAX_BREAKERS - 1):
            guard.breaker(f"collaborator-{i}")
        self.assertIs(guard.breaker("openai"), first)
        with self.assertRaises(ValueError):
            guard.breaker("one-too-many")
        self.assertIs(guard.breaker("openai"), first)
        self.assertEqual(first.failure_count, 3)

    async def test_open_circuit_stops_retry_loop(self):
        clock, sleeps = _Clock(), _Sleeps()
        guard = ResilienceGuard(
            failure_threshold=2,
            retry_config=RetryConfig(max_retries=5),
            clock=clock,
            sleep=sleeps,
        )
        fn = _Recorder(failures=99)
        with self.assertRaises(CircuitOpenError):
            await guard.call("signal_store", fn)
        self.assertEqual(fn.calls, 2)
        self.assertEqual(guard.states(), {"signal_store": "open"})

    async def test_recovers_within_retries(self):
        guard = ResilienceGuard(sleep=_Sleeps())
        fn = _Recorder(failures=1)
        self.assertEqual(await guard.call("openai", fn), "ok")
        self.assertEqual(guard.states(), {"openai": "closed"})

    async def test_on_breaker_open_hook(self):
        opened = []
        guard = ResilienceGuard(
            failure_threshold=1,
            retry_config=RetryConfig(max_retries=0),
            on_breaker_open=lambda b: opened.append(b.name),
            sleep=_Sleeps(),
        )
        with self.assertRaises(RetryExhaustedError):
            await guard.call("alert_webhook", _Recorder(failures=1))
        self.assertEqual(opened, ["alert_webhook"])


if __name__ == "__main__":
    unittest.main()
