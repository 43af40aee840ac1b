"""
tests/test_ratelimit.py
========================
Rate Limiter and Bounded Cache Tests

Test categories:
    1. BoundedCache: LRU eviction, TTL expiry, sweep
    2. RateLimiter: per-identity windows, retry_after, window reset,
       privileged multiplier, sweeping

All tests are offline; clocks are injected.
"""

import os
import sys
import unittest

# Ensure project root is on sys.path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from riskguard.cache import BoundedCache
from riskguard.errors import RateLimitError
from riskguard.ratelimit import DEFAULT_LIMITS, RateLimit, RateLimiter


class _Clock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class TestBoundedCache(unittest.TestCase):

    def test_lru_eviction(self):
        cache = BoundedCache(max_entries=2)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.get("a")
        cache.set("c", 3)
        self.assertIn("a", cache)
        self.assertNotIn("b", cache)
        self.assertEqual(len(cache), 2)

    def test_ttl_expiry_and_sweep(self):
        clock = _Clock()
        cache = BoundedCache(ttl_seconds=10, clock=clock)
        cache.set("a", 1)
        cache.set("b", 2)
        clock.now = 5
        self.assertEqual(cache.get("a"), 1)
        clock.now = 10
        self.assertIsNone(cache.get("a"))
        self.assertEqual(cache.sweep(), 1)
        self.assertEqual(len(cache), 0)

    def test_invalid_size(self):
        with self.assertRaises(ValueError):
            BoundedCache(max_entries=0)


class TestRateLimiter(unittest.TestCase):

    def setUp(self):
        self.clock = _Clock()
        self.limiter = RateLimiter(
            limits={"batch": RateLimit(3, window_seconds=60)},
            privileged_multiplier=2,
            clock=self.clock,
        )

    def test_remaining_counts_down(self):
        self.assertEqual([self.limiter.check("batch", "client-a") for _ in range(3)], [2, 1, 0])

    def test_exceeding_limit(self):
        for _ in range(3):
            self.limiter.check("batch", "client-a")
        self.clock.now = 20
        with self.assertRaises(RateLimitError) as ctx:
            self.limiter.check("batch", "client-a")
        self.assertEqual(ctx.exception.retry_after, 40)
        self.assertEqual(ctx.exception.status_code, 429)

    def test_identities_are_independent(self):
        for _ in range(3):
            self.limiter.check("batch", "client-a")
        self.assertEqual(self.limiter.check("batch", "client-b"), 2)

    def test_window_resets(self):
        for _ in range(3):
            self.limiter.check("batch", "client-a")
        self.clock.now = 60
        self.assertEqual(self.limiter.check("batch", "client-a"), 2)

    def test_privileged_multiplier(self):
        for _ in range(6):
            self.limiter.check("batch", "admin", privileged=True)
        with self.assertRaises(RateLimitError):
            self.limiter.check("batch", "admin", privileged=True)

    def test_sweep_drops_expired_windows(self):
        self.limiter.check("batch", "client-a")
        self.limiter.check("batch", "client-b")
        self.clock.now = 61
        self.assertEqual(self.limiter.sweep(), 2)

    def test_unknown_operation(self):
        with self.assertRaises(KeyError):
            self.limiter.check("export", "client-a")

    def test_default_limits(self):
        self.assertEqual(DEFAULT_LIMITS["analyze"].max_requests, 100)
        self.assertEqual(DEFAULT_LIMITS["batch"].max_requests, 10)
        self.assertEqual(DEFAULT_LIMITS["status"].max_requests, 300)
        self.assertEqual(DEFAULT_LIMITS["analyze"].window_seconds, 900)


if __name__ == "__main__":
    unittest.main()
