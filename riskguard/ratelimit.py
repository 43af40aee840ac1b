"""
riskguard/ratelimit.py
=======================
Per-caller rate limiting — RiskGuard

Fixed windows per (operation, caller identity). Counters live in one
BoundedCache per operation whose TTL equals the window, so idle callers
age out and the map cannot grow without bound. Privileged callers get a
multiplied limit.

Default limits (per 15 minutes):
    analyze   100
    batch      10
    patterns  100
    status    300
"""

import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable

from riskguard.cache import BoundedCache
from riskguard.errors import RateLimitError

logger = logging.getLogger("riskguard.ratelimit")

WINDOW_SECONDS = 15 * 60


@dataclass(frozen=True)
class RateLimit:
    max_requests: int
    window_seconds: int = WINDOW_SECONDS


DEFAULT_LIMITS: dict[str, RateLimit] = {
    "analyze":  RateLimit(100),
    "batch":    RateLimit(10),
    "patterns": RateLimit(100),
    "status":   RateLimit(300),
}


@dataclass
class _Window:
    started_at: float
    count: int = 0


class RateLimiter:
    """
    Args:
        limits:                Per-operation limits (defaults above).
        privileged_multiplier: Limit multiplier for privileged callers.
        max_tracked:           Cap on tracked identities per operation.
        clock:                 Monotonic seconds (injected by tests).
    """

    def __init__(
        self,
        limits: dict[str, RateLimit] | None = None,
        privileged_multiplier: int = 10,
        max_tracked: int = 10_000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.limits = dict(limits or DEFAULT_LIMITS)
        self.privileged_multiplier = privileged_multiplier
        self._clock = clock
        self._lock = threading.Lock()
        self._counters: dict[str, BoundedCache] = {
            op: BoundedCache(max_entries=max_tracked, ttl_seconds=limit.window_seconds, clock=clock)
            for op, limit in self.limits.items()
        }

    def check(self, operation: str, identity: str, privileged: bool = False) -> int:
        """
        Count one request; return how many remain in the current window.

        Raises:
            RateLimitError: with ``retry_after`` seconds until the window resets.
            KeyError:       unknown operation.
        """
        limit = self.limits[operation]
        allowed = limit.max_requests * (self.privileged_multiplier if privileged else 1)
        counters = self._counters[operation]

        with self._lock:
            now = self._clock()
            window = counters.get(identity)
            if window is None or now - window.started_at >= limit.window_seconds:
                window = _Window(started_at=now)
                counters.set(identity, window)

            if window.count >= allowed:
                retry_after = max(1, math.ceil(window.started_at + limit.window_seconds - now))
                logger.warning(
                    "Rate limit exceeded: %s by %s (%d/%d), retry after %ds",
                    operation, identity, window.count, allowed, retry_after,
                )
                raise RateLimitError(
                    f"Too many {operation} requests, please try again later",
                    retry_after=retry_after,
                )
            window.count += 1
            return allowed - window.count

    def sweep(self) -> int:
        """Drop expired windows; returns how many were removed."""
        with self._lock:
            return sum(cache.sweep() for cache in self._counters.values())
