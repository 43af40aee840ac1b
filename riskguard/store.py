"""
riskguard/store.py
===================
Risk signal store boundary — RiskGuard

Responsibility:
    - Define the narrow interface the core uses to read and write
      behavioral signal events keyed by phone hash and time
    - Provide an in-memory implementation used by default and in tests

This module does NOT:
    - Design the persistent store (it is an external collaborator)
    - Compute any risk score
"""

import logging
import threading
from collections import defaultdict
from datetime import datetime
from typing import Any, Iterable

from riskguard.models import PatternType, SignalEvent, utcnow

logger = logging.getLogger("riskguard.store")


class RiskSignalStore:
    """Interface to the external event/pattern store."""

    async def record_events(self, events: Iterable[SignalEvent]) -> None:
        """Persist events; idempotent on ``SignalEvent.key``."""
        raise NotImplementedError

    async def query_events(
        self,
        phone_hash: str,
        start: datetime,
        end: datetime,
        pattern_types: Iterable[PatternType] | None = None,
    ) -> list[SignalEvent]:
        """Return events with ``start <= occurred_at < end``, oldest first."""
        raise NotImplementedError

    async def record_outcome(self, phone_hash: str, request_id: str, outcome: dict[str, Any]) -> None:
        raise NotImplementedError


class InMemoryRiskSignalStore(RiskSignalStore):
    """Process-local store; every call is atomic under one lock."""

    def __init__(self) -> None:
        self._events: dict[str, list[SignalEvent]] = defaultdict(list)
        self._keys: set[tuple] = set()
        self._outcomes: list[dict[str, Any]] = []
        self._lock = threading.Lock()

    async def record_events(self, events: Iterable[SignalEvent]) -> None:
        with self._lock:
            added = skipped = 0
            for event in events:
                if event.key in self._keys:
                    skipped += 1
                    continue
                self._keys.add(event.key)
                self._events[event.phone_hash].append(event)
                added += 1
        logger.debug("Recorded %d signal events (%d already known)", added, skipped)

    async def query_events(
        self,
        phone_hash: str,
        start: datetime,
        end: datetime,
        pattern_types: Iterable[PatternType] | None = None,
    ) -> list[SignalEvent]:
        wanted = {PatternType(p) for p in pattern_types} if pattern_types is not None else None
        with self._lock:
            events = list(self._events.get(phone_hash, ()))
        selected = [
            e for e in events
            if start <= e.occurred_at < end
            and (wanted is None or PatternType(e.pattern_type) in wanted)
        ]
        selected.sort(key=lambda e: e.occurred_at)
        return selected

    async def record_outcome(self, phone_hash: str, request_id: str, outcome: dict[str, Any]) -> None:
        with self._lock:
            self._outcomes.append({
                "phone_hash": phone_hash,
                "request_id": request_id,
                "recorded_at": utcnow(),
                **outcome,
            })

    def outcomes(self, phone_hash: str | None = None) -> list[dict[str, Any]]:
        with self._lock:
            return [
                o for o in self._outcomes
                if phone_hash is None or o["phone_hash"] == phone_hash
            ]
