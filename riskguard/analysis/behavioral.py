"""
riskguard/analysis/behavioral.py
=================================
Behavioral Pattern Analyzer — RiskGuard

Responsibility:
    - Resolve a named time window (30m | 24h | 7d | 30d) to [start, end)
    - Load the phone hash's signal events for that window from the
      RiskSignalStore, plus any request-local events not yet persisted
    - Aggregate events into one BehavioralPattern per pattern type
    - Compute per-pattern risk scores and an overall risk level

Scoring:
    - Every event contributes ``severity / 10 * 0.5 ** (age / half_life)``
      where ``half_life`` is half the window length
    - The weighted sum ``w`` maps to ``100 * (1 - exp(-w / 3))``,
      clamped to [0, 100] and rounded to 2 decimals
    - overall_risk_score = mean of per-pattern scores (0 when none)
    - overall_risk_level: critical >= 90, high >= 70, medium >= 40, else low

An empty result is NOT an error: ``PatternAnalysisResult.found`` is False.

This module does NOT:
    - Detect violations from raw interactions (see signals.py)
    - Decide whether a request is fraud (see engine.py)
"""

import logging
from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable

import numpy as np

from riskguard.errors import ValidationError
from riskguard.models import (
    BehavioralPattern,
    PatternAnalysisResult,
    PatternType,
    RiskLevel,
    SignalEvent,
    clamp_score,
    utcnow,
)
from riskguard.store import RiskSignalStore
from riskguard.validation import DEFAULT_TIME_WINDOW, validate_phone_hash

logger = logging.getLogger("riskguard.analysis.behavioral")


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

TIME_WINDOW_DURATIONS: dict[str, timedelta] = {
    "30m": timedelta(minutes=30),
    "24h": timedelta(hours=24),
    "7d":  timedelta(days=7),
    "30d": timedelta(days=30),
}

# Saturation constant for the weighted violation sum
SCORE_SATURATION: float = 3.0

RISK_LEVEL_CRITICAL: float = 90.0
RISK_LEVEL_HIGH: float = 70.0
RISK_LEVEL_MEDIUM: float = 40.0


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def resolve_time_window(token: str | None, now: datetime) -> tuple[str, datetime, datetime]:
    """
    Map a window token to ``(token, start, end)`` with ``end == now``.

    Unknown or missing tokens resolve to the 24h default.
    """
    if token not in TIME_WINDOW_DURATIONS:
        if token is not None:
            logger.debug("Unknown time window %r; using %s", token, DEFAULT_TIME_WINDOW)
        token = DEFAULT_TIME_WINDOW
    return token, now - TIME_WINDOW_DURATIONS[token], now


def _normalize_pattern_types(pattern_types: Iterable[Any] | None) -> list[PatternType]:
    if pattern_types is None:
        return list(PatternType)
    resolved: list[PatternType] = []
    invalid: list[str] = []
    for raw in pattern_types:
        try:
            pt = PatternType(raw)
        except ValueError:
            invalid.append(str(raw))
            continue
        if pt not in resolved:
            resolved.append(pt)
    if invalid:
        raise ValidationError(
            "Invalid pattern types",
            [{"field": "pattern_types", "message": f"Unknown pattern types {invalid}"}],
        )
    return resolved


def risk_level_for(score: float) -> RiskLevel:
    if score >= RISK_LEVEL_CRITICAL:
        return RiskLevel.CRITICAL
    if score >= RISK_LEVEL_HIGH:
        return RiskLevel.HIGH
    if score >= RISK_LEVEL_MEDIUM:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def weighted_violations(events: list[SignalEvent], now: datetime, window: timedelta) -> float:
    """Recency-weighted violation mass of ``events`` (numpy vectorised)."""
    if not events:
        return 0.0
    half_life = window.total_seconds() / 2
    severities = np.array([e.severity for e in events], dtype=float)
    ages = np.array(
        [max((now - e.occurred_at).total_seconds(), 0.0) for e in events], dtype=float,
    )
    weights = (np.clip(severities, 0.0, 10.0) / 10.0) * np.power(0.5, ages / half_life)
    return float(weights.sum())


def pattern_risk_score(weighted: float) -> float:
    return clamp_score(100.0 * (1.0 - np.exp(-weighted / SCORE_SATURATION)))


# ---------------------------------------------------------------------------
# Analyzer
# ---------------------------------------------------------------------------


class BehavioralPatternAnalyzer:
    """
    Stateless per call; the only shared state is the injected store.

    Args:
        store: RiskSignalStore to query events from.
        guard: Optional ResilienceGuard; when given, store queries go
               through its ``signal_store`` breaker and retry policy.
        clock: Returns "now" as an aware datetime.
    """

    STORE_BREAKER = "signal_store"

    def __init__(
        self,
        store: RiskSignalStore,
        guard: Any = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._guard = guard
        self._clock = clock

    async def _query(self, phone_hash, start, end, types):
        if self._guard is None:
            return await self._store.query_events(phone_hash, start, end, types)
        return await self._guard.call(
            self.STORE_BREAKER,
            lambda: self._store.query_events(phone_hash, start, end, types),
        )

    async def analyze_patterns(
        self,
        phone_hash: str,
        time_window: str | None = DEFAULT_TIME_WINDOW,
        pattern_types: Iterable[Any] | None = None,
        include_details: bool = False,
        now: datetime | None = None,
        extra_events: Iterable[SignalEvent] | None = None,
    ) -> PatternAnalysisResult:
        """
        Mine behavioral patterns for one phone hash.

        Args:
            phone_hash:      Caller key (validated here).
            time_window:     30m | 24h | 7d | 30d; anything else means 24h.
            pattern_types:   Subset of PatternType to evaluate (None = all).
            include_details: Attach per-pattern detail maps.
            now:             Window end; defaults to the injected clock.
            extra_events:    Request-local events merged with stored ones.

        Returns:
            PatternAnalysisResult (possibly with no patterns).

        Raises:
            ValidationError: Invalid phone hash or unknown pattern type.
        """
        validate_phone_hash(phone_hash)
        types = _normalize_pattern_types(pattern_types)
        now = now or self._clock()
        token, start, end = resolve_time_window(time_window, now)
        window = end - start

        stored = await self._query(phone_hash, start, end, types)
        # request-local events may sit exactly at the window end (the current call)
        local = [
            e for e in (extra_events or ())
            if e.phone_hash == phone_hash
            and start <= e.occurred_at <= end
            and PatternType(e.pattern_type) in types
        ]
        # a resubmitted history repeats events the store already holds
        unique = {e.key: e for e in local}
        unique.update((e.key, e) for e in stored)
        events = sorted(unique.values(), key=lambda e: e.occurred_at)

        patterns: list[BehavioralPattern] = []
        for pattern_type in types:
            group = [e for e in events if PatternType(e.pattern_type) == pattern_type]
            if not group:
                continue
            weighted = weighted_violations(group, now, window)
            details = None
            if include_details:
                details = {
                    "signals": dict(Counter(e.code or pattern_type.value for e in group)),
                    "max_severity": max(e.severity for e in group),
                    "weighted_violations": round(weighted, 4),
                }
            patterns.append(BehavioralPattern(
                phone_hash=phone_hash,
                pattern_type=pattern_type,
                risk_score=pattern_risk_score(weighted),
                violation_count=len(group),
                first_detected=group[0].occurred_at,
                last_updated=group[-1].occurred_at,
                details=details,
            ))

        overall = clamp_score(np.mean([p.risk_score for p in patterns])) if patterns else 0.0

        logger.info(
            "Behavioral analysis %s window=%s: %d patterns, overall=%.2f",
            phone_hash, token, len(patterns), overall,
        )

        return PatternAnalysisResult(
            phone_hash=phone_hash,
            patterns=patterns,
            overall_risk_score=overall,
            overall_risk_level=risk_level_for(overall),
            time_window=token,
            window_start=start,
            window_end=end,
            analysis_timestamp=now,
        )
