"""
riskguard/analysis/signals.py
==============================
Behavioral Signal Extraction — RiskGuard

Responsibility:
    - Turn a request's previous_interactions plus the current call into a
      timeline of calls
    - Detect behavioral violations on that timeline and emit them as
      SignalEvent records (the unit the risk signal store keeps)

Detected signals:
    call_frequency      more than 5 calls inside any 30-minute window
    time_pattern        unusual hours (22:00–06:00), weekend clustering,
                        rapid succession (calls < 2 minutes apart)
    location_pattern    impossible travel (> 500 km/h between located calls)
    similarity_pattern  near-duplicate message text (ratio >= 0.85)

Malformed interaction entries are skipped with a debug log, never fatal.

This module does NOT:
    - Read or write the risk signal store
    - Score patterns (that is behavioral.py)
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from difflib import SequenceMatcher
from typing import Any

from riskguard.models import FraudAnalysisRequest, PatternType, SignalEvent

logger = logging.getLogger("riskguard.analysis.signals")


# ---------------------------------------------------------------------------
# Thresholds
# ---------------------------------------------------------------------------

CALL_FREQUENCY_WINDOW = timedelta(minutes=30)
CALL_FREQUENCY_MAX_CALLS = 5

UNUSUAL_HOUR_START = 22
UNUSUAL_HOUR_END = 6
UNUSUAL_HOURS_MAX_CALLS = 2

WEEKEND_MIN_CALLS = 3

RAPID_SUCCESSION_GAP = timedelta(minutes=2)
RAPID_SUCCESSION_MAX_PAIRS = 1

IMPOSSIBLE_TRAVEL_KMH = 500.0
EARTH_RADIUS_KM = 6371.0

SIMILARITY_THRESHOLD = 0.85


@dataclass
class CallRecord:
    timestamp: datetime
    message_text: str | None = None
    latitude: float | None = None
    longitude: float | None = None

    @property
    def located(self) -> bool:
        return self.latitude is not None and self.longitude is not None


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def parse_timestamp(value: Any) -> datetime | None:
    """Accept ISO-8601 strings, datetimes or epoch seconds; naive means UTC."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            parsed = datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _coords(location: Any) -> tuple[float | None, float | None]:
    if not isinstance(location, dict):
        return None, None
    lat, lon = location.get("latitude"), location.get("longitude")
    valid = all(
        isinstance(v, (int, float)) and not isinstance(v, bool) for v in (lat, lon)
    )
    if not valid or not (-90 <= lat <= 90 and -180 <= lon <= 180):
        return None, None
    return float(lat), float(lon)


def build_timeline(request: FraudAnalysisRequest, now: datetime) -> list[CallRecord]:
    """Previous interactions plus the current call, oldest first."""
    records: list[CallRecord] = []
    skipped = 0
    for interaction in request.previous_interactions:
        if not isinstance(interaction, dict):
            skipped += 1
            continue
        ts = parse_timestamp(interaction.get("timestamp"))
        if ts is None or ts > now:
            skipped += 1
            continue
        lat, lon = _coords(interaction.get("location"))
        text = interaction.get("message_text")
        records.append(CallRecord(
            timestamp=ts,
            message_text=text if isinstance(text, str) else None,
            latitude=lat,
            longitude=lon,
        ))

    if skipped:
        logger.debug("Skipped %d malformed interactions", skipped)

    current = request.caller_location
    records.append(CallRecord(
        timestamp=now,
        message_text=request.message_text,
        latitude=current.latitude if current else None,
        longitude=current.longitude if current else None,
    ))
    records.sort(key=lambda r: r.timestamp)
    return records


# ---------------------------------------------------------------------------
# Detectors: each returns zero or more SignalEvents
# ---------------------------------------------------------------------------


def _event(
    request: FraudAnalysisRequest,
    pattern_type: PatternType,
    occurred_at: datetime,
    severity: float,
    code: str,
    **details: Any,
) -> SignalEvent:
    return SignalEvent(
        phone_hash=request.phone_hash,
        pattern_type=pattern_type,
        occurred_at=occurred_at,
        severity=float(min(max(severity, 1.0), 10.0)),
        code=code,
        details=details,
    )


def _detect_call_frequency(request, timeline):
    # densest 30-minute window via two pointers
    best_count, best_end = 0, None
    start = 0
    for end, record in enumerate(timeline):
        while record.timestamp - timeline[start].timestamp >= CALL_FREQUENCY_WINDOW:
            start += 1
        count = end - start + 1
        if count > best_count:
            best_count, best_end = count, record.timestamp

    if best_count <= CALL_FREQUENCY_MAX_CALLS:
        return []
    excess = best_count - CALL_FREQUENCY_MAX_CALLS
    return [_event(
        request, PatternType.CALL_FREQUENCY, best_end,
        severity=5 + excess, code="high_call_frequency",
        calls_in_window=best_count, window_minutes=30,
    )]


def _is_unusual_hour(ts: datetime) -> bool:
    return ts.hour >= UNUSUAL_HOUR_START or ts.hour < UNUSUAL_HOUR_END


def _detect_time_patterns(request, timeline):
    events = []

    unusual = [r.timestamp for r in timeline if _is_unusual_hour(r.timestamp)]
    if len(unusual) > UNUSUAL_HOURS_MAX_CALLS:
        events.append(_event(
            request, PatternType.TIME_PATTERN, unusual[-1],
            severity=4 + (len(unusual) - UNUSUAL_HOURS_MAX_CALLS),
            code="unusual_hours", unusual_hour_calls=len(unusual),
        ))

    weekend = [r.timestamp for r in timeline if r.timestamp.weekday() >= 5]
    weekday_count = len(timeline) - len(weekend)
    if len(weekend) > WEEKEND_MIN_CALLS and len(weekend) > weekday_count:
        events.append(_event(
            request, PatternType.TIME_PATTERN, weekend[-1],
            severity=5, code="weekend_clustering",
            weekend_calls=len(weekend), weekday_calls=weekday_count,
        ))

    rapid_pairs = [
        b.timestamp for a, b in zip(timeline, timeline[1:])
        if b.timestamp - a.timestamp < RAPID_SUCCESSION_GAP
    ]
    if len(rapid_pairs) > RAPID_SUCCESSION_MAX_PAIRS:
        events.append(_event(
            request, PatternType.TIME_PATTERN, rapid_pairs[-1],
            severity=5 + len(rapid_pairs), code="rapid_succession",
            rapid_pairs=len(rapid_pairs),
        ))

    return events


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)
    a = (
        math.sin(d_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    )
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(min(a, 1.0)))


def _detect_impossible_travel(request, timeline):
    located = [r for r in timeline if r.located]
    events = []
    for prev, cur in zip(located, located[1:]):
        distance = haversine_km(prev.latitude, prev.longitude, cur.latitude, cur.longitude)
        hours = (cur.timestamp - prev.timestamp).total_seconds() / 3600
        if distance < 1.0:
            continue
        speed = distance / hours if hours > 0 else math.inf
        if speed > IMPOSSIBLE_TRAVEL_KMH:
            events.append(_event(
                request, PatternType.LOCATION_PATTERN, cur.timestamp,
                severity=8 if speed < 2 * IMPOSSIBLE_TRAVEL_KMH else 10,
                code="impossible_travel",
                distance_km=round(distance, 1),
                speed_kmh=None if math.isinf(speed) else round(speed, 1),
            ))
    return events


def _detect_similarity(request, timeline, now):
    current = request.message_text.strip().lower()
    best = 0.0
    matches = 0
    # the current call is always last
    for record in timeline[:-1]:
        if not record.message_text:
            continue
        ratio = SequenceMatcher(None, current, record.message_text.strip().lower()).ratio()
        if ratio >= SIMILARITY_THRESHOLD:
            matches += 1
            best = max(best, ratio)
    if not matches:
        return []
    return [_event(
        request, PatternType.SIMILARITY_PATTERN, now,
        severity=4 + 6 * best if matches == 1 else 10,
        code="similar_content",
        similar_messages=matches, max_similarity=round(best, 3),
    )]


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def extract_signals(request: FraudAnalysisRequest, now: datetime | None = None) -> list[SignalEvent]:
    """
    Derive behavioral SignalEvents from one request.

    Args:
        request: Validated analysis request.
        now:     Time of the current call (defaults to ``request.timestamp``).

    Returns:
        Zero or more events, in detector order.
    """
    now = now or request.timestamp
    timeline = build_timeline(request, now)

    events: list[SignalEvent] = []
    events.extend(_detect_call_frequency(request, timeline))
    events.extend(_detect_time_patterns(request, timeline))
    events.extend(_detect_impossible_travel(request, timeline))
    events.extend(_detect_similarity(request, timeline, now))

    if events:
        logger.info(
            "Extracted %d behavioral signals for %s: %s",
            len(events), request.phone_hash, [e.code for e in events],
        )
    return events


def count_recent_calls(request: FraudAnalysisRequest, now: datetime, window: timedelta = CALL_FREQUENCY_WINDOW) -> int:
    """Calls in ``[now - window, now]`` including the current one."""
    return sum(
        1 for r in build_timeline(request, now) if now - r.timestamp <= window
    )
