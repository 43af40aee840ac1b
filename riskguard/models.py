"""
riskguard/models.py
====================
Typed data model — RiskGuard

Responsibility:
    - Enumerations for every closed value set (detection mode, risk level,
      severity, pattern type, audit result, ...)
    - Dataclasses for requests, verdicts, behavioral patterns, intrusion
      scan results and audit entries
    - ``to_dict()`` serialisers producing the JSON shapes the API returns

This module does NOT:
    - Validate raw input (see validation.py)
    - Perform any analysis
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def clamp_score(value: float) -> float:
    """Clamp a score to [0, 100] and round to 2 decimal places."""
    return round(min(max(float(value), 0.0), 100.0), 2)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class DetectionMode(str, Enum):
    """Analysis strategies, trading cost for thoroughness."""

    COMPREHENSIVE = "comprehensive"
    QUICK_SCAN = "quick_scan"
    CONTEXT_ONLY = "context_only"
    BEHAVIORAL_ONLY = "behavioral_only"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class PatternType(str, Enum):
    """Behavioral pattern families mined from signal events."""

    CALL_FREQUENCY = "call_frequency"
    TIME_PATTERN = "time_pattern"
    LOCATION_PATTERN = "location_pattern"
    SIMILARITY_PATTERN = "similarity_pattern"


class RecommendedAction(str, Enum):
    ALLOW = "allow"
    BLOCK = "block"


class ThreatLevel(str, Enum):
    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AuditResult(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    BLOCKED = "blocked"
    PARTIAL_FAILURE = "partial_failure"


class AuditLevel(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


_SEVERITY_RANK: dict[str, int] = {"low": 1, "medium": 2, "high": 3}
_THREAT_RANK: dict[str, int] = {
    "none": 0, "low": 1, "medium": 2, "high": 3, "critical": 4,
}


def severity_rank(severity: Severity) -> int:
    return _SEVERITY_RANK[Severity(severity).value]


def threat_rank(level: ThreatLevel) -> int:
    return _THREAT_RANK[ThreatLevel(level).value]


def severity_from_score(score: float) -> Severity:
    """Map a 0–100 score onto an indicator severity."""
    if score > 70:
        return Severity.HIGH
    if score > 40:
        return Severity.MEDIUM
    return Severity.LOW


# ---------------------------------------------------------------------------
# Request context
# ---------------------------------------------------------------------------


@dataclass
class RequestContext:
    """Per-call transport details threaded into audit entries."""

    correlation_id: str = field(default_factory=new_id)
    endpoint: str = ""
    method: str = ""
    ip_address: str = "unknown"
    user_agent: str = "unknown"
    identity: str = "anonymous"
    privileged: bool = False
    # set once an audit entry has been written for this call
    audited: bool = False

    def audit_context(self) -> dict[str, Any]:
        return {
            "correlation_id": self.correlation_id,
            "endpoint": self.endpoint,
            "method": self.method,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
        }


# ---------------------------------------------------------------------------
# Fraud analysis
# ---------------------------------------------------------------------------


@dataclass
class CallerLocation:
    latitude: float
    longitude: float
    accuracy: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "latitude": self.latitude,
            "longitude": self.longitude,
            "accuracy": self.accuracy,
        }


@dataclass
class FraudAnalysisRequest:
    """One validated feedback-call submission."""

    phone_hash: str
    message_text: str
    store_id: str
    call_duration: int | None = None
    caller_location: CallerLocation | None = None
    session_metadata: dict[str, Any] = field(default_factory=dict)
    previous_interactions: list[dict[str, Any]] = field(default_factory=list)
    detection_mode: DetectionMode = DetectionMode.COMPREHENSIVE
    enable_learning: bool = True
    request_id: str = field(default_factory=new_id)
    timestamp: datetime = field(default_factory=utcnow)


@dataclass
class FraudIndicator:
    """
    One risk signal contributing to a verdict.

    ``code`` names the underlying signal (e.g. ``rapid_succession``) and is
    the key used when indicators from different sub-analyses are merged.
    It is not part of the public response.
    """

    type: str
    severity: Severity
    description: str
    confidence: float
    code: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "severity": Severity(self.severity).value,
            "description": self.description,
            "confidence": self.confidence,
        }


@dataclass
class FraudAnalysisResponse:
    request_id: str
    is_fraud: bool
    confidence_score: float
    risk_level: RiskLevel
    fraud_indicators: list[FraudIndicator]
    analysis_breakdown: dict[str, Any]
    recommended_action: RecommendedAction
    processing_time_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "is_fraud": self.is_fraud,
            "confidence_score": self.confidence_score,
            "risk_level": RiskLevel(self.risk_level).value,
            "fraud_indicators": [i.to_dict() for i in self.fraud_indicators],
            "analysis_breakdown": self.analysis_breakdown,
            "recommended_action": RecommendedAction(self.recommended_action).value,
            "processing_time_ms": self.processing_time_ms,
        }


# ---------------------------------------------------------------------------
# Behavioral patterns
# ---------------------------------------------------------------------------


@dataclass
class SignalEvent:
    """A single stored behavioral signal (one violation)."""

    phone_hash: str
    pattern_type: PatternType
    occurred_at: datetime
    severity: float
    code: str = ""
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> tuple[str, str, str, datetime]:
        """Identity of the observation; the same call seen twice is one event."""
        return (self.phone_hash, PatternType(self.pattern_type).value, self.code, self.occurred_at)


@dataclass
class BehavioralPattern:
    phone_hash: str
    pattern_type: PatternType
    risk_score: float
    violation_count: int
    first_detected: datetime
    last_updated: datetime
    details: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "phone_hash": self.phone_hash,
            "pattern_type": PatternType(self.pattern_type).value,
            "risk_score": self.risk_score,
            "violation_count": self.violation_count,
            "first_detected": self.first_detected.isoformat(),
            "last_updated": self.last_updated.isoformat(),
        }
        if self.details is not None:
            body["details"] = self.details
        return body


@dataclass
class PatternAnalysisResult:
    phone_hash: str
    patterns: list[BehavioralPattern]
    overall_risk_score: float
    overall_risk_level: RiskLevel
    time_window: str
    window_start: datetime
    window_end: datetime
    analysis_timestamp: datetime = field(default_factory=utcnow)

    @property
    def found(self) -> bool:
        return bool(self.patterns)

    @property
    def total_violations(self) -> int:
        return sum(p.violation_count for p in self.patterns)

    def to_dict(self) -> dict[str, Any]:
        return {
            "phone_hash": self.phone_hash,
            "patterns": [p.to_dict() for p in self.patterns],
            "overall_risk_score": self.overall_risk_score,
            "overall_risk_level": RiskLevel(self.overall_risk_level).value,
            "time_window": self.time_window,
            "analysis_timestamp": self.analysis_timestamp.isoformat(),
        }


# ---------------------------------------------------------------------------
# Intrusion scanning
# ---------------------------------------------------------------------------


@dataclass
class IntrusionAnalysisResult:
    threat_detected: bool
    threat_level: ThreatLevel
    intrusion_type: str | None
    confidence: float
    recommended_action: RecommendedAction
    event_id: str | None = None
    matched_signatures: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "threat_detected": self.threat_detected,
            "threat_level": ThreatLevel(self.threat_level).value,
            "intrusion_type": self.intrusion_type,
            "confidence": self.confidence,
            "recommended_action": RecommendedAction(self.recommended_action).value,
            "event_id": self.event_id,
            "matched_signatures": list(self.matched_signatures),
        }


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AuditLogEntry:
    """Immutable once built; read status is tracked by the sink, not here."""

    event_type: str
    action: str
    result: AuditResult
    user_id: str = "system"
    user_type: str = "system"
    resource_type: str = ""
    resource_id: str = ""
    level: AuditLevel = AuditLevel.INFO
    context: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)
    entry_id: str = field(default_factory=new_id)

    @property
    def correlation_id(self) -> str | None:
        return self.context.get("correlation_id")

    def to_dict(self) -> dict[str, Any]:
        return {
            "entry_id": self.entry_id,
            "event_type": self.event_type,
            "user_id": self.user_id,
            "user_type": self.user_type,
            "action": self.action,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "result": AuditResult(self.result).value,
            "level": AuditLevel(self.level).value,
            "context": dict(self.context),
            "metadata": dict(self.metadata),
            "timestamp": self.timestamp.isoformat(),
        }
