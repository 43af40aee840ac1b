"""
riskguard/analysis/scanner.py
==============================
Intrusion Signature Scanner — RiskGuard

Responsibility:
    - Inspect one raw API request (method, URL, headers, body, query,
      client IP, user agent) for attack signatures
    - Classify the threat level and recommend allow | block
    - Run in bounded time: every scanned field is truncated to 64 KiB

Signatures are evaluated IN ORDER and the first match wins:
    1. path traversal          -> high
    2. script injection        -> high
    3. SQL injection markers   -> critical (the quote-comment marker
                                  only in the URL and query string)
    4. unsafe protocol handler -> medium

When no signature matches, anomaly checks run (oversized payload,
header shape, known scanner user agents). A request is blocked when its
threat level is high or critical.

This module does NOT:
    - Write audit entries (the HTTP layer does, using ``event_id``)
    - Keep any state between calls
    - Raise: internal failures are logged and yield a no-threat result
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Mapping
from urllib.parse import unquote_plus

from riskguard.models import (
    IntrusionAnalysisResult,
    RecommendedAction,
    ThreatLevel,
    new_id,
    threat_rank,
)

logger = logging.getLogger("riskguard.analysis.scanner")


# ---------------------------------------------------------------------------
# Limits
# ---------------------------------------------------------------------------

MAX_FIELD_BYTES: int = 64 * 1024
MAX_PAYLOAD_BYTES: int = 1024 * 1024
MAX_HEADER_COUNT: int = 100
MAX_HEADER_VALUE_BYTES: int = 8 * 1024

BLOCK_THRESHOLD: ThreatLevel = ThreatLevel.HIGH


# ---------------------------------------------------------------------------
# Signatures (order matters)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Signature:
    name: str
    intrusion_type: str
    threat_level: ThreatLevel
    confidence: float
    pattern: re.Pattern
    # applied to the body instead of ``pattern`` when set
    body_pattern: re.Pattern | None = None

    def matches(self, targets: list[str], body_text: str) -> bool:
        if any(self.pattern.search(t) for t in targets):
            return True
        return bool(body_text) and (self.body_pattern or self.pattern).search(body_text) is not None


SIGNATURES: tuple[Signature, ...] = (
    Signature(
        "path_traversal", "path_traversal", ThreatLevel.HIGH, 85.0,
        re.compile(r"\.\./|\.\.\\|%2e%2e|/etc/passwd|windows[/\\]system32", re.I),
    ),
    Signature(
        "script_injection", "xss", ThreatLevel.HIGH, 85.0,
        re.compile(
            r"<\s*script|<\s*iframe|\bon(load|error|click|focus|blur|submit|change|key\w+|mouse\w+)\s*="
            r"|\beval\s*\(",
            re.I,
        ),
    ),
    Signature(
        "sql_injection", "sql_injection", ThreatLevel.CRITICAL, 90.0,
        re.compile(
            r"'\s*or\s+'?\d+'?\s*=\s*'?\d+|\bunion\s+(all\s+)?select\b|;\s*drop\s+table\b"
            r"|'\s*--|\bexec\s+xp_",
            re.I,
        ),
        # a quote followed by "--" is ordinary punctuation in free-text fields
        body_pattern=re.compile(
            r"'\s*or\s+'?\d+'?\s*=\s*'?\d+|\bunion\s+(all\s+)?select\b|;\s*drop\s+table\b"
            r"|\bexec\s+xp_",
            re.I,
        ),
    ),
    Signature(
        "unsafe_protocol", "protocol_handler", ThreatLevel.MEDIUM, 70.0,
        re.compile(r"javascript\s*:|vbscript\s*:|data\s*:\s*text/html|file://", re.I),
    ),
)

SCANNER_USER_AGENTS = re.compile(
    r"sqlmap|nikto|nmap|burpsuite|w3af|havij|acunetix|masscan|dirbuster", re.I,
)

_NON_PRINTABLE = re.compile(r"[\x00-\x08\x0a-\x1f\x7f]")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _truncate(text: str) -> str:
    return text[:MAX_FIELD_BYTES]


def _body_text(body: Any) -> tuple[str, int]:
    """Return ``(scannable text, raw payload size in bytes)``."""
    if body is None:
        return "", 0
    if isinstance(body, bytes):
        return body[:MAX_FIELD_BYTES].decode("utf-8", errors="replace"), len(body)
    if isinstance(body, str):
        return _truncate(body), len(body.encode("utf-8", errors="replace"))
    try:
        text = json.dumps(body, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        text = str(body)
    return _truncate(text), len(text.encode("utf-8", errors="replace"))


def _scan_targets(url: str, query: Mapping[str, Any] | None) -> list[str]:
    targets = [_truncate(url), _truncate(unquote_plus(url))]
    for key, value in (query or {}).items():
        targets.append(_truncate(f"{key}={value}"))
        targets.append(_truncate(unquote_plus(f"{key}={value}")))
    return targets


def _result(
    level: ThreatLevel,
    intrusion_type: str | None,
    confidence: float,
    matched: list[str],
) -> IntrusionAnalysisResult:
    detected = level != ThreatLevel.NONE
    action = (
        RecommendedAction.BLOCK
        if threat_rank(level) >= threat_rank(BLOCK_THRESHOLD)
        else RecommendedAction.ALLOW
    )
    return IntrusionAnalysisResult(
        threat_detected=detected,
        threat_level=level,
        intrusion_type=intrusion_type,
        confidence=confidence,
        recommended_action=action,
        event_id=new_id() if detected else None,
        matched_signatures=matched,
    )


# ---------------------------------------------------------------------------
# Scanner
# ---------------------------------------------------------------------------


class IntrusionSignatureScanner:
    """Synchronous, side-effect-free request scanner."""

    def __init__(self, signatures: tuple[Signature, ...] = SIGNATURES) -> None:
        self.signatures = signatures

    def analyze_request(
        self,
        method: str,
        url: str,
        headers: Mapping[str, str] | None = None,
        body: Any = None,
        query: Mapping[str, Any] | None = None,
        ip: str | None = None,
        user_agent: str | None = None,
        correlation_id: str | None = None,
    ) -> IntrusionAnalysisResult:
        """
        Scan one request and return the threat assessment.

        Never raises. A scanner failure is logged and reported as no threat.
        """
        try:
            result = self._analyze(url or "", headers or {}, body, query, user_agent)
        except Exception as exc:
            logger.error(
                "Intrusion scan failed [%s] %s %s: %s",
                correlation_id, method, url, exc, exc_info=True,
            )
            return _result(ThreatLevel.NONE, None, 0.0, [])

        if result.threat_detected:
            logger.warning(
                "Threat detected [%s] %s %s from %s: %s (%s, action=%s)",
                correlation_id, method, url, ip or "unknown",
                result.intrusion_type, result.threat_level.value,
                result.recommended_action.value,
            )
        return result

    def _analyze(self, url, headers, body, query, user_agent) -> IntrusionAnalysisResult:
        body_text, payload_size = _body_text(body)
        targets = _scan_targets(url, query)

        for signature in self.signatures:
            if signature.matches(targets, body_text):
                return _result(
                    signature.threat_level, signature.intrusion_type,
                    signature.confidence, [signature.name],
                )

        # --- Anomaly checks (only when no signature matched) ---
        anomalies: list[tuple[ThreatLevel, str, float, str]] = []

        if payload_size > MAX_PAYLOAD_BYTES:
            anomalies.append((ThreatLevel.MEDIUM, "oversized_payload", 60.0, "oversized_payload"))

        if self._header_anomaly(headers):
            anomalies.append((ThreatLevel.LOW, "header_anomaly", 50.0, "header_anomaly"))

        agent = user_agent if user_agent is not None else headers.get("user-agent", "")
        if agent and SCANNER_USER_AGENTS.search(_truncate(agent)):
            anomalies.append((ThreatLevel.MEDIUM, "scanner_user_agent", 75.0, "scanner_user_agent"))

        if not anomalies:
            return _result(ThreatLevel.NONE, None, 0.0, [])

        worst = max(anomalies, key=lambda a: (threat_rank(a[0]), a[2]))
        return _result(worst[0], worst[1], worst[2], [a[3] for a in anomalies])

    @staticmethod
    def _header_anomaly(headers: Mapping[str, str]) -> bool:
        if len(headers) > MAX_HEADER_COUNT:
            return True
        for name, value in headers.items():
            value = str(value)
            if len(value.encode("utf-8", errors="replace")) > MAX_HEADER_VALUE_BYTES:
                return True
            if _NON_PRINTABLE.search(str(name)) or _NON_PRINTABLE.search(value):
                return True
        return False
