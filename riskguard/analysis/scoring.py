"""
riskguard/analysis/scoring.py
==============================
Deterministic Verdict Scoring — RiskGuard

Responsibility:
    - Combine per-analysis sub-scores (0–100) into a composite score using
      configurable weights (must sum to 1.0)
    - Classify is_fraud and risk_level for each detection mode from fixed
      thresholds
    - Reconcile overlapping fraud indicators from different sub-analyses

Scoring philosophy:
    - Each sub-analysis is scored independently (0–100 sub-score)
    - A failed sub-analysis contributes 0
    - Indicator confidences are NEVER added into the score

Merge policy:
    - Indicators are keyed by ``code`` (the signal they describe)
    - For each code the highest-severity indicator survives
    - Ties are broken by higher confidence, then by first occurrence
    - Output keeps the first-seen order of codes

This module does NOT:
    - Run any analysis or call any collaborator
    - Build the response object (see engine.py)
"""

import logging
from typing import Iterable

from riskguard.models import FraudIndicator, RiskLevel, clamp_score, severity_rank

logger = logging.getLogger("riskguard.analysis.scoring")


# ---------------------------------------------------------------------------
# Configurable weights, must sum to 1.0
# ---------------------------------------------------------------------------

DEFAULT_WEIGHTS: dict[str, float] = {
    "context":     0.40,
    "behavioral":  0.30,
    "keyword":     0.20,
    "transaction": 0.10,
}

QUICK_SCAN_WEIGHTS: dict[str, float] = {
    "keyword":    0.60,
    "behavioral": 0.40,
}

# comprehensive
FRAUD_THRESHOLD: float = 70.0
RISK_THRESHOLD_HIGH: float = 55.0
RISK_THRESHOLD_MEDIUM: float = 30.0

# quick_scan
QUICK_FRAUD_THRESHOLD: float = 50.0
QUICK_RISK_THRESHOLD_HIGH: float = 50.0
QUICK_RISK_THRESHOLD_MEDIUM: float = 25.0

# context_only (applied to legitimacy, lower = riskier)
CONTEXT_FRAUD_BELOW: float = 30.0
CONTEXT_MEDIUM_BELOW: float = 60.0

# behavioral_only (strict inequalities)
BEHAVIORAL_FRAUD_ABOVE: float = 70.0
BEHAVIORAL_MEDIUM_ABOVE: float = 40.0


# ---------------------------------------------------------------------------
# Weights
# ---------------------------------------------------------------------------


def validate_weights(weights: dict[str, float], expected: dict[str, float]) -> dict[str, float]:
    """
    Validate that weights have the expected keys and sum to 1.0.

    Raises:
        ValueError: If keys are wrong or weights don't sum to ~1.0.
    """
    expected_keys = set(expected.keys())
    actual_keys = set(weights.keys())

    if actual_keys != expected_keys:
        missing = expected_keys - actual_keys
        extra = actual_keys - expected_keys
        raise ValueError(
            f"Invalid weight keys. Missing: {missing}, Extra: {extra}"
        )

    total = sum(weights.values())
    if abs(total - 1.0) > 0.001:
        raise ValueError(
            f"Weights must sum to 1.0, got {total:.4f}"
        )

    return weights


def composite_score(
    sub_scores: dict[str, float],
    weights: dict[str, float],
    expected: dict[str, float] | None = None,
) -> float:
    """
    Weighted sum of sub-scores, clamped to [0, 100]. Missing sub-scores count as 0.

    ``weights`` is checked against ``expected`` (its own keys when omitted)
    before use.
    """
    active = validate_weights(weights, expected or weights)
    raw = sum(float(sub_scores.get(dim) or 0.0) * weight for dim, weight in active.items())
    score = clamp_score(raw)
    logger.debug("Composite score from %s -> %.2f", sub_scores, score)
    return score


# ---------------------------------------------------------------------------
# Mode classification: each returns (is_fraud, risk_level)
# ---------------------------------------------------------------------------


def classify_comprehensive(score: float) -> tuple[bool, RiskLevel]:
    if score >= RISK_THRESHOLD_HIGH:
        level = RiskLevel.HIGH
    elif score >= RISK_THRESHOLD_MEDIUM:
        level = RiskLevel.MEDIUM
    else:
        level = RiskLevel.LOW
    return score >= FRAUD_THRESHOLD, level


def classify_quick_scan(score: float) -> tuple[bool, RiskLevel]:
    if score >= QUICK_RISK_THRESHOLD_HIGH:
        level = RiskLevel.HIGH
    elif score >= QUICK_RISK_THRESHOLD_MEDIUM:
        level = RiskLevel.MEDIUM
    else:
        level = RiskLevel.LOW
    return score >= QUICK_FRAUD_THRESHOLD, level


def classify_context_only(legitimacy: float) -> tuple[bool, RiskLevel]:
    if legitimacy < CONTEXT_FRAUD_BELOW:
        return True, RiskLevel.HIGH
    if legitimacy < CONTEXT_MEDIUM_BELOW:
        return False, RiskLevel.MEDIUM
    return False, RiskLevel.LOW


def classify_behavioral_only(score: float) -> tuple[bool, RiskLevel]:
    if score > BEHAVIORAL_FRAUD_ABOVE:
        return True, RiskLevel.HIGH
    if score > BEHAVIORAL_MEDIUM_ABOVE:
        return False, RiskLevel.MEDIUM
    return False, RiskLevel.LOW


# ---------------------------------------------------------------------------
# Indicator merge
# ---------------------------------------------------------------------------


def _merge_key(indicator: FraudIndicator) -> str:
    return indicator.code or f"{indicator.type}:{indicator.description}"


def merge_indicators(*groups: Iterable[FraudIndicator]) -> list[FraudIndicator]:
    """Keep the strongest indicator per code across all groups."""
    merged: dict[str, FraudIndicator] = {}
    for group in groups:
        for indicator in group:
            key = _merge_key(indicator)
            current = merged.get(key)
            if current is None:
                merged[key] = indicator
                continue
            candidate = (severity_rank(indicator.severity), indicator.confidence)
            incumbent = (severity_rank(current.severity), current.confidence)
            if candidate > incumbent:
                merged[key] = indicator
    return list(merged.values())
