"""
riskguard/analysis/transaction.py
==================================
Transaction Plausibility Check — RiskGuard

Responsibility:
    - Inspect ``session_metadata.transaction_amount`` and
      ``session_metadata.transaction_time`` reported with a feedback call
    - Flag implausible amounts and transactions far from the call time
    - Produce a 0–100 transaction risk score

A submission without transaction data scores 0 (nothing to verify).

This module does NOT:
    - Contact any payment or POS system
    - Decide whether a request is fraud
"""

import logging
from datetime import datetime, timedelta
from typing import Any

from riskguard.analysis.signals import parse_timestamp
from riskguard.models import FraudIndicator, Severity

logger = logging.getLogger("riskguard.analysis.transaction")

MAX_PLAUSIBLE_AMOUNT: float = 100_000.0
TIME_TOLERANCE = timedelta(minutes=2)
TIME_FAR_OFF = timedelta(hours=24)

AMOUNT_RISK: float = 60.0
TIME_RISK: float = 40.0
TIME_FAR_OFF_RISK: float = 70.0
MALFORMED_RISK: float = 30.0


def verify_transaction(metadata: dict[str, Any] | None, call_time: datetime) -> dict[str, Any]:
    """
    Check reported transaction details against the call.

    Returns:
        {
            "transaction_risk_score": float (0–100),
            "checked": bool,
            "issues": list[str],
            "indicators": list[FraudIndicator],
        }
    """
    metadata = metadata or {}
    amount = metadata.get("transaction_amount")
    reported_time = metadata.get("transaction_time")

    if amount is None and reported_time is None:
        return {"transaction_risk_score": 0.0, "checked": False, "issues": [], "indicators": []}

    risk = 0.0
    issues: list[str] = []
    indicators: list[FraudIndicator] = []

    if amount is not None:
        if not isinstance(amount, (int, float)) or isinstance(amount, bool):
            risk += MALFORMED_RISK
            issues.append("malformed_amount")
        elif amount <= 0 or amount > MAX_PLAUSIBLE_AMOUNT:
            risk += AMOUNT_RISK
            issues.append("implausible_amount")
            indicators.append(FraudIndicator(
                type="transaction",
                severity=Severity.MEDIUM,
                description=f"Implausible transaction amount: {amount}",
                confidence=0.7,
                code="implausible_amount",
            ))

    if reported_time is not None:
        parsed = parse_timestamp(reported_time)
        if parsed is None:
            risk += MALFORMED_RISK
            issues.append("malformed_transaction_time")
        else:
            drift = abs(call_time - parsed)
            if drift > TIME_FAR_OFF:
                risk += TIME_FAR_OFF_RISK
                issues.append("transaction_time_far_off")
            elif drift > TIME_TOLERANCE:
                risk += TIME_RISK
                issues.append("transaction_time_mismatch")
            if drift > TIME_TOLERANCE:
                indicators.append(FraudIndicator(
                    type="transaction",
                    severity=Severity.HIGH if drift > TIME_FAR_OFF else Severity.MEDIUM,
                    description=(
                        f"Transaction time differs from call by {int(drift.total_seconds() // 60)} minutes"
                    ),
                    confidence=0.8,
                    code="transaction_time_mismatch",
                ))

    score = min(risk, 100.0)
    if issues:
        logger.info("Transaction issues %s -> score %.1f", issues, score)

    return {
        "transaction_risk_score": score,
        "checked": True,
        "issues": issues,
        "indicators": indicators,
    }
