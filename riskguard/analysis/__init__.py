# riskguard/analysis/__init__.py
# ===============================
# Analysis components — RiskGuard
#
# Responsibility:
#   - Behavioral signal extraction and time-windowed pattern mining
#   - Intrusion signature scanning of raw requests
#   - Context legitimacy, red-flag keyword and transaction checks
#   - Deterministic verdict scoring and indicator merge policy
#
# Public API:
#   - BehavioralPatternAnalyzer.analyze_patterns()
#   - IntrusionSignatureScanner.analyze_request()
#   - ContextAnalyzer.analyze()
#   - extract_signals(), detect_keywords(), verify_transaction()

from riskguard.analysis.behavioral import (  # noqa: F401
    BehavioralPatternAnalyzer,
    resolve_time_window,
)
from riskguard.analysis.context import ContextAnalyzer  # noqa: F401
from riskguard.analysis.keywords import detect_keywords  # noqa: F401
from riskguard.analysis.scanner import IntrusionSignatureScanner  # noqa: F401
from riskguard.analysis.signals import extract_signals  # noqa: F401
from riskguard.analysis.transaction import verify_transaction  # noqa: F401
