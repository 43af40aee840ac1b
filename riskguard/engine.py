"""
riskguard/engine.py
====================
Fraud Decision Engine — RiskGuard

Responsibility:
    - Accept one validated FraudAnalysisRequest and produce one
      FraudAnalysisResponse in the requested detection mode
    - Run comprehensive sub-analyses concurrently and isolate failures
      (a failed sub-analysis scores 0 and has a null breakdown entry)
    - Write exactly one audit entry per request, success or failure,
      unless the caller disables it (batch items)
    - When learning is enabled, write extracted signals and the verdict
      back to the risk signal store in a background task

Detection modes:
    comprehensive    context, behavioral, keyword and transaction analyses
                     combined by weighted composite (see scoring.py)
    quick_scan       keyword score and recent call frequency only
    context_only     context legitimacy only
    behavioral_only  behavioral patterns (24h window) only

This module does NOT:
    - Validate raw input (see validation.py)
    - Scan requests for intrusion signatures (see api/app.py)
    - Map errors to HTTP responses
"""

import asyncio
import logging
import time
from datetime import datetime
from typing import Any

from riskguard.analysis.behavioral import BehavioralPatternAnalyzer
from riskguard.analysis.context import ContextAnalyzer
from riskguard.analysis.keywords import detect_keywords
from riskguard.analysis.scoring import (
    DEFAULT_WEIGHTS,
    QUICK_SCAN_WEIGHTS,
    classify_behavioral_only,
    classify_comprehensive,
    classify_context_only,
    classify_quick_scan,
    composite_score,
    merge_indicators,
    validate_weights,
)
from riskguard.analysis.signals import (
    CALL_FREQUENCY_MAX_CALLS,
    count_recent_calls,
    extract_signals,
)
from riskguard.analysis.transaction import verify_transaction
from riskguard.audit import AuditTrail
from riskguard.errors import classify_error
from riskguard.models import (
    AuditLevel,
    AuditLogEntry,
    AuditResult,
    DetectionMode,
    FraudAnalysisRequest,
    FraudAnalysisResponse,
    FraudIndicator,
    PatternAnalysisResult,
    RecommendedAction,
    RequestContext,
    SignalEvent,
    Severity,
    severity_from_score,
)
from riskguard.store import RiskSignalStore

logger = logging.getLogger("riskguard.engine")

BEHAVIORAL_WINDOW = "24h"
STORE_BREAKER = "signal_store"

# quick_scan call-frequency contribution: 5 points per call over the limit, capped
QUICK_FREQUENCY_STEP: float = 5.0
QUICK_FREQUENCY_CAP: float = 30.0


def _empty_breakdown() -> dict[str, Any]:
    return {
        "context_analysis": None,
        "behavioral_patterns": None,
        "keyword_matches": None,
        "transaction_verification": None,
    }


def _without_indicators(result: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in result.items() if k != "indicators"}


def _behavioral_indicators(result: PatternAnalysisResult) -> list[FraudIndicator]:
    return [
        FraudIndicator(
            type="behavioral",
            severity=severity_from_score(p.risk_score),
            description=(
                f"{p.violation_count} {p.pattern_type.value.replace('_', ' ')} "
                f"violation(s) in the last {result.time_window}"
            ),
            confidence=0.75,
            code=p.pattern_type.value,
        )
        for p in result.patterns
    ]


class FraudDecisionEngine:
    """
    Args:
        analyzer: BehavioralPatternAnalyzer.
        context:  ContextAnalyzer.
        store:    RiskSignalStore used for learning write-back.
        audit:    AuditTrail.
        guard:    ResilienceGuard for store writes (optional).
        weights:  Comprehensive sub-score weights (default DEFAULT_WEIGHTS);
                  validated here, so a bad table fails at startup.
    """

    def __init__(
        self,
        analyzer: BehavioralPatternAnalyzer,
        context: ContextAnalyzer,
        store: RiskSignalStore,
        audit: AuditTrail,
        guard: Any = None,
        weights: dict[str, float] | None = None,
    ) -> None:
        self._weights = validate_weights(weights or DEFAULT_WEIGHTS, DEFAULT_WEIGHTS)
        self._analyzer = analyzer
        self._context = context
        self._store = store
        self._audit = audit
        self._guard = guard
        self._background: set[asyncio.Task] = set()
        self._handlers = {
            DetectionMode.COMPREHENSIVE: self._comprehensive,
            DetectionMode.QUICK_SCAN: self._quick_scan,
            DetectionMode.CONTEXT_ONLY: self._context_only,
            DetectionMode.BEHAVIORAL_ONLY: self._behavioral_only,
        }

    # -----------------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------------

    async def analyze(
        self,
        request: FraudAnalysisRequest,
        context: RequestContext | None = None,
        audit: bool = True,
    ) -> FraudAnalysisResponse:
        """
        Analyze one request.

        Args:
            request: Validated request (request_id already assigned).
            context: Transport details for the audit entry.
            audit:   Write the per-request audit entry (False for batch items).

        Returns:
            FraudAnalysisResponse with processing_time_ms set.

        Raises:
            Whatever the selected mode cannot absorb (e.g. store failure in
            behavioral_only); the failure is audited first.
        """
        started = time.perf_counter()
        context = context or RequestContext(endpoint="engine")
        mode = DetectionMode(request.detection_mode)
        now = request.timestamp

        logger.info(
            "Analyzing %s for %s (mode=%s)", request.request_id, request.phone_hash, mode.value,
        )

        try:
            signals = extract_signals(request, now)
            response = await self._handlers[mode](request, signals, now)
        except Exception as exc:
            elapsed = round((time.perf_counter() - started) * 1000, 2)
            logger.error(
                "Analysis %s failed after %.2fms: %s", request.request_id, elapsed, exc,
                exc_info=classify_error(exc) not in ("network", "timeout", "server_error", "circuit_open"),
            )
            if audit:
                self._audit_failure(request, context, exc, elapsed)
            raise

        response.processing_time_ms = round((time.perf_counter() - started) * 1000, 2)

        logger.info(
            "Verdict %s: fraud=%s score=%.2f level=%s action=%s (%.2fms)",
            request.request_id, response.is_fraud, response.confidence_score,
            response.risk_level.value, response.recommended_action.value,
            response.processing_time_ms,
        )

        if audit:
            self._audit_success(request, context, response)
        if request.enable_learning:
            self._schedule_learning(request, signals, response)
        return response

    async def drain(self) -> None:
        """Wait for pending learning write-backs."""
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    # -----------------------------------------------------------------------
    # Modes
    # -----------------------------------------------------------------------

    def _response(
        self,
        request: FraudAnalysisRequest,
        is_fraud: bool,
        score: float,
        level,
        indicators: list[FraudIndicator],
        breakdown: dict[str, Any],
    ) -> FraudAnalysisResponse:
        return FraudAnalysisResponse(
            request_id=request.request_id,
            is_fraud=is_fraud,
            confidence_score=score,
            risk_level=level,
            fraud_indicators=indicators,
            analysis_breakdown=breakdown,
            recommended_action=RecommendedAction.BLOCK if is_fraud else RecommendedAction.ALLOW,
        )

    async def _keywords(self, request: FraudAnalysisRequest) -> dict[str, Any]:
        return detect_keywords(request.message_text)

    async def _transaction(self, request: FraudAnalysisRequest, now: datetime) -> dict[str, Any]:
        return verify_transaction(request.session_metadata, now)

    async def _patterns(self, request, signals, now) -> PatternAnalysisResult:
        return await self._analyzer.analyze_patterns(
            request.phone_hash,
            time_window=BEHAVIORAL_WINDOW,
            now=now,
            extra_events=signals,
        )

    async def _comprehensive(self, request, signals, now) -> FraudAnalysisResponse:
        context_res, behavioral_res, keyword_res, transaction_res = await asyncio.gather(
            self._context.analyze(request),
            self._patterns(request, signals, now),
            self._keywords(request),
            self._transaction(request, now),
            return_exceptions=True,
        )

        sub_scores: dict[str, float] = {}
        breakdown = _empty_breakdown()
        groups: list[list[FraudIndicator]] = []

        for name, result in (
            ("context", context_res), ("behavioral", behavioral_res),
            ("keyword", keyword_res), ("transaction", transaction_res),
        ):
            if isinstance(result, BaseException):
                logger.warning(
                    "Sub-analysis %s failed for %s (%s): %s",
                    name, request.request_id, classify_error(result), result,
                )
                sub_scores[name] = 0.0

        if not isinstance(context_res, BaseException):
            sub_scores["context"] = 100.0 - context_res["legitimacy_score"]
            breakdown["context_analysis"] = {
                k: v for k, v in context_res.items() if k not in ("indicators", "keyword_codes")
            }
            groups.append(context_res["indicators"])

        if not isinstance(behavioral_res, BaseException):
            sub_scores["behavioral"] = behavioral_res.overall_risk_score
            breakdown["behavioral_patterns"] = behavioral_res.to_dict()
            groups.append(_behavioral_indicators(behavioral_res))

        if not isinstance(keyword_res, BaseException):
            sub_scores["keyword"] = keyword_res["keyword_score"]
            breakdown["keyword_matches"] = _without_indicators(keyword_res)
            groups.append(keyword_res["indicators"])

        if not isinstance(transaction_res, BaseException):
            sub_scores["transaction"] = transaction_res["transaction_risk_score"]
            breakdown["transaction_verification"] = _without_indicators(transaction_res)
            groups.append(transaction_res["indicators"])

        score = composite_score(sub_scores, self._weights, DEFAULT_WEIGHTS)
        is_fraud, level = classify_comprehensive(score)
        return self._response(request, is_fraud, score, level, merge_indicators(*groups), breakdown)

    async def _quick_scan(self, request, signals, now) -> FraudAnalysisResponse:
        keyword_res = detect_keywords(request.message_text)
        recent = count_recent_calls(request, now)
        excess = recent - CALL_FREQUENCY_MAX_CALLS
        frequency_score = min(QUICK_FREQUENCY_CAP, excess * QUICK_FREQUENCY_STEP) if excess > 0 else 0.0

        indicators = list(keyword_res["indicators"])
        if frequency_score > 0:
            indicators.append(FraudIndicator(
                type="behavioral",
                severity=Severity.MEDIUM,
                description=f"{recent} calls in the last 30 minutes",
                confidence=0.7,
                code="call_frequency",
            ))

        score = composite_score(
            {"keyword": keyword_res["keyword_score"], "behavioral": frequency_score},
            QUICK_SCAN_WEIGHTS, QUICK_SCAN_WEIGHTS,
        )
        is_fraud, level = classify_quick_scan(score)

        breakdown = _empty_breakdown()
        breakdown["keyword_matches"] = _without_indicators(keyword_res)
        breakdown["behavioral_patterns"] = {
            "recent_calls": recent,
            "window_minutes": 30,
            "risk_score": frequency_score,
        }
        return self._response(request, is_fraud, score, level, merge_indicators(indicators), breakdown)

    async def _context_only(self, request, signals, now) -> FraudAnalysisResponse:
        result = await self._context.analyze(request)
        legitimacy = result["legitimacy_score"]
        is_fraud, level = classify_context_only(legitimacy)

        breakdown = _empty_breakdown()
        breakdown["context_analysis"] = {
            k: v for k, v in result.items() if k not in ("indicators", "keyword_codes")
        }
        return self._response(
            request, is_fraud, legitimacy, level, merge_indicators(result["indicators"]), breakdown,
        )

    async def _behavioral_only(self, request, signals, now) -> FraudAnalysisResponse:
        result = await self._patterns(request, signals, now)
        score = result.overall_risk_score
        is_fraud, level = classify_behavioral_only(score)

        breakdown = _empty_breakdown()
        breakdown["behavioral_patterns"] = result.to_dict()
        return self._response(
            request, is_fraud, score, level,
            merge_indicators(_behavioral_indicators(result)), breakdown,
        )

    # -----------------------------------------------------------------------
    # Audit + learning
    # -----------------------------------------------------------------------

    def _audit_success(self, request, context: RequestContext, response: FraudAnalysisResponse) -> None:
        blocked = response.recommended_action == RecommendedAction.BLOCK
        context.audited = True
        self._audit.log_event(AuditLogEntry(
            event_type="fraud_analysis_completed",
            action=f"analyze_{DetectionMode(request.detection_mode).value}",
            result=AuditResult.BLOCKED if blocked else AuditResult.SUCCESS,
            user_id=context.identity,
            user_type="admin" if context.privileged else "api_client",
            resource_type="fraud_analysis",
            resource_id=request.request_id,
            level=AuditLevel.WARNING if response.is_fraud else AuditLevel.INFO,
            context=context.audit_context(),
            metadata={
                "phone_hash": request.phone_hash,
                "store_id": request.store_id,
                "is_fraud": response.is_fraud,
                "confidence_score": response.confidence_score,
                "risk_level": response.risk_level.value,
                "indicator_count": len(response.fraud_indicators),
                "processing_time_ms": response.processing_time_ms,
            },
        ))

    def _audit_failure(self, request, context: RequestContext, exc: Exception, elapsed: float) -> None:
        context.audited = True
        self._audit.log_event(AuditLogEntry(
            event_type="fraud_analysis_error",
            action=f"analyze_{DetectionMode(request.detection_mode).value}",
            result=AuditResult.FAILURE,
            user_id=context.identity,
            user_type="admin" if context.privileged else "api_client",
            resource_type="fraud_analysis",
            resource_id=request.request_id,
            level=AuditLevel.ERROR,
            context=context.audit_context(),
            metadata={
                "phone_hash": request.phone_hash,
                "error": str(exc),
                "error_kind": classify_error(exc),
                "processing_time_ms": elapsed,
            },
        ))

    def _schedule_learning(
        self,
        request: FraudAnalysisRequest,
        signals: list[SignalEvent],
        response: FraudAnalysisResponse,
    ) -> None:
        task = asyncio.get_running_loop().create_task(self._learn(request, signals, response))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _store_call(self, fn):
        if self._guard is None:
            return await fn()
        return await self._guard.call(STORE_BREAKER, fn)

    async def _learn(self, request, signals, response) -> None:
        outcome = {
            "is_fraud": response.is_fraud,
            "confidence_score": response.confidence_score,
            "risk_level": response.risk_level.value,
            "detection_mode": DetectionMode(request.detection_mode).value,
        }
        try:
            if signals:
                await self._store_call(lambda: self._store.record_events(signals))
            await self._store_call(
                lambda: self._store.record_outcome(request.phone_hash, request.request_id, outcome),
            )
            logger.debug("Learned %d signals for %s", len(signals), request.request_id)
        except Exception as exc:
            logger.warning("Learning write-back failed for %s: %s", request.request_id, exc)
