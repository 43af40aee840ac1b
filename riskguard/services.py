"""
riskguard/services.py
======================
Service wiring — RiskGuard

Builds every long-lived component exactly once per process (or per test)
and hands them around explicitly. Nothing in the package reaches for a
module-level singleton; the API layer receives a ``Services`` instance.
"""

import logging
from dataclasses import dataclass

from riskguard.analysis.behavioral import BehavioralPatternAnalyzer
from riskguard.analysis.context import ContextAnalyzer
from riskguard.analysis.scanner import IntrusionSignatureScanner
from riskguard.audit import AuditSink, AuditTrail
from riskguard.batch import BatchCoordinator
from riskguard.config import Settings
from riskguard.engine import FraudDecisionEngine
from riskguard.models import AuditLevel, AuditResult
from riskguard.ratelimit import RateLimiter
from riskguard.resilience.circuit_breaker import CircuitBreaker
from riskguard.resilience.guard import ResilienceGuard
from riskguard.store import InMemoryRiskSignalStore, RiskSignalStore

logger = logging.getLogger("riskguard.services")


@dataclass
class Services:
    settings: Settings
    store: RiskSignalStore
    guard: ResilienceGuard
    audit: AuditTrail
    analyzer: BehavioralPatternAnalyzer
    context: ContextAnalyzer
    scanner: IntrusionSignatureScanner
    engine: FraudDecisionEngine
    batch: BatchCoordinator
    rate_limiter: RateLimiter


def build_services(
    settings: Settings | None = None,
    store: RiskSignalStore | None = None,
    audit_sink: AuditSink | None = None,
    openai_client=None,
) -> Services:
    """
    Wire all components.

    Args:
        settings:      Defaults to ``Settings.from_env()``.
        store:         Risk signal store (defaults to in-memory).
        audit_sink:    Audit sink (defaults to in-memory).
        openai_client: Pre-built AsyncOpenAI-compatible client (tests).
    """
    settings = settings or Settings.from_env()
    store = store or InMemoryRiskSignalStore()

    # The guard needs the audit trail for breaker-open events and the audit
    # trail needs the guard for its webhook, so the hook closes over a
    # holder filled in below.
    holder: dict[str, AuditTrail] = {}

    def _audit_breaker_open(breaker: CircuitBreaker) -> None:
        audit = holder.get("audit")
        if audit is None:
            return
        audit.log_system_event(
            "circuit_breaker_opened",
            metadata={
                "breaker": breaker.name,
                "failure_count": breaker.failure_count,
                "reset_timeout_ms": breaker.reset_timeout_ms,
            },
            level=AuditLevel.WARNING,
            result=AuditResult.FAILURE,
            resource_type="circuit_breaker",
            resource_id=breaker.name,
        )

    guard = ResilienceGuard.from_settings(settings, on_breaker_open=_audit_breaker_open)
    audit = AuditTrail(
        sink=audit_sink,
        queue_size=settings.audit_queue_size,
        alert_webhook_url=settings.alert_webhook_url,
        guard=guard,
    )
    holder["audit"] = audit

    analyzer = BehavioralPatternAnalyzer(store, guard=guard)
    context = ContextAnalyzer(
        guard=guard,
        api_key=settings.openai_api_key,
        model=settings.openai_model,
        client=openai_client,
    )
    engine = FraudDecisionEngine(analyzer, context, store, audit, guard=guard)

    logger.info(
        "Services built (llm=%s, batch_concurrency=%d, admin_tokens=%d)",
        context.llm_enabled, settings.batch_concurrency, len(settings.admin_tokens),
    )

    return Services(
        settings=settings,
        store=store,
        guard=guard,
        audit=audit,
        analyzer=analyzer,
        context=context,
        scanner=IntrusionSignatureScanner(),
        engine=engine,
        batch=BatchCoordinator(engine, audit, concurrency=settings.batch_concurrency),
        rate_limiter=RateLimiter(privileged_multiplier=settings.rate_limit_privileged_multiplier),
    )
