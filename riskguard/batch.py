"""
riskguard/batch.py
===================
Batch Coordinator — RiskGuard

Responsibility:
    - Run 1–20 validated analysis requests concurrently, at most
      ``concurrency`` in flight (asyncio.Semaphore); the rest wait
    - Place each result at its original index
    - Isolate failures: one failing item becomes an error entry and never
      aborts the others
    - Write one batch-level audit entry (items are not audited one by one)

This module does NOT:
    - Validate raw batch bodies (see validation.parse_batch_requests)
    - Score anything itself (delegates to FraudDecisionEngine)
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any

from riskguard.audit import AuditTrail
from riskguard.engine import FraudDecisionEngine
from riskguard.errors import RiskGuardError, classify_error
from riskguard.models import (
    AuditLevel,
    AuditLogEntry,
    AuditResult,
    FraudAnalysisRequest,
    RequestContext,
)

logger = logging.getLogger("riskguard.batch")

DEFAULT_CONCURRENCY = 5


@dataclass
class BatchResult:
    batch_id: str
    results: list[dict[str, Any]] = field(default_factory=list)
    processing_time_ms: float = 0.0

    @property
    def total_requests(self) -> int:
        return len(self.results)

    @property
    def success_count(self) -> int:
        return sum(1 for r in self.results if r.get("success"))

    @property
    def failure_count(self) -> int:
        return self.total_requests - self.success_count

    def to_dict(self) -> dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "total_requests": self.total_requests,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "processing_time_ms": self.processing_time_ms,
            "results": self.results,
        }


def _error_message(exc: Exception) -> str:
    if isinstance(exc, RiskGuardError):
        return exc.message
    return "Analysis failed"


class BatchCoordinator:
    """
    Args:
        engine:      FraudDecisionEngine used for every item.
        audit:       AuditTrail for the batch-level entry.
        concurrency: Maximum items analysed at once.
    """

    def __init__(
        self,
        engine: FraudDecisionEngine,
        audit: AuditTrail,
        concurrency: int = DEFAULT_CONCURRENCY,
    ) -> None:
        if concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {concurrency}")
        self._engine = engine
        self._audit = audit
        self.concurrency = concurrency

    async def analyze_batch(
        self,
        batch_id: str,
        requests: list[FraudAnalysisRequest],
        context: RequestContext | None = None,
    ) -> BatchResult:
        started = time.perf_counter()
        context = context or RequestContext(endpoint="batch")
        semaphore = asyncio.Semaphore(self.concurrency)
        results: list[dict[str, Any] | None] = [None] * len(requests)

        logger.info(
            "Batch %s: %d requests (concurrency=%d)", batch_id, len(requests), self.concurrency,
        )

        async def _run(index: int, request: FraudAnalysisRequest) -> None:
            async with semaphore:
                try:
                    response = await self._engine.analyze(request, context, audit=False)
                    results[index] = {
                        "request_index": index,
                        "request_id": request.request_id,
                        "success": True,
                        "result": response.to_dict(),
                    }
                except Exception as exc:
                    logger.warning(
                        "Batch %s item %d failed (%s): %s",
                        batch_id, index, classify_error(exc), exc,
                    )
                    results[index] = {
                        "request_index": index,
                        "request_id": request.request_id,
                        "success": False,
                        "error": _error_message(exc),
                    }

        await asyncio.gather(*(_run(i, r) for i, r in enumerate(requests)))

        batch = BatchResult(
            batch_id=batch_id,
            results=results,
            processing_time_ms=round((time.perf_counter() - started) * 1000, 2),
        )

        logger.info(
            "Batch %s done: %d ok, %d failed (%.2fms)",
            batch_id, batch.success_count, batch.failure_count, batch.processing_time_ms,
        )

        self._audit.log_event(AuditLogEntry(
            event_type="fraud_batch_analysis_completed",
            action="analyze_batch",
            result=AuditResult.PARTIAL_FAILURE if batch.failure_count else AuditResult.SUCCESS,
            user_id=context.identity,
            user_type="admin" if context.privileged else "api_client",
            resource_type="fraud_batch",
            resource_id=batch_id,
            level=AuditLevel.WARNING if batch.failure_count else AuditLevel.INFO,
            context=context.audit_context(),
            metadata={
                "total_requests": batch.total_requests,
                "success_count": batch.success_count,
                "failure_count": batch.failure_count,
                "fraud_count": sum(
                    1 for r in batch.results if r["success"] and r["result"]["is_fraud"]
                ),
                "processing_time_ms": batch.processing_time_ms,
            },
        ))
        context.audited = True
        return batch
