"""
tests/test_batch.py
====================
Batch Coordinator Tests

Test categories:
    1. Order preserved by index despite out-of-order completion
    2. Concurrency ceiling respected
    3. Per-item failure isolation
    4. One batch-level audit entry, no per-item entries

All tests are offline; the engine is stubbed where timing matters.
"""

import asyncio
import os
import sys
import unittest

# Ensure project root is on sys.path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from riskguard.analysis.behavioral import BehavioralPatternAnalyzer
from riskguard.analysis.context import ContextAnalyzer
from riskguard.audit import AuditTrail
from riskguard.batch import BatchCoordinator
from riskguard.engine import FraudDecisionEngine
from riskguard.errors import ValidationError
from riskguard.models import (
    AuditResult,
    FraudAnalysisResponse,
    RecommendedAction,
    RiskLevel,
)
from riskguard.store import InMemoryRiskSignalStore
from riskguard.validation import parse_batch_requests

STORE_ID = "6f1c2b8e-3d4a-4e5f-9a7b-0c1d2e3f4a5b"


def _items(count: int) -> list[dict]:
    return [
        {
            "phone_hash": f"phone{i:04d}",
            "message_text": f"Feedback nummer {i}, allt gick bra i butiken.",
            "store_id": STORE_ID,
        }
        for i in range(count)
    ]


class _SlowEngine:
    """Finishes items in reverse order and records peak concurrency."""

    def __init__(self, fail_index=None):
        self.fail_index = fail_index
        self.in_flight = 0
        self.peak = 0
        self.audit_flags = []

    async def analyze(self, request, context=None, audit=True):
        self.audit_flags.append(audit)
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        index = int(request.request_id.rsplit("-", 1)[1])
        try:
            await asyncio.sleep(0.001 * (20 - index))
            if index == self.fail_index:
                raise ValidationError("Invalid phone hash")
            return FraudAnalysisResponse(
                request_id=request.request_id,
                is_fraud=False,
                confidence_score=float(index),
                risk_level=RiskLevel.LOW,
                fraud_indicators=[],
                analysis_breakdown={},
                recommended_action=RecommendedAction.ALLOW,
            )
        finally:
            self.in_flight -= 1


class TestBatchCoordinator(unittest.IsolatedAsyncioTestCase):

    async def test_order_and_concurrency(self):
        engine, audit = _SlowEngine(), AuditTrail()
        coordinator = BatchCoordinator(engine, audit, concurrency=5)
        requests = parse_batch_requests({"requests": _items(12)}, "batch-1")

        result = await coordinator.analyze_batch("batch-1", requests)

        self.assertEqual(result.total_requests, 12)
        self.assertEqual([r["request_index"] for r in result.results], list(range(12)))
        self.assertEqual(
            [r["result"]["confidence_score"] for r in result.results],
            [float(i) for i in range(12)],
        )
        self.assertEqual(engine.peak, 5)
        self.assertFalse(any(engine.audit_flags))

    async def test_failure_is_isolated(self):
        engine, audit = _SlowEngine(fail_index=3), AuditTrail()
        coordinator = BatchCoordinator(engine, audit)
        requests = parse_batch_requests({"requests": _items(6)}, "batch-2")

        result = await coordinator.analyze_batch("batch-2", requests)

        self.assertEqual(result.success_count, 5)
        self.assertEqual(result.failure_count, 1)
        failed = result.results[3]
        self.assertEqual(failed, {
            "request_index": 3,
            "request_id": "batch-2-3",
            "success": False,
            "error": "Invalid phone hash",
        })

        entries = audit.sink.entries()
        self.assertEqual(len(entries), 1)
        self.assertEqual(entries[0].event_type, "fraud_batch_analysis_completed")
        self.assertEqual(entries[0].result, AuditResult.PARTIAL_FAILURE)
        self.assertEqual(entries[0].metadata["failure_count"], 1)

    async def test_real_engine_batch(self):
        store, audit = InMemoryRiskSignalStore(), AuditTrail()
        engine = FraudDecisionEngine(
            BehavioralPatternAnalyzer(store), ContextAnalyzer(), store, audit,
        )
        coordinator = BatchCoordinator(engine, audit)
        items = _items(3)
        items[1]["message_text"] = "Det låg en bomb vid kassan"
        requests = parse_batch_requests({"requests": items}, "batch-3")

        result = await coordinator.analyze_batch("batch-3", requests)
        body = result.to_dict()

        self.assertEqual(body["batch_id"], "batch-3")
        self.assertEqual(body["success_count"], 3)
        self.assertTrue(body["results"][1]["result"]["is_fraud"])
        self.assertEqual(body["results"][1]["result"]["request_id"], "batch-3-1")

        entries = audit.sink.entries()
        self.assertEqual([e.event_type for e in entries], ["fraud_batch_analysis_completed"])
        self.assertEqual(entries[0].result, AuditResult.SUCCESS)
        self.assertEqual(entries[0].metadata["fraud_count"], 1)
        self.assertEqual(store.outcomes(), [])

    def test_concurrency_must_be_positive(self):
        with self.assertRaises(ValueError):
            BatchCoordinator(_SlowEngine(), AuditTrail(), concurrency=0)


if __name__ == "__main__":
    unittest.main()
