"""
tests/test_api.py
==================
HTTP API Tests — FastAPI TestClient

Test categories:
    1. POST /fraud/analyze: success, validation, malformed JSON, intrusion
       block, rate limit, API key identity, unexpected failure
    2. Correlation id propagation
    3. GET /fraud/analyze/status/{request_id}
    4. POST /fraud/analyze/batch
    5. GET /fraud/patterns/{phone_hash}
    6. One audit entry per call, whatever the outcome
    7. Unexpected failures: 500 with correlation id, audited
    8. GET /health and the application lifespan

All tests are offline — no LLM, store or webhook calls.
"""

import asyncio
import os
import sys
import unittest
from datetime import timedelta
from unittest.mock import AsyncMock

from fastapi.testclient import TestClient

# Ensure project root is on sys.path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from riskguard.api.app import create_app
from riskguard.config import Settings
from riskguard.errors import CircuitOpenError
from riskguard.models import AuditLevel, AuditResult, PatternType, SignalEvent, utcnow
from riskguard.ratelimit import DEFAULT_LIMITS, RateLimit, RateLimiter
from riskguard.services import build_services

STORE_ID = "6f1c2b8e-3d4a-4e5f-9a7b-0c1d2e3f4a5b"
ADMIN_TOKEN = "admin-secret"
API_KEY = "client-key-0001"


def _body(**overrides) -> dict:
    body = {
        "phone_hash": "abc12345",
        "message_text": "hello",
        "store_id": STORE_ID,
        "detection_mode": "quick_scan",
    }
    body.update(overrides)
    return body


class _ApiTestCase(unittest.TestCase):

    def setUp(self):
        self.services = build_services(Settings(admin_tokens=(ADMIN_TOKEN,), api_keys=(API_KEY,)))
        self.app = create_app(self.services)
        self.client = TestClient(self.app)

    def _audit_types(self) -> list[str]:
        return [e.event_type for e in self.services.audit.sink.entries()]


# ===================================================================
# POST /fraud/analyze
# ===================================================================


class TestAnalyzeEndpoint(_ApiTestCase):

    def test_quick_scan_success(self):
        response = self.client.post("/fraud/analyze", json=_body())
        self.assertEqual(response.status_code, 200)
        data = response.json()
        self.assertTrue(data["request_id"])
        self.assertGreaterEqual(data["processing_time_ms"], 0)
        self.assertFalse(data["is_fraud"])
        self.assertEqual(data["recommended_action"], "allow")
        self.assertIn("X-Correlation-ID", response.headers)
        self.assertIn("fraud_analysis_completed", self._audit_types())

    def test_comprehensive_default(self):
        body = _body(message_text="Bra service i butiken idag, personalen var trevlig.")
        del body["detection_mode"]
        data = self.client.post("/fraud/analyze", json=body).json()
        self.assertEqual(
            set(data["analysis_breakdown"]),
            {"context_analysis", "behavioral_patterns", "keyword_matches", "transaction_verification"},
        )
        for indicator in data["fraud_indicators"]:
            self.assertNotIn("code", indicator)

    def test_validation_error(self):
        response = self.client.post("/fraud/analyze", json=_body(phone_hash="x", store_id="nope"))
        self.assertEqual(response.status_code, 400)
        data = response.json()
        self.assertEqual(data["error"], "validation_error")
        self.assertEqual([d["field"] for d in data["details"]], ["phone_hash", "store_id"])
        self.assertEqual(data["correlation_id"], response.headers["X-Correlation-ID"])
        self.assertIn("validation_failed", self._audit_types())

    def test_malformed_json(self):
        response = self.client.post(
            "/fraud/analyze", content=b"{not json", headers={"Content-Type": "application/json"},
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"], "validation_error")

    def test_intrusion_blocked(self):
        response = self.client.post("/fraud/analyze", json=_body(phone_hash="' OR 1=1 --"))
        self.assertEqual(response.status_code, 403)
        data = response.json()
        self.assertEqual(data["error"], "request_blocked")
        self.assertEqual(data["threat_level"], "critical")
        entries = [e for e in self.services.audit.sink.entries() if e.event_type == "security_violation"]
        self.assertEqual(len(entries), 1)
        self.assertEqual(entries[0].level, AuditLevel.CRITICAL)
        self.assertEqual(entries[0].metadata["intrusion_type"], "sql_injection")

    def test_rate_limit(self):
        self.services.rate_limiter = RateLimiter(limits=dict(DEFAULT_LIMITS, analyze=RateLimit(1)))
        self.assertEqual(self.client.post("/fraud/analyze", json=_body()).status_code, 200)
        response = self.client.post("/fraud/analyze", json=_body())
        self.assertEqual(response.status_code, 429)
        self.assertEqual(response.json()["error"], "rate_limit_exceeded")
        self.assertGreater(response.json()["retry_after"], 0)
        self.assertIn("Retry-After", response.headers)
        self.assertIn("rate_limit_exceeded", self._audit_types())

    def test_privileged_caller_gets_higher_limit(self):
        self.services.rate_limiter = RateLimiter(
            limits=dict(DEFAULT_LIMITS, analyze=RateLimit(1)), privileged_multiplier=3,
        )
        headers = {"Authorization": f"Bearer {ADMIN_TOKEN}"}
        codes = [self.client.post("/fraud/analyze", json=_body(), headers=headers).status_code for _ in range(4)]
        self.assertEqual(codes, [200, 200, 200, 429])

    def test_unknown_api_key_shares_the_ip_limit(self):
        self.services.rate_limiter = RateLimiter(limits=dict(DEFAULT_LIMITS, analyze=RateLimit(1)))
        first = self.client.post("/fraud/analyze", json=_body(), headers={"X-Api-Key": "made-up-1"})
        second = self.client.post("/fraud/analyze", json=_body(), headers={"X-Api-Key": "made-up-2"})
        self.assertEqual((first.status_code, second.status_code), (200, 429))

    def test_issued_api_key_has_its_own_limit(self):
        self.services.rate_limiter = RateLimiter(limits=dict(DEFAULT_LIMITS, analyze=RateLimit(1)))
        headers = {"X-Api-Key": API_KEY}
        codes = [
            self.client.post("/fraud/analyze", json=_body()).status_code,
            self.client.post("/fraud/analyze", json=_body(), headers=headers).status_code,
            self.client.post("/fraud/analyze", json=_body(), headers=headers).status_code,
        ]
        self.assertEqual(codes, [200, 200, 429])
        user_ids = {e.user_id for e in self.services.audit.sink.entries()}
        self.assertIn("testclient", user_ids)
        keyed = [u for u in user_ids if u.startswith("key:")]
        self.assertEqual(len(keyed), 1)
        self.assertNotIn(API_KEY, keyed[0])

    def test_unexpected_failure(self):
        self.services.engine.analyze = AsyncMock(side_effect=RuntimeError("boom"))
        response = self.client.post("/fraud/analyze", json=_body())
        self.assertEqual(response.status_code, 500)
        data = response.json()
        self.assertEqual(data["error"], "analysis_failed")
        self.assertTrue(data["request_id"])
        self.assertNotIn("boom", data["message"])
        trail = self.services.audit.by_correlation_id(response.headers["X-Correlation-ID"])
        self.assertEqual([e.event_type for e in trail], ["request_failed"])


class TestCorrelation(_ApiTestCase):

    def test_request_id_header_is_used(self):
        response = self.client.post("/fraud/analyze", json=_body(), headers={"X-Request-ID": "corr-12345"})
        self.assertEqual(response.headers["X-Correlation-ID"], "corr-12345")
        trail = self.services.audit.by_correlation_id("corr-12345")
        self.assertEqual([e.event_type for e in trail], ["fraud_analysis_completed"])

    def test_correlation_header_wins(self):
        response = self.client.get(
            "/health", headers={"X-Correlation-ID": "corr-a", "X-Request-ID": "corr-b"},
        )
        self.assertEqual(response.headers["X-Correlation-ID"], "corr-a")


# ===================================================================
# Status / batch / patterns / health
# ===================================================================


class TestStatusEndpoint(_ApiTestCase):

    def test_completed(self):
        response = self.client.get("/fraud/analyze/status/req-00000001")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"request_id": "req-00000001", "status": "completed"})

    def test_short_id(self):
        response = self.client.get("/fraud/analyze/status/short")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"], "invalid_request_id")


class TestBatchEndpoint(_ApiTestCase):

    def test_batch_success(self):
        requests = [_body(phone_hash=f"phone{i:04d}") for i in range(3)]
        response = self.client.post("/fraud/analyze/batch", json={"requests": requests})
        self.assertEqual(response.status_code, 200)
        data = response.json()
        self.assertEqual(data["total_requests"], 3)
        self.assertEqual(data["success_count"], 3)
        self.assertEqual(data["failure_count"], 0)
        self.assertEqual([r["request_index"] for r in data["results"]], [0, 1, 2])
        self.assertTrue(data["results"][2]["request_id"].startswith(data["batch_id"]))
        self.assertIn("fraud_batch_analysis_completed", self._audit_types())
        self.assertNotIn("fraud_analysis_completed", self._audit_types())

    def test_oversized_batch(self):
        response = self.client.post("/fraud/analyze/batch", json={"requests": [_body()] * 21})
        self.assertEqual(response.status_code, 400)

    def test_invalid_item(self):
        response = self.client.post(
            "/fraud/analyze/batch", json={"requests": [_body(), _body(message_text="")]},
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["details"][0]["field"], "requests[1].message_text")


class TestPatternsEndpoint(_ApiTestCase):

    def _seed(self):
        asyncio.run(self.services.store.record_events([
            SignalEvent(
                phone_hash="abc12345",
                pattern_type=PatternType.TIME_PATTERN,
                occurred_at=utcnow() - timedelta(minutes=5),
                severity=8.0,
                code="rapid_succession",
            ),
        ]))

    def test_not_found(self):
        response = self.client.get("/fraud/patterns/abc12345")
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["error"], "patterns_not_found")

    def test_found_with_details(self):
        self._seed()
        response = self.client.get(
            "/fraud/patterns/abc12345",
            params={"time_window": "30m", "pattern_types": "time_pattern", "include_details": "true"},
        )
        self.assertEqual(response.status_code, 200)
        data = response.json()
        self.assertEqual(data["time_window"], "30m")
        self.assertEqual(data["patterns"][0]["pattern_type"], "time_pattern")
        self.assertEqual(data["patterns"][0]["details"]["signals"], {"rapid_succession": 1})
        for key in ("phone_hash", "overall_risk_level", "overall_risk_score", "analysis_timestamp"):
            self.assertIn(key, data)

    def test_filtered_out_is_not_found(self):
        self._seed()
        response = self.client.get("/fraud/patterns/abc12345", params={"pattern_types": "call_frequency"})
        self.assertEqual(response.status_code, 404)

    def test_bad_inputs(self):
        self.assertEqual(self.client.get("/fraud/patterns/bad").status_code, 400)
        self.assertEqual(
            self.client.get("/fraud/patterns/abc12345", params={"time_window": "1y"}).status_code, 400,
        )
        self.assertEqual(
            self.client.get("/fraud/patterns/abc12345", params={"pattern_types": "bogus"}).status_code, 400,
        )


# ===================================================================
# One audit entry per call
# ===================================================================


class TestAuditPerCall(_ApiTestCase):

    def _trail(self, response) -> list:
        return self.services.audit.by_correlation_id(response.headers["X-Correlation-ID"])

    def _trail_types(self, response) -> list[str]:
        return [e.event_type for e in self._trail(response)]

    def test_status_checked(self):
        response = self.client.get("/fraud/analyze/status/req-00000001")
        trail = self._trail(response)
        self.assertEqual([e.event_type for e in trail], ["analysis_status_checked"])
        self.assertEqual(trail[0].resource_id, "req-00000001")

    def test_status_rejected(self):
        response = self.client.get("/fraud/analyze/status/short")
        self.assertEqual(self._trail_types(response), ["validation_failed"])

    def test_status_rate_limited(self):
        self.services.rate_limiter = RateLimiter(limits=dict(DEFAULT_LIMITS, status=RateLimit(1)))
        self.client.get("/fraud/analyze/status/req-00000001")
        response = self.client.get("/fraud/analyze/status/req-00000001")
        self.assertEqual(response.status_code, 429)
        self.assertEqual(self._trail_types(response), ["rate_limit_exceeded"])

    def test_patterns_not_found(self):
        response = self.client.get("/fraud/patterns/abc12345")
        self.assertEqual(response.status_code, 404)
        trail = self._trail(response)
        self.assertEqual([e.event_type for e in trail], ["pattern_analysis_completed"])
        self.assertFalse(trail[0].metadata["found"])

    def test_patterns_bad_input(self):
        response = self.client.get("/fraud/patterns/abc12345", params={"time_window": "1y"})
        self.assertEqual(self._trail_types(response), ["validation_failed"])

    def test_analyze_and_batch(self):
        single = self.client.post("/fraud/analyze", json=_body())
        batch = self.client.post("/fraud/analyze/batch", json={"requests": [_body(), _body()]})
        self.assertEqual(self._trail_types(single), ["fraud_analysis_completed"])
        self.assertEqual(self._trail_types(batch), ["fraud_batch_analysis_completed"])

    def test_intrusion_block_is_audited_once(self):
        response = self.client.post("/fraud/analyze/batch", json={"requests": [_body(phone_hash="' OR 1=1 --")]})
        self.assertEqual(response.status_code, 403)
        self.assertEqual(self._trail_types(response), ["security_violation"])

    def test_health_is_not_audited(self):
        response = self.client.get("/health")
        self.assertEqual(self._trail_types(response), [])


class TestUnexpectedFailures(_ApiTestCase):

    def _assert_internal_error(self, response, event_type="request_failed"):
        self.assertEqual(response.status_code, 500)
        data = response.json()
        self.assertEqual(data["error"], "analysis_failed")
        self.assertEqual(data["correlation_id"], response.headers["X-Correlation-ID"])
        trail = self.services.audit.by_correlation_id(data["correlation_id"])
        self.assertEqual([e.event_type for e in trail], [event_type])
        self.assertEqual(trail[0].level, AuditLevel.ERROR)
        self.assertEqual(trail[0].result, AuditResult.FAILURE)

    def test_patterns_failure(self):
        self.services.analyzer.analyze_patterns = AsyncMock(side_effect=RuntimeError("store exploded"))
        response = self.client.get("/fraud/patterns/abc12345")
        self._assert_internal_error(response)
        self.assertNotIn("exploded", response.json()["message"])

    def test_batch_failure(self):
        self.services.batch.analyze_batch = AsyncMock(side_effect=KeyError("results"))
        response = self.client.post("/fraud/analyze/batch", json={"requests": [_body()]})
        self._assert_internal_error(response)

    def test_patterns_upstream_unavailable(self):
        self.services.analyzer.analyze_patterns = AsyncMock(side_effect=CircuitOpenError("signal_store"))
        response = self.client.get("/fraud/patterns/abc12345")
        self.assertEqual(response.status_code, 503)
        self.assertEqual(response.json()["error"], "upstream_unavailable")
        trail = self.services.audit.by_correlation_id(response.headers["X-Correlation-ID"])
        self.assertEqual([e.event_type for e in trail], ["upstream_unavailable"])


class TestHealthAndLifespan(_ApiTestCase):

    def test_healthy(self):
        data = self.client.get("/health").json()
        self.assertEqual(data["status"], "healthy")
        self.assertEqual(data["breakers"], {})
        self.assertFalse(data["llm_enabled"])

    def test_degraded_when_breaker_open(self):
        breaker = self.services.guard.breaker("openai")
        for _ in range(breaker.failure_threshold):
            breaker._on_failure()
        data = self.client.get("/health").json()
        self.assertEqual(data["status"], "degraded")
        self.assertEqual(data["breakers"], {"openai": "open"})
        self.assertIn("system_event", self._audit_types())

    def test_lifespan_runs_audit_worker(self):
        with TestClient(self.app) as client:
            self.assertTrue(client.get("/health").json()["audit_worker"])
            client.post("/fraud/analyze", json=_body())
        self.assertFalse(self.services.audit.running)
        actions = [e.action for e in self.services.audit.sink.entries() if e.event_type == "system_event"]
        self.assertEqual(actions, ["service_started", "service_stopped"])
        self.assertIn("fraud_analysis_completed", self._audit_types())


if __name__ == "__main__":
    unittest.main()
