import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from federation_policy import CIRCUIT_WINDOW_SEC, FederationPolicyEngine, apply_content_filter, scan_for_pii


class _Store:
    def __init__(self) -> None:
        self.agreements = {
            "agr-1": {
                "id": "agr-1",
                "status": "active",
                "initiatorOrgId": "org-a",
                "responderOrgId": "org-b",
                "maxRequestsPerHour": 2,
                "maxRequestsPerDay": 100,
                "dataClassification": "internal",
            }
        }
        self.exposures = {"agr-1": [{"agentSlug": "support", "ownerOrgId": "org-b", "enabled": True}]}

    def get_agreement(self, agreement_id):
        return self.agreements.get(agreement_id)

    def list_exposures(self, agreement_id):
        return self.exposures.get(agreement_id, [])

    def update_agreement(self, agreement_id, patch):
        self.agreements[agreement_id].update(patch)
        return self.agreements[agreement_id]


class _Clock:
    def __init__(self) -> None:
        self.now = 1_760_000_000.0

    def __call__(self) -> float:
        return self.now


class TestFederationPolicy(unittest.TestCase):
    def setUp(self) -> None:
        self.store = _Store()
        self.clock = _Clock()
        self.events = []
        self.engine = FederationPolicyEngine(self.store, audit=lambda **kw: self.events.append(kw), clock=self.clock)

    def test_approved_request(self) -> None:
        self.assertEqual(self.engine.evaluate("agr-1", "org-a", "support", "hello"), {"allowed": True, "result": "approved"})

    def test_agreement_checks(self) -> None:
        self.assertEqual(self.engine.evaluate("missing", "org-a", "support")["reason"], "Agreement not found")
        self.assertEqual(self.engine.evaluate("agr-1", "org-z", "support")["reason"], "Not authorized for this agreement")
        self.store.agreements["agr-1"]["status"] = "pending"
        self.assertEqual(self.engine.evaluate("agr-1", "org-a", "support")["reason"], "Agreement is pending")

    def test_agent_must_be_exposed_by_other_org(self) -> None:
        result = self.engine.evaluate("agr-1", "org-a", "billing")
        self.assertEqual(result["reason"], "Agent billing is not exposed in this connection")
        # the owner cannot reach its own exposure through the connection
        self.assertFalse(self.engine.evaluate("agr-1", "org-b", "support")["allowed"])
        self.store.exposures["agr-1"][0]["enabled"] = False
        self.assertFalse(self.engine.evaluate("agr-1", "org-a", "support")["allowed"])

    def test_human_approval_blocks(self) -> None:
        self.store.agreements["agr-1"]["requireHumanApproval"] = True
        result = self.engine.evaluate("agr-1", "org-a", "support")
        self.assertEqual(result["result"], "blocked")
        self.assertIn("human approval", result["reason"])

    def test_hourly_rate_limit(self) -> None:
        self.assertTrue(self.engine.evaluate("agr-1", "org-a", "support")["allowed"])
        self.assertTrue(self.engine.evaluate("agr-1", "org-a", "support")["allowed"])
        blocked = self.engine.evaluate("agr-1", "org-a", "support")
        self.assertEqual(blocked["reason"], "Rate limit exceeded: 2 requests/hour")
        self.assertEqual(blocked["details"], {"limit": 2, "period": "hour", "current": 2})

    def test_exposure_rate_limit_overrides_agreement(self) -> None:
        self.store.exposures["agr-1"][0]["maxRequestsPerHour"] = 1
        self.engine.evaluate("agr-1", "org-a", "support")
        self.assertFalse(self.engine.evaluate("agr-1", "org-a", "support")["allowed"])

    def test_zero_exposure_limit_blocks_every_request(self) -> None:
        self.store.exposures["agr-1"][0]["maxRequestsPerHour"] = 0
        blocked = self.engine.evaluate("agr-1", "org-a", "support")
        self.assertEqual(blocked["reason"], "Rate limit exceeded: 0 requests/hour")
        self.assertEqual(blocked["details"]["current"], 0)

    def test_repeated_rate_limits_throttle(self) -> None:
        for _ in range(2):
            self.engine.evaluate("agr-1", "org-a", "support")
        for _ in range(3):
            self.engine.evaluate("agr-1", "org-a", "support")
        result = self.engine.evaluate("agr-1", "org-a", "support")
        self.assertTrue(result["reason"].startswith("Throttled"))
        self.assertEqual(self.engine.circuit_state("agr-1")["rateLimitExceededCount"], 3)

    def test_circuit_breaker_trips_and_suspends(self) -> None:
        for idx in range(10):
            self.engine.record_outcome("agr-1", success=idx % 3 == 0)
        result = self.engine.evaluate("agr-1", "org-a", "support")
        self.assertFalse(result["allowed"])
        self.assertTrue(result["reason"].startswith("Circuit breaker open: 60% error rate"))
        agreement = self.store.agreements["agr-1"]
        self.assertEqual(agreement["status"], "suspended")
        self.assertEqual(agreement["suspendedReason"], "Circuit breaker tripped: 60% error rate over 10 requests")
        self.assertEqual([e["org_id"] for e in self.events], ["org-a", "org-b"])
        self.assertEqual(self.events[0]["action"], "federation.circuit_breaker")

    def test_circuit_window_expires(self) -> None:
        for _ in range(10):
            self.engine.record_outcome("agr-1", success=False)
        self.clock.now += CIRCUIT_WINDOW_SEC + 1
        self.assertIsNone(self.engine.check_circuit_breaker("agr-1"))

    def test_below_minimum_requests_never_trips(self) -> None:
        for _ in range(9):
            self.engine.record_outcome("agr-1", success=False)
        self.assertIsNone(self.engine.check_circuit_breaker("agr-1"))

    def test_reset_clears_state(self) -> None:
        for _ in range(10):
            self.engine.record_outcome("agr-1", success=False)
        self.engine.reset()
        self.assertIsNone(self.engine.check_circuit_breaker("agr-1"))


class TestContentFilter(unittest.TestCase):
    def test_scan_for_pii(self) -> None:
        scan = scan_for_pii("Contact ada@example.com today")
        self.assertEqual(scan["detectedTypes"], ["email"])
        self.assertEqual(scan["redactedContent"], "Contact [EMAIL_REDACTED] today")
        self.assertFalse(scan_for_pii("nothing here")["hasPii"])

    def test_classification_levels(self) -> None:
        content = "Reach me at ada@example.com"
        self.assertIsNone(apply_content_filter(content, "internal"))
        self.assertIsNone(apply_content_filter("no pii", "restricted"))
        restricted = apply_content_filter(content, "restricted")
        self.assertEqual(restricted["result"], "blocked")
        confidential = apply_content_filter(content, "confidential")
        self.assertEqual(confidential["result"], "filtered")
        self.assertEqual(confidential["filteredContent"], "Reach me at [EMAIL_REDACTED]")

    def test_engine_applies_filter(self) -> None:
        store = _Store()
        store.agreements["agr-1"]["dataClassification"] = "confidential"
        engine = FederationPolicyEngine(store, clock=_Clock())
        result = engine.evaluate("agr-1", "org-a", "support", "mail ada@example.com")
        self.assertEqual(result["result"], "filtered")
        self.assertEqual(result["filteredContent"], "mail [EMAIL_REDACTED]")


if __name__ == "__main__":
    unittest.main()
