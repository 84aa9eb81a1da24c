import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from comm_policy import (
    DEFAULT_MAX_DEPTH,
    evaluate_communication,
    evaluate_origin,
    match_domain,
    normalize_sender,
    parse_allowlist,
    sender_allowed,
)


class TestCommunicationPolicy(unittest.TestCase):
    def test_no_policy_allows_peers(self) -> None:
        self.assertEqual(evaluate_communication(None, "planner", "writer"), {"allowed": True, "reason": None})

    def test_depth_checked_first(self) -> None:
        policy = {"deny": ["writer"]}
        decision = evaluate_communication(policy, "planner", "writer", depth=DEFAULT_MAX_DEPTH)
        self.assertFalse(decision["allowed"])
        self.assertIn("depth", decision["reason"])

    def test_peer_call_budget(self) -> None:
        decision = evaluate_communication({"maxPeerCalls": 2}, "planner", "writer", peer_calls=2)
        self.assertEqual(decision["reason"], "Peer call limit (2) reached")

    def test_zero_limits_are_enforced(self) -> None:
        self.assertEqual(evaluate_communication({"maxDepth": 0}, "planner", "writer")["reason"], "Maximum delegation depth (0) reached")
        self.assertEqual(evaluate_communication({"maxPeerCalls": 0}, "planner", "writer")["reason"], "Peer call limit (0) reached")
        self.assertTrue(evaluate_communication({"maxDepth": None}, "planner", "writer")["allowed"])

    def test_self_call_requires_flag(self) -> None:
        self.assertFalse(evaluate_communication({}, "planner", "planner")["allowed"])
        self.assertTrue(evaluate_communication({"allowSelf": True}, "planner", "planner")["allowed"])

    def test_deny_wins_over_allow(self) -> None:
        policy = {"allow": ["*"], "deny": ["billing-*"]}
        decision = evaluate_communication(policy, "planner", "billing-refunds")
        self.assertFalse(decision["allowed"])
        self.assertEqual(decision["reason"], "Agent billing-refunds matches deny rule 'billing-*'")

    def test_allow_list_restricts_targets(self) -> None:
        policy = {"allow": ["research-*", "writer"]}
        self.assertTrue(evaluate_communication(policy, "planner", "research-web")["allowed"])
        self.assertFalse(evaluate_communication(policy, "planner", "editor")["allowed"])


class TestOriginPolicy(unittest.TestCase):
    def test_match_domain(self) -> None:
        self.assertTrue(match_domain("https://app.acme.io/page", "*.acme.io"))
        self.assertFalse(match_domain("acme.io", "*.acme.io"))
        self.assertTrue(match_domain("acme.io:8443", "acme.io"))
        self.assertTrue(match_domain("ACME.IO.", "acme.io"))
        self.assertFalse(match_domain("evilacme.io", "*.acme.io"))

    def test_evaluate_origin(self) -> None:
        self.assertTrue(evaluate_origin(None)["allowed"])
        self.assertFalse(evaluate_origin(None, ["acme.io"])["allowed"])
        self.assertTrue(evaluate_origin("https://acme.io", ["acme.io"])["allowed"])
        self.assertFalse(evaluate_origin("https://other.io", ["acme.io"])["allowed"])
        denied = evaluate_origin("https://bad.acme.io", ["*.acme.io"], ["bad.acme.io"])
        self.assertEqual(denied, {"allowed": False, "reason": "Origin bad.acme.io is denied"})


class TestSenderAllowlist(unittest.TestCase):
    def test_normalize_and_parse(self) -> None:
        self.assertEqual(normalize_sender("+1 (555) 010-2000"), "15550102000")
        self.assertEqual(parse_allowlist("+1 555 010 2000,\n 44-20-7946-0000 ,,"), ["15550102000", "442079460000"])
        self.assertEqual(parse_allowlist(None), [])

    def test_sender_allowed(self) -> None:
        self.assertTrue(sender_allowed("anyone", []))
        self.assertTrue(sender_allowed("whatsapp:+1-555-010-2000", ["15550102000"]))
        self.assertFalse(sender_allowed("+15550109999", ["+1 555 010 2000"]))


if __name__ == "__main__":
    unittest.main()
