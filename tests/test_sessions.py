import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from app.sessions import (
    SessionError,
    authorize_peer_call,
    complete_session,
    create_session,
    read_scratchpad,
    record_participant_invocation,
    write_scratchpad,
)
from app.stores import memory_stores


class TestSessions(unittest.TestCase):
    def setUp(self) -> None:
        self.store = memory_stores().sessions
        self.session = create_session(
            self.store,
            "Launch plan",
            ["planner", "writer", "planner", "reviewer"],
            "Draft the launch announcement",
            max_peer_calls=2,
            org_id="org-1",
        )

    def test_create_session(self) -> None:
        participants = self.session["participants"]
        self.assertEqual([p["agentSlug"] for p in participants], ["planner", "writer", "reviewer"])
        self.assertEqual(participants[0]["role"], "orchestrator")
        self.assertEqual(self.session["memoryThreadId"], f"session-thread-{self.session['id']}")
        self.assertIn("- **Task**: Draft the launch announcement", self.session["scratchpad"])

    def test_needs_two_agents(self) -> None:
        with self.assertRaises(SessionError) as ctx:
            create_session(self.store, "solo", ["planner", "planner"], "x", org_id="org-1")
        self.assertEqual(ctx.exception.code, "SESSION_TOO_FEW_AGENTS")

    def test_scratchpad_modes(self) -> None:
        sid = self.session["id"]
        write_scratchpad(self.store, sid, "- finding: pricing is final", org_id="org-1")
        self.assertTrue(read_scratchpad(self.store, sid, "org-1").endswith("\n- finding: pricing is final"))
        self.assertEqual(write_scratchpad(self.store, sid, "fresh", mode="replace", org_id="org-1"), "fresh")
        with self.assertRaises(SessionError):
            write_scratchpad(self.store, sid, "x", mode="prepend", org_id="org-1")
        with self.assertRaises(SessionError) as ctx:
            read_scratchpad(self.store, "missing", "org-1")
        self.assertEqual(ctx.exception.code, "SESSION_NOT_FOUND")

    def test_peer_calls_consume_budget(self) -> None:
        sid = self.session["id"]
        first = authorize_peer_call(self.store, sid, "planner", "writer", org_id="org-1")
        self.assertTrue(first["allowed"])
        self.assertEqual(first["session"]["peerCallCount"], 1)
        self.assertTrue(authorize_peer_call(self.store, sid, "writer", "reviewer", org_id="org-1")["allowed"])
        third = authorize_peer_call(self.store, sid, "planner", "reviewer", org_id="org-1")
        self.assertFalse(third["allowed"])
        self.assertEqual(third["error"], "Communication denied: Peer call limit (2) reached")

    def test_zero_peer_call_budget(self) -> None:
        session = create_session(self.store, "Locked", ["planner", "writer"], "x", max_peer_calls=0, org_id="org-1")
        self.assertEqual(session["maxPeerCalls"], 0)
        denied = authorize_peer_call(self.store, session["id"], "planner", "writer", org_id="org-1")
        self.assertFalse(denied["allowed"])
        self.assertEqual(denied["error"], "Communication denied: Peer call limit (0) reached")

    def test_target_must_participate(self) -> None:
        result = authorize_peer_call(self.store, self.session["id"], "planner", "outsider", org_id="org-1")
        self.assertIn("is not a participant", result["error"])

    def test_policy_and_depth(self) -> None:
        sid = self.session["id"]
        denied = authorize_peer_call(self.store, sid, "planner", "reviewer", policy={"deny": ["rev*"]}, org_id="org-1")
        self.assertFalse(denied["allowed"])
        too_deep = authorize_peer_call(self.store, sid, "planner", "writer", depth=5, org_id="org-1")
        self.assertIn("depth", too_deep["error"])
        self.assertEqual(self.store.get(sid, "org-1")["peerCallCount"], 0)

    def test_completed_session_rejects_calls(self) -> None:
        sid = self.session["id"]
        self.assertEqual(complete_session(self.store, sid, org_id="org-1")["status"], "completed")
        result = authorize_peer_call(self.store, sid, "planner", "writer", org_id="org-1")
        self.assertEqual(result["error"], "Session is completed, not active")
        self.assertFalse(authorize_peer_call(self.store, "missing", "a", "b", org_id="org-1")["allowed"])

    def test_participant_invocations(self) -> None:
        session = record_participant_invocation(self.store, self.session["id"], "writer", tokens=120, org_id="org-1")
        writer = [p for p in session["participants"] if p["agentSlug"] == "writer"][0]
        self.assertEqual((writer["invocationCount"], writer["totalTokens"]), (1, 120))


if __name__ == "__main__":
    unittest.main()
