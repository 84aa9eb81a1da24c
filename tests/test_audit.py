import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from app.audit import query_audit_logs, write_audit_log, write_federation_audit_pair, write_federation_event
from app.stores import memory_stores


class _BrokenStore:
    def create(self, data, org_id=None):
        raise RuntimeError("db down")


class TestAuditLog(unittest.TestCase):
    def setUp(self) -> None:
        self.store = memory_stores().audit

    def test_write_and_alias(self) -> None:
        entry = write_audit_log(self.store, "AGENT_CREATE", "agent", "ag-1", tenant_id="org-1", user_id="u-1", metadata={"slug": "x"})
        self.assertEqual(entry["actorId"], "u-1")
        self.assertEqual(entry["tenantId"], "org-1")

    def test_unknown_action_not_written(self) -> None:
        with self.assertLogs("agentc2.audit", level="ERROR"):
            self.assertIsNone(write_audit_log(self.store, "AGENT_TELEPORT", "agent", "ag-1", tenant_id="org-1"))
        self.assertEqual(self.store.query("org-1"), [])

    def test_write_failures_are_swallowed(self) -> None:
        with self.assertLogs("agentc2.audit", level="ERROR"):
            self.assertIsNone(write_audit_log(_BrokenStore(), "AGENT_CREATE", "agent", "ag-1", tenant_id="org-1"))
            self.assertIsNone(write_federation_event(_BrokenStore(), "org-1", "federation.request", "federation_agreement:a"))

    def test_federation_event_splits_resource(self) -> None:
        entry = write_federation_event(self.store, "org-1", "federation.request", "federation_agreement:agr-9", actor_id="u-1")
        self.assertEqual((entry["entityType"], entry["entityId"]), ("federation_agreement", "agr-9"))

    def test_audit_pair(self) -> None:
        write_federation_audit_pair(self.store, "org-a", "org-b", "agr-1", "success", actor_id="u-1", metadata={"latencyMs": 5})
        source = self.store.query("org-a")[0]
        target = self.store.query("org-b")[0]
        self.assertEqual((source["actorType"], source["actorId"], source["metadata"]["role"]), ("user", "u-1", "source"))
        self.assertEqual((target["actorType"], target["actorId"], target["metadata"]["role"]), ("system", "federation-gateway", "target"))
        self.assertEqual(target["metadata"]["latencyMs"], 5)

    def test_query_filters_and_pagination(self) -> None:
        for idx in range(5):
            write_audit_log(self.store, "SCHEDULE_UPDATE", "schedule", f"s-{idx}", "u-1", "org-1")
        write_audit_log(self.store, "AGENT_CREATE", "agent", "ag-1", "u-2", "org-1")
        write_audit_log(self.store, "AGENT_CREATE", "agent", "ag-2", "u-2", "org-2")

        page = query_audit_logs(self.store, "org-1", entity_type="schedule", limit=2)
        self.assertEqual([log["entityId"] for log in page["logs"]], ["s-4", "s-3"])
        self.assertTrue(page["hasMore"])
        page = query_audit_logs(self.store, "org-1", entity_type="schedule", limit=2, cursor=page["nextCursor"])
        self.assertEqual([log["entityId"] for log in page["logs"]], ["s-2", "s-1"])
        page = query_audit_logs(self.store, "org-1", entity_type="schedule", limit=2, cursor=page["nextCursor"])
        self.assertEqual([log["entityId"] for log in page["logs"]], ["s-0"])
        self.assertFalse(page["hasMore"])
        self.assertIsNone(page["nextCursor"])

        by_actor = query_audit_logs(self.store, "org-1", actor_id="u-2")
        self.assertEqual([log["entityId"] for log in by_actor["logs"]], ["ag-1"])
        self.assertEqual(query_audit_logs(self.store, "org-1", from_iso="2999-01-01")["logs"], [])
        self.assertEqual(query_audit_logs(self.store, "org-1", cursor="unknown")["logs"], [])


if __name__ == "__main__":
    unittest.main()
