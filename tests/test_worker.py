import os
import sys
import unittest
from datetime import datetime, timedelta, timezone


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from app import schedules
from app.budget import STATUS_CANCELLED, BudgetEnforcementService
from app.stores import memory_stores
from app.worker import _backoff_seconds, tick

CREATED = datetime(2026, 1, 15, 8, 0, tzinfo=timezone.utc)
FIRE_AT = datetime(2026, 1, 15, 9, 0, 5, tzinfo=timezone.utc)


class TestWorkerTick(unittest.TestCase):
    def setUp(self) -> None:
        self.stores = memory_stores()
        self.agent = self.stores.agents.create({"slug": "digest", "name": "Digest"}, "org-1")
        self.schedule = schedules.create_schedule(
            self.stores,
            {"agentId": self.agent["id"], "cronExpr": "0 9 * * *", "input": "Summarize yesterday"},
            "org-1",
            now=CREATED,
        )
        self.calls = []

    def _invoke(self, schedule: dict, org_id: str) -> dict:
        self.calls.append((schedule["id"], org_id))
        return {
            "output": "All quiet.",
            "modelProvider": "openai",
            "modelName": "gpt-4o-mini",
            "usage": {"promptTokens": 120, "completionTokens": 30},
            "costUsd": 0.002,
        }

    def test_nothing_due(self) -> None:
        result = tick(self.stores, "org-1", self._invoke, now=CREATED)
        self.assertEqual(result, {"fired": [], "reservationsReleased": 0})
        self.assertEqual(self.calls, [])

    def test_due_schedule_completes_a_run(self) -> None:
        result = tick(self.stores, "org-1", self._invoke, now=FIRE_AT)
        self.assertEqual(len(result["fired"]), 1)
        fired = result["fired"][0]
        self.assertEqual(fired["status"], "completed")
        run = self.stores.runs.get(fired["runId"], "org-1")
        self.assertEqual(run["status"], "COMPLETED")
        self.assertEqual(run["source"], "api")
        self.assertEqual(run["agentSlug"], "digest")
        self.assertEqual(run["totalTokens"], 150)
        self.assertEqual(len(self.stores.budget.list_cost_events("org-1")), 1)

        schedule = self.stores.schedules.get(self.schedule["id"], "org-1")
        self.assertEqual(schedule["lastRunId"], fired["runId"])
        self.assertEqual(schedule["nextRunAt"], "2026-01-16T09:00:00.000Z")
        self.assertEqual(tick(self.stores, "org-1", self._invoke, now=FIRE_AT)["fired"], [])

    def test_invoke_failure_marks_run_failed(self) -> None:
        def broken(schedule: dict, org_id: str) -> dict:
            raise RuntimeError("runtime offline")

        fired = tick(self.stores, "org-1", broken, now=FIRE_AT)["fired"][0]
        self.assertEqual(fired["status"], "failed")
        self.assertEqual(fired["error"], "runtime offline")
        run = self.stores.runs.get(fired["runId"], "org-1")
        self.assertEqual(run["outputText"], "Error: runtime offline")
        self.assertEqual(self.stores.schedules.get(self.schedule["id"], "org-1")["runCount"], 1)

    def test_budget_block_skips_but_advances(self) -> None:
        self.stores.budget.save_subscription(
            {"status": "active", "includedCreditsUsd": 10, "usedCreditsUsd": 10, "plan": {"name": "Starter"}},
            "org-1",
        )
        fired = tick(self.stores, "org-1", self._invoke, now=FIRE_AT)["fired"][0]
        self.assertEqual(fired["status"], "skipped")
        self.assertEqual(self.calls, [])
        self.assertEqual(self.stores.runs.list("org-1"), [])
        self.assertEqual(self.stores.schedules.get(self.schedule["id"], "org-1")["nextRunAt"], "2026-01-16T09:00:00.000Z")

    def test_stale_reservations_released(self) -> None:
        service = BudgetEnforcementService(self.stores.budget)
        reservation_id = service.create_reservation("run-x", self.agent["id"], 1.5, "org-1")
        later = datetime.now(timezone.utc) + timedelta(hours=1)
        result = tick(self.stores, "org-1", self._invoke, now=later)
        self.assertEqual(result["reservationsReleased"], 1)
        self.assertEqual(self.stores.budget.get(reservation_id, "org-1")["status"], STATUS_CANCELLED)

    def test_backoff(self) -> None:
        self.assertEqual([_backoff_seconds(n) for n in (1, 2, 3)], [60, 120, 240])
        self.assertEqual(_backoff_seconds(20), 3600)


if __name__ == "__main__":
    unittest.main()
