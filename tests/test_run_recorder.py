import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from app.run_recorder import (
    extract_token_usage,
    extract_tool_calls,
    finish_network_run,
    record_network_step,
    start_network_run,
    start_run,
)
from app.stores import memory_stores


class TestAgentRuns(unittest.TestCase):
    def setUp(self) -> None:
        self.stores = memory_stores()

    def _start(self, source: str = "api"):
        return start_run(self.stores.runs, self.stores.budget, "ag-1", "support", "hello", source, org_id="org-1", user_id="u-1")

    def test_start_creates_run_and_trace(self) -> None:
        handle = self._start()
        run = self.stores.runs.get(handle.run_id, "org-1")
        self.assertEqual(run["status"], "RUNNING")
        self.assertEqual(run["runType"], "PROD")
        self.assertEqual(self.stores.runs.get_trace_for_run(handle.run_id, "org-1")["id"], handle.trace_id)
        self.assertEqual(self._start("test").org_id, "org-1")

    def test_unknown_source_rejected(self) -> None:
        with self.assertRaises(ValueError):
            self._start("carrier-pigeon")

    def test_complete_records_usage_and_cost(self) -> None:
        handle = self._start()
        run = handle.complete(
            "Hi!",
            model_provider="openai",
            model_name="gpt-4o",
            prompt_tokens=10,
            completion_tokens=5,
            cost_usd=0.02,
            scores={"helpfulness": 0.9},
        )
        self.assertEqual(run["status"], "COMPLETED")
        self.assertEqual(run["totalTokens"], 15)
        trace = self.stores.runs.get_trace_for_run(handle.run_id, "org-1")
        self.assertEqual(trace["tokensJson"], {"prompt": 10, "completion": 5, "total": 15})
        events = self.stores.budget.list_cost_events("org-1", runId=handle.run_id)
        self.assertEqual([e["costUsd"] for e in events], [0.02])
        self.assertEqual(len(self.stores.runs.list_evaluations(handle.run_id, "org-1")), 1)

    def test_complete_without_cost_skips_cost_event(self) -> None:
        handle = self._start()
        handle.complete("ok")
        self.assertEqual(self.stores.budget.list_cost_events("org-1"), [])

    def test_fail_marks_run_and_trace(self) -> None:
        handle = self._start()
        run = handle.fail(RuntimeError("model timeout"))
        self.assertEqual(run["status"], "FAILED")
        self.assertEqual(run["outputText"], "Error: model timeout")
        self.assertEqual(self.stores.runs.get_trace_for_run(handle.run_id, "org-1")["status"], "FAILED")

    def test_tool_calls_attach_to_run(self) -> None:
        handle = self._start()
        handle.add_tool_call("web.search", True, input={"q": "x"}, output={"hits": 2}, duration_ms=40)
        handle.add_tool_call("crm.update", False, error="denied")
        calls = self.stores.runs.list_tool_calls(handle.run_id, "org-1")
        self.assertEqual([c["toolKey"] for c in calls], ["web.search", "crm.update"])
        self.assertEqual(calls[0]["traceId"], handle.trace_id)
        self.assertFalse(calls[1]["success"])


class TestResponseExtraction(unittest.TestCase):
    def test_token_usage_variants(self) -> None:
        self.assertEqual(
            extract_token_usage({"usage": {"inputTokens": 3, "outputTokens": 4}}),
            {"promptTokens": 3, "completionTokens": 4, "totalTokens": 7},
        )
        self.assertEqual(
            extract_token_usage({"totalUsage": {"promptTokens": 1, "completionTokens": 1, "totalTokens": 9}})["totalTokens"],
            9,
        )
        steps = {"steps": [{"usage": {"inputTokens": 2}}, {"usage": {"completionTokens": 5}}]}
        self.assertEqual(extract_token_usage(steps), {"promptTokens": 2, "completionTokens": 5, "totalTokens": 7})
        self.assertIsNone(extract_token_usage({}))

    def test_tool_calls_paired_by_id(self) -> None:
        response = {
            "toolCalls": [
                {"toolCallId": "a", "toolName": "search", "args": {"q": "x"}},
                {"toolCallId": "b", "function": {"name": "lookup", "arguments": '{"id": 7}'}},
            ],
            "toolResults": [
                {"toolCallId": "b", "result": {"found": True}},
                {"toolCallId": "a", "error": "rate limited"},
            ],
        }
        calls = extract_tool_calls(response)
        self.assertEqual(calls[0], {"toolKey": "search", "input": {"q": "x"}, "output": None, "success": False, "error": "rate limited"})
        self.assertEqual(calls[1]["toolKey"], "lookup")
        self.assertEqual(calls[1]["input"], {"id": 7})
        self.assertEqual(calls[1]["output"], {"found": True})

    def test_tool_calls_from_steps_by_position(self) -> None:
        response = {"steps": [{"toolCalls": [{"name": "calc", "input": {"x": 1}}], "toolResults": [{"output": 2}]}]}
        self.assertEqual(extract_tool_calls(response)[0]["output"], 2)


class TestNetworkRuns(unittest.TestCase):
    def test_steps_accumulate_totals(self) -> None:
        store = memory_stores().runs
        run = start_network_run(store, "net-1", "plan a trip", org_id="org-1")
        record_network_step(store, run["id"], "routing", routing_decision={"to": "agent-a"}, tokens=10, cost_usd=0.01, org_id="org-1")
        record_network_step(store, run["id"], "agent", primitive_type="agent", primitive_id="agent-a", tokens=5, org_id="org-1")
        current = store.get_network_run(run["id"], "org-1")
        self.assertEqual(current["stepsExecuted"], 2)
        self.assertEqual(current["totalTokens"], 15)
        self.assertEqual([s["stepNumber"] for s in store.list_network_steps(run["id"], "org-1")], [1, 2])
        finished = finish_network_run(store, run["id"], output="done", org_id="org-1")
        self.assertEqual(finished["status"], "COMPLETED")
        self.assertIsNotNone(finished["durationMs"])

    def test_failed_and_missing_runs(self) -> None:
        store = memory_stores().runs
        run = start_network_run(store, "net-1", "x", org_id="org-1")
        self.assertEqual(finish_network_run(store, run["id"], error="boom", org_id="org-1")["outputText"], "Error: boom")
        self.assertIsNone(finish_network_run(store, "missing", org_id="org-1"))
        with self.assertRaises(KeyError):
            record_network_step(store, "missing", "routing", org_id="org-1")


if __name__ == "__main__":
    unittest.main()
