"""Agent and network run recording (runs, traces, tool calls, cost events)."""

from __future__ import annotations

import json
import logging
import time
from typing import Any

from app.stores import _now, parse_iso

logger = logging.getLogger("agentc2.runs")

RUN_SOURCES = ("slack", "whatsapp", "voice", "telegram", "elevenlabs", "api", "test", "simulation")
STATUS_RUNNING = "RUNNING"
STATUS_COMPLETED = "COMPLETED"
STATUS_FAILED = "FAILED"


class RunHandle:
    """Returned by ``start_run``; completes, fails or annotates one run."""

    def __init__(self, store, budget_store, run: dict, trace: dict, org_id: str | None, agent_id: str, agent_slug: str) -> None:
        self.store = store
        self.budget_store = budget_store
        self.run_id = run["id"]
        self.trace_id = trace["id"]
        self.org_id = org_id
        self.agent_id = agent_id
        self.agent_slug = agent_slug
        self._started_at = parse_iso(run.get("startedAt"))
        self._started = time.monotonic()

    def _duration_ms(self) -> int:
        # handles rebuilt from a stored run measure from its startedAt
        if self._started_at:
            now = parse_iso(_now())
            return max(0, int((now - self._started_at).total_seconds() * 1000))
        return int((time.monotonic() - self._started) * 1000)

    def complete(
        self,
        output: str,
        model_provider: str | None = None,
        model_name: str | None = None,
        prompt_tokens: int | None = None,
        completion_tokens: int | None = None,
        cost_usd: float | None = None,
        steps: list | None = None,
        scores: dict | None = None,
    ) -> dict:
        duration_ms = self._duration_ms()
        total_tokens = (prompt_tokens or 0) + (completion_tokens or 0)
        run = self.store.update(
            self.run_id,
            {
                "status": STATUS_COMPLETED,
                "outputText": output,
                "durationMs": duration_ms,
                "completedAt": _now(),
                "modelProvider": model_provider,
                "modelName": model_name,
                "promptTokens": prompt_tokens,
                "completionTokens": completion_tokens,
                "totalTokens": total_tokens,
                "costUsd": cost_usd,
            },
            self.org_id,
        )
        self.store.update_trace(
            self.trace_id,
            {
                "status": STATUS_COMPLETED,
                "outputText": output,
                "durationMs": duration_ms,
                "stepsJson": steps or [],
                "modelJson": {"provider": model_provider, "name": model_name},
                "tokensJson": {"prompt": prompt_tokens or 0, "completion": completion_tokens or 0, "total": total_tokens},
                "scoresJson": scores or {},
            },
            self.org_id,
        )
        if cost_usd and model_provider and model_name:
            self.budget_store.add_cost_event(
                {
                    "runId": self.run_id,
                    "agentId": self.agent_id,
                    "tenantId": self.org_id,
                    "provider": model_provider,
                    "modelName": model_name,
                    "promptTokens": prompt_tokens,
                    "completionTokens": completion_tokens,
                    "totalTokens": total_tokens,
                    "costUsd": cost_usd,
                },
                self.org_id,
            )
        if scores:
            self.store.add_evaluation({"runId": self.run_id, "agentId": self.agent_id, "tenantId": self.org_id, "scoresJson": scores}, self.org_id)
        logger.info("run_completed run_id=%s agent=%s duration_ms=%s tokens=%s", self.run_id, self.agent_slug, duration_ms, total_tokens)
        return run

    def fail(self, error: BaseException | str) -> dict:
        duration_ms = self._duration_ms()
        message = str(error)
        run = self.store.update(
            self.run_id,
            {
                "status": STATUS_FAILED,
                "outputText": f"Error: {message}",
                "durationMs": duration_ms,
                "completedAt": _now(),
            },
            self.org_id,
        )
        self.store.update_trace(
            self.trace_id,
            {"status": STATUS_FAILED, "outputText": f"Error: {message}", "durationMs": duration_ms},
            self.org_id,
        )
        logger.warning("run_failed run_id=%s agent=%s error=%s", self.run_id, self.agent_slug, message)
        return run

    def add_tool_call(
        self,
        tool_key: str,
        success: bool,
        input: dict | None = None,
        output: Any = None,
        error: str | None = None,
        duration_ms: int | None = None,
        mcp_server_id: str | None = None,
    ) -> dict:
        return self.store.add_tool_call(
            {
                "runId": self.run_id,
                "traceId": self.trace_id,
                "tenantId": self.org_id,
                "toolKey": tool_key,
                "mcpServerId": mcp_server_id,
                "inputJson": input or {},
                "outputJson": output,
                "success": success,
                "error": error,
                "durationMs": duration_ms,
            },
            self.org_id,
        )


def start_run(
    store,
    budget_store,
    agent_id: str,
    agent_slug: str,
    input: str,
    source: str,
    org_id: str | None = None,
    user_id: str | None = None,
    thread_id: str | None = None,
    session_id: str | None = None,
    version_id: str | None = None,
) -> RunHandle:
    if source not in RUN_SOURCES:
        raise ValueError(f"Unknown run source: {source}")
    run = store.create(
        {
            "agentId": agent_id,
            "agentSlug": agent_slug,
            "tenantId": org_id,
            "runType": "TEST" if source == "test" else "PROD",
            "status": STATUS_RUNNING,
            "inputText": input,
            "startedAt": _now(),
            "userId": user_id,
            "versionId": version_id,
            "source": source,
            "sessionId": session_id,
            "threadId": thread_id,
        },
        org_id,
    )
    trace = store.create_trace(
        {
            "runId": run["id"],
            "agentId": agent_id,
            "tenantId": org_id,
            "status": STATUS_RUNNING,
            "inputText": input,
            "stepsJson": [],
            "modelJson": {},
            "tokensJson": {},
        },
        org_id,
    )
    logger.info("run_started run_id=%s agent=%s source=%s", run["id"], agent_slug, source)
    return RunHandle(store, budget_store, run, trace, org_id, agent_id, agent_slug)


def extract_token_usage(response: dict) -> dict | None:
    """Normalize ``usage``/``totalUsage`` (either SDK naming) or sum per-step usage."""
    usage = response.get("totalUsage") or response.get("usage")
    if not usage and response.get("steps"):
        prompt = completion = 0
        for step in response["steps"]:
            step_usage = (step or {}).get("usage") or {}
            prompt += step_usage.get("inputTokens") or step_usage.get("promptTokens") or 0
            completion += step_usage.get("outputTokens") or step_usage.get("completionTokens") or 0
        if prompt or completion:
            return {"promptTokens": prompt, "completionTokens": completion, "totalTokens": prompt + completion}
    if not usage:
        return None
    prompt = usage.get("inputTokens") or usage.get("promptTokens") or 0
    completion = usage.get("outputTokens") or usage.get("completionTokens") or 0
    total = usage.get("totalTokens") or prompt + completion
    return {"promptTokens": prompt, "completionTokens": completion, "totalTokens": total}


def _tool_name(value: Any) -> str | None:
    if not isinstance(value, dict):
        return None
    fn = value.get("function") if isinstance(value.get("function"), dict) else {}
    return value.get("toolName") or value.get("name") or value.get("tool") or fn.get("name")


def _tool_args(value: Any) -> dict:
    if not isinstance(value, dict):
        return {}
    fn = value.get("function") if isinstance(value.get("function"), dict) else {}
    args = value.get("args") or value.get("input") or value.get("arguments") or fn.get("arguments")
    if isinstance(args, str):
        try:
            args = json.loads(args)
        except ValueError:
            return {}
    return args if isinstance(args, dict) else {}


def extract_tool_calls(response: dict) -> list[dict]:
    """Pair tool calls with results, by ``toolCallId`` when present, else by position."""
    calls: list[dict] = []
    results: list[dict] = []
    if response.get("toolCalls"):
        calls.extend(response["toolCalls"])
        results.extend(response.get("toolResults") or [])
    else:
        for step in response.get("steps") or []:
            calls.extend(step.get("toolCalls") or [])
            results.extend(step.get("toolResults") or [])

    by_id = {r.get("toolCallId"): r for r in results if isinstance(r, dict) and r.get("toolCallId")}
    positional = [r for r in results if isinstance(r, dict) and not r.get("toolCallId")]
    out: list[dict] = []
    for idx, call in enumerate(calls):
        result = by_id.get((call or {}).get("toolCallId")) if isinstance(call, dict) else None
        if result is None and idx < len(positional):
            result = positional[idx]
        result = result or {}
        error = result.get("error")
        out.append(
            {
                "toolKey": _tool_name(call) or _tool_name(result) or "unknown",
                "input": _tool_args(call) or _tool_args(result),
                "output": result.get("result", result.get("output")),
                "success": not error,
                "error": error,
            }
        )
    return out


# network runs


def start_network_run(store, network_id: str, input: str, org_id: str | None = None, thread_id: str | None = None, source: str = "api") -> dict:
    run = store.create_network_run(
        {
            "networkId": network_id,
            "status": STATUS_RUNNING,
            "inputText": input,
            "threadId": thread_id,
            "source": source,
            "stepsExecuted": 0,
            "totalTokens": 0,
            "totalCostUsd": 0.0,
            "startedAt": _now(),
        },
        org_id,
    )
    logger.info("network_run_started run_id=%s network_id=%s", run["id"], network_id)
    return run


def record_network_step(
    store,
    run_id: str,
    step_type: str,
    primitive_type: str | None = None,
    primitive_id: str | None = None,
    routing_decision: dict | None = None,
    input: Any = None,
    output: Any = None,
    status: str = STATUS_COMPLETED,
    tokens: int = 0,
    cost_usd: float = 0.0,
    duration_ms: int | None = None,
    org_id: str | None = None,
) -> dict:
    run = store.get_network_run(run_id, org_id)
    if not run:
        raise KeyError("Network run not found")
    step_number = (run.get("stepsExecuted") or 0) + 1
    step = store.add_network_step(
        {
            "runId": run_id,
            "stepNumber": step_number,
            "stepType": step_type,
            "primitiveType": primitive_type,
            "primitiveId": primitive_id,
            "routingDecision": routing_decision,
            "inputJson": input,
            "outputJson": output,
            "status": status,
            "tokens": tokens,
            "costUsd": cost_usd,
            "durationMs": duration_ms,
        },
        org_id,
    )
    store.update_network_run(
        run_id,
        {
            "stepsExecuted": step_number,
            "totalTokens": (run.get("totalTokens") or 0) + (tokens or 0),
            "totalCostUsd": (run.get("totalCostUsd") or 0.0) + (cost_usd or 0.0),
        },
        org_id,
    )
    return step


def finish_network_run(store, run_id: str, output: str | None = None, error: str | None = None, org_id: str | None = None) -> dict | None:
    run = store.get_network_run(run_id, org_id)
    if not run:
        return None
    started = run.get("startedAt")
    duration_ms = None
    if started:
        start_dt = parse_iso(started)
        end_dt = parse_iso(_now())
        if start_dt and end_dt:
            duration_ms = int((end_dt - start_dt).total_seconds() * 1000)
    changes = {
        "status": STATUS_FAILED if error else STATUS_COMPLETED,
        "outputText": f"Error: {error}" if error else output,
        "completedAt": _now(),
        "durationMs": duration_ms,
    }
    logger.info("network_run_finished run_id=%s status=%s", run_id, changes["status"])
    return store.update_network_run(run_id, changes, org_id)
