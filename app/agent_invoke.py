"""HTTP client for the agent runtime that executes agents on our behalf."""

from __future__ import annotations

import logging
import os

import httpx

logger = logging.getLogger("agentc2.invoke")


class AgentInvokeError(RuntimeError):
    pass


def _base_url() -> str:
    base = (os.getenv("AGENTC2_AGENT_INVOKE_URL") or "").strip().rstrip("/")
    if not base:
        raise AgentInvokeError("AGENTC2_AGENT_INVOKE_URL is not set")
    return base


def invoke_agent(
    agent: str,
    input: str,
    org_id: str,
    context: dict | None = None,
    transport: httpx.BaseTransport | None = None,
) -> dict:
    """Run ``agent`` (id or slug) synchronously and return the runtime's JSON body.

    The body carries ``output``, ``runId``, ``usage`` (``promptTokens`` and
    ``completionTokens``), ``costUsd``, ``modelProvider`` and ``modelName``.
    """
    headers = {"Content-Type": "application/json", "X-Organization-Id": org_id}
    api_key = os.getenv("AGENTC2_API_KEY")
    if api_key:
        headers["X-API-Key"] = api_key
    timeout = float(os.getenv("AGENTC2_INVOKE_TIMEOUT", "120"))
    url = f"{_base_url()}/agents/{agent}/invoke"
    with httpx.Client(timeout=timeout, transport=transport) as client:
        try:
            res = client.post(url, json={"input": input, "context": context or {}, "mode": "sync"}, headers=headers)
        except httpx.HTTPError as exc:
            logger.warning("agent_invoke_failed agent=%s error=%s", agent, exc)
            raise AgentInvokeError(f"Agent runtime unreachable: {exc}") from exc
    if res.status_code >= 400:
        logger.warning("agent_invoke_failed agent=%s status=%s", agent, res.status_code)
        raise AgentInvokeError(f"Agent invocation failed ({res.status_code})")
    try:
        return res.json()
    except ValueError as exc:
        raise AgentInvokeError("Agent runtime returned invalid JSON") from exc


def federated_invoker(transport: httpx.BaseTransport | None = None):
    """Adapter with the gateway's ``invoke_agent(slug, message, org_id, conversation_id)`` shape."""

    def _invoke(slug: str, message: str, target_org_id: str, conversation_id: str) -> dict:
        body = invoke_agent(slug, message, target_org_id, {"conversationId": conversation_id, "federated": True}, transport)
        usage = body.get("usage") or {}
        return {
            "response": body.get("output") or "",
            "runId": body.get("runId"),
            "inputTokens": usage.get("promptTokens") or 0,
            "outputTokens": usage.get("completionTokens") or 0,
            "costUsd": body.get("costUsd") or 0.0,
        }

    return _invoke
