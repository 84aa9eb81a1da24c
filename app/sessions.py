"""Collaboration sessions: participants, shared scratchpad and peer-call budget."""

from __future__ import annotations

import logging

import comm_policy

logger = logging.getLogger("agentc2.sessions")

DEFAULT_MAX_PEER_CALLS = 20
DEFAULT_MAX_DEPTH = 5
SCRATCHPAD_MODES = ("append", "replace")


class SessionError(RuntimeError):
    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


def default_scratchpad(task: str) -> str:
    return (
        "# Session Scratchpad\n"
        f"- **Task**: {task}\n"
        "- **Status**: active\n"
        "- **Findings**:\n"
        "- **Decisions**:\n"
        "- **Open Questions**:"
    )


def create_session(
    store,
    name: str,
    agent_slugs: list[str],
    task: str,
    initiator_type: str = "agent",
    initiator_id: str | None = None,
    orchestrator_slug: str | None = None,
    scratchpad_template: str | None = None,
    max_peer_calls: int | None = None,
    max_depth: int | None = None,
    org_id: str | None = None,
) -> dict:
    slugs = list(dict.fromkeys(s for s in (agent_slugs or []) if isinstance(s, str) and s))
    if len(slugs) < 2:
        raise SessionError("SESSION_TOO_FEW_AGENTS", "A session needs at least 2 agents")
    orchestrator = orchestrator_slug or slugs[0]
    session = store.create(
        {
            "name": name,
            "status": "active",
            "initiatorType": initiator_type,
            "initiatorId": initiator_id or orchestrator,
            "orchestratorSlug": orchestrator,
            "participants": [
                {
                    "agentSlug": slug,
                    "role": "orchestrator" if slug == orchestrator else "participant",
                    "invocationCount": 0,
                    "totalTokens": 0,
                }
                for slug in slugs
            ],
            "scratchpad": scratchpad_template or default_scratchpad(task),
            "maxPeerCalls": comm_policy.limit_or_default(max_peer_calls, DEFAULT_MAX_PEER_CALLS),
            "maxDepth": comm_policy.limit_or_default(max_depth, DEFAULT_MAX_DEPTH),
            "peerCallCount": 0,
        },
        org_id,
    )
    session = store.update(
        session["id"],
        {"memoryResourceId": f"session-{session['id']}", "memoryThreadId": f"session-thread-{session['id']}"},
        org_id,
    )
    logger.info("session_created session_id=%s agents=%s", session["id"], ",".join(slugs))
    return session


def _require_session(store, session_id: str, org_id: str | None) -> dict:
    session = store.get(session_id, org_id)
    if not session:
        raise SessionError("SESSION_NOT_FOUND", f'Session "{session_id}" not found')
    return session


def read_scratchpad(store, session_id: str, org_id: str | None = None) -> str:
    return _require_session(store, session_id, org_id).get("scratchpad") or ""


def write_scratchpad(store, session_id: str, content: str, mode: str = "append", org_id: str | None = None) -> str:
    if mode not in SCRATCHPAD_MODES:
        raise SessionError("SESSION_SCRATCHPAD_MODE", f"Scratchpad mode must be one of {', '.join(SCRATCHPAD_MODES)}")
    session = _require_session(store, session_id, org_id)
    current = session.get("scratchpad") or ""
    updated = content if mode == "replace" else (f"{current}\n{content}" if current else content)
    store.update(session_id, {"scratchpad": updated}, org_id)
    return updated


def record_peer_call(store, session_id: str, org_id: str | None = None) -> dict:
    session = _require_session(store, session_id, org_id)
    limit = comm_policy.limit_or_default(session.get("maxPeerCalls"), DEFAULT_MAX_PEER_CALLS)
    count = session.get("peerCallCount") or 0
    if count >= limit:
        return {"allowed": False, "count": count, "limit": limit}
    store.update(session_id, {"peerCallCount": count + 1}, org_id)
    return {"allowed": True, "count": count + 1, "limit": limit}


def record_participant_invocation(store, session_id: str, agent_slug: str, tokens: int | None = None, org_id: str | None = None) -> dict:
    session = _require_session(store, session_id, org_id)
    participants = session.get("participants") or []
    for participant in participants:
        if participant.get("agentSlug") == agent_slug:
            participant["invocationCount"] = (participant.get("invocationCount") or 0) + 1
            participant["totalTokens"] = (participant.get("totalTokens") or 0) + (tokens or 0)
    return store.update(session_id, {"participants": participants}, org_id)


def authorize_peer_call(
    store,
    session_id: str,
    source_agent: str,
    target_agent: str,
    depth: int = 0,
    policy: dict | None = None,
    org_id: str | None = None,
) -> dict:
    """Participant check, communication policy, then the session's peer-call budget.

    Returns ``{"allowed", "error", "session"}``; an allowed call consumes one
    unit of the budget.
    """
    session = store.get(session_id, org_id)
    if not session:
        return {"allowed": False, "error": f'Session "{session_id}" not found', "session": None}
    if session.get("status") != "active":
        return {"allowed": False, "error": f"Session is {session.get('status')}, not active", "session": session}
    slugs = {p.get("agentSlug") for p in session.get("participants") or []}
    if target_agent not in slugs:
        return {
            "allowed": False,
            "error": f'Agent "{target_agent}" is not a participant in session "{session_id}"',
            "session": session,
        }

    effective = dict(policy or {})
    effective.setdefault("maxDepth", comm_policy.limit_or_default(session.get("maxDepth"), DEFAULT_MAX_DEPTH))
    effective.setdefault("maxPeerCalls", comm_policy.limit_or_default(session.get("maxPeerCalls"), DEFAULT_MAX_PEER_CALLS))
    decision = comm_policy.evaluate_communication(
        effective,
        source_agent,
        target_agent,
        depth=depth,
        peer_calls=session.get("peerCallCount") or 0,
    )
    if not decision["allowed"]:
        logger.info("session_peer_denied session_id=%s from=%s to=%s", session_id, source_agent, target_agent)
        return {"allowed": False, "error": f"Communication denied: {decision['reason']}", "session": session}

    budget = record_peer_call(store, session_id, org_id)
    if not budget["allowed"]:
        return {
            "allowed": False,
            "error": f"Session peer call limit ({budget['limit']}) exceeded (current: {budget['count']})",
            "session": session,
        }
    return {"allowed": True, "error": None, "session": store.get(session_id, org_id)}


def complete_session(store, session_id: str, status: str = "completed", org_id: str | None = None) -> dict:
    _require_session(store, session_id, org_id)
    return store.update(session_id, {"status": status}, org_id)
