"""Audit log writes and queries. Writes never raise."""

from __future__ import annotations

import logging
from typing import Any

logger = logging.getLogger("agentc2.audit")

AUDIT_ACTIONS = frozenset(
    {
        "AGENT_CREATE",
        "AGENT_UPDATE",
        "AGENT_DELETE",
        "AGENT_ACTIVATE",
        "AGENT_DEACTIVATE",
        "VERSION_CREATE",
        "VERSION_ROLLBACK",
        "CONFIG_CHANGE",
        "TOOL_ATTACH",
        "TOOL_DETACH",
        "SCORER_CHANGE",
        "SCHEDULE_CREATE",
        "SCHEDULE_UPDATE",
        "SCHEDULE_DELETE",
        "TRIGGER_CREATE",
        "TRIGGER_UPDATE",
        "TRIGGER_DELETE",
        "CREDENTIAL_CREATE",
        "CREDENTIAL_UPDATE",
        "CREDENTIAL_DELETE",
        "CREDENTIAL_ACCESS",
        "INTEGRATION_CREATE",
        "INTEGRATION_UPDATE",
        "INTEGRATION_DELETE",
        "WEBHOOK_CREATE",
        "BUDGET_POLICY_UPDATE",
        "GUARDRAIL_POLICY_UPDATE",
        "LEARNING_POLICY_UPDATE",
        "AGENT_INVOKE",
        "AGENT_INVOKE_ASYNC",
        "ORG_CREATE",
        "ORG_UPDATE",
        "ORG_DELETE",
        "WORKSPACE_CREATE",
        "WORKSPACE_UPDATE",
        "WORKSPACE_DELETE",
        "MEMBERSHIP_CREATE",
        "MEMBERSHIP_UPDATE",
        "MEMBERSHIP_DELETE",
        "MEMBER_ROLE_UPDATE",
        "MEMBER_PERMISSIONS_UPDATE",
        "MEMBER_REMOVE",
        "INVITE_CREATE",
        "INVITE_REVOKE",
        "DOMAIN_ADD",
        "DOMAIN_REMOVE",
        "AUTH_LOGIN_SUCCESS",
        "AUTH_LOGIN_FAILURE",
        "AUTH_LOGOUT",
        "AUTH_SESSION_CREATED",
        "DATA_ACCESS",
        # definitions owned by this service
        "WORKFLOW_CREATE",
        "WORKFLOW_UPDATE",
        "WORKFLOW_DELETE",
        "NETWORK_CREATE",
        "NETWORK_UPDATE",
        "NETWORK_DELETE",
    }
)

FEDERATION_ACTIONS = frozenset(
    {
        "federation.request",
        "federation.approve",
        "federation.approved",
        "federation.suspend",
        "federation.revoke",
        "federation.invoke",
        "federation.circuit_breaker",
    }
)


def write_audit_log(
    store,
    action: str,
    entity_type: str,
    entity_id: str,
    actor_id: str | None = None,
    tenant_id: str | None = None,
    metadata: dict | None = None,
    user_id: str | None = None,
) -> dict | None:
    """Persist one entry; ``user_id`` is an alias for ``actor_id``."""
    if action not in AUDIT_ACTIONS and action not in FEDERATION_ACTIONS:
        logger.error("audit_unknown_action action=%s entity_type=%s", action, entity_type)
        return None
    entry = {
        "action": action,
        "entityType": entity_type,
        "entityId": entity_id,
        "actorId": actor_id or user_id,
        "tenantId": tenant_id,
        "metadata": metadata,
    }
    try:
        return store.create(entry, tenant_id)
    except Exception:
        logger.exception("audit_write_failed action=%s entity_id=%s", action, entity_id)
        return None


def write_federation_event(
    store,
    org_id: str,
    action: str,
    resource: str,
    actor_type: str = "user",
    actor_id: str | None = None,
    outcome: str = "success",
    metadata: dict | None = None,
) -> dict | None:
    entity_type, _, entity_id = resource.partition(":")
    entry = {
        "action": action,
        "entityType": entity_type,
        "entityId": entity_id,
        "actorType": actor_type,
        "actorId": actor_id,
        "tenantId": org_id,
        "resource": resource,
        "outcome": outcome,
        "metadata": metadata,
    }
    try:
        return store.create(entry, org_id)
    except Exception:
        logger.exception("audit_write_failed action=%s resource=%s", action, resource)
        return None


def write_federation_audit_pair(
    store,
    source_org_id: str,
    target_org_id: str,
    agreement_id: str,
    outcome: str,
    actor_id: str | None = None,
    metadata: dict | None = None,
) -> None:
    """One ``federation.invoke`` entry in each organization's log."""
    for org_id, role in ((source_org_id, "source"), (target_org_id, "target")):
        write_federation_event(
            store,
            org_id=org_id,
            action="federation.invoke",
            resource=f"federation_agreement:{agreement_id}",
            actor_type="user" if role == "source" and actor_id else "system",
            actor_id=actor_id if role == "source" else "federation-gateway",
            outcome=outcome,
            metadata={**(metadata or {}), "role": role},
        )


def query_audit_logs(
    store,
    tenant_id: str,
    entity_type: str | None = None,
    entity_id: str | None = None,
    actor_id: str | None = None,
    action: str | None = None,
    from_iso: str | None = None,
    to_iso: str | None = None,
    limit: int = 50,
    cursor: str | None = None,
) -> dict[str, Any]:
    limit = max(1, min(int(limit or 50), 500))
    logs = store.query(
        tenant_id,
        limit=None,
        entityType=entity_type,
        entityId=entity_id,
        actorId=actor_id,
        action=action,
    )
    if from_iso:
        logs = [log for log in logs if (log.get("createdAt") or "") >= from_iso]
    if to_iso:
        logs = [log for log in logs if (log.get("createdAt") or "") <= to_iso]
    if cursor:
        ids = [log["id"] for log in logs]
        logs = logs[ids.index(cursor) + 1 :] if cursor in ids else []
    page = logs[: limit + 1]
    has_more = len(page) > limit
    page = page[:limit]
    return {"logs": page, "hasMore": has_more, "nextCursor": page[-1]["id"] if has_more and page else None}
