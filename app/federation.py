"""Cross-organization connections and the federation gateway."""

from __future__ import annotations

import logging
import time
import uuid
from typing import Any, Callable, Dict

from app import federation_crypto as crypto
from app.audit import write_federation_audit_pair, write_federation_event
from app.stores import _now

logger = logging.getLogger("agentc2.federation")

DEFAULT_MAX_REQUESTS_PER_HOUR = 500
DEFAULT_MAX_REQUESTS_PER_DAY = 5000
DEFAULT_DATA_CLASSIFICATION = "internal"
LISTED_STATUSES = ("pending", "active", "suspended")

InvokeAgent = Callable[[str, str, str, str], Dict[str, Any]]


def _setting(source: dict, key: str, default: Any) -> Any:
    value = source.get(key)
    return default if value is None else value


def _fail(error: str) -> dict:
    return {"success": False, "error": error}


class FederationService:
    def __init__(self, stores, policy) -> None:
        self.stores = stores
        self.store = stores.federation
        self.policy = policy

    def _audit(self, org_id: str, action: str, agreement_id: str, actor_id: str, actor_type: str = "user", metadata: dict | None = None) -> None:
        write_federation_event(
            self.stores.audit,
            org_id=org_id,
            action=action,
            resource=f"federation_agreement:{agreement_id}",
            actor_type=actor_type,
            actor_id=actor_id,
            outcome="success",
            metadata=metadata,
        )

    def ensure_org_keys(self, org_id: str) -> dict:
        return crypto.get_active_org_key_pair(self.store, org_id) or crypto.generate_org_key_pair(self.store, org_id)

    def _add_exposures(self, agreement_id: str, owner_org_id: str, agent_ids: list[str]) -> int:
        added = 0
        for agent_id in agent_ids or []:
            agent = self.stores.agents.get(agent_id, owner_org_id)
            if not agent:
                logger.info("federation_exposure_skipped agreement_id=%s agent_id=%s", agreement_id, agent_id)
                continue
            self.store.add_exposure(
                {
                    "agreementId": agreement_id,
                    "ownerOrgId": owner_org_id,
                    "agentId": agent_id,
                    "agentSlug": agent.get("slug"),
                    "enabled": True,
                }
            )
            added += 1
        return added

    # lifecycle

    def request_connection(self, initiator_org_id: str, requested_by_user_id: str, request: dict) -> dict:
        target = None
        if request.get("targetOrgSlug"):
            target = self.stores.orgs.get_by_slug(request["targetOrgSlug"])
        if not target:
            return {"error": "Organization not found"}
        if target.get("status") != "active":
            return {"error": "Target organization is not active"}
        if target["id"] == initiator_org_id:
            return {"error": "Cannot federate with your own organization"}
        if self.store.find_between(initiator_org_id, target["id"], ("pending", "active")):
            return {"error": "A connection already exists or is pending with this organization"}

        initiator_key = crypto.get_active_org_key_pair(self.store, initiator_org_id)
        if not initiator_key:
            return {"error": "Organization security keys not provisioned"}
        try:
            encrypted_channel_key = crypto.encrypt_channel_key(crypto.generate_channel_key())
        except crypto.FederationCryptoError as exc:
            return {"error": str(exc)}

        agreement = self.store.create(
            {
                "initiatorOrgId": initiator_org_id,
                "responderOrgId": target["id"],
                "status": "pending",
                "requestedByUserId": requested_by_user_id,
                "channelKeyEncrypted": encrypted_channel_key,
                "channelKeyVersion": 1,
                "initiatorKeyVersion": initiator_key.get("keyVersion"),
                "responderKeyVersion": None,
            }
        )
        self._add_exposures(agreement["id"], initiator_org_id, request.get("exposedAgentIds") or [])
        self._audit(initiator_org_id, "federation.request", agreement["id"], requested_by_user_id, metadata={"targetOrgSlug": target.get("slug")})
        logger.info("federation_requested agreement_id=%s initiator=%s responder=%s", agreement["id"], initiator_org_id, target["id"])
        return {"id": agreement["id"], "status": "pending"}

    def approve_connection(self, agreement_id: str, responder_org_id: str, approved_by_user_id: str, approval: dict) -> dict:
        agreement = self.store.get_agreement(agreement_id)
        if not agreement:
            return _fail("Agreement not found")
        if agreement.get("responderOrgId") != responder_org_id:
            return _fail("Not authorized to approve this connection")
        if agreement.get("status") != "pending":
            return _fail(f"Cannot approve: status is {agreement.get('status')}")
        responder_key = crypto.get_active_org_key_pair(self.store, responder_org_id)
        if not responder_key:
            return _fail("Organization security keys not provisioned")

        self.store.update_agreement(
            agreement_id,
            {
                "status": "active",
                "approvedAt": _now(),
                "approvedByUserId": approved_by_user_id,
                "responderKeyVersion": responder_key.get("keyVersion"),
                "maxRequestsPerHour": _setting(approval, "maxRequestsPerHour", DEFAULT_MAX_REQUESTS_PER_HOUR),
                "maxRequestsPerDay": _setting(approval, "maxRequestsPerDay", DEFAULT_MAX_REQUESTS_PER_DAY),
                "dataClassification": approval.get("dataClassification") or DEFAULT_DATA_CLASSIFICATION,
                "requireHumanApproval": bool(approval.get("requireHumanApproval")),
            },
        )
        self._add_exposures(agreement_id, responder_org_id, approval.get("exposedAgentIds") or [])
        self._audit(responder_org_id, "federation.approve", agreement_id, approved_by_user_id)
        self._audit(
            agreement["initiatorOrgId"],
            "federation.approved",
            agreement_id,
            "system",
            actor_type="system",
            metadata={"approvedByOrgId": responder_org_id},
        )
        return {"success": True}

    def suspend_connection(self, agreement_id: str, org_id: str, user_id: str, reason: str) -> dict:
        agreement = self.store.get_agreement(agreement_id)
        if not agreement:
            return _fail("Agreement not found")
        if org_id not in (agreement.get("initiatorOrgId"), agreement.get("responderOrgId")):
            return _fail("Not authorized")
        if agreement.get("status") != "active":
            return _fail(f"Cannot suspend: status is {agreement.get('status')}")
        self.store.update_agreement(agreement_id, {"status": "suspended", "suspendedAt": _now(), "suspendedReason": reason})
        self._audit(org_id, "federation.suspend", agreement_id, user_id, metadata={"reason": reason})
        return {"success": True}

    def revoke_connection(self, agreement_id: str, org_id: str, user_id: str, reason: str) -> dict:
        agreement = self.store.get_agreement(agreement_id)
        if not agreement:
            return _fail("Agreement not found")
        if org_id not in (agreement.get("initiatorOrgId"), agreement.get("responderOrgId")):
            return _fail("Not authorized")
        if agreement.get("status") == "revoked":
            return _fail("Already revoked")
        self.store.update_agreement(
            agreement_id,
            {"status": "revoked", "revokedAt": _now(), "revokedByUserId": user_id, "revokedReason": reason},
        )
        self._audit(org_id, "federation.revoke", agreement_id, user_id, metadata={"reason": reason})
        return {"success": True}

    def _org_summary(self, org_id: str) -> dict:
        org = self.stores.orgs.get(org_id) or {"id": org_id}
        return {"id": org.get("id"), "name": org.get("name"), "slug": org.get("slug"), "logoUrl": org.get("logoUrl")}

    def list_connections(self, org_id: str) -> list[dict]:
        agreements = self.store.list_agreements_for_org(org_id, LISTED_STATUSES)
        agreements.sort(key=lambda a: a.get("createdAt") or "", reverse=True)
        summaries = []
        for agreement in agreements:
            is_initiator = agreement.get("initiatorOrgId") == org_id
            partner_id = agreement.get("responderOrgId") if is_initiator else agreement.get("initiatorOrgId")
            exposures = self.store.list_exposures(agreement["id"])
            mine = [e for e in exposures if e.get("ownerOrgId") == org_id]
            summaries.append(
                {
                    "id": agreement["id"],
                    "partnerOrg": self._org_summary(partner_id),
                    "status": agreement.get("status"),
                    "direction": "initiated" if is_initiator else "received",
                    "exposedAgentCount": len(mine),
                    "partnerExposedAgentCount": len(exposures) - len(mine),
                    "createdAt": agreement.get("createdAt"),
                    "approvedAt": agreement.get("approvedAt"),
                }
            )
        return summaries

    def list_exposed_agents(self, agreement_id: str, org_id: str) -> dict:
        """Agents the partner organization exposes to ``org_id`` on an active agreement."""
        agreement = self.store.get_agreement(agreement_id)
        if not agreement:
            return _fail("Agreement not found")
        if org_id not in (agreement.get("initiatorOrgId"), agreement.get("responderOrgId")):
            return _fail("Not authorized")
        if agreement.get("status") != "active":
            return _fail(f"Agreement is {agreement.get('status')}")
        agents = []
        for exposure in self.store.list_exposures(agreement_id):
            if exposure.get("ownerOrgId") == org_id or not exposure.get("enabled", True):
                continue
            agent = self.stores.agents.get(exposure.get("agentId"), exposure["ownerOrgId"]) or {}
            agents.append(
                {
                    "agentId": exposure.get("agentId"),
                    "slug": exposure.get("agentSlug") or agent.get("slug"),
                    "name": agent.get("name"),
                    "description": agent.get("description"),
                    "ownerOrgId": exposure["ownerOrgId"],
                    "maxRequestsPerHour": exposure.get("maxRequestsPerHour"),
                }
            )
        return {"success": True, "agents": agents}

    def get_channel_key(self, agreement_id: str) -> str | None:
        agreement = self.store.get_agreement(agreement_id)
        if not agreement or agreement.get("status") != "active":
            return None
        return crypto.decrypt_channel_key(agreement.get("channelKeyEncrypted"))

    # gateway

    def process_invocation(self, source_org_id: str, request: dict, invoke_agent: InvokeAgent, actor_id: str | None = None) -> dict:
        """Policy, sign, encrypt, store, invoke, then store and audit the response."""
        started = time.monotonic()
        agreement_id = request.get("agreementId")
        target_slug = request.get("targetAgentSlug")
        conversation_id = request.get("conversationId") or str(uuid.uuid4())
        message = request.get("message") or ""

        def error_response(error: str) -> dict:
            return {
                "success": False,
                "conversationId": conversation_id,
                "response": "",
                "contentType": "text",
                "latencyMs": int((time.monotonic() - started) * 1000),
                "messageId": "",
                "policyResult": "blocked",
                "error": error,
            }

        agreement = self.store.get_agreement(agreement_id) if agreement_id else None
        if not agreement:
            return error_response("Agreement not found")
        initiator_id = agreement.get("initiatorOrgId")
        target_org_id = agreement.get("responderOrgId") if initiator_id == source_org_id else initiator_id

        policy = self.policy.evaluate(agreement_id, source_org_id, target_slug, content=message)
        if not policy["allowed"]:
            write_federation_audit_pair(
                self.stores.audit,
                source_org_id,
                target_org_id,
                agreement_id,
                "denied",
                actor_id=actor_id,
                metadata={"reason": policy.get("reason"), "policyResult": policy.get("result"), "targetAgentSlug": target_slug},
            )
            logger.info("federation_invoke_denied agreement_id=%s reason=%s", agreement_id, policy.get("reason"))
            return error_response(policy.get("reason") or "Policy denied")
        if policy.get("result") == "filtered" and policy.get("filteredContent") is not None:
            message = policy["filteredContent"]

        source_key = crypto.get_active_org_key_pair(self.store, source_org_id)
        channel_key = self.get_channel_key(agreement_id)
        if not source_key or not channel_key:
            return error_response("Security context unavailable")
        signature = crypto.sign_payload(message, source_key["encryptedPrivateKey"])
        if not signature:
            return error_response("Message signing failed")

        direction = "initiator_to_responder" if initiator_id == source_org_id else "responder_to_initiator"
        self.store.create_message(
            {
                "agreementId": agreement_id,
                "conversationId": conversation_id,
                "direction": direction,
                "sourceOrgId": source_org_id,
                "sourceAgentSlug": "caller",
                "targetOrgId": target_org_id,
                "targetAgentSlug": target_slug,
                "encryptedContent": crypto.encrypt_with_key(message, channel_key),
                "contentType": request.get("contentType") or "text",
                "senderSignature": signature,
                "senderKeyVersion": source_key.get("keyVersion"),
                "policyResult": policy.get("result"),
            }
        )

        try:
            agent_response = invoke_agent(target_slug, message, target_org_id, conversation_id)
        except Exception as exc:
            error = str(exc) or "Agent invocation failed"
            self.policy.record_outcome(agreement_id, success=False)
            write_federation_audit_pair(
                self.stores.audit,
                source_org_id,
                target_org_id,
                agreement_id,
                "error",
                actor_id=actor_id,
                metadata={"error": error, "targetAgentSlug": target_slug},
            )
            logger.warning("federation_invoke_failed agreement_id=%s agent=%s error=%s", agreement_id, target_slug, error)
            return error_response(error)

        response_text = agent_response.get("response") or ""
        target_key = crypto.get_active_org_key_pair(self.store, target_org_id)
        response_signature = crypto.sign_payload(response_text, target_key["encryptedPrivateKey"]) if target_key else None
        latency_ms = int((time.monotonic() - started) * 1000)
        response_message = self.store.create_message(
            {
                "agreementId": agreement_id,
                "conversationId": conversation_id,
                "direction": "responder_to_initiator" if direction == "initiator_to_responder" else "initiator_to_responder",
                "sourceOrgId": target_org_id,
                "sourceAgentSlug": target_slug,
                "targetOrgId": source_org_id,
                "targetAgentSlug": "caller",
                "encryptedContent": crypto.encrypt_with_key(response_text, channel_key),
                "contentType": "text",
                "senderSignature": response_signature or "",
                "senderKeyVersion": target_key.get("keyVersion") if target_key else 0,
                "latencyMs": latency_ms,
                "inputTokens": agent_response.get("inputTokens"),
                "outputTokens": agent_response.get("outputTokens"),
                "costUsd": agent_response.get("costUsd"),
                "runId": agent_response.get("runId"),
                "policyResult": "approved",
            }
        )
        self.policy.record_outcome(agreement_id, success=True)
        write_federation_audit_pair(
            self.stores.audit,
            source_org_id,
            target_org_id,
            agreement_id,
            "success",
            actor_id=actor_id,
            metadata={
                "conversationId": conversation_id,
                "latencyMs": latency_ms,
                "costUsd": agent_response.get("costUsd"),
                "targetAgentSlug": target_slug,
            },
        )
        return {
            "success": True,
            "conversationId": conversation_id,
            "response": response_text,
            "contentType": "text",
            "latencyMs": latency_ms,
            "messageId": response_message["id"],
            "policyResult": policy.get("result") or "approved",
        }

    def verify_stored_message(self, message_id: str) -> dict:
        message = self.store.get_message(message_id)
        if not message:
            return {"verified": False, "error": "Message not found"}
        if not self.store.get_agreement(message.get("agreementId")):
            return {"verified": False, "error": "Agreement not found"}
        channel_key = self.get_channel_key(message["agreementId"])
        if not channel_key:
            return {"verified": False, "error": "Channel key unavailable"}
        content = message.get("encryptedContent")
        if not isinstance(content, str) or not content:
            return {"verified": False, "error": "Invalid encrypted content format"}
        plaintext = crypto.decrypt_with_key(content, channel_key)
        if plaintext is None:
            return {"verified": False, "error": "Decryption failed"}
        signer_key = crypto.get_org_key_pair_by_version(self.store, message.get("sourceOrgId"), message.get("senderKeyVersion"))
        if not signer_key:
            return {"verified": False, "error": "Signer key not found"}
        return {"verified": crypto.verify_signature(plaintext, message.get("senderSignature") or "", signer_key["publicKey"])}
