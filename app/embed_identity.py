"""HMAC-signed identity tokens from embed partners.

Token format: ``base64url(json_payload) + "." + hex(hmac_sha256(secret, base64url(json_payload)))``.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
import secrets
import time

from app.stores import PLATFORM_TENANT, _now

logger = logging.getLogger("agentc2.embed")

DEFAULT_TOKEN_MAX_AGE_SEC = 3600


def generate_signing_secret() -> str:
    """64 hex characters (256 bits)."""
    return secrets.token_hex(32)


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64url_decode(value: str) -> bytes:
    return base64.urlsafe_b64decode(value + "=" * (-len(value) % 4))


def _signature(secret: str, payload_b64: str) -> str:
    return hmac.new(secret.encode("utf-8"), payload_b64.encode("utf-8"), hashlib.sha256).hexdigest()


def sign_embed_identity(payload: dict, secret: str) -> str:
    """Partner-side signing; used by tests and partner tooling."""
    payload_b64 = _b64url_encode(json.dumps(payload, separators=(",", ":")).encode("utf-8"))
    return f"{payload_b64}.{_signature(secret, payload_b64)}"


def build_partner_resource_id(organization_id: str, partner_slug: str, external_user_id: str) -> str:
    return f"{organization_id}:partner-{partner_slug}:{external_user_id}"


def build_partner_thread_id(organization_id: str, partner_slug: str, external_user_id: str, thread_suffix: str | None = None) -> str:
    base = build_partner_resource_id(organization_id, partner_slug, external_user_id)
    return f"{base}:{thread_suffix}" if thread_suffix else base


def create_partner(store, organization_id: str, name: str, slug: str, token_max_age_sec: int = DEFAULT_TOKEN_MAX_AGE_SEC) -> dict:
    return store.create(
        {
            "organizationId": organization_id,
            "name": name,
            "slug": slug,
            "signingSecret": generate_signing_secret(),
            "tokenMaxAgeSec": token_max_age_sec,
            "isActive": True,
        }
    )


def _resolve_partner(store, agent_org_id: str, partner_id: str | None) -> dict | None:
    if partner_id:
        partner = store.get(partner_id)
        return partner if partner and partner.get("isActive") else None
    return store.find_one(organizationId=agent_org_id, isActive=True)


def _provision_user(stores, email: str, name: str, organization_id: str, partner_user_id: str) -> str | None:
    records = stores.records
    user = records.find_one("users", PLATFORM_TENANT, where={"email": email})
    if not user:
        user = records.create("users", {"email": email, "name": name, "status": "active", "emailVerified": True}, PLATFORM_TENANT)
        logger.info("embed_user_provisioned user_id=%s partner_user_id=%s", user["id"], partner_user_id)
    if not stores.orgs.get_membership(user["id"], organization_id):
        stores.orgs.add_membership(user["id"], organization_id, "member")
    records.update("partner_users", partner_user_id, {"userId": user["id"]}, PLATFORM_TENANT)
    return user["id"]


def _payload_shape_ok(payload: dict) -> bool:
    if not isinstance(payload["externalUserId"], str):
        return False
    exp = payload.get("exp")
    if exp is not None and (isinstance(exp, bool) or not isinstance(exp, (int, float))):
        return False
    return all(payload.get(key) is None or isinstance(payload[key], str) for key in ("email", "name"))


def verify_embed_identity(stores, identity_token: str, agent_org_id: str, partner_id: str | None = None, now: float | None = None) -> dict | None:
    """Return the verified identity (provisioning the partner user), or None."""
    token = identity_token or ""
    dot = token.rfind(".")
    if dot <= 0 or dot == len(token) - 1:
        logger.warning("embed_identity_invalid reason=missing_separator")
        return None
    payload_b64, signature = token[:dot], token[dot + 1 :]

    try:
        payload = json.loads(_b64url_decode(payload_b64).decode("utf-8"))
    except (ValueError, binascii.Error):
        logger.warning("embed_identity_invalid reason=payload_decode")
        return None
    if not isinstance(payload, dict) or not payload.get("externalUserId"):
        logger.warning("embed_identity_invalid reason=missing_external_user_id")
        return None

    partner = _resolve_partner(stores.embed, agent_org_id, partner_id)
    if not partner:
        logger.warning("embed_identity_invalid reason=no_partner partner_id=%s org_id=%s", partner_id or "auto", agent_org_id)
        return None
    if partner.get("organizationId") != agent_org_id:
        logger.warning("embed_identity_invalid reason=org_mismatch partner=%s", partner.get("slug"))
        return None

    expected = _signature(partner["signingSecret"], payload_b64)
    if not hmac.compare_digest(signature.encode("utf-8"), expected.encode("utf-8")):
        logger.warning("embed_identity_invalid reason=signature partner=%s", partner.get("slug"))
        return None

    if not _payload_shape_ok(payload):
        logger.warning("embed_identity_invalid reason=payload_shape partner=%s", partner.get("slug"))
        return None

    exp = payload.get("exp")
    if exp:
        now_sec = int(now if now is not None else time.time())
        if now_sec > exp:
            logger.warning("embed_identity_invalid reason=expired partner=%s", partner.get("slug"))
            return None
        max_age = partner.get("tokenMaxAgeSec") or DEFAULT_TOKEN_MAX_AGE_SEC
        if now_sec - (exp - max_age) > max_age:
            logger.warning("embed_identity_invalid reason=max_age partner=%s", partner.get("slug"))
            return None

    changes = {"lastSeenAt": _now()}
    for key in ("email", "name", "metadata"):
        if payload.get(key):
            changes[key] = payload[key]
    partner_user = stores.embed.upsert_partner_user(partner["id"], payload["externalUserId"], changes)
    mapped_user_id = partner_user.get("userId")
    if not mapped_user_id and payload.get("email"):
        email = payload["email"]
        mapped_user_id = _provision_user(
            stores,
            email,
            payload.get("name") or email.split("@")[0] or "Partner User",
            partner["organizationId"],
            partner_user["id"],
        )

    return {
        "partnerId": partner["id"],
        "partnerSlug": partner.get("slug"),
        "partnerName": partner.get("name"),
        "organizationId": partner["organizationId"],
        "externalUserId": payload["externalUserId"],
        "email": payload.get("email"),
        "name": payload.get("name"),
        "metadata": payload.get("metadata"),
        "mappedUserId": mapped_user_id,
        "partnerUserId": partner_user["id"],
    }
