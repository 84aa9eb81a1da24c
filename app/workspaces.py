from __future__ import annotations

import os
import re
import time

from network_topology import generate_slug

ROLES = ("owner", "admin", "member", "viewer")

_MEMBERSHIP_CACHE: dict[str, dict] = {}
_MEMBERSHIP_TTL_S = float(os.getenv("AGENTC2_MEMBERSHIP_CACHE_TTL", "30"))
_SLUG_OK_RE = re.compile(r"^[a-z0-9][a-z0-9-]*$")


class WorkspaceError(RuntimeError):
    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


def list_memberships(orgs, user_id: str) -> list[dict]:
    now = time.time()
    cached = _MEMBERSHIP_CACHE.get(user_id)
    if cached and now - cached["ts"] < _MEMBERSHIP_TTL_S:
        return cached["value"]
    value = orgs.list_memberships(user_id) or []
    _MEMBERSHIP_CACHE[user_id] = {"value": value, "ts": now}
    return value


def invalidate_membership_cache(user_id: str | None = None) -> None:
    if user_id:
        _MEMBERSHIP_CACHE.pop(user_id, None)
        return
    _MEMBERSHIP_CACHE.clear()


def resolve_membership(orgs, user_id: str, org_hint: str | None = None) -> tuple[dict, dict] | None:
    """Pick the caller's organization: the hinted id/slug, else the first membership."""
    memberships = list_memberships(orgs, user_id)
    if not memberships:
        return None
    if org_hint:
        org = orgs.get(org_hint) or orgs.get_by_slug(org_hint)
        if not org:
            return None
        for membership in memberships:
            if membership.get("organizationId") == org["id"]:
                return org, membership
        return None
    membership = memberships[0]
    org = orgs.get(membership.get("organizationId"))
    return (org, membership) if org else None


def create_organization(stores, name: str, owner_user_id: str, slug: str | None = None) -> dict:
    slug = slug or generate_slug(name)
    if not slug or not _SLUG_OK_RE.match(slug):
        raise WorkspaceError("ORG_SLUG_INVALID", "Organization slug must be lowercase letters, digits and dashes")
    if stores.orgs.get_by_slug(slug):
        raise WorkspaceError("ORG_SLUG_TAKEN", f"Organization slug '{slug}' already exists")
    org = stores.orgs.create({"name": name, "slug": slug, "status": "active"})
    stores.records.create(
        "workspaces",
        {"name": "Default", "slug": "default", "organizationId": org["id"], "isDefault": True},
        org["id"],
    )
    stores.orgs.add_membership(owner_user_id, org["id"], "owner")
    invalidate_membership_cache(owner_user_id)
    return org


def list_workspaces(stores, org_id: str) -> list[dict]:
    return stores.records.find("workspaces", org_id)


def default_workspace_id(stores, org_id: str) -> str | None:
    workspace = stores.records.find_one("workspaces", org_id, where={"isDefault": True})
    return workspace["id"] if workspace else None


def add_member(stores, org_id: str, user_id: str, role: str) -> dict:
    if role not in ROLES:
        raise WorkspaceError("MEMBER_ROLE_INVALID", f"Role must be one of {', '.join(ROLES)}")
    membership = stores.orgs.add_membership(user_id, org_id, role)
    invalidate_membership_cache(user_id)
    return membership
