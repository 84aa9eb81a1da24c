"""In-memory record store and the domain stores built on any record store."""

from __future__ import annotations

import copy
import itertools
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List

from app.stores_db import get_org_id

PLATFORM_TENANT = "_platform"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def iso(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


def _matches(record: dict, where: dict | None) -> bool:
    for key, expected in (where or {}).items():
        actual = record.get(key)
        if isinstance(expected, (list, tuple, set)):
            if actual not in expected:
                return False
        elif actual != expected:
            return False
    return True


class MemoryRecordStore:
    """Records bucketed by tenant and entity, filtered by exact-match ``where``."""

    def __init__(self) -> None:
        self._records: Dict[str, Dict[str, Dict[str, dict]]] = {}
        self._seq = itertools.count()
        self._order: Dict[str, int] = {}
        self._lock = threading.RLock()

    def _bucket(self, tenant_id: str, entity: str) -> Dict[str, dict]:
        return self._records.setdefault(tenant_id, {}).setdefault(entity, {})

    def create(self, entity: str, data: dict, tenant_id: str) -> dict:
        record = copy.deepcopy(data)
        record.setdefault("id", str(uuid.uuid4()))
        now = _now()
        record.setdefault("createdAt", now)
        record["updatedAt"] = now
        with self._lock:
            self._bucket(tenant_id, entity)[record["id"]] = record
            self._order[record["id"]] = next(self._seq)
        return copy.deepcopy(record)

    def get(self, entity: str, record_id: str, tenant_id: str) -> dict | None:
        record = self._bucket(tenant_id, entity).get(record_id)
        return copy.deepcopy(record) if record else None

    def update(self, entity: str, record_id: str, changes: dict, tenant_id: str) -> dict | None:
        with self._lock:
            record = self._bucket(tenant_id, entity).get(record_id)
            if record is None:
                return None
            record.update(copy.deepcopy(changes))
            record["id"] = record_id
            record["updatedAt"] = _now()
            return copy.deepcopy(record)

    def delete(self, entity: str, record_id: str, tenant_id: str) -> bool:
        with self._lock:
            return self._bucket(tenant_id, entity).pop(record_id, None) is not None

    def find(
        self,
        entity: str,
        tenant_id: str,
        where: dict | None = None,
        since: str | None = None,
        before: str | None = None,
        newest_first: bool = False,
        limit: int | None = None,
    ) -> List[dict]:
        with self._lock:
            items = [r for r in self._bucket(tenant_id, entity).values() if _matches(r, where)]
        if since:
            items = [r for r in items if (r.get("createdAt") or "") >= since]
        if before:
            items = [r for r in items if (r.get("createdAt") or "") < before]
        items.sort(key=lambda r: (r.get("createdAt") or "", self._order.get(r["id"], 0)), reverse=newest_first)
        if limit is not None:
            items = items[:limit]
        return [copy.deepcopy(r) for r in items]

    def find_one(self, entity: str, tenant_id: str, where: dict | None = None) -> dict | None:
        items = self.find(entity, tenant_id, where=where, limit=1)
        return items[0] if items else None


class _EntityStore:
    entity = ""
    platform = False

    def __init__(self, records) -> None:
        self.records = records

    def _tenant(self, org_id: str | None = None) -> str:
        if self.platform:
            return PLATFORM_TENANT
        return org_id or get_org_id()

    def create(self, data: dict, org_id: str | None = None) -> dict:
        return self.records.create(self.entity, data, self._tenant(org_id))

    def get(self, record_id: str, org_id: str | None = None) -> dict | None:
        return self.records.get(self.entity, record_id, self._tenant(org_id))

    def update(self, record_id: str, changes: dict, org_id: str | None = None) -> dict | None:
        return self.records.update(self.entity, record_id, changes, self._tenant(org_id))

    def delete(self, record_id: str, org_id: str | None = None) -> bool:
        return self.records.delete(self.entity, record_id, self._tenant(org_id))

    def list(self, org_id: str | None = None, newest_first: bool = True, limit: int | None = None, **where) -> List[dict]:
        return self.records.find(self.entity, self._tenant(org_id), where=where or None, newest_first=newest_first, limit=limit)

    def find_one(self, org_id: str | None = None, **where) -> dict | None:
        return self.records.find_one(self.entity, self._tenant(org_id), where=where)


class OrganizationStore(_EntityStore):
    entity = "organizations"
    platform = True

    def get_by_slug(self, slug: str) -> dict | None:
        return self.find_one(slug=slug)

    def list_memberships(self, user_id: str) -> List[dict]:
        return self.records.find("memberships", PLATFORM_TENANT, where={"userId": user_id})

    def get_membership(self, user_id: str, org_id: str) -> dict | None:
        return self.records.find_one("memberships", PLATFORM_TENANT, where={"userId": user_id, "organizationId": org_id})

    def add_membership(self, user_id: str, org_id: str, role: str) -> dict:
        existing = self.get_membership(user_id, org_id)
        if existing:
            return self.records.update("memberships", existing["id"], {"role": role}, PLATFORM_TENANT)
        return self.records.create("memberships", {"userId": user_id, "organizationId": org_id, "role": role}, PLATFORM_TENANT)


class AgentStore(_EntityStore):
    entity = "agents"

    def get_by_slug(self, slug: str, org_id: str | None = None) -> dict | None:
        return self.find_one(org_id, slug=slug)

    def slugs(self, org_id: str | None = None) -> set[str]:
        return {a["slug"] for a in self.list(org_id) if a.get("slug")}


class _VersionedStore(_EntityStore):
    """Definitions with numbered snapshots in ``<entity>_versions``."""

    parent_key = ""

    @property
    def version_entity(self) -> str:
        return f"{self.entity}_versions"

    def get_by_slug(self, slug: str, org_id: str | None = None) -> dict | None:
        return self.find_one(org_id, slug=slug)

    def resolve(self, id_or_slug: str, org_id: str | None = None) -> dict | None:
        return self.get(id_or_slug, org_id) or self.get_by_slug(id_or_slug, org_id)

    def add_version(self, parent_id: str, version: int, snapshot: dict, description: str, created_by: str | None, org_id: str | None = None) -> dict:
        data = {self.parent_key: parent_id, "version": version, "description": description, "createdBy": created_by}
        data.update(copy.deepcopy(snapshot))
        return self.records.create(self.version_entity, data, self._tenant(org_id))

    def list_versions(self, parent_id: str, org_id: str | None = None) -> List[dict]:
        items = self.records.find(self.version_entity, self._tenant(org_id), where={self.parent_key: parent_id})
        return sorted(items, key=lambda v: v.get("version") or 0, reverse=True)

    def get_version(self, parent_id: str, version: int, org_id: str | None = None) -> dict | None:
        return self.records.find_one(self.version_entity, self._tenant(org_id), where={self.parent_key: parent_id, "version": version})

    def delete_versions(self, parent_id: str, org_id: str | None = None) -> None:
        for item in self.list_versions(parent_id, org_id):
            self.records.delete(self.version_entity, item["id"], self._tenant(org_id))


class WorkflowStore(_VersionedStore):
    entity = "workflows"
    parent_key = "workflowId"


class NetworkStore(_VersionedStore):
    entity = "networks"
    parent_key = "networkId"

    def list_primitives(self, network_id: str, org_id: str | None = None) -> List[dict]:
        return self.records.find("network_primitives", self._tenant(org_id), where={"networkId": network_id})

    def replace_primitives(self, network_id: str, primitives: Iterable[dict], org_id: str | None = None) -> List[dict]:
        tenant = self._tenant(org_id)
        for existing in self.list_primitives(network_id, org_id):
            self.records.delete("network_primitives", existing["id"], tenant)
        created = []
        for primitive in primitives:
            data = {key: primitive.get(key) for key in ("primitiveType", "agentId", "workflowId", "toolId", "description", "position")}
            data["networkId"] = network_id
            created.append(self.records.create("network_primitives", data, tenant))
        return created


class FederationStore(_EntityStore):
    """Agreements, exposures, messages and org key pairs; shared across tenants."""

    entity = "federation_agreements"
    platform = True

    def get_agreement(self, agreement_id: str) -> dict | None:
        return self.get(agreement_id)

    def update_agreement(self, agreement_id: str, changes: dict) -> dict | None:
        return self.update(agreement_id, changes)

    def list_agreements_for_org(self, org_id: str, statuses: Iterable[str] | None = None) -> List[dict]:
        wanted = set(statuses) if statuses else None
        items = []
        for agreement in self.list():
            if org_id not in (agreement.get("initiatorOrgId"), agreement.get("responderOrgId")):
                continue
            if wanted is not None and agreement.get("status") not in wanted:
                continue
            items.append(agreement)
        return items

    def find_between(self, org_a: str, org_b: str, statuses: Iterable[str]) -> dict | None:
        for agreement in self.list_agreements_for_org(org_a, statuses):
            if org_b in (agreement.get("initiatorOrgId"), agreement.get("responderOrgId")):
                return agreement
        return None

    def add_exposure(self, data: dict) -> dict:
        return self.records.create("federation_exposures", data, PLATFORM_TENANT)

    def list_exposures(self, agreement_id: str, owner_org_id: str | None = None) -> List[dict]:
        where = {"agreementId": agreement_id}
        if owner_org_id:
            where["ownerOrgId"] = owner_org_id
        return self.records.find("federation_exposures", PLATFORM_TENANT, where=where)

    def update_exposure(self, exposure_id: str, changes: dict) -> dict | None:
        return self.records.update("federation_exposures", exposure_id, changes, PLATFORM_TENANT)

    def create_message(self, data: dict) -> dict:
        return self.records.create("federation_messages", data, PLATFORM_TENANT)

    def get_message(self, message_id: str) -> dict | None:
        return self.records.get("federation_messages", message_id, PLATFORM_TENANT)

    def list_messages(self, agreement_id: str, limit: int = 100) -> List[dict]:
        return self.records.find("federation_messages", PLATFORM_TENANT, where={"agreementId": agreement_id}, newest_first=True, limit=limit)

    def get_active_key(self, org_id: str) -> dict | None:
        return self.records.find_one("org_key_pairs", PLATFORM_TENANT, where={"organizationId": org_id, "isActive": True})

    def get_key(self, key_id: str) -> dict | None:
        return self.records.get("org_key_pairs", key_id, PLATFORM_TENANT)

    def get_key_by_version(self, org_id: str, key_version: int) -> dict | None:
        return self.records.find_one("org_key_pairs", PLATFORM_TENANT, where={"organizationId": org_id, "keyVersion": key_version})

    def list_keys(self, org_id: str) -> List[dict]:
        return self.records.find("org_key_pairs", PLATFORM_TENANT, where={"organizationId": org_id})

    def save_key(self, data: dict) -> dict:
        return self.records.create("org_key_pairs", data, PLATFORM_TENANT)

    def update_key(self, key_id: str, changes: dict) -> dict | None:
        return self.records.update("org_key_pairs", key_id, changes, PLATFORM_TENANT)


class RunStore(_EntityStore):
    entity = "agent_runs"

    def create_trace(self, data: dict, org_id: str | None = None) -> dict:
        return self.records.create("agent_traces", data, self._tenant(org_id))

    def update_trace(self, trace_id: str, changes: dict, org_id: str | None = None) -> dict | None:
        return self.records.update("agent_traces", trace_id, changes, self._tenant(org_id))

    def get_trace_for_run(self, run_id: str, org_id: str | None = None) -> dict | None:
        return self.records.find_one("agent_traces", self._tenant(org_id), where={"runId": run_id})

    def add_tool_call(self, data: dict, org_id: str | None = None) -> dict:
        return self.records.create("agent_tool_calls", data, self._tenant(org_id))

    def list_tool_calls(self, run_id: str, org_id: str | None = None) -> List[dict]:
        return self.records.find("agent_tool_calls", self._tenant(org_id), where={"runId": run_id})

    def add_evaluation(self, data: dict, org_id: str | None = None) -> dict:
        return self.records.create("agent_evaluations", data, self._tenant(org_id))

    def list_evaluations(self, run_id: str, org_id: str | None = None) -> List[dict]:
        return self.records.find("agent_evaluations", self._tenant(org_id), where={"runId": run_id})

    def create_network_run(self, data: dict, org_id: str | None = None) -> dict:
        return self.records.create("network_runs", data, self._tenant(org_id))

    def get_network_run(self, run_id: str, org_id: str | None = None) -> dict | None:
        return self.records.get("network_runs", run_id, self._tenant(org_id))

    def update_network_run(self, run_id: str, changes: dict, org_id: str | None = None) -> dict | None:
        return self.records.update("network_runs", run_id, changes, self._tenant(org_id))

    def list_network_runs(self, network_id: str | None = None, org_id: str | None = None, limit: int = 50) -> List[dict]:
        where = {"networkId": network_id} if network_id else None
        return self.records.find("network_runs", self._tenant(org_id), where=where, newest_first=True, limit=limit)

    def add_network_step(self, data: dict, org_id: str | None = None) -> dict:
        return self.records.create("network_run_steps", data, self._tenant(org_id))

    def list_network_steps(self, run_id: str, org_id: str | None = None) -> List[dict]:
        items = self.records.find("network_run_steps", self._tenant(org_id), where={"runId": run_id})
        return sorted(items, key=lambda s: s.get("stepNumber") or 0)


class SessionStore(_EntityStore):
    entity = "agent_sessions"


class ScheduleStore(_EntityStore):
    entity = "agent_schedules"

    def due(self, now_iso: str, org_id: str | None = None) -> List[dict]:
        items = self.list(org_id, newest_first=False, isActive=True)
        return [s for s in items if s.get("nextRunAt") and s["nextRunAt"] <= now_iso]


class BudgetStore(_EntityStore):
    entity = "cost_events"

    def add_cost_event(self, data: dict, org_id: str | None = None) -> dict:
        return self.create(data, org_id)

    def list_cost_events(self, org_id: str | None = None, since: str | None = None, before: str | None = None, **where) -> List[dict]:
        return self.records.find(self.entity, self._tenant(org_id), where=where or None, since=since, before=before)

    def get_policy(self, level: str, org_id: str | None = None, **keys) -> dict | None:
        return self.records.find_one("budget_policies", self._tenant(org_id), where={"level": level, **keys})

    def upsert_policy(self, level: str, data: dict, org_id: str | None = None, **keys) -> dict:
        existing = self.get_policy(level, org_id, **keys)
        if existing:
            return self.records.update("budget_policies", existing["id"], data, self._tenant(org_id))
        return self.records.create("budget_policies", {"level": level, **keys, **data}, self._tenant(org_id))

    def get_subscription(self, org_id: str | None = None) -> dict | None:
        return self.records.find_one("org_subscriptions", self._tenant(org_id))

    def save_subscription(self, data: dict, org_id: str | None = None) -> dict:
        existing = self.get_subscription(org_id)
        if existing:
            return self.records.update("org_subscriptions", existing["id"], data, self._tenant(org_id))
        return self.records.create("org_subscriptions", data, self._tenant(org_id))

    def find_alerts(self, org_id: str | None = None, since: str | None = None, **where) -> List[dict]:
        return self.records.find("budget_alerts", self._tenant(org_id), where=where or None, since=since, newest_first=True)

    def add_alert(self, data: dict, org_id: str | None = None) -> dict:
        return self.records.create("budget_alerts", data, self._tenant(org_id))


class AuditStore(_EntityStore):
    entity = "audit_logs"

    def query(self, org_id: str | None = None, limit: int = 100, **where) -> List[dict]:
        where = {k: v for k, v in where.items() if v is not None}
        return self.list(org_id, newest_first=True, limit=limit, **where)


class EmbedStore(_EntityStore):
    entity = "embed_partners"
    platform = True

    def get_by_slug(self, slug: str) -> dict | None:
        return self.find_one(slug=slug)

    def find_partner_user(self, partner_id: str, external_user_id: str) -> dict | None:
        return self.records.find_one(
            "partner_users",
            PLATFORM_TENANT,
            where={"partnerId": partner_id, "externalUserId": external_user_id},
        )

    def upsert_partner_user(self, partner_id: str, external_user_id: str, data: dict) -> dict:
        existing = self.find_partner_user(partner_id, external_user_id)
        if existing:
            return self.records.update("partner_users", existing["id"], data, PLATFORM_TENANT)
        return self.records.create(
            "partner_users",
            {"partnerId": partner_id, "externalUserId": external_user_id, **data},
            PLATFORM_TENANT,
        )


class McpServerStore(_EntityStore):
    entity = "mcp_servers"

    def get_by_name(self, name: str, org_id: str | None = None) -> dict | None:
        lowered = name.lower()
        for server in self.list(org_id):
            if server.get("name", "").lower() == lowered:
                return server
        return None


class Stores:
    """Every domain store over a single record store."""

    def __init__(self, records) -> None:
        self.records = records
        self.orgs = OrganizationStore(records)
        self.agents = AgentStore(records)
        self.workflows = WorkflowStore(records)
        self.networks = NetworkStore(records)
        self.federation = FederationStore(records)
        self.runs = RunStore(records)
        self.sessions = SessionStore(records)
        self.schedules = ScheduleStore(records)
        self.budget = BudgetStore(records)
        self.audit = AuditStore(records)
        self.embed = EmbedStore(records)
        self.mcp_servers = McpServerStore(records)


def memory_stores() -> Stores:
    return Stores(MemoryRecordStore())
