"""Workflow and network definitions: CRUD with numbered versions and restore."""

from __future__ import annotations

import logging
from typing import Any

import network_topology
from agentc2 import definition_hash
from app.audit import write_audit_log
from app.stores import _now
from workflow_validate import validate_workflow_definition

logger = logging.getLogger("agentc2.definitions")

DELETE_MODES = ("delete", "archive")
DEFINITION_TYPES = ("USER", "SYSTEM")

WORKFLOW_FIELDS = (
    "name",
    "description",
    "maxSteps",
    "timeout",
    "isPublished",
    "isActive",
    "workspaceId",
    "ownerId",
    "type",
    "compiledAt",
    "compiledHash",
)
WORKFLOW_JSON_FIELDS = ("compiledJson", "inputSchemaJson", "outputSchemaJson", "retryConfig")

NETWORK_FIELDS = (
    "name",
    "description",
    "instructions",
    "modelProvider",
    "modelName",
    "temperature",
    "maxSteps",
    "isPublished",
    "isActive",
    "workspaceId",
    "ownerId",
    "type",
)
NETWORK_JSON_FIELDS = ("memoryConfig",)
NETWORK_REQUIRED = ("name", "instructions", "modelProvider", "modelName")


class DefinitionError(RuntimeError):
    def __init__(self, code: str, message: str, detail: dict | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.detail = detail


def _merge(existing: dict, payload: dict, fields: tuple, json_fields: tuple) -> dict:
    out = {}
    for key in fields:
        value = payload.get(key)
        out[key] = value if value is not None else existing.get(key)
    for key in json_fields:
        out[key] = payload[key] if key in payload else existing.get(key)
    return out


def _check_type(payload: dict, kind: str) -> None:
    value = payload.get("type")
    if value is not None and value not in DEFINITION_TYPES:
        raise DefinitionError(f"{kind}_INVALID", "type must be USER or SYSTEM")


def _unique_slug(store, slug: str, org_id: str, kind: str, label: str) -> str:
    if not slug:
        raise DefinitionError(f"{kind}_INVALID", "name or slug is required")
    if store.get_by_slug(slug, org_id):
        raise DefinitionError(f"{kind}_SLUG_TAKEN", f"{label} slug '{slug}' already exists")
    return slug


def _require(store, id_or_slug: str, org_id: str, kind: str, label: str) -> dict:
    record = store.resolve(id_or_slug, org_id)
    if not record:
        raise DefinitionError(f"{kind}_NOT_FOUND", f"{label} '{id_or_slug}' not found")
    return record


def _restore_target(store, record: dict, org_id: str, kind: str, label: str, restore_version: int | None, restore_version_id: str | None) -> dict | None:
    if restore_version is None and not restore_version_id:
        return None
    for version in store.list_versions(record["id"], org_id):
        if restore_version_id and version["id"] == restore_version_id:
            return version
        if not restore_version_id and version.get("version") == restore_version:
            return version
    raise DefinitionError(f"{kind}_VERSION_NOT_FOUND", f"Requested {label.lower()} version not found")


def _next_version(store, parent_id: str, org_id: str) -> int:
    versions = store.list_versions(parent_id, org_id)
    return (versions[0].get("version") or 0) + 1 if versions else 1


# workflows


def _validate_workflow(definition: Any) -> dict:
    result = validate_workflow_definition(definition)
    if not result["ok"]:
        raise DefinitionError("WORKFLOW_INVALID", "Workflow definition is invalid", {"errors": result["errors"]})
    return result


def list_workflows(stores, org_id: str, include_inactive: bool = True) -> list[dict]:
    items = stores.workflows.list(org_id)
    return items if include_inactive else [w for w in items if w.get("isActive", True)]


def get_workflow(stores, id_or_slug: str, org_id: str, include_versions: bool = False) -> dict:
    workflow = _require(stores.workflows, id_or_slug, org_id, "WORKFLOW", "Workflow")
    if include_versions:
        workflow["versions"] = stores.workflows.list_versions(workflow["id"], org_id)
    return workflow


def create_workflow(stores, data: dict, org_id: str, actor_id: str | None = None) -> dict:
    _check_type(data, "WORKFLOW")
    slug = _unique_slug(
        stores.workflows,
        data.get("slug") or network_topology.generate_slug(data.get("name") or ""),
        org_id,
        "WORKFLOW",
        "Workflow",
    )
    definition = data.get("definitionJson") or {"steps": []}
    _validate_workflow(definition)
    record = {
        "slug": slug,
        "name": data.get("name") or slug,
        "description": data.get("description"),
        "definitionJson": definition,
        "compiledJson": data.get("compiledJson"),
        "compiledAt": data.get("compiledAt") or _now(),
        "compiledHash": data.get("compiledHash") or definition_hash(definition),
        "inputSchemaJson": data.get("inputSchemaJson"),
        "outputSchemaJson": data.get("outputSchemaJson"),
        "maxSteps": data.get("maxSteps") or 50,
        "timeout": data.get("timeout"),
        "retryConfig": data.get("retryConfig"),
        "isPublished": bool(data.get("isPublished", False)),
        "isActive": bool(data.get("isActive", True)),
        "workspaceId": data.get("workspaceId"),
        "ownerId": data.get("ownerId"),
        "type": data.get("type") or "USER",
        "version": 1,
    }
    workflow = stores.workflows.create(record, org_id)
    stores.workflows.add_version(
        workflow["id"],
        1,
        {"definitionJson": definition},
        data.get("versionDescription") or "Initial version",
        data.get("createdBy") or actor_id,
        org_id,
    )
    write_audit_log(stores.audit, "WORKFLOW_CREATE", "workflow", workflow["id"], actor_id, org_id, {"slug": slug})
    logger.info("workflow_created org_id=%s workflow_id=%s slug=%s", org_id, workflow["id"], slug)
    return workflow


def update_workflow(
    stores,
    id_or_slug: str,
    data: dict | None,
    org_id: str,
    actor_id: str | None = None,
    restore_version: int | None = None,
    restore_version_id: str | None = None,
    version_description: str | None = None,
) -> dict:
    if not data and restore_version is None and not restore_version_id:
        raise DefinitionError("WORKFLOW_INVALID", "Update requires data or a restoreVersion value")
    existing = _require(stores.workflows, id_or_slug, org_id, "WORKFLOW", "Workflow")
    if existing.get("type") == "SYSTEM":
        raise DefinitionError("WORKFLOW_SYSTEM_READONLY", "SYSTEM workflows cannot be modified")
    payload = dict(data or {})
    _check_type(payload, "WORKFLOW")

    restored = _restore_target(stores.workflows, existing, org_id, "WORKFLOW", "Workflow", restore_version, restore_version_id)
    next_definition = (restored or {}).get("definitionJson") or payload.get("definitionJson") or existing.get("definitionJson")
    definition_changed = restored is not None or (
        "definitionJson" in payload and definition_hash(payload["definitionJson"]) != definition_hash(existing.get("definitionJson"))
    )
    changes = _merge(existing, payload, WORKFLOW_FIELDS, WORKFLOW_JSON_FIELDS)
    changes["definitionJson"] = next_definition
    if definition_changed:
        _validate_workflow(next_definition)
        version = _next_version(stores.workflows, existing["id"], org_id)
        changes["version"] = version
        changes["compiledHash"] = definition_hash(next_definition)
        changes["compiledAt"] = _now()
        stores.workflows.add_version(
            existing["id"],
            version,
            {"definitionJson": next_definition},
            version_description or ("Restored version" if restored else "Definition update"),
            actor_id,
            org_id,
        )
    workflow = stores.workflows.update(existing["id"], changes, org_id)
    write_audit_log(
        stores.audit,
        "WORKFLOW_UPDATE",
        "workflow",
        existing["id"],
        actor_id,
        org_id,
        {"version": changes.get("version"), "restoredFrom": (restored or {}).get("version")},
    )
    return workflow


def delete_workflow(stores, id_or_slug: str, org_id: str, actor_id: str | None = None, mode: str = "delete") -> dict:
    if mode not in DELETE_MODES:
        raise DefinitionError("WORKFLOW_INVALID", "mode must be delete or archive")
    existing = _require(stores.workflows, id_or_slug, org_id, "WORKFLOW", "Workflow")
    if existing.get("type") == "SYSTEM":
        raise DefinitionError("WORKFLOW_SYSTEM_READONLY", "SYSTEM workflows cannot be deleted")
    if mode == "archive":
        stores.workflows.update(existing["id"], {"isActive": False, "isPublished": False}, org_id)
        message = f"Workflow '{id_or_slug}' archived"
    else:
        stores.workflows.delete_versions(existing["id"], org_id)
        stores.workflows.delete(existing["id"], org_id)
        message = f"Workflow '{id_or_slug}' deleted"
    write_audit_log(stores.audit, "WORKFLOW_DELETE", "workflow", existing["id"], actor_id, org_id, {"mode": mode})
    return {"success": True, "message": message}


# networks


def _known_primitives(stores, org_id: str) -> dict:
    return {
        "agent": {a["id"] for a in stores.agents.list(org_id)},
        "workflow": {w["id"] for w in stores.workflows.list(org_id)},
    }


def _validate_network(stores, topology: Any, primitives: list, org_id: str) -> dict:
    result = network_topology.validate_network(topology, primitives, _known_primitives(stores, org_id))
    if not result["ok"]:
        raise DefinitionError("NETWORK_INVALID", "Network definition is invalid", {"errors": result["errors"]})
    return result


def _primitive_rows(primitives: list) -> list[dict]:
    return [
        {key: p.get(key) for key in ("primitiveType", "agentId", "workflowId", "toolId", "description", "position")}
        for p in primitives
    ]


def list_networks(stores, org_id: str, include_inactive: bool = True) -> list[dict]:
    items = stores.networks.list(org_id)
    return items if include_inactive else [n for n in items if n.get("isActive", True)]


def get_network(stores, id_or_slug: str, org_id: str, include_primitives: bool = False, include_versions: bool = False) -> dict:
    network = _require(stores.networks, id_or_slug, org_id, "NETWORK", "Network")
    if include_primitives:
        network["primitives"] = stores.networks.list_primitives(network["id"], org_id)
    if include_versions:
        network["versions"] = stores.networks.list_versions(network["id"], org_id)
    return network


def create_network(stores, data: dict, org_id: str, actor_id: str | None = None) -> dict:
    for key in NETWORK_REQUIRED:
        if not data.get(key):
            raise DefinitionError("NETWORK_INVALID", f"{key} is required")
    _check_type(data, "NETWORK")
    slug = _unique_slug(
        stores.networks,
        data.get("slug") or network_topology.generate_slug(data["name"]),
        org_id,
        "NETWORK",
        "Network",
    )
    primitives = data.get("primitives") if isinstance(data.get("primitives"), list) else []
    base = data.get("topologyJson") or {"nodes": [], "edges": []}
    topology = network_topology.build_topology_from_primitives(primitives) if primitives and network_topology.is_topology_empty(base) else base
    _validate_network(stores, topology, primitives, org_id)

    network = stores.networks.create(
        {
            "slug": slug,
            "name": data["name"],
            "description": data.get("description"),
            "instructions": data["instructions"],
            "modelProvider": data["modelProvider"],
            "modelName": data["modelName"],
            "temperature": data.get("temperature") if data.get("temperature") is not None else 0.7,
            "topologyJson": topology,
            "memoryConfig": data.get("memoryConfig") or {},
            "maxSteps": data.get("maxSteps") or 10,
            "isPublished": bool(data.get("isPublished", False)),
            "isActive": bool(data.get("isActive", True)),
            "workspaceId": data.get("workspaceId"),
            "ownerId": data.get("ownerId"),
            "type": data.get("type") or "USER",
            "version": 1,
        },
        org_id,
    )
    stores.networks.replace_primitives(network["id"], primitives, org_id)
    stores.networks.add_version(
        network["id"],
        1,
        {"topologyJson": topology, "primitivesJson": _primitive_rows(primitives)},
        data.get("versionDescription") or "Initial version",
        data.get("createdBy") or actor_id,
        org_id,
    )
    write_audit_log(stores.audit, "NETWORK_CREATE", "network", network["id"], actor_id, org_id, {"slug": slug})
    logger.info("network_created org_id=%s network_id=%s slug=%s", org_id, network["id"], slug)
    return network


def update_network(
    stores,
    id_or_slug: str,
    data: dict | None,
    org_id: str,
    actor_id: str | None = None,
    restore_version: int | None = None,
    restore_version_id: str | None = None,
    version_description: str | None = None,
) -> dict:
    if not data and restore_version is None and not restore_version_id:
        raise DefinitionError("NETWORK_INVALID", "Update requires data or a restoreVersion value")
    existing = _require(stores.networks, id_or_slug, org_id, "NETWORK", "Network")
    if existing.get("type") == "SYSTEM":
        raise DefinitionError("NETWORK_SYSTEM_READONLY", "SYSTEM networks cannot be modified")
    payload = dict(data or {})
    _check_type(payload, "NETWORK")

    restored = _restore_target(stores.networks, existing, org_id, "NETWORK", "Network", restore_version, restore_version_id)
    topology_source = (restored or {}).get("topologyJson") or payload.get("topologyJson") or existing.get("topologyJson")
    if restored is not None:
        next_primitives = restored.get("primitivesJson") or []
    elif isinstance(payload.get("primitives"), list):
        next_primitives = payload["primitives"]
    else:
        next_primitives = _primitive_rows(stores.networks.list_primitives(existing["id"], org_id))
    auto_generate = bool(next_primitives) and network_topology.is_topology_empty(topology_source)
    next_topology = network_topology.build_topology_from_primitives(next_primitives) if auto_generate else topology_source

    topology_changed = (
        restored is not None
        or auto_generate
        or ("topologyJson" in payload and definition_hash(payload["topologyJson"]) != definition_hash(existing.get("topologyJson")))
    )
    primitives_changed = restored is not None or isinstance(payload.get("primitives"), list)

    changes = _merge(existing, payload, NETWORK_FIELDS, NETWORK_JSON_FIELDS)
    changes["topologyJson"] = next_topology
    if topology_changed or primitives_changed:
        _validate_network(stores, next_topology, next_primitives, org_id)
        version = _next_version(stores.networks, existing["id"], org_id)
        changes["version"] = version
        stores.networks.add_version(
            existing["id"],
            version,
            {"topologyJson": next_topology, "primitivesJson": _primitive_rows(next_primitives)},
            version_description or ("Restored version" if restored else "Topology update"),
            actor_id,
            org_id,
        )
    network = stores.networks.update(existing["id"], changes, org_id)
    if primitives_changed:
        stores.networks.replace_primitives(existing["id"], next_primitives, org_id)
    write_audit_log(
        stores.audit,
        "NETWORK_UPDATE",
        "network",
        existing["id"],
        actor_id,
        org_id,
        {"version": changes.get("version"), "restoredFrom": (restored or {}).get("version")},
    )
    return network


def delete_network(stores, id_or_slug: str, org_id: str, actor_id: str | None = None, mode: str = "delete") -> dict:
    if mode not in DELETE_MODES:
        raise DefinitionError("NETWORK_INVALID", "mode must be delete or archive")
    existing = _require(stores.networks, id_or_slug, org_id, "NETWORK", "Network")
    if existing.get("type") == "SYSTEM":
        raise DefinitionError("NETWORK_SYSTEM_READONLY", "SYSTEM networks cannot be deleted")
    if mode == "archive":
        stores.networks.update(existing["id"], {"isActive": False, "isPublished": False}, org_id)
        message = f"Network '{id_or_slug}' archived"
    else:
        stores.networks.replace_primitives(existing["id"], [], org_id)
        stores.networks.delete_versions(existing["id"], org_id)
        stores.networks.delete(existing["id"], org_id)
        message = f"Network '{id_or_slug}' deleted"
    write_audit_log(stores.audit, "NETWORK_DELETE", "network", existing["id"], actor_id, org_id, {"mode": mode})
    return {"success": True, "message": message}
