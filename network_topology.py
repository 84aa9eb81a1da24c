"""Agent network topology: building from primitives and validation."""

from __future__ import annotations

import re
from typing import Any, Dict, Iterable, List

Issue = Dict[str, Any]

PRIMITIVE_TYPES = ("agent", "workflow", "tool")
PRIMITIVE_REF_KEYS = {"agent": "agentId", "workflow": "workflowId", "tool": "toolId"}
ROUTER_NODE_ID = "router"
_GRID_COLUMNS = 4
_GRID_DX = 240
_GRID_DY = 160
_SLUG_RE = re.compile(r"[^a-z0-9]+")


def _issue(code: str, message: str, path: str | None = None, detail: dict | None = None) -> Issue:
    return {"code": code, "message": message, "path": path, "detail": detail}


def generate_slug(name: str) -> str:
    return _SLUG_RE.sub("-", (name or "").lower()).strip("-")


def is_topology_empty(topology: Any) -> bool:
    if not isinstance(topology, dict):
        return True
    nodes = topology.get("nodes")
    edges = topology.get("edges")
    return not (isinstance(nodes, list) and nodes) and not (isinstance(edges, list) and edges)


def primitive_ref(primitive: dict) -> str | None:
    ptype = primitive.get("primitiveType")
    key = PRIMITIVE_REF_KEYS.get(ptype) if isinstance(ptype, str) else None
    value = primitive.get(key) if key else None
    return value if isinstance(value, str) and value else None


def _primitive_node_id(primitive: dict) -> str:
    return f"{primitive.get('primitiveType')}-{primitive_ref(primitive)}"


def build_topology_from_primitives(primitives: List[dict]) -> dict:
    """Router node fanning out to one node per primitive.

    Entries without a known ``primitiveType`` are left out; ``validate_primitives``
    reports them.
    """
    primitives = [p for p in primitives if isinstance(p, dict) and p.get("primitiveType") in PRIMITIVE_TYPES]
    nodes = [
        {
            "id": ROUTER_NODE_ID,
            "type": "router",
            "position": {"x": 0, "y": 0},
            "data": {"label": "Router"},
        }
    ]
    edges = []
    count = len(primitives)
    row_width = min(count, _GRID_COLUMNS)
    for idx, primitive in enumerate(primitives):
        ptype = primitive.get("primitiveType")
        ref = primitive_ref(primitive)
        node_id = _primitive_node_id(primitive)
        position = primitive.get("position")
        if not isinstance(position, dict):
            col = idx % _GRID_COLUMNS
            row = idx // _GRID_COLUMNS
            position = {
                "x": (col - (row_width - 1) / 2) * _GRID_DX,
                "y": _GRID_DY * (row + 1),
            }
        data = {
            "primitiveType": ptype,
            PRIMITIVE_REF_KEYS.get(ptype, "refId"): ref,
            "label": primitive.get("description") or ref,
        }
        nodes.append({"id": node_id, "type": ptype, "position": position, "data": data})
        edges.append({"id": f"{ROUTER_NODE_ID}-{node_id}", "source": ROUTER_NODE_ID, "target": node_id})
    return {"nodes": nodes, "edges": edges, "viewport": {"x": 0, "y": 0, "zoom": 1}}


def validate_primitives(primitives: Any, known: Dict[str, Iterable[str]] | None = None) -> dict:
    errors: List[Issue] = []
    warnings: List[Issue] = []
    if primitives is None:
        return {"ok": True, "errors": errors, "warnings": warnings}
    if not isinstance(primitives, list):
        errors.append(_issue("NETWORK_PRIMITIVES_INVALID", "primitives must be list", "$.primitives"))
        return {"ok": False, "errors": errors, "warnings": warnings}
    known_sets = {k: set(v) for k, v in (known or {}).items()}
    seen: set[tuple[str, str]] = set()
    for idx, primitive in enumerate(primitives):
        path = f"$.primitives[{idx}]"
        if not isinstance(primitive, dict):
            errors.append(_issue("NETWORK_PRIMITIVES_INVALID", "primitive must be object", path))
            continue
        ptype = primitive.get("primitiveType")
        if ptype not in PRIMITIVE_TYPES:
            errors.append(
                _issue(
                    "NETWORK_PRIMITIVES_INVALID",
                    "primitiveType must be agent, workflow or tool",
                    f"{path}.primitiveType",
                )
            )
            continue
        ref_key = PRIMITIVE_REF_KEYS[ptype]
        ref = primitive_ref(primitive)
        if not ref:
            errors.append(_issue("NETWORK_PRIMITIVES_INVALID", f"{ref_key} is required for {ptype} primitives", f"{path}.{ref_key}"))
            continue
        for other_type, other_key in PRIMITIVE_REF_KEYS.items():
            if other_type != ptype and primitive.get(other_key):
                warnings.append(
                    _issue("NETWORK_PRIMITIVE_EXTRA_REF", f"{other_key} is ignored for {ptype} primitives", f"{path}.{other_key}")
                )
        if (ptype, ref) in seen:
            warnings.append(_issue("NETWORK_DUPLICATE_PRIMITIVE", f"Duplicate {ptype} primitive: {ref}", path))
        seen.add((ptype, ref))
        if ptype in known_sets and ref not in known_sets[ptype]:
            errors.append(_issue("NETWORK_UNKNOWN_PRIMITIVE", f"Unknown {ptype}: {ref}", f"{path}.{ref_key}"))
        position = primitive.get("position")
        if position is not None and not isinstance(position, dict):
            errors.append(_issue("NETWORK_PRIMITIVES_INVALID", "position must be object", f"{path}.position"))
        description = primitive.get("description")
        if description is not None and not isinstance(description, str):
            errors.append(_issue("NETWORK_PRIMITIVES_INVALID", "description must be string", f"{path}.description"))
    return {"ok": not errors, "errors": errors, "warnings": warnings}


def _node_primitive(node: dict) -> tuple[str, str] | None:
    data = node.get("data") if isinstance(node.get("data"), dict) else {}
    ptype = data.get("primitiveType") or node.get("type")
    if ptype not in PRIMITIVE_TYPES:
        return None
    ref = data.get(PRIMITIVE_REF_KEYS[ptype])
    if not isinstance(ref, str) or not ref:
        return None
    return ptype, ref


def validate_topology(topology: Any, primitives: List[dict] | None = None) -> dict:
    errors: List[Issue] = []
    warnings: List[Issue] = []
    if not isinstance(topology, dict):
        errors.append(_issue("NETWORK_TOPOLOGY_INVALID", "topology must be object", "$"))
        return {"ok": False, "errors": errors, "warnings": warnings, "summary": None}
    nodes = topology.get("nodes")
    edges = topology.get("edges")
    if not isinstance(nodes, list):
        errors.append(_issue("NETWORK_TOPOLOGY_INVALID", "nodes must be list", "$.nodes"))
    if not isinstance(edges, list):
        errors.append(_issue("NETWORK_TOPOLOGY_INVALID", "edges must be list", "$.edges"))
    viewport = topology.get("viewport")
    if viewport is not None and not isinstance(viewport, dict):
        errors.append(_issue("NETWORK_TOPOLOGY_INVALID", "viewport must be object", "$.viewport"))
    if errors:
        return {"ok": False, "errors": errors, "warnings": warnings, "summary": None}

    primitive_keys = None
    if primitives is not None:
        primitive_keys = {
            (p.get("primitiveType"), primitive_ref(p)) for p in primitives if isinstance(p, dict) and primitive_ref(p)
        }

    node_ids: List[str] = []
    router_ids: List[str] = []
    counts = {ptype: 0 for ptype in PRIMITIVE_TYPES}
    for idx, node in enumerate(nodes):
        path = f"$.nodes[{idx}]"
        if not isinstance(node, dict) or not isinstance(node.get("id"), str) or not node.get("id"):
            errors.append(_issue("NETWORK_TOPOLOGY_INVALID", "node.id must be non-empty string", f"{path}.id"))
            continue
        node_id = node["id"]
        if node_id in node_ids:
            errors.append(_issue("NETWORK_DUPLICATE_NODE_ID", f"Duplicate node id: {node_id}", f"{path}.id"))
            continue
        node_ids.append(node_id)
        if node.get("type") == "router":
            router_ids.append(node_id)
        position = node.get("position")
        if position is not None and not isinstance(position, dict):
            errors.append(_issue("NETWORK_TOPOLOGY_INVALID", "node.position must be object", f"{path}.position"))
        prim = _node_primitive(node)
        if prim:
            counts[prim[0]] += 1
            if primitive_keys is not None and prim not in primitive_keys:
                errors.append(
                    _issue(
                        "NETWORK_NODE_UNKNOWN_PRIMITIVE",
                        f"Node references {prim[0]} '{prim[1]}' which is not a network primitive",
                        path,
                        {"node_id": node_id},
                    )
                )

    known_nodes = set(node_ids)
    adjacency: Dict[str, List[str]] = {node_id: [] for node_id in node_ids}
    seen_pairs: set[tuple[str, str]] = set()
    edge_ids: set[str] = set()
    for idx, edge in enumerate(edges):
        path = f"$.edges[{idx}]"
        if not isinstance(edge, dict):
            errors.append(_issue("NETWORK_TOPOLOGY_INVALID", "edge must be object", path))
            continue
        edge_id = edge.get("id")
        if edge_id is not None and not isinstance(edge_id, str):
            errors.append(_issue("NETWORK_TOPOLOGY_INVALID", "edge.id must be string", f"{path}.id"))
        elif edge_id is not None:
            if edge_id in edge_ids:
                errors.append(_issue("NETWORK_DUPLICATE_EDGE_ID", f"Duplicate edge id: {edge_id}", f"{path}.id"))
            edge_ids.add(edge_id)
        source = edge.get("source")
        target = edge.get("target")
        if not isinstance(source, str) or not isinstance(target, str):
            errors.append(_issue("NETWORK_TOPOLOGY_INVALID", "edge.source/target must be strings", path))
            continue
        missing = [end for end in (source, target) if end not in known_nodes]
        if missing:
            errors.append(
                _issue("NETWORK_EDGE_UNKNOWN_NODE", "edge references unknown node", path, {"missing": missing})
            )
            continue
        if source == target:
            warnings.append(_issue("NETWORK_SELF_LOOP", f"Edge loops on node {source}", path))
        if (source, target) in seen_pairs:
            warnings.append(_issue("NETWORK_DUPLICATE_EDGE", f"Duplicate edge {source} -> {target}", path))
        seen_pairs.add((source, target))
        adjacency[source].append(target)

    if node_ids and not router_ids:
        warnings.append(_issue("NETWORK_NO_ROUTER", "Topology has no router node", "$.nodes"))
    elif router_ids:
        reached = set(router_ids)
        frontier = list(router_ids)
        while frontier:
            current = frontier.pop()
            for nxt in adjacency.get(current, []):
                if nxt not in reached:
                    reached.add(nxt)
                    frontier.append(nxt)
        for node_id in node_ids:
            if node_id not in reached:
                warnings.append(
                    _issue("NETWORK_UNREACHABLE_NODE", f"Node {node_id} is not reachable from the router", "$.nodes", {"node_id": node_id})
                )

    summary = {"nodeCount": len(node_ids), "edgeCount": len(seen_pairs), "primitiveNodes": counts}
    return {"ok": not errors, "errors": errors, "warnings": warnings, "summary": summary}


def validate_network(topology: Any, primitives: Any = None, known: Dict[str, Iterable[str]] | None = None) -> dict:
    prim_result = validate_primitives(primitives, known)
    usable = primitives if isinstance(primitives, list) and prim_result["ok"] else None
    topo_result = validate_topology(topology, usable)
    return {
        "ok": prim_result["ok"] and topo_result["ok"],
        "errors": prim_result["errors"] + topo_result["errors"],
        "warnings": prim_result["warnings"] + topo_result["warnings"],
        "summary": topo_result["summary"],
    }
