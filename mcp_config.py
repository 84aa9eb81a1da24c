"""MCP server configuration documents (``{"mcpServers": {...}}``)."""

from __future__ import annotations

import json
import re
from typing import Any, Dict, List

Issue = Dict[str, Any]

MAX_MCP_RESULT_CHARS = 12_000
IMPORT_MODES = ("replace", "merge")

_LOCAL_PATH_PREFIXES = ("/Users/", "/home/", "C:\\")
_LOCAL_PATH_FRAGMENTS = ("/.cursor/", "/.nvm/", "/AppData/", "/.local/")
_SAFE_KEY_RE = re.compile(r"^[a-zA-Z0-9_-]+$")


class McpConfigError(RuntimeError):
    pass


def _issue(code: str, message: str, path: str | None = None, detail: dict | None = None) -> Issue:
    return {"code": code, "message": message, "path": path, "detail": detail}


def _string_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, str)]


def _string_map(value: Any) -> Dict[str, str]:
    if not isinstance(value, dict):
        return {}
    return {str(k): v for k, v in value.items() if isinstance(v, str)}


def normalize_server_config(value: Any) -> dict | None:
    """Keep the known keys; None when neither ``command`` nor ``url`` is set."""
    if not isinstance(value, dict):
        return None
    command = value.get("command") if isinstance(value.get("command"), str) else None
    url = value.get("url") if isinstance(value.get("url"), str) else None
    if not command and not url:
        return None
    config: dict = {}
    if command:
        config["command"] = command
        config["args"] = _string_list(value.get("args"))
        config["env"] = _string_map(value.get("env"))
    if url:
        config["url"] = url
        config["headers"] = _string_map(value.get("headers"))
    return config


def server_transport(config: dict) -> str:
    return "http" if config.get("url") else "stdio"


def provider_key_for(server_name: str) -> str:
    if _SAFE_KEY_RE.match(server_name):
        return server_name
    slug = re.sub(r"\s+", "-", server_name.lower())
    return "custom-" + re.sub(r"[^a-z0-9_-]", "", slug)


def _is_local_path(value: str) -> bool:
    return value.startswith(_LOCAL_PATH_PREFIXES) or any(frag in value for frag in _LOCAL_PATH_FRAGMENTS)


def _server_warnings(name: str, config: dict, path: str) -> List[Issue]:
    warnings: List[Issue] = []
    command = config.get("command")
    if command:
        if _is_local_path(command):
            warnings.append(
                _issue(
                    "MCP_LOCAL_PATH",
                    f"Server '{name}': command is a local path ({command}). This will fail in production.",
                    f"{path}.command",
                )
            )
        if command.startswith("./") or command.startswith("../"):
            warnings.append(
                _issue(
                    "MCP_RELATIVE_PATH",
                    f"Server '{name}': command uses a relative path ({command}). This may not resolve correctly on the server.",
                    f"{path}.command",
                )
            )
    for arg in config.get("args") or []:
        if _is_local_path(arg):
            warnings.append(
                _issue(
                    "MCP_LOCAL_PATH",
                    f"Server '{name}': arg contains a local path ({arg}). This will fail in production.",
                    f"{path}.args",
                )
            )
            break
    url = config.get("url")
    if url and not url.startswith(("http://", "https://")):
        warnings.append(
            _issue(
                "MCP_URL_SCHEME",
                f"Server '{name}': url should start with http:// or https:// (got: {url})",
                f"{path}.url",
            )
        )
    return warnings


def servers_of(document: Any) -> dict:
    if not isinstance(document, dict) or document.get("mcpServers") is None:
        raise McpConfigError("Invalid MCP config: missing mcpServers")
    servers = document["mcpServers"]
    if not isinstance(servers, dict):
        raise McpConfigError("Invalid MCP config: mcpServers must be an object")
    return servers


def validate_mcp_config(document: Any) -> dict:
    """Normalize every server; invalid entries are skipped with a warning."""
    try:
        servers = servers_of(document)
    except McpConfigError as exc:
        return {"ok": False, "errors": [_issue("MCP_CONFIG_INVALID", str(exc), "$.mcpServers")], "warnings": [], "servers": {}}
    warnings: List[Issue] = []
    normalized: Dict[str, dict] = {}
    for name, raw in servers.items():
        path = f"$.mcpServers.{name}"
        config = normalize_server_config(raw)
        if config is None:
            warnings.append(_issue("MCP_SERVER_INVALID", f"Skipped '{name}': invalid server config", path))
            continue
        warnings.extend(_server_warnings(name, config, path))
        normalized[name] = config
    return {"ok": True, "errors": [], "warnings": warnings, "servers": normalized}


def export_mcp_config(servers: List[dict]) -> dict:
    """Build a config document from stored server records (active only)."""
    out: Dict[str, dict] = {}
    for server in servers:
        if not server.get("isActive", True):
            continue
        config = normalize_server_config(server.get("config"))
        if config:
            out[server["name"]] = config
    return {"mcpServers": out}


def analyze_config_impact(
    existing: List[dict],
    incoming: Any,
    mode: str = "replace",
    agent_usage: Dict[str, List[dict]] | None = None,
) -> dict:
    """Compare stored servers against an incoming document.

    ``existing`` is a list of server records with ``name``; ``agent_usage``
    maps a server name to the agents that use its tools.
    """
    if mode not in IMPORT_MODES:
        raise McpConfigError(f"Invalid import mode: {mode}")
    servers = servers_of(incoming)
    by_name = {server["name"].lower(): server for server in existing if server.get("isActive", True)}
    seen: set[str] = set()
    to_add: List[str] = []
    to_update: List[str] = []
    for name, raw in servers.items():
        if normalize_server_config(raw) is None:
            continue
        if name.lower() in by_name:
            seen.add(name.lower())
            to_update.append(name)
        else:
            to_add.append(name)

    to_disable: List[dict] = []
    affected: set[str] = set()
    if mode == "replace":
        for key, server in by_name.items():
            if key in seen:
                continue
            agents = list((agent_usage or {}).get(server["name"], []))
            affected.update(agent.get("id") for agent in agents)
            to_disable.append({"serverKey": provider_key_for(server["name"]), "serverName": server["name"], "affectedAgents": agents})
    return {
        "serversToDisable": to_disable,
        "serversToAdd": to_add,
        "serversToUpdate": to_update,
        "totalAffectedAgents": len(affected),
        "hasImpact": bool(to_disable) and bool(affected),
    }


def namespace_tool(server: str, tool: str) -> str:
    return f"{server}_{tool}"


def parse_tool_name(name: str) -> tuple[str, str]:
    """Split ``server.tool`` or ``server_tool`` at the first separator."""
    if "." in name:
        server, _, tool = name.partition(".")
        if server and tool:
            return server, tool
    server, _, tool = name.partition("_")
    if not server or not tool:
        raise McpConfigError(f"Tool name is not namespaced: {name}")
    return server, tool


def tool_name_candidates(name: str) -> List[str]:
    candidates = [name, name.replace("_", ".", 1), name.replace(".", "_", 1)]
    return list(dict.fromkeys(candidates))


def truncate_result(result: Any, max_chars: int = MAX_MCP_RESULT_CHARS) -> Any:
    if result is None:
        return result
    serialized = result if isinstance(result, str) else json.dumps(result, default=str)
    if len(serialized) <= max_chars:
        return result
    omitted = len(serialized) - max_chars
    if isinstance(result, str):
        return result[:max_chars] + f"\n...[truncated, {omitted} chars omitted]"
    return {"_truncated": True, "_originalLength": len(serialized), "data": serialized[:max_chars]}
