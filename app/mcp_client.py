"""JSON-RPC client for HTTP MCP servers: tool discovery and tool calls."""

from __future__ import annotations

import itertools
import logging
import os
import time
from typing import Any, Dict, List

import httpx

from mcp_config import McpConfigError, namespace_tool, parse_tool_name, server_transport, truncate_result

logger = logging.getLogger("agentc2.mcp")


class McpClientError(RuntimeError):
    pass


def _timeout() -> float:
    return float(os.getenv("AGENTC2_MCP_TIMEOUT", "30"))


class McpClient:
    """``servers`` maps server name to a normalized config (``url`` and ``headers``)."""

    def __init__(self, servers: Dict[str, dict], transport: httpx.BaseTransport | None = None, timeout: float | None = None) -> None:
        self.servers = servers
        self.transport = transport
        self.timeout = timeout if timeout is not None else _timeout()
        self._ids = itertools.count(1)

    def _client(self) -> httpx.Client:
        return httpx.Client(timeout=self.timeout, transport=self.transport)

    def _rpc(self, server_name: str, method: str, params: dict | None = None) -> Any:
        config = self.servers.get(server_name)
        if not config:
            raise McpClientError(f"Unknown MCP server: {server_name}")
        if server_transport(config) != "http":
            raise McpClientError(f"MCP server {server_name} is not an HTTP server")
        body = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params or {}}
        headers = {"Content-Type": "application/json", "Accept": "application/json", **(config.get("headers") or {})}
        with self._client() as client:
            res = client.post(config["url"], json=body, headers=headers)
        if res.status_code >= 400:
            raise McpClientError(f"MCP server {server_name} returned {res.status_code}")
        try:
            data = res.json()
        except ValueError as exc:
            raise McpClientError(f"MCP server {server_name} returned invalid JSON") from exc
        if not isinstance(data, dict):
            raise McpClientError(f"MCP server {server_name} returned a non-object response")
        if data.get("error"):
            error = data["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise McpClientError(f"MCP server {server_name} error: {message}")
        return data.get("result")

    def list_tools(self, server_name: str) -> List[dict]:
        result = self._rpc(server_name, "tools/list") or {}
        if not isinstance(result, dict) or not isinstance(result.get("tools") or [], list):
            raise McpClientError(f"MCP server {server_name} returned a malformed tools list")
        tools = []
        for tool in result.get("tools") or []:
            if not isinstance(tool, dict) or not tool.get("name"):
                continue
            tools.append(
                {
                    "name": namespace_tool(server_name, tool["name"]),
                    "server": server_name,
                    "toolName": tool["name"],
                    "description": tool.get("description") or "",
                    "inputSchema": tool.get("inputSchema") or {},
                }
            )
        return tools

    def discover_tools(self) -> dict:
        """Every HTTP server's tools; one failing server does not hide the others."""
        tools: List[dict] = []
        errors: Dict[str, str] = {}
        skipped: List[str] = []
        for name, config in sorted(self.servers.items()):
            if server_transport(config) != "http":
                skipped.append(name)
                continue
            started = time.monotonic()
            try:
                server_tools = self.list_tools(name)
            except (McpClientError, httpx.HTTPError) as exc:
                errors[name] = str(exc)
                logger.warning("mcp_discovery_failed server=%s error=%s", name, exc)
                continue
            tools.extend(server_tools)
            logger.info(
                "mcp_discovered server=%s tools=%s ms=%.1f",
                name,
                len(server_tools),
                (time.monotonic() - started) * 1000,
            )
        return {"tools": tools, "errors": errors, "skipped": skipped}

    def call_tool(self, name: str, arguments: dict | None = None) -> dict:
        try:
            server_name, tool_name = parse_tool_name(name)
        except McpConfigError as exc:
            return {"success": False, "error": str(exc)}
        if server_name not in self.servers:
            # names with underscores in the server part
            for candidate in self.servers:
                prefix = f"{candidate}_"
                if name.startswith(prefix):
                    server_name, tool_name = candidate, name[len(prefix) :]
                    break
        started = time.monotonic()
        try:
            result = self._rpc(server_name, "tools/call", {"name": tool_name, "arguments": arguments or {}})
        except (McpClientError, httpx.HTTPError) as exc:
            logger.warning("mcp_call_failed tool=%s error=%s", name, exc)
            return {"success": False, "error": str(exc), "durationMs": int((time.monotonic() - started) * 1000)}
        is_error = bool(isinstance(result, dict) and result.get("isError"))
        return {
            "success": not is_error,
            "result": truncate_result(result),
            "error": "Tool reported an error" if is_error else None,
            "durationMs": int((time.monotonic() - started) * 1000),
        }
