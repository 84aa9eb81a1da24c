"""FastAPI app for the AgentC2 platform core."""

from __future__ import annotations

import os
import re
import sys
from functools import partial
from pathlib import Path
from typing import Any

import anyio
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _load_env_file(path: Path) -> None:
    if not path.exists():
        return
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key and key not in os.environ:
            os.environ[key] = value


_load_env_file(ROOT / "app" / ".env")

import logging
import time

import comm_policy
import cron_schedule
import network_topology
from federation_policy import FederationPolicyEngine
from mcp_config import McpConfigError, analyze_config_impact, export_mcp_config, parse_tool_name, validate_mcp_config
from workflow_plan import plan_workflow
from workflow_validate import validate_workflow_definition

from app import definitions, schedules, sessions
from app import federation_crypto as crypto
from app.agent_invoke import federated_invoker
from app.audit import query_audit_logs, write_audit_log, write_federation_event
from app.auth import AuthMiddleware, auth_disabled
from app.budget import BudgetEnforcementService
from app.db import get_db_stats, reset_db_stats
from app.diagnostics import build_workspace_diagnostics, run_channel_diagnostics
from app.embed_identity import create_partner, verify_embed_identity
from app.federation import FederationService
from app.mcp_client import McpClient
from app.run_recorder import (
    RUN_SOURCES,
    RunHandle,
    extract_token_usage,
    extract_tool_calls,
    finish_network_run,
    record_network_step,
    start_network_run,
    start_run,
)
from app.secrets import SecretStoreError, decrypt_json, encrypt_json
from app.stores import Stores, memory_stores
from app.stores_db import DbRecordStore, reset_org_id, set_org_id
from app.workspaces import WorkspaceError, add_member, create_organization, list_workspaces, resolve_membership


app = FastAPI(title="AgentC2")
logger = logging.getLogger("agentc2")
logging.basicConfig(level=logging.INFO)

_LOCAL_CORS_ORIGINS = {
    "http://localhost:3000",
    "http://127.0.0.1:3000",
    "http://localhost:5173",
    "http://127.0.0.1:5173",
}
_EXTRA_CORS_ORIGINS = {
    origin.strip().rstrip("/")
    for origin in os.getenv("AGENTC2_CORS_ORIGINS", "").split(",")
    if origin.strip()
}
_CORS_ORIGINS = _LOCAL_CORS_ORIGINS | _EXTRA_CORS_ORIGINS
_LOCAL_CORS_REGEX = re.compile(r"^http://(localhost|127\.0\.0\.1):\d+$")

SUPABASE_URL = os.getenv("SUPABASE_URL", "").strip()
SUPABASE_AUD = os.getenv("SUPABASE_JWT_AUD", "").strip() or None
DISABLE_AUTH = auth_disabled()
USE_DB = os.getenv("USE_DB", "").strip() == "1"
APP_ENV = os.getenv("APP_ENV", "dev").strip().lower() or "dev"
IS_DEV = APP_ENV == "dev"
REQ_SLOW_MS = float(os.getenv("AGENTC2_REQ_SLOW_MS", "250"))
logger.info("auth_disabled=%s supabase_url=%s use_db=%s", DISABLE_AUTH, SUPABASE_URL, USE_DB)

stores = Stores(DbRecordStore()) if USE_DB else memory_stores()
policy_engine = FederationPolicyEngine(stores.federation, audit=partial(write_federation_event, stores.audit))
federation = FederationService(stores, policy_engine)
budget_service = BudgetEnforcementService(stores.budget)

# replaced in tests
agent_invoker = federated_invoker()
mcp_transport = None
channel_prober = None


@app.middleware("http")
async def timing_middleware(request: Request, call_next):
    reset_db_stats()
    start = time.perf_counter()
    response = await call_next(request)
    total_ms = (time.perf_counter() - start) * 1000
    auth_ms = getattr(request.state, "auth_ms", 0.0)
    db_stats = get_db_stats()
    route = request.scope.get("route")
    route_name = getattr(route, "name", None) or "unknown"
    logger.info(
        "%s %s %s route=%s total_ms=%.1f auth_ms=%.1f db_ms=%.1f db_q=%s",
        request.method,
        request.url.path,
        response.status_code,
        route_name,
        total_ms,
        auth_ms,
        db_stats.get("total_ms", 0.0),
        db_stats.get("queries", 0),
    )
    if total_ms >= REQ_SLOW_MS:
        logger.warning(
            "slow_request method=%s path=%s route=%s total_ms=%.1f status=%s",
            request.method,
            request.url.path,
            route_name,
            total_ms,
            response.status_code,
        )
    if IS_DEV:
        response.headers["X-Req-MS"] = f"{total_ms:.1f}"
        response.headers["X-Queries"] = str(db_stats.get("queries", 0))
    return response


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("unhandled_error method=%s path=%s", request.method, request.url.path)
    return _error_response("INTERNAL_ERROR", "Unexpected server error", detail={"error": str(exc)}, status=500)


@app.get("/health")
async def health() -> dict:
    return {"ok": True}


def _error_response(code: str, message: str, path: str | None = None, detail: dict | None = None, status: int = 400) -> JSONResponse:
    body = {
        "ok": False,
        "errors": [{"code": code, "message": message, "path": path, "detail": detail}],
        "warnings": [],
    }
    return JSONResponse(jsonable_encoder(body), status_code=status)


def _ok_response(payload: dict, warnings: list | None = None, status: int = 200) -> JSONResponse:
    body = {"ok": True, **payload, "errors": [], "warnings": warnings or []}
    return JSONResponse(jsonable_encoder(body), status_code=status)


async def _safe_json(request: Request) -> dict:
    try:
        body = await request.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def _int_param(value: Any, default: int | None = None) -> int | None:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _truthy(value: Any) -> bool:
    return str(value or "").strip().lower() in ("1", "true", "yes")


# actor resolution


def _resolve_actor(request: Request) -> dict | JSONResponse:
    user = getattr(request.state, "user", None)
    org_header = (request.headers.get("X-Organization-Id") or "").strip() or None
    if auth_disabled():
        if not user or not user.get("id"):
            return {
                "user_id": request.headers.get("X-User-Id") or "test-user",
                "email": "test@example.com",
                "role": request.headers.get("X-User-Role") or "owner",
                "org_id": org_header or "default",
                "claims": {},
            }
    if not user or not user.get("id"):
        return _error_response("AUTH_REQUIRED", "Authenticated user required", status=401)

    if user.get("api_key"):
        org = stores.orgs.get_by_slug(user.get("org_slug"))
        if not org:
            return _error_response("ORG_NOT_FOUND", "Organization does not exist", "X-Organization-Slug", status=404)
        return {"user_id": user["id"], "email": None, "role": "admin", "org_id": org["id"], "api_key": True, "claims": {}}

    user_id = user["id"]
    resolved = resolve_membership(stores.orgs, user_id, org_header)
    if not resolved:
        if org_header:
            return _error_response("ORG_FORBIDDEN", "User is not a member of this organization", "X-Organization-Id", status=403)
        local = (user.get("email") or "").split("@")[0] or "my"
        slug = network_topology.generate_slug(f"{local}-{user_id[:8]}")
        org = create_organization(stores, f"{local}'s Organization", user_id, slug=slug)
        write_audit_log(stores.audit, "ORG_CREATE", "organization", org["id"], user_id, org["id"], {"auto": True})
        return {"user_id": user_id, "email": user.get("email"), "role": "owner", "org_id": org["id"], "claims": user.get("claims")}
    org, membership = resolved
    return {
        "user_id": user_id,
        "email": user.get("email"),
        "role": membership.get("role") or "member",
        "org_id": org["id"],
        "claims": user.get("claims"),
    }


_MEMBER_CAPABILITIES = {"definitions.read", "definitions.write", "runs.read", "runs.write", "diagnostics.read", "federation.read"}
_ADMIN_CAPABILITIES = _MEMBER_CAPABILITIES | {
    "members.manage",
    "federation.manage",
    "budget.manage",
    "audit.read",
    "mcp.manage",
    "embed.manage",
}
_CAPABILITIES_BY_ROLE = {
    "owner": _ADMIN_CAPABILITIES | {"org.manage"},
    "admin": _ADMIN_CAPABILITIES,
    "member": _MEMBER_CAPABILITIES,
    "viewer": {"definitions.read", "runs.read"},
}


def _has_capability(actor: dict | None, capability: str) -> bool:
    if not isinstance(actor, dict):
        return False
    return capability in _CAPABILITIES_BY_ROLE.get(actor.get("role") or "member", set())


def _require_capability(actor: dict | None, capability: str, message: str = "Forbidden") -> JSONResponse | None:
    if not _has_capability(actor, capability):
        return _error_response("FORBIDDEN", message, status=403)
    return None


def _actor(request: Request) -> dict:
    return getattr(request.state, "actor", None) or {}


class ActorContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        if request.method == "OPTIONS" or request.url.path in {"/health", "/embed/verify"}:
            return await call_next(request)
        actor = _resolve_actor(request)
        if isinstance(actor, JSONResponse):
            return actor
        request.state.actor = actor
        token = set_org_id(actor.get("org_id") or "default")
        try:
            return await call_next(request)
        finally:
            reset_org_id(token)


app.add_middleware(
    CORSMiddleware,
    allow_origins=sorted(_CORS_ORIGINS),
    allow_origin_regex=_LOCAL_CORS_REGEX.pattern,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(ActorContextMiddleware)
if not DISABLE_AUTH:
    if not SUPABASE_URL:
        raise RuntimeError("SUPABASE_URL is required for auth")
    app.add_middleware(AuthMiddleware, supabase_url=SUPABASE_URL, audience=SUPABASE_AUD)


_DEFINITION_STATUS = {
    "NOT_FOUND": 404,
    "VERSION_NOT_FOUND": 404,
    "SLUG_TAKEN": 409,
    "SYSTEM_READONLY": 403,
}


def _definition_error(exc: definitions.DefinitionError) -> JSONResponse:
    status = 400
    for suffix, code in _DEFINITION_STATUS.items():
        if exc.code.endswith(suffix):
            status = code
    return _error_response(exc.code, exc.message, detail=exc.detail, status=status)


def _session_error(exc: sessions.SessionError) -> JSONResponse:
    return _error_response(exc.code, exc.message, status=404 if exc.code == "SESSION_NOT_FOUND" else 400)


# organizations


@app.post("/orgs")
async def create_org(request: Request):
    actor = _actor(request)
    body = await _safe_json(request)
    name = body.get("name")
    if not isinstance(name, str) or not name.strip():
        return _error_response("ORG_NAME_REQUIRED", "name is required", "name")
    try:
        org = create_organization(stores, name.strip(), actor.get("user_id"), slug=body.get("slug"))
    except WorkspaceError as exc:
        return _error_response(exc.code, exc.message, "slug", status=409 if exc.code == "ORG_SLUG_TAKEN" else 400)
    write_audit_log(stores.audit, "ORG_CREATE", "organization", org["id"], actor.get("user_id"), org["id"], {"slug": org["slug"]})
    return _ok_response({"organization": org}, status=201)


@app.get("/orgs/current")
async def get_current_org(request: Request):
    org_id = _actor(request).get("org_id")
    org = stores.orgs.get(org_id)
    if not org:
        return _error_response("ORG_NOT_FOUND", "Organization does not exist", status=404)
    return _ok_response({"organization": org, "workspaces": list_workspaces(stores, org_id)})


@app.post("/orgs/current/members")
async def add_org_member(request: Request):
    actor = _actor(request)
    denied = _require_capability(actor, "members.manage", "Admin role required")
    if denied:
        return denied
    body = await _safe_json(request)
    if not body.get("userId"):
        return _error_response("MEMBER_USER_REQUIRED", "userId is required", "userId")
    try:
        membership = add_member(stores, actor["org_id"], body["userId"], body.get("role") or "member")
    except WorkspaceError as exc:
        return _error_response(exc.code, exc.message, "role")
    write_audit_log(stores.audit, "MEMBERSHIP_CREATE", "membership", membership["id"], actor.get("user_id"), actor["org_id"], {"role": membership.get("role")})
    return _ok_response({"membership": membership}, status=201)


# agents


@app.get("/agents")
async def list_agents(request: Request):
    return _ok_response({"agents": stores.agents.list(_actor(request).get("org_id"))})


@app.post("/agents")
async def create_agent(request: Request):
    actor = _actor(request)
    denied = _require_capability(actor, "definitions.write")
    if denied:
        return denied
    org_id = actor["org_id"]
    body = await _safe_json(request)
    name = body.get("name")
    if not isinstance(name, str) or not name.strip():
        return _error_response("AGENT_INVALID", "name is required", "name")
    slug = body.get("slug") or network_topology.generate_slug(name)
    if stores.agents.get_by_slug(slug, org_id):
        return _error_response("AGENT_SLUG_TAKEN", f"Agent slug '{slug}' already exists", "slug", status=409)
    agent = stores.agents.create(
        {
            "slug": slug,
            "name": name.strip(),
            "description": body.get("description"),
            "instructions": body.get("instructions") or "",
            "modelProvider": body.get("modelProvider"),
            "modelName": body.get("modelName"),
            "tools": body.get("tools") or [],
            "communicationPolicy": body.get("communicationPolicy") or {},
            "isActive": body.get("isActive", True) is not False,
        },
        org_id,
    )
    write_audit_log(stores.audit, "AGENT_CREATE", "agent", agent["id"], actor.get("user_id"), org_id, {"slug": slug})
    return _ok_response({"agent": agent}, status=201)


@app.get("/agents/{agent_ref}")
async def get_agent(agent_ref: str, request: Request):
    org_id = _actor(request).get("org_id")
    agent = stores.agents.get(agent_ref, org_id) or stores.agents.get_by_slug(agent_ref, org_id)
    if not agent:
        return _error_response("AGENT_NOT_FOUND", f"Agent '{agent_ref}' not found", status=404)
    return _ok_response({"agent": agent})


# workflows


def _workflow_known(org_id: str) -> dict:
    workflows = stores.workflows.list(org_id)
    return {
        "known_agents": stores.agents.slugs(org_id),
        "known_workflows": {w["id"] for w in workflows} | {w["slug"] for w in workflows if w.get("slug")},
    }


@app.get("/workflows")
async def list_workflows(request: Request):
    org_id = _actor(request).get("org_id")
    include_inactive = request.query_params.get("includeInactive", "true") != "false"
    return _ok_response({"workflows": definitions.list_workflows(stores, org_id, include_inactive)})


@app.post("/workflows")
async def create_workflow(request: Request):
    actor = _actor(request)
    denied = _require_capability(actor, "definitions.write")
    if denied:
        return denied
    body = await _safe_json(request)
    try:
        workflow = definitions.create_workflow(stores, body, actor["org_id"], actor.get("user_id"))
    except definitions.DefinitionError as exc:
        return _definition_error(exc)
    return _ok_response({"workflow": workflow}, status=201)


@app.post("/workflows/validate")
async def validate_workflow(request: Request):
    body = await _safe_json(request)
    definition = body.get("definitionJson", body.get("definition"))
    result = validate_workflow_definition(definition, **_workflow_known(_actor(request).get("org_id")))
    return JSONResponse(jsonable_encoder(result), status_code=200)


@app.get("/workflows/{workflow_ref}")
async def get_workflow(workflow_ref: str, request: Request):
    try:
        workflow = definitions.get_workflow(
            stores,
            workflow_ref,
            _actor(request).get("org_id"),
            include_versions=_truthy(request.query_params.get("includeVersions")),
        )
    except definitions.DefinitionError as exc:
        return _definition_error(exc)
    return _ok_response({"workflow": workflow})


@app.put("/workflows/{workflow_ref}")
async def update_workflow(workflow_ref: str, request: Request):
    actor = _actor(request)
    denied = _require_capability(actor, "definitions.write")
    if denied:
        return denied
    body = await _safe_json(request)
    restore_version = _int_param(body.pop("restoreVersion", None))
    restore_version_id = body.pop("restoreVersionId", None)
    description = body.pop("versionDescription", None)
    try:
        workflow = definitions.update_workflow(
            stores,
            workflow_ref,
            body,
            actor["org_id"],
            actor.get("user_id"),
            restore_version=restore_version,
            restore_version_id=restore_version_id,
            version_description=description,
        )
    except definitions.DefinitionError as exc:
        return _definition_error(exc)
    return _ok_response({"workflow": workflow})


@app.delete("/workflows/{workflow_ref}")
async def delete_workflow(workflow_ref: str, request: Request):
    actor = _actor(request)
    denied = _require_capability(actor, "definitions.write")
    if denied:
        return denied
    try:
        result = definitions.delete_workflow(
            stores, workflow_ref, actor["org_id"], actor.get("user_id"), mode=request.query_params.get("mode") or "delete"
        )
    except definitions.DefinitionError as exc:
        return _definition_error(exc)
    return _ok_response(result)


@app.post("/workflows/{workflow_ref}/plan")
async def plan_workflow_route(workflow_ref: str, request: Request):
    try:
        workflow = definitions.get_workflow(stores, workflow_ref, _actor(request).get("org_id"))
    except definitions.DefinitionError as exc:
        return _definition_error(exc)
    body = await _safe_json(request)
    result = plan_workflow(
        workflow.get("definitionJson") or {"steps": []},
        input=body.get("input"),
        variables=body.get("variables"),
        step_outputs=body.get("stepOutputs"),
    )
    return JSONResponse(jsonable_encoder(result), status_code=200 if result["ok"] else 400)


@app.get("/workflows/{workflow_ref}/versions")
async def list_workflow_versions(workflow_ref: str, request: Request):
    org_id = _actor(request).get("org_id")
    try:
        workflow = definitions.get_workflow(stores, workflow_ref, org_id)
    except definitions.DefinitionError as exc:
        return _definition_error(exc)
    return _ok_response({"versions": stores.workflows.list_versions(workflow["id"], org_id)})


@app.get("/workflows/{workflow_ref}/versions/{version}")
async def get_workflow_version(workflow_ref: str, version: int, request: Request):
    org_id = _actor(request).get("org_id")
    try:
        workflow = definitions.get_workflow(stores, workflow_ref, org_id)
    except definitions.DefinitionError as exc:
        return _definition_error(exc)
    found = stores.workflows.get_version(workflow["id"], version, org_id)
    if not found:
        return _error_response("WORKFLOW_VERSION_NOT_FOUND", "Requested workflow version not found", status=404)
    return _ok_response({"version": found})


@app.post("/workflows/{workflow_ref}/versions/{version}/restore")
async def restore_workflow_version(workflow_ref: str, version: int, request: Request):
    actor = _actor(request)
    denied = _require_capability(actor, "definitions.write")
    if denied:
        return denied
    body = await _safe_json(request)
    try:
        workflow = definitions.update_workflow(
            stores,
            workflow_ref,
            None,
            actor["org_id"],
            actor.get("user_id"),
            restore_version=version,
            version_description=body.get("versionDescription") or f"Restored from version {version}",
        )
    except definitions.DefinitionError as exc:
        return _definition_error(exc)
    return _ok_response({"workflow": workflow})


# networks


@app.get("/networks")
async def list_networks(request: Request):
    org_id = _actor(request).get("org_id")
    include_inactive = request.query_params.get("includeInactive", "true") != "false"
    return _ok_response({"networks": definitions.list_networks(stores, org_id, include_inactive)})


@app.post("/networks")
async def create_network(request: Request):
    actor = _actor(request)
    denied = _require_capability(actor, "definitions.write")
    if denied:
        return denied
    body = await _safe_json(request)
    try:
        network = definitions.create_network(stores, body, actor["org_id"], actor.get("user_id"))
    except definitions.DefinitionError as exc:
        return _definition_error(exc)
    return _ok_response({"network": network}, status=201)


@app.post("/networks/validate")
async def validate_network(request: Request):
    org_id = _actor(request).get("org_id")
    body = await _safe_json(request)
    primitives = body.get("primitives") if isinstance(body.get("primitives"), list) else []
    topology = body.get("topologyJson")
    if primitives and network_topology.is_topology_empty(topology):
        topology = network_topology.build_topology_from_primitives(primitives)
    known = {
        "agent": {a["id"] for a in stores.agents.list(org_id)},
        "workflow": {w["id"] for w in stores.workflows.list(org_id)},
    }
    result = network_topology.validate_network(topology, primitives, known)
    return JSONResponse(jsonable_encoder({**result, "topologyJson": topology}), status_code=200)


@app.get("/networks/{network_ref}")
async def get_network(network_ref: str, request: Request):
    try:
        network = definitions.get_network(
            stores,
            network_ref,
            _actor(request).get("org_id"),
            include_primitives=request.query_params.get("includePrimitives", "true") != "false",
            include_versions=_truthy(request.query_params.get("includeVersions")),
        )
    except definitions.DefinitionError as exc:
        return _definition_error(exc)
    return _ok_response({"network": network})


@app.put("/networks/{network_ref}")
async def update_network(network_ref: str, request: Request):
    actor = _actor(request)
    denied = _require_capability(actor, "definitions.write")
    if denied:
        return denied
    body = await _safe_json(request)
    restore_version = _int_param(body.pop("restoreVersion", None))
    restore_version_id = body.pop("restoreVersionId", None)
    description = body.pop("versionDescription", None)
    try:
        network = definitions.update_network(
            stores,
            network_ref,
            body,
            actor["org_id"],
            actor.get("user_id"),
            restore_version=restore_version,
            restore_version_id=restore_version_id,
            version_description=description,
        )
    except definitions.DefinitionError as exc:
        return _definition_error(exc)
    return _ok_response({"network": network})


@app.delete("/networks/{network_ref}")
async def delete_network(network_ref: str, request: Request):
    actor = _actor(request)
    denied = _require_capability(actor, "definitions.write")
    if denied:
        return denied
    try:
        result = definitions.delete_network(
            stores, network_ref, actor["org_id"], actor.get("user_id"), mode=request.query_params.get("mode") or "delete"
        )
    except definitions.DefinitionError as exc:
        return _definition_error(exc)
    return _ok_response(result)


@app.get("/networks/{network_ref}/versions")
async def list_network_versions(network_ref: str, request: Request):
    org_id = _actor(request).get("org_id")
    try:
        network = definitions.get_network(stores, network_ref, org_id)
    except definitions.DefinitionError as exc:
        return _definition_error(exc)
    return _ok_response({"versions": stores.networks.list_versions(network["id"], org_id)})


@app.post("/networks/{network_ref}/versions/{version}/restore")
async def restore_network_version(network_ref: str, version: int, request: Request):
    actor = _actor(request)
    denied = _require_capability(actor, "definitions.write")
    if denied:
        return denied
    body = await _safe_json(request)
    try:
        network = definitions.update_network(
            stores,
            network_ref,
            None,
            actor["org_id"],
            actor.get("user_id"),
            restore_version=version,
            version_description=body.get("versionDescription") or f"Restored from version {version}",
        )
    except definitions.DefinitionError as exc:
        return _definition_error(exc)
    return _ok_response({"network": network})


# network runs


@app.post("/networks/{network_ref}/runs")
async def create_network_run(network_ref: str, request: Request):
    actor = _actor(request)
    denied = _require_capability(actor, "runs.write")
    if denied:
        return denied
    org_id = actor["org_id"]
    try:
        network = definitions.get_network(stores, network_ref, org_id)
    except definitions.DefinitionError as exc:
        return _definition_error(exc)
    body = await _safe_json(request)
    source = body.get("source") or "api"
    if source not in RUN_SOURCES:
        return _error_response("RUN_SOURCE_INVALID", f"Unknown run source: {source}", "source")
    run = start_network_run(stores.runs, network["id"], body.get("input") or "", org_id, body.get("threadId"), source)
    return _ok_response({"run": run}, status=201)


@app.get("/networks/{network_ref}/runs")
async def list_network_runs(network_ref: str, request: Request):
    org_id = _actor(request).get("org_id")
    try:
        network = definitions.get_network(stores, network_ref, org_id)
    except definitions.DefinitionError as exc:
        return _definition_error(exc)
    limit = _int_param(request.query_params.get("limit"), 50)
    return _ok_response({"runs": stores.runs.list_network_runs(network["id"], org_id, limit=limit)})


@app.get("/network-runs/{run_id}")
async def get_network_run(run_id: str, request: Request):
    org_id = _actor(request).get("org_id")
    run = stores.runs.get_network_run(run_id, org_id)
    if not run:
        return _error_response("NETWORK_RUN_NOT_FOUND", "Network run not found", status=404)
    return _ok_response({"run": run, "steps": stores.runs.list_network_steps(run_id, org_id)})


@app.post("/network-runs/{run_id}/steps")
async def add_network_step(run_id: str, request: Request):
    actor = _actor(request)
    denied = _require_capability(actor, "runs.write")
    if denied:
        return denied
    body = await _safe_json(request)
    if not body.get("stepType"):
        return _error_response("NETWORK_STEP_INVALID", "stepType is required", "stepType")
    try:
        step = record_network_step(
            stores.runs,
            run_id,
            body["stepType"],
            primitive_type=body.get("primitiveType"),
            primitive_id=body.get("primitiveId"),
            routing_decision=body.get("routingDecision"),
            input=body.get("input"),
            output=body.get("output"),
            status=body.get("status") or "COMPLETED",
            tokens=_int_param(body.get("tokens"), 0),
            cost_usd=float(body.get("costUsd") or 0.0),
            duration_ms=_int_param(body.get("durationMs")),
            org_id=actor["org_id"],
        )
    except KeyError:
        return _error_response("NETWORK_RUN_NOT_FOUND", "Network run not found", status=404)
    return _ok_response({"step": step}, status=201)


@app.post("/network-runs/{run_id}/finish")
async def finish_network_run_route(run_id: str, request: Request):
    actor = _actor(request)
    denied = _require_capability(actor, "runs.write")
    if denied:
        return denied
    body = await _safe_json(request)
    run = finish_network_run(stores.runs, run_id, output=body.get("output"), error=body.get("error"), org_id=actor["org_id"])
    if not run:
        return _error_response("NETWORK_RUN_NOT_FOUND", "Network run not found", status=404)
    return _ok_response({"run": run})


# agent runs


def _resolve_agent(ref: str | None, org_id: str) -> dict | None:
    if not ref:
        return None
    return stores.agents.get(ref, org_id) or stores.agents.get_by_slug(ref, org_id)


def _run_handle(run_id: str, org_id: str) -> RunHandle | None:
    run = stores.runs.get(run_id, org_id)
    if not run:
        return None
    trace = stores.runs.get_trace_for_run(run_id, org_id)
    if not trace:
        return None
    return RunHandle(stores.runs, stores.budget, run, trace, org_id, run.get("agentId"), run.get("agentSlug"))


@app.get("/runs")
async def list_runs(request: Request):
    org_id = _actor(request).get("org_id")
    where = {}
    for key in ("agentId", "status", "source", "sessionId"):
        value = request.query_params.get(key)
        if value:
            where[key] = value
    limit = _int_param(request.query_params.get("limit"), 50)
    return _ok_response({"runs": stores.runs.list(org_id, limit=max(1, min(limit, 500)), **where)})


@app.post("/runs")
async def create_run(request: Request):
    actor = _actor(request)
    denied = _require_capability(actor, "runs.write")
    if denied:
        return denied
    org_id = actor["org_id"]
    body = await _safe_json(request)
    agent = _resolve_agent(body.get("agentId") or body.get("agentSlug"), org_id)
    if not agent:
        return _error_response("AGENT_NOT_FOUND", "Agent not found", "agentId", status=404)
    source = body.get("source") or "api"
    if source not in RUN_SOURCES:
        return _error_response("RUN_SOURCE_INVALID", f"Unknown run source: {source}", "source")
    user_id = body.get("userId") or actor.get("user_id")
    budget = budget_service.check(agent["id"], org_id, user_id=user_id)
    if not budget["allowed"]:
        return _error_response("BUDGET_EXCEEDED", budget["violations"][0]["message"], detail={"violations": budget["violations"]}, status=402)
    handle = start_run(
        stores.runs,
        stores.budget,
        agent_id=agent["id"],
        agent_slug=agent["slug"],
        input=body.get("input") or "",
        source=source,
        org_id=org_id,
        user_id=user_id,
        thread_id=body.get("threadId"),
        session_id=body.get("sessionId"),
        version_id=body.get("versionId"),
    )
    return _ok_response({"runId": handle.run_id, "traceId": handle.trace_id, "budgetWarnings": budget["warnings"]}, status=201)


@app.get("/runs/{run_id}")
async def get_run(run_id: str, request: Request):
    org_id = _actor(request).get("org_id")
    run = stores.runs.get(run_id, org_id)
    if not run:
        return _error_response("RUN_NOT_FOUND", "Run not found", status=404)
    return _ok_response(
        {
            "run": run,
            "trace": stores.runs.get_trace_for_run(run_id, org_id),
            "toolCalls": stores.runs.list_tool_calls(run_id, org_id),
            "evaluations": stores.runs.list_evaluations(run_id, org_id),
        }
    )


@app.post("/runs/{run_id}/complete")
async def complete_run(run_id: str, request: Request):
    actor = _actor(request)
    denied = _require_capability(actor, "runs.write")
    if denied:
        return denied
    handle = _run_handle(run_id, actor["org_id"])
    if not handle:
        return _error_response("RUN_NOT_FOUND", "Run not found", status=404)
    body = await _safe_json(request)
    response = body.get("response") if isinstance(body.get("response"), dict) else {}
    usage = extract_token_usage(response) or {}
    for call in extract_tool_calls(response):
        handle.add_tool_call(call["toolKey"], call["success"], call["input"], call["output"], call["error"])
    run = handle.complete(
        output=body.get("output") if body.get("output") is not None else response.get("text") or "",
        model_provider=body.get("modelProvider"),
        model_name=body.get("modelName"),
        prompt_tokens=body.get("promptTokens", usage.get("promptTokens")),
        completion_tokens=body.get("completionTokens", usage.get("completionTokens")),
        cost_usd=body.get("costUsd"),
        steps=body.get("steps") or response.get("steps"),
        scores=body.get("scores"),
    )
    return _ok_response({"run": run})


@app.post("/runs/{run_id}/fail")
async def fail_run(run_id: str, request: Request):
    actor = _actor(request)
    denied = _require_capability(actor, "runs.write")
    if denied:
        return denied
    handle = _run_handle(run_id, actor["org_id"])
    if not handle:
        return _error_response("RUN_NOT_FOUND", "Run not found", status=404)
    body = await _safe_json(request)
    return _ok_response({"run": handle.fail(body.get("error") or "Unknown error")})


@app.post("/runs/{run_id}/tool-calls")
async def add_run_tool_call(run_id: str, request: Request):
    actor = _actor(request)
    denied = _require_capability(actor, "runs.write")
    if denied:
        return denied
    handle = _run_handle(run_id, actor["org_id"])
    if not handle:
        return _error_response("RUN_NOT_FOUND", "Run not found", status=404)
    body = await _safe_json(request)
    if not body.get("toolKey"):
        return _error_response("TOOL_CALL_INVALID", "toolKey is required", "toolKey")
    call = handle.add_tool_call(
        body["toolKey"],
        body.get("success", True) is not False,
        input=body.get("input"),
        output=body.get("output"),
        error=body.get("error"),
        duration_ms=_int_param(body.get("durationMs")),
        mcp_server_id=body.get("mcpServerId"),
    )
    return _ok_response({"toolCall": call}, status=201)


# collaboration sessions


@app.post("/sessions")
async def create_session(request: Request):
    actor = _actor(request)
    denied = _require_capability(actor, "runs.write")
    if denied:
        return denied
    org_id = actor["org_id"]
    body = await _safe_json(request)
    slugs = body.get("agentSlugs") or []
    known = stores.agents.slugs(org_id)
    missing = [slug for slug in slugs if slug not in known]
    if missing:
        return _error_response("AGENT_NOT_FOUND", f"Unknown agents: {', '.join(missing)}", "agentSlugs", status=404)
    try:
        session = sessions.create_session(
            stores.sessions,
            body.get("name") or "Collaboration session",
            slugs,
            body.get("task") or "",
            initiator_type=body.get("initiatorType") or "user",
            initiator_id=body.get("initiatorId") or actor.get("user_id"),
            orchestrator_slug=body.get("orchestratorSlug"),
            scratchpad_template=body.get("scratchpadTemplate"),
            max_peer_calls=_int_param(body.get("maxPeerCalls")),
            max_depth=_int_param(body.get("maxDepth")),
            org_id=org_id,
        )
    except sessions.SessionError as exc:
        return _session_error(exc)
    return _ok_response({"session": session}, status=201)


@app.get("/sessions/{session_id}")
async def get_session(session_id: str, request: Request):
    session = stores.sessions.get(session_id, _actor(request).get("org_id"))
    if not session:
        return _error_response("SESSION_NOT_FOUND", f'Session "{session_id}" not found', status=404)
    return _ok_response({"session": session})


@app.get("/sessions/{session_id}/scratchpad")
async def read_session_scratchpad(session_id: str, request: Request):
    try:
        content = sessions.read_scratchpad(stores.sessions, session_id, _actor(request).get("org_id"))
    except sessions.SessionError as exc:
        return _session_error(exc)
    return _ok_response({"content": content})


@app.put("/sessions/{session_id}/scratchpad")
async def write_session_scratchpad(session_id: str, request: Request):
    actor = _actor(request)
    body = await _safe_json(request)
    if not isinstance(body.get("content"), str):
        return _error_response("SESSION_SCRATCHPAD_INVALID", "content must be a string", "content")
    try:
        content = sessions.write_scratchpad(stores.sessions, session_id, body["content"], body.get("mode") or "append", actor.get("org_id"))
    except sessions.SessionError as exc:
        return _session_error(exc)
    return _ok_response({"content": content})


@app.post("/sessions/{session_id}/peer-calls")
async def authorize_session_peer_call(session_id: str, request: Request):
    org_id = _actor(request).get("org_id")
    body = await _safe_json(request)
    source, target = body.get("sourceAgentSlug"), body.get("targetAgentSlug")
    if not source or not target:
        return _error_response("SESSION_PEER_CALL_INVALID", "sourceAgentSlug and targetAgentSlug are required")
    source_agent = stores.agents.get_by_slug(source, org_id) or {}
    result = sessions.authorize_peer_call(
        stores.sessions,
        session_id,
        source,
        target,
        depth=_int_param(body.get("depth"), 0),
        policy=source_agent.get("communicationPolicy"),
        org_id=org_id,
    )
    if result["allowed"]:
        sessions.record_participant_invocation(stores.sessions, session_id, target, org_id=org_id)
    return _ok_response({"allowed": result["allowed"], "error": result["error"], "session": result["session"]})


@app.post("/sessions/{session_id}/complete")
async def complete_session(session_id: str, request: Request):
    body = await _safe_json(request)
    try:
        session = sessions.complete_session(stores.sessions, session_id, body.get("status") or "completed", _actor(request).get("org_id"))
    except sessions.SessionError as exc:
        return _session_error(exc)
    return _ok_response({"session": session})


# schedules


@app.get("/schedules")
async def list_schedules(request: Request):
    org_id = _actor(request).get("org_id")
    return _ok_response({"schedules": schedules.list_schedules(stores, org_id, request.query_params.get("agentId"))})


@app.post("/schedules/describe")
async def describe_schedule(request: Request):
    body = await _safe_json(request)
    try:
        cron = body.get("cronExpr") or cron_schedule.build_cron_from_human(
            body.get("frequency") or "",
            body.get("time") or "09:00",
            body.get("daysOfWeek"),
            body.get("dayOfMonth"),
        )
        cron_schedule.validate_cron(cron)
        tz = cron_schedule.validate_timezone(body.get("timezone"))
        next_run = cron_schedule.next_run_at(cron, tz)
    except cron_schedule.ScheduleError as exc:
        return _error_response("SCHEDULE_INVALID", str(exc), "cronExpr")
    return _ok_response({"cronExpr": cron, "timezone": tz, "description": cron_schedule.describe_with_timezone(cron, tz), "nextRunAt": next_run})


@app.post("/schedules")
async def create_schedule(request: Request):
    actor = _actor(request)
    denied = _require_capability(actor, "definitions.write")
    if denied:
        return denied
    body = await _safe_json(request)
    if body.get("agentId") and not _resolve_agent(body["agentId"], actor["org_id"]):
        return _error_response("AGENT_NOT_FOUND", "Agent not found", "agentId", status=404)
    try:
        schedule = schedules.create_schedule(stores, body, actor["org_id"], actor.get("user_id"))
    except cron_schedule.ScheduleError as exc:
        return _error_response("SCHEDULE_INVALID", str(exc))
    return _ok_response({"schedule": schedule}, status=201)


@app.get("/schedules/{schedule_id}")
async def get_schedule(schedule_id: str, request: Request):
    schedule = stores.schedules.get(schedule_id, _actor(request).get("org_id"))
    if not schedule:
        return _error_response("SCHEDULE_NOT_FOUND", "Schedule not found", status=404)
    return _ok_response({"schedule": schedule})


@app.put("/schedules/{schedule_id}")
async def update_schedule(schedule_id: str, request: Request):
    actor = _actor(request)
    denied = _require_capability(actor, "definitions.write")
    if denied:
        return denied
    body = await _safe_json(request)
    try:
        schedule = schedules.update_schedule(stores, schedule_id, body, actor["org_id"], actor.get("user_id"))
    except cron_schedule.ScheduleError as exc:
        return _error_response("SCHEDULE_INVALID", str(exc))
    if not schedule:
        return _error_response("SCHEDULE_NOT_FOUND", "Schedule not found", status=404)
    return _ok_response({"schedule": schedule})


@app.delete("/schedules/{schedule_id}")
async def delete_schedule(schedule_id: str, request: Request):
    actor = _actor(request)
    denied = _require_capability(actor, "definitions.write")
    if denied:
        return denied
    if not schedules.delete_schedule(stores, schedule_id, actor["org_id"], actor.get("user_id")):
        return _error_response("SCHEDULE_NOT_FOUND", "Schedule not found", status=404)
    return _ok_response({"deleted": True})


# federation


def _federation_result(result: dict, status: int = 200) -> JSONResponse:
    if result.get("error"):
        return _error_response("FEDERATION_ERROR", result["error"])
    return _ok_response(result, status=status)


@app.get("/federation/keys")
async def get_org_key(request: Request):
    actor = _actor(request)
    denied = _require_capability(actor, "federation.read")
    if denied:
        return denied
    org_id = actor["org_id"]
    key = crypto.get_active_org_key_pair(stores.federation, org_id)
    if not key:
        return _error_response("FEDERATION_KEYS_MISSING", "Organization security keys not provisioned", status=404)
    return _ok_response({"key": {"publicKey": key["publicKey"], "keyVersion": key.get("keyVersion"), "createdAt": key.get("createdAt")}})


@app.post("/federation/keys")
async def rotate_org_key(request: Request):
    actor = _actor(request)
    denied = _require_capability(actor, "federation.manage", "Admin role required")
    if denied:
        return denied
    try:
        key = crypto.generate_org_key_pair(stores.federation, actor["org_id"])
    except (crypto.FederationCryptoError, SecretStoreError) as exc:
        return _error_response("FEDERATION_KEYS_FAILED", str(exc), status=500)
    return _ok_response({"key": {"publicKey": key["publicKey"], "keyVersion": key.get("keyVersion")}}, status=201)


@app.get("/federation/connections")
async def list_connections(request: Request):
    actor = _actor(request)
    denied = _require_capability(actor, "federation.read")
    if denied:
        return denied
    return _ok_response({"connections": federation.list_connections(actor["org_id"])})


@app.post("/federation/connections")
async def request_connection(request: Request):
    actor = _actor(request)
    denied = _require_capability(actor, "federation.manage", "Admin role required")
    if denied:
        return denied
    body = await _safe_json(request)
    if not body.get("targetOrgSlug"):
        return _error_response("FEDERATION_TARGET_REQUIRED", "targetOrgSlug is required", "targetOrgSlug")
    try:
        federation.ensure_org_keys(actor["org_id"])
    except (crypto.FederationCryptoError, SecretStoreError) as exc:
        return _error_response("FEDERATION_KEYS_FAILED", str(exc), status=500)
    return _federation_result(federation.request_connection(actor["org_id"], actor.get("user_id"), body), status=201)


@app.post("/federation/connections/{agreement_id}/approve")
async def approve_connection(agreement_id: str, request: Request):
    actor = _actor(request)
    denied = _require_capability(actor, "federation.manage", "Admin role required")
    if denied:
        return denied
    body = await _safe_json(request)
    try:
        federation.ensure_org_keys(actor["org_id"])
    except (crypto.FederationCryptoError, SecretStoreError) as exc:
        return _error_response("FEDERATION_KEYS_FAILED", str(exc), status=500)
    return _federation_result(federation.approve_connection(agreement_id, actor["org_id"], actor.get("user_id"), body))


@app.post("/federation/connections/{agreement_id}/suspend")
async def suspend_connection(agreement_id: str, request: Request):
    actor = _actor(request)
    denied = _require_capability(actor, "federation.manage", "Admin role required")
    if denied:
        return denied
    body = await _safe_json(request)
    return _federation_result(federation.suspend_connection(agreement_id, actor["org_id"], actor.get("user_id"), body.get("reason") or ""))


@app.post("/federation/connections/{agreement_id}/revoke")
async def revoke_connection(agreement_id: str, request: Request):
    actor = _actor(request)
    denied = _require_capability(actor, "federation.manage", "Admin role required")
    if denied:
        return denied
    body = await _safe_json(request)
    return _federation_result(federation.revoke_connection(agreement_id, actor["org_id"], actor.get("user_id"), body.get("reason") or ""))


@app.get("/federation/connections/{agreement_id}/agents")
async def list_exposed_agents(agreement_id: str, request: Request):
    actor = _actor(request)
    denied = _require_capability(actor, "federation.read")
    if denied:
        return denied
    return _federation_result(federation.list_exposed_agents(agreement_id, actor["org_id"]))


@app.post("/federation/invoke")
async def federated_invoke(request: Request):
    actor = _actor(request)
    denied = _require_capability(actor, "runs.write")
    if denied:
        return denied
    body = await _safe_json(request)
    for key in ("agreementId", "targetAgentSlug", "message"):
        if not body.get(key):
            return _error_response("FEDERATION_INVOKE_INVALID", f"{key} is required", key)
    result = await anyio.to_thread.run_sync(
        partial(federation.process_invocation, actor["org_id"], body, agent_invoker, actor_id=actor.get("user_id"))
    )
    return JSONResponse(jsonable_encoder(result), status_code=200 if result["success"] else 403)


@app.get("/federation/messages/{message_id}/verify")
async def verify_federation_message(message_id: str, request: Request):
    actor = _actor(request)
    denied = _require_capability(actor, "audit.read")
    if denied:
        return denied
    message = stores.federation.get_message(message_id)
    if not message or actor.get("org_id") not in (message.get("sourceOrgId"), message.get("targetOrgId")):
        return _error_response("FEDERATION_MESSAGE_NOT_FOUND", "Message not found", status=404)
    return _ok_response(federation.verify_stored_message(message_id))


# policy


@app.post("/policy/communication")
async def evaluate_communication_policy(request: Request):
    org_id = _actor(request).get("org_id")
    body = await _safe_json(request)
    from_agent, to_agent = body.get("fromAgent"), body.get("toAgent")
    if not from_agent or not to_agent:
        return _error_response("POLICY_INVALID", "fromAgent and toAgent are required")
    policy = body.get("policy")
    if policy is None:
        policy = (stores.agents.get_by_slug(from_agent, org_id) or {}).get("communicationPolicy")
    decision = comm_policy.evaluate_communication(
        policy,
        from_agent,
        to_agent,
        depth=_int_param(body.get("depth"), 0),
        peer_calls=_int_param(body.get("peerCalls"), 0),
    )
    return _ok_response(decision)


@app.post("/policy/origin")
async def evaluate_origin_policy(request: Request):
    body = await _safe_json(request)
    return _ok_response(comm_policy.evaluate_origin(body.get("origin"), body.get("allowed"), body.get("denied")))


@app.post("/policy/sender")
async def evaluate_sender_policy(request: Request):
    body = await _safe_json(request)
    allowlist = body.get("allowlist")
    if allowlist is None:
        allowlist = comm_policy.parse_allowlist(os.getenv("WHATSAPP_ALLOWLIST"))
    return _ok_response({"allowed": comm_policy.sender_allowed(body.get("sender"), allowlist)})


# budget


@app.post("/budget/check")
async def budget_check(request: Request):
    org_id = _actor(request).get("org_id")
    body = await _safe_json(request)
    agent = _resolve_agent(body.get("agentId"), org_id)
    if not agent:
        return _error_response("AGENT_NOT_FOUND", "Agent not found", "agentId", status=404)
    result = budget_service.check(agent["id"], org_id, user_id=body.get("userId"))
    return _ok_response({"allowed": result["allowed"], "violations": result["violations"], "budgetWarnings": result["warnings"]})


@app.put("/budget/policies/{level}")
async def set_budget_policy(level: str, request: Request):
    actor = _actor(request)
    denied = _require_capability(actor, "budget.manage", "Admin role required")
    if denied:
        return denied
    body = await _safe_json(request)
    try:
        policy = budget_service.set_policy(actor["org_id"], level, body, user_id=body.get("userId"), agent_id=body.get("agentId"))
    except ValueError as exc:
        return _error_response("BUDGET_LEVEL_INVALID", str(exc), "level")
    write_audit_log(stores.audit, "BUDGET_POLICY_UPDATE", "budget_policy", policy["id"], actor.get("user_id"), actor["org_id"], {"level": level})
    return _ok_response({"policy": policy})


@app.post("/budget/reservations")
async def create_reservation(request: Request):
    actor = _actor(request)
    denied = _require_capability(actor, "runs.write")
    if denied:
        return denied
    body = await _safe_json(request)
    try:
        estimated = float(body.get("estimatedCostUsd"))
    except (TypeError, ValueError):
        return _error_response("RESERVATION_INVALID", "estimatedCostUsd must be a number", "estimatedCostUsd")
    if not body.get("runId") or not body.get("agentId"):
        return _error_response("RESERVATION_INVALID", "runId and agentId are required")
    reservation_id = budget_service.create_reservation(body["runId"], body["agentId"], estimated, actor["org_id"], user_id=body.get("userId"))
    return _ok_response({"reservationId": reservation_id}, status=201)


@app.post("/budget/reservations/cleanup")
async def cleanup_reservations(request: Request):
    actor = _actor(request)
    denied = _require_capability(actor, "budget.manage", "Admin role required")
    if denied:
        return denied
    return _ok_response({"cancelled": budget_service.cleanup_stale_reservations(actor["org_id"])})


@app.post("/budget/reservations/{reservation_id}/finalize")
async def finalize_reservation(reservation_id: str, request: Request):
    actor = _actor(request)
    denied = _require_capability(actor, "runs.write")
    if denied:
        return denied
    body = await _safe_json(request)
    try:
        actual = float(body.get("actualCostUsd"))
    except (TypeError, ValueError):
        return _error_response("RESERVATION_INVALID", "actualCostUsd must be a number", "actualCostUsd")
    event = budget_service.finalize_reservation(reservation_id, actual, actor["org_id"])
    if not event:
        return _error_response("RESERVATION_NOT_FOUND", "Reservation not found", status=404)
    return _ok_response({"reservation": event})


@app.post("/budget/reservations/{reservation_id}/cancel")
async def cancel_reservation(reservation_id: str, request: Request):
    actor = _actor(request)
    denied = _require_capability(actor, "runs.write")
    if denied:
        return denied
    event = budget_service.cancel_reservation(reservation_id, actor["org_id"])
    if not event:
        return _error_response("RESERVATION_NOT_FOUND", "Reservation not found", status=404)
    return _ok_response({"reservation": event})


# mcp


def _mcp_servers(org_id: str) -> dict:
    return {s["name"]: s["config"] for s in stores.mcp_servers.list(org_id) if s.get("isActive", True) and s.get("config")}


def _mcp_agent_usage(org_id: str) -> dict:
    usage: dict[str, list] = {}
    servers = {s["name"] for s in stores.mcp_servers.list(org_id)}
    for agent in stores.agents.list(org_id):
        used = set()
        for tool in agent.get("tools") or []:
            try:
                server, _ = parse_tool_name(tool)
            except McpConfigError:
                continue
            if server in servers:
                used.add(server)
        for server in used:
            usage.setdefault(server, []).append({"id": agent["id"], "slug": agent.get("slug"), "name": agent.get("name")})
    return usage


@app.get("/mcp/servers")
async def list_mcp_servers(request: Request):
    actor = _actor(request)
    denied = _require_capability(actor, "mcp.manage", "Admin role required")
    if denied:
        return denied
    return _ok_response({"servers": stores.mcp_servers.list(actor["org_id"])})


@app.get("/mcp/config")
async def export_mcp(request: Request):
    actor = _actor(request)
    denied = _require_capability(actor, "mcp.manage", "Admin role required")
    if denied:
        return denied
    return _ok_response({"config": export_mcp_config(stores.mcp_servers.list(actor["org_id"]))})


@app.post("/mcp/config/impact")
async def mcp_config_impact(request: Request):
    actor = _actor(request)
    denied = _require_capability(actor, "mcp.manage", "Admin role required")
    if denied:
        return denied
    org_id = actor["org_id"]
    body = await _safe_json(request)
    try:
        impact = analyze_config_impact(stores.mcp_servers.list(org_id), body.get("config"), body.get("mode") or "replace", _mcp_agent_usage(org_id))
    except McpConfigError as exc:
        return _error_response("MCP_CONFIG_INVALID", str(exc), "config")
    return _ok_response({"impact": impact})


@app.post("/mcp/config")
async def import_mcp(request: Request):
    actor = _actor(request)
    denied = _require_capability(actor, "mcp.manage", "Admin role required")
    if denied:
        return denied
    org_id = actor["org_id"]
    body = await _safe_json(request)
    mode = body.get("mode") or "replace"
    validation = validate_mcp_config(body.get("config"))
    if not validation["ok"]:
        return JSONResponse(jsonable_encoder(validation), status_code=400)
    try:
        impact = analyze_config_impact(stores.mcp_servers.list(org_id), body.get("config"), mode, _mcp_agent_usage(org_id))
    except McpConfigError as exc:
        return _error_response("MCP_CONFIG_INVALID", str(exc), "mode")
    if impact["hasImpact"] and not body.get("confirm"):
        return _error_response("MCP_IMPORT_CONFIRM_REQUIRED", "Import disables servers used by agents", detail={"impact": impact}, status=409)

    for name, config in validation["servers"].items():
        existing = stores.mcp_servers.get_by_name(name, org_id)
        if existing:
            stores.mcp_servers.update(existing["id"], {"config": config, "isActive": True}, org_id)
        else:
            stores.mcp_servers.create({"name": name, "config": config, "isActive": True}, org_id)
    for entry in impact["serversToDisable"]:
        existing = stores.mcp_servers.get_by_name(entry["serverName"], org_id)
        if existing:
            stores.mcp_servers.update(existing["id"], {"isActive": False}, org_id)
    write_audit_log(
        stores.audit,
        "INTEGRATION_UPDATE",
        "mcp_config",
        org_id,
        actor.get("user_id"),
        org_id,
        {"mode": mode, "added": impact["serversToAdd"], "updated": impact["serversToUpdate"], "disabled": len(impact["serversToDisable"])},
    )
    return _ok_response({"impact": impact, "servers": stores.mcp_servers.list(org_id)}, warnings=validation["warnings"])


@app.get("/mcp/tools")
async def discover_mcp_tools(request: Request):
    actor = _actor(request)
    denied = _require_capability(actor, "runs.write")
    if denied:
        return denied
    client = McpClient(_mcp_servers(actor["org_id"]), transport=mcp_transport)
    found = await anyio.to_thread.run_sync(client.discover_tools)
    return _ok_response({"tools": found["tools"], "serverErrors": found["errors"], "skipped": found["skipped"]})


@app.post("/mcp/tools/call")
async def call_mcp_tool(request: Request):
    actor = _actor(request)
    denied = _require_capability(actor, "runs.write")
    if denied:
        return denied
    body = await _safe_json(request)
    if not body.get("name"):
        return _error_response("MCP_TOOL_REQUIRED", "name is required", "name")
    client = McpClient(_mcp_servers(actor["org_id"]), transport=mcp_transport)
    result = await anyio.to_thread.run_sync(client.call_tool, body["name"], body.get("arguments"))
    return _ok_response(result)


# embed


@app.post("/embed/partners")
async def create_embed_partner(request: Request):
    actor = _actor(request)
    denied = _require_capability(actor, "embed.manage", "Admin role required")
    if denied:
        return denied
    body = await _safe_json(request)
    name = body.get("name")
    if not isinstance(name, str) or not name.strip():
        return _error_response("EMBED_PARTNER_INVALID", "name is required", "name")
    slug = body.get("slug") or network_topology.generate_slug(name)
    if stores.embed.get_by_slug(slug):
        return _error_response("EMBED_PARTNER_SLUG_TAKEN", f"Partner slug '{slug}' already exists", "slug", status=409)
    partner = create_partner(stores.embed, actor["org_id"], name.strip(), slug, _int_param(body.get("tokenMaxAgeSec"), 3600))
    return _ok_response({"partner": partner}, status=201)


@app.post("/embed/verify")
async def verify_embed(request: Request):
    body = await _safe_json(request)
    if not body.get("identityToken") or not body.get("organizationId"):
        return _error_response("EMBED_IDENTITY_INVALID", "identityToken and organizationId are required")
    identity = verify_embed_identity(stores, body["identityToken"], body["organizationId"], partner_id=body.get("partnerId"))
    if not identity:
        return _error_response("EMBED_IDENTITY_INVALID", "Invalid identity token", status=401)
    return _ok_response({"identity": identity})


# audit


@app.get("/audit")
async def get_audit_logs(request: Request):
    actor = _actor(request)
    denied = _require_capability(actor, "audit.read", "Admin role required")
    if denied:
        return denied
    params = request.query_params
    result = query_audit_logs(
        stores.audit,
        actor["org_id"],
        entity_type=params.get("entityType"),
        entity_id=params.get("entityId"),
        actor_id=params.get("actorId"),
        action=params.get("action"),
        from_iso=params.get("from"),
        to_iso=params.get("to"),
        limit=_int_param(params.get("limit"), 50),
        cursor=params.get("cursor"),
    )
    return _ok_response(result)


# diagnostics


def _stored_channel_credentials(org_id: str) -> dict:
    out = {}
    for row in stores.records.find("channel_credentials", org_id):
        try:
            out[row["provider"]] = decrypt_json(row.get("encrypted")) or {}
        except SecretStoreError:
            logger.warning("channel_credentials_unreadable org_id=%s provider=%s", org_id, row.get("provider"))
    return out


@app.get("/diagnostics")
async def workspace_diagnostics(request: Request):
    actor = _actor(request)
    denied = _require_capability(actor, "diagnostics.read")
    if denied:
        return denied
    org_id = actor["org_id"]
    networks = stores.networks.list(org_id)
    primitives = {n["id"]: stores.networks.list_primitives(n["id"], org_id) for n in networks}
    result = build_workspace_diagnostics(stores.workflows.list(org_id), networks, stores.schedules.list(org_id), primitives)
    return JSONResponse(jsonable_encoder(result), status_code=200)


@app.get("/diagnostics/channels")
async def channel_diagnostics(request: Request):
    actor = _actor(request)
    denied = _require_capability(actor, "diagnostics.read")
    if denied:
        return denied
    credentials = _stored_channel_credentials(actor["org_id"])
    result = await anyio.to_thread.run_sync(partial(run_channel_diagnostics, credentials, prober=channel_prober))
    return _ok_response(result)


@app.put("/diagnostics/channels/{provider}")
async def save_channel_credentials(provider: str, request: Request):
    actor = _actor(request)
    denied = _require_capability(actor, "members.manage", "Admin role required")
    if denied:
        return denied
    if provider not in ("twilio", "elevenlabs", "telegram", "whatsapp"):
        return _error_response("CHANNEL_UNKNOWN", f"Unknown channel: {provider}", "provider", status=404)
    body = await _safe_json(request)
    credentials = {k: v for k, v in (body.get("credentials") or {}).items() if isinstance(v, str)}
    try:
        encrypted = encrypt_json(credentials)
    except SecretStoreError as exc:
        return _error_response("SECRET_STORE_UNAVAILABLE", str(exc), status=500)
    org_id = actor["org_id"]
    existing = stores.records.find_one("channel_credentials", org_id, where={"provider": provider})
    if existing:
        stores.records.update("channel_credentials", existing["id"], {"encrypted": encrypted}, org_id)
        action = "CREDENTIAL_UPDATE"
        record_id = existing["id"]
    else:
        record_id = stores.records.create("channel_credentials", {"provider": provider, "encrypted": encrypted}, org_id)["id"]
        action = "CREDENTIAL_CREATE"
    write_audit_log(stores.audit, action, "channel_credentials", record_id, actor.get("user_id"), org_id, {"provider": provider, "keys": sorted(credentials)})
    return _ok_response({"provider": provider, "keys": sorted(credentials)})
