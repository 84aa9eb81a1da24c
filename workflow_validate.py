"""Structural validation of workflow definitions (no execution)."""

from __future__ import annotations

from typing import Any, Dict, Iterable, List

import condition_eval
from workflow_bindings import extract_template_refs, normalize_path


Issue = Dict[str, Any]

STEP_TYPES = ("agent", "tool", "workflow", "branch", "parallel", "foreach", "human", "delay", "transform")
MAX_NESTING_DEPTH = 5
TEMPLATE_ROOTS = {"input", "steps", "variables", "item", "index"}
_NESTED_KEYS = {"steps", "branches", "defaultBranch"}


def _issue(code: str, message: str, path: str | None = None, detail: dict | None = None) -> Issue:
    return {"code": code, "message": message, "path": path, "detail": detail}


class _State:
    def __init__(self, all_ids: set[str], known: dict) -> None:
        self.errors: List[Issue] = []
        self.warnings: List[Issue] = []
        self.all_ids = all_ids
        self.declared: set[str] = set()
        self.seen: Dict[str, str] = {}
        self.type_counts: Dict[str, int] = {}
        self.step_count = 0
        self.max_depth = 0
        self.known = known


def _collect_ids(steps: Any, out: set[str]) -> None:
    if not isinstance(steps, list):
        return
    for step in steps:
        if not isinstance(step, dict):
            continue
        if isinstance(step.get("id"), str) and step["id"]:
            out.add(step["id"])
        for child_steps in _child_step_lists(step):
            _collect_ids(child_steps[1], out)


def _child_step_lists(step: dict) -> Iterable[tuple[str, Any]]:
    config = step.get("config")
    stype = step.get("type")
    if not isinstance(config, dict) or not isinstance(stype, str):
        return []
    children: List[tuple[str, Any]] = []
    if stype == "foreach":
        children.append(("config.steps", config.get("steps")))
    elif stype in {"branch", "parallel"}:
        branches = config.get("branches")
        if isinstance(branches, list):
            for idx, branch in enumerate(branches):
                if isinstance(branch, dict):
                    children.append((f"config.branches[{idx}].steps", branch.get("steps")))
        if stype == "branch" and "defaultBranch" in config:
            children.append(("config.defaultBranch", config.get("defaultBranch")))
    return children


def _check_refs(values: Any, path: str, scope_roots: set[str], state: _State, current_id: str | None) -> None:
    for ref in extract_template_refs(values):
        _check_ref_path(ref, path, scope_roots, state, current_id)


def _check_ref_path(ref: str, path: str, scope_roots: set[str], state: _State, current_id: str | None) -> None:
    parts = normalize_path(ref)
    if not parts:
        state.errors.append(_issue("WORKFLOW_INVALID", "Empty template reference", path))
        return
    root = parts[0]
    if root not in scope_roots:
        state.warnings.append(
            _issue("WORKFLOW_UNKNOWN_TEMPLATE_ROOT", f"Unknown template root: {root}", path, {"ref": ref})
        )
        return
    if root != "steps":
        return
    if len(parts) < 2:
        state.errors.append(_issue("WORKFLOW_UNKNOWN_STEP_REF", "steps reference needs a step id", path, {"ref": ref}))
        return
    target = parts[1]
    if target in state.declared and target != current_id:
        return
    if target in state.all_ids:
        state.warnings.append(
            _issue(
                "WORKFLOW_FORWARD_REF",
                f"Step '{target}' is referenced before it runs",
                path,
                {"ref": ref, "step_id": target},
            )
        )
        return
    state.errors.append(
        _issue("WORKFLOW_UNKNOWN_STEP_REF", f"Unknown step reference: {target}", path, {"ref": ref, "step_id": target})
    )


def _check_known(kind: str, value: Any, path: str, state: _State) -> None:
    known = state.known.get(kind)
    if known is None or not isinstance(value, str):
        return
    if value not in known:
        code = {"agents": "WORKFLOW_UNKNOWN_AGENT", "tools": "WORKFLOW_UNKNOWN_TOOL", "workflows": "WORKFLOW_UNKNOWN_WORKFLOW"}[kind]
        state.errors.append(_issue(code, f"Unknown {kind[:-1]}: {value}", path))


def _require_string(config: dict, key: str, path: str, state: _State) -> None:
    value = config.get(key)
    if not isinstance(value, str) or not value.strip():
        state.errors.append(_issue("WORKFLOW_INVALID", f"config.{key} must be non-empty string", f"{path}.config.{key}"))


def _validate_config(step: dict, path: str, scope_roots: set[str], state: _State) -> None:
    stype = step.get("type")
    config = step.get("config")
    if config is None:
        config = {}
    if not isinstance(config, dict):
        state.errors.append(_issue("WORKFLOW_INVALID", "config must be object", f"{path}.config"))
        return

    if stype == "agent":
        _require_string(config, "agentSlug", path, state)
        _check_known("agents", config.get("agentSlug"), f"{path}.config.agentSlug", state)
        fmt = config.get("outputFormat")
        if fmt is not None and fmt not in {"text", "json"}:
            state.errors.append(_issue("WORKFLOW_INVALID", "outputFormat must be text or json", f"{path}.config.outputFormat"))
    elif stype == "tool":
        _require_string(config, "toolId", path, state)
        _check_known("tools", config.get("toolId"), f"{path}.config.toolId", state)
    elif stype == "workflow":
        _require_string(config, "workflowId", path, state)
        _check_known("workflows", config.get("workflowId"), f"{path}.config.workflowId", state)
    elif stype == "foreach":
        _require_string(config, "collectionPath", path, state)
        if not isinstance(config.get("steps"), list):
            state.errors.append(_issue("WORKFLOW_INVALID", "foreach config.steps must be list", f"{path}.config.steps"))
        item_var = config.get("itemVar")
        if item_var is not None and (not isinstance(item_var, str) or not item_var):
            state.errors.append(_issue("WORKFLOW_INVALID", "itemVar must be non-empty string", f"{path}.config.itemVar"))
        concurrency = config.get("concurrency")
        if concurrency is not None and (not isinstance(concurrency, int) or isinstance(concurrency, bool) or concurrency < 1):
            state.errors.append(_issue("WORKFLOW_INVALID", "concurrency must be positive integer", f"{path}.config.concurrency"))
        collection = config.get("collectionPath")
        if isinstance(collection, str) and collection.strip():
            _check_ref_path(collection, f"{path}.config.collectionPath", scope_roots, state, step.get("id"))
    elif stype in {"branch", "parallel"}:
        branches = config.get("branches")
        if not isinstance(branches, list):
            state.errors.append(_issue("WORKFLOW_INVALID", f"{stype} config.branches must be list", f"{path}.config.branches"))
        elif stype == "parallel" and not branches:
            state.errors.append(_issue("WORKFLOW_INVALID", "parallel config.branches must not be empty", f"{path}.config.branches"))
        else:
            branch_ids: List[str] = []
            for bidx, branch in enumerate(branches):
                bpath = f"{path}.config.branches[{bidx}]"
                if not isinstance(branch, dict):
                    state.errors.append(_issue("WORKFLOW_INVALID", "branch must be object", bpath))
                    continue
                if not isinstance(branch.get("id"), str) or not branch.get("id"):
                    state.errors.append(_issue("WORKFLOW_INVALID", "branch.id must be non-empty string", f"{bpath}.id"))
                else:
                    branch_ids.append(branch["id"])
                if not isinstance(branch.get("steps"), list):
                    state.errors.append(_issue("WORKFLOW_INVALID", "branch.steps must be list", f"{bpath}.steps"))
                if stype == "branch":
                    _validate_branch_condition(branch.get("condition"), f"{bpath}.condition", scope_roots, state, step.get("id"))
            if len(set(branch_ids)) != len(branch_ids):
                state.errors.append(_issue("WORKFLOW_INVALID", "branch ids must be unique", f"{path}.config.branches"))
        default = config.get("defaultBranch")
        if stype == "branch" and default is not None and not isinstance(default, list):
            state.errors.append(_issue("WORKFLOW_INVALID", "defaultBranch must be list", f"{path}.config.defaultBranch"))
    elif stype == "human":
        prompt = config.get("prompt")
        if prompt is not None and not isinstance(prompt, str):
            state.errors.append(_issue("WORKFLOW_INVALID", "prompt must be string", f"{path}.config.prompt"))
        timeout = config.get("timeout")
        if timeout is not None and (not isinstance(timeout, (int, float)) or isinstance(timeout, bool) or timeout <= 0):
            state.errors.append(_issue("WORKFLOW_INVALID", "timeout must be positive number", f"{path}.config.timeout"))
        form = config.get("formSchema")
        if form is not None and not isinstance(form, dict):
            state.errors.append(_issue("WORKFLOW_INVALID", "formSchema must be object", f"{path}.config.formSchema"))
    elif stype == "delay":
        delay = config.get("delayMs")
        if not isinstance(delay, (int, float)) or isinstance(delay, bool) or delay < 0:
            state.errors.append(_issue("WORKFLOW_INVALID", "delayMs must be non-negative number", f"{path}.config.delayMs"))

    flat = {k: v for k, v in config.items() if k not in _NESTED_KEYS}
    _check_refs(flat, f"{path}.config", scope_roots, state, step.get("id"))


def _validate_branch_condition(cond: Any, path: str, scope_roots: set[str], state: _State, current_id: str | None) -> None:
    if cond is None:
        state.errors.append(_issue("WORKFLOW_INVALID", "branch.condition is required", path))
        return
    issues, var_paths = condition_eval.check_condition(cond)
    for issue in issues:
        state.errors.append(
            _issue(
                "WORKFLOW_CONDITION_INVALID",
                issue["message"],
                path + (issue["path"] or "$")[1:],
                {"error_code": issue["code"]},
            )
        )
    for var_path in var_paths:
        _check_ref_path(var_path, path, scope_roots, state, current_id)


def _walk_steps(steps: Any, path: str, depth: int, scope_roots: set[str], state: _State) -> None:
    if not isinstance(steps, list):
        state.errors.append(_issue("WORKFLOW_INVALID", "steps must be list", path))
        return
    if depth > MAX_NESTING_DEPTH:
        state.errors.append(
            _issue(
                "WORKFLOW_DEPTH_EXCEEDED",
                f"Maximum nesting depth ({MAX_NESTING_DEPTH}) exceeded",
                path,
                {"depth": depth, "limit": MAX_NESTING_DEPTH},
            )
        )
        return
    state.max_depth = max(state.max_depth, depth)
    for idx, step in enumerate(steps):
        spath = f"{path}[{idx}]"
        if not isinstance(step, dict):
            state.errors.append(_issue("WORKFLOW_INVALID", "step must be object", spath))
            continue
        state.step_count += 1
        step_id = step.get("id")
        if not isinstance(step_id, str) or not step_id.strip():
            state.errors.append(_issue("WORKFLOW_INVALID", "step.id must be non-empty string", f"{spath}.id"))
            step_id = None
        elif step_id in state.seen:
            state.errors.append(
                _issue(
                    "WORKFLOW_DUPLICATE_STEP_ID",
                    f"Duplicate step id: {step_id}",
                    f"{spath}.id",
                    {"first_path": state.seen[step_id]},
                )
            )
        else:
            state.seen[step_id] = spath

        stype = step.get("type")
        if not isinstance(stype, str):
            state.errors.append(_issue("WORKFLOW_INVALID", "step.type must be string", f"{spath}.type"))
            stype = None
        elif stype not in STEP_TYPES:
            state.errors.append(
                _issue("WORKFLOW_UNKNOWN_STEP_TYPE", f"Unknown step type: {stype}", f"{spath}.type", {"allowed": list(STEP_TYPES)})
            )
        else:
            state.type_counts[stype] = state.type_counts.get(stype, 0) + 1

        for key in ("name", "description"):
            if key in step and step[key] is not None and not isinstance(step[key], str):
                state.errors.append(_issue("WORKFLOW_INVALID", f"step.{key} must be string", f"{spath}.{key}"))

        mapping = step.get("inputMapping")
        if mapping is not None:
            if not isinstance(mapping, dict):
                state.errors.append(_issue("WORKFLOW_INVALID", "inputMapping must be object", f"{spath}.inputMapping"))
            else:
                _check_refs(mapping, f"{spath}.inputMapping", scope_roots, state, step_id)

        if stype in STEP_TYPES:
            _validate_config(step, spath, scope_roots, state)

        child_roots = set(scope_roots)
        if stype == "foreach" and isinstance(step.get("config"), dict):
            item_var = step["config"].get("itemVar") or "item"
            if isinstance(item_var, str):
                child_roots.add(item_var)
        for rel_path, child_steps in _child_step_lists(step):
            if child_steps is None:
                continue
            _walk_steps(child_steps, f"{spath}.{rel_path}", depth + 1, child_roots, state)

        if step_id:
            state.declared.add(step_id)


def validate_workflow_definition(
    definition: Any,
    known_agents: Iterable[str] | None = None,
    known_tools: Iterable[str] | None = None,
    known_workflows: Iterable[str] | None = None,
) -> dict:
    if not isinstance(definition, dict):
        errors = [_issue("WORKFLOW_INVALID", "definition must be object", "$")]
        return {"ok": False, "errors": errors, "warnings": [], "summary": None}
    steps = definition.get("steps")
    if not isinstance(steps, list):
        errors = [_issue("WORKFLOW_INVALID", "steps must be list", "$.steps")]
        return {"ok": False, "errors": errors, "warnings": [], "summary": None}

    all_ids: set[str] = set()
    _collect_ids(steps, all_ids)
    known = {
        "agents": set(known_agents) if known_agents is not None else None,
        "tools": set(known_tools) if known_tools is not None else None,
        "workflows": set(known_workflows) if known_workflows is not None else None,
    }
    state = _State(all_ids, known)
    if not steps:
        state.warnings.append(_issue("WORKFLOW_EMPTY", "Workflow has no steps", "$.steps"))
    _walk_steps(steps, "$.steps", 1, set(TEMPLATE_ROOTS), state)

    summary = {
        "stepCount": state.step_count,
        "maxDepth": state.max_depth,
        "stepTypes": dict(sorted(state.type_counts.items())),
    }
    return {"ok": not state.errors, "errors": state.errors, "warnings": state.warnings, "summary": summary}
