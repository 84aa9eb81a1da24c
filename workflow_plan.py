"""Workflow planning (branch selection, input resolution) without execution."""

from __future__ import annotations

from typing import Any, Dict, List

import condition_eval
from workflow_bindings import get_value_at_path, resolve_input_mapping, resolve_template
from workflow_validate import validate_workflow_definition


Issue = Dict[str, Any]
WorkflowPlan = Dict[str, Any]

MAX_PLANNED_ITERATIONS = 50


def _issue(code: str, message: str, path: str | None = None, detail: dict | None = None) -> Issue:
    return {"code": code, "message": message, "path": path, "detail": detail}


def _step_input(step: dict, ctx: dict) -> Any:
    config = step.get("config") or {}
    stype = step.get("type")
    if stype == "agent":
        return {"prompt": resolve_template(config.get("promptTemplate") or "", ctx)}
    if stype == "tool":
        return resolve_input_mapping(step.get("inputMapping") or config.get("parameters"), ctx)
    if stype == "workflow":
        return resolve_input_mapping(step.get("inputMapping") or config.get("input"), ctx)
    return resolve_input_mapping(step.get("inputMapping"), ctx)


class _Planner:
    def __init__(self, ctx: dict, depth_limit: int) -> None:
        self.ctx = ctx
        self.depth_limit = depth_limit
        self.steps: List[dict] = []
        self.warnings: List[Issue] = []
        self.suspended_at: str | None = None

    def plan(self, steps: list, path: str, depth: int, extra: dict | None = None) -> bool:
        """Append planned entries; return False once a human step suspends the run."""
        for idx, step in enumerate(steps):
            spath = f"{path}[{idx}]"
            step_id = step.get("id")
            entry = {
                "stepId": step_id,
                "stepType": step.get("type"),
                "stepName": step.get("name"),
                "depth": depth,
                "path": spath,
                **(extra or {}),
            }
            if step_id in self.ctx["steps"]:
                entry["status"] = "cached"
                self.steps.append(entry)
                continue
            entry["status"] = "pending"
            entry["input"] = _step_input(step, self.ctx)
            self.steps.append(entry)

            stype = step.get("type")
            config = step.get("config") or {}
            if stype == "human":
                entry["status"] = "suspend"
                entry["prompt"] = config.get("prompt") or step.get("name") or "Human approval required"
                self.suspended_at = step_id
                return False
            if stype == "delay":
                entry["delayMs"] = config.get("delayMs", 0)
            elif stype == "branch":
                selected = None
                for bidx, branch in enumerate(config.get("branches") or []):
                    cond_path = f"{spath}.config.branches[{bidx}].condition"
                    try:
                        matched = condition_eval.eval_condition(branch.get("condition"), self.ctx, depth_limit=self.depth_limit)
                    except condition_eval.ConditionEvalError as exc:
                        raise _PlanError(
                            _issue(
                                "WORKFLOW_CONDITION_ERROR",
                                str(exc),
                                cond_path,
                                {"step_id": step_id, "branch_id": branch.get("id"), "error_code": exc.code},
                            )
                        ) from exc
                    if matched:
                        selected = (bidx, branch)
                        break
                if selected:
                    bidx, branch = selected
                    entry["branchId"] = branch.get("id")
                    if not self.plan(branch.get("steps") or [], f"{spath}.config.branches[{bidx}].steps", depth + 1):
                        return False
                else:
                    entry["branchId"] = None
                    if not self.plan(config.get("defaultBranch") or [], f"{spath}.config.defaultBranch", depth + 1):
                        return False
            elif stype == "parallel":
                entry["branches"] = [b.get("id") for b in config.get("branches") or []]
                for bidx, branch in enumerate(config.get("branches") or []):
                    if not self.plan(
                        branch.get("steps") or [],
                        f"{spath}.config.branches[{bidx}].steps",
                        depth + 1,
                        {"parallelBranchId": branch.get("id")},
                    ):
                        return False
            elif stype == "foreach":
                collection = get_value_at_path(self.ctx, config.get("collectionPath") or "")
                if not isinstance(collection, list):
                    self.warnings.append(
                        _issue(
                            "WORKFLOW_FOREACH_NOT_LIST",
                            "collectionPath did not resolve to a list",
                            f"{spath}.config.collectionPath",
                            {"step_id": step_id},
                        )
                    )
                    entry["iterations"] = 0
                    continue
                entry["iterations"] = len(collection)
                entry["concurrency"] = config.get("concurrency") or 1
                if len(collection) > MAX_PLANNED_ITERATIONS:
                    self.warnings.append(
                        _issue(
                            "WORKFLOW_PLAN_TRUNCATED",
                            f"Only the first {MAX_PLANNED_ITERATIONS} iterations are planned",
                            f"{spath}.config.collectionPath",
                            {"step_id": step_id, "iterations": len(collection)},
                        )
                    )
                item_var = config.get("itemVar") or "item"
                saved = {key: self.ctx.get(key) for key in (item_var, "index")}
                try:
                    for item_idx, item in enumerate(collection[:MAX_PLANNED_ITERATIONS]):
                        self.ctx[item_var] = item
                        self.ctx["index"] = item_idx
                        if not self.plan(
                            config.get("steps") or [],
                            f"{spath}.config.steps",
                            depth + 1,
                            {"iteration": item_idx},
                        ):
                            return False
                finally:
                    for key, value in saved.items():
                        if value is None:
                            self.ctx.pop(key, None)
                        else:
                            self.ctx[key] = value
        return True


class _PlanError(Exception):
    def __init__(self, issue: Issue) -> None:
        super().__init__(issue["message"])
        self.issue = issue


def plan_workflow(
    definition: dict,
    input: Any = None,
    variables: dict | None = None,
    step_outputs: dict | None = None,
    depth_limit: int = 10,
) -> dict:
    validation = validate_workflow_definition(definition)
    if not validation["ok"]:
        return {"ok": False, "errors": validation["errors"], "warnings": validation["warnings"], "plan": None}

    warnings: List[Issue] = list(validation["warnings"])
    ctx = {
        "input": input if input is not None else {},
        "steps": dict(step_outputs or {}),
        "variables": dict(variables or {}),
    }
    planner = _Planner(ctx, depth_limit)
    try:
        planner.plan(definition.get("steps") or [], "$.steps", 1)
    except _PlanError as exc:
        return {"ok": False, "errors": [exc.issue], "warnings": warnings, "plan": None}

    warnings.extend(planner.warnings)
    plan: WorkflowPlan = {
        "steps": planner.steps,
        "stepCount": len(planner.steps),
        "suspended": planner.suspended_at is not None,
        "suspendedAt": planner.suspended_at,
    }
    return {"ok": True, "errors": [], "warnings": warnings, "plan": plan}
