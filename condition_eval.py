"""Condition DSL used by workflow branch steps.

Conditions are JSON objects, never source code. A condition has an ``op`` and
operands; operands are value nodes (``var``, ``literal`` or ``array``). Vars
are resolved against the workflow context (``input``, ``steps``, ``variables``)
and accept dotted or bracketed paths.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Dict, List

from workflow_bindings import normalize_path


Issue = Dict[str, Any]

LOGICAL_OPS = {"and", "or"}
BINARY_OPS = {"eq", "neq", "gt", "gte", "lt", "lte", "contains", "starts_with", "in", "not_in"}
UNARY_OPS = {"exists", "not_exists", "truthy"}
QUANTIFIER_OPS = {"all", "any"}
ALL_OPS = LOGICAL_OPS | BINARY_OPS | UNARY_OPS | QUANTIFIER_OPS | {"not"}


@dataclass
class ConditionEvalError(Exception):
    code: str
    message: str
    path: str | None = None

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        base = f"{self.code}: {self.message}"
        return f"{base} (path={self.path})" if self.path else base


class ConditionSchemaError(ConditionEvalError):
    def __init__(self, message: str, path: str | None = None) -> None:
        super().__init__("CONDITION_SCHEMA_ERROR", message, path)


class ConditionDepthError(ConditionEvalError):
    def __init__(self, message: str, path: str | None = None) -> None:
        super().__init__("CONDITION_DEPTH_EXCEEDED", message, path)


class VarResolveError(ConditionEvalError):
    def __init__(self, message: str, path: str | None = None) -> None:
        super().__init__("CONDITION_VAR_UNRESOLVED", message, path)


class TypeErrorInCondition(ConditionEvalError):
    def __init__(self, message: str, path: str | None = None) -> None:
        super().__init__("CONDITION_TYPE_ERROR", message, path)


class UnknownOpError(ConditionEvalError):
    def __init__(self, message: str, path: str | None = None) -> None:
        super().__init__("CONDITION_UNKNOWN_OP", message, path)


def _depth_check(depth: int, limit: int, path: str) -> None:
    if depth > limit:
        raise ConditionDepthError("Depth limit exceeded", path)


def _resolve_var(ctx: dict, name: str, path: str) -> Any:
    parts = normalize_path(name)
    if not parts:
        raise ConditionSchemaError("var must be non-empty path", path)
    current: Any = ctx
    for part in parts:
        if isinstance(current, dict) and part in current:
            current = current[part]
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            raise VarResolveError(f"Unresolved var: {name}", path)
    return current


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _ensure_finite(value: Any, path: str) -> None:
    if isinstance(value, float) and not math.isfinite(value):
        raise TypeErrorInCondition("Non-finite number", path)


def _eval_value(node: Any, ctx: dict, path: str, depth: int, limit: int) -> Any:
    _depth_check(depth, limit, path)
    if not isinstance(node, dict):
        raise ConditionSchemaError("Value node must be object", path)
    if "var" in node:
        if not isinstance(node["var"], str):
            raise ConditionSchemaError("var must be string", path)
        return _resolve_var(ctx, node["var"], path)
    if "literal" in node:
        return node["literal"]
    if "array" in node:
        arr = node["array"]
        if not isinstance(arr, list):
            raise ConditionSchemaError("array must be list", path)
        return [
            _eval_value(item, ctx, f"{path}.array[{idx}]", depth + 1, limit)
            for idx, item in enumerate(arr)
        ]
    raise ConditionSchemaError("Invalid value node", path)


def _try_value(node: Any, ctx: dict, path: str, depth: int, limit: int) -> Any:
    try:
        return _eval_value(node, ctx, path, depth, limit)
    except VarResolveError:
        return None


def _require_fields(cond: dict, fields: List[str], path: str) -> None:
    for field in fields:
        if field not in cond:
            raise ConditionSchemaError(f"Missing required field: {field}", path)


def eval_condition(cond: dict, ctx: dict, depth_limit: int = 10) -> bool:
    if not isinstance(ctx, dict):
        raise ConditionSchemaError("ctx must be object", "$")
    return _eval_condition(cond, ctx, "$", 1, depth_limit)


def _eval_condition(cond: Any, ctx: dict, path: str, depth: int, limit: int) -> bool:
    _depth_check(depth, limit, path)
    if not isinstance(cond, dict):
        raise ConditionSchemaError("Condition must be object", path)

    op = cond.get("op")
    if op is None:
        raise ConditionSchemaError("Missing op", path)
    if not isinstance(op, str):
        raise ConditionSchemaError("op must be string", f"{path}.op")

    if op in LOGICAL_OPS:
        _require_fields(cond, ["children"], path)
        children = cond.get("children")
        if not isinstance(children, list):
            raise ConditionSchemaError("children must be list", f"{path}.children")
        results = (
            _eval_condition(child, ctx, f"{path}.children[{i}]", depth + 1, limit)
            for i, child in enumerate(children)
        )
        return all(results) if op == "and" else any(results)

    if op == "not":
        _require_fields(cond, ["children"], path)
        children = cond.get("children")
        if not isinstance(children, list) or len(children) != 1:
            raise ConditionSchemaError("not requires single child", f"{path}.children")
        return not _eval_condition(children[0], ctx, f"{path}.children[0]", depth + 1, limit)

    if op in BINARY_OPS:
        _require_fields(cond, ["left", "right"], path)
        left = _eval_value(cond.get("left"), ctx, f"{path}.left", depth + 1, limit)
        right = _eval_value(cond.get("right"), ctx, f"{path}.right", depth + 1, limit)
        return _compare(op, left, right, path)

    if op in UNARY_OPS:
        _require_fields(cond, ["left"], path)
        value = _try_value(cond.get("left"), ctx, f"{path}.left", depth + 1, limit)
        if op == "truthy":
            return bool(value)
        exists = value is not None
        return exists if op == "exists" else not exists

    if op in QUANTIFIER_OPS:
        _require_fields(cond, ["over", "where"], path)
        over = _eval_value(cond.get("over"), ctx, f"{path}.over", depth + 1, limit)
        if not isinstance(over, list):
            raise TypeErrorInCondition("over must be list", f"{path}.over")
        where = cond.get("where")
        if not isinstance(where, dict):
            raise ConditionSchemaError("where must be condition", f"{path}.where")
        if not over:
            return op == "all"
        results = []
        for item in over:
            child_ctx = dict(ctx)
            child_ctx["item"] = item
            results.append(_eval_condition(where, child_ctx, f"{path}.where", depth + 1, limit))
        return any(results) if op == "any" else all(results)

    raise UnknownOpError(f"Unknown op: {op}", path)


def _compare(op: str, left: Any, right: Any, path: str) -> bool:
    if op == "eq":
        return left == right
    if op == "neq":
        return left != right
    if op in {"gt", "gte", "lt", "lte"}:
        if not (_is_number(left) and _is_number(right)):
            raise TypeErrorInCondition("Comparison requires numbers", path)
        _ensure_finite(left, f"{path}.left")
        _ensure_finite(right, f"{path}.right")
        if op == "gt":
            return left > right
        if op == "gte":
            return left >= right
        if op == "lt":
            return left < right
        return left <= right
    if op == "contains":
        if isinstance(left, str) and isinstance(right, str):
            return right in left
        if isinstance(left, list):
            return right in left
        raise TypeErrorInCondition("contains requires string or list left", path)
    if op == "starts_with":
        if not (isinstance(left, str) and isinstance(right, str)):
            raise TypeErrorInCondition("starts_with requires strings", path)
        return left.startswith(right)
    if not isinstance(right, list):
        raise TypeErrorInCondition("right must be list", f"{path}.right")
    return (left in right) if op == "in" else (left not in right)


def _issue(code: str, message: str, path: str | None) -> Issue:
    return {"code": code, "message": message, "path": path, "detail": None}


def check_condition(cond: Any, depth_limit: int = 10) -> tuple[List[Issue], List[str]]:
    """Validate condition structure without a context.

    Returns ``(issues, var_paths)`` where ``var_paths`` lists every var the
    condition reads, in document order.
    """
    issues: List[Issue] = []
    var_paths: List[str] = []
    _check(cond, "$", 1, depth_limit, issues, var_paths)
    return issues, var_paths


def _check_value(node: Any, path: str, depth: int, limit: int, issues: List[Issue], var_paths: List[str]) -> None:
    if depth > limit:
        issues.append(_issue("CONDITION_DEPTH_EXCEEDED", "Depth limit exceeded", path))
        return
    if not isinstance(node, dict):
        issues.append(_issue("CONDITION_SCHEMA_ERROR", "Value node must be object", path))
        return
    if "var" in node:
        if not isinstance(node["var"], str) or not normalize_path(node["var"]):
            issues.append(_issue("CONDITION_SCHEMA_ERROR", "var must be non-empty string", path))
        else:
            var_paths.append(node["var"])
        return
    if "literal" in node:
        return
    if "array" in node:
        if not isinstance(node["array"], list):
            issues.append(_issue("CONDITION_SCHEMA_ERROR", "array must be list", path))
            return
        for idx, item in enumerate(node["array"]):
            _check_value(item, f"{path}.array[{idx}]", depth + 1, limit, issues, var_paths)
        return
    issues.append(_issue("CONDITION_SCHEMA_ERROR", "Invalid value node", path))


def _check(cond: Any, path: str, depth: int, limit: int, issues: List[Issue], var_paths: List[str]) -> None:
    if depth > limit:
        issues.append(_issue("CONDITION_DEPTH_EXCEEDED", "Depth limit exceeded", path))
        return
    if not isinstance(cond, dict):
        issues.append(_issue("CONDITION_SCHEMA_ERROR", "Condition must be object", path))
        return
    op = cond.get("op")
    if op is not None and not isinstance(op, str):
        issues.append(_issue("CONDITION_SCHEMA_ERROR", "op must be string", f"{path}.op"))
        return
    if op not in ALL_OPS:
        code = "CONDITION_SCHEMA_ERROR" if op is None else "CONDITION_UNKNOWN_OP"
        issues.append(_issue(code, "Missing op" if op is None else f"Unknown op: {op}", path))
        return
    if op in LOGICAL_OPS or op == "not":
        children = cond.get("children")
        if not isinstance(children, list):
            issues.append(_issue("CONDITION_SCHEMA_ERROR", "children must be list", f"{path}.children"))
            return
        if op == "not" and len(children) != 1:
            issues.append(_issue("CONDITION_SCHEMA_ERROR", "not requires single child", f"{path}.children"))
        for idx, child in enumerate(children):
            _check(child, f"{path}.children[{idx}]", depth + 1, limit, issues, var_paths)
        return
    if op in BINARY_OPS:
        for side in ("left", "right"):
            if side not in cond:
                issues.append(_issue("CONDITION_SCHEMA_ERROR", f"Missing required field: {side}", path))
            else:
                _check_value(cond[side], f"{path}.{side}", depth + 1, limit, issues, var_paths)
        return
    if op in UNARY_OPS:
        if "left" not in cond:
            issues.append(_issue("CONDITION_SCHEMA_ERROR", "Missing required field: left", path))
        else:
            _check_value(cond["left"], f"{path}.left", depth + 1, limit, issues, var_paths)
        return
    if "over" not in cond or "where" not in cond:
        issues.append(_issue("CONDITION_SCHEMA_ERROR", "all/any require over and where", path))
        return
    _check_value(cond["over"], f"{path}.over", depth + 1, limit, issues, var_paths)
    # vars inside `where` are relative to the iterated item
    _check(cond["where"], f"{path}.where", depth + 1, limit, issues, [])
