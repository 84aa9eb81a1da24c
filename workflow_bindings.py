"""Template and path resolution for workflow step inputs."""

from __future__ import annotations

import json
import re
from typing import Any, List

_BRACKET_RE = re.compile(r"\[([\"']?)([^\]\"']+)\1\]")
_EXACT_RE = re.compile(r"^\{\{\s*([^}]+?)\s*\}\}$")
_EMBEDDED_RE = re.compile(r"\{\{\s*([^}]+?)\s*\}\}")


def normalize_path(path: str) -> List[str]:
    """Split ``a[0].b['c']`` into ``["a", "0", "b", "c"]``."""
    if not isinstance(path, str):
        return []
    dotted = _BRACKET_RE.sub(r".\2", path.strip())
    return [part for part in dotted.split(".") if part]


def get_value_at_path(source: Any, path: str) -> Any:
    if not path:
        return source
    current = source
    for part in normalize_path(path):
        if isinstance(current, dict):
            current = current.get(part)
        elif isinstance(current, list):
            if not part.isdigit():
                return None
            idx = int(part)
            if idx >= len(current):
                return None
            current = current[idx]
        else:
            return None
        if current is None:
            return None
    return current


def resolve_template(value: str, ctx: dict) -> Any:
    exact = _EXACT_RE.match(value)
    if exact:
        return get_value_at_path(ctx, exact.group(1))
    if "{{" not in value:
        return value

    def _sub(match: re.Match) -> str:
        resolved = get_value_at_path(ctx, match.group(1))
        if resolved is None:
            return match.group(0)
        if isinstance(resolved, str):
            return resolved
        return json.dumps(resolved, default=str)

    return _EMBEDDED_RE.sub(_sub, value)


def resolve_value(value: Any, ctx: dict) -> Any:
    if isinstance(value, str):
        return resolve_template(value, ctx)
    if isinstance(value, list):
        return [resolve_value(item, ctx) for item in value]
    if isinstance(value, dict):
        return {key: resolve_value(item, ctx) for key, item in value.items()}
    return value


def resolve_input_mapping(mapping: dict | None, ctx: dict) -> Any:
    """Resolve ``mapping`` against ``ctx``; without a mapping the run input passes through."""
    if not mapping:
        return ctx.get("input") if isinstance(ctx, dict) else None
    return resolve_value(mapping, ctx)


def extract_template_refs(value: Any) -> List[str]:
    refs: List[str] = []
    if isinstance(value, str):
        refs.extend(m.group(1) for m in _EMBEDDED_RE.finditer(value))
    elif isinstance(value, list):
        for item in value:
            refs.extend(extract_template_refs(item))
    elif isinstance(value, dict):
        for item in value.values():
            refs.extend(extract_template_refs(item))
    return refs
