"""Agent-to-agent communication rules, origin allow/deny lists and sender allowlists."""

from __future__ import annotations

import fnmatch
import re
from typing import Any, Iterable, List
from urllib.parse import urlsplit

DEFAULT_MAX_DEPTH = 5
DEFAULT_MAX_PEER_CALLS = 20

_NON_DIGIT_RE = re.compile(r"\D+")


def _decision(allowed: bool, reason: str | None = None) -> dict:
    return {"allowed": allowed, "reason": reason}


def limit_or_default(value: Any, default: int) -> int:
    return default if value is None else value


def _patterns(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, str) and item]


def _matches_any(slug: str, patterns: Iterable[str]) -> str | None:
    for pattern in patterns:
        if fnmatch.fnmatchcase(slug, pattern):
            return pattern
    return None


def evaluate_communication(
    policy: dict | None,
    from_agent: str,
    to_agent: str,
    depth: int = 0,
    peer_calls: int = 0,
) -> dict:
    """Decide whether ``from_agent`` may call ``to_agent``.

    Checks run in a fixed order: call depth, peer-call budget, self calls,
    deny patterns and then allow patterns. An empty or missing allow list allows every target.
    """
    policy = policy or {}
    max_depth = limit_or_default(policy.get("maxDepth"), DEFAULT_MAX_DEPTH)
    max_peer_calls = limit_or_default(policy.get("maxPeerCalls"), DEFAULT_MAX_PEER_CALLS)
    if depth >= max_depth:
        return _decision(False, f"Maximum delegation depth ({max_depth}) reached")
    if peer_calls >= max_peer_calls:
        return _decision(False, f"Peer call limit ({max_peer_calls}) reached")
    if from_agent == to_agent and not policy.get("allowSelf"):
        return _decision(False, "Agent cannot call itself")
    denied = _matches_any(to_agent, _patterns(policy.get("deny")))
    if denied:
        return _decision(False, f"Agent {to_agent} matches deny rule '{denied}'")
    allow = _patterns(policy.get("allow"))
    if allow and not _matches_any(to_agent, allow):
        return _decision(False, f"Agent {to_agent} is not in the allow list")
    return _decision(True)


def _host_of(value: str) -> str:
    value = (value or "").strip().lower()
    if "://" in value:
        value = urlsplit(value).hostname or ""
    else:
        value = value.split("/", 1)[0]
        if value.startswith("[") and "]" in value:
            value = value[1 : value.index("]")]
        elif value.count(":") == 1:
            value = value.split(":", 1)[0]
    return value.rstrip(".")


def match_domain(host: str, pattern: str) -> bool:
    host = _host_of(host)
    pattern = (pattern or "").strip().lower().rstrip(".")
    if not host or not pattern:
        return False
    if pattern == "*":
        return True
    if pattern.startswith("*."):
        suffix = pattern[1:]
        return host.endswith(suffix) and len(host) > len(suffix)
    return host == _host_of(pattern)


def evaluate_origin(origin: str | None, allowed: list | None = None, denied: list | None = None) -> dict:
    allowed = _patterns(allowed)
    denied = _patterns(denied)
    if not origin:
        if allowed:
            return _decision(False, "Origin header required")
        return _decision(True)
    host = _host_of(origin)
    for pattern in denied:
        if match_domain(host, pattern):
            return _decision(False, f"Origin {host} is denied")
    if not allowed:
        return _decision(True)
    for pattern in allowed:
        if match_domain(host, pattern):
            return _decision(True)
    return _decision(False, f"Origin {host} is not allowed")


def normalize_sender(sender: str | None) -> str:
    return _NON_DIGIT_RE.sub("", sender or "")


def parse_allowlist(raw: str | None) -> List[str]:
    """Comma or newline separated list of phone numbers."""
    if not raw:
        return []
    entries = re.split(r"[,\n]", raw)
    return [normalize_sender(entry) for entry in entries if normalize_sender(entry)]


def sender_allowed(sender: str | None, allowlist: Iterable[str] | None) -> bool:
    normalized = [normalize_sender(entry) for entry in (allowlist or [])]
    normalized = [entry for entry in normalized if entry]
    if not normalized:
        return True
    return normalize_sender(sender) in normalized
