"""Content hashes for workflow and network definitions."""

from __future__ import annotations

import hashlib
from typing import Any

from .canonical_json import canonical_bytes


def definition_hash(definition: Any) -> str:
    """``sha256:<hex>`` over the canonical JSON of a definition."""
    return f"sha256:{hashlib.sha256(canonical_bytes(definition)).hexdigest()}"


def content_digest(text: str) -> str:
    return hashlib.sha256((text or "").encode("utf-8")).hexdigest()
