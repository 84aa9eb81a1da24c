"""AgentC2 shared primitives: canonical JSON and definition hashing."""

from .canonical_json import CanonicalJsonTypeError, canonical_bytes, canonical_dumps
from .definition_hash import content_digest, definition_hash

__all__ = [
    "CanonicalJsonTypeError",
    "canonical_bytes",
    "canonical_dumps",
    "content_digest",
    "definition_hash",
]
