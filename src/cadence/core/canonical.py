# src/cadence/core/canonical.py
"""
Canonical JSON serialization for deterministic hashing.

Flow definitions are snapshotted onto each execution. The snapshot is
serialized per RFC 8785/JCS (rfc8785 package) so the same definition
always produces the same bytes and the same hash, regardless of key order
in the source document.

NaN and Infinity are rejected rather than converted.
"""

import hashlib
import math
from typing import Any

import rfc8785

CANONICAL_VERSION = "sha256-rfc8785-v1"


def _normalize_value(obj: Any) -> Any:
    """Recursively convert a value to JSON-safe primitives.

    Raises:
        ValueError: If value contains NaN or Infinity
    """
    if isinstance(obj, float):
        if math.isnan(obj) or math.isinf(obj):
            raise ValueError(f"Cannot canonicalize non-finite float: {obj}")
        return obj
    if obj is None or isinstance(obj, (str, int, bool)):
        return obj
    if isinstance(obj, dict):
        return {str(k): _normalize_value(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_normalize_value(v) for v in obj]
    raise TypeError(f"Cannot canonicalize value of type {type(obj).__name__}")


def canonical_json(obj: Any) -> str:
    """Serialize to canonical JSON (RFC 8785)."""
    return rfc8785.dumps(_normalize_value(obj)).decode("utf-8")


def stable_hash(obj: Any) -> str:
    """SHA-256 hex digest of the canonical JSON form."""
    return hashlib.sha256(canonical_json(obj).encode("utf-8")).hexdigest()
