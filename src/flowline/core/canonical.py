# src/flowline/core/canonical.py
"""
Canonical JSON serialization for deterministic hashing.

Two-phase approach:
1. Normalize: Convert datetimes, enums, tuples and sets to JSON-safe primitives
2. Serialize: Produce deterministic JSON per RFC 8785/JCS (rfc8785 package)

IMPORTANT: NaN and Infinity are strictly REJECTED, not silently converted.
A flow definition hash must never depend on how a float was spelled.
"""

import hashlib
import math
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import rfc8785

# Version string stored with every published flow for hash verification
CANONICAL_VERSION = "sha256-rfc8785-v1"


def _normalize_value(obj: Any) -> Any:
    """Convert a single value to JSON-safe primitive.

    NaN Policy: STRICT REJECTION
    - NaN and Infinity are invalid input states, not "missing"
    - Use None for intentional missing values

    Args:
        obj: Any Python value

    Returns:
        JSON-serializable primitive

    Raises:
        ValueError: If value contains NaN or Infinity
    """
    if isinstance(obj, float):
        if math.isnan(obj) or math.isinf(obj):
            raise ValueError(
                f"Cannot canonicalize non-finite float: {obj}. "
                "Use None for missing values, not NaN."
            )
        return obj

    # str-Enums would pass the isinstance(str) check below; unwrap first
    if isinstance(obj, Enum):
        return _normalize_value(obj.value)

    if obj is None or isinstance(obj, (str, int, bool)):
        return obj

    if isinstance(obj, datetime):
        # Naive timestamps assumed UTC (explicit policy)
        if obj.tzinfo is None:
            obj = obj.replace(tzinfo=timezone.utc)
        return obj.astimezone(timezone.utc).isoformat()

    return obj


def _normalize_for_canonical(data: Any) -> Any:
    """Recursively normalize a data structure."""
    if isinstance(data, dict):
        return {str(k): _normalize_for_canonical(v) for k, v in data.items()}
    if isinstance(data, (list, tuple)):
        return [_normalize_for_canonical(v) for v in data]
    if isinstance(data, (set, frozenset)):
        return sorted(_normalize_for_canonical(v) for v in data)
    return _normalize_value(data)


def canonical_json(obj: Any) -> str:
    """Produce canonical JSON for hashing.

    Raises:
        ValueError: If data contains NaN, Infinity, or an integer outside
            the IEEE 754 safe range (rfc8785.IntegerDomainError)
        TypeError: If data contains a type rfc8785 cannot serialize
    """
    normalized = _normalize_for_canonical(obj)
    return rfc8785.dumps(normalized).decode("utf-8")


def stable_hash(obj: Any, version: str = CANONICAL_VERSION) -> str:
    """Compute stable SHA-256 hash of canonical JSON.

    Args:
        obj: Data to hash
        version: Hash algorithm version (for future compatibility)

    Returns:
        Hex-encoded SHA-256 hash
    """
    canonical = canonical_json(obj)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
