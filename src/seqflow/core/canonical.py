# src/seqflow/core/canonical.py
"""
Canonical JSON serialization for deterministic hashing.

Two-phase approach:
1. Normalize: Convert paths, tuples, enums and datetimes to JSON-safe primitives (our code)
2. Serialize: Produce deterministic JSON per RFC 8785/JCS (rfc8785 package)

Input fingerprints are built on top of this, so two resolved commands hash
equal if and only if their normalized inputs are byte-identical.

IMPORTANT: NaN and Infinity are strictly REJECTED, not silently converted.
"""

import hashlib
import math
from collections.abc import Mapping
from dataclasses import asdict, is_dataclass
from datetime import datetime
from enum import Enum
from pathlib import PurePath
from typing import Any

import rfc8785

# Version string stored with every cache record for hash verification
CANONICAL_VERSION = "sha256-rfc8785-v1"


def _normalize_value(obj: Any) -> Any:
    """Convert a single value to a JSON-safe primitive.

    Args:
        obj: Any Python value

    Returns:
        JSON-serializable primitive

    Raises:
        ValueError: If value contains NaN or Infinity
        TypeError: If value has no canonical form
    """
    if isinstance(obj, float):
        if math.isnan(obj) or math.isinf(obj):
            raise ValueError(
                f"Cannot canonicalize non-finite float: {obj}. "
                "Use None for missing values, not NaN."
            )
        return obj

    # Enums before str: (str, Enum) members are also str instances
    if isinstance(obj, Enum):
        return _normalize_value(obj.value)

    if obj is None or isinstance(obj, str | int | bool):
        return obj

    if isinstance(obj, PurePath):
        return str(obj)

    if isinstance(obj, datetime):
        return obj.isoformat()

    if isinstance(obj, Mapping):
        return {str(k): _normalize_value(v) for k, v in obj.items()}

    if isinstance(obj, list | tuple):
        return [_normalize_value(v) for v in obj]

    if isinstance(obj, set | frozenset):
        return sorted(_normalize_value(v) for v in obj)

    if is_dataclass(obj) and not isinstance(obj, type):
        return _normalize_value(asdict(obj))

    raise TypeError(f"Cannot canonicalize value of type {type(obj).__name__}")


def canonical_json(obj: Any) -> str:
    """Serialize a value to canonical (RFC 8785) JSON text."""
    return rfc8785.dumps(_normalize_value(obj)).decode("utf-8")


def stable_hash(obj: Any) -> str:
    """SHA-256 hex digest of the canonical JSON form of `obj`."""
    return hashlib.sha256(canonical_json(obj).encode("utf-8")).hexdigest()
