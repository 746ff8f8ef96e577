"""
WEB-SRM Canonical Payload
===========================
Deterministic serialization used as signing input.
Keys sorted at every level, lists keep their order, compact JSON.
"""

import hashlib
import json
from typing import Any

from common.exceptions import CanonicalizationError


def canonicalize(payload: Any) -> str:
    """
    Serialize `payload` so that structurally equal inputs give identical text.

    Raises CanonicalizationError for cyclic structures, NaN/Infinity,
    non-string keys that cannot be ordered, or unsupported value types.
    """
    try:
        return json.dumps(
            payload,
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
            allow_nan=False,
            check_circular=True,
        )
    except (TypeError, ValueError, RecursionError) as e:
        raise CanonicalizationError(f"Cannot canonicalize payload: {e}") from e


def payload_hash(canonical: str) -> str:
    """SHA-256 hex digest of a canonical payload (audit columns)."""
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
