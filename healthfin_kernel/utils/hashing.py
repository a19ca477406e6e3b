"""
Deterministic hashing utilities.

Report snapshot checksums, quarter checksums and the catalog fingerprint
must be reproducible across processes.  This module provides the
canonical hashing functions used throughout.
"""

import hashlib
import json
from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID


def _json_serializer(obj: Any) -> Any:
    """
    Custom JSON serializer for types not natively supported.

    Raises:
        TypeError: If object type is not supported.
    """
    if isinstance(obj, Decimal):
        # 30000, 30000.00 and 3E+4 must hash identically
        normalized = obj.normalize()
        if normalized == normalized.to_integral_value():
            return str(normalized.quantize(Decimal(1)))
        return str(normalized)
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, date):
        return obj.isoformat()
    if isinstance(obj, UUID):
        return str(obj)
    if isinstance(obj, (set, frozenset)):
        return sorted(obj)

    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def canonicalize_json(data: dict | list | Any) -> str:
    """
    Convert data to canonical JSON string.

    - Keys are sorted alphabetically
    - No whitespace
    - Decimal, datetime, UUID handled consistently

    Args:
        data: Data to canonicalize.

    Returns:
        Canonical JSON string.
    """
    return json.dumps(
        data,
        sort_keys=True,
        separators=(",", ":"),
        default=_json_serializer,
    )


def hash_payload(payload: dict | list) -> str:
    """
    Compute SHA-256 hash of a payload.

    Returns:
        Hex-encoded SHA-256 hash (64 characters).
    """
    canonical = canonicalize_json(payload)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def hash_snapshot(snapshot: dict, checksum_field: str = "checksum") -> str:
    """
    Compute the checksum of a report snapshot.

    The checksum field itself is blanked before hashing so that a stored
    snapshot can be re-verified in place.

    Args:
        snapshot: Snapshot dictionary (lines, totals, metadata).
        checksum_field: Name of the field holding the stored checksum.

    Returns:
        Hex-encoded SHA-256 hash.
    """
    cleaned = {k: v for k, v in snapshot.items() if k != checksum_field}
    return hash_payload(cleaned)


def to_json_native(data: Any) -> Any:
    """
    Round-trip data through canonical JSON.

    Decimals become strings and dict keys become sorted, so a value
    stored in a JSON column hashes identically after it is read back.
    """
    return json.loads(canonicalize_json(data))
