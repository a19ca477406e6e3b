"""Kernel utilities."""

from healthfin_kernel.utils.hashing import (
    canonicalize_json,
    hash_payload,
    hash_snapshot,
    to_json_native,
)

__all__ = ["canonicalize_json", "hash_payload", "hash_snapshot", "to_json_native"]
