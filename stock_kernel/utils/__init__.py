"""Utility modules for the stock kernel."""

from stock_kernel.utils.hashing import canonicalize_json, hash_payload

__all__ = [
    "hash_payload",
    "canonicalize_json",
]
