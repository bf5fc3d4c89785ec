"""Canonical JSON encoding (RFC 8785 / JCS) and content hashing.

Checksums over proofs and settlement ids are computed only through this
module, so the same content always hashes the same way regardless of
key order.
"""

import hashlib
from typing import Any

import jcs


def canonicalize(obj: Any) -> bytes:
    """Encode JSON-compatible data to RFC 8785 canonical bytes.

    Values must already be JSON primitives (str, int, bool, None, list,
    dict). Convert Decimals and datetimes to strings first.
    """
    return jcs.canonicalize(obj)


def canonical_hash(obj: Any) -> str:
    """Lowercase hex SHA-256 of the canonical form."""
    return hashlib.sha256(canonicalize(obj)).hexdigest()
