# src/localchain/crypto/digest.py
from __future__ import annotations

import hashlib
import json
from typing import Any


def canon_json(obj: Any) -> str:
    """Canonical JSON encoding.

    Keep this stable: every block hash and record digest is defined over it.
    """
    # Do not coerce unknown types (no default=str). A non-JSON value leaking
    # into a block would make the digest depend on repr() output.
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False, allow_nan=False)


def canon_bytes(obj: Any) -> bytes:
    return canon_json(obj).encode("utf-8")


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def content_digest(obj: Any) -> str:
    """sha256 hex digest of the canonical encoding of `obj`."""

    return sha256_hex(canon_bytes(obj))
