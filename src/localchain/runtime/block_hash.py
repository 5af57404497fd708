# src/localchain/runtime/block_hash.py

from __future__ import annotations

from typing import Any, Dict

from localchain.crypto.digest import canon_bytes, sha256_hex

Json = Dict[str, Any]

# prev_hash of the genesis block.
GENESIS_PREV_HASH = "0" * 64


def make_block_header(
    *,
    height: int,
    prev_hash: str,
    data: Json,
    ts_ms: int,
) -> Json:
    """Create the canonical header structure used for hashing."""

    return {
        "height": int(height),
        "prev_hash": str(prev_hash),
        "data": data,
        "ts_ms": int(ts_ms),
    }


def compute_block_hash(*, header: Json) -> str:
    """Compute a deterministic block hash.

    The hash is defined over the canonical JSON encoding of the header built by
    make_block_header, so it commits to prev_hash, data, height and timestamp.

    Returns:
      sha256 hex digest
    """

    return sha256_hex(canon_bytes(header))
