# src/localchain/storage/record.py
from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from typing import Any, Dict, Optional

Json = Dict[str, Any]


@dataclass(frozen=True)
class Record:
    """One persisted record row.

    payload is canonical JSON text when not encrypted, else base64 AES-GCM
    ciphertext; wrapped_key and nonce are present iff encrypted.
    """

    id: str
    encrypted: bool
    payload: str
    content_digest: str
    block_hash: str
    updated_ts_ms: int
    wrapped_key: Optional[str] = None
    nonce: Optional[str] = None

    def envelope_json(self) -> Json:
        return {"ciphertext": self.payload, "wrapped_key": self.wrapped_key or "", "nonce": self.nonce or ""}

    def metadata(self) -> Json:
        """Everything except the payload; safe to log or hand to callers."""
        return {
            "id": self.id,
            "encrypted": self.encrypted,
            "content_digest": self.content_digest,
            "block_hash": self.block_hash,
            "updated_ts_ms": self.updated_ts_ms,
        }

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Record":
        return cls(
            id=str(row["id"]),
            encrypted=bool(row["encrypted"]),
            payload=str(row["payload"]),
            content_digest=str(row["content_digest"]),
            block_hash=str(row["block_hash"]),
            updated_ts_ms=int(row["updated_ts_ms"]),
            wrapped_key=row["wrapped_key"],
            nonce=row["nonce"],
        )


@dataclass(frozen=True)
class SaveReceipt:
    id: str
    block_hash: str
    height: int
    content_digest: str
    encrypted: bool
