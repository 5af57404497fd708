# src/localchain/runtime/block.py

from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass
from typing import Any, Dict

from localchain.runtime.block_hash import GENESIS_PREV_HASH, compute_block_hash, make_block_header

Json = Dict[str, Any]

# Tags carried in block data["type"].
GENESIS = "genesis"
STORAGE_WRITE = "storage-write"
CONTRACT_DEFINITION = "contract-definition"
TOKEN_TRANSFER = "token-transfer"
TOKEN_MINT = "token-mint"
TOKEN_BURN = "token-burn"
BONDING_CURVE_BUY = "bonding-curve-buy"
BONDING_CURVE_SELL = "bonding-curve-sell"
WISHLIST_ITEM_ADDED = "wishlist-item-added"
WISHLIST_ITEM_RESERVED = "wishlist-item-reserved"
WISHLIST_STATUS_UPDATED = "wishlist-status-updated"
CHAT_MESSAGE = "chat-message"
CHAT_CONTEXT_UPDATE = "chat-context-update"


@dataclass(frozen=True)
class BlockRef:
    height: int
    hash: str


@dataclass(frozen=True)
class Block:
    """One immutable, hash-linked chain entry."""

    height: int
    data: Json
    prev_hash: str
    hash: str
    ts_ms: int

    @property
    def kind(self) -> str:
        t = self.data.get("type") if isinstance(self.data, dict) else None
        return t if isinstance(t, str) else ""

    @property
    def is_genesis(self) -> bool:
        return self.height == 0 and self.prev_hash == GENESIS_PREV_HASH

    @property
    def ref(self) -> BlockRef:
        return BlockRef(height=self.height, hash=self.hash)

    def header(self) -> Json:
        return make_block_header(height=self.height, prev_hash=self.prev_hash, data=self.data, ts_ms=self.ts_ms)

    def recompute_hash(self) -> str:
        return compute_block_hash(header=self.header())

    def dict(self) -> Json:
        return {
            "height": int(self.height),
            "data": self.data,
            "prev_hash": self.prev_hash,
            "hash": self.hash,
            "ts_ms": int(self.ts_ms),
        }

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Block":
        data = json.loads(str(row["data_json"]))
        if not isinstance(data, dict):
            raise ValueError("block data is not a JSON object")
        return cls(
            height=int(row["height"]),
            data=data,
            prev_hash=str(row["prev_hash"]),
            hash=str(row["hash"]),
            ts_ms=int(row["ts_ms"]),
        )
