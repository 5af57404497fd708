# src/localchain/runtime/chain.py
from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

from localchain.crypto.digest import canon_json
from localchain.errors import NotFoundError
from localchain.runtime import metrics
from localchain.runtime.block import GENESIS, Block, BlockRef
from localchain.runtime.block_hash import GENESIS_PREV_HASH, compute_block_hash, make_block_header
from localchain.runtime.single_writer import SerialQueue
from localchain.runtime.sqlite_db import SqliteDB
from localchain.runtime.structured_logging import log_event

Json = Dict[str, Any]

_log = logging.getLogger("localchain.chain")

_TAIL_KEY = "tail_hash"
_CHAIN_ID_KEY = "chain_id"


def _now_ms() -> int:
    return int(time.time() * 1000)


def _check_block_data(data: Any) -> str:
    """Return the canonical encoding of `data`, rejecting anything but a JSON object."""

    if not isinstance(data, dict):
        raise ValueError("block data must be a JSON object")
    try:
        return canon_json(data)
    except (TypeError, ValueError) as e:
        raise ValueError(f"block data is not canonical JSON: {e}") from e


class ChainError(RuntimeError):
    pass


class LocalChain:
    """Append-only, hash-linked block log persisted in SQLite.

    Blocks are keyed by hash; meta["tail_hash"] points at the newest one.
    A single logical writer advances the tail: appends are admitted through a
    FIFO SerialQueue and then serialized again by SQLite's writer lock, so
    block order equals commit order even across threads and processes.
    """

    def __init__(self, *, db: SqliteDB, chain_id: Optional[str] = None) -> None:
        self.db = db
        self.db.init_schema()
        self.append_queue = SerialQueue("chain-append")

        with self.db.write_tx() as con:
            stored_id = self.db.get_meta(con, _CHAIN_ID_KEY)
            if stored_id is not None and chain_id is not None and stored_id != str(chain_id):
                raise ChainError(f"chain_id mismatch: db={stored_id!r} requested={chain_id!r}. Refuse to open.")
            self.chain_id = stored_id if stored_id is not None else str(chain_id or "localchain")
            if stored_id is None:
                self.db.set_meta(con, _CHAIN_ID_KEY, self.chain_id)

            if self.db.get_meta(con, _TAIL_KEY) is None:
                genesis = self._append_row(con, {"type": GENESIS, "chain_id": self.chain_id})
                log_event(_log, "chain_genesis", chain_id=self.chain_id, hash=genesis.hash)

        log_event(_log, "chain_opened", chain_id=self.chain_id, path=self.db.path)

    @staticmethod
    def resolve_path(path: str | Path) -> Path:
        """Map `path` to the DB file. A directory path gets a chain.db inside it."""

        p = Path(path).expanduser()
        if p.suffix == "" or p.is_dir():
            p = p / "chain.db"
        return p

    @classmethod
    def open(cls, path: str | Path, *, chain_id: Optional[str] = None, mode: Optional[str] = None) -> "LocalChain":
        """Open the chain DB at `path`. `mode` picks the sqlite durability defaults."""

        return cls(db=SqliteDB(path=str(cls.resolve_path(path)), mode=mode), chain_id=chain_id)

    # ----------------------------
    # Append
    # ----------------------------

    def _append_row(self, con: sqlite3.Connection, data: Json) -> Block:
        data_json = _check_block_data(data)
        # Round-trip through the canonical text so the stored and hashed data agree.
        data = json.loads(data_json)

        tail = self.db.get_meta(con, _TAIL_KEY)
        if tail is None:
            height, prev_hash = 0, GENESIS_PREV_HASH
        else:
            row = con.execute("SELECT height FROM blocks WHERE hash=?;", (tail,)).fetchone()
            if row is None:
                raise ChainError(f"tail_hash {tail} has no persisted block")
            height, prev_hash = int(row["height"]) + 1, tail

        ts_ms = _now_ms()
        bh = compute_block_hash(header=make_block_header(height=height, prev_hash=prev_hash, data=data, ts_ms=ts_ms))

        con.execute(
            "INSERT INTO blocks(hash, height, prev_hash, data_json, ts_ms) VALUES(?, ?, ?, ?, ?);",
            (bh, height, prev_hash, data_json, ts_ms),
        )
        self.db.set_meta(con, _TAIL_KEY, bh)
        return Block(height=height, data=data, prev_hash=prev_hash, hash=bh, ts_ms=ts_ms)

    def append_in_tx(self, con: sqlite3.Connection, data: Json) -> Block:
        """Append inside a caller-owned write_tx().

        The block becomes visible only when the caller commits. Callers must hold
        append_queue so the FIFO discipline covers these appends too.
        """
        return self._append_row(con, data)

    def _add_block_sync(self, data: Json) -> Block:
        with self.db.write_tx() as con:
            return self._append_row(con, data)

    def committed(self, block: Block) -> None:
        """Record a successful commit of `block` (logging and metrics)."""

        metrics.inc_counter("blocks_appended")
        metrics.set_gauge("chain_height", block.height)
        log_event(_log, "block_appended", height=block.height, hash=block.hash, kind=block.kind)

    async def add_block(self, data: Json) -> BlockRef:
        # Validate before queueing so a bad payload never holds up other writers.
        _check_block_data(data)
        async with self.append_queue.hold():
            block = await asyncio.to_thread(self._add_block_sync, data)
        self.committed(block)
        return block.ref

    # ----------------------------
    # Reads
    # ----------------------------

    def _read_block_sync(self, block_hash: str) -> Block:
        with self.db.connection() as con:
            row = con.execute(
                "SELECT hash, height, prev_hash, data_json, ts_ms FROM blocks WHERE hash=?;", (str(block_hash),)
            ).fetchone()
        if row is None:
            raise NotFoundError("block", str(block_hash))
        return Block.from_row(row)

    async def read_block(self, block_hash: str) -> Block:
        return await asyncio.to_thread(self._read_block_sync, block_hash)

    def _tail_hash_sync(self) -> str:
        with self.db.connection() as con:
            tail = self.db.get_meta(con, _TAIL_KEY)
        if tail is None:
            raise ChainError("chain has no tail; genesis missing")
        return tail

    async def tail_hash(self) -> str:
        return await asyncio.to_thread(self._tail_hash_sync)

    async def height(self) -> int:
        return (await self.read_block(await self.tail_hash())).height

    def _iter_blocks_sync(self, kind: Optional[str]) -> List[Block]:
        with self.db.connection() as con:
            rows = con.execute("SELECT hash, height, prev_hash, data_json, ts_ms FROM blocks ORDER BY height;").fetchall()
        out: List[Block] = []
        for row in rows:
            blk = Block.from_row(row)
            if kind is None or blk.kind == kind:
                out.append(blk)
        return out

    async def iter_blocks(self, *, kind: Optional[str] = None) -> List[Block]:
        """All blocks in height order, optionally only those tagged `kind`."""

        return await asyncio.to_thread(self._iter_blocks_sync, kind)

    # ----------------------------
    # Verification
    # ----------------------------

    def _fetch_for_verify(self, con: sqlite3.Connection, block_hash: str) -> Optional[Block]:
        row = con.execute(
            "SELECT hash, height, prev_hash, data_json, ts_ms FROM blocks WHERE hash=?;", (block_hash,)
        ).fetchone()
        if row is None:
            return None
        try:
            return Block.from_row(row)
        except (ValueError, TypeError):
            # Undecodable bytes on disk are tampering too.
            return None

    def _is_valid_sync(self, last: Optional[int], from_hash: Optional[str]) -> bool:
        with self.db.connection() as con:
            start = from_hash if from_hash is not None else self.db.get_meta(con, _TAIL_KEY)
            if not start:
                return False
            if self._link_row(con, start) is None:
                return self._invalid(start, "missing_block")

            remaining = None if last is None else int(last)
            block_hash = start

            while remaining is None or remaining > 0:
                cur = self._fetch_for_verify(con, block_hash)
                if cur is None or cur.hash != block_hash:
                    return self._invalid(block_hash, "undecodable_block")
                try:
                    recomputed = cur.recompute_hash()
                except (TypeError, ValueError):
                    return self._invalid(cur.hash, "unhashable_block")
                if recomputed != cur.hash:
                    return self._invalid(cur.hash, "hash_mismatch")

                if remaining is not None:
                    remaining -= 1

                if cur.height == 0:
                    if cur.prev_hash != GENESIS_PREV_HASH:
                        return self._invalid(cur.hash, "bad_genesis_link")
                    return True

                # The predecessor is only decoded if it falls inside the range.
                link = self._link_row(con, cur.prev_hash)
                if link is None:
                    return self._invalid(cur.hash, "missing_predecessor")
                if link["height"] != cur.height - 1:
                    return self._invalid(cur.hash, "broken_link")
                block_hash = cur.prev_hash

            return True

    @staticmethod
    def _link_row(con: sqlite3.Connection, block_hash: str) -> Optional[sqlite3.Row]:
        return con.execute("SELECT hash, height FROM blocks WHERE hash=?;", (block_hash,)).fetchone()

    def _invalid(self, block_hash: str, reason: str) -> bool:
        metrics.inc_counter("chain_invalid")
        log_event(_log, "chain_invalid", level=logging.WARNING, hash=block_hash, reason=reason)
        return False

    async def is_valid(self, *, last: Optional[int] = None, from_hash: Optional[str] = None) -> bool:
        """Walk back from `from_hash` (default: the tail) recomputing every hash.

        - last=None: walk to genesis; last=N: check at most N blocks.
        - A stored block whose recomputed hash differs from its key, a broken
          prev_hash link, or a missing block yields False. Never raises for a
          corrupted chain.
        """
        if last is not None and int(last) < 0:
            raise ValueError("last must be >= 0")
        return await asyncio.to_thread(self._is_valid_sync, last, from_hash)
