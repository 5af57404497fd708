# src/localchain/storage/record_store.py
from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import time
from typing import Any, Dict, Optional

from localchain.crypto.digest import canon_json, sha256_hex
from localchain.crypto.envelope import Envelope
from localchain.crypto.keys import KeyPair
from localchain.crypto.provider import CryptoProvider
from localchain.errors import DecryptionError, NotFoundError
from localchain.runtime import metrics
from localchain.runtime.block import STORAGE_WRITE, Block
from localchain.runtime.chain import LocalChain
from localchain.runtime.structured_logging import log_event
from localchain.storage.record import Record, SaveReceipt

Json = Dict[str, Any]

_log = logging.getLogger("localchain.storage")


def _now_ms() -> int:
    return int(time.time() * 1000)


def _check_id(record_id: Any) -> str:
    if not isinstance(record_id, str) or not record_id.strip():
        raise ValueError("record id must be a non-empty string")
    return record_id


def _aad(record_id: str) -> bytes:
    # Binds a ciphertext to its key: moving it under another id fails to decrypt.
    return f"localchain-record:{record_id}".encode("utf-8")


class Storage:
    """Keyed record store registered on a LocalChain.

    Records live in the chain's SQLite file (table `records`). Every write
    appends a `storage-write` block {id, content_digest} in the same write
    transaction as the record row, so a write is either fully committed
    (record + block + tail) or not at all.

    content_digest is taken over the plaintext canonical bytes; validation is
    therefore the same for encrypted and plain records.
    """

    def __init__(self, *, chain: LocalChain, keys: Optional[KeyPair] = None) -> None:
        self.chain = chain
        self.crypto = CryptoProvider(keys)

    # ----------------------------
    # Writes
    # ----------------------------

    def _save_sync(self, record_id: str, staged: Json, content_digest: str) -> Block:
        db = self.chain.db
        with db.write_tx() as con:
            # 1) stage the payload; block_hash is filled in once the block exists
            #    (the FK is deferred to COMMIT).
            con.execute(
                """
                INSERT INTO records(id, encrypted, payload, wrapped_key, nonce, content_digest, block_hash, updated_ts_ms)
                VALUES(?, ?, ?, ?, ?, ?, '', ?)
                ON CONFLICT(id) DO UPDATE SET
                  encrypted=excluded.encrypted,
                  payload=excluded.payload,
                  wrapped_key=excluded.wrapped_key,
                  nonce=excluded.nonce,
                  content_digest=excluded.content_digest,
                  block_hash=excluded.block_hash,
                  updated_ts_ms=excluded.updated_ts_ms;
                """,
                (
                    record_id,
                    1 if staged["encrypted"] else 0,
                    staged["payload"],
                    staged.get("wrapped_key"),
                    staged.get("nonce"),
                    content_digest,
                    _now_ms(),
                ),
            )

            # 2) register the digest on the chain.
            block = self.chain.append_in_tx(
                con, {"type": STORAGE_WRITE, "id": record_id, "content_digest": content_digest}
            )

            # 3) point the record at its registering block.
            con.execute("UPDATE records SET block_hash=? WHERE id=?;", (block.hash, record_id))
            return block

    async def save_data(self, record_id: str, data: Any, *, encrypted: bool = False) -> SaveReceipt:
        rid = _check_id(record_id)
        try:
            plain = canon_json(data)
        except (TypeError, ValueError) as e:
            raise ValueError(f"record {rid!r} is not JSON-serializable: {e}") from e
        digest = sha256_hex(plain.encode("utf-8"))

        if encrypted:
            env = self.crypto.encrypt(data, aad=_aad(rid)).to_json()
            staged: Json = {
                "encrypted": True,
                "payload": env["ciphertext"],
                "wrapped_key": env["wrapped_key"],
                "nonce": env["nonce"],
            }
        else:
            staged = {"encrypted": False, "payload": plain}

        try:
            async with self.chain.append_queue.hold():
                block = await asyncio.to_thread(self._save_sync, rid, staged, digest)
        except (sqlite3.Error, OSError, RuntimeError) as e:
            metrics.inc_counter("records_save_failed")
            log_event(_log, "record_save_failed", level=logging.ERROR, id=rid, error=str(e))
            raise

        self.chain.committed(block)
        metrics.inc_counter("records_saved")
        log_event(_log, "record_saved", id=rid, encrypted=bool(encrypted), block_hash=block.hash, height=block.height)
        return SaveReceipt(
            id=rid, block_hash=block.hash, height=block.height, content_digest=digest, encrypted=bool(encrypted)
        )

    # ----------------------------
    # Reads
    # ----------------------------

    def _record_sync(self, record_id: str) -> Optional[Record]:
        with self.chain.db.connection() as con:
            row = con.execute(
                """
                SELECT id, encrypted, payload, wrapped_key, nonce, content_digest, block_hash, updated_ts_ms
                FROM records WHERE id=?;
                """,
                (record_id,),
            ).fetchone()
        return None if row is None else Record.from_row(row)

    async def record(self, record_id: str) -> Record:
        """Record metadata and raw payload, without decrypting."""

        rid = _check_id(record_id)
        rec = await asyncio.to_thread(self._record_sync, rid)
        if rec is None:
            raise NotFoundError("record", rid)
        return rec

    async def exists(self, record_id: str) -> bool:
        return await asyncio.to_thread(self._record_sync, _check_id(record_id)) is not None

    def _decode(self, rec: Record) -> Any:
        if rec.encrypted:
            return self.crypto.decrypt(Envelope.from_json(rec.envelope_json()), aad=_aad(rec.id))
        try:
            return json.loads(rec.payload)
        except ValueError as e:
            raise ValueError(f"record {rec.id!r} payload is not valid JSON") from e

    async def load_data(self, record_id: str) -> Any:
        """Return the stored value. NotFoundError if absent, DecryptionError on key mismatch."""

        rec = await self.record(record_id)
        return self._decode(rec)

    async def load_data_or(self, record_id: str, default: Any = None) -> Any:
        try:
            return await self.load_data(record_id)
        except NotFoundError:
            return default

    # ----------------------------
    # Validation
    # ----------------------------

    async def validate(self, record_id: str, data: Any, block_hash: str) -> bool:
        """True iff `block_hash` is an intact storage-write of `data` under `record_id`."""

        try:
            digest = sha256_hex(canon_json(data).encode("utf-8"))
        except (TypeError, ValueError):
            return False

        try:
            block = await self.chain.read_block(block_hash)
        except NotFoundError:
            return False
        except ValueError:
            # Row exists but no longer decodes.
            return False

        if block.kind != STORAGE_WRITE:
            return False
        if block.data.get("id") != record_id or block.data.get("content_digest") != digest:
            return False

        # The block itself must still hash to its key and link to a stored predecessor.
        return await self.chain.is_valid(last=1, from_hash=block.hash)

    async def verify_record(self, record_id: str) -> bool:
        """Cross-check the stored record against the block that registered it."""

        rec = await self.record(record_id)
        try:
            value = self._decode(rec)
        except DecryptionError:
            return False
        if sha256_hex(canon_json(value).encode("utf-8")) != rec.content_digest:
            return False
        return await self.validate(rec.id, value, rec.block_hash)
