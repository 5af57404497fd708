# src/localchain/contracts/token.py
from __future__ import annotations

import secrets
import time
import uuid
from typing import Any, Dict, Optional

from localchain.contracts.runtime import Capabilities, ReadView, SmartContract
from localchain.contracts.schemas import BurnArgs, MintArgs, TransferArgs, parse_args
from localchain.errors import ProcedureError
from localchain.runtime.block import TOKEN_BURN, TOKEN_MINT, TOKEN_TRANSFER
from localchain.runtime.chain import LocalChain
from localchain.storage.record_store import Storage

Json = Dict[str, Any]


def _now_ms() -> int:
    return int(time.time() * 1000)


def _tx_id(prefix: str) -> str:
    return f"{prefix}-{_now_ms()}-{secrets.token_hex(5)}"


def balance_key(address: str) -> str:
    return f"balance:{address}"


async def read_balance(view: ReadView, address: str) -> float:
    rec = await view.get(balance_key(address))
    if not isinstance(rec, dict):
        return 0
    return rec.get("balance", 0)


def _require_positive(amount: float, what: str) -> None:
    if amount <= 0:
        raise ProcedureError("non_positive_amount", f"{what} amount must be positive", {"amount": amount})


def _require_funds(available: float, amount: float) -> None:
    if available < amount:
        raise ProcedureError(
            "insufficient_balance", f"Insufficient balance. Available: {available}", {"available": available}
        )


async def _write_balance(caps: Capabilities, address: str, balance: float, *, encrypted: bool) -> None:
    await caps.storage.save_data(
        balance_key(address),
        {"address": address, "balance": balance, "updated_ms": _now_ms()},
        encrypted=encrypted,
    )


# ---------------------------------------------------------------------------
# Procedures
#
# Public tokens write one audit block per operation. Private tokens keep
# balances encrypted and write no audit blocks beyond the storage-write
# registrations, so amounts and parties never appear on the chain.
# ---------------------------------------------------------------------------


async def _transfer(view: ReadView, args: Json, caps: Capabilities, *, private: bool) -> Json:
    a = parse_args(TransferArgs, args)
    _require_positive(a.amount, "Transfer")
    if a.from_ == a.to:
        raise ProcedureError("self_transfer", "Cannot transfer to the same address")

    from_balance = await read_balance(view, a.from_)
    _require_funds(from_balance, a.amount)
    to_balance = await read_balance(view, a.to)

    new_from = from_balance - a.amount
    new_to = to_balance + a.amount
    await _write_balance(caps, a.from_, new_from, encrypted=private)
    await _write_balance(caps, a.to, new_to, encrypted=private)

    out: Json = {"success": True, "from_balance": new_from, "to_balance": new_to}
    if not private:
        tx_id = _tx_id("tx")
        await caps.chain.add_block(
            {
                "type": TOKEN_TRANSFER,
                "from": a.from_,
                "to": a.to,
                "amount": a.amount,
                "timestamp": _now_ms(),
                "tx_id": tx_id,
            }
        )
        out["tx_id"] = tx_id
    return out


async def _mint(view: ReadView, args: Json, caps: Capabilities, *, private: bool) -> Json:
    a = parse_args(MintArgs, args)
    _require_positive(a.amount, "Mint")

    balance = await read_balance(view, a.to)
    new_balance = balance + a.amount
    await _write_balance(caps, a.to, new_balance, encrypted=private)

    out: Json = {"success": True, "balance": new_balance}
    if not private:
        tx_id = _tx_id("mint")
        await caps.chain.add_block(
            {
                "type": TOKEN_MINT,
                "to": a.to,
                "amount": a.amount,
                "bridge_tx_hash": a.bridge_tx_hash,
                "timestamp": _now_ms(),
                "tx_id": tx_id,
            }
        )
        out["tx_id"] = tx_id
    return out


async def _burn(view: ReadView, args: Json, caps: Capabilities, *, private: bool) -> Json:
    a = parse_args(BurnArgs, args)
    _require_positive(a.amount, "Burn")

    balance = await read_balance(view, a.from_)
    _require_funds(balance, a.amount)
    new_balance = balance - a.amount
    await _write_balance(caps, a.from_, new_balance, encrypted=private)

    out: Json = {"success": True, "balance": new_balance}
    if not private:
        tx_id = _tx_id("burn")
        await caps.chain.add_block(
            {
                "type": TOKEN_BURN,
                "from": a.from_,
                "amount": a.amount,
                "bridge_address": a.bridge_address,
                "timestamp": _now_ms(),
                "tx_id": tx_id,
            }
        )
        out["tx_id"] = tx_id
    return out


async def transfer_procedure(view: ReadView, args: Json, caps: Capabilities) -> Json:
    return await _transfer(view, args, caps, private=False)


async def mint_procedure(view: ReadView, args: Json, caps: Capabilities) -> Json:
    return await _mint(view, args, caps, private=False)


async def burn_procedure(view: ReadView, args: Json, caps: Capabilities) -> Json:
    return await _burn(view, args, caps, private=False)


async def private_transfer_procedure(view: ReadView, args: Json, caps: Capabilities) -> Json:
    return await _transfer(view, args, caps, private=True)


async def private_mint_procedure(view: ReadView, args: Json, caps: Capabilities) -> Json:
    return await _mint(view, args, caps, private=True)


async def private_burn_procedure(view: ReadView, args: Json, caps: Capabilities) -> Json:
    return await _burn(view, args, caps, private=True)


class Token:
    """Bridged token: balances, transfers, mint (deposit) and burn (withdrawal).

    With private=True balances are stored encrypted (the storage needs a key
    pair) and no audit blocks are written.
    """

    def __init__(self, name: str, symbol: str, *, storage: Storage, chain: LocalChain, private: bool = False) -> None:
        self.name = name
        self.symbol = symbol
        self.private = bool(private)
        self._storage = storage
        self._chain = chain

        prefix = f"{symbol}-private" if self.private else symbol
        if self.private:
            procs = (private_transfer_procedure, private_mint_procedure, private_burn_procedure)
        else:
            procs = (transfer_procedure, mint_procedure, burn_procedure)

        self.transfer_contract = SmartContract(f"{prefix}-transfer", procs[0], storage=storage, chain=chain)
        self.mint_contract = SmartContract(f"{prefix}-mint", procs[1], storage=storage, chain=chain)
        self.burn_contract = SmartContract(f"{prefix}-burn", procs[2], storage=storage, chain=chain)

    @property
    def storage(self) -> Storage:
        return self._storage

    @property
    def chain(self) -> LocalChain:
        return self._chain

    async def transfer(self, from_: str, to: str, amount: float) -> Json:
        res = await self.transfer_contract.execute(
            {"id": f"transfer-{uuid.uuid4().hex}", "from": from_, "to": to, "amount": amount}
        )
        return res.unwrap()

    async def mint(self, to: str, amount: float, bridge_tx_hash: Optional[str] = None) -> Json:
        res = await self.mint_contract.execute(
            {"id": f"mint-{uuid.uuid4().hex}", "to": to, "amount": amount, "bridge_tx_hash": bridge_tx_hash}
        )
        return res.unwrap()

    async def burn(self, from_: str, amount: float, bridge_address: Optional[str] = None) -> Json:
        res = await self.burn_contract.execute(
            {"id": f"burn-{uuid.uuid4().hex}", "from": from_, "amount": amount, "bridge_address": bridge_address}
        )
        return res.unwrap()

    async def balance_of(self, address: str) -> float:
        rec = await self._storage.load_data_or(balance_key(address))
        return rec.get("balance", 0) if isinstance(rec, dict) else 0
