from __future__ import annotations

import asyncio
import math

import pytest

from localchain.contracts.token import Token, balance_key
from localchain.errors import EncryptionError, ProcedureError
from localchain.runtime.block import TOKEN_BURN, TOKEN_MINT, TOKEN_TRANSFER
from localchain.runtime.chain import LocalChain
from localchain.storage.record_store import Storage


@pytest.fixture
def token(storage: Storage, chain: LocalChain) -> Token:
    return Token("Test Coin", "TST", storage=storage, chain=chain)


@pytest.mark.asyncio
async def test_transfer_updates_balances_and_writes_one_audit_block(token: Token, chain: LocalChain) -> None:
    await token.mint("alice", 100)

    out = await token.transfer("alice", "bob", 40)

    assert out["success"] is True
    assert out["from_balance"] == 60
    assert out["to_balance"] == 40
    assert await token.balance_of("alice") == 60
    assert await token.balance_of("bob") == 40

    transfers = await chain.iter_blocks(kind=TOKEN_TRANSFER)
    assert len(transfers) == 1
    assert transfers[0].data["amount"] == 40
    assert transfers[0].data["from"] == "alice"
    assert transfers[0].data["to"] == "bob"
    assert transfers[0].data["tx_id"] == out["tx_id"]
    assert await chain.is_valid() is True


@pytest.mark.asyncio
async def test_insufficient_balance_changes_nothing(token: Token, chain: LocalChain) -> None:
    await token.mint("alice", 10)
    height = await chain.height()

    with pytest.raises(ProcedureError) as ei:
        await token.transfer("alice", "bob", 11)

    assert ei.value.code == "insufficient_balance"
    assert await token.balance_of("alice") == 10
    assert await token.balance_of("bob") == 0
    assert await chain.height() == height
    assert await chain.iter_blocks(kind=TOKEN_TRANSFER) == []


@pytest.mark.asyncio
async def test_business_rules(token: Token) -> None:
    await token.mint("alice", 10)

    with pytest.raises(ProcedureError) as ei:
        await token.transfer("alice", "bob", 0)
    assert ei.value.code == "non_positive_amount"

    with pytest.raises(ProcedureError) as ei:
        await token.transfer("alice", "alice", 5)
    assert ei.value.code == "self_transfer"
    assert await token.balance_of("alice") == 10

    with pytest.raises(ProcedureError) as ei:
        await token.mint("alice", -1)
    assert ei.value.code == "non_positive_amount"


@pytest.mark.asyncio
async def test_argument_shape_is_checked(token: Token) -> None:
    res = await token.transfer_contract.execute({"id": "bad", "from": "alice", "amount": 1})
    assert res.ok is False
    assert res.error is not None
    assert res.error.code == "invalid_args"

    res = await token.transfer_contract.execute({"id": "bad", "from": "alice", "to": "bob", "amount": "1"})
    assert res.error is not None and res.error.code == "invalid_args"

    res = await token.transfer_contract.execute(
        {"id": "bad", "from": "alice", "to": "bob", "amount": 1, "memo": "unexpected"}
    )
    assert res.error is not None and res.error.code == "invalid_args"


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", [math.nan, math.inf, -math.inf])
async def test_non_finite_amounts_are_invalid_args(token: Token, chain: LocalChain, amount: float) -> None:
    await token.mint("alice", 10)
    height = await chain.height()

    with pytest.raises(ProcedureError) as ei:
        await token.transfer("alice", "bob", amount)
    assert ei.value.code == "invalid_args"

    with pytest.raises(ProcedureError) as ei:
        await token.mint("bob", amount)
    assert ei.value.code == "invalid_args"

    assert await token.balance_of("alice") == 10
    assert await token.balance_of("bob") == 0
    assert await chain.height() == height


@pytest.mark.asyncio
async def test_mint_and_burn(token: Token, chain: LocalChain) -> None:
    minted = await token.mint("alice", 50, bridge_tx_hash="0xabc")
    assert minted["balance"] == 50

    burned = await token.burn("alice", 20, bridge_address="0xdef")
    assert burned["balance"] == 30
    assert await token.balance_of("alice") == 30

    with pytest.raises(ProcedureError) as ei:
        await token.burn("alice", 31)
    assert ei.value.code == "insufficient_balance"

    mints = await chain.iter_blocks(kind=TOKEN_MINT)
    burns = await chain.iter_blocks(kind=TOKEN_BURN)
    assert [b.data["bridge_tx_hash"] for b in mints] == ["0xabc"]
    assert [b.data["bridge_address"] for b in burns] == ["0xdef"]


@pytest.mark.asyncio
async def test_concurrent_transfers_lose_no_updates(token: Token, chain: LocalChain) -> None:
    await token.mint("alice", 100)

    await asyncio.gather(*(token.transfer("alice", "bob", 1) for _ in range(30)))

    assert await token.balance_of("alice") == 70
    assert await token.balance_of("bob") == 30
    assert len(await chain.iter_blocks(kind=TOKEN_TRANSFER)) == 30
    assert await chain.is_valid() is True


@pytest.mark.asyncio
async def test_concurrent_overdraw_admits_only_what_is_funded(token: Token) -> None:
    await token.mint("alice", 5)

    results = await asyncio.gather(
        *(token.transfer("alice", f"user{i}", 1) for i in range(8)), return_exceptions=True
    )

    ok = [r for r in results if isinstance(r, dict)]
    failed = [r for r in results if isinstance(r, ProcedureError)]
    assert len(ok) == 5
    assert len(failed) == 3
    assert all(e.code == "insufficient_balance" for e in failed)
    assert await token.balance_of("alice") == 0


@pytest.mark.asyncio
async def test_private_token_keeps_balances_off_chain(storage: Storage, chain: LocalChain) -> None:
    private = Token("Shadow", "SHD", storage=storage, chain=chain, private=True)

    await private.mint("alice", 100)
    out = await private.transfer("alice", "bob", 25)

    assert "tx_id" not in out
    assert await private.balance_of("alice") == 75
    assert await private.balance_of("bob") == 25

    rec = await storage.record(balance_key("alice"))
    assert rec.encrypted is True

    for kind in (TOKEN_MINT, TOKEN_TRANSFER, TOKEN_BURN):
        assert await chain.iter_blocks(kind=kind) == []
    for blk in await chain.iter_blocks():
        assert "amount" not in blk.data


@pytest.mark.asyncio
async def test_private_token_needs_keys(chain: LocalChain) -> None:
    private = Token("Shadow", "SHD", storage=Storage(chain=chain), chain=chain, private=True)
    with pytest.raises(EncryptionError):
        await private.mint("alice", 1)
