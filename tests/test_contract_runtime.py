from __future__ import annotations

import asyncio
from typing import Any, Dict

import pytest

from localchain.contracts.runtime import (
    Capabilities,
    ExecutionState,
    ReadView,
    SmartContract,
    execution_queue_for,
    procedure_ref,
)
from localchain.contracts.token import transfer_procedure
from localchain.errors import ContractIntegrityError, NotFoundError, ProcedureError
from localchain.runtime import metrics
from localchain.runtime.block import CONTRACT_DEFINITION
from localchain.runtime.chain import LocalChain
from localchain.storage.record_store import Storage


async def _increment(view: ReadView, args: Dict[str, Any], caps: Capabilities) -> int:
    cur = await view.get("counter", {"n": 0})
    # Yield between read and write; only serialization prevents lost updates.
    await asyncio.sleep(0)
    n = cur["n"] + int(args.get("by", 1))
    await caps.storage.save_data("counter", {"n": n})
    return n


async def _reject(view: ReadView, args: Dict[str, Any], caps: Capabilities) -> None:
    raise ProcedureError("nope", "rejected by rule", {"arg": args.get("x")})


async def _crash(view: ReadView, args: Dict[str, Any], caps: Capabilities) -> None:
    raise RuntimeError("infrastructure down")


def _sync_echo(view: ReadView, args: Dict[str, Any], caps: Capabilities) -> Dict[str, Any]:
    return {"echo": args.get("x")}


@pytest.mark.asyncio
async def test_execute_requires_an_id(storage: Storage, chain: LocalChain) -> None:
    c = SmartContract("inc", _increment, storage=storage, chain=chain)

    with pytest.raises(ValueError):
        await c.execute({})
    with pytest.raises(ValueError):
        await c.execute({"id": "  "})
    with pytest.raises(ValueError):
        await c.execute("not a dict")  # type: ignore[arg-type]

    # Nothing ran.
    assert await storage.exists("counter") is False


@pytest.mark.asyncio
async def test_constructing_does_not_execute(storage: Storage, chain: LocalChain) -> None:
    SmartContract("inc", _increment, storage=storage, chain=chain)
    assert await storage.exists("counter") is False
    assert await chain.height() == 0

    with pytest.raises(ValueError):
        SmartContract("", _increment, storage=storage, chain=chain)
    with pytest.raises(TypeError):
        SmartContract("x", "not callable", storage=storage, chain=chain)  # type: ignore[arg-type]


@pytest.mark.asyncio
async def test_successful_execution(storage: Storage, chain: LocalChain) -> None:
    c = SmartContract("inc", _increment, storage=storage, chain=chain)
    res = await c.execute({"id": "e1", "by": 5})

    assert res.ok is True
    assert res.value == 5
    assert res.unwrap() == 5
    assert res.state is ExecutionState.DONE
    assert res.history == [
        ExecutionState.PENDING,
        ExecutionState.READING,
        ExecutionState.COMPUTING,
        ExecutionState.COMMITTING,
        ExecutionState.DONE,
    ]
    assert res.reads == ("counter",)
    assert res.execution_id == "e1"
    assert await storage.load_data("counter") == {"n": 5}
    assert metrics.snapshot()["counters"]["executions_ok"] == 1


@pytest.mark.asyncio
async def test_sync_procedure(storage: Storage, chain: LocalChain) -> None:
    c = SmartContract("echo", _sync_echo, storage=storage, chain=chain)
    assert (await c.execute({"id": "e", "x": 3})).unwrap() == {"echo": 3}


@pytest.mark.asyncio
async def test_procedure_error_becomes_failed_result(storage: Storage, chain: LocalChain) -> None:
    c = SmartContract("reject", _reject, storage=storage, chain=chain)
    res = await c.execute({"id": "e", "x": 7})

    assert res.ok is False
    assert res.state is ExecutionState.FAILED
    assert res.error is not None
    assert res.error.code == "nope"
    assert res.error.details == {"arg": 7}
    with pytest.raises(ProcedureError) as ei:
        res.unwrap()
    assert ei.value.code == "nope"
    assert metrics.snapshot()["counters"]["executions_failed"] == 1


@pytest.mark.asyncio
async def test_infrastructure_error_propagates_and_releases(storage: Storage, chain: LocalChain) -> None:
    crash = SmartContract("crash", _crash, storage=storage, chain=chain)
    inc = SmartContract("inc", _increment, storage=storage, chain=chain)

    with pytest.raises(RuntimeError):
        await crash.execute({"id": "e"})

    res = await asyncio.wait_for(inc.execute({"id": "after"}), timeout=10)
    assert res.unwrap() == 1
    assert metrics.snapshot()["counters"]["executions_aborted"] == 1


@pytest.mark.asyncio
async def test_concurrent_executions_do_not_lose_updates(storage: Storage, chain: LocalChain) -> None:
    a = SmartContract("inc-a", _increment, storage=storage, chain=chain)
    b = SmartContract("inc-b", _increment, storage=storage, chain=chain)

    results = await asyncio.gather(
        *((a if i % 2 else b).execute({"id": f"e{i}"}) for i in range(20))
    )

    assert all(r.ok for r in results)
    assert await storage.load_data("counter") == {"n": 20}
    # FIFO: values come back in submission order.
    assert [r.value for r in results] == list(range(1, 21))


def test_contracts_share_one_queue_per_storage(storage: Storage, chain: LocalChain) -> None:
    a = SmartContract("a", _increment, storage=storage, chain=chain)
    b = SmartContract("b", _reject, storage=storage, chain=chain)
    assert a.queue is b.queue is execution_queue_for(storage)

    other = Storage(chain=chain)
    assert execution_queue_for(other) is not a.queue


@pytest.mark.asyncio
async def test_save_and_load_contract(storage: Storage, chain: LocalChain) -> None:
    ref = await SmartContract.save("coin-transfer", chain, transfer_procedure)

    blk = await chain.read_block(ref.hash)
    assert blk.kind == CONTRACT_DEFINITION
    assert blk.data["name"] == "coin-transfer"
    assert blk.data["code_ref"] == "localchain.contracts.token:transfer_procedure"
    assert len(blk.data["code_digest"]) == 64

    loaded = await SmartContract.load(ref.hash, storage=storage, chain=chain)
    assert loaded.name == "coin-transfer"
    assert loaded.procedure is transfer_procedure
    assert loaded.definition_hash == ref.hash

    await storage.save_data("balance:alice", {"address": "alice", "balance": 10})
    out = (await loaded.execute({"id": "t", "from": "alice", "to": "bob", "amount": 4})).unwrap()
    assert out["from_balance"] == 6
    assert out["to_balance"] == 4


@pytest.mark.asyncio
async def test_save_rejects_unaddressable_procedures(chain: LocalChain) -> None:
    with pytest.raises(ValueError):
        await SmartContract.save("lambda", chain, lambda v, a, c: None)

    def _local(view: ReadView, args: Dict[str, Any], caps: Capabilities) -> None:
        return None

    with pytest.raises(ValueError):
        await SmartContract.save("closure", chain, _local)
    with pytest.raises(ValueError):
        procedure_ref(_local)
    assert await chain.height() == 0


@pytest.mark.asyncio
async def test_load_rejects_bad_definitions(storage: Storage, chain: LocalChain) -> None:
    with pytest.raises(NotFoundError):
        await SmartContract.load("f" * 64, storage=storage, chain=chain)

    genesis = (await chain.iter_blocks())[0]
    with pytest.raises(ContractIntegrityError):
        await SmartContract.load(genesis.hash, storage=storage, chain=chain)

    changed = await chain.add_block(
        {
            "type": CONTRACT_DEFINITION,
            "name": "x",
            "code_ref": "localchain.contracts.token:transfer_procedure",
            "code_digest": "0" * 64,
        }
    )
    with pytest.raises(ContractIntegrityError):
        await SmartContract.load(changed.hash, storage=storage, chain=chain)

    missing = await chain.add_block(
        {"type": CONTRACT_DEFINITION, "name": "x", "code_ref": "localchain.contracts.token:nope", "code_digest": "0" * 64}
    )
    with pytest.raises(ContractIntegrityError):
        await SmartContract.load(missing.hash, storage=storage, chain=chain)

    malformed = await chain.add_block({"type": CONTRACT_DEFINITION, "name": "x"})
    with pytest.raises(ContractIntegrityError):
        await SmartContract.load(malformed.hash, storage=storage, chain=chain)
