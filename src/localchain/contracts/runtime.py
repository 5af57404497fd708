# src/localchain/contracts/runtime.py
from __future__ import annotations

"""Contract execution runtime.

A SmartContract binds a named procedure to its capabilities (a Storage and a
LocalChain). execute() hands the procedure a ReadView, which can only read,
plus the explicit capabilities, which are the only way to write. Every write
point is therefore a visible `caps.storage.save_data(...)` or
`caps.chain.add_block(...)` call in the procedure source.

Executions against the same Storage run one at a time, end to end, in FIFO
order. Procedures do unguarded read-check-write sequences (read balance,
compare, write balance), so two interleaved executions could lose updates.

Known limitation: writes are not staged. A procedure that fails after some of
its own save_data/add_block calls committed leaves those writes in place.
"""

import enum
import importlib
import inspect
import logging
import threading
import time
import weakref
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from localchain.crypto.digest import sha256_hex
from localchain.errors import ContractIntegrityError, NotFoundError, ProcedureError
from localchain.runtime import metrics
from localchain.runtime.block import CONTRACT_DEFINITION, BlockRef
from localchain.runtime.chain import LocalChain
from localchain.runtime.single_writer import SerialQueue
from localchain.runtime.structured_logging import log_event
from localchain.storage.record_store import Storage

Json = Dict[str, Any]

_log = logging.getLogger("localchain.contracts")


class ExecutionState(str, enum.Enum):
    PENDING = "pending"
    READING = "reading"
    COMPUTING = "computing"
    COMMITTING = "committing"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class Capabilities:
    """Write capabilities injected into a procedure."""

    storage: Storage
    chain: LocalChain


class ReadView:
    """Read-only view over a Storage handed to procedures.

    Exposes reads only. Keys read are recorded in `reads`.
    """

    __slots__ = ("_storage", "_reads")

    def __init__(self, storage: Storage) -> None:
        self._storage = storage
        self._reads: List[str] = []

    async def get(self, key: str, default: Any = None) -> Any:
        """storage.load_data(key), or `default` when the record does not exist."""

        self._reads.append(str(key))
        try:
            return await self._storage.load_data(key)
        except NotFoundError:
            return default

    @property
    def reads(self) -> Tuple[str, ...]:
        return tuple(self._reads)


Procedure = Callable[[ReadView, Json, Capabilities], Union[Any, Awaitable[Any]]]


@dataclass
class ExecutionResult:
    contract: str
    execution_id: str
    ok: bool
    state: ExecutionState
    value: Any = None
    error: Optional[ProcedureError] = None
    reads: Tuple[str, ...] = ()
    history: List[ExecutionState] = field(default_factory=list)
    duration_ms: int = 0

    def unwrap(self) -> Any:
        """Return the procedure's value, or re-raise its ProcedureError unchanged."""
        if self.error is not None:
            raise self.error
        return self.value


_queues_guard = threading.Lock()
_queues: "weakref.WeakKeyDictionary[Storage, SerialQueue]" = weakref.WeakKeyDictionary()


def execution_queue_for(storage: Storage) -> SerialQueue:
    """The single execution queue shared by every contract bound to `storage`."""

    with _queues_guard:
        q = _queues.get(storage)
        if q is None:
            q = SerialQueue("contract-execution")
            _queues[storage] = q
        return q


def procedure_ref(procedure: Callable[..., Any]) -> str:
    module = getattr(procedure, "__module__", None)
    qualname = getattr(procedure, "__qualname__", None)
    if not module or not qualname or "<" in qualname:
        raise ValueError("procedure must be a module-level callable to be saved (no lambdas or closures)")
    return f"{module}:{qualname}"


def procedure_digest(procedure: Callable[..., Any]) -> str:
    try:
        src = inspect.getsource(procedure)
    except (OSError, TypeError) as e:
        raise ValueError(f"procedure source is not available: {e}") from e
    return sha256_hex(src.encode("utf-8"))


def resolve_procedure(code_ref: str) -> Callable[..., Any]:
    module_name, _, qualname = str(code_ref).partition(":")
    if not module_name or not qualname:
        raise ContractIntegrityError(f"malformed code_ref: {code_ref!r}")
    try:
        obj: Any = importlib.import_module(module_name)
        for part in qualname.split("."):
            obj = getattr(obj, part)
    except (ImportError, AttributeError) as e:
        raise ContractIntegrityError(f"code_ref does not resolve: {code_ref!r}") from e
    if not callable(obj):
        raise ContractIntegrityError(f"code_ref is not callable: {code_ref!r}")
    return obj


class SmartContract:
    """A named procedure bound to its capabilities. Construction executes nothing."""

    def __init__(
        self,
        name: str,
        procedure: Procedure,
        *,
        storage: Storage,
        chain: LocalChain,
        queue: Optional[SerialQueue] = None,
    ) -> None:
        if not isinstance(name, str) or not name.strip():
            raise ValueError("contract name must be a non-empty string")
        if not callable(procedure):
            raise TypeError("procedure must be callable")
        self.name = name
        self.procedure = procedure
        self.caps = Capabilities(storage=storage, chain=chain)
        self.queue = queue or execution_queue_for(storage)
        self.definition_hash: Optional[str] = None

    async def execute(self, args: Json) -> ExecutionResult:
        if not isinstance(args, dict):
            raise ValueError("execute args must be a dict")
        exec_id = args.get("id")
        if not isinstance(exec_id, str) or not exec_id.strip():
            raise ValueError("execute args must include a non-empty 'id'")

        result = ExecutionResult(
            contract=self.name,
            execution_id=exec_id,
            ok=False,
            state=ExecutionState.PENDING,
            history=[ExecutionState.PENDING],
        )

        def _enter(state: ExecutionState) -> None:
            result.state = state
            result.history.append(state)

        started = time.monotonic()
        view = ReadView(self.caps.storage)
        _enter(ExecutionState.READING)

        async with self.queue.hold():
            _enter(ExecutionState.COMPUTING)
            try:
                out = self.procedure(view, dict(args), self.caps)
                if inspect.isawaitable(out):
                    out = await out
            except ProcedureError as e:
                result.error = e
                _enter(ExecutionState.FAILED)
            except Exception as e:
                # Infrastructure failure: propagate unchanged, token released by hold().
                metrics.inc_counter("executions_aborted")
                log_event(
                    _log, "execution_aborted", level=logging.ERROR, contract=self.name, id=exec_id,
                    error=f"{type(e).__name__}: {e}",
                )
                raise
            else:
                # The procedure's own writes are durable once their awaits returned.
                _enter(ExecutionState.COMMITTING)
                result.value = out
                result.ok = True
                _enter(ExecutionState.DONE)

        result.reads = view.reads
        result.duration_ms = int((time.monotonic() - started) * 1000)

        if result.ok:
            metrics.inc_counter("executions_ok")
            log_event(
                _log, "execution_done", contract=self.name, id=exec_id, reads=len(result.reads),
                duration_ms=result.duration_ms,
            )
        else:
            metrics.inc_counter("executions_failed")
            err = result.error
            log_event(
                _log, "execution_failed", level=logging.WARNING, contract=self.name, id=exec_id,
                code=getattr(err, "code", ""), reason=getattr(err, "reason", ""),
            )
        return result

    # ----------------------------
    # Provenance
    # ----------------------------

    @staticmethod
    async def save(name: str, chain: LocalChain, procedure: Procedure) -> BlockRef:
        """Append a contract-definition block naming `procedure` by import path and source digest."""

        if not isinstance(name, str) or not name.strip():
            raise ValueError("contract name must be a non-empty string")
        ref = await chain.add_block(
            {
                "type": CONTRACT_DEFINITION,
                "name": name,
                "code_ref": procedure_ref(procedure),
                "code_digest": procedure_digest(procedure),
            }
        )
        log_event(_log, "contract_saved", name=name, hash=ref.hash, height=ref.height)
        return ref

    @classmethod
    async def load(cls, block_hash: str, *, storage: Storage, chain: LocalChain) -> "SmartContract":
        """Rebuild a contract from its definition block.

        Raises NotFoundError for an unknown hash and ContractIntegrityError if the
        block is not a definition or the code no longer matches its digest.
        """
        block = await chain.read_block(block_hash)
        if block.kind != CONTRACT_DEFINITION:
            raise ContractIntegrityError(f"block {block_hash} is not a contract definition")

        name = block.data.get("name")
        code_ref = block.data.get("code_ref")
        code_digest = block.data.get("code_digest")
        if not isinstance(name, str) or not isinstance(code_ref, str) or not isinstance(code_digest, str):
            raise ContractIntegrityError(f"block {block_hash} has a malformed contract definition")

        procedure = resolve_procedure(code_ref)
        try:
            current = procedure_digest(procedure)
        except ValueError as e:
            raise ContractIntegrityError(str(e)) from e
        if current != code_digest:
            raise ContractIntegrityError(f"contract {name!r}: code at {code_ref} changed since block {block_hash}")

        contract = cls(name, procedure, storage=storage, chain=chain)
        contract.definition_hash = block.hash
        return contract
