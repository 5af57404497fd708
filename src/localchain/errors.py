from __future__ import annotations

from dataclasses import dataclass
from typing import Any


class LocalChainError(Exception):
    """Base class for all localchain failures."""


class NotFoundError(LocalChainError, KeyError):
    """A block or record lookup found nothing."""

    def __init__(self, kind: str, key: str) -> None:
        super().__init__(f"{kind} not found: {key}")
        self.kind = str(kind)
        self.key = str(key)

    def __str__(self) -> str:
        # KeyError would otherwise repr() the message.
        return f"{self.kind} not found: {self.key}"


class EncryptionError(LocalChainError):
    pass


class DecryptionError(LocalChainError):
    pass


class ConcurrencyConflict(LocalChainError):
    """Reserved for per-key locking.

    Executions are globally serialized, so nothing raises this today.
    """


class ContractIntegrityError(LocalChainError):
    """A stored contract definition does not match the code it points at."""


@dataclass
class ProcedureError(LocalChainError):
    """Canonical error type for contract business failures."""

    code: str
    reason: str
    details: Any | None = None

    def __str__(self) -> str:  # pragma: no cover
        if self.details is None:
            return f"{self.code}:{self.reason}"
        return f"{self.code}:{self.reason}:{self.details}"
