# src/localchain/contracts/schemas.py
from __future__ import annotations

"""Argument schemas for the bundled contracts.

Shape checks only (types, required keys, enums). Business rules such as
positivity, balance sufficiency and status transitions stay in the procedures
so their error codes are the procedures' own.
"""

from typing import Annotated, Any, Dict, Literal, Optional, Type, TypeVar, Union

from pydantic import AllowInfNan, BaseModel, ConfigDict, Field, Strict, StrictInt, StrictStr, ValidationError

from localchain.errors import ProcedureError

Json = Dict[str, Any]

# Finite only: records are stored as strict JSON.
Amount = Union[StrictInt, Annotated[float, Strict(), AllowInfNan(False)]]

M = TypeVar("M", bound=BaseModel)


class _StrictModel(BaseModel):
    """Strict model: reject unknown keys and non-finite floats."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True, allow_inf_nan=False)


class _ExecArgs(_StrictModel):
    id: StrictStr = Field(min_length=1)


def parse_args(model: Type[M], args: Json) -> M:
    try:
        return model.model_validate(args)
    except ValidationError as e:
        details = [
            {"loc": ".".join(str(p) for p in err.get("loc", ())), "msg": str(err.get("msg", ""))}
            for err in e.errors()
        ]
        raise ProcedureError("invalid_args", f"{model.__name__} validation failed", details) from e


# ---------------------------------------------------------------------------
# Token
# ---------------------------------------------------------------------------


class TransferArgs(_ExecArgs):
    from_: StrictStr = Field(alias="from", min_length=1)
    to: StrictStr = Field(min_length=1)
    amount: Amount


class MintArgs(_ExecArgs):
    to: StrictStr = Field(min_length=1)
    amount: Amount
    bridge_tx_hash: Optional[StrictStr] = None


class BurnArgs(_ExecArgs):
    from_: StrictStr = Field(alias="from", min_length=1)
    amount: Amount
    bridge_address: Optional[StrictStr] = None


# ---------------------------------------------------------------------------
# Bonding curve
# ---------------------------------------------------------------------------


class BuyArgs(_ExecArgs):
    buyer: StrictStr = Field(min_length=1)
    payment_amount: Amount


class SellArgs(_ExecArgs):
    seller: StrictStr = Field(min_length=1)
    token_amount: Amount


# ---------------------------------------------------------------------------
# Wish list
# ---------------------------------------------------------------------------

Priority = Literal["low", "medium", "high"]
ItemStatus = Literal["available", "reserved", "fulfilled", "cancelled"]


class WishItem(_StrictModel):
    name: StrictStr = Field(min_length=1)
    description: StrictStr = Field(min_length=1)
    url: Optional[StrictStr] = None
    price: Optional[Amount] = None
    priority: Priority = "medium"
    metadata: Dict[str, Any] = Field(default_factory=dict)


class AddItemArgs(_ExecArgs):
    user_id: StrictStr = Field(min_length=1)
    item: WishItem


class ReserveItemArgs(_ExecArgs):
    owner_id: StrictStr = Field(min_length=1)
    item_id: StrictStr = Field(min_length=1)
    reserved_by: StrictStr = Field(min_length=1)


class UpdateStatusArgs(_ExecArgs):
    user_id: StrictStr = Field(min_length=1)
    item_id: StrictStr = Field(min_length=1)
    status: ItemStatus


class GetWishListArgs(_ExecArgs):
    user_id: StrictStr = Field(min_length=1)
    status_filter: Optional[ItemStatus] = None


# ---------------------------------------------------------------------------
# Chat
# ---------------------------------------------------------------------------

Role = Literal["user", "assistant", "system"]


class SendMessageArgs(_ExecArgs):
    thread_id: StrictStr = Field(min_length=1)
    user_id: StrictStr = Field(min_length=1)
    role: Role
    content: StrictStr = Field(min_length=1)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class UpdateContextArgs(_ExecArgs):
    thread_id: StrictStr = Field(min_length=1)
    user_id: StrictStr = Field(min_length=1)
    context: Dict[str, Any] = Field(min_length=1)


class GetConversationArgs(_ExecArgs):
    thread_id: StrictStr = Field(min_length=1)
    user_id: StrictStr = Field(min_length=1)
    limit: Optional[StrictInt] = Field(default=None, gt=0)
