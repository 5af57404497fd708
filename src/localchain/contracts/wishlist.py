# src/localchain/contracts/wishlist.py
from __future__ import annotations

import secrets
import time
import uuid
from typing import Any, Dict, Optional

from localchain.contracts.runtime import Capabilities, ReadView, SmartContract
from localchain.contracts.schemas import (
    AddItemArgs,
    GetWishListArgs,
    ReserveItemArgs,
    UpdateStatusArgs,
    parse_args,
)
from localchain.errors import ProcedureError
from localchain.runtime.block import WISHLIST_ITEM_ADDED, WISHLIST_ITEM_RESERVED, WISHLIST_STATUS_UPDATED
from localchain.runtime.chain import LocalChain
from localchain.storage.record_store import Storage

Json = Dict[str, Any]

_PRIORITY_ORDER = {"high": 3, "medium": 2, "low": 1}


def _now_ms() -> int:
    return int(time.time() * 1000)


def wishlist_key(user_id: str) -> str:
    return f"wishlist:{user_id}"


def reservations_key(user_id: str) -> str:
    return f"reservations:{user_id}"


def _find_item(wishlist: Json, item_id: str) -> Json:
    for item in wishlist.get("items", []):
        if item.get("id") == item_id:
            return item
    raise ProcedureError("item_not_found", f"Item {item_id} not found in wish list")


async def _require_wishlist(view: ReadView, user_id: str) -> Json:
    wl = await view.get(wishlist_key(user_id))
    if not isinstance(wl, dict):
        raise ProcedureError("wishlist_not_found", f"Wish list not found for user {user_id}")
    return wl


async def add_item_procedure(view: ReadView, args: Json, caps: Capabilities) -> Json:
    a = parse_args(AddItemArgs, args)
    now = _now_ms()

    wl = await view.get(wishlist_key(a.user_id)) or {
        "user_id": a.user_id,
        "items": [],
        "created_ms": now,
        "updated_ms": now,
    }

    item = {
        "id": f"item-{now}-{secrets.token_hex(5)}",
        "name": a.item.name,
        "description": a.item.description,
        "url": a.item.url,
        "price": a.item.price,
        "priority": a.item.priority,
        "status": "available",
        "reserved_by": None,
        "reserved_ms": None,
        "created_ms": now,
        "metadata": a.item.metadata,
    }
    wl["items"].append(item)
    wl["updated_ms"] = now

    await caps.storage.save_data(wishlist_key(a.user_id), wl)
    await caps.chain.add_block(
        {
            "type": WISHLIST_ITEM_ADDED,
            "user_id": a.user_id,
            "item_id": item["id"],
            "item_name": item["name"],
            "timestamp": now,
        }
    )

    return {"success": True, "item": item, "item_id": item["id"], "total_items": len(wl["items"])}


async def reserve_item_procedure(view: ReadView, args: Json, caps: Capabilities) -> Json:
    a = parse_args(ReserveItemArgs, args)
    if a.owner_id == a.reserved_by:
        raise ProcedureError("self_reservation", "Cannot reserve your own item")

    wl = await _require_wishlist(view, a.owner_id)
    item = _find_item(wl, a.item_id)

    if item.get("reserved_by"):
        raise ProcedureError("already_reserved", "Item is already reserved", {"reserved_by": item["reserved_by"]})
    if item.get("status") != "available":
        raise ProcedureError("not_available", f"Item is not available. Current status: {item.get('status')}")

    now = _now_ms()
    item["status"] = "reserved"
    item["reserved_by"] = a.reserved_by
    item["reserved_ms"] = now
    wl["updated_ms"] = now

    reservations = await view.get(reservations_key(a.reserved_by)) or {
        "user_id": a.reserved_by,
        "reservations": [],
        "created_ms": now,
        "updated_ms": now,
    }
    reservations["reservations"].append(
        {
            "item_id": a.item_id,
            "owner_id": a.owner_id,
            "item_name": item["name"],
            "reserved_ms": now,
            "status": "reserved",
        }
    )
    reservations["updated_ms"] = now

    await caps.storage.save_data(wishlist_key(a.owner_id), wl)
    await caps.storage.save_data(reservations_key(a.reserved_by), reservations)
    await caps.chain.add_block(
        {
            "type": WISHLIST_ITEM_RESERVED,
            "owner_id": a.owner_id,
            "item_id": a.item_id,
            "reserved_by": a.reserved_by,
            "item_name": item["name"],
            "timestamp": now,
        }
    )

    return {
        "success": True,
        "item": item,
        "owner_id": a.owner_id,
        "reserved_by": a.reserved_by,
        "reserved_ms": now,
    }


async def update_status_procedure(view: ReadView, args: Json, caps: Capabilities) -> Json:
    a = parse_args(UpdateStatusArgs, args)
    wl = await _require_wishlist(view, a.user_id)
    item = _find_item(wl, a.item_id)

    now = _now_ms()
    old_status = item.get("status")
    item["status"] = a.status
    wl["updated_ms"] = now

    if a.status in ("fulfilled", "cancelled"):
        reserver = item.get("reserved_by")
        if reserver:
            reservations = await view.get(reservations_key(reserver))
            if isinstance(reservations, dict):
                for r in reservations.get("reservations", []):
                    if r.get("item_id") == a.item_id and r.get("owner_id") == a.user_id:
                        r["status"] = a.status
                        reservations["updated_ms"] = now
                        await caps.storage.save_data(reservations_key(reserver), reservations)
                        break
        item["reserved_by"] = None
        item["reserved_ms"] = None

    await caps.storage.save_data(wishlist_key(a.user_id), wl)
    await caps.chain.add_block(
        {
            "type": WISHLIST_STATUS_UPDATED,
            "user_id": a.user_id,
            "item_id": a.item_id,
            "old_status": old_status,
            "new_status": a.status,
            "timestamp": now,
        }
    )

    return {"success": True, "item": item, "old_status": old_status, "new_status": a.status}


async def get_wishlist_procedure(view: ReadView, args: Json, caps: Capabilities) -> Json:
    a = parse_args(GetWishListArgs, args)
    wl = await view.get(wishlist_key(a.user_id))
    if not isinstance(wl, dict):
        now = _now_ms()
        return {"user_id": a.user_id, "items": [], "total_items": 0, "created_ms": now, "updated_ms": now}

    all_items = wl.get("items", [])
    items = [i for i in all_items if a.status_filter is None or i.get("status") == a.status_filter]
    items.sort(key=lambda i: (-_PRIORITY_ORDER.get(i.get("priority"), 2), i.get("created_ms", 0)))

    return {
        "user_id": wl.get("user_id", a.user_id),
        "items": items,
        "total_items": len(items),
        "total_all_items": len(all_items),
        "created_ms": wl.get("created_ms"),
        "updated_ms": wl.get("updated_ms"),
    }


class WishList:
    """Wish lists with reservations by other users.

    Item status moves between available, reserved, fulfilled and cancelled;
    fulfilling or cancelling clears the reservation and updates the reserver's
    own reservation list.
    """

    def __init__(self, *, storage: Storage, chain: LocalChain) -> None:
        self._storage = storage
        self.add_item_contract = SmartContract("wishlist-add-item", add_item_procedure, storage=storage, chain=chain)
        self.reserve_item_contract = SmartContract(
            "wishlist-reserve-item", reserve_item_procedure, storage=storage, chain=chain
        )
        self.update_status_contract = SmartContract(
            "wishlist-update-status", update_status_procedure, storage=storage, chain=chain
        )
        self.get_contract = SmartContract("wishlist-get", get_wishlist_procedure, storage=storage, chain=chain)

    async def add_item(self, user_id: str, item: Json) -> Json:
        res = await self.add_item_contract.execute({"id": f"add-{uuid.uuid4().hex}", "user_id": user_id, "item": item})
        return res.unwrap()

    async def reserve_item(self, owner_id: str, item_id: str, reserved_by: str) -> Json:
        res = await self.reserve_item_contract.execute(
            {"id": f"reserve-{uuid.uuid4().hex}", "owner_id": owner_id, "item_id": item_id, "reserved_by": reserved_by}
        )
        return res.unwrap()

    async def update_status(self, user_id: str, item_id: str, status: str) -> Json:
        res = await self.update_status_contract.execute(
            {"id": f"status-{uuid.uuid4().hex}", "user_id": user_id, "item_id": item_id, "status": status}
        )
        return res.unwrap()

    async def get_wishlist(self, user_id: str, status_filter: Optional[str] = None) -> Json:
        res = await self.get_contract.execute(
            {"id": f"get-{uuid.uuid4().hex}", "user_id": user_id, "status_filter": status_filter}
        )
        return res.unwrap()

    async def get_reservations(self, user_id: str) -> Json:
        rec = await self._storage.load_data_or(reservations_key(user_id))
        if not isinstance(rec, dict):
            return {"user_id": user_id, "reservations": [], "total_reservations": 0}
        rec["total_reservations"] = len(rec.get("reservations", []))
        return rec
