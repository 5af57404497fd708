# src/localchain/contracts/chat.py
from __future__ import annotations

"""Conversation threads for chat agents.

A thread lives at `thread:<id>` and belongs to the user that created it; every
procedure rejects a thread owned by someone else. Each user's thread ids are
kept at `user:<user_id>:threads`.
"""

import secrets
import time
import uuid
from typing import Any, Dict, List, Optional

from localchain.contracts.runtime import Capabilities, ReadView, SmartContract
from localchain.contracts.schemas import GetConversationArgs, SendMessageArgs, UpdateContextArgs, parse_args
from localchain.errors import ProcedureError
from localchain.runtime.block import CHAT_CONTEXT_UPDATE, CHAT_MESSAGE
from localchain.runtime.chain import LocalChain
from localchain.storage.record_store import Storage

Json = Dict[str, Any]


def _now_ms() -> int:
    return int(time.time() * 1000)


def thread_key(thread_id: str) -> str:
    return f"thread:{thread_id}"


def user_threads_key(user_id: str) -> str:
    return f"user:{user_id}:threads"


def _new_thread(thread_id: str, user_id: str) -> Json:
    now = _now_ms()
    return {
        "thread_id": thread_id,
        "user_id": user_id,
        "messages": [],
        "context": {},
        "created_ms": now,
        "updated_ms": now,
    }


def _require_owner(thread: Json, user_id: str) -> None:
    if thread.get("user_id") != user_id:
        raise ProcedureError("not_thread_owner", "Thread does not belong to this user")


def merge_context(target: Json, source: Json) -> Json:
    """Deep merge `source` into a copy of `target`; nested dicts merge, anything else replaces."""
    out = dict(target)
    for k, v in source.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = merge_context(out[k], v)
        else:
            out[k] = v
    return out


async def _register_thread(view: ReadView, caps: Capabilities, user_id: str, thread_id: str) -> None:
    rec = await view.get(user_threads_key(user_id)) or {"threads": []}
    if thread_id not in rec["threads"]:
        rec["threads"].append(thread_id)
        await caps.storage.save_data(user_threads_key(user_id), rec)


async def send_message_procedure(view: ReadView, args: Json, caps: Capabilities) -> Json:
    a = parse_args(SendMessageArgs, args)

    thread = await view.get(thread_key(a.thread_id)) or _new_thread(a.thread_id, a.user_id)
    _require_owner(thread, a.user_id)

    now = _now_ms()
    message = {
        "id": f"msg-{now}-{secrets.token_hex(5)}",
        "thread_id": a.thread_id,
        "role": a.role,
        "content": a.content,
        "timestamp": now,
        "metadata": a.metadata,
    }
    thread["messages"].append(message)
    thread["updated_ms"] = now

    await caps.storage.save_data(thread_key(a.thread_id), thread)
    await _register_thread(view, caps, a.user_id, a.thread_id)
    await caps.chain.add_block(
        {
            "type": CHAT_MESSAGE,
            "thread_id": a.thread_id,
            "user_id": a.user_id,
            "message_id": message["id"],
            "role": a.role,
            "timestamp": now,
        }
    )

    return {
        "success": True,
        "message": message,
        "thread_id": a.thread_id,
        "message_count": len(thread["messages"]),
    }


async def update_context_procedure(view: ReadView, args: Json, caps: Capabilities) -> Json:
    a = parse_args(UpdateContextArgs, args)

    thread = await view.get(thread_key(a.thread_id)) or _new_thread(a.thread_id, a.user_id)
    _require_owner(thread, a.user_id)

    now = _now_ms()
    thread["context"] = merge_context(thread.get("context") or {}, a.context)
    thread["updated_ms"] = now

    await caps.storage.save_data(thread_key(a.thread_id), thread)
    await _register_thread(view, caps, a.user_id, a.thread_id)
    await caps.chain.add_block(
        {
            "type": CHAT_CONTEXT_UPDATE,
            "thread_id": a.thread_id,
            "user_id": a.user_id,
            "timestamp": now,
        }
    )

    return {"success": True, "thread_id": a.thread_id, "context": thread["context"]}


async def get_conversation_procedure(view: ReadView, args: Json, caps: Capabilities) -> Json:
    a = parse_args(GetConversationArgs, args)

    thread = await view.get(thread_key(a.thread_id))
    if not isinstance(thread, dict):
        raise ProcedureError("thread_not_found", f"Thread {a.thread_id} not found")
    _require_owner(thread, a.user_id)

    messages: List[Json] = list(thread.get("messages") or [])
    ordered = sorted(messages, key=lambda m: m.get("timestamp", 0))

    seen = set()
    for msg in ordered:
        mid = msg.get("id")
        if mid in seen:
            raise ProcedureError("duplicate_message", f"Duplicate message ID found: {mid}")
        seen.add(mid)
        if not msg.get("timestamp") or not msg.get("role") or not msg.get("content"):
            raise ProcedureError("invalid_message", f"Invalid message format: {mid}")

    if a.limit is not None:
        ordered = ordered[-a.limit:]

    return {
        "thread_id": a.thread_id,
        "user_id": a.user_id,
        "messages": ordered,
        "context": thread.get("context") or {},
        "created_ms": thread.get("created_ms"),
        "updated_ms": thread.get("updated_ms"),
        "total_messages": len(messages),
    }


class ChatAgent:
    def __init__(self, *, storage: Storage, chain: LocalChain) -> None:
        self._storage = storage
        self.send_message_contract = SmartContract(
            "chat-send-message", send_message_procedure, storage=storage, chain=chain
        )
        self.update_context_contract = SmartContract(
            "chat-update-context", update_context_procedure, storage=storage, chain=chain
        )
        self.get_conversation_contract = SmartContract(
            "chat-get-conversation", get_conversation_procedure, storage=storage, chain=chain
        )

    async def send_message(
        self, thread_id: str, user_id: str, role: str, content: str, metadata: Optional[Json] = None
    ) -> Json:
        res = await self.send_message_contract.execute(
            {
                "id": f"send-{uuid.uuid4().hex}",
                "thread_id": thread_id,
                "user_id": user_id,
                "role": role,
                "content": content,
                "metadata": metadata or {},
            }
        )
        return res.unwrap()

    async def update_context(self, thread_id: str, user_id: str, context: Json) -> Json:
        res = await self.update_context_contract.execute(
            {"id": f"context-{uuid.uuid4().hex}", "thread_id": thread_id, "user_id": user_id, "context": context}
        )
        return res.unwrap()

    async def get_conversation(self, thread_id: str, user_id: str, limit: Optional[int] = None) -> Json:
        res = await self.get_conversation_contract.execute(
            {"id": f"get-{uuid.uuid4().hex}", "thread_id": thread_id, "user_id": user_id, "limit": limit}
        )
        return res.unwrap()

    async def create_thread(self, user_id: str, initial_context: Optional[Json] = None) -> Json:
        """Allocate a thread id. The thread record is written on first message or context update."""
        thread_id = f"thread-{_now_ms()}-{secrets.token_hex(5)}"
        if initial_context:
            await self.update_context(thread_id, user_id, initial_context)
        return {"thread_id": thread_id, "user_id": user_id, "created_ms": _now_ms()}

    async def get_user_threads(self, user_id: str) -> List[str]:
        rec = await self._storage.load_data_or(user_threads_key(user_id))
        return list(rec.get("threads", [])) if isinstance(rec, dict) else []

    async def get_thread_metadata(self, thread_id: str, user_id: str) -> Optional[Json]:
        thread = await self._storage.load_data_or(thread_key(thread_id))
        if not isinstance(thread, dict):
            return None
        _require_owner(thread, user_id)
        return {
            "thread_id": thread.get("thread_id"),
            "user_id": thread.get("user_id"),
            "message_count": len(thread.get("messages") or []),
            "created_ms": thread.get("created_ms"),
            "updated_ms": thread.get("updated_ms"),
            "context": thread.get("context") or {},
        }
