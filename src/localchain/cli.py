# src/localchain/cli.py
from __future__ import annotations

"""Operator CLI for a local chain database.

    localchain verify [--last N] [--from HASH]
    localchain block HASH
    localchain tail
    localchain get ID

Output is JSON on stdout. Exit status is 0 on success, 1 on failure
(missing database, invalid chain, unknown hash or id, undecryptable record).
"""

import argparse
import asyncio
import dataclasses
import json
import sys
from pathlib import Path
from typing import Any, Optional

from localchain.config import LocalChainConfig, load_config
from localchain.crypto.keys import KeyPair, read_keys
from localchain.env import load_dotenv_if_present
from localchain.errors import LocalChainError, NotFoundError
from localchain.runtime.chain import ChainError, LocalChain
from localchain.runtime.structured_logging import configure_structured_logging
from localchain.storage.record_store import Storage


def _print(obj: Any) -> None:
    print(json.dumps(obj, sort_keys=True, indent=2, ensure_ascii=False))


def _open_chain(cfg: LocalChainConfig) -> LocalChain:
    # Subcommands only read: never create a chain as a side effect.
    if not LocalChain.resolve_path(cfg.db_path).is_file():
        raise NotFoundError("database", cfg.db_path)
    return LocalChain.open(cfg.db_path, chain_id=cfg.chain_id, mode=cfg.mode)


def _maybe_keys(cfg: LocalChainConfig) -> Optional[KeyPair]:
    # The CLI only reads; never generate keys as a side effect.
    try:
        return read_keys(cfg.keys_dir)
    except FileNotFoundError:
        return None


async def _cmd_verify(cfg: LocalChainConfig, args: argparse.Namespace) -> int:
    chain = _open_chain(cfg)
    ok = await chain.is_valid(last=args.last, from_hash=args.from_hash)
    _print({"valid": ok, "tail_hash": await chain.tail_hash(), "height": await chain.height()})
    return 0 if ok else 1


async def _cmd_block(cfg: LocalChainConfig, args: argparse.Namespace) -> int:
    chain = _open_chain(cfg)
    block = await chain.read_block(args.hash)
    _print(block.dict())
    return 0


async def _cmd_tail(cfg: LocalChainConfig, args: argparse.Namespace) -> int:
    chain = _open_chain(cfg)
    block = await chain.read_block(await chain.tail_hash())
    _print(block.dict())
    return 0


async def _cmd_get(cfg: LocalChainConfig, args: argparse.Namespace) -> int:
    chain = _open_chain(cfg)
    storage = Storage(chain=chain, keys=_maybe_keys(cfg))
    rec = await storage.record(args.id)
    _print({"record": rec.metadata(), "value": await storage.load_data(args.id)})
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="localchain", description="Inspect and verify a local chain database")
    p.add_argument("--config", default=None, help="JSON or YAML config file (default: LOCALCHAIN_CONFIG_PATH)")
    p.add_argument("--db", default=None, help="override the configured db_path")
    sub = p.add_subparsers(dest="command", required=True)

    v = sub.add_parser("verify", help="recompute hashes and links back from a block")
    v.add_argument("--last", type=int, default=None, help="check at most N blocks")
    v.add_argument("--from", dest="from_hash", default=None, help="start at this block (default: tail)")
    v.set_defaults(func=_cmd_verify)

    b = sub.add_parser("block", help="print one block by hash")
    b.add_argument("hash")
    b.set_defaults(func=_cmd_block)

    t = sub.add_parser("tail", help="print the newest block")
    t.set_defaults(func=_cmd_tail)

    g = sub.add_parser("get", help="print one record by id")
    g.add_argument("id")
    g.set_defaults(func=_cmd_get)

    return p


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    load_dotenv_if_present()
    try:
        cfg = load_config(config_path=args.config)
    except (OSError, ValueError) as e:
        print(f"config error: {e}", file=sys.stderr)
        return 1
    if args.db:
        cfg = dataclasses.replace(cfg, db_path=str(Path(args.db)))
    configure_structured_logging(cfg.log_level)

    try:
        return asyncio.run(args.func(cfg, args))
    except NotFoundError as e:
        print(str(e), file=sys.stderr)
        return 1
    except (ChainError, LocalChainError, ValueError) as e:
        print(f"{type(e).__name__}: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
