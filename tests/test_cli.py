from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Iterator

import pytest

import localchain.env as env_mod
from localchain.cli import _open_chain, main
from localchain.config import load_config
from localchain.crypto.keys import load_keys
from localchain.runtime.chain import LocalChain
from localchain.storage.record_store import Storage


@pytest.fixture
def cli_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[Path]:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(env_mod, "_LOADED", True)
    monkeypatch.delenv("LOCALCHAIN_CONFIG_PATH", raising=False)
    monkeypatch.setenv("LOCALCHAIN_CHAIN_ID", "cli-chain")
    monkeypatch.setenv("LOCALCHAIN_DB_PATH", str(tmp_path / "chain.db"))
    monkeypatch.setenv("LOCALCHAIN_KEYS_DIR", str(tmp_path / "keys"))
    monkeypatch.setenv("LOCALCHAIN_LOG_LEVEL", "ERROR")
    yield tmp_path

    # main() installs a stderr handler bound to the captured stream; drop it.
    lg = logging.getLogger("localchain")
    lg.handlers = []
    lg.propagate = True
    lg.setLevel(logging.NOTSET)
    if hasattr(lg, "_localchain_configured"):
        delattr(lg, "_localchain_configured")


def _seed(root: Path) -> dict:
    async def _run() -> dict:
        chain = LocalChain.open(root / "chain.db", chain_id="cli-chain")
        storage = Storage(chain=chain, keys=load_keys(root / "keys"))
        plain = await storage.save_data("plain", {"a": 1})
        secret = await storage.save_data("secret", {"pin": "0000"}, encrypted=True)
        return {"plain": plain.block_hash, "secret": secret.block_hash}

    return asyncio.run(_run())


def _out(capsys: pytest.CaptureFixture[str]) -> dict:
    return json.loads(capsys.readouterr().out)


def test_verify_tail_block_get(cli_env: Path, capsys: pytest.CaptureFixture[str]) -> None:
    hashes = _seed(cli_env)

    assert main(["verify"]) == 0
    out = _out(capsys)
    assert out["valid"] is True
    assert out["height"] == 2

    assert main(["tail"]) == 0
    assert _out(capsys)["hash"] == hashes["secret"]

    assert main(["block", hashes["plain"]]) == 0
    assert _out(capsys)["data"]["id"] == "plain"

    assert main(["get", "secret"]) == 0
    got = _out(capsys)
    assert got["value"] == {"pin": "0000"}
    assert got["record"]["encrypted"] is True

    assert main(["verify", "--last", "1", "--from", hashes["plain"]]) == 0


def test_failures_exit_1(cli_env: Path, capsys: pytest.CaptureFixture[str]) -> None:
    hashes = _seed(cli_env)

    assert main(["block", "f" * 64]) == 1
    assert main(["get", "missing"]) == 1

    with LocalChain.open(cli_env / "chain.db").db.connection() as con:
        con.execute("UPDATE blocks SET data_json=? WHERE hash=?;", ('{"forged":true}', hashes["plain"]))
    capsys.readouterr()

    assert main(["verify"]) == 1
    assert _out(capsys)["valid"] is False


def test_chain_id_mismatch_exits_1(cli_env: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _seed(cli_env)
    monkeypatch.setenv("LOCALCHAIN_CHAIN_ID", "someone-else")
    assert main(["tail"]) == 1


def test_encrypted_get_without_private_key_exits_1(cli_env: Path) -> None:
    _seed(cli_env)
    (cli_env / "keys" / "private.pem").unlink()
    assert main(["get", "secret"]) == 1


@pytest.mark.parametrize("argv", [["verify"], ["tail"], ["block", "f" * 64], ["get", "plain"]])
def test_missing_database_is_refused(
    cli_env: Path, capsys: pytest.CaptureFixture[str], argv: list[str]
) -> None:
    assert main(argv) == 1
    assert "database not found" in capsys.readouterr().err
    assert not (cli_env / "chain.db").exists()

    assert main(["--db", str(cli_env / "elsewhere"), *argv]) == 1
    assert not (cli_env / "elsewhere").exists()


def test_config_file_mode_sets_sqlite_durability(cli_env: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _seed(cli_env)
    monkeypatch.setenv("LOCALCHAIN_MODE", "prod")
    monkeypatch.delenv("LOCALCHAIN_SQLITE_SYNCHRONOUS", raising=False)
    cfg_file = cli_env / "localchain.yaml"
    cfg_file.write_text(f"chain_id: cli-chain\nmode: dev\ndb_path: {cli_env / 'chain.db'}\n", encoding="utf-8")

    cfg = load_config(config_path=str(cfg_file))
    chain = _open_chain(cfg)
    assert chain.db.mode == "dev"
    with chain.db.connection() as con:
        # NORMAL == 1; prod would be FULL == 2
        assert int(con.execute("PRAGMA synchronous;").fetchone()[0]) == 1

    assert main(["--config", str(cfg_file), "verify"]) == 0
