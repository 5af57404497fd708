# src/localchain/config.py
from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

Json = Dict[str, Any]


def _as_str(v: Any, default: str) -> str:
    if v is None:
        return str(default)
    s = str(v)
    return s if s.strip() else str(default)


@dataclass(frozen=True)
class LocalChainConfig:
    chain_id: str
    mode: str  # "dev" | "testnet" | "prod"

    # Single SQLite DB file for blocks + records.
    db_path: str
    keys_dir: str

    log_level: str


_ALLOWED_MODES = {"dev", "testnet", "prod"}
_ALLOWED_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def validate_config(cfg: LocalChainConfig) -> None:
    """Fail-fast validation for operator config."""

    if not isinstance(cfg.chain_id, str) or not cfg.chain_id.strip():
        raise ValueError("chain_id must be a non-empty string")

    mode = str(cfg.mode or "").strip().lower()
    if mode not in _ALLOWED_MODES:
        raise ValueError(f"mode must be one of {sorted(_ALLOWED_MODES)}; got: {cfg.mode!r}")

    for name, p in (("db_path", cfg.db_path), ("keys_dir", cfg.keys_dir)):
        if not isinstance(p, str) or not p.strip():
            raise ValueError(f"{name} must be a non-empty string")

    if str(cfg.log_level or "").strip().upper() not in _ALLOWED_LOG_LEVELS:
        raise ValueError(f"log_level must be one of {sorted(_ALLOWED_LOG_LEVELS)}; got: {cfg.log_level!r}")


def default_config() -> LocalChainConfig:
    return LocalChainConfig(
        chain_id="localchain",
        mode="prod",
        db_path="./localchain/chain.db",
        keys_dir="./keys",
        log_level="INFO",
    )


def _from_mapping(raw: Json, base: LocalChainConfig) -> LocalChainConfig:
    return LocalChainConfig(
        chain_id=_as_str(raw.get("chain_id"), base.chain_id),
        mode=_as_str(raw.get("mode"), base.mode).strip().lower(),
        db_path=_as_str(raw.get("db_path"), base.db_path),
        keys_dir=_as_str(raw.get("keys_dir"), base.keys_dir),
        log_level=_as_str(raw.get("log_level"), base.log_level).strip().upper(),
    )


def read_config_file(path: str) -> LocalChainConfig:
    """Read a JSON or YAML (.yaml/.yml) config file over the defaults."""

    p = Path(path)
    text = p.read_text(encoding="utf-8")
    if p.suffix.lower() in {".yaml", ".yml"}:
        try:
            raw = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise ValueError(f"invalid YAML in {p}: {e}") from e
    else:
        raw = json.loads(text)
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ValueError("config must be a mapping")

    cfg = _from_mapping(raw, default_config())
    validate_config(cfg)
    return cfg


def config_from_env(base: Optional[LocalChainConfig] = None) -> LocalChainConfig:
    b = base or default_config()
    raw: Json = {
        "chain_id": os.environ.get("LOCALCHAIN_CHAIN_ID"),
        "mode": os.environ.get("LOCALCHAIN_MODE"),
        "db_path": os.environ.get("LOCALCHAIN_DB_PATH"),
        "keys_dir": os.environ.get("LOCALCHAIN_KEYS_DIR"),
        "log_level": os.environ.get("LOCALCHAIN_LOG_LEVEL"),
    }
    return _from_mapping(raw, b)


def load_config(*, config_path: Optional[str] = None) -> LocalChainConfig:
    """Resolve config: explicit file, else LOCALCHAIN_CONFIG_PATH, else env over defaults."""

    p = config_path or os.environ.get("LOCALCHAIN_CONFIG_PATH")
    if p:
        return read_config_file(p)

    cfg = config_from_env()
    validate_config(cfg)
    return cfg
