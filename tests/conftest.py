from __future__ import annotations

import sys
from pathlib import Path

import pytest

# Ensure local "src/" takes precedence over any globally-installed "localchain" package.
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

src_str = str(SRC)
if src_str not in sys.path:
    sys.path.insert(0, src_str)

from localchain.crypto.keys import KeyPair, generate_key_pair  # noqa: E402
from localchain.runtime import metrics  # noqa: E402
from localchain.runtime.chain import LocalChain  # noqa: E402
from localchain.storage.record_store import Storage  # noqa: E402


@pytest.fixture(scope="session")
def key_pair() -> KeyPair:
    # RSA generation is slow; one pair serves the whole session.
    return generate_key_pair()


@pytest.fixture(autouse=True)
def _reset_metrics() -> None:
    metrics.reset()


@pytest.fixture
def chain(tmp_path: Path) -> LocalChain:
    return LocalChain.open(tmp_path / "chain.db", chain_id="test-chain")


@pytest.fixture
def storage(chain: LocalChain, key_pair: KeyPair) -> Storage:
    return Storage(chain=chain, keys=key_pair)
