# src/localchain/crypto/keys.py
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from localchain.crypto.digest import sha256_hex
from localchain.runtime.structured_logging import log_event

RSA_KEY_BITS = 2048
PUBLIC_KEY_FILE = "public.pem"
PRIVATE_KEY_FILE = "private.pem"

_log = logging.getLogger("localchain.keys")


@dataclass(frozen=True)
class KeyPair:
    """RSA credential used only to wrap envelope content keys."""

    public_key: rsa.RSAPublicKey
    private_key: Optional[rsa.RSAPrivateKey] = None

    def public_pem(self) -> bytes:
        return self.public_key.public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )

    def private_pem(self) -> bytes:
        if self.private_key is None:
            raise ValueError("key pair has no private key")
        return self.private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )

    def fingerprint(self) -> str:
        der = self.public_key.public_bytes(
            encoding=serialization.Encoding.DER,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        return sha256_hex(der)[:16]


def generate_key_pair(bits: int = RSA_KEY_BITS) -> KeyPair:
    if int(bits) < RSA_KEY_BITS:
        raise ValueError(f"RSA keys must be at least {RSA_KEY_BITS} bits")
    priv = rsa.generate_private_key(public_exponent=65537, key_size=int(bits))
    return KeyPair(public_key=priv.public_key(), private_key=priv)


def _write_private(path: Path, data: bytes) -> None:
    # Create with 0600 from the start; never widen permissions after write.
    fd = os.open(str(path), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as f:
        f.write(data)


def save_keys(keys: KeyPair, keys_dir: str | Path) -> None:
    d = Path(keys_dir).expanduser()
    d.mkdir(parents=True, exist_ok=True)
    (d / PUBLIC_KEY_FILE).write_bytes(keys.public_pem())
    if keys.private_key is not None:
        _write_private(d / PRIVATE_KEY_FILE, keys.private_pem())


def read_keys(keys_dir: str | Path) -> KeyPair:
    """Read a persisted pair. The private half is optional (encrypt-only holders)."""

    d = Path(keys_dir).expanduser()
    pub_path = d / PUBLIC_KEY_FILE
    priv_path = d / PRIVATE_KEY_FILE

    priv: Optional[rsa.RSAPrivateKey] = None
    if priv_path.is_file():
        loaded = serialization.load_pem_private_key(priv_path.read_bytes(), password=None)
        if not isinstance(loaded, rsa.RSAPrivateKey):
            raise ValueError(f"{priv_path} is not an RSA private key")
        priv = loaded

    if pub_path.is_file():
        pub = serialization.load_pem_public_key(pub_path.read_bytes())
        if not isinstance(pub, rsa.RSAPublicKey):
            raise ValueError(f"{pub_path} is not an RSA public key")
    elif priv is not None:
        pub = priv.public_key()
    else:
        raise FileNotFoundError(f"no key material under {d}")

    if priv is not None and priv.public_key().public_numbers() != pub.public_numbers():
        raise ValueError(f"key pair mismatch under {d}: public key does not belong to private key")

    return KeyPair(public_key=pub, private_key=priv)


def load_keys(keys_dir: str | Path) -> KeyPair:
    """Load the pair under `keys_dir`, generating and persisting one if absent."""

    d = Path(keys_dir).expanduser()
    if (d / PUBLIC_KEY_FILE).is_file() or (d / PRIVATE_KEY_FILE).is_file():
        return read_keys(d)

    keys = generate_key_pair()
    save_keys(keys, d)
    log_event(_log, "keys_generated", keys_dir=str(d), fingerprint=keys.fingerprint())
    return keys
