# src/localchain/crypto/envelope.py
from __future__ import annotations

"""Envelope encryption for record payloads.

Bulk bytes are sealed with a fresh AES-256-GCM content key. Only that 32-byte
key is encrypted with the holder's RSA public key (OAEP, SHA-256). RSA never
touches the payload itself, so payload size is unbounded.

Wire shape (all fields base64, see Envelope.to_json):

    {"alg": "RSA-OAEP-256+A256GCM", "ciphertext": ..., "wrapped_key": ..., "nonce": ...}
"""

import base64
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from localchain.errors import DecryptionError, EncryptionError

Json = Dict[str, Any]

ALG = "RSA-OAEP-256+A256GCM"

_CONTENT_KEY_BITS = 256
_NONCE_BYTES = 12


def _oaep() -> padding.OAEP:
    return padding.OAEP(mgf=padding.MGF1(algorithm=hashes.SHA256()), algorithm=hashes.SHA256(), label=None)


def _b64e(b: bytes) -> str:
    return base64.b64encode(b).decode("ascii")


def _b64d(s: str, field: str) -> bytes:
    try:
        return base64.b64decode(str(s).encode("ascii"), validate=True)
    except (ValueError, UnicodeEncodeError) as e:
        raise DecryptionError(f"malformed envelope field: {field}") from e


@dataclass(frozen=True)
class Envelope:
    ciphertext: bytes
    wrapped_key: bytes
    nonce: bytes
    alg: str = ALG

    def to_json(self) -> Json:
        return {
            "alg": self.alg,
            "ciphertext": _b64e(self.ciphertext),
            "wrapped_key": _b64e(self.wrapped_key),
            "nonce": _b64e(self.nonce),
        }

    @classmethod
    def from_json(cls, obj: Json) -> "Envelope":
        if not isinstance(obj, dict):
            raise DecryptionError("envelope must be an object")
        alg = str(obj.get("alg") or ALG)
        if alg != ALG:
            raise DecryptionError(f"unsupported envelope alg: {alg!r}")
        return cls(
            ciphertext=_b64d(obj.get("ciphertext", ""), "ciphertext"),
            wrapped_key=_b64d(obj.get("wrapped_key", ""), "wrapped_key"),
            nonce=_b64d(obj.get("nonce", ""), "nonce"),
            alg=alg,
        )


def encrypt(plaintext: bytes, public_key: Optional[rsa.RSAPublicKey], *, aad: bytes | None = None) -> Envelope:
    """Seal `plaintext` for the holder of `public_key`.

    `aad` is authenticated but not encrypted; Storage binds the record id
    there so a ciphertext cannot be replayed under another key.
    """
    if public_key is None:
        raise EncryptionError("encryption requires a public key")
    if not isinstance(plaintext, (bytes, bytearray)):
        raise EncryptionError("plaintext must be bytes")

    content_key = AESGCM.generate_key(bit_length=_CONTENT_KEY_BITS)
    nonce = os.urandom(_NONCE_BYTES)
    try:
        ciphertext = AESGCM(content_key).encrypt(nonce, bytes(plaintext), aad)
        wrapped = public_key.encrypt(content_key, _oaep())
    except (TypeError, ValueError) as e:
        raise EncryptionError(f"envelope encryption failed: {e}") from e

    return Envelope(ciphertext=ciphertext, wrapped_key=wrapped, nonce=nonce)


def decrypt(envelope: Envelope, private_key: Optional[rsa.RSAPrivateKey], *, aad: bytes | None = None) -> bytes:
    """Open an envelope. Raises DecryptionError on any key or data mismatch."""

    if private_key is None:
        raise DecryptionError("decryption requires a private key")

    try:
        content_key = private_key.decrypt(envelope.wrapped_key, _oaep())
    except ValueError as e:
        # OAEP padding failure: wrong private key or corrupted wrapped key.
        raise DecryptionError("content key unwrap failed") from e

    if len(content_key) * 8 != _CONTENT_KEY_BITS:
        raise DecryptionError("unexpected content key length")

    try:
        return AESGCM(content_key).decrypt(envelope.nonce, envelope.ciphertext, aad)
    except InvalidTag as e:
        raise DecryptionError("ciphertext authentication failed") from e
    except ValueError as e:
        raise DecryptionError(f"malformed ciphertext: {e}") from e
