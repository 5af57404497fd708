# src/localchain/crypto/provider.py
from __future__ import annotations

import json
from typing import Any, Optional

from localchain.crypto.digest import canon_bytes
from localchain.crypto.envelope import Envelope, decrypt, encrypt
from localchain.crypto.keys import KeyPair
from localchain.errors import DecryptionError, EncryptionError


class CryptoProvider:
    """Digest and envelope operations bound to one key pair.

    Stateless apart from the key material; safe to share across threads.
    """

    def __init__(self, keys: Optional[KeyPair] = None) -> None:
        self._keys = keys

    @property
    def can_encrypt(self) -> bool:
        return self._keys is not None

    @property
    def can_decrypt(self) -> bool:
        return self._keys is not None and self._keys.private_key is not None

    def encrypt(self, obj: Any, *, aad: bytes | None = None) -> Envelope:
        if self._keys is None:
            raise EncryptionError("no key pair configured; cannot encrypt")
        return encrypt(canon_bytes(obj), self._keys.public_key, aad=aad)

    def decrypt(self, envelope: Envelope, *, aad: bytes | None = None) -> Any:
        if self._keys is None or self._keys.private_key is None:
            raise DecryptionError("no private key configured; cannot decrypt")
        raw = decrypt(envelope, self._keys.private_key, aad=aad)
        try:
            return json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise DecryptionError("decrypted payload is not canonical JSON") from e
