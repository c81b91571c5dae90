"""AES-256-CBC helpers for secrets and national IDs stored encrypted at rest.

Ciphertext format is ``<iv hex>:<ciphertext hex>`` with PKCS7 padding, which is
what the rest of the platform writes into ``*_encrypted`` columns.
"""

from __future__ import annotations

import base64
import binascii
import os
from collections.abc import Mapping

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from tenant_sync.errors import DecryptionError

_DEV_KEY = b"default-dev-key-change-in-prod32"
_BLOCK_BITS = 128


def load_encryption_key(environ: Mapping[str, str] | None = None) -> bytes:
    env = os.environ if environ is None else environ
    b64_key = str(env.get("CREDENTIALS_ENCRYPTION_KEY_BASE64", "")).strip()
    if b64_key:
        key = base64.b64decode(b64_key)[:32]
        if len(key) != 32:
            raise ValueError("CREDENTIALS_ENCRYPTION_KEY_BASE64 must decode to at least 32 bytes")
        return key
    raw_key = str(env.get("ENCRYPTION_KEY", ""))
    if raw_key:
        return raw_key.ljust(32, "0")[:32].encode("utf-8")
    if str(env.get("SYNC_ENV", "")).strip().lower() == "production":
        raise RuntimeError("CREDENTIALS_ENCRYPTION_KEY_BASE64 or ENCRYPTION_KEY must be set in production")
    return _DEV_KEY


class SecretCipher:
    def __init__(self, key: bytes) -> None:
        if len(key) != 32:
            raise ValueError("AES-256 key must be 32 bytes")
        self._key = key

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "SecretCipher":
        return cls(load_encryption_key(environ))

    def encrypt(self, plaintext: str) -> str:
        iv = os.urandom(16)
        padder = padding.PKCS7(_BLOCK_BITS).padder()
        padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()
        encryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).encryptor()
        ciphertext = encryptor.update(padded) + encryptor.finalize()
        return f"{iv.hex()}:{ciphertext.hex()}"

    def decrypt(self, data: str) -> str:
        parts = str(data or "").split(":")
        if len(parts) != 2:
            raise DecryptionError("invalid encrypted data format")
        try:
            iv = bytes.fromhex(parts[0])
            ciphertext = bytes.fromhex(parts[1])
            decryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).decryptor()
            padded = decryptor.update(ciphertext) + decryptor.finalize()
            unpadder = padding.PKCS7(_BLOCK_BITS).unpadder()
            plain = unpadder.update(padded) + unpadder.finalize()
            return plain.decode("utf-8")
        except (ValueError, binascii.Error, UnicodeDecodeError) as exc:
            raise DecryptionError(f"unable to decrypt value: {type(exc).__name__}") from exc


def looks_plaintext(value: str) -> bool:
    """Legacy rows keep URLs and JWT keys unencrypted."""
    return value.startswith("http") or value.startswith("ey")

