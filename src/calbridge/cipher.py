"""Symmetric encryption for OAuth token material at rest.

``TokenCipher`` is the capability the token vault depends on; the shipped
implementation is AES-256-GCM from the ``cryptography`` package.

Ciphertext format::

    v1:<urlsafe-base64(nonce || ciphertext || tag)>

The key is read from configuration (``CALBRIDGE_ENCRYPTION_KEY``) as 64 hex
characters or urlsafe base64 of 32 bytes.  The key is never logged and never
appears in ``repr()``.
"""

from __future__ import annotations

import base64
import binascii
import logging
import os
from typing import Protocol, runtime_checkable

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

logger = logging.getLogger(__name__)

_VERSION_PREFIX = "v1:"
_NONCE_BYTES = 12
_KEY_BYTES = 32
# Associated data bound into every token ciphertext.
_ASSOCIATED_DATA = b"calbridge-token-v1"


class TokenCipherError(Exception):
    """Raised when a key is malformed or a ciphertext cannot be decrypted.

    The message never includes key or plaintext material.
    """


@runtime_checkable
class TokenCipher(Protocol):
    """Encrypt/decrypt capability injected into the token vault."""

    def encrypt(self, plaintext: str) -> str: ...

    def decrypt(self, ciphertext: str) -> str: ...


def parse_key(raw_key: str) -> bytes:
    """Decode a 32-byte key from hex or urlsafe base64.

    Raises
    ------
    TokenCipherError
        If *raw_key* does not decode to exactly 32 bytes.
    """
    candidate = raw_key.strip()
    if not candidate:
        raise TokenCipherError("encryption key must be a non-empty string")

    if len(candidate) == _KEY_BYTES * 2:
        try:
            return bytes.fromhex(candidate)
        except ValueError:
            pass

    try:
        padded = candidate + "=" * (-len(candidate) % 4)
        decoded = base64.urlsafe_b64decode(padded)
    except (binascii.Error, ValueError) as exc:
        raise TokenCipherError("encryption key is neither hex nor base64") from exc

    if len(decoded) != _KEY_BYTES:
        raise TokenCipherError(f"encryption key must decode to {_KEY_BYTES} bytes")
    return decoded


def generate_key() -> str:
    """Return a fresh random key, hex encoded."""
    return os.urandom(_KEY_BYTES).hex()


class AesGcmTokenCipher:
    """AES-256-GCM ``TokenCipher`` with a random 96-bit nonce per message."""

    def __init__(self, key: bytes | str) -> None:
        key_bytes = parse_key(key) if isinstance(key, str) else key
        if len(key_bytes) != _KEY_BYTES:
            raise TokenCipherError(f"encryption key must be {_KEY_BYTES} bytes")
        self._aead = AESGCM(key_bytes)

    def encrypt(self, plaintext: str) -> str:
        nonce = os.urandom(_NONCE_BYTES)
        sealed = self._aead.encrypt(nonce, plaintext.encode("utf-8"), _ASSOCIATED_DATA)
        encoded = base64.urlsafe_b64encode(nonce + sealed).decode("ascii")
        return f"{_VERSION_PREFIX}{encoded}"

    def decrypt(self, ciphertext: str) -> str:
        if not ciphertext.startswith(_VERSION_PREFIX):
            raise TokenCipherError("unsupported ciphertext format")
        try:
            raw = base64.urlsafe_b64decode(ciphertext[len(_VERSION_PREFIX) :])
        except (binascii.Error, ValueError) as exc:
            raise TokenCipherError("ciphertext is not valid base64") from exc
        if len(raw) <= _NONCE_BYTES:
            raise TokenCipherError("ciphertext is truncated")

        nonce, sealed = raw[:_NONCE_BYTES], raw[_NONCE_BYTES:]
        try:
            plaintext = self._aead.decrypt(nonce, sealed, _ASSOCIATED_DATA)
        except InvalidTag as exc:
            logger.warning("Token ciphertext failed authentication (wrong key or tampered)")
            raise TokenCipherError("ciphertext failed authentication") from exc
        return plaintext.decode("utf-8")

    def __repr__(self) -> str:
        return "AesGcmTokenCipher(key=<REDACTED>)"
