"""Cryptographic utilities for per-place field encryption.

Values are stored as ``"enc:" + base64(nonce || ciphertext || tag)`` where the
nonce is 12 bytes and the 16-byte GCM tag is appended by AESGCM. The prefix is
the only marker distinguishing ciphertext from legacy plaintext.
"""

from __future__ import annotations

import base64
import binascii
import os
from dataclasses import dataclass
from typing import Optional, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from core.logging_utils import get_crypto_logger
from inventory.exceptions import CryptoError

logger = get_crypto_logger()

ENC_PREFIX = "enc:"
KEY_SIZE = 32
NONCE_SIZE = 12
TAG_SIZE = 16


@dataclass(frozen=True)
class Decrypted:
    """Successful decryption. ``legacy`` is set when the input was never encrypted."""

    value: str
    legacy: bool = False

    ok = True


@dataclass(frozen=True)
class Failed:
    """Decryption failure carrying the untouched input and the underlying error."""

    original: str
    cause: Exception

    ok = False

    @property
    def value(self) -> str:
        return self.original


DecryptResult = Union[Decrypted, Failed]


def generate_key() -> bytes:
    """Generate a fresh 256-bit AES key."""

    return AESGCM.generate_key(bit_length=KEY_SIZE * 8)


def generate_nonce() -> bytes:
    """Generate a cryptographically secure 12-byte nonce for AES-GCM."""

    return os.urandom(NONCE_SIZE)


def encode_key(key: bytes) -> str:
    """Export raw key bytes as base64 for storage."""

    _check_key(key)
    return base64.b64encode(key).decode("ascii")


def decode_key(key_b64: str) -> bytes:
    """Import a stored base64 key, validating its size."""

    try:
        key = base64.b64decode(key_b64, validate=True)
    except (binascii.Error, ValueError, TypeError) as exc:
        raise CryptoError("Stored key is not valid base64", recoverable=False) from exc
    _check_key(key)
    return key


def is_encrypted(value) -> bool:
    return isinstance(value, str) and value.startswith(ENC_PREFIX)


def encrypt_value(plaintext: str, key: bytes) -> str:
    """Encrypt a string with AES-256-GCM under a fresh nonce."""

    _check_key(key)
    nonce = generate_nonce()
    ciphertext = AESGCM(key).encrypt(nonce, plaintext.encode("utf-8"), None)
    return ENC_PREFIX + base64.b64encode(nonce + ciphertext).decode("ascii")


def try_decrypt_value(value: str, key: bytes) -> DecryptResult:
    """Decrypt a prefixed value without raising.

    Values without the prefix are legacy plaintext and come back as
    ``Decrypted(value, legacy=True)``. Every failure is reported as ``Failed``.
    """

    if not is_encrypted(value):
        return Decrypted(value, legacy=True)

    try:
        _check_key(key)
        payload = base64.b64decode(value[len(ENC_PREFIX):], validate=True)
        if len(payload) < NONCE_SIZE + TAG_SIZE:
            raise CryptoError("Encrypted payload is truncated")
        nonce, ciphertext = payload[:NONCE_SIZE], payload[NONCE_SIZE:]
        plaintext = AESGCM(key).decrypt(nonce, ciphertext, None)
        return Decrypted(plaintext.decode("utf-8"))
    except (InvalidTag, CryptoError, ValueError, TypeError) as exc:
        # binascii.Error and UnicodeDecodeError are both ValueError subclasses
        return Failed(value, exc)


def decrypt_value(value: str, key: bytes, *, place_id: Optional[str] = None) -> str:
    """Fail-open decryption: the plaintext, or ``value`` unchanged on failure."""

    result = try_decrypt_value(value, key)
    if not result.ok:
        logger.encryption_event(
            "failed to decrypt value, returning it as stored",
            place_id,
            success=False,
            extra_data={"error": type(result.cause).__name__},
        )
    return result.value


def _check_key(key: bytes) -> None:
    if not isinstance(key, (bytes, bytearray)) or len(key) != KEY_SIZE:
        raise CryptoError("Key must be 32 bytes for AES-256")
