"""Authenticated encryption of commit hashes.

The ciphertext layout is ``hex(salt || iv || tag || encrypted)`` with a 64-byte
random salt, a 16-byte IV and a 16-byte GCM tag. The AES-256 key is derived per
message from the process secret with PBKDF2-HMAC-SHA512. This is the layout the
``cryptr`` npm package produces, so commitments issued by earlier deployments of
the hash endpoint decrypt unchanged.
"""

from __future__ import annotations

import binascii
import os
from typing import Final

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC


SALT_LENGTH: Final[int] = 64
IV_LENGTH: Final[int] = 16
TAG_LENGTH: Final[int] = 16
KEY_LENGTH: Final[int] = 32
DEFAULT_PBKDF2_ITERATIONS: Final[int] = 100_000
_HEADER_LENGTH: Final[int] = SALT_LENGTH + IV_LENGTH + TAG_LENGTH


class DecryptionError(ValueError):
    """Ciphertext is malformed or was not produced under this codec's key."""


class CommitHashCodec:
    def __init__(self, secret: str, *, iterations: int = DEFAULT_PBKDF2_ITERATIONS) -> None:
        if not secret:
            raise ValueError("CommitHashCodec secret must be a non-empty string")
        if iterations < 1:
            raise ValueError("iterations must be >= 1")
        self._secret = secret.encode("utf-8")
        self._iterations = iterations

    def __repr__(self) -> str:
        return f"CommitHashCodec(iterations={self._iterations})"

    def encrypt(self, plain_sha: str) -> str:
        salt = os.urandom(SALT_LENGTH)
        iv = os.urandom(IV_LENGTH)
        sealed = AESGCM(self._derive_key(salt)).encrypt(iv, plain_sha.encode("utf-8"), None)
        encrypted, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return (salt + iv + tag + encrypted).hex()

    def decrypt(self, ciphertext: str) -> str:
        try:
            raw = bytes.fromhex(ciphertext.strip())
        except (ValueError, AttributeError, binascii.Error) as exc:
            raise DecryptionError("Encrypted commit hash is not valid hex") from exc
        if len(raw) <= _HEADER_LENGTH:
            raise DecryptionError(
                f"Encrypted commit hash is too short: {len(raw)} bytes, "
                f"expected more than {_HEADER_LENGTH}"
            )

        salt = raw[:SALT_LENGTH]
        iv = raw[SALT_LENGTH : SALT_LENGTH + IV_LENGTH]
        tag = raw[SALT_LENGTH + IV_LENGTH : _HEADER_LENGTH]
        encrypted = raw[_HEADER_LENGTH:]
        try:
            plain = AESGCM(self._derive_key(salt)).decrypt(iv, encrypted + tag, None)
        except InvalidTag as exc:
            raise DecryptionError(
                "Encrypted commit hash failed authentication (wrong key or tampered ciphertext)"
            ) from exc
        try:
            return plain.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecryptionError("Decrypted commit hash is not valid UTF-8") from exc

    def _derive_key(self, salt: bytes) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA512(),
            length=KEY_LENGTH,
            salt=salt,
            iterations=self._iterations,
        )
        return kdf.derive(self._secret)
