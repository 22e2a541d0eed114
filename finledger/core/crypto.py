"""
Envelope encryption for monetary values.

Blob layout (base64 of the concatenation):

    salt (64 bytes) | iv (16 bytes) | auth tag (16 bytes) | ciphertext

A fresh salt and IV are drawn for every call. The AES-256-GCM key is derived
from the master key with PBKDF2-HMAC-SHA512 seeded with that salt, so every
blob carries everything needed to decrypt it except the master key.
"""

import base64
import binascii
import os
import re
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from finledger.core.exceptions import DecryptionError, InvalidInput

SALT_LENGTH = 64
IV_LENGTH = 16
TAG_LENGTH = 16
KEY_LENGTH = 32
HEADER_LENGTH = SALT_LENGTH + IV_LENGTH + TAG_LENGTH
DEFAULT_ITERATIONS = 100_000

# base64 of a header plus a single ciphertext byte
MIN_BLOB_TEXT_LENGTH = 4 * ((HEADER_LENGTH + 1 + 2) // 3)

_BASE64_RE = re.compile(r"^[A-Za-z0-9+/]+={0,2}$")


def decode_master_key(encoded: str) -> bytes:
    """Decode a base64 master key and check it is 32 bytes long."""
    if not encoded:
        raise InvalidInput("Encryption key is not configured")
    try:
        key = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise InvalidInput("Encryption key is not valid base64") from exc
    if len(key) != KEY_LENGTH:
        raise InvalidInput(f"Encryption key must be {KEY_LENGTH} bytes for AES-256")
    return key


class EnvelopeCipher:
    """AES-256-GCM envelope cipher over a fixed master key.

    ``fallback_keys`` are only used for decryption, which lets stored blobs
    written under a retired key stay readable while new writes use the
    current one.
    """

    def __init__(
        self,
        master_key: bytes,
        iterations: int = DEFAULT_ITERATIONS,
        fallback_keys: Sequence[bytes] = (),
    ):
        if len(master_key) != KEY_LENGTH:
            raise InvalidInput(f"Encryption key must be {KEY_LENGTH} bytes for AES-256")
        for key in fallback_keys:
            if len(key) != KEY_LENGTH:
                raise InvalidInput(f"Fallback key must be {KEY_LENGTH} bytes for AES-256")
        if iterations < 1:
            raise InvalidInput("Iteration count must be positive")
        self._key = master_key
        self._fallback_keys: List[bytes] = list(fallback_keys)
        self.iterations = iterations

    @classmethod
    def from_settings(cls, settings) -> "EnvelopeCipher":
        return cls(
            decode_master_key(settings.ENCRYPTION_KEY),
            iterations=settings.KDF_ITERATIONS,
            fallback_keys=[decode_master_key(k) for k in settings.ENCRYPTION_PREVIOUS_KEYS],
        )

    def _derive(self, master_key: bytes, salt: bytes) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA512(),
            length=KEY_LENGTH,
            salt=salt,
            iterations=self.iterations,
        )
        return kdf.derive(master_key)

    def encrypt(self, plaintext: str) -> str:
        if not isinstance(plaintext, str) or plaintext == "":
            raise InvalidInput("Cannot encrypt an empty value")

        salt = os.urandom(SALT_LENGTH)
        iv = os.urandom(IV_LENGTH)
        key = self._derive(self._key, salt)

        # AESGCM appends the tag to the ciphertext
        sealed = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]

        return base64.b64encode(salt + iv + tag + ciphertext).decode("ascii")

    def decrypt(self, blob: str) -> str:
        if not isinstance(blob, str) or not blob:
            raise DecryptionError("Encrypted value is empty")
        try:
            raw = base64.b64decode(blob, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise DecryptionError("Encrypted value is not valid base64") from exc

        if len(raw) <= HEADER_LENGTH:
            raise DecryptionError("Encrypted value is too short")

        salt = raw[:SALT_LENGTH]
        iv = raw[SALT_LENGTH:SALT_LENGTH + IV_LENGTH]
        tag = raw[SALT_LENGTH + IV_LENGTH:HEADER_LENGTH]
        ciphertext = raw[HEADER_LENGTH:]

        for master_key in self._keys():
            key = self._derive(master_key, salt)
            try:
                plaintext = AESGCM(key).decrypt(iv, ciphertext + tag, None)
            except InvalidTag:
                continue
            try:
                return plaintext.decode("utf-8")
            except UnicodeDecodeError as exc:
                raise DecryptionError("Decrypted value is not valid UTF-8") from exc

        raise DecryptionError("Authentication tag mismatch (tampered data or wrong key)")

    def _keys(self) -> Iterable[bytes]:
        yield self._key
        yield from self._fallback_keys


# ===== CLASSIFICATION =====

@dataclass(frozen=True)
class Plaintext:
    """A stored value that has not been encrypted (legacy data)."""
    value: str


@dataclass(frozen=True)
class Encrypted:
    """A stored envelope blob."""
    blob: str


StoredValue = Union[Plaintext, Encrypted]


def looks_encrypted(value) -> bool:
    """
    Structural guess whether ``value`` is an envelope blob.

    Only a heuristic: a long enough base64 string passes even if it was never
    produced by the cipher. Used for documents written before the codec
    started tagging its fields, and by the migration.
    """
    if not isinstance(value, str):
        return False
    if len(value) < MIN_BLOB_TEXT_LENGTH or len(value) % 4 != 0:
        return False
    return _BASE64_RE.match(value) is not None


def classify(value, tagged: Optional[bool] = None) -> StoredValue:
    """
    Wrap a stored value in its variant.

    ``tagged`` is the explicit answer recorded on the document; when it is
    None (untagged legacy document) the structural heuristic decides.
    """
    if tagged is None:
        tagged = looks_encrypted(value)
    if tagged:
        return Encrypted(str(value))
    return Plaintext(str(value))
