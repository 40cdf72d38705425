"""AES-256-GCM envelope for secret values at rest.

Storage format is a JSON object with hex fields::

    {"iv": "<12-byte nonce>", "encryptedData": "<ciphertext>", "authTag": "<16-byte tag>"}

Rows written by the previous storage layout wrapped that JSON string in a
single-element list; ``Envelope.from_storage`` still reads those.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from app.core.errors import DecryptionError


logger = logging.getLogger(__name__)

KEY_SIZE = 32
NONCE_SIZE = 12
TAG_SIZE = 16


@dataclass(frozen=True)
class Envelope:
    nonce: bytes
    ciphertext: bytes
    tag: bytes

    def to_storage(self) -> str:
        return json.dumps(
            {
                "iv": self.nonce.hex(),
                "encryptedData": self.ciphertext.hex(),
                "authTag": self.tag.hex(),
            },
            separators=(",", ":"),
        )

    @classmethod
    def from_storage(cls, raw: str) -> "Envelope":
        try:
            parsed = json.loads(raw)
            if isinstance(parsed, list):
                if len(parsed) != 1 or not isinstance(parsed[0], str):
                    raise ValueError("legacy envelope slot must hold exactly one string")
                parsed = json.loads(parsed[0])
            if not isinstance(parsed, dict):
                raise ValueError("envelope must be a JSON object")
            nonce = bytes.fromhex(parsed["iv"])
            ciphertext = bytes.fromhex(parsed["encryptedData"])
            tag = bytes.fromhex(parsed["authTag"])
        except (ValueError, KeyError, TypeError) as exc:
            raise DecryptionError("malformed envelope") from exc

        if len(nonce) != NONCE_SIZE or len(tag) != TAG_SIZE:
            raise DecryptionError("malformed envelope")
        return cls(nonce=nonce, ciphertext=ciphertext, tag=tag)


class CryptoEnvelope:
    """Encrypts and decrypts single secret values with one process-wide key."""

    def __init__(self, key: bytes) -> None:
        if len(key) != KEY_SIZE:
            raise ValueError(f"encryption key must be {KEY_SIZE} bytes, got {len(key)}")
        self._aesgcm = AESGCM(key)

    def encrypt(self, plaintext: str) -> Envelope:
        nonce = os.urandom(NONCE_SIZE)
        sealed = self._aesgcm.encrypt(nonce, plaintext.encode("utf-8"), None)
        return Envelope(nonce=nonce, ciphertext=sealed[:-TAG_SIZE], tag=sealed[-TAG_SIZE:])

    def decrypt(self, envelope: Envelope) -> str:
        try:
            plaintext = self._aesgcm.decrypt(envelope.nonce, envelope.ciphertext + envelope.tag, None)
        except InvalidTag as exc:
            raise DecryptionError("authentication tag mismatch") from exc
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecryptionError("decrypted value is not valid UTF-8") from exc

    def seal(self, plaintext: str) -> str:
        return self.encrypt(plaintext).to_storage()

    def open(self, stored: str) -> str:
        return self.decrypt(Envelope.from_storage(stored))


def build_crypto_envelope(encryption_key: str, *, app_env: str) -> CryptoEnvelope:
    raw = encryption_key.strip()
    if not raw:
        if app_env != "development":
            raise ValueError("ENCRYPTION_KEY must be set outside development")
        logger.warning(
            "ENCRYPTION_KEY is not set; using an ephemeral key. Stored secrets will be unreadable after restart."
        )
        return CryptoEnvelope(os.urandom(KEY_SIZE))
    try:
        key = bytes.fromhex(raw)
    except ValueError as exc:
        raise ValueError("ENCRYPTION_KEY must be hex encoded") from exc
    return CryptoEnvelope(key)
