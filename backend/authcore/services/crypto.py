"""
AES-256-GCM encryption of refresh tokens at rest.

The key for each message is derived with PBKDF2-HMAC-SHA256 from the subject's binding
info (email + id) concatenated with the process master key, salted with a fresh 16-byte
salt. Ciphertext, IV, salt and tag are stored hex-encoded; all four plus the master key
and the same binding info are required to decrypt.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

logger = logging.getLogger(__name__)

KEY_LENGTH = 32
SALT_LENGTH = 16
IV_LENGTH = 12
TAG_LENGTH = 16
DEFAULT_ITERATIONS = 100_000


class DecryptionError(Exception):
    """Ciphertext could not be authenticated. Carries no detail about the cause."""

    def __init__(self) -> None:
        super().__init__("Decryption failed. Invalid or corrupted data.")


@dataclass(frozen=True)
class EncryptedPayload:
    ciphertext: str
    iv: str
    salt: str
    auth_tag: str


def binding_info_for(email: str, user_id: int | str) -> str:
    """Identity string mixed into key derivation so ciphertext only opens for its owner."""
    return f"{email}{user_id}"


class EncryptionEngine:
    def __init__(self, master_key: str, iterations: int = DEFAULT_ITERATIONS) -> None:
        if not master_key:
            raise ValueError("master_key must be set")
        if iterations < DEFAULT_ITERATIONS:
            raise ValueError(f"iterations must be at least {DEFAULT_ITERATIONS}")
        self._master_key = master_key
        self._iterations = iterations

    def _derive_key(self, binding_info: str, salt: bytes) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_LENGTH,
            salt=salt,
            iterations=self._iterations,
        )
        return kdf.derive((binding_info + self._master_key).encode("utf-8"))

    def encrypt(self, plaintext: str, binding_info: str) -> EncryptedPayload:
        salt = os.urandom(SALT_LENGTH)
        iv = os.urandom(IV_LENGTH)
        key = self._derive_key(binding_info, salt)
        sealed = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)
        # AESGCM appends the tag to the ciphertext
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return EncryptedPayload(
            ciphertext=ciphertext.hex(),
            iv=iv.hex(),
            salt=salt.hex(),
            auth_tag=tag.hex(),
        )

    def decrypt(self, ciphertext: str, iv: str, salt: str, auth_tag: str, binding_info: str) -> str:
        try:
            iv_bytes = bytes.fromhex(iv)
            salt_bytes = bytes.fromhex(salt)
            tag_bytes = bytes.fromhex(auth_tag)
            ct_bytes = bytes.fromhex(ciphertext)
            if len(iv_bytes) != IV_LENGTH or len(tag_bytes) != TAG_LENGTH:
                raise ValueError("bad iv or tag length")
            key = self._derive_key(binding_info, salt_bytes)
            plaintext = AESGCM(key).decrypt(iv_bytes, ct_bytes + tag_bytes, None)
            return plaintext.decode("utf-8")
        except (InvalidTag, ValueError) as e:
            logger.debug("Refresh token decryption failed: %s", type(e).__name__)
            raise DecryptionError() from None

    async def encrypt_async(self, plaintext: str, binding_info: str) -> EncryptedPayload:
        """encrypt() in a worker thread; PBKDF2 blocks for the whole derivation."""
        return await asyncio.to_thread(self.encrypt, plaintext, binding_info)

    async def decrypt_async(self, ciphertext: str, iv: str, salt: str, auth_tag: str, binding_info: str) -> str:
        return await asyncio.to_thread(self.decrypt, ciphertext, iv, salt, auth_tag, binding_info)
