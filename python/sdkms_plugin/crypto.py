"""
AES-256-GCM primitives with a detached authentication tag.

The plugin itself never holds key material; these primitives back the
in-memory provider, which stands in for the remote custodian in tests and
local development.

This module provides:
- SecureKey: Key wrapper with best-effort zeroization
- EncryptedData: Nonce, ciphertext and tag as separate fields
- AesGcmCipher: AES-256-GCM encryption/decryption
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .errors import CryptoError

# Cryptographic constants
AES_256_KEY_SIZE: int = 32  # 256 bits
NONCE_SIZE: int = 12  # 96 bits (standard for AES-GCM)
TAG_SIZE: int = 16  # 128 bits (authentication tag)
TAG_BITS: int = TAG_SIZE * 8


class SecureKey:
    """
    AES-256 key material held by a custodian for one key id.

    Only the in-memory custodian and the test doubles hold keys; the plugin
    itself only ever sees key ids. The buffer is a bytearray so that wipe()
    can overwrite it in place when the custodian drops the key. Copies handed
    out by as_bytes() are outside its reach.
    """

    __slots__ = ("_material", "_wiped")

    def __init__(self, key_bytes: bytes | bytearray) -> None:
        """
        Raises:
            CryptoError: If the material is not exactly 32 bytes
        """
        if not isinstance(key_bytes, (bytes, bytearray)):
            raise CryptoError("Key must be bytes or bytearray")
        if len(key_bytes) != AES_256_KEY_SIZE:
            raise CryptoError(
                f"Invalid key size: expected {AES_256_KEY_SIZE}, got {len(key_bytes)}"
            )
        self._material = bytearray(key_bytes)
        self._wiped = False

    @classmethod
    def generate(cls) -> SecureKey:
        return cls(secrets.token_bytes(AES_256_KEY_SIZE))

    @property
    def wiped(self) -> bool:
        return self._wiped

    def as_bytes(self) -> bytes:
        if self.wiped:
            raise CryptoError("Key material has been wiped")
        return bytes(self._material)

    def wipe(self) -> None:
        """Overwrite the material with zeros; the key is unusable afterwards."""
        self._material[:] = bytes(len(self._material))
        self._wiped = True

    def __len__(self) -> int:
        return len(self._material)

    def __repr__(self) -> str:
        return "SecureKey(<redacted>)"

    def __del__(self) -> None:
        # Best effort: the collector decides when this runs
        if hasattr(self, "_material"):
            self.wipe()


@dataclass(frozen=True)
class EncryptedData:
    """GCM output split into its three parts."""

    nonce: bytes  # 12 bytes
    ciphertext: bytes  # same length as the plaintext
    tag: bytes  # 16 bytes


class AesGcmCipher:
    """
    AES-256-GCM authenticated encryption without additional authenticated data.

    AESGCM appends the tag to the ciphertext; these helpers split it off on
    encryption and re-join it on decryption.
    """

    @staticmethod
    def encrypt(
        key: SecureKey,
        plaintext: bytes,
        nonce: Optional[bytes] = None,
    ) -> EncryptedData:
        """
        Encrypt plaintext with AES-256-GCM.

        Args:
            key: 32-byte encryption key
            plaintext: Data to encrypt (may be empty)
            nonce: Optional 12-byte nonce; a random one is drawn when omitted

        Returns:
            EncryptedData with nonce, ciphertext and detached tag

        Raises:
            CryptoError: If the nonce size is invalid or encryption fails
        """
        if nonce is None:
            nonce = secrets.token_bytes(NONCE_SIZE)
        if len(nonce) != NONCE_SIZE:
            raise CryptoError(
                f"Invalid nonce size: expected {NONCE_SIZE}, got {len(nonce)}"
            )

        try:
            sealed = AESGCM(key.as_bytes()).encrypt(nonce, plaintext, None)
        except (TypeError, ValueError, OverflowError) as e:
            raise CryptoError(f"Encryption error: {e}") from e

        return EncryptedData(
            nonce=nonce,
            ciphertext=sealed[:-TAG_SIZE],
            tag=sealed[-TAG_SIZE:],
        )

    @staticmethod
    def decrypt(key: SecureKey, encrypted: EncryptedData) -> bytes:
        """
        Decrypt and authenticate ciphertext with AES-256-GCM.

        Raises:
            CryptoError: If nonce/tag sizes are invalid or authentication fails
        """
        if len(encrypted.nonce) != NONCE_SIZE:
            raise CryptoError(
                f"Invalid nonce size: expected {NONCE_SIZE}, got {len(encrypted.nonce)}"
            )
        if len(encrypted.tag) != TAG_SIZE:
            raise CryptoError(
                f"Invalid tag size: expected {TAG_SIZE}, got {len(encrypted.tag)}"
            )

        try:
            return AESGCM(key.as_bytes()).decrypt(
                encrypted.nonce, encrypted.ciphertext + encrypted.tag, None
            )
        except InvalidTag:
            # Generic error to prevent oracle attacks
            raise CryptoError("Decryption failed") from None
