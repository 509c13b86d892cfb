"""
Remote crypto provider abstraction.

This module provides:
- CryptoProvider: Abstract interface to the remote key custodian
- InMemoryProvider: AES-256-GCM implementation holding keys in memory, for testing
- Supporting data structures: Session, KeyInfo, EncryptResult
"""

from __future__ import annotations

import asyncio
import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple
from uuid import uuid4

from .config import KeyRefKind, KeyReference
from .crypto import TAG_BITS, AesGcmCipher, EncryptedData, SecureKey
from .errors import CryptoError, RemoteProviderError

OBJ_TYPE_AES = "AES"


@dataclass(frozen=True)
class Session:
    """Authenticated session with the custodian."""

    token: str = field(repr=False)


@dataclass(frozen=True)
class KeyInfo:
    """Key metadata returned by a lookup."""

    kid: str
    name: Optional[str]
    obj_type: str


@dataclass(frozen=True)
class EncryptResult:
    """Result of a remote AES-GCM encryption."""

    kid: str  # id of the exact key that encrypted
    cipher: bytes
    iv: bytes
    tag: bytes


class CryptoProvider(ABC):
    """
    Abstract interface to the remote key custodian.

    All methods are async; each performs exactly one round trip and never
    retries. Failures raise RemoteProviderError.
    """

    @abstractmethod
    async def authenticate(self) -> Session:
        """Open a session using the configured credential."""
        ...

    @abstractmethod
    async def lookup_key(self, ref: KeyReference, session: Session) -> KeyInfo:
        """Look up key metadata."""
        ...

    @abstractmethod
    async def encrypt(
        self, ref: KeyReference, plaintext: bytes, tag_len: int = TAG_BITS
    ) -> EncryptResult:
        """Encrypt with AES-GCM under the referenced key."""
        ...

    @abstractmethod
    async def decrypt(
        self, ref: KeyReference, cipher: bytes, iv: bytes, tag: bytes
    ) -> bytes:
        """Decrypt AES-GCM ciphertext under the referenced key."""
        ...

    @abstractmethod
    async def terminate_session(self, session: Session) -> None:
        """Release a session opened by authenticate."""
        ...

    async def close(self) -> None:
        """Release client resources."""
        return None


@dataclass
class _StoredKey:
    info: KeyInfo
    key: Optional[SecureKey]


class InMemoryProvider(CryptoProvider):
    """
    In-memory custodian for testing.

    Performs real AES-256-GCM, so ciphertexts round-trip exactly as they
    would against the remote service. Every call is recorded in ``calls``.
    Uses asyncio.Lock for safe concurrent access.
    """

    def __init__(
        self,
        api_key: str = "test-api-key",
        valid_api_keys: Optional[Iterable[str]] = None,
    ) -> None:
        """
        Args:
            api_key: Credential this client authenticates with
            valid_api_keys: Credentials the custodian accepts (any if None)
        """
        self._api_key = api_key
        self._valid_api_keys = None if valid_api_keys is None else frozenset(valid_api_keys)
        self._keys: Dict[str, _StoredKey] = {}
        self._sessions: Dict[str, bool] = {}
        self._lock = asyncio.Lock()
        self.calls: List[Tuple[str, Optional[str]]] = []

    def add_key(
        self,
        name: Optional[str] = None,
        obj_type: str = OBJ_TYPE_AES,
        kid: Optional[str] = None,
    ) -> KeyInfo:
        """Register a key; non-AES keys carry no material."""
        info = KeyInfo(kid=kid or str(uuid4()), name=name, obj_type=obj_type)
        material = SecureKey.generate() if obj_type == OBJ_TYPE_AES else None
        self._keys[info.kid] = _StoredKey(info=info, key=material)
        return info

    @property
    def open_sessions(self) -> int:
        return sum(1 for active in self._sessions.values() if active)

    async def authenticate(self) -> Session:
        async with self._lock:
            self.calls.append(("authenticate", None))
            if self._valid_api_keys is not None and self._api_key not in self._valid_api_keys:
                raise RemoteProviderError("authenticate", "invalid api key", 401)
            token = secrets.token_hex(16)
            self._sessions[token] = True
            return Session(token=token)

    async def lookup_key(self, ref: KeyReference, session: Session) -> KeyInfo:
        async with self._lock:
            self.calls.append(("lookup_key", ref.value))
            if not self._sessions.get(session.token):
                raise RemoteProviderError("lookup_key", "session is not active", 401)
            return self._find(ref, "lookup_key").info

    async def encrypt(
        self, ref: KeyReference, plaintext: bytes, tag_len: int = TAG_BITS
    ) -> EncryptResult:
        async with self._lock:
            self.calls.append(("encrypt", ref.value))
            stored = self._usable(ref, "encrypt")
        if tag_len != TAG_BITS:
            raise RemoteProviderError("encrypt", f"unsupported tag length {tag_len}", 400)
        encrypted = AesGcmCipher.encrypt(stored.key, plaintext)
        return EncryptResult(
            kid=stored.info.kid,
            cipher=encrypted.ciphertext,
            iv=encrypted.nonce,
            tag=encrypted.tag,
        )

    async def decrypt(
        self, ref: KeyReference, cipher: bytes, iv: bytes, tag: bytes
    ) -> bytes:
        async with self._lock:
            self.calls.append(("decrypt", ref.value))
            stored = self._usable(ref, "decrypt")
        try:
            return AesGcmCipher.decrypt(
                stored.key, EncryptedData(nonce=iv, ciphertext=cipher, tag=tag)
            )
        except CryptoError as e:
            raise RemoteProviderError("decrypt", str(e), 400) from e

    async def terminate_session(self, session: Session) -> None:
        async with self._lock:
            self.calls.append(("terminate_session", None))
            self._sessions[session.token] = False

    async def close(self) -> None:
        """Wipe all key material; the custodian holds no keys afterwards."""
        async with self._lock:
            for stored in self._keys.values():
                if stored.key is not None:
                    stored.key.wipe()
            self._keys.clear()

    def _find(self, ref: KeyReference, operation: str) -> _StoredKey:
        if ref.kind is KeyRefKind.BY_ID:
            stored = self._keys.get(ref.value)
        else:
            stored = next(
                (k for k in self._keys.values() if k.info.name == ref.value), None
            )
        if stored is None:
            raise RemoteProviderError(operation, f"key {ref} not found", 404)
        return stored

    def _usable(self, ref: KeyReference, operation: str) -> _StoredKey:
        stored = self._find(ref, operation)
        if stored.key is None:
            raise RemoteProviderError(
                operation, f"key {ref} is {stored.info.obj_type}, not AES", 400
            )
        return stored
