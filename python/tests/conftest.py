"""
Pytest configuration and fixtures for plugin tests.
"""

from __future__ import annotations

import asyncio
import dataclasses
import tempfile
from pathlib import Path
from typing import AsyncGenerator, Generator, List, Optional, Tuple

import pytest

from sdkms_plugin import (
    CryptoProvider,
    EncryptResult,
    InMemoryProvider,
    KeyInfo,
    KeyManagementCore,
    KeyReference,
    PluginConfiguration,
    RemoteProviderError,
    RPCServer,
    Session,
    build_server,
)
from sdkms_plugin.crypto import TAG_BITS

KEY_ID = "abc"
KEY_NAME = "k8s-secrets"


class ScriptedProvider(CryptoProvider):
    """Provider double returning fixed encrypt output and recording every call."""

    def __init__(
        self,
        kid: str = KEY_ID,
        cipher: bytes = bytes([0x01, 0x02]),
        iv: bytes = bytes(12),
        tag: bytes = bytes(16),
        plaintext: bytes = b"hello",
    ) -> None:
        self.kid = kid
        self.cipher = cipher
        self.iv = iv
        self.tag = tag
        self.plaintext = plaintext
        self.calls: List[Tuple[str, Optional[str]]] = []

    async def authenticate(self) -> Session:
        self.calls.append(("authenticate", None))
        return Session(token="scripted")

    async def lookup_key(self, ref: KeyReference, session: Session) -> KeyInfo:
        self.calls.append(("lookup_key", ref.value))
        return KeyInfo(kid=self.kid, name=None, obj_type="AES")

    async def encrypt(
        self, ref: KeyReference, plaintext: bytes, tag_len: int = TAG_BITS
    ) -> EncryptResult:
        self.calls.append(("encrypt", ref.value))
        return EncryptResult(kid=self.kid, cipher=self.cipher, iv=self.iv, tag=self.tag)

    async def decrypt(
        self, ref: KeyReference, cipher: bytes, iv: bytes, tag: bytes
    ) -> bytes:
        self.calls.append(("decrypt", ref.value))
        if (ref.value, cipher, iv, tag) != (self.kid, self.cipher, self.iv, self.tag):
            raise RemoteProviderError("decrypt", "Decryption failed", 400)
        return self.plaintext

    async def terminate_session(self, session: Session) -> None:
        self.calls.append(("terminate_session", None))


class GatedProvider(InMemoryProvider):
    """In-memory provider whose encrypt blocks until ``gate`` is set."""

    def __init__(self, api_key: str = "k1") -> None:
        super().__init__(api_key=api_key)
        self.entered = asyncio.Event()
        self.gate = asyncio.Event()

    async def encrypt(
        self, ref: KeyReference, plaintext: bytes, tag_len: int = TAG_BITS
    ) -> EncryptResult:
        self.entered.set()
        await self.gate.wait()
        return await super().encrypt(ref, plaintext, tag_len)


@pytest.fixture
def config() -> PluginConfiguration:
    """Configuration addressing the key by id."""
    return PluginConfiguration.from_mapping(
        {
            "sdkms_endpoint": "https://kms.example",
            "api_key": "k1",
            "key_id": KEY_ID,
            "socket_file": "/tmp/s",
        }
    )


@pytest.fixture
def memory_provider() -> InMemoryProvider:
    """In-memory custodian holding one AES key."""
    provider = InMemoryProvider(api_key="k1")
    provider.add_key(name=KEY_NAME, kid=KEY_ID)
    return provider


@pytest.fixture
def scripted_provider() -> ScriptedProvider:
    return ScriptedProvider()


@pytest.fixture
def core(config: PluginConfiguration, memory_provider: InMemoryProvider) -> KeyManagementCore:
    return KeyManagementCore(config, memory_provider)


@pytest.fixture
def socket_dir() -> Generator[Path, None, None]:
    """Short temporary directory; Unix socket paths are length-limited."""
    with tempfile.TemporaryDirectory(prefix="sdkms-") as path:
        yield Path(path)


@pytest.fixture
def socket_config(config: PluginConfiguration, socket_dir: Path) -> PluginConfiguration:
    return dataclasses.replace(config, socket_file=str(socket_dir / "plugin.sock"))


@pytest.fixture
async def server(
    socket_config: PluginConfiguration, memory_provider: InMemoryProvider
) -> AsyncGenerator[RPCServer, None]:
    """Started RPC server backed by the in-memory provider."""
    rpc_server = build_server(socket_config, memory_provider)
    await rpc_server.start()

    yield rpc_server

    await rpc_server.drain()
