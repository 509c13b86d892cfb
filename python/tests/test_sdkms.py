"""
Tests for the SDKMS REST client, using an httpx MockTransport custodian.
"""

from __future__ import annotations

import base64
import json
from typing import Dict, List

import httpx
import pytest

from sdkms_plugin import (
    KeyManagementCore,
    KeyReference,
    PluginConfiguration,
    RemoteProviderError,
    SdkmsProvider,
    Session,
    validate_config,
)
from sdkms_plugin.crypto import AesGcmCipher, EncryptedData, SecureKey
from sdkms_plugin.errors import CryptoError

API_KEY = "YXBwOnNlY3JldA=="  # base64("app:secret")


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


class FakeSdkms:
    """Minimal SDKMS behaviour: one AES key, sessions, GCM encrypt/decrypt."""

    def __init__(self, kid: str = "abc", name: str = "k8s-secrets", obj_type: str = "AES") -> None:
        self.kid = kid
        self.name = name
        self.obj_type = obj_type
        self.key = SecureKey.generate()
        self.requests: List[httpx.Request] = []
        self.sessions: Dict[str, bool] = {}

    def _matches(self, descriptor: Dict[str, str]) -> bool:
        return descriptor in ({"kid": self.kid}, {"name": self.name})

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        auth = request.headers.get("Authorization", "")
        body = json.loads(request.content) if request.content else None
        path = request.url.path

        if path == "/sys/v1/session/auth":
            if auth != f"Basic {API_KEY}":
                return httpx.Response(401, text="invalid credentials")
            self.sessions["tok-1"] = True
            return httpx.Response(200, json={"access_token": "tok-1", "token_type": "Bearer"})

        if path == "/sys/v1/session/terminate":
            self.sessions[auth.replace("Bearer ", "")] = False
            return httpx.Response(204)

        if path == "/crypto/v1/keys/info":
            if not self.sessions.get(auth.replace("Bearer ", "")):
                return httpx.Response(401, text="no session")
            if not self._matches(body):
                return httpx.Response(404, text="sobject not found")
            return httpx.Response(
                200, json={"kid": self.kid, "name": self.name, "obj_type": self.obj_type}
            )

        if auth != f"Basic {API_KEY}":
            return httpx.Response(401, text="invalid credentials")
        if not self._matches(body["key"]) or body["alg"] != "AES" or body["mode"] != "GCM":
            return httpx.Response(400, text="bad request")

        if path == "/crypto/v1/encrypt":
            encrypted = AesGcmCipher.encrypt(self.key, base64.b64decode(body["plain"]))
            return httpx.Response(
                200,
                json={
                    "kid": self.kid,
                    "cipher": _b64(encrypted.ciphertext),
                    "iv": _b64(encrypted.nonce),
                    "tag": _b64(encrypted.tag),
                },
            )
        if path == "/crypto/v1/decrypt":
            try:
                plain = AesGcmCipher.decrypt(
                    self.key,
                    EncryptedData(
                        nonce=base64.b64decode(body["iv"]),
                        ciphertext=base64.b64decode(body["cipher"]),
                        tag=base64.b64decode(body["tag"]),
                    ),
                )
            except CryptoError:
                return httpx.Response(400, text="Decryption failed")
            return httpx.Response(200, json={"kid": self.kid, "plain": _b64(plain)})

        return httpx.Response(404)


@pytest.fixture
def fake() -> FakeSdkms:
    return FakeSdkms()


@pytest.fixture
def sdkms_config(config: PluginConfiguration) -> PluginConfiguration:
    return PluginConfiguration.from_mapping(
        {
            "sdkms_endpoint": "https://sdkms.example/",
            "api_key": API_KEY,
            "key_name": "k8s-secrets",
            "socket_file": config.socket_file,
        }
    )


@pytest.fixture
async def provider(sdkms_config: PluginConfiguration, fake: FakeSdkms):
    client = SdkmsProvider.from_config(sdkms_config, transport=httpx.MockTransport(fake))
    yield client
    await client.close()


class TestRequests:
    async def test_authenticate(self, provider: SdkmsProvider, fake: FakeSdkms) -> None:
        session = await provider.authenticate()

        assert session.token == "tok-1"
        request = fake.requests[0]
        assert request.method == "POST"
        assert str(request.url) == "https://sdkms.example/sys/v1/session/auth"
        assert request.headers["Authorization"] == f"Basic {API_KEY}"

    async def test_lookup_uses_bearer_token(self, provider: SdkmsProvider, fake: FakeSdkms) -> None:
        session = await provider.authenticate()
        key = await provider.lookup_key(KeyReference.by_name("k8s-secrets"), session)

        assert (key.kid, key.name, key.obj_type) == ("abc", "k8s-secrets", "AES")
        request = fake.requests[-1]
        assert request.headers["Authorization"] == "Bearer tok-1"
        assert json.loads(request.content) == {"name": "k8s-secrets"}

    async def test_terminate(self, provider: SdkmsProvider, fake: FakeSdkms) -> None:
        session = await provider.authenticate()
        await provider.terminate_session(session)
        assert fake.sessions == {"tok-1": False}

    async def test_encrypt_request_shape(self, provider: SdkmsProvider, fake: FakeSdkms) -> None:
        result = await provider.encrypt(KeyReference.by_name("k8s-secrets"), b"hello")

        body = json.loads(fake.requests[-1].content)
        assert body == {
            "key": {"name": "k8s-secrets"},
            "alg": "AES",
            "mode": "GCM",
            "plain": _b64(b"hello"),
            "tag_len": 128,
        }
        assert result.kid == "abc"
        assert len(result.iv) == 12
        assert len(result.tag) == 16
        assert len(result.cipher) == 5

    async def test_decrypt_request_shape(self, provider: SdkmsProvider, fake: FakeSdkms) -> None:
        result = await provider.encrypt(KeyReference.by_id("abc"), b"hello")
        plain = await provider.decrypt(KeyReference.by_id("abc"), result.cipher, result.iv, result.tag)

        assert plain == b"hello"
        body = json.loads(fake.requests[-1].content)
        assert body["key"] == {"kid": "abc"}
        assert body["iv"] == _b64(result.iv)
        assert body["tag"] == _b64(result.tag)


class TestErrors:
    async def test_http_error_status(self, fake: FakeSdkms) -> None:
        client = SdkmsProvider(
            "https://sdkms.example", "wrong-key", transport=httpx.MockTransport(fake)
        )
        try:
            with pytest.raises(RemoteProviderError) as exc:
                await client.authenticate()
        finally:
            await client.close()
        assert exc.value.status_code == 401
        assert exc.value.operation == "authenticate"
        assert "invalid credentials" in str(exc.value)

    async def test_transport_error(self) -> None:
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = SdkmsProvider("https://sdkms.example", API_KEY, transport=httpx.MockTransport(refuse))
        try:
            with pytest.raises(RemoteProviderError, match="ConnectError"):
                await client.encrypt(KeyReference.by_id("abc"), b"x")
        finally:
            await client.close()

    async def test_transport_error_is_not_retried(self) -> None:
        attempts = []

        def refuse(request: httpx.Request) -> httpx.Response:
            attempts.append(request)
            raise httpx.ReadTimeout("timed out", request=request)

        client = SdkmsProvider("https://sdkms.example", API_KEY, transport=httpx.MockTransport(refuse))
        try:
            with pytest.raises(RemoteProviderError):
                await client.decrypt(KeyReference.by_id("abc"), b"", bytes(12), bytes(16))
        finally:
            await client.close()
        assert len(attempts) == 1

    @pytest.mark.parametrize(
        "payload",
        [
            {"kid": "abc", "cipher": "!!", "iv": "", "tag": ""},
            {"kid": "abc", "iv": "", "tag": ""},
            {"cipher": "", "iv": "", "tag": ""},
            ["not", "an", "object"],
        ],
    )
    async def test_malformed_encrypt_response(self, payload) -> None:
        def respond(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=payload)

        client = SdkmsProvider("https://sdkms.example", API_KEY, transport=httpx.MockTransport(respond))
        try:
            with pytest.raises(RemoteProviderError):
                await client.encrypt(KeyReference.by_id("abc"), b"x")
        finally:
            await client.close()

    async def test_non_json_response(self) -> None:
        def respond(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text="<html>proxy</html>")

        client = SdkmsProvider("https://sdkms.example", API_KEY, transport=httpx.MockTransport(respond))
        try:
            with pytest.raises(RemoteProviderError, match="invalid JSON"):
                await client.lookup_key(KeyReference.by_id("abc"), Session(token="t"))
        finally:
            await client.close()

    async def test_tampered_ciphertext(self, provider: SdkmsProvider) -> None:
        result = await provider.encrypt(KeyReference.by_id("abc"), b"hello")
        with pytest.raises(RemoteProviderError) as exc:
            await provider.decrypt(KeyReference.by_id("abc"), result.cipher, result.iv, bytes(16))
        assert exc.value.status_code == 400


class TestWithCore:
    async def test_validate_then_round_trip(
        self, sdkms_config: PluginConfiguration, provider: SdkmsProvider, fake: FakeSdkms
    ) -> None:
        key = await validate_config(sdkms_config, provider)
        assert key.kid == "abc"
        assert fake.sessions == {"tok-1": False}

        core = KeyManagementCore(sdkms_config, provider)
        ciphertext = await core.encrypt(b"top secret")
        assert await core.decrypt(ciphertext) == b"top secret"

    async def test_empty_plaintext(self, sdkms_config: PluginConfiguration, provider: SdkmsProvider) -> None:
        core = KeyManagementCore(sdkms_config, provider)
        assert await core.decrypt(await core.encrypt(b"")) == b""
