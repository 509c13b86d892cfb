"""
Fortanix SDKMS REST client.

Implements CryptoProvider against the SDKMS HTTP API. Session calls
(key lookup) use a bearer token from ``/sys/v1/session/auth``; crypto calls
authenticate each request with the API key directly, so they need no shared
session state and can run concurrently on one pooled client.
"""

from __future__ import annotations

import base64
import binascii
import logging
from typing import Any, Dict, Optional

import httpx

from .config import KeyReference, PluginConfiguration
from .crypto import TAG_BITS
from .errors import RemoteProviderError
from .provider import CryptoProvider, EncryptResult, KeyInfo, Session

logger = logging.getLogger(__name__)

AUTH_PATH = "/sys/v1/session/auth"
TERMINATE_PATH = "/sys/v1/session/terminate"
KEY_INFO_PATH = "/crypto/v1/keys/info"
ENCRYPT_PATH = "/crypto/v1/encrypt"
DECRYPT_PATH = "/crypto/v1/decrypt"

ALG_AES = "AES"
MODE_GCM = "GCM"


def _b64encode(data: bytes) -> str:
    return base64.standard_b64encode(data).decode("ascii")


def _b64decode(operation: str, body: Dict[str, Any], key: str) -> bytes:
    value = body.get(key)
    if not isinstance(value, str):
        raise RemoteProviderError(operation, f"response has no `{key}` field")
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as e:
        raise RemoteProviderError(operation, f"invalid base64 in `{key}`: {e}") from e


class SdkmsProvider(CryptoProvider):
    """
    SDKMS-backed crypto provider.

    One httpx.AsyncClient is shared by all calls; the configuration it
    was built from never changes.
    """

    def __init__(
        self,
        endpoint: str,
        api_key: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """
        Args:
            endpoint: SDKMS base URL, e.g. ``https://sdkms.fortanix.com``
            api_key: SDKMS application API key
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (tests inject a MockTransport)
        """
        self._api_key = api_key
        self._client = httpx.AsyncClient(
            base_url=endpoint.rstrip("/"),
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_config(
        cls,
        config: PluginConfiguration,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> SdkmsProvider:
        config.check_fields()
        return cls(
            endpoint=config.endpoint,
            api_key=config.api_key,
            timeout=config.request_timeout,
            transport=transport,
        )

    def __repr__(self) -> str:
        return f"SdkmsProvider(endpoint={str(self._client.base_url)!r})"

    # =========================================================================
    # Session operations
    # =========================================================================

    async def authenticate(self) -> Session:
        body = await self._post("authenticate", AUTH_PATH, None, self._api_key_auth())
        token = body.get("access_token")
        if not isinstance(token, str) or not token:
            raise RemoteProviderError("authenticate", "response has no access token")
        return Session(token=token)

    async def lookup_key(self, ref: KeyReference, session: Session) -> KeyInfo:
        body = await self._post(
            "lookup_key", KEY_INFO_PATH, ref.to_descriptor(), _bearer(session)
        )
        kid = body.get("kid")
        obj_type = body.get("obj_type")
        if not isinstance(kid, str) or not isinstance(obj_type, str):
            raise RemoteProviderError("lookup_key", "response is missing `kid` or `obj_type`")
        return KeyInfo(kid=kid, name=body.get("name"), obj_type=obj_type)

    async def terminate_session(self, session: Session) -> None:
        await self._post("terminate_session", TERMINATE_PATH, None, _bearer(session))

    # =========================================================================
    # Crypto operations
    # =========================================================================

    async def encrypt(
        self, ref: KeyReference, plaintext: bytes, tag_len: int = TAG_BITS
    ) -> EncryptResult:
        request = {
            "key": ref.to_descriptor(),
            "alg": ALG_AES,
            "mode": MODE_GCM,
            "plain": _b64encode(plaintext),
            "tag_len": tag_len,
        }
        body = await self._post("encrypt", ENCRYPT_PATH, request, self._api_key_auth())
        kid = body.get("kid")
        if not isinstance(kid, str) or not kid:
            raise RemoteProviderError("encrypt", "response has no `kid` field")
        return EncryptResult(
            kid=kid,
            cipher=_b64decode("encrypt", body, "cipher"),
            iv=_b64decode("encrypt", body, "iv"),
            tag=_b64decode("encrypt", body, "tag"),
        )

    async def decrypt(
        self, ref: KeyReference, cipher: bytes, iv: bytes, tag: bytes
    ) -> bytes:
        request = {
            "key": ref.to_descriptor(),
            "alg": ALG_AES,
            "mode": MODE_GCM,
            "cipher": _b64encode(cipher),
            "iv": _b64encode(iv),
            "tag": _b64encode(tag),
        }
        body = await self._post("decrypt", DECRYPT_PATH, request, self._api_key_auth())
        return _b64decode("decrypt", body, "plain")

    async def close(self) -> None:
        await self._client.aclose()

    # =========================================================================
    # HTTP plumbing
    # =========================================================================

    def _api_key_auth(self) -> Dict[str, str]:
        # SDKMS API keys are already base64("app_id:secret")
        return {"Authorization": f"Basic {self._api_key}"}

    async def _post(
        self,
        operation: str,
        path: str,
        payload: Optional[Dict[str, Any]],
        headers: Dict[str, str],
    ) -> Dict[str, Any]:
        try:
            response = await self._client.post(path, json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise RemoteProviderError(operation, f"{type(e).__name__}: {e}") from e

        if response.status_code >= 400:
            raise RemoteProviderError(
                operation, response.text.strip() or response.reason_phrase, response.status_code
            )
        if response.status_code == 204 or not response.content:
            return {}
        try:
            body = response.json()
        except ValueError as e:
            raise RemoteProviderError(operation, f"invalid JSON response: {e}") from e
        if not isinstance(body, dict):
            raise RemoteProviderError(operation, "unexpected response shape")
        logger.debug("SDKMS %s -> HTTP %d", path, response.status_code)
        return body


def _bearer(session: Session) -> Dict[str, str]:
    return {"Authorization": f"Bearer {session.token}"}
