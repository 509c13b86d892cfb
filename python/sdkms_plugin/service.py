"""
Key management service.

This module provides:
- KeyManagementCore: Encrypt/Decrypt orchestration shared by both protocol revisions
- V1Beta1Service: Protocol revision without identity binding
- V2Beta1Service: Identity-aware revision with Status and key id checks
- build_server: Wire both revisions onto an RPCServer

Flow:
- Encrypt: provider.encrypt(configured key) -> WrappedCiphertext -> CBOR bytes
- Decrypt: CBOR bytes -> WrappedCiphertext -> [identity check] ->
  provider.decrypt(key id stored in the envelope)

The core is built once at startup. It holds only the immutable
configuration, the provider and the precomputed fingerprint, so calls run
concurrently without locking.
"""

from __future__ import annotations

import base64
import binascii
import logging
import sys
import traceback
from dataclasses import dataclass
from typing import Any, Dict, Optional

from . import __version__
from .config import KeyReference, PluginConfiguration
from .crypto import TAG_BITS
from .envelope import SCHEMA_AES_GCM_V1, WrappedCiphertext, decode, encode
from .errors import IdentityMismatchError, InvalidRequestError
from .identity import compute_fingerprint
from .provider import CryptoProvider
from .rpc import Handler, RPCServer

logger = logging.getLogger(__name__)

V1BETA1 = "v1beta1"
V2BETA1 = "v2beta1"
SERVICE_NAME = "KeyManagementService"
HEALTHZ_OK = "ok"
RUNTIME_NAME = "k8s-sdkms-plugin"


@dataclass(frozen=True)
class VersionInfo:
    version: str
    runtime_name: str
    runtime_version: str


@dataclass(frozen=True)
class StatusInfo:
    version: str
    healthz: str
    key_id: str


class KeyManagementCore:
    """Protocol-independent Encrypt/Decrypt."""

    def __init__(
        self,
        config: PluginConfiguration,
        provider: CryptoProvider,
        fingerprint: Optional[str] = None,
    ) -> None:
        """
        Args:
            config: Validated plugin configuration
            provider: Remote crypto provider
            fingerprint: Precomputed fingerprint (computed from config if omitted)

        Raises:
            ConfigError: If the configuration is incomplete
        """
        config.check_fields()
        self._config = config
        self._provider = provider
        self._key_ref = config.key_reference
        self._fingerprint = fingerprint or compute_fingerprint(config)

    @property
    def config(self) -> PluginConfiguration:
        return self._config

    @property
    def key_reference(self) -> KeyReference:
        return self._key_ref

    @property
    def fingerprint(self) -> str:
        return self._fingerprint

    def version(self, protocol: str) -> VersionInfo:
        info = VersionInfo(
            version=protocol, runtime_name=RUNTIME_NAME, runtime_version=__version__
        )
        _log_outcome("Version", None)
        return info

    def status(self, protocol: str) -> StatusInfo:
        info = StatusInfo(version=protocol, healthz=HEALTHZ_OK, key_id=self._fingerprint)
        _log_outcome("Status", None, healthz=HEALTHZ_OK)
        return info

    async def encrypt(self, plaintext: bytes, uid: Optional[str] = None) -> bytes:
        """
        Encrypt plaintext under the configured key.

        Returns:
            Encoded WrappedCiphertext

        Raises:
            RemoteProviderError: If the custodian fails; not retried
            SerializationError: If the envelope cannot be encoded
        """
        try:
            result = await self._provider.encrypt(self._key_ref, plaintext, TAG_BITS)
            data = encode(
                WrappedCiphertext(
                    version=SCHEMA_AES_GCM_V1,
                    key_id=result.kid,
                    cipher=result.cipher,
                    iv=result.iv,
                    tag=result.tag,
                )
            )
        except Exception as e:
            _log_outcome("Encrypt", e, uid=uid, plain_bytes=len(plaintext))
            raise
        _log_outcome("Encrypt", None, uid=uid, plain_bytes=len(plaintext), cipher_bytes=len(data))
        return data

    async def decrypt(
        self,
        ciphertext: bytes,
        claimed_key_id: Optional[str] = None,
        check_identity: bool = False,
        uid: Optional[str] = None,
    ) -> bytes:
        """
        Decrypt an envelope produced by encrypt.

        With check_identity the caller's claimed key id must equal the
        serving fingerprint; on mismatch the custodian is never contacted.

        Raises:
            MalformedEnvelopeError: If the envelope cannot be decoded
            IdentityMismatchError: If the claimed key id does not match
            RemoteProviderError: If the custodian fails; not retried
        """
        try:
            wrapped = decode(ciphertext)
            if check_identity and claimed_key_id != self._fingerprint:
                raise IdentityMismatchError(claimed_key_id or "", self._fingerprint)
            plaintext = await self._provider.decrypt(
                KeyReference.by_id(wrapped.key_id), wrapped.cipher, wrapped.iv, wrapped.tag
            )
        except Exception as e:
            _log_outcome("Decrypt", e, uid=uid, cipher_bytes=len(ciphertext))
            raise
        _log_outcome(
            "Decrypt", None, uid=uid, cipher_bytes=len(ciphertext), plain_bytes=len(plaintext)
        )
        return plaintext


def _log_outcome(operation: str, error: Optional[BaseException], **fields: Any) -> None:
    """
    Log one line per call.

    A failing filter or handler must not change the call result, so errors
    raised while logging are reported the way logging.Handler.handleError
    reports them and otherwise dropped.
    """
    try:
        _emit_outcome(operation, error, fields)
    except Exception:
        if logging.raiseExceptions:
            traceback.print_exc(file=sys.stderr)


def _emit_outcome(operation: str, error: Optional[BaseException], fields: Dict[str, Any]) -> None:
    counters = {k: v for k, v in fields.items() if v is not None}
    detail = ", ".join(f"{k}: {v}" for k, v in counters.items())
    extra = {"operation": operation, "outcome": "success" if error is None else "failure", **counters}
    if error is None:
        logger.info("%s request was successful. %s", operation, detail, extra=extra)
    else:
        extra["error_type"] = type(error).__name__
        logger.warning(
            "%s request ran into error: %s. %s", operation, error, detail, extra=extra
        )


# =============================================================================
# Protocol adapters
# =============================================================================


def _bytes_param(params: Dict[str, Any], name: str) -> bytes:
    # Empty bytes fields are omitted on the wire
    value = params.get(name, "")
    if value is None:
        return b""
    if not isinstance(value, str):
        raise InvalidRequestError(f"`{name}` must be a base64 string")
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as e:
        raise InvalidRequestError(f"`{name}` is not valid base64: {e}") from e


def _str_param(params: Dict[str, Any], name: str) -> str:
    value = params.get(name, "")
    if value is None:
        return ""
    if not isinstance(value, str):
        raise InvalidRequestError(f"`{name}` must be a string")
    return value


def _b64(data: bytes) -> str:
    return base64.standard_b64encode(data).decode("ascii")


class V1Beta1Service:
    """v1beta1: Version, Encrypt, Decrypt; no identity binding."""

    protocol = V1BETA1

    def __init__(self, core: KeyManagementCore) -> None:
        self._core = core

    def methods(self) -> Dict[str, Handler]:
        return {"Version": self.version, "Encrypt": self.encrypt, "Decrypt": self.decrypt}

    async def version(self, params: Dict[str, Any]) -> Dict[str, Any]:
        info = self._core.version(self.protocol)
        return {
            "version": info.version,
            "runtime_name": info.runtime_name,
            "runtime_version": info.runtime_version,
        }

    async def encrypt(self, params: Dict[str, Any]) -> Dict[str, Any]:
        cipher = await self._core.encrypt(_bytes_param(params, "plain"))
        return {"cipher": _b64(cipher)}

    async def decrypt(self, params: Dict[str, Any]) -> Dict[str, Any]:
        plain = await self._core.decrypt(_bytes_param(params, "cipher"))
        return {"plain": _b64(plain)}


class V2Beta1Service:
    """v2beta1: Status, Encrypt, Decrypt with key id binding."""

    protocol = V2BETA1

    def __init__(self, core: KeyManagementCore) -> None:
        self._core = core

    def methods(self) -> Dict[str, Handler]:
        return {"Status": self.status, "Encrypt": self.encrypt, "Decrypt": self.decrypt}

    async def status(self, params: Dict[str, Any]) -> Dict[str, Any]:
        info = self._core.status(self.protocol)
        return {"version": info.version, "healthz": info.healthz, "key_id": info.key_id}

    async def encrypt(self, params: Dict[str, Any]) -> Dict[str, Any]:
        ciphertext = await self._core.encrypt(
            _bytes_param(params, "plaintext"), uid=_str_param(params, "uid") or None
        )
        return {"ciphertext": _b64(ciphertext), "key_id": self._core.fingerprint}

    async def decrypt(self, params: Dict[str, Any]) -> Dict[str, Any]:
        plaintext = await self._core.decrypt(
            _bytes_param(params, "ciphertext"),
            claimed_key_id=_str_param(params, "key_id"),
            check_identity=True,
            uid=_str_param(params, "uid") or None,
        )
        return {"plaintext": _b64(plaintext)}


def build_server(
    config: PluginConfiguration,
    provider: CryptoProvider,
    fingerprint: Optional[str] = None,
) -> RPCServer:
    """Create an RPCServer on the configured socket serving both revisions."""
    core = KeyManagementCore(config, provider, fingerprint)
    server = RPCServer(config.socket_file)
    for service in (V1Beta1Service(core), V2Beta1Service(core)):
        server.register(f"{service.protocol}.{SERVICE_NAME}", service.methods())
    logger.info(
        "Serving key %s with fingerprint %s (%s)",
        core.key_reference,
        core.fingerprint,
        ", ".join(sorted(server.methods)),
    )
    return server
