"""
Wrapped-ciphertext envelope.

This module provides:
- WrappedCiphertext: Ciphertext plus everything needed to decrypt it
- encode / decode: CBOR serialization of the envelope

Wire format (schema version 1, AES-256-GCM without AAD) is a CBOR map with
keys in this fixed order::

    {"Version": 1, "KID": str, "Cipher": bytes, "IV": bytes, "Tag": bytes}

Only the credential is needed to decrypt besides the envelope itself, so any
instance configured against the same key can decrypt after a restart.
"""

from __future__ import annotations

import io
from dataclasses import dataclass
from typing import Any, Dict

import cbor2

from .crypto import NONCE_SIZE, TAG_SIZE
from .errors import MalformedEnvelopeError, SerializationError, UnsupportedVersionError

SCHEMA_AES_GCM_V1: int = 1
SUPPORTED_VERSIONS = frozenset({SCHEMA_AES_GCM_V1})

_FIELDS = ("Version", "KID", "Cipher", "IV", "Tag")


def _is_supported(version: object) -> bool:
    return (
        isinstance(version, int)
        and not isinstance(version, bool)
        and version in SUPPORTED_VERSIONS
    )


@dataclass(frozen=True)
class WrappedCiphertext:
    """Envelope produced by Encrypt and consumed by Decrypt."""

    version: int
    key_id: str  # custodian-assigned id of the exact key version
    cipher: bytes
    iv: bytes  # 12 bytes
    tag: bytes  # 16 bytes

    def validate(self) -> None:
        """
        Check the envelope invariants for its schema version.

        Raises:
            UnsupportedVersionError: If the version is unknown
            MalformedEnvelopeError: If any other field is invalid
        """
        if not _is_supported(self.version):
            raise UnsupportedVersionError(self.version)
        if not isinstance(self.key_id, str) or not self.key_id:
            raise MalformedEnvelopeError("envelope key id must be a non-empty string")
        for name, value in (("cipher", self.cipher), ("iv", self.iv), ("tag", self.tag)):
            if not isinstance(value, bytes):
                raise MalformedEnvelopeError(f"envelope {name} must be bytes")
        if len(self.iv) != NONCE_SIZE:
            raise MalformedEnvelopeError(
                f"invalid iv length: expected {NONCE_SIZE}, got {len(self.iv)}"
            )
        if len(self.tag) != TAG_SIZE:
            raise MalformedEnvelopeError(
                f"invalid tag length: expected {TAG_SIZE}, got {len(self.tag)}"
            )


def encode(wrapped: WrappedCiphertext) -> bytes:
    """
    Serialize an envelope.

    Raises:
        SerializationError: If the envelope is invalid or encoding fails
    """
    try:
        wrapped.validate()
    except MalformedEnvelopeError as e:
        raise SerializationError(f"failed to serialize encrypt response: {e}") from e

    record: Dict[str, Any] = {
        "Version": wrapped.version,
        "KID": wrapped.key_id,
        "Cipher": wrapped.cipher,
        "IV": wrapped.iv,
        "Tag": wrapped.tag,
    }
    try:
        return cbor2.dumps(record)
    except Exception as e:
        raise SerializationError(f"failed to serialize encrypt response: {e}") from e


def decode(data: bytes) -> WrappedCiphertext:
    """
    Parse and validate an envelope.

    The schema version is checked before any other field, so envelopes from
    a future schema are rejected explicitly rather than parsed best-effort.

    Raises:
        UnsupportedVersionError: If the version is not recognized
        MalformedEnvelopeError: For any other decoding or validation failure
    """
    if not isinstance(data, (bytes, bytearray)):
        raise MalformedEnvelopeError("wrapped cipher data must be bytes")
    if not data:
        raise MalformedEnvelopeError("wrapped cipher data is empty")

    fp = io.BytesIO(bytes(data))
    try:
        record = cbor2.CBORDecoder(fp).decode()
    except Exception as e:
        raise MalformedEnvelopeError(
            f"failed to deserialize wrapped cipher data: {e}"
        ) from e
    if fp.tell() != len(data):
        raise MalformedEnvelopeError("trailing bytes after wrapped cipher data")

    if not isinstance(record, dict):
        raise MalformedEnvelopeError("wrapped cipher data is not a map")
    if "Version" not in record:
        raise MalformedEnvelopeError("wrapped cipher data has no version")
    version = record["Version"]
    if not _is_supported(version):
        raise UnsupportedVersionError(version)

    unknown = [k for k in record if k not in _FIELDS]
    if unknown:
        raise MalformedEnvelopeError(f"unexpected envelope fields: {unknown!r}")
    missing = [k for k in _FIELDS if k not in record]
    if missing:
        raise MalformedEnvelopeError(f"missing envelope fields: {missing!r}")

    cipher = record["Cipher"]
    if cipher is None:
        # Older encoders write an empty ciphertext as null
        cipher = b""

    wrapped = WrappedCiphertext(
        version=version,
        key_id=record["KID"],
        cipher=cipher,
        iv=record["IV"],
        tag=record["Tag"],
    )
    wrapped.validate()
    return wrapped
