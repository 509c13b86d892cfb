"""
Exception classes for the SDKMS key-management plugin.

Startup errors derive from ConfigError and are fatal. Everything else is a
per-call failure that the RPC layer maps to an error response.
"""

from __future__ import annotations

from typing import Optional


class PluginError(Exception):
    """Base exception for all plugin operations."""

    pass


# =============================================================================
# Startup (fatal)
# =============================================================================


class ConfigError(PluginError):
    """Configuration error."""

    pass


class FieldMissingError(ConfigError):
    """A required configuration field is missing or empty."""

    pass


class ConflictingFieldsError(ConfigError):
    """Mutually exclusive configuration fields are both set."""

    pass


class AuthFailureError(ConfigError):
    """Startup authentication against the key custodian failed."""

    pass


class KeyLookupError(ConfigError):
    """The configured key could not be looked up."""

    pass


class WrongKeyTypeError(ConfigError):
    """The configured key is not a symmetric AES key."""

    pass


class BindError(PluginError):
    """The RPC listener could not be bound to its socket."""

    pass


# =============================================================================
# Per-call
# =============================================================================


class CryptoError(PluginError):
    """Local cryptographic operation failed."""

    pass


class MalformedEnvelopeError(PluginError):
    """Wrapped ciphertext could not be decoded."""

    pass


class UnsupportedVersionError(MalformedEnvelopeError):
    """Wrapped ciphertext carries an unknown schema version."""

    def __init__(self, version: object) -> None:
        super().__init__(f"unknown version for wrapped cipher data: {version!r}")
        self.version = version


class IdentityMismatchError(PluginError):
    """Caller's claimed key identity differs from the serving fingerprint."""

    def __init__(self, claimed: str, expected: str) -> None:
        super().__init__(f"KeyId does not match. Expected: {expected}, found: {claimed}")
        self.claimed = claimed
        self.expected = expected


class RemoteProviderError(PluginError):
    """The remote key custodian rejected or failed an operation."""

    def __init__(
        self,
        operation: str,
        message: str,
        status_code: Optional[int] = None,
    ) -> None:
        detail = f"{operation} failed: {message}"
        if status_code is not None:
            detail = f"{operation} failed (HTTP {status_code}): {message}"
        super().__init__(detail)
        self.operation = operation
        self.status_code = status_code


class SerializationError(PluginError):
    """Serialization of an envelope failed."""

    pass


class InvalidRequestError(PluginError):
    """RPC request parameters are missing or malformed."""

    pass
