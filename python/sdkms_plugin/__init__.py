"""
SDKMS Key Management Plugin

A local key-management sidecar. It serves Encrypt/Decrypt over a Unix
domain socket and delegates the actual AES-256-GCM operations to a remote
Fortanix SDKMS key custodian, so no key material is held locally.

Quick Start
-----------
```python
import asyncio
from sdkms_plugin import (
    PluginConfiguration,
    SdkmsProvider,
    build_server,
    validate_config,
)

async def main():
    config = PluginConfiguration.from_mapping({
        "sdkms_endpoint": "https://sdkms.fortanix.com",
        "api_key": "<api key>",
        "key_name": "k8s-secrets",
        "socket_file": "/run/sdkms-plugin.sock",
    })
    provider = SdkmsProvider.from_config(config)
    await validate_config(config, provider)

    server = build_server(config, provider)
    await server.start()
    ...
    await server.drain()
    await provider.close()

asyncio.run(main())
```

Key Features
------------
- **Versioned envelope**: CBOR record carrying key id, ciphertext, IV and tag
- **Identity binding**: Fingerprint of endpoint and key, checked on Decrypt
- **Two protocol revisions**: v1beta1 and v2beta1 served side by side
- **Fail-fast startup**: Credential and key type are verified before binding
- **Graceful drain**: In-flight calls finish on SIGINT/SIGTERM
"""

__version__ = "0.3.0"

# =============================================================================
# Error Exports
# =============================================================================

from .errors import (
    AuthFailureError,
    BindError,
    ConfigError,
    ConflictingFieldsError,
    CryptoError,
    FieldMissingError,
    IdentityMismatchError,
    InvalidRequestError,
    KeyLookupError,
    MalformedEnvelopeError,
    PluginError,
    RemoteProviderError,
    SerializationError,
    UnsupportedVersionError,
    WrongKeyTypeError,
)

# =============================================================================
# Core Exports
# =============================================================================

from .config import KeyReference, KeyRefKind, PluginConfiguration, load_config
from .envelope import SCHEMA_AES_GCM_V1, WrappedCiphertext, decode, encode
from .identity import compute_fingerprint
from .provider import CryptoProvider, EncryptResult, InMemoryProvider, KeyInfo, Session
from .sdkms import SdkmsProvider
from .validator import validate_config

# =============================================================================
# Service Exports
# =============================================================================

from .rpc import ErrorCode, RPCClient, RPCError, RPCServer, ServerState
from .service import (
    KeyManagementCore,
    V1Beta1Service,
    V2Beta1Service,
    build_server,
)

# =============================================================================
# Public API
# =============================================================================

__all__ = [
    # Version
    "__version__",
    # Errors
    "PluginError",
    "ConfigError",
    "FieldMissingError",
    "ConflictingFieldsError",
    "AuthFailureError",
    "KeyLookupError",
    "WrongKeyTypeError",
    "BindError",
    "CryptoError",
    "MalformedEnvelopeError",
    "UnsupportedVersionError",
    "IdentityMismatchError",
    "RemoteProviderError",
    "SerializationError",
    "InvalidRequestError",
    # Configuration
    "KeyRefKind",
    "KeyReference",
    "PluginConfiguration",
    "load_config",
    "validate_config",
    # Envelope and identity
    "SCHEMA_AES_GCM_V1",
    "WrappedCiphertext",
    "encode",
    "decode",
    "compute_fingerprint",
    # Providers
    "CryptoProvider",
    "Session",
    "KeyInfo",
    "EncryptResult",
    "InMemoryProvider",
    "SdkmsProvider",
    # Service
    "KeyManagementCore",
    "V1Beta1Service",
    "V2Beta1Service",
    "build_server",
    "RPCServer",
    "RPCClient",
    "RPCError",
    "ErrorCode",
    "ServerState",
]
