"""
Startup configuration validation.

Runs once before the service binds its socket: checks required fields
locally, then authenticates and looks up the configured key so that a bad
credential or key fails the process immediately instead of on first use.
"""

from __future__ import annotations

import logging

from .config import PluginConfiguration
from .errors import (
    AuthFailureError,
    KeyLookupError,
    RemoteProviderError,
    WrongKeyTypeError,
)
from .provider import OBJ_TYPE_AES, CryptoProvider, KeyInfo

logger = logging.getLogger(__name__)


async def validate_config(
    config: PluginConfiguration, provider: CryptoProvider
) -> KeyInfo:
    """
    Validate configuration against the remote custodian.

    Args:
        config: Loaded plugin configuration
        provider: Provider built for that configuration

    Returns:
        KeyInfo of the configured key

    Raises:
        FieldMissingError: If a required field is missing
        ConflictingFieldsError: If both key_name and key_id are set
        AuthFailureError: If the credential is rejected
        KeyLookupError: If the key cannot be looked up
        WrongKeyTypeError: If the key is not an AES key
    """
    config.check_fields()
    ref = config.key_reference

    try:
        session = await provider.authenticate()
    except RemoteProviderError as e:
        raise AuthFailureError(f"invalid `api_key`: {e}") from e

    try:
        try:
            key = await provider.lookup_key(ref, session)
        except RemoteProviderError as e:
            raise KeyLookupError(f"invalid key {ref}: {e}") from e
        if key.obj_type != OBJ_TYPE_AES:
            raise WrongKeyTypeError(
                f"invalid key type, expected {OBJ_TYPE_AES}, found: {key.obj_type}"
            )
    finally:
        try:
            await provider.terminate_session(session)
        except RemoteProviderError as e:
            logger.warning("Failed to terminate validation session: %s", e)

    logger.info("Validated key %s (kid %s, type %s)", ref, key.kid, key.obj_type)
    return key
