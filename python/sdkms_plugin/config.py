"""
Plugin configuration.

This module provides:
- KeyRefKind / KeyReference: A key addressed by name or by id
- PluginConfiguration: Immutable startup configuration
- load_config: Read configuration from a JSON file with environment overrides

Configuration is built once at startup and shared read-only by every call.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

from dotenv import find_dotenv, load_dotenv

from .errors import ConfigError, ConflictingFieldsError, FieldMissingError

DEFAULT_CONFIG_PATH = "/etc/fortanix/k8s-sdkms-plugin.json"
DEFAULT_REQUEST_TIMEOUT = 30.0

# Environment variable -> config file key
ENV_OVERRIDES: Dict[str, str] = {
    "SDKMS_ENDPOINT": "sdkms_endpoint",
    "SDKMS_API_KEY": "api_key",
    "SDKMS_KEY_NAME": "key_name",
    "SDKMS_KEY_ID": "key_id",
    "SDKMS_SOCKET_FILE": "socket_file",
}


class KeyRefKind(Enum):
    """How a key is addressed at the custodian."""

    BY_NAME = "name"
    BY_ID = "kid"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class KeyReference:
    """A key addressed either by its name or by its id."""

    kind: KeyRefKind
    value: str

    @classmethod
    def by_name(cls, name: str) -> KeyReference:
        return cls(KeyRefKind.BY_NAME, name)

    @classmethod
    def by_id(cls, kid: str) -> KeyReference:
        return cls(KeyRefKind.BY_ID, kid)

    def to_descriptor(self) -> Dict[str, str]:
        """Custodian-side key descriptor, e.g. ``{"kid": "..."}``."""
        return {self.kind.value: self.value}

    def __str__(self) -> str:
        return f"{self.kind.name.lower()}:{self.value}"


@dataclass(frozen=True)
class PluginConfiguration:
    """
    Immutable plugin configuration.

    Exactly one of key_name / key_id must be set. Empty strings are
    normalized to None by from_mapping so they count as absent.
    """

    endpoint: Optional[str]
    api_key: Optional[str] = field(default=None, repr=False)
    socket_file: Optional[str] = None
    key_name: Optional[str] = None
    key_id: Optional[str] = None
    legacy_fingerprint: bool = False
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> PluginConfiguration:
        """
        Build a configuration from config-file keys.

        Unknown keys are ignored. Presence of required fields is not checked
        here; see check_fields.

        Raises:
            ConfigError: If a value has the wrong type
        """
        timeout = data.get("request_timeout", DEFAULT_REQUEST_TIMEOUT)
        if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
            raise ConfigError("`request_timeout` must be a positive number")
        legacy = data.get("legacy_fingerprint", False)
        if not isinstance(legacy, bool):
            raise ConfigError("`legacy_fingerprint` must be a boolean")

        return cls(
            endpoint=_optional_str(data, "sdkms_endpoint"),
            api_key=_optional_str(data, "api_key"),
            socket_file=_optional_str(data, "socket_file"),
            key_name=_optional_str(data, "key_name"),
            key_id=_optional_str(data, "key_id"),
            legacy_fingerprint=legacy,
            request_timeout=float(timeout),
        )

    def check_fields(self) -> None:
        """
        Verify required fields locally, without contacting the custodian.

        Raises:
            FieldMissingError: If a required field is missing or empty
            ConflictingFieldsError: If both key_name and key_id are set
        """
        for attr, key in (
            ("endpoint", "sdkms_endpoint"),
            ("api_key", "api_key"),
            ("socket_file", "socket_file"),
        ):
            if not getattr(self, attr):
                raise FieldMissingError(f"required field `{key}` is missing")
        if not self.key_name and not self.key_id:
            raise FieldMissingError("neither `key_name` nor `key_id` was specified")
        if self.key_name and self.key_id:
            raise ConflictingFieldsError(
                "cannot specify `key_name` and `key_id` at the same time"
            )

    @property
    def key_reference(self) -> KeyReference:
        """The configured key; call check_fields first."""
        if self.key_name:
            return KeyReference.by_name(self.key_name)
        if self.key_id:
            return KeyReference.by_id(self.key_id)
        raise FieldMissingError("neither `key_name` nor `key_id` was specified")


def _optional_str(data: Mapping[str, Any], key: str) -> Optional[str]:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ConfigError(f"`{key}` must be a string, got {type(value).__name__}")
    return value or None


def load_config(
    path: Union[str, Path] = DEFAULT_CONFIG_PATH,
    environ: Optional[Mapping[str, str]] = None,
) -> PluginConfiguration:
    """
    Load configuration from a JSON file, then apply environment overrides.

    A ``.env`` file in the working directory is loaded first when present.
    The file may be absent if the environment supplies every field.

    Args:
        path: JSON config file location
        environ: Environment mapping (defaults to os.environ)

    Returns:
        PluginConfiguration (fields not yet checked)

    Raises:
        ConfigError: If the file cannot be read or parsed
    """
    if environ is None:
        load_dotenv(find_dotenv(usecwd=True))
        environ = os.environ

    config_path = Path(path)
    data: Dict[str, Any] = {}
    if config_path.exists():
        try:
            data = json.loads(config_path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError) as e:
            raise ConfigError(f"failed to read config file {config_path}: {e}") from e
        except json.JSONDecodeError as e:
            raise ConfigError(f"failed to parse config file {config_path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"config file {config_path} must contain a JSON object")
    elif not any(env in environ for env in ENV_OVERRIDES):
        raise ConfigError(f"config file {config_path} does not exist")

    for env, key in ENV_OVERRIDES.items():
        if env in environ:
            data[key] = environ[env]

    return PluginConfiguration.from_mapping(data)
