"""
Tests for startup configuration validation.
"""

from __future__ import annotations

import dataclasses
import logging

import pytest

from sdkms_plugin import (
    AuthFailureError,
    ConflictingFieldsError,
    FieldMissingError,
    InMemoryProvider,
    KeyLookupError,
    PluginConfiguration,
    RemoteProviderError,
    Session,
    WrongKeyTypeError,
    validate_config,
)


def _provider(obj_type: str = "AES", **kwargs) -> InMemoryProvider:
    provider = InMemoryProvider(api_key="k1", **kwargs)
    provider.add_key(name="k8s-secrets", kid="abc", obj_type=obj_type)
    return provider


async def test_aes_key_is_accepted(config: PluginConfiguration) -> None:
    provider = _provider("AES")

    key = await validate_config(config, provider)

    assert key.kid == "abc"
    assert key.obj_type == "AES"
    assert [name for name, _ in provider.calls] == [
        "authenticate",
        "lookup_key",
        "terminate_session",
    ]
    assert provider.open_sessions == 0


async def test_rsa_key_is_rejected(config: PluginConfiguration) -> None:
    provider = _provider("RSA")

    with pytest.raises(WrongKeyTypeError, match="RSA"):
        await validate_config(config, provider)

    assert provider.open_sessions == 0
    assert provider.calls[-1] == ("terminate_session", None)


async def test_lookup_by_name(config: PluginConfiguration) -> None:
    provider = _provider()
    by_name = dataclasses.replace(config, key_id=None, key_name="k8s-secrets")

    key = await validate_config(by_name, provider)

    assert key.kid == "abc"
    assert ("lookup_key", "k8s-secrets") in provider.calls


async def test_bad_credential(config: PluginConfiguration) -> None:
    provider = _provider(valid_api_keys=["someone-else"])

    with pytest.raises(AuthFailureError, match="api_key"):
        await validate_config(config, provider)

    assert provider.calls == [("authenticate", None)]


async def test_unknown_key(config: PluginConfiguration) -> None:
    provider = _provider()
    missing = dataclasses.replace(config, key_id="does-not-exist")

    with pytest.raises(KeyLookupError):
        await validate_config(missing, provider)

    assert provider.open_sessions == 0


@pytest.mark.parametrize(
    "changes, error",
    [
        ({"key_name": "k8s-secrets"}, ConflictingFieldsError),
        ({"key_id": None}, FieldMissingError),
        ({"endpoint": None}, FieldMissingError),
        ({"api_key": None}, FieldMissingError),
        ({"socket_file": None}, FieldMissingError),
    ],
)
async def test_field_errors_skip_remote_calls(
    config: PluginConfiguration, changes, error
) -> None:
    provider = _provider()

    with pytest.raises(error):
        await validate_config(dataclasses.replace(config, **changes), provider)

    assert provider.calls == []


class _SessionLeakProvider(InMemoryProvider):
    async def terminate_session(self, session: Session) -> None:
        await super().terminate_session(session)
        raise RemoteProviderError("terminate_session", "connection reset")


async def test_terminate_failure_does_not_mask_result(
    config: PluginConfiguration, caplog: pytest.LogCaptureFixture
) -> None:
    provider = _SessionLeakProvider(api_key="k1")
    provider.add_key(kid="abc")

    with caplog.at_level(logging.WARNING, logger="sdkms_plugin.validator"):
        key = await validate_config(config, provider)

    assert key.kid == "abc"
    assert "Failed to terminate validation session" in caplog.text


async def test_terminate_failure_keeps_original_error(config: PluginConfiguration) -> None:
    provider = _SessionLeakProvider(api_key="k1")
    provider.add_key(kid="abc", obj_type="EC")

    with pytest.raises(WrongKeyTypeError):
        await validate_config(config, provider)
