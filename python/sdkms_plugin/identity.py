"""
Fingerprint of the serving key identity.

Callers receive the fingerprint with every Encrypt/Status response and hand
it back on Decrypt, which lets them notice that the instance now serves a
different endpoint or key than the one that produced their ciphertext.
"""

from __future__ import annotations

import hashlib
import struct
from typing import Optional

from .config import PluginConfiguration

_ABSENT = b"\x00"
_PRESENT = b"\x01"


def compute_fingerprint(config: PluginConfiguration) -> str:
    """
    Lower-case hex SHA-256 over endpoint, key id and key name.

    Each field is written as ``label || presence byte || u64 length || value``
    so that no two distinct configurations hash the same input. When
    ``config.legacy_fingerprint`` is set the fields are concatenated bare
    instead, matching fingerprints issued by older deployments.
    """
    if config.legacy_fingerprint:
        return _legacy_fingerprint(config)

    h = hashlib.sha256()
    for label, value in (
        (b"endpoint", config.endpoint),
        (b"key_id", config.key_id),
        (b"key_name", config.key_name),
    ):
        h.update(label)
        _write_field(h, value)
    return h.hexdigest()


def _write_field(h, value: Optional[str]) -> None:
    if value is None:
        h.update(_ABSENT)
        return
    encoded = value.encode("utf-8")
    h.update(_PRESENT)
    h.update(struct.pack(">Q", len(encoded)))
    h.update(encoded)


def _legacy_fingerprint(config: PluginConfiguration) -> str:
    # Absent fields contribute no bytes
    h = hashlib.sha256()
    for value in (config.endpoint, config.key_id, config.key_name):
        if value is not None:
            h.update(value.encode("utf-8"))
    return h.hexdigest()
