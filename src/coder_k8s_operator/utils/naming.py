"""Deterministic, length-bounded names for child resources.

Whenever a derived name would exceed its ceiling, the overflowing tail of the
parent name is replaced by ``-<fnv32a(full name)>``. The hash is always taken
over the untruncated input so two long names sharing a prefix still map to
different results.
"""

from __future__ import annotations

from typing import Any

from ..constants import (
    APP_NAME_CONTROL_PLANE,
    APP_NAME_PROVISIONER,
    APP_NAME_WORKSPACE_PROXY,
    DEFAULT_PROVISIONER_KEY_SECRET_KEY,
    LABEL_INSTANCE,
    LABEL_MANAGED_BY,
    LABEL_NAME,
    MANAGED_BY_VALUE,
    MAX_KEY_NAME_LENGTH,
    MAX_RESOURCE_NAME_LENGTH,
    MAX_SECRET_NAME_LENGTH,
    OPERATOR_TOKEN_NAME_PREFIX,
    OPERATOR_TOKEN_SECRET_SUFFIX,
    PROVISIONER_KEY_SECRET_SUFFIX,
    PROVISIONER_NAME_PREFIX,
    PROVISIONER_SERVICE_ACCOUNT_SUFFIX,
    WORKSPACE_PROXY_NAME_PREFIX,
)

_FNV32_OFFSET = 0x811C9DC5
_FNV32_PRIME = 0x01000193
_FNV64_OFFSET = 0xCBF29CE484222325
_FNV64_PRIME = 0x100000001B3


def fnv32a(data: bytes) -> int:
    """32-bit FNV-1a."""
    h = _FNV32_OFFSET
    for byte in data:
        h ^= byte
        h = (h * _FNV32_PRIME) & 0xFFFFFFFF
    return h


def fnv64a(data: bytes) -> int:
    """64-bit FNV-1a."""
    h = _FNV64_OFFSET
    for byte in data:
        h ^= byte
        h = (h * _FNV64_PRIME) & 0xFFFFFFFFFFFFFFFF
    return h


def short_hash(value: str) -> str:
    return f"{fnv32a(value.encode('utf-8')):08x}"


def truncate_with_hash(name: str, limit: int, prefix: str = "", suffix: str = "") -> str:
    """Build ``prefix + name + suffix`` bounded to ``limit`` characters.

    Args:
        name: Parent name, hashed in full on overflow
        limit: Maximum length of the result
        prefix: Fixed leading part
        suffix: Fixed trailing part

    Returns:
        The candidate itself when it fits, otherwise
        ``prefix + name[:available] + "-" + hash + suffix``
    """
    candidate = f"{prefix}{name}{suffix}"
    if len(candidate) <= limit:
        return candidate

    digest = short_hash(name)
    available = max(limit - len(prefix) - len(suffix) - len(digest) - 1, 1)
    return f"{prefix}{name[:available]}-{digest}{suffix}"


def provisioner_resource_name(name: str) -> str:
    return truncate_with_hash(name, MAX_RESOURCE_NAME_LENGTH, prefix=PROVISIONER_NAME_PREFIX)


def provisioner_service_account_name(name: str) -> str:
    return truncate_with_hash(name, MAX_RESOURCE_NAME_LENGTH, suffix=PROVISIONER_SERVICE_ACCOUNT_SUFFIX)


def workspace_proxy_resource_name(name: str) -> str:
    return truncate_with_hash(name, MAX_RESOURCE_NAME_LENGTH, prefix=WORKSPACE_PROXY_NAME_PREFIX)


def instance_label_value(name: str) -> str:
    return truncate_with_hash(name, MAX_RESOURCE_NAME_LENGTH)


def provisioner_key_config(name: str, key_spec: dict[str, Any] | None) -> tuple[str, str, str]:
    """Resolve the provisioner key name, its secret name and the secret data key.

    Args:
        name: CoderProvisioner name
        key_spec: The ``spec.key`` block, possibly empty

    Returns:
        Tuple of (key name, secret name, secret data key)
    """
    key_spec = key_spec or {}

    key_name = key_spec.get("name") or name
    key_name = truncate_with_hash(key_name, MAX_KEY_NAME_LENGTH)

    secret_name = key_spec.get("secretName") or truncate_with_hash(
        name, MAX_SECRET_NAME_LENGTH, suffix=PROVISIONER_KEY_SECRET_SUFFIX
    )
    secret_key = key_spec.get("secretKey") or DEFAULT_PROVISIONER_KEY_SECRET_KEY

    return key_name, secret_name, secret_key


def operator_token_secret_name(name: str, configured: str | None = None) -> str:
    """Name of the secret holding the control plane's operator token."""
    configured = (configured or "").strip()
    if configured:
        return configured
    return truncate_with_hash(name, MAX_RESOURCE_NAME_LENGTH, suffix=OPERATOR_TOKEN_SECRET_SUFFIX)


def operator_token_db_name(namespace: str, name: str) -> str:
    """Token name recorded in the platform database for one control plane."""
    digest = fnv64a(f"{namespace}\0{name}".encode("utf-8"))
    return f"{OPERATOR_TOKEN_NAME_PREFIX}-{digest:016x}"


def _labels(app_name: str, name: str) -> dict[str, str]:
    return {
        LABEL_NAME: app_name,
        LABEL_INSTANCE: instance_label_value(name),
        LABEL_MANAGED_BY: MANAGED_BY_VALUE,
    }


def control_plane_labels(name: str) -> dict[str, str]:
    return _labels(APP_NAME_CONTROL_PLANE, name)


def provisioner_labels(name: str) -> dict[str, str]:
    return _labels(APP_NAME_PROVISIONER, name)


def workspace_proxy_labels(name: str) -> dict[str, str]:
    return _labels(APP_NAME_WORKSPACE_PROXY, name)
