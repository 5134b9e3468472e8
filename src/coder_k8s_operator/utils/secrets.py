"""Utilities for managing Kubernetes secrets."""

from __future__ import annotations

import base64
from typing import Any

from kubernetes import client

from ..constants import FIELD_MANAGER
from .converge import merge_owner_references, owner_reference, to_dict
from .rate_limit import rate_limit_k8s


class SecretValueError(ValueError):
    """A credential could not be read from a secret."""

    def __init__(self, message: str, namespace: str, name: str, key: str | None = None):
        super().__init__(message)
        self.namespace = namespace
        self.name = name
        self.key = key


class SecretNotFoundError(SecretValueError):
    pass


class SecretValueMissingError(SecretValueError):
    pass


class SecretValueEmptyError(SecretValueError):
    pass


def _decode(value: str | bytes) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return base64.b64decode(value).decode("utf-8")


def _encode(value: str) -> str:
    return base64.b64encode(value.encode("utf-8")).decode("utf-8")


def read_secret(api: client.CoreV1Api, namespace: str, secret_name: str) -> dict[str, Any] | None:
    """Read a secret as a camelCase dict, returning None when it does not exist."""
    try:
        secret = rate_limit_k8s(api.read_namespaced_secret)(name=secret_name, namespace=namespace)
    except client.exceptions.ApiException as e:
        if e.status == 404:
            return None
        raise
    return to_dict(api, secret)


def read_secret_value(
    api: client.CoreV1Api,
    namespace: str,
    secret_name: str,
    key: str,
) -> str:
    """Get a non-empty value from a Kubernetes secret.

    Only ``key`` is decoded, so unrelated binary entries in the same secret
    do not matter.

    Args:
        api: Kubernetes API client
        namespace: Namespace of the secret
        secret_name: Name of the secret
        key: Key in the secret

    Returns:
        Secret value with surrounding whitespace removed

    Raises:
        SecretNotFoundError: If the secret does not exist
        SecretValueMissingError: If the key is absent
        SecretValueEmptyError: If the value is blank
    """
    secret = read_secret(api, namespace, secret_name)
    if secret is None:
        raise SecretNotFoundError(
            f"Secret '{secret_name}' not found in namespace '{namespace}'", namespace, secret_name, key
        )
    data = secret.get("data") or {}
    if key not in data:
        raise SecretValueMissingError(
            f"Key '{key}' not found in secret '{secret_name}'", namespace, secret_name, key
        )
    value = _decode(data[key]).strip()
    if not value:
        raise SecretValueEmptyError(
            f"Key '{key}' in secret '{secret_name}' is empty", namespace, secret_name, key
        )
    return value


def ensure_secret(
    api: client.CoreV1Api,
    namespace: str,
    secret_name: str,
    key: str,
    value: str,
    labels: dict[str, str],
    owner: dict[str, Any],
) -> str:
    """Create or update an owned Opaque secret holding credential material.

    ``value`` is written only when non-empty, so an existing credential is kept
    when the caller has no fresh material. Other data keys are carried through
    as stored.

    Args:
        api: Kubernetes API client
        namespace: Namespace for the secret
        secret_name: Name of the secret
        key: Data key holding the credential
        value: New credential material, or "" to keep the stored one
        labels: Labels to stamp on the secret
        owner: Body of the owning custom resource

    Returns:
        The credential stored under ``key`` after the write

    Raises:
        SecretValueEmptyError: If no material is stored under ``key`` afterwards
    """
    existing = read_secret(api, namespace, secret_name)
    current_data = dict((existing or {}).get("data") or {})
    data = dict(current_data)
    if value:
        data[key] = _encode(value)
    stored = _decode(data[key]) if data.get(key) else ""
    if not stored:
        raise SecretValueEmptyError(
            f"Secret '{secret_name}' has no value for key '{key}'", namespace, secret_name, key
        )

    if existing is None:
        body = {
            "apiVersion": "v1",
            "kind": "Secret",
            "metadata": {
                "name": secret_name,
                "namespace": namespace,
                "labels": dict(labels),
                "ownerReferences": [owner_reference(owner)],
            },
            "type": "Opaque",
            "data": data,
        }
        rate_limit_k8s(api.create_namespaced_secret)(
            namespace=namespace,
            body=body,
            field_manager=FIELD_MANAGER,
        )
        return stored

    existing_meta = existing.get("metadata") or {}
    current_refs = existing_meta.get("ownerReferences") or []
    owner_refs = merge_owner_references(current_refs, owner)
    current_labels = existing_meta.get("labels") or {}
    merged_labels = {**current_labels, **labels}

    if merged_labels == current_labels and owner_refs == current_refs and data == current_data:
        return stored

    patch = {
        "metadata": {"labels": merged_labels, "ownerReferences": owner_refs},
        "data": data,
    }
    rate_limit_k8s(api.patch_namespaced_secret)(
        name=secret_name,
        namespace=namespace,
        body=patch,
        field_manager=FIELD_MANAGER,
    )
    return stored


def delete_secret(
    api: client.CoreV1Api,
    namespace: str,
    secret_name: str,
) -> bool:
    """Delete a Kubernetes secret.

    Returns:
        True if a secret was deleted, False if it was already gone
    """
    try:
        rate_limit_k8s(api.delete_namespaced_secret)(name=secret_name, namespace=namespace)
    except client.exceptions.ApiException as e:
        if e.status == 404:
            return False
        raise
    return True


def is_controlled_by(secret: dict[str, Any], owner: dict[str, Any]) -> bool:
    """Whether ``owner`` is the controller owner reference of ``secret``."""
    owner_meta = owner.get("metadata", {})
    for ref in (secret.get("metadata") or {}).get("ownerReferences") or []:
        if not ref.get("controller"):
            continue
        return (
            ref.get("apiVersion") == owner.get("apiVersion")
            and ref.get("kind") == owner.get("kind")
            and ref.get("name") == owner_meta.get("name")
            and ref.get("uid") == owner_meta.get("uid")
        )
    return False
