"""Shared utilities for handlers."""

from __future__ import annotations

import threading
import time
from typing import Any

from kubernetes import client, config

from .. import metrics
from ..constants import API_GROUP, API_GROUP_VERSION, API_VERSION, PLURAL_CONTROL_PLANE
from ..utils.errors import invariant
from ..utils.rate_limit import rate_limit_k8s

_config_lock = threading.Lock()
_config_loaded = False


def _load_config() -> None:
    global _config_loaded
    with _config_lock:
        if _config_loaded:
            return
        try:
            config.load_incluster_config()
        except config.ConfigException:
            config.load_kube_config()
        _config_loaded = True


def get_k8s_clients() -> dict[str, Any]:
    """Get Kubernetes API clients.

    Returns:
        Dict with "core", "apps", "rbac" and "custom" API instances
    """
    _load_config()
    return {
        "core": client.CoreV1Api(),
        "apps": client.AppsV1Api(),
        "rbac": client.RbacAuthorizationV1Api(),
        "custom": client.CustomObjectsApi(),
    }


def get_control_plane(api: client.CustomObjectsApi, namespace: str, name: str) -> dict[str, Any]:
    """Get a CoderControlPlane by name.

    Raises:
        client.exceptions.ApiException: If the control plane is missing or the API fails
    """
    start_time = time.time()
    try:
        obj = rate_limit_k8s(api.get_namespaced_custom_object)(
            group=API_GROUP,
            version=API_VERSION,
            namespace=namespace,
            plural=PLURAL_CONTROL_PLANE,
            name=name,
        )
        metrics.api_call_total.labels(api_type="k8s", operation="get_control_plane", result="success").inc()
        return obj
    except Exception:
        metrics.api_call_total.labels(api_type="k8s", operation="get_control_plane", result="error").inc()
        raise
    finally:
        duration = time.time() - start_time
        metrics.api_call_duration_seconds.labels(api_type="k8s", operation="get_control_plane").observe(duration)


def assert_identity(meta: dict[str, Any], name: str | None, namespace: str | None) -> None:
    """The delivered object must be the one the event was raised for."""
    invariant(
        name is None or meta.get("name") == name,
        f"fetched object name {meta.get('name')!r} does not match {name!r}",
    )
    invariant(
        namespace is None or meta.get("namespace") == namespace,
        f"fetched object namespace {meta.get('namespace')!r} does not match {namespace!r}",
    )


def owner_body(kind: str, meta: dict[str, Any]) -> dict[str, Any]:
    """Minimal body of a custom resource for owner references."""
    return {
        "apiVersion": API_GROUP_VERSION,
        "kind": kind,
        "metadata": {
            "name": meta["name"],
            "namespace": meta.get("namespace"),
            "uid": meta["uid"],
        },
    }


def secret_key_ref(name: str, key: str) -> dict[str, str]:
    return {"name": name, "key": key}


def requeue_after(current: float | None, delay: float | None) -> float | None:
    """Merge two requeue requests, keeping the sooner one."""
    if delay is None or delay <= 0:
        return current
    if current is None:
        return delay
    return min(current, delay)
