"""Manifest fragments shared by all workload builders."""

from __future__ import annotations

from typing import Any

from ..constants import DEFAULT_SERVICE_TYPE


def prune(value: Any) -> Any:
    """Drop None and empty collections so desired state only names set fields."""
    if isinstance(value, dict):
        pruned = {k: prune(v) for k, v in value.items()}
        return {k: v for k, v in pruned.items() if v is not None and v != {} and v != []}
    if isinstance(value, list):
        return [prune(v) for v in value]
    return value


def secret_env(name: str, secret_name: str, key: str) -> dict[str, Any]:
    return {"name": name, "valueFrom": {"secretKeyRef": {"name": secret_name, "key": key}}}


def image_pull_secrets(spec: dict[str, Any]) -> list[dict[str, Any]]:
    return [dict(s) for s in spec.get("imagePullSecrets") or []]


def deployment_manifest(
    name: str,
    namespace: str,
    labels: dict[str, str],
    replicas: int,
    pod_spec: dict[str, Any],
    pod_annotations: dict[str, str] | None = None,
) -> dict[str, Any]:
    return prune({
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {"name": name, "namespace": namespace, "labels": dict(labels)},
        "spec": {
            "replicas": replicas,
            "selector": {"matchLabels": dict(labels)},
            "template": {
                "metadata": {"labels": dict(labels), "annotations": pod_annotations},
                "spec": pod_spec,
            },
        },
    })


def service_manifest(
    name: str,
    namespace: str,
    labels: dict[str, str],
    service_spec: dict[str, Any] | None,
    default_port: int,
    target_port: int,
) -> dict[str, Any]:
    """HTTP service in front of a workload.

    Args:
        name: Service name
        namespace: Namespace
        labels: Labels, also used as the selector
        service_spec: The ``spec.service`` block (type, port, annotations)
        default_port: Port used when the spec leaves it unset
        target_port: Container port
    """
    service_spec = service_spec or {}
    return prune({
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "labels": dict(labels),
            "annotations": dict(service_spec.get("annotations") or {}),
        },
        "spec": {
            "type": service_spec.get("type") or DEFAULT_SERVICE_TYPE,
            "selector": dict(labels),
            "ports": [{
                "name": "http",
                "port": int(service_spec.get("port") or default_port),
                "protocol": "TCP",
                "targetPort": target_port,
            }],
        },
    })


def ready_replicas(deployment: dict[str, Any] | None) -> int:
    return int(((deployment or {}).get("status") or {}).get("readyReplicas") or 0)
