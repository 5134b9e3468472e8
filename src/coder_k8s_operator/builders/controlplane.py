"""Manifests for CoderControlPlane children."""

from __future__ import annotations

from typing import Any

from ..constants import (
    CONTROL_PLANE_PORT,
    CONTROL_PLANE_TARGET_PORT,
    DEFAULT_IMAGE,
    DEFAULT_REPLICAS,
)
from ..utils.naming import control_plane_labels
from .common import deployment_manifest, image_pull_secrets, service_manifest


def build_control_plane_deployment(name: str, namespace: str, spec: dict[str, Any]) -> dict[str, Any]:
    """Deployment running coderd."""
    labels = control_plane_labels(name)
    replicas = spec.get("replicas")
    container = {
        "name": "coder",
        "image": spec.get("image") or DEFAULT_IMAGE,
        "args": [f"--http-address=0.0.0.0:{CONTROL_PLANE_TARGET_PORT}", *(spec.get("extraArgs") or [])],
        "env": list(spec.get("extraEnv") or []),
        "ports": [{"name": "http", "containerPort": CONTROL_PLANE_TARGET_PORT, "protocol": "TCP"}],
    }
    pod_spec = {
        "imagePullSecrets": image_pull_secrets(spec),
        "containers": [container],
    }
    return deployment_manifest(
        name,
        namespace,
        labels,
        DEFAULT_REPLICAS if replicas is None else int(replicas),
        pod_spec,
    )


def build_control_plane_service(name: str, namespace: str, spec: dict[str, Any]) -> dict[str, Any]:
    return service_manifest(
        name,
        namespace,
        control_plane_labels(name),
        spec.get("service"),
        CONTROL_PLANE_PORT,
        CONTROL_PLANE_TARGET_PORT,
    )


def control_plane_url(service: dict[str, Any]) -> str:
    """In-cluster URL derived from the reconciled service."""
    meta = service["metadata"]
    port = service["spec"]["ports"][0]["port"]
    return f"http://{meta['name']}.{meta['namespace']}.svc.cluster.local:{port}"
