"""Manifests for CoderWorkspaceProxy children."""

from __future__ import annotations

from typing import Any

from ..constants import (
    DEFAULT_IMAGE,
    DEFAULT_REPLICAS,
    WORKSPACE_PROXY_PORT,
    WORKSPACE_PROXY_TARGET_PORT,
)
from ..utils.naming import workspace_proxy_labels, workspace_proxy_resource_name
from .common import deployment_manifest, image_pull_secrets, secret_env, service_manifest


def build_workspace_proxy_deployment(
    name: str,
    namespace: str,
    spec: dict[str, Any],
    primary_access_url: str,
    token_secret_name: str,
    token_secret_key: str,
) -> dict[str, Any]:
    args = ["wsproxy", "server", f"--http-address=0.0.0.0:{WORKSPACE_PROXY_TARGET_PORT}"]
    if spec.get("derpOnly"):
        args.append("--derp-only")
    args.extend(spec.get("extraArgs") or [])

    env = [
        {"name": "CODER_PRIMARY_ACCESS_URL", "value": primary_access_url},
        secret_env("CODER_PROXY_SESSION_TOKEN", token_secret_name, token_secret_key),
        *(spec.get("extraEnv") or []),
    ]
    replicas = spec.get("replicas")
    pod_spec = {
        "imagePullSecrets": image_pull_secrets(spec),
        "containers": [{
            "name": "workspace-proxy",
            "image": spec.get("image") or DEFAULT_IMAGE,
            "args": args,
            "env": env,
            "ports": [{"name": "http", "containerPort": WORKSPACE_PROXY_TARGET_PORT, "protocol": "TCP"}],
        }],
    }
    return deployment_manifest(
        workspace_proxy_resource_name(name),
        namespace,
        workspace_proxy_labels(name),
        DEFAULT_REPLICAS if replicas is None else int(replicas),
        pod_spec,
    )


def build_workspace_proxy_service(name: str, namespace: str, spec: dict[str, Any]) -> dict[str, Any]:
    return service_manifest(
        workspace_proxy_resource_name(name),
        namespace,
        workspace_proxy_labels(name),
        spec.get("service"),
        WORKSPACE_PROXY_PORT,
        WORKSPACE_PROXY_TARGET_PORT,
    )
