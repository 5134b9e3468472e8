"""Manifests for CoderProvisioner children."""

from __future__ import annotations

from typing import Any

from ..constants import (
    ANNOTATION_PROVISIONER_KEY_CHECKSUM,
    DEFAULT_ORGANIZATION_NAME,
    DEFAULT_REPLICAS,
    DEFAULT_TERMINATION_GRACE_PERIOD_SECONDS,
)
from ..utils.naming import provisioner_labels, provisioner_resource_name
from .common import deployment_manifest, image_pull_secrets, prune, secret_env

_ROLE_VERBS = ["get", "list", "watch", "create", "update", "patch", "delete"]


def build_service_account(name: str, namespace: str, service_account_name: str) -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "ServiceAccount",
        "metadata": {
            "name": service_account_name,
            "namespace": namespace,
            "labels": provisioner_labels(name),
        },
    }


def build_role(name: str, namespace: str) -> dict[str, Any]:
    """Role letting the provisioner daemon manage workspace pods and volumes."""
    return {
        "apiVersion": "rbac.authorization.k8s.io/v1",
        "kind": "Role",
        "metadata": {
            "name": provisioner_resource_name(name),
            "namespace": namespace,
            "labels": provisioner_labels(name),
        },
        "rules": [{
            "apiGroups": [""],
            "resources": ["pods", "persistentvolumeclaims"],
            "verbs": list(_ROLE_VERBS),
        }],
    }


def build_role_binding(name: str, namespace: str, service_account_name: str) -> dict[str, Any]:
    resource_name = provisioner_resource_name(name)
    return {
        "apiVersion": "rbac.authorization.k8s.io/v1",
        "kind": "RoleBinding",
        "metadata": {
            "name": resource_name,
            "namespace": namespace,
            "labels": provisioner_labels(name),
        },
        "roleRef": {
            "apiGroup": "rbac.authorization.k8s.io",
            "kind": "Role",
            "name": resource_name,
        },
        "subjects": [{
            "kind": "ServiceAccount",
            "name": service_account_name,
            "namespace": namespace,
        }],
    }


def build_provisioner_deployment(
    name: str,
    namespace: str,
    spec: dict[str, Any],
    image: str,
    coder_url: str,
    organization_name: str,
    secret_name: str,
    secret_key: str,
    service_account_name: str,
    secret_checksum: str,
) -> dict[str, Any]:
    """Deployment running ``coder provisionerd start``.

    The pod template carries a checksum of the key material, so a rotated key
    rolls the pods.
    """
    env = [
        {"name": "CODER_URL", "value": coder_url},
        secret_env("CODER_PROVISIONER_DAEMON_KEY", secret_name, secret_key),
    ]
    if organization_name and organization_name != DEFAULT_ORGANIZATION_NAME:
        env.append({"name": "CODER_ORGANIZATION", "value": organization_name})
    env.extend(spec.get("extraEnv") or [])

    replicas = spec.get("replicas")
    grace_period = spec.get("terminationGracePeriodSeconds")
    pod_spec = prune({
        "serviceAccountName": service_account_name,
        "imagePullSecrets": image_pull_secrets(spec),
        "terminationGracePeriodSeconds": (
            DEFAULT_TERMINATION_GRACE_PERIOD_SECONDS if grace_period is None else int(grace_period)
        ),
        "containers": [{
            "name": "provisioner",
            "image": image,
            "args": ["provisionerd", "start", *(spec.get("extraArgs") or [])],
            "env": env,
            "resources": spec.get("resources"),
        }],
    })
    return deployment_manifest(
        provisioner_resource_name(name),
        namespace,
        provisioner_labels(name),
        DEFAULT_REPLICAS if replicas is None else int(replicas),
        pod_spec,
        pod_annotations={ANNOTATION_PROVISIONER_KEY_CHECKSUM: secret_checksum},
    )
