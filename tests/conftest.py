"""Shared fixtures: in-memory Kubernetes API groups and a fake Coder API."""

from __future__ import annotations

import base64
import copy
import itertools
from typing import Any
from unittest.mock import patch

import pytest
from kubernetes.client.exceptions import ApiException

from coder_k8s_operator.services.coder import Entitlement, Entitlements, ProvisionerKeyResult, WorkspaceProxyResult


def b64(value: str | bytes) -> str:
    if isinstance(value, str):
        value = value.encode("utf-8")
    return base64.b64encode(value).decode("utf-8")


def get_condition(conditions: list[dict[str, Any]] | None, condition_type: str) -> dict[str, Any] | None:
    for cond in conditions or []:
        if cond.get("type") == condition_type:
            return cond
    return None


class FakeTypedApi:
    """Stand-in for CoreV1Api, AppsV1Api or RbacAuthorizationV1Api.

    Dispatches ``read_/create_/replace_/patch_/delete_<suffix>`` calls onto a
    dict keyed by (suffix, namespace, name) and records every mutating call.
    """

    def __init__(self) -> None:
        self.objects: dict[tuple[str, str, str], dict[str, Any]] = {}
        self.calls: list[tuple[str, str, str]] = []
        self._versions = itertools.count(1)

    def __getattr__(self, attr: str) -> Any:
        for verb in ("read", "create", "replace", "patch", "delete"):
            prefix = f"{verb}_"
            if attr.startswith(prefix):
                suffix = attr[len(prefix):]
                handler = getattr(self, f"_{verb}")

                def call(*args: Any, **kwargs: Any) -> Any:
                    return handler(suffix, *args, **kwargs)

                return call
        raise AttributeError(attr)

    def _not_found(self) -> ApiException:
        return ApiException(status=404, reason="Not Found")

    def _read(self, suffix: str, name: str, namespace: str, **_: Any) -> dict[str, Any]:
        obj = self.objects.get((suffix, namespace, name))
        if obj is None:
            raise self._not_found()
        return copy.deepcopy(obj)

    def _create(self, suffix: str, namespace: str, body: dict[str, Any], **_: Any) -> dict[str, Any]:
        name = body["metadata"]["name"]
        if (suffix, namespace, name) in self.objects:
            raise ApiException(status=409, reason="Conflict")
        self.calls.append(("create", suffix, name))
        obj = copy.deepcopy(body)
        obj["metadata"]["resourceVersion"] = str(next(self._versions))
        self.objects[(suffix, namespace, name)] = obj
        return copy.deepcopy(obj)

    def _replace(self, suffix: str, name: str, namespace: str, body: dict[str, Any], **_: Any) -> dict[str, Any]:
        current = self.objects.get((suffix, namespace, name))
        if current is None:
            raise self._not_found()
        self.calls.append(("replace", suffix, name))
        obj = copy.deepcopy(body)
        obj["metadata"]["resourceVersion"] = str(next(self._versions))
        if "status" in current:
            obj["status"] = current["status"]
        self.objects[(suffix, namespace, name)] = obj
        return copy.deepcopy(obj)

    def _patch(self, suffix: str, name: str, namespace: str, body: dict[str, Any], **_: Any) -> dict[str, Any]:
        current = self.objects.get((suffix, namespace, name))
        if current is None:
            raise self._not_found()
        self.calls.append(("patch", suffix, name))
        for field, value in body.items():
            if isinstance(value, dict) and isinstance(current.get(field), dict):
                current[field].update(copy.deepcopy(value))
            else:
                current[field] = copy.deepcopy(value)
        return copy.deepcopy(current)

    def _delete(self, suffix: str, name: str, namespace: str, **_: Any) -> dict[str, Any]:
        if (suffix, namespace, name) not in self.objects:
            raise self._not_found()
        self.calls.append(("delete", suffix, name))
        return self.objects.pop((suffix, namespace, name))

    # Test helpers

    def put_secret(
        self,
        namespace: str,
        name: str,
        data: dict[str, str | bytes],
        owner_references: list[dict[str, Any]] | None = None,
    ) -> None:
        self.objects[("namespaced_secret", namespace, name)] = {
            "apiVersion": "v1",
            "kind": "Secret",
            "metadata": {
                "name": name,
                "namespace": namespace,
                "ownerReferences": owner_references or [],
            },
            "data": {k: b64(v) for k, v in data.items()},
        }

    def secret_data(self, namespace: str, name: str) -> dict[str, str] | None:
        obj = self.objects.get(("namespaced_secret", namespace, name))
        if obj is None:
            return None
        return {k: base64.b64decode(v).decode("utf-8") for k, v in (obj.get("data") or {}).items()}

    def set_ready_replicas(self, namespace: str, name: str, ready: int) -> None:
        self.objects[("namespaced_deployment", namespace, name)]["status"] = {"readyReplicas": ready}

    def mutations(self, suffix: str | None = None) -> list[tuple[str, str, str]]:
        return [c for c in self.calls if suffix is None or c[1] == suffix]


class FakeCustomObjectsApi:
    def __init__(self) -> None:
        self.objects: dict[tuple[str, str, str], dict[str, Any]] = {}

    def get_namespaced_custom_object(self, group: str, version: str, namespace: str, plural: str, name: str) -> Any:
        obj = self.objects.get((plural, namespace, name))
        if obj is None:
            raise ApiException(status=404, reason="Not Found")
        return copy.deepcopy(obj)

    def put(self, plural: str, namespace: str, name: str, obj: dict[str, Any]) -> None:
        self.objects[(plural, namespace, name)] = obj


class FakeCluster(dict):
    """API client mapping as returned by ``get_k8s_clients``."""

    def __init__(self) -> None:
        super().__init__(
            core=FakeTypedApi(),
            apps=FakeTypedApi(),
            rbac=FakeTypedApi(),
            custom=FakeCustomObjectsApi(),
        )

    def __call__(self) -> "FakeCluster":
        return self


class FakeCoder:
    """In-memory Coder deployment exposing the provisioner key and proxy calls."""

    def __init__(self) -> None:
        self.keys: dict[tuple[str, str], str] = {}
        self.ensure_calls: list[tuple[str, str, dict[str, str]]] = []
        self.delete_calls: list[tuple[str, str]] = []
        self.proxy_calls: list[str] = []
        self.connections: list[tuple[str, str]] = []
        self.entitlement = "entitled"
        self.fail_ensure: Exception | None = None
        self.fail_delete: Exception | None = None
        self._ids = itertools.count(1)

    def __call__(self, coder_url: str, session_token: str) -> "FakeCoder":
        self.connections.append((coder_url, session_token))
        return self

    def ensure_provisioner_key(self, organization_name: str, key_name: str, tags: dict[str, str] | None = None) -> ProvisionerKeyResult:
        self.ensure_calls.append((organization_name, key_name, dict(tags or {})))
        if self.fail_ensure is not None:
            raise self.fail_ensure
        org_id = f"org-{organization_name}"
        if (organization_name, key_name) in self.keys:
            return ProvisionerKeyResult(org_id, self.keys[(organization_name, key_name)], key_name)
        key_id = f"key-id-{next(self._ids)}"
        self.keys[(organization_name, key_name)] = key_id
        return ProvisionerKeyResult(org_id, key_id, key_name, key=f"plaintext-{key_id}")

    def delete_provisioner_key(self, organization_name: str, key_name: str) -> None:
        self.delete_calls.append((organization_name, key_name))
        if self.fail_delete is not None:
            raise self.fail_delete
        self.keys.pop((organization_name, key_name), None)

    def entitlements(self) -> Entitlements:
        name = "external_provisioner_daemons"
        return Entitlements(features={name: Entitlement(name=name, entitlement=self.entitlement, enabled=True)})

    def ensure_workspace_proxy(self, name: str, display_name: str = "", icon: str = "") -> WorkspaceProxyResult:
        self.proxy_calls.append(name)
        return WorkspaceProxyResult(proxy_name=name, proxy_token=f"proxy-token-{len(self.proxy_calls)}")


@pytest.fixture(autouse=True)
def no_throttle():
    """Remove client-side spacing between Kubernetes calls."""
    with patch("coder_k8s_operator.utils.rate_limit._K8S_RATE_LIMIT_PER_SECOND", 1e9):
        yield


@pytest.fixture(autouse=True)
def mock_kopf_event():
    """kopf.event needs a running operator; record the calls instead."""
    with patch("coder_k8s_operator.utils.events.kopf.event") as mock_event:
        yield mock_event


@pytest.fixture
def cluster() -> FakeCluster:
    return FakeCluster()


@pytest.fixture
def coder() -> FakeCoder:
    return FakeCoder()
