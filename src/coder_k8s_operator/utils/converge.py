"""Idempotent create-or-update for child resources owned by a custom resource."""

from __future__ import annotations

import copy
import logging
import time
from typing import Any

from kubernetes.client.exceptions import ApiException

from .. import metrics
from ..constants import FIELD_MANAGER
from .rate_limit import rate_limit_k8s

logger = logging.getLogger(__name__)

# kind -> (client key, method suffix)
_KINDS: dict[str, tuple[str, str]] = {
    "Deployment": ("apps", "namespaced_deployment"),
    "Service": ("core", "namespaced_service"),
    "ServiceAccount": ("core", "namespaced_service_account"),
    "Role": ("rbac", "namespaced_role"),
    "RoleBinding": ("rbac", "namespaced_role_binding"),
}


def to_dict(api: Any, obj: Any) -> dict[str, Any]:
    """Convert a client model into its camelCase wire form."""
    if obj is None or isinstance(obj, dict):
        return obj
    return api.api_client.sanitize_for_serialization(obj)


def owner_reference(owner: dict[str, Any]) -> dict[str, Any]:
    """Controller owner reference pointing at ``owner``."""
    meta = owner.get("metadata", {})
    return {
        "apiVersion": owner["apiVersion"],
        "kind": owner["kind"],
        "name": meta["name"],
        "uid": meta["uid"],
        "controller": True,
        "blockOwnerDeletion": True,
    }


def merge_owner_references(existing: list[dict[str, Any]], owner: dict[str, Any]) -> list[dict[str, Any]]:
    """Return ``existing`` with ``owner`` set as the controller reference.

    Raises:
        ValueError: If another object already controls the child
    """
    ref = owner_reference(owner)
    merged = []
    for current in existing or []:
        if current.get("uid") == ref["uid"]:
            continue
        if current.get("controller"):
            raise ValueError(
                f"object is already controlled by {current.get('kind')}/{current.get('name')}"
            )
        merged.append(current)
    merged.append(ref)
    return merged


def is_subset(desired: Any, live: Any) -> bool:
    """Whether every field set in ``desired`` carries the same value in ``live``.

    Fields defaulted by the API server and absent from ``desired`` are ignored.
    Lists must match in length and element-wise.
    """
    if isinstance(desired, dict):
        if not isinstance(live, dict):
            return False
        return all(key in live and is_subset(value, live[key]) for key, value in desired.items())
    if isinstance(desired, list):
        if not isinstance(live, list) or len(desired) != len(live):
            return False
        return all(is_subset(d, l) for d, l in zip(desired, live))
    return desired == live


def _comparable(body: dict[str, Any]) -> dict[str, Any]:
    meta = body.get("metadata", {})
    comparable = {k: v for k, v in body.items() if k not in ("apiVersion", "kind", "metadata")}
    comparable["metadata"] = {
        k: meta[k] for k in ("labels", "annotations", "ownerReferences") if meta.get(k)
    }
    return comparable


def converge(apis: dict[str, Any], body: dict[str, Any], owner: dict[str, Any] | None = None) -> dict[str, Any]:
    """Create ``body`` or bring the live object in line with it.

    Args:
        apis: Kubernetes API clients keyed by "core", "apps" and "rbac"
        body: Desired manifest with kind, metadata.name and metadata.namespace
        owner: Optional parent custom resource set as controller owner

    Returns:
        The live object as a camelCase dict

    Raises:
        ApiException: On any object-store error other than not-found on read
    """
    kind = body["kind"]
    client_key, suffix = _KINDS[kind]
    api = apis[client_key]
    desired = copy.deepcopy(body)
    meta = desired.setdefault("metadata", {})
    name, namespace = meta["name"], meta["namespace"]

    start_time = time.time()
    operation = f"converge_{kind.lower()}"
    try:
        try:
            live = to_dict(api, rate_limit_k8s(getattr(api, f"read_{suffix}"))(name=name, namespace=namespace))
        except ApiException as e:
            if e.status != 404:
                raise
            live = None

        if owner is not None:
            current_refs = (live or {}).get("metadata", {}).get("ownerReferences") or []
            meta["ownerReferences"] = merge_owner_references(current_refs, owner)

        if live is None:
            logger.info(f"Creating {kind} {namespace}/{name}")
            created = rate_limit_k8s(getattr(api, f"create_{suffix}"))(
                namespace=namespace, body=desired, field_manager=FIELD_MANAGER
            )
            metrics.api_call_total.labels(api_type="k8s", operation=operation, result="created").inc()
            return to_dict(api, created) or desired

        if is_subset(_comparable(desired), live):
            metrics.api_call_total.labels(api_type="k8s", operation=operation, result="unchanged").inc()
            return live

        live_meta = live.get("metadata", {})
        meta["resourceVersion"] = live_meta.get("resourceVersion")
        if kind == "Service":
            # clusterIP is immutable once allocated
            live_spec = live.get("spec", {})
            for field in ("clusterIP", "clusterIPs"):
                if live_spec.get(field):
                    desired["spec"].setdefault(field, live_spec[field])

        logger.info(f"Updating {kind} {namespace}/{name}")
        replaced = rate_limit_k8s(getattr(api, f"replace_{suffix}"))(
            name=name, namespace=namespace, body=desired, field_manager=FIELD_MANAGER
        )
        metrics.api_call_total.labels(api_type="k8s", operation=operation, result="updated").inc()
        return to_dict(api, replaced) or desired
    except Exception:
        metrics.api_call_total.labels(api_type="k8s", operation=operation, result="error").inc()
        raise
    finally:
        duration = time.time() - start_time
        metrics.api_call_duration_seconds.labels(api_type="k8s", operation=operation).observe(duration)
