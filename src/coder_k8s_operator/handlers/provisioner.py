"""Handler for CoderProvisioner CRD."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable

import kopf
from kubernetes import client

from .. import metrics
from ..builders.common import ready_replicas
from ..builders.provisioner import (
    build_provisioner_deployment,
    build_role,
    build_role_binding,
    build_service_account,
)
from ..constants import (
    API_GROUP_VERSION,
    COND_BOOTSTRAP_SECRET_READY,
    COND_CONTROL_PLANE_READY,
    COND_DEPLOYMENT_READY,
    COND_EXTERNAL_PROVISIONERS_ENTITLED,
    COND_PROVISIONER_KEY_READY,
    COND_PROVISIONER_KEY_SECRET_READY,
    DEFAULT_IMAGE,
    DEFAULT_ORGANIZATION_NAME,
    DEFAULT_TOKEN_SECRET_KEY,
    ENTITLEMENT_EXTERNAL_PROVISIONERS,
    FINALIZER,
    KIND_PROVISIONER,
    PHASE_PENDING,
    PHASE_READY,
    REASON_BOOTSTRAP_SECRET_AVAILABLE,
    REASON_BOOTSTRAP_SECRET_UNAVAILABLE,
    REASON_CONTROL_PLANE_AVAILABLE,
    REASON_CONTROL_PLANE_UNAVAILABLE,
    REASON_ENTITLED,
    REASON_ENTITLEMENT_UNKNOWN,
    REASON_MINIMUM_REPLICAS_READY,
    REASON_NO_REPLICAS_READY,
    REASON_NOT_ENTITLED,
    REASON_PROVISIONER_KEY_FAILED,
    REASON_PROVISIONER_KEY_READY,
    REASON_SECRET_READY,
    REQUEUE_DELAY_SECONDS,
    RESYNC_INTERVAL_SECONDS,
)
from ..services.base import ProvisionerKeyClient
from ..services.coder import CoderClient, ProvisionerKeyResult
from ..utils.conditions import set_condition, update_condition
from ..utils.converge import converge
from ..utils.drift import DriftReport, detect_drift, hash_secret, hash_tags
from ..utils.errors import InvariantError, invariant
from ..utils.events import (
    emit_cleanup_skipped,
    emit_provisioner_key_created,
    emit_provisioner_key_deleted,
    emit_provisioner_key_rotated,
)
from ..utils.naming import provisioner_key_config, provisioner_labels, provisioner_service_account_name
from ..utils.secrets import SecretValueError, ensure_secret, read_secret_value
from .base import BaseHandler
from .shared import assert_identity, get_control_plane, get_k8s_clients, owner_body, secret_key_ref


class ProvisionerKeyError(Exception):
    """The provisioner key could not be issued or recovered this pass."""


@dataclass
class KeyState:
    """Provisioner key identity carried through one reconcile pass."""

    organization_id: str
    key_id: str
    key_name: str
    applied_organization: str
    applied_tags_hash: str
    material: str = ""

    def absorb(self, result: ProvisionerKeyResult) -> None:
        if result.organization_id:
            self.organization_id = result.organization_id
        if result.key_id:
            self.key_id = result.key_id
        if result.key_name:
            self.key_name = result.key_name


class ProvisionerHandler(BaseHandler):
    """Handler for CoderProvisioner resources."""

    def __init__(
        self,
        coder_client_factory: Callable[[str, str], ProvisionerKeyClient] = CoderClient,
        k8s_clients: Callable[[], dict[str, Any]] = get_k8s_clients,
    ):
        super().__init__(KIND_PROVISIONER)
        self._coder_client_factory = coder_client_factory
        self._k8s_clients = k8s_clients

    # Prerequisites

    def fetch_control_plane(self, apis: dict[str, Any], namespace: str, spec: dict[str, Any]) -> dict[str, Any]:
        """Resolve the referenced control plane and require a published URL."""
        ref_name = (spec.get("controlPlaneRef") or {}).get("name")
        if not ref_name:
            raise ValueError("spec.controlPlaneRef.name is required")
        try:
            control_plane = get_control_plane(apis["custom"], namespace, ref_name)
        except client.exceptions.ApiException as e:
            if e.status == 404:
                raise ValueError(f"CoderControlPlane {namespace}/{ref_name} not found") from e
            raise
        if not (control_plane.get("status") or {}).get("url"):
            raise ValueError(f"CoderControlPlane {namespace}/{ref_name} has no status.url yet")
        return control_plane

    def read_bootstrap_token(self, apis: dict[str, Any], namespace: str, spec: dict[str, Any]) -> str:
        ref = (spec.get("bootstrap") or {}).get("credentialsSecretRef") or {}
        if not ref.get("name"):
            raise ValueError("spec.bootstrap.credentialsSecretRef.name is required")
        return read_secret_value(apis["core"], namespace, ref["name"], ref.get("key") or DEFAULT_TOKEN_SECRET_KEY)

    # Key lifecycle

    def _ensure_key(
        self,
        coder: ProvisionerKeyClient,
        state: KeyState,
        organization: str,
        key_name: str,
        tags: dict[str, str],
        failure: str,
    ) -> ProvisionerKeyResult:
        try:
            result = coder.ensure_provisioner_key(organization, key_name, tags)
        except InvariantError:
            raise
        except Exception as e:
            metrics.credential_operations_total.labels(
                provisioner="coder_api", operation="ensure", result="error"
            ).inc()
            raise ProvisionerKeyError(f"{failure}: {e}") from e
        metrics.credential_operations_total.labels(
            provisioner="coder_api", operation="ensure", result="success"
        ).inc()
        state.absorb(result)
        return result

    def _recreate_key(
        self,
        coder: ProvisionerKeyClient,
        state: KeyState,
        organization: str,
        key_name: str,
        tags: dict[str, str],
    ) -> None:
        """Delete and recreate a key whose plaintext is no longer retrievable."""
        try:
            coder.delete_provisioner_key(organization, key_name)
        except InvariantError:
            raise
        except Exception as e:
            raise ProvisionerKeyError(f"Failed to delete provisioner key {key_name!r} for recovery: {e}") from e
        result = self._ensure_key(
            coder, state, organization, key_name, tags,
            f"Failed to recreate provisioner key {key_name!r} after rotation",
        )
        invariant(result.key, f"provisioner key {key_name!r} returned empty key material after rotation")
        state.material = result.key

    def converge_key(
        self,
        meta: dict[str, Any],
        coder: ProvisionerKeyClient,
        state: KeyState,
        drift: DriftReport,
        secret_usable: bool,
        organization: str,
        key_name: str,
        tags: dict[str, str],
        tags_hash: str,
        old_organization: str,
        old_key_name: str,
    ) -> bool:
        """Issue, rotate or verify the provisioner key as the pass requires.

        Returns:
            True if the key is known to be ready in Coder after this call
        """
        if drift.detected:
            for field in drift.fields():
                metrics.drift_detected_total.labels(kind=self.kind, field=field).inc()
            self.log_info(
                meta, "Spec drift detected, rotating provisioner key",
                reason="DriftDetected", drift=drift.fields(), key_name=key_name,
            )
            try:
                coder.delete_provisioner_key(old_organization, old_key_name)
                emit_provisioner_key_deleted(self.event_body(meta), old_key_name)
            except Exception as e:
                self.log_warning(
                    meta, "Failed to delete old provisioner key during drift rotation, creating new key anyway",
                    error=e, reason="KeyDeleteFailed", key_name=old_key_name,
                )
            result = self._ensure_key(
                coder, state, organization, key_name, tags,
                f"Failed to ensure provisioner key {key_name!r} after drift rotation",
            )
            state.material = result.key
            if not state.material:
                self._recreate_key(coder, state, organization, key_name, tags)
            state.applied_organization = organization
            state.applied_tags_hash = tags_hash
            emit_provisioner_key_rotated(self.event_body(meta), key_name)
            return True

        if not secret_usable:
            result = self._ensure_key(
                coder, state, organization, key_name, tags,
                f"Failed to ensure provisioner key {key_name!r}",
            )
            state.material = result.key
            if not state.material:
                self.log_info(
                    meta, "Provisioner key exists in Coder but its secret is missing, rotating to recover",
                    reason="KeyRecovery", key_name=key_name,
                )
                self._recreate_key(coder, state, organization, key_name, tags)
                emit_provisioner_key_rotated(self.event_body(meta), key_name)
            else:
                emit_provisioner_key_created(self.event_body(meta), key_name)
            state.applied_organization = organization
            state.applied_tags_hash = tags_hash
            return True

        if drift.baseline_incomplete:
            # Secret is usable but the baseline is unknown. Verify the key and,
            # when Coder only reports an existing key, rotate so the desired tags
            # are applied before stamping the baseline.
            try:
                result = coder.ensure_provisioner_key(organization, key_name, tags)
            except Exception as e:
                self.log_warning(
                    meta, "Failed to verify provisioner key metadata, will retry",
                    error=e, reason="KeyVerifyFailed", key_name=key_name,
                )
                return False
            state.absorb(result)
            if result.key:
                state.material = result.key
                state.applied_organization = organization
                state.applied_tags_hash = tags_hash
                return True

            try:
                coder.delete_provisioner_key(organization, key_name)
            except Exception as e:
                self.log_warning(
                    meta, "Failed to delete key for metadata backfill rotation, will retry",
                    error=e, reason="KeyDeleteFailed", key_name=key_name,
                )
                return True
            rotated = self._ensure_key(
                coder, state, organization, key_name, tags,
                f"Failed to recreate provisioner key {key_name!r} after metadata backfill rotation",
            )
            state.material = rotated.key
            state.applied_organization = organization
            state.applied_tags_hash = tags_hash
            emit_provisioner_key_rotated(self.event_body(meta), key_name)
            return True

        return False

    # Entitlements

    def entitlement_condition(
        self,
        meta: dict[str, Any],
        coder: ProvisionerKeyClient,
        conditions: list[dict[str, Any]],
        generation: int | None,
    ) -> list[dict[str, Any]]:
        """Record whether the deployment may run external provisioners. Never blocks."""
        try:
            feature = coder.entitlements().feature(ENTITLEMENT_EXTERNAL_PROVISIONERS)
        except Exception as e:
            self.log_warning(meta, "Failed to query entitlements", error=e, reason="EntitlementsUnknown")
            return update_condition(
                conditions, COND_EXTERNAL_PROVISIONERS_ENTITLED, "Unknown",
                REASON_ENTITLEMENT_UNKNOWN, "Could not query deployment entitlements", generation,
            )
        if feature.usable:
            return set_condition(
                conditions, COND_EXTERNAL_PROVISIONERS_ENTITLED, True, REASON_ENTITLED,
                f"External provisioner daemons are {feature.entitlement}", generation,
            )
        return set_condition(
            conditions, COND_EXTERNAL_PROVISIONERS_ENTITLED, False, REASON_NOT_ENTITLED,
            "The deployment is not entitled to external provisioner daemons", generation,
        )

    # Reconcile

    def _fail(
        self,
        status: dict[str, Any],
        patch: kopf.Patch,
        conditions: list[dict[str, Any]],
        message: str,
        error: Exception,
    ) -> None:
        new_status = {k: v for k, v in dict(status or {}).items() if k != "kopf"}
        new_status["conditions"] = conditions
        self.write_status(status, patch, new_status, ready=False)
        raise kopf.TemporaryError(message, delay=REQUEUE_DELAY_SECONDS) from error

    def reconcile(
        self,
        spec: dict[str, Any],
        meta: dict[str, Any],
        status: dict[str, Any],
        patch: kopf.Patch,
    ) -> None:
        """Reconcile CoderProvisioner resource."""
        name = meta["name"]
        namespace = meta["namespace"]
        generation = meta.get("generation")
        status = dict(status or {})
        conditions = list(status.get("conditions") or [])
        apis = self._k8s_clients()
        owner = owner_body(self.kind, meta)

        try:
            control_plane = self.fetch_control_plane(apis, namespace, spec)
        except (ValueError, client.exceptions.ApiException) as e:
            message = f"Failed to fetch control plane: {e}"
            conditions = set_condition(
                conditions, COND_CONTROL_PLANE_READY, False, REASON_CONTROL_PLANE_UNAVAILABLE, message, generation
            )
            self._fail(status, patch, conditions, message, e)
        conditions = set_condition(
            conditions, COND_CONTROL_PLANE_READY, True, REASON_CONTROL_PLANE_AVAILABLE,
            "Referenced control plane is available and has a URL", generation,
        )
        coder_url = control_plane["status"]["url"]

        organization = spec.get("organizationName") or DEFAULT_ORGANIZATION_NAME
        key_name, secret_name, secret_key = provisioner_key_config(name, spec.get("key"))

        try:
            session_token = self.read_bootstrap_token(apis, namespace, spec)
        except (ValueError, client.exceptions.ApiException) as e:
            message = f"Failed to read bootstrap credentials: {e}"
            conditions = set_condition(
                conditions, COND_BOOTSTRAP_SECRET_READY, False, REASON_BOOTSTRAP_SECRET_UNAVAILABLE, message, generation
            )
            self._fail(status, patch, conditions, message, e)
        conditions = set_condition(
            conditions, COND_BOOTSTRAP_SECRET_READY, True, REASON_BOOTSTRAP_SECRET_AVAILABLE,
            "Bootstrap credentials secret is available", generation,
        )

        tags = dict(spec.get("tags") or {})
        tags_hash = hash_tags(tags)
        drift = detect_drift(status, organization, key_name, tags_hash)

        try:
            read_secret_value(apis["core"], namespace, secret_name, secret_key)
            secret_usable = True
        except SecretValueError:
            secret_usable = False

        state = KeyState(
            organization_id=status.get("organizationID") or "",
            key_id=status.get("provisionerKeyID") or "",
            key_name=status.get("provisionerKeyName") or key_name,
            applied_organization=status.get("organizationName") or "",
            applied_tags_hash=status.get("tagsHash") or "",
        )
        coder = self._coder_client_factory(coder_url, session_token)

        try:
            key_ready = self.converge_key(
                meta, coder, state, drift, secret_usable, organization, key_name, tags, tags_hash,
                old_organization=status.get("organizationName") or organization,
                old_key_name=status.get("provisionerKeyName") or key_name,
            )
        except (ProvisionerKeyError, InvariantError) as e:
            conditions = set_condition(
                conditions, COND_PROVISIONER_KEY_READY, False, REASON_PROVISIONER_KEY_FAILED, str(e), generation
            )
            if isinstance(e, InvariantError):
                new_status = {k: v for k, v in status.items() if k != "kopf"}
                new_status["conditions"] = conditions
                self.write_status(status, patch, new_status, ready=False)
                raise
            self._fail(status, patch, conditions, str(e), e)
        if key_ready:
            conditions = set_condition(
                conditions, COND_PROVISIONER_KEY_READY, True, REASON_PROVISIONER_KEY_READY,
                "Provisioner key is available in coderd", generation,
            )

        labels = provisioner_labels(name)
        stored_key = ensure_secret(apis["core"], namespace, secret_name, secret_key, state.material, labels, owner)
        checksum = hash_secret(stored_key)
        conditions = set_condition(
            conditions, COND_PROVISIONER_KEY_SECRET_READY, True, REASON_SECRET_READY,
            "Provisioner key secret is available", generation,
        )

        service_account_name = provisioner_service_account_name(name)
        converge(apis, build_service_account(name, namespace, service_account_name), owner)
        converge(apis, build_role(name, namespace), owner)
        converge(apis, build_role_binding(name, namespace, service_account_name), owner)

        image = spec.get("image") or (control_plane.get("spec") or {}).get("image") or DEFAULT_IMAGE
        deployment = converge(
            apis,
            build_provisioner_deployment(
                name, namespace, spec, image, coder_url, organization,
                secret_name, secret_key, service_account_name, checksum,
            ),
            owner,
        )

        conditions = self.entitlement_condition(meta, coder, conditions, generation)

        replicas = ready_replicas(deployment)
        if replicas > 0:
            conditions = set_condition(
                conditions, COND_DEPLOYMENT_READY, True, REASON_MINIMUM_REPLICAS_READY,
                "At least one provisioner pod is ready", generation,
            )
        else:
            conditions = set_condition(
                conditions, COND_DEPLOYMENT_READY, False, REASON_NO_REPLICAS_READY,
                "No provisioner pods are ready yet", generation,
            )

        new_status = {
            "observedGeneration": generation,
            "readyReplicas": replicas,
            "phase": PHASE_READY if replicas > 0 else PHASE_PENDING,
            "organizationID": state.organization_id,
            "organizationName": state.applied_organization,
            "provisionerKeyID": state.key_id,
            "provisionerKeyName": state.key_name,
            "tagsHash": state.applied_tags_hash,
            "secretRef": secret_key_ref(secret_name, secret_key),
            "conditions": conditions,
        }
        self.write_status(status, patch, new_status, ready=replicas > 0)

    def delete(
        self,
        spec: dict[str, Any],
        meta: dict[str, Any],
        status: dict[str, Any],
        patch: kopf.Patch,
    ) -> None:
        """Best-effort remote key cleanup; the finalizer is always released."""
        if FINALIZER not in (meta.get("finalizers") or []):
            return

        namespace = meta.get("namespace", "default")
        status = status or {}
        # Target what was last applied, not what the spec says now.
        organization = (
            status.get("organizationName") or spec.get("organizationName") or DEFAULT_ORGANIZATION_NAME
        )
        key_name = status.get("provisionerKeyName") or provisioner_key_config(meta["name"], spec.get("key"))[0]

        self.log_info(meta, f"CoderProvisioner {meta.get('name')} is being deleted", event="deletion",
                      reason="Deletion", key_name=key_name)
        try:
            apis = self._k8s_clients()
            control_plane = self.fetch_control_plane(apis, namespace, spec)
            session_token = self.read_bootstrap_token(apis, namespace, spec)
            coder = self._coder_client_factory(control_plane["status"]["url"], session_token)
            coder.delete_provisioner_key(organization, key_name)
            emit_provisioner_key_deleted(self.event_body(meta), key_name)
            self.log_info(meta, f"Deleted provisioner key {key_name}", reason="KeyDeleted", key_name=key_name)
        except Exception as e:
            self.log_warning(
                meta, "Skipping remote provisioner key cleanup, proceeding with finalizer removal",
                error=e, reason="CleanupSkipped", key_name=key_name,
            )
            emit_cleanup_skipped(self.event_body(meta), f"Remote provisioner key {key_name} was not deleted")
        finally:
            self.remove_finalizer(meta, patch)


# Global handler instance
_handler = ProvisionerHandler()


@kopf.on.create(API_GROUP_VERSION, KIND_PROVISIONER)
@kopf.on.update(API_GROUP_VERSION, KIND_PROVISIONER)
@kopf.on.resume(API_GROUP_VERSION, KIND_PROVISIONER)
@kopf.timer(API_GROUP_VERSION, KIND_PROVISIONER, interval=RESYNC_INTERVAL_SECONDS, initial_delay=RESYNC_INTERVAL_SECONDS)
def handle_provisioner(
    spec: dict[str, Any],
    meta: dict[str, Any],
    status: dict[str, Any],
    patch: kopf.Patch,
    name: str | None = None,
    namespace: str | None = None,
    **kwargs: Any,
) -> None:
    """Handle CoderProvisioner resource reconciliation."""
    if _handler.ensure_finalizer(meta, patch):
        # Let the finalizer round-trip before doing real work.
        raise kopf.TemporaryError("cleanup finalizer added", delay=1)

    def reconcile() -> None:
        assert_identity(meta, name, namespace)
        _handler.reconcile(spec, meta, status, patch)

    _handler.reconcile_with_metrics(meta, reconcile)


@kopf.on.delete(API_GROUP_VERSION, KIND_PROVISIONER)
def handle_provisioner_delete(
    spec: dict[str, Any],
    meta: dict[str, Any],
    status: dict[str, Any],
    patch: kopf.Patch,
    **kwargs: Any,
) -> None:
    """Handle CoderProvisioner resource deletion."""
    _handler.delete(spec, meta, status, patch)
