"""Handler for CoderControlPlane CRD."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import kopf
from kubernetes import client

from ..builders.common import ready_replicas
from ..builders.controlplane import (
    build_control_plane_deployment,
    build_control_plane_service,
    control_plane_url,
)
from ..constants import (
    API_GROUP_VERSION,
    COND_LICENSE_APPLIED,
    DEFAULT_LICENSE_SECRET_KEY,
    DEFAULT_TOKEN_SECRET_KEY,
    KIND_CONTROL_PLANE,
    OPERATOR_EMAIL,
    OPERATOR_TOKEN_LIFETIME_SECONDS,
    OPERATOR_USERNAME,
    PHASE_PENDING,
    PHASE_READY,
    POSTGRES_URL_ENV_VAR,
    REASON_LICENSE_APPLIED,
    REASON_LICENSE_ERROR,
    REASON_LICENSE_FORBIDDEN,
    REASON_LICENSE_NOT_SUPPORTED,
    REASON_LICENSE_PENDING,
    REASON_LICENSE_SECRET_MISSING,
    REQUEUE_DELAY_SECONDS,
    RESYNC_INTERVAL_SECONDS,
)
from ..services.base import LicenseUploader, OperatorAccessProvisioner
from ..services.coder import CoderAPIError, CoderClient
from ..services.postgres import (
    OperatorAccessError,
    OperatorAccessRequest,
    OperatorRevokeRequest,
    PostgresOperatorAccessProvisioner,
)
from ..utils.conditions import update_condition
from ..utils.converge import converge
from ..utils.errors import InvariantError, invariant
from ..utils.events import emit_license_applied, emit_operator_token_issued, emit_operator_token_revoked
from ..utils.naming import control_plane_labels, operator_token_db_name, operator_token_secret_name
from ..utils.secrets import (
    SecretValueError,
    delete_secret,
    ensure_secret,
    is_controlled_by,
    read_secret,
    read_secret_value,
)
from .base import BaseHandler
from .shared import assert_identity, get_k8s_clients, owner_body, requeue_after, secret_key_ref


def find_env_var(env: list[dict[str, Any]] | None, name: str) -> dict[str, Any] | None:
    """Return the single definition of ``name`` in an EnvVar list.

    Raises:
        ValueError: If the variable is defined more than once
    """
    found = None
    for var in env or []:
        if var.get("name") != name:
            continue
        if found is not None:
            raise ValueError(f"{name} is configured more than once")
        found = var
    return found


def resolve_postgres_url(api: client.CoreV1Api, namespace: str, spec: dict[str, Any]) -> str:
    """Resolve the coderd database URL from the control plane's extra env.

    A non-blank literal value wins; otherwise the value must come from a
    ``secretKeyRef`` in the control plane's namespace.

    Raises:
        ValueError: If the variable is missing, ambiguous or malformed
        SecretValueError: If the referenced secret value cannot be read
    """
    var = find_env_var(spec.get("extraEnv"), POSTGRES_URL_ENV_VAR)
    if var is None:
        raise ValueError(f"{POSTGRES_URL_ENV_VAR} is not configured")

    value = (var.get("value") or "").strip()
    if value:
        return value

    value_from = var.get("valueFrom")
    if not value_from:
        raise ValueError(f"{POSTGRES_URL_ENV_VAR} must define either value or valueFrom.secretKeyRef")
    ref = value_from.get("secretKeyRef")
    if not ref:
        raise ValueError(f"{POSTGRES_URL_ENV_VAR} valueFrom must be a secretKeyRef")
    if not (ref.get("name") or "").strip():
        raise ValueError(f"{POSTGRES_URL_ENV_VAR} secretKeyRef name must not be empty")
    if not (ref.get("key") or "").strip():
        raise ValueError(f"{POSTGRES_URL_ENV_VAR} secretKeyRef key must not be empty")
    return read_secret_value(api, namespace, ref["name"], ref["key"])


def hash_license(license_jwt: str) -> str:
    return hashlib.sha256(license_jwt.encode("utf-8")).hexdigest()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class OperatorAccessOutcome:
    ready: bool
    token_secret_ref: dict[str, str] | None = None
    requeue: float | None = None


class ControlPlaneHandler(BaseHandler):
    """Handler for CoderControlPlane resources."""

    def __init__(
        self,
        operator_access: OperatorAccessProvisioner | None = None,
        license_client_factory: Callable[[str, str], LicenseUploader] = CoderClient,
        k8s_clients: Callable[[], dict[str, Any]] = get_k8s_clients,
        now: Callable[[], datetime] = _utcnow,
    ):
        super().__init__(KIND_CONTROL_PLANE)
        self.operator_access = operator_access
        self._license_client_factory = license_client_factory
        self._k8s_clients = k8s_clients
        self._now = now

    def _read_existing_token(self, api: client.CoreV1Api, namespace: str, secret_name: str) -> str:
        try:
            return read_secret_value(api, namespace, secret_name, DEFAULT_TOKEN_SECRET_KEY)
        except SecretValueError:
            return ""

    def cleanup_operator_access(
        self,
        api: client.CoreV1Api,
        meta: dict[str, Any],
        spec: dict[str, Any],
        status: dict[str, Any],
        owner: dict[str, Any],
        secret_name: str,
        token_name: str,
    ) -> None:
        """Remove operator credentials after operator access was disabled.

        Only a secret controlled by this control plane is deleted. The database
        token is revoked whenever the postgres URL resolves.

        Raises:
            Exception: Any failure while cleanup is still required
        """
        namespace = meta["namespace"]
        secret = read_secret(api, namespace, secret_name)
        managed = secret is not None and is_controlled_by(secret, owner)
        cleanup_required = managed or bool(status.get("operatorTokenSecretRef"))

        if managed:
            delete_secret(api, namespace, secret_name)
            self.log_info(meta, f"Deleted operator token secret {secret_name}", reason="OperatorAccessDisabled",
                          secret_name=secret_name)

        try:
            postgres_url = resolve_postgres_url(api, namespace, spec)
        except (ValueError, client.exceptions.ApiException):
            if cleanup_required:
                raise
            return

        invariant(
            self.operator_access is not None,
            "operator access provisioner must be configured to revoke managed credentials",
        )
        self.operator_access.revoke_operator_token(
            OperatorRevokeRequest(postgres_url=postgres_url, username=OPERATOR_USERNAME, token_name=token_name)
        )
        if cleanup_required:
            emit_operator_token_revoked(self.event_body(meta))

    def reconcile_operator_access(
        self,
        api: client.CoreV1Api,
        meta: dict[str, Any],
        spec: dict[str, Any],
        status: dict[str, Any],
        owner: dict[str, Any],
    ) -> OperatorAccessOutcome:
        name = meta["name"]
        namespace = meta["namespace"]
        access_spec = spec.get("operatorAccess") or {}
        secret_name = operator_token_secret_name(name, access_spec.get("generatedTokenSecretName"))
        token_name = operator_token_db_name(namespace, name)

        if access_spec.get("disabled"):
            try:
                self.cleanup_operator_access(api, meta, spec, status, owner, secret_name, token_name)
            except InvariantError:
                raise
            except Exception as e:
                self.log_warning(
                    meta, "Failed to clean up disabled operator access, will retry",
                    error=e, reason="OperatorAccessCleanupFailed", secret_name=secret_name,
                )
                # Keep pointing at the secret until cleanup succeeds.
                return OperatorAccessOutcome(
                    ready=False,
                    token_secret_ref=secret_key_ref(secret_name, DEFAULT_TOKEN_SECRET_KEY),
                    requeue=REQUEUE_DELAY_SECONDS,
                )
            return OperatorAccessOutcome(ready=False)

        if self.operator_access is None:
            return OperatorAccessOutcome(ready=False)

        existing_token = self._read_existing_token(api, namespace, secret_name)

        try:
            postgres_url = resolve_postgres_url(api, namespace, spec)
        except (ValueError, client.exceptions.ApiException) as e:
            self.log_warning(meta, "Cannot resolve coder database URL for operator access",
                             error=e, reason="OperatorAccessPending")
            return OperatorAccessOutcome(ready=False, requeue=REQUEUE_DELAY_SECONDS)

        try:
            token = self.operator_access.ensure_operator_token(
                OperatorAccessRequest(
                    postgres_url=postgres_url,
                    username=OPERATOR_USERNAME,
                    email=OPERATOR_EMAIL,
                    token_name=token_name,
                    token_lifetime=timedelta(seconds=OPERATOR_TOKEN_LIFETIME_SECONDS),
                    existing_token=existing_token,
                )
            )
        except (OperatorAccessError, ValueError) as e:
            self.log_warning(meta, "Failed to provision operator token, will retry",
                             error=e, reason="OperatorAccessPending")
            return OperatorAccessOutcome(ready=False, requeue=REQUEUE_DELAY_SECONDS)
        invariant(token, "operator access provisioner returned an empty token")

        ensure_secret(api, namespace, secret_name, DEFAULT_TOKEN_SECRET_KEY, token,
                      control_plane_labels(name), owner)
        if token != existing_token:
            emit_operator_token_issued(self.event_body(meta), secret_name)
            self.log_info(meta, f"Issued operator token into secret {secret_name}", reason="OperatorTokenIssued",
                          secret_name=secret_name)
        return OperatorAccessOutcome(
            ready=True, token_secret_ref=secret_key_ref(secret_name, DEFAULT_TOKEN_SECRET_KEY)
        )

    def reconcile_license(
        self,
        api: client.CoreV1Api,
        meta: dict[str, Any],
        spec: dict[str, Any],
        next_status: dict[str, Any],
    ) -> float | None:
        """Upload the configured license once per distinct license value.

        Mutates ``next_status`` in place.

        Returns:
            Requeue delay in seconds, or None
        """
        generation = meta.get("generation")

        def condition(status: str, reason: str, message: str) -> None:
            next_status["conditions"] = update_condition(
                next_status.get("conditions") or [], COND_LICENSE_APPLIED, status, reason, message, generation
            )

        license_ref = spec.get("licenseSecretRef")
        if not license_ref:
            condition("Unknown", REASON_LICENSE_PENDING, "License Secret reference is not configured.")
            return None
        if next_status.get("phase") != PHASE_READY:
            condition("False", REASON_LICENSE_PENDING, "Waiting for control plane readiness before applying license.")
            return None
        token_ref = next_status.get("operatorTokenSecretRef")
        if not next_status.get("operatorAccessReady") or not token_ref:
            condition("False", REASON_LICENSE_PENDING,
                      "Waiting for operator access credentials before applying license.")
            return None
        invariant(
            (next_status.get("url") or "").strip(),
            "control plane URL must not be empty when licenseSecretRef is configured",
        )

        namespace = meta["namespace"]
        try:
            operator_token = read_secret_value(
                api, namespace, token_ref["name"], token_ref.get("key") or DEFAULT_TOKEN_SECRET_KEY
            )
        except SecretValueError:
            condition("False", REASON_LICENSE_SECRET_MISSING,
                      "Operator token Secret is missing or incomplete; retrying license upload.")
            return REQUEUE_DELAY_SECONDS
        except client.exceptions.ApiException as e:
            self.log_warning(meta, "Failed to read operator token secret", error=e, reason="LicenseError")
            condition("False", REASON_LICENSE_ERROR, "Failed to read operator token Secret; retrying license upload.")
            return REQUEUE_DELAY_SECONDS

        license_name = (license_ref.get("name") or "").strip()
        invariant(license_name, "license secret name must not be empty when licenseSecretRef is configured")
        license_key = (license_ref.get("key") or "").strip() or DEFAULT_LICENSE_SECRET_KEY
        try:
            license_jwt = read_secret_value(api, namespace, license_name, license_key)
        except SecretValueError:
            condition("False", REASON_LICENSE_SECRET_MISSING, "License Secret is missing or incomplete; retrying upload.")
            return REQUEUE_DELAY_SECONDS
        except client.exceptions.ApiException as e:
            self.log_warning(meta, "Failed to read license secret", error=e, reason="LicenseError")
            condition("False", REASON_LICENSE_ERROR, "Failed to read license Secret; retrying upload.")
            return REQUEUE_DELAY_SECONDS

        license_jwt = license_jwt.strip()
        if not license_jwt:
            condition("False", REASON_LICENSE_SECRET_MISSING, "License Secret value is empty after trimming whitespace.")
            return REQUEUE_DELAY_SECONDS

        license_hash = hash_license(license_jwt)
        if next_status.get("licenseLastApplied") and next_status.get("licenseLastAppliedHash") == license_hash:
            condition("True", REASON_LICENSE_APPLIED, "Configured license is already applied.")
            return None

        try:
            self._license_client_factory(next_status["url"], operator_token).add_license(license_jwt)
        except CoderAPIError as e:
            if e.status_code == 404:
                condition("False", REASON_LICENSE_NOT_SUPPORTED,
                          "Control plane does not expose the Enterprise licenses API.")
                return None
            if e.status_code in (401, 403):
                condition("False", REASON_LICENSE_FORBIDDEN,
                          "Operator token is not authorized to upload the configured license.")
                return REQUEUE_DELAY_SECONDS
            self.log_warning(meta, "Failed to upload license", error=e, reason="LicenseError")
            condition("False", REASON_LICENSE_ERROR, "Failed to upload configured license; retrying.")
            return REQUEUE_DELAY_SECONDS

        next_status["licenseLastApplied"] = self._now().isoformat()
        next_status["licenseLastAppliedHash"] = license_hash
        condition("True", REASON_LICENSE_APPLIED, "Configured license uploaded successfully.")
        emit_license_applied(self.event_body(meta))
        return None

    def reconcile(
        self,
        spec: dict[str, Any],
        meta: dict[str, Any],
        status: dict[str, Any],
        patch: kopf.Patch,
    ) -> None:
        """Reconcile CoderControlPlane resource."""
        name = meta["name"]
        namespace = meta["namespace"]
        status = {k: v for k, v in dict(status or {}).items() if k != "kopf"}
        apis = self._k8s_clients()
        owner = owner_body(self.kind, meta)

        deployment = converge(apis, build_control_plane_deployment(name, namespace, spec), owner)
        service = converge(apis, build_control_plane_service(name, namespace, spec), owner)

        replicas = ready_replicas(deployment)
        next_status = dict(status)
        next_status.update({
            "observedGeneration": meta.get("generation"),
            "readyReplicas": replicas,
            "url": control_plane_url(service),
            "phase": PHASE_READY if replicas > 0 else PHASE_PENDING,
        })

        access = self.reconcile_operator_access(apis["core"], meta, spec, status, owner)
        next_status["operatorAccessReady"] = access.ready
        if access.token_secret_ref:
            next_status["operatorTokenSecretRef"] = access.token_secret_ref
        else:
            next_status.pop("operatorTokenSecretRef", None)
        requeue = requeue_after(None, access.requeue)

        requeue = requeue_after(requeue, self.reconcile_license(apis["core"], meta, spec, next_status))

        self.write_status(status, patch, next_status, ready=replicas > 0)

        if requeue is not None:
            raise kopf.TemporaryError("control plane dependencies not ready yet", delay=requeue)


# Global handler instance
_handler = ControlPlaneHandler(operator_access=PostgresOperatorAccessProvisioner())


@kopf.on.create(API_GROUP_VERSION, KIND_CONTROL_PLANE)
@kopf.on.update(API_GROUP_VERSION, KIND_CONTROL_PLANE)
@kopf.on.resume(API_GROUP_VERSION, KIND_CONTROL_PLANE)
@kopf.timer(API_GROUP_VERSION, KIND_CONTROL_PLANE, interval=RESYNC_INTERVAL_SECONDS, initial_delay=RESYNC_INTERVAL_SECONDS)
def handle_control_plane(
    spec: dict[str, Any],
    meta: dict[str, Any],
    status: dict[str, Any],
    patch: kopf.Patch,
    name: str | None = None,
    namespace: str | None = None,
    **kwargs: Any,
) -> None:
    """Handle CoderControlPlane resource reconciliation."""

    def reconcile() -> None:
        assert_identity(meta, name, namespace)
        _handler.reconcile(spec, meta, status, patch)

    _handler.reconcile_with_metrics(meta, reconcile)
