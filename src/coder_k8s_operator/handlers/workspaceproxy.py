"""Handler for CoderWorkspaceProxy CRD."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable

import kopf
from kubernetes import client

from ..builders.common import ready_replicas
from ..builders.workspaceproxy import build_workspace_proxy_deployment, build_workspace_proxy_service
from ..constants import (
    API_GROUP_VERSION,
    DEFAULT_TOKEN_SECRET_KEY,
    KIND_WORKSPACE_PROXY,
    PHASE_PENDING,
    PHASE_READY,
    REQUEUE_DELAY_SECONDS,
    RESYNC_INTERVAL_SECONDS,
    WORKSPACE_PROXY_TOKEN_SECRET_SUFFIX,
)
from ..services.base import WorkspaceProxyRegistrar
from ..services.coder import CoderAPIError, CoderClient
from ..utils.converge import converge
from ..utils.events import emit_workspace_proxy_registered
from ..utils.naming import workspace_proxy_labels
from ..utils.secrets import SecretValueError, ensure_secret, read_secret_value
from .base import BaseHandler
from .shared import assert_identity, get_k8s_clients, owner_body, secret_key_ref


@dataclass
class ProxyCredentials:
    primary_access_url: str
    token_secret_ref: dict[str, str] | None
    registered: bool


class WorkspaceProxyHandler(BaseHandler):
    """Handler for CoderWorkspaceProxy resources."""

    def __init__(
        self,
        registrar_factory: Callable[[str, str], WorkspaceProxyRegistrar] = CoderClient,
        k8s_clients: Callable[[], dict[str, Any]] = get_k8s_clients,
    ):
        super().__init__(KIND_WORKSPACE_PROXY)
        self._registrar_factory = registrar_factory
        self._k8s_clients = k8s_clients

    def resolve_credentials(
        self,
        api: client.CoreV1Api,
        meta: dict[str, Any],
        spec: dict[str, Any],
        owner: dict[str, Any],
    ) -> ProxyCredentials:
        """Work out the primary URL and token secret the proxy pods will use.

        Without a bootstrap block the caller-supplied reference is used as is
        and never owned. With one, an already stored token is reused; otherwise
        the proxy is registered with Coder and its token stored in an owned
        secret.
        """
        bootstrap = spec.get("bootstrap")
        if not bootstrap:
            ref = spec.get("proxySessionTokenSecretRef")
            if ref:
                ref = secret_key_ref(ref.get("name", ""), ref.get("key") or DEFAULT_TOKEN_SECRET_KEY)
            return ProxyCredentials(spec.get("primaryAccessURL") or "", ref, registered=False)

        name = meta["name"]
        namespace = meta["namespace"]
        primary_access_url = spec.get("primaryAccessURL") or bootstrap.get("coderURL") or ""
        secret_name = bootstrap.get("generatedTokenSecretName") or f"{name}{WORKSPACE_PROXY_TOKEN_SECRET_SUFFIX}"
        token_ref = secret_key_ref(secret_name, DEFAULT_TOKEN_SECRET_KEY)

        try:
            read_secret_value(api, namespace, secret_name, DEFAULT_TOKEN_SECRET_KEY)
            return ProxyCredentials(primary_access_url, token_ref, registered=True)
        except SecretValueError:
            pass

        credentials_ref = bootstrap.get("credentialsSecretRef") or {}
        try:
            session_token = read_secret_value(
                api, namespace, credentials_ref.get("name", ""),
                credentials_ref.get("key") or DEFAULT_TOKEN_SECRET_KEY,
            )
        except SecretValueError as e:
            raise kopf.TemporaryError(f"read bootstrap credentials: {e}", delay=REQUEUE_DELAY_SECONDS) from e

        proxy_name = bootstrap.get("proxyName") or name
        try:
            registrar = self._registrar_factory(bootstrap.get("coderURL") or "", session_token)
            result = registrar.ensure_workspace_proxy(
                proxy_name, bootstrap.get("displayName") or "", bootstrap.get("icon") or ""
            )
        except (CoderAPIError, ValueError) as e:
            raise kopf.TemporaryError(
                f"bootstrap workspace proxy registration: {e}", delay=REQUEUE_DELAY_SECONDS
            ) from e

        ensure_secret(api, namespace, secret_name, DEFAULT_TOKEN_SECRET_KEY, result.proxy_token,
                      workspace_proxy_labels(name), owner)
        emit_workspace_proxy_registered(self.event_body(meta), proxy_name)
        self.log_info(meta, f"Registered workspace proxy {proxy_name}", reason="ProxyRegistered",
                      proxy_name=proxy_name, secret_name=secret_name)
        return ProxyCredentials(primary_access_url, token_ref, registered=True)

    def reconcile(
        self,
        spec: dict[str, Any],
        meta: dict[str, Any],
        status: dict[str, Any],
        patch: kopf.Patch,
    ) -> None:
        """Reconcile CoderWorkspaceProxy resource."""
        name = meta["name"]
        namespace = meta["namespace"]
        apis = self._k8s_clients()
        owner = owner_body(self.kind, meta)

        creds = self.resolve_credentials(apis["core"], meta, spec, owner)
        if not creds.primary_access_url:
            raise kopf.TemporaryError(
                "workspace proxy primaryAccessURL must be provided directly or via bootstrap.coderURL",
                delay=REQUEUE_DELAY_SECONDS,
            )
        if not creds.token_secret_ref or not creds.token_secret_ref["name"]:
            raise kopf.TemporaryError(
                "workspace proxy session token reference must be provided directly or via bootstrap",
                delay=REQUEUE_DELAY_SECONDS,
            )

        deployment = converge(
            apis,
            build_workspace_proxy_deployment(
                name, namespace, spec, creds.primary_access_url,
                creds.token_secret_ref["name"], creds.token_secret_ref["key"],
            ),
            owner,
        )
        converge(apis, build_workspace_proxy_service(name, namespace, spec), owner)

        replicas = ready_replicas(deployment)
        new_status = {
            "observedGeneration": meta.get("generation"),
            "readyReplicas": replicas,
            "registered": creds.registered,
            "proxyTokenSecretRef": creds.token_secret_ref,
            "phase": PHASE_READY if replicas > 0 else PHASE_PENDING,
        }
        self.write_status(status, patch, new_status, ready=replicas > 0)


# Global handler instance
_handler = WorkspaceProxyHandler()


@kopf.on.create(API_GROUP_VERSION, KIND_WORKSPACE_PROXY)
@kopf.on.update(API_GROUP_VERSION, KIND_WORKSPACE_PROXY)
@kopf.on.resume(API_GROUP_VERSION, KIND_WORKSPACE_PROXY)
@kopf.timer(API_GROUP_VERSION, KIND_WORKSPACE_PROXY, interval=RESYNC_INTERVAL_SECONDS, initial_delay=RESYNC_INTERVAL_SECONDS)
def handle_workspace_proxy(
    spec: dict[str, Any],
    meta: dict[str, Any],
    status: dict[str, Any],
    patch: kopf.Patch,
    name: str | None = None,
    namespace: str | None = None,
    **kwargs: Any,
) -> None:
    """Handle CoderWorkspaceProxy resource reconciliation."""

    def reconcile() -> None:
        assert_identity(meta, name, namespace)
        _handler.reconcile(spec, meta, status, patch)

    _handler.reconcile_with_metrics(meta, reconcile)
