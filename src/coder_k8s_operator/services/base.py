"""Capability interfaces for credential provisioners."""

from __future__ import annotations

from typing import Any, Protocol

from .coder.models import Entitlements, ProvisionerKeyResult, WorkspaceProxyResult
from .postgres.operator_access import OperatorAccessRequest, OperatorRevokeRequest


class ProvisionerKeyClient(Protocol):
    """Issues and deletes provisioner keys through the platform API."""

    def ensure_provisioner_key(
        self,
        organization_name: str,
        key_name: str,
        tags: dict[str, str] | None = None,
    ) -> ProvisionerKeyResult:
        ...

    def delete_provisioner_key(self, organization_name: str, key_name: str) -> None:
        ...

    def entitlements(self) -> Entitlements:
        ...


class WorkspaceProxyRegistrar(Protocol):
    """Creates or refreshes a workspace proxy registration."""

    def ensure_workspace_proxy(
        self,
        name: str,
        display_name: str = "",
        icon: str = "",
    ) -> WorkspaceProxyResult:
        ...


class LicenseUploader(Protocol):
    def add_license(self, license_jwt: str) -> dict[str, Any]:
        ...


class OperatorAccessProvisioner(Protocol):
    """Issues and revokes the operator's privileged token."""

    def ensure_operator_token(self, request: OperatorAccessRequest) -> str:
        ...

    def revoke_operator_token(self, request: OperatorRevokeRequest) -> None:
        ...
