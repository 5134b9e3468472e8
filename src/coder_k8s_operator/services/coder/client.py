"""Client for the Coder REST API."""

from __future__ import annotations

import logging
import os
import time
from typing import Any
from urllib.parse import quote

import requests

from ... import metrics
from ...constants import DEFAULT_ORGANIZATION_NAME
from ...utils.errors import invariant
from .models import Entitlement, Entitlements, ProvisionerKeyResult, WorkspaceProxyResult

logger = logging.getLogger(__name__)

SESSION_TOKEN_HEADER = "Coder-Session-Token"
BYPASS_RATELIMIT_HEADER = "X-Coder-Bypass-Ratelimit"
DEFAULT_TIMEOUT_SECONDS = float(os.getenv("CODER_API_TIMEOUT_SECONDS", "30"))


class CoderAPIError(Exception):
    """Raised for transport failures and non-2xx responses from the Coder API."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404


def _error_message(response: requests.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text.strip() or response.reason or ""
    if isinstance(body, dict):
        message = body.get("message", "")
        detail = body.get("detail", "")
        return f"{message}: {detail}" if detail else message
    return str(body)


class CoderClient:
    """Authenticated client for one Coder deployment.

    Every request is first sent with the rate-limit bypass header. Deployments
    that reject the bypass for this session answer 428 Precondition Required;
    such requests are retried exactly once without the header.
    """

    def __init__(
        self,
        coder_url: str,
        session_token: str,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        session: requests.Session | None = None,
    ):
        if not coder_url:
            raise ValueError("coder URL is required")
        if not session_token:
            raise ValueError("session token is required")
        self.coder_url = coder_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({
            SESSION_TOKEN_HEADER: session_token,
            "Accept": "application/json",
        })

    def _send(self, method: str, path: str, body: Any, bypass: bool) -> requests.Response:
        headers = {BYPASS_RATELIMIT_HEADER: "true"} if bypass else {}
        return self.session.request(
            method,
            f"{self.coder_url}{path}",
            json=body,
            headers=headers,
            timeout=self.timeout,
        )

    def _request(self, method: str, path: str, operation: str, body: Any = None) -> Any:
        start_time = time.time()
        try:
            response = self._send(method, path, body, bypass=True)
            if response.status_code == 428:
                metrics.rate_limit_hits_total.labels(api_type="coder").inc()
                response = self._send(method, path, body, bypass=False)
        except requests.RequestException as e:
            metrics.api_call_total.labels(api_type="coder", operation=operation, result="error").inc()
            raise CoderAPIError(f"{operation}: {e}") from e
        finally:
            duration = time.time() - start_time
            metrics.api_call_duration_seconds.labels(api_type="coder", operation=operation).observe(duration)

        if not response.ok:
            metrics.api_call_total.labels(api_type="coder", operation=operation, result="error").inc()
            raise CoderAPIError(
                f"{operation}: {response.status_code} {_error_message(response)}",
                status_code=response.status_code,
            )

        metrics.api_call_total.labels(api_type="coder", operation=operation, result="success").inc()
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    # Organizations

    def organization_by_name(self, name: str = "") -> dict[str, Any]:
        name = name or DEFAULT_ORGANIZATION_NAME
        organization = self._request(
            "GET", f"/api/v2/organizations/{quote(name, safe='')}", "get_organization"
        )
        invariant(organization and organization.get("id"), f"organization {name!r} returned an empty ID")
        return organization

    # Provisioner keys

    def list_provisioner_keys(self, organization_id: str) -> list[dict[str, Any]]:
        keys = self._request(
            "GET", f"/api/v2/organizations/{organization_id}/provisionerkeys", "list_provisioner_keys"
        )
        return keys or []

    def find_provisioner_key(self, organization_id: str, key_name: str) -> dict[str, Any] | None:
        matches = [k for k in self.list_provisioner_keys(organization_id) if k.get("name") == key_name]
        invariant(len(matches) <= 1, f"found {len(matches)} provisioner keys named {key_name!r}")
        return matches[0] if matches else None

    def ensure_provisioner_key(
        self,
        organization_name: str,
        key_name: str,
        tags: dict[str, str] | None = None,
    ) -> ProvisionerKeyResult:
        """Create a provisioner key unless one with this name exists.

        Args:
            organization_name: Organization owning the key, "default" when empty
            key_name: Provisioner key name
            tags: Provisioner tags stamped on a newly created key

        Returns:
            Key metadata; ``key`` is only set when the key was just created
        """
        if not key_name:
            raise ValueError("provisioner key name is required")

        organization_id = self.organization_by_name(organization_name)["id"]

        existing = self.find_provisioner_key(organization_id, key_name)
        if existing is not None:
            invariant(existing.get("id"), f"provisioner key {key_name!r} returned an empty ID")
            return ProvisionerKeyResult(
                organization_id=organization_id,
                key_id=existing["id"],
                key_name=existing.get("name", key_name),
            )

        created = self._request(
            "POST",
            f"/api/v2/organizations/{organization_id}/provisionerkeys",
            "create_provisioner_key",
            {"name": key_name, "tags": dict(tags or {})},
        )
        plaintext = (created or {}).get("key", "")
        invariant(plaintext, f"created provisioner key {key_name!r} returned an empty key")

        metadata = self.find_provisioner_key(organization_id, key_name)
        invariant(metadata is not None, f"created provisioner key {key_name!r} was not returned by list")
        invariant(metadata.get("id"), f"created provisioner key {key_name!r} returned an empty ID")

        logger.info(f"Created provisioner key {key_name} in organization {organization_id}")
        return ProvisionerKeyResult(
            organization_id=organization_id,
            key_id=metadata["id"],
            key_name=metadata.get("name", key_name),
            key=plaintext,
        )

    def delete_provisioner_key(self, organization_name: str, key_name: str) -> None:
        """Delete a provisioner key by name. A missing key is success."""
        if not key_name:
            raise ValueError("provisioner key name is required")

        organization_id = self.organization_by_name(organization_name)["id"]
        try:
            self._request(
                "DELETE",
                f"/api/v2/organizations/{organization_id}/provisionerkeys/{quote(key_name, safe='')}",
                "delete_provisioner_key",
            )
        except CoderAPIError as e:
            if e.is_not_found:
                return
            raise

    # Entitlements and licenses

    def entitlements(self) -> Entitlements:
        body = self._request("GET", "/api/v2/entitlements", "get_entitlements") or {}
        features = body.get("features")
        invariant(features is not None, "entitlements.features is nil")
        return Entitlements(
            features={
                name: Entitlement(
                    name=name,
                    entitlement=feature.get("entitlement", "not_entitled"),
                    enabled=bool(feature.get("enabled", False)),
                )
                for name, feature in features.items()
            },
            has_license=bool(body.get("has_license", False)),
        )

    def add_license(self, license_jwt: str) -> dict[str, Any]:
        return self._request("POST", "/api/v2/licenses", "add_license", {"license": license_jwt}) or {}

    # Workspace proxies

    def ensure_workspace_proxy(self, name: str, display_name: str = "", icon: str = "") -> WorkspaceProxyResult:
        """Create the named workspace proxy, or regenerate the token of the existing one.

        Args:
            name: Proxy name
            display_name: Display name, keeping the current one when empty
            icon: Icon URL, keeping the current one when empty

        Returns:
            The proxy name and a fresh proxy token
        """
        if not name:
            raise ValueError("proxy name is required")

        try:
            existing = self._request(
                "GET", f"/api/v2/workspaceproxies/{quote(name, safe='')}", "get_workspace_proxy"
            )
        except CoderAPIError as e:
            if not e.is_not_found:
                raise
            created = self._request(
                "POST",
                "/api/v2/workspaceproxies",
                "create_workspace_proxy",
                {"name": name, "display_name": display_name, "icon": icon},
            ) or {}
            return WorkspaceProxyResult(
                proxy_name=created.get("proxy", {}).get("name", name),
                proxy_token=created.get("proxy_token", ""),
            )

        updated = self._request(
            "PATCH",
            f"/api/v2/workspaceproxies/{existing['id']}",
            "update_workspace_proxy",
            {
                "id": existing["id"],
                "name": existing.get("name", name),
                "display_name": display_name or existing.get("display_name", ""),
                "icon": icon or existing.get("icon_url", ""),
                "regenerate_token": True,
            },
        ) or {}
        return WorkspaceProxyResult(
            proxy_name=updated.get("proxy", {}).get("name", name),
            proxy_token=updated.get("proxy_token", ""),
        )
