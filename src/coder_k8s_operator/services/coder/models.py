"""Result types returned by the Coder API client."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class ProvisionerKeyResult:
    """Provisioner key metadata.

    ``key`` holds the plaintext key and is only non-empty right after the key
    was created; the API never returns it again.
    """

    organization_id: str
    key_id: str
    key_name: str
    key: str = ""


@dataclass
class WorkspaceProxyResult:
    proxy_name: str
    proxy_token: str


@dataclass
class Entitlement:
    name: str
    entitlement: str = "not_entitled"
    enabled: bool = False

    @property
    def usable(self) -> bool:
        return self.entitlement in ("entitled", "grace_period")


@dataclass
class Entitlements:
    features: dict[str, Entitlement] = field(default_factory=dict)
    has_license: bool = False

    def feature(self, name: str) -> Entitlement:
        return self.features.get(name) or Entitlement(name=name)
