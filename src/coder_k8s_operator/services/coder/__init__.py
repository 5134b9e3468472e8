"""Coder REST API client."""

from .client import CoderAPIError, CoderClient
from .models import Entitlement, Entitlements, ProvisionerKeyResult, WorkspaceProxyResult

__all__ = [
    "CoderAPIError",
    "CoderClient",
    "Entitlement",
    "Entitlements",
    "ProvisionerKeyResult",
    "WorkspaceProxyResult",
]
