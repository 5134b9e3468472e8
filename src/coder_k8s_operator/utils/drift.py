"""Drift detection for provisioner key identity."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .naming import fnv32a


def hash_tags(tags: dict[str, str] | None) -> str:
    """Order-independent digest of a provisioner tag map."""
    data = bytearray()
    for key in sorted(tags or {}):
        data += key.encode("utf-8") + b"\0"
        data += str(tags[key]).encode("utf-8") + b"\0"
    return f"{fnv32a(bytes(data)):08x}"


def hash_secret(value: str | bytes) -> str:
    """Checksum of secret material, stamped on the pod template."""
    if isinstance(value, str):
        value = value.encode("utf-8")
    return f"{fnv32a(value):08x}"


@dataclass(frozen=True)
class DriftReport:
    """Result of comparing desired key identity with the status baseline."""

    organization: bool = False
    key_name: bool = False
    tags: bool = False
    baseline_incomplete: bool = False

    @property
    def detected(self) -> bool:
        return self.organization or self.key_name or self.tags

    def fields(self) -> list[str]:
        return [
            field
            for field, drifted in (
                ("organization", self.organization),
                ("keyName", self.key_name),
                ("tags", self.tags),
            )
            if drifted
        ]


def _drifted(baseline: str | None, desired: str) -> bool:
    # An empty baseline is unknown, never drift.
    return bool(baseline) and baseline != desired


def detect_drift(
    status: dict[str, Any] | None,
    organization: str,
    key_name: str,
    tags_hash: str,
) -> DriftReport:
    """Compare desired identity against the last applied baseline in status.

    Args:
        status: CoderProvisioner status
        organization: Desired organization name
        key_name: Desired provisioner key name
        tags_hash: ``hash_tags`` of the desired tags

    Returns:
        DriftReport describing which fields changed
    """
    status = status or {}
    applied_org = status.get("organizationName") or ""
    applied_key = status.get("provisionerKeyName") or ""
    applied_tags = status.get("tagsHash") or ""

    return DriftReport(
        organization=_drifted(applied_org, organization),
        key_name=_drifted(applied_key, key_name),
        tags=_drifted(applied_tags, tags_hash),
        baseline_incomplete=not applied_org or not applied_tags,
    )
