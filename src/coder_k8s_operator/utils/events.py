"""Utilities for emitting Kubernetes events."""

from __future__ import annotations

from typing import Any

import kopf

from ..constants import (
    EVENT_REASON_CLEANUP_SKIPPED,
    EVENT_REASON_LICENSE_APPLIED,
    EVENT_REASON_OPERATOR_TOKEN_ISSUED,
    EVENT_REASON_OPERATOR_TOKEN_REVOKED,
    EVENT_REASON_PROVISIONER_KEY_CREATED,
    EVENT_REASON_PROVISIONER_KEY_DELETED,
    EVENT_REASON_PROVISIONER_KEY_ROTATED,
    EVENT_REASON_RECONCILE_FAILED,
    EVENT_REASON_RECONCILE_STARTED,
    EVENT_REASON_WORKSPACE_PROXY_REGISTERED,
)


def emit_event(
    body: dict[str, Any],
    reason: str,
    message: str,
    type_: str = "Normal",
) -> None:
    """Emit a Kubernetes event.

    Args:
        body: Resource body (apiVersion, kind and metadata)
        reason: Event reason
        message: Event message
        type_: Event type (Normal or Warning)
    """
    kopf.event(
        body,
        reason=reason,
        message=message,
        type=type_,
    )


def emit_reconcile_started(body: dict[str, Any]) -> None:
    """Emit reconcile started event."""
    emit_event(body, EVENT_REASON_RECONCILE_STARTED, "Reconciliation started")


def emit_reconcile_failed(body: dict[str, Any], message: str) -> None:
    """Emit reconcile failed event."""
    emit_event(body, EVENT_REASON_RECONCILE_FAILED, message, type_="Warning")


def emit_provisioner_key_created(body: dict[str, Any], key_name: str) -> None:
    emit_event(body, EVENT_REASON_PROVISIONER_KEY_CREATED, f"Provisioner key {key_name} created")


def emit_provisioner_key_rotated(body: dict[str, Any], key_name: str) -> None:
    emit_event(body, EVENT_REASON_PROVISIONER_KEY_ROTATED, f"Provisioner key {key_name} rotated")


def emit_provisioner_key_deleted(body: dict[str, Any], key_name: str) -> None:
    emit_event(body, EVENT_REASON_PROVISIONER_KEY_DELETED, f"Provisioner key {key_name} deleted")


def emit_operator_token_issued(body: dict[str, Any], secret_name: str) -> None:
    emit_event(body, EVENT_REASON_OPERATOR_TOKEN_ISSUED, f"Operator token stored in secret {secret_name}")


def emit_operator_token_revoked(body: dict[str, Any]) -> None:
    emit_event(body, EVENT_REASON_OPERATOR_TOKEN_REVOKED, "Operator token revoked")


def emit_workspace_proxy_registered(body: dict[str, Any], proxy_name: str) -> None:
    emit_event(body, EVENT_REASON_WORKSPACE_PROXY_REGISTERED, f"Workspace proxy {proxy_name} registered")


def emit_license_applied(body: dict[str, Any]) -> None:
    emit_event(body, EVENT_REASON_LICENSE_APPLIED, "License uploaded to the control plane")


def emit_cleanup_skipped(body: dict[str, Any], message: str) -> None:
    """Emit a warning for best-effort cleanup that did not complete."""
    emit_event(body, EVENT_REASON_CLEANUP_SKIPPED, message, type_="Warning")
