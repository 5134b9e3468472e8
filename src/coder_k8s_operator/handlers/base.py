"""Base handler class with common functionality for all CRD handlers."""

from __future__ import annotations

import copy
import logging
import time
from typing import Any, Callable

import kopf

from .. import metrics
from ..constants import API_GROUP_VERSION, CONTROLLER_NAME, FINALIZER
from ..logging import log_resource_event
from ..tracing import trace_span
from ..utils.context import with_correlation_id
from ..utils.errors import InvariantError, sanitize_exception
from ..utils.events import emit_reconcile_failed, emit_reconcile_started
from ..utils.keylock import single_flight


class BaseHandler:
    """Base class for all CRD handlers with common functionality."""

    def __init__(self, kind: str):
        """Initialize base handler.

        Args:
            kind: The Kubernetes resource kind (e.g., "CoderProvisioner")
        """
        self.kind = kind
        self.logger = logging.getLogger(__name__)

    def _get_resource_context(self, meta: dict[str, Any]) -> dict[str, Any]:
        return {
            "name": meta.get("name", "unknown"),
            "namespace": meta.get("namespace", "default"),
            "uid": meta.get("uid", "unknown"),
        }

    def event_body(self, meta: dict[str, Any]) -> dict[str, Any]:
        """Object body that kopf can build an event reference from."""
        return {"apiVersion": API_GROUP_VERSION, "kind": self.kind, "metadata": dict(meta)}

    def _log(self, level: int, meta: dict[str, Any], message: str, event: str, reason: str, **kwargs: Any) -> None:
        ctx = self._get_resource_context(meta)
        log_resource_event(
            self.logger,
            controller=CONTROLLER_NAME,
            resource_kind=self.kind,
            resource_name=ctx["name"],
            namespace=ctx["namespace"],
            uid=ctx["uid"],
            event=event,
            reason=reason,
            message=message,
            level=level,
            **kwargs,
        )

    def log_info(
        self,
        meta: dict[str, Any],
        message: str,
        event: str = "info",
        reason: str = "Info",
        **kwargs: Any,
    ) -> None:
        """Log an info-level structured log message.

        Args:
            meta: Kubernetes resource metadata
            message: Log message
            event: Event type (default: "info")
            reason: Reason for the event (default: "Info")
            **kwargs: Additional fields to include in the log
        """
        self._log(logging.INFO, meta, message, event, reason, **kwargs)

    def log_warning(
        self,
        meta: dict[str, Any],
        message: str,
        error: Exception | None = None,
        event: str = "warning",
        reason: str = "Warning",
        **kwargs: Any,
    ) -> None:
        """Log a warning-level structured log message, optionally with a sanitized error."""
        if error is not None:
            kwargs["error"] = sanitize_exception(error)
            kwargs["error_type"] = type(error).__name__
        self._log(logging.WARNING, meta, message, event, reason, **kwargs)

    def log_error(
        self,
        meta: dict[str, Any],
        message: str,
        error: Exception | None = None,
        event: str = "error",
        reason: str = "Error",
        **kwargs: Any,
    ) -> None:
        """Log an error-level structured log message.

        Args:
            meta: Kubernetes resource metadata
            message: Log message
            error: Optional exception to include sanitized error details
            event: Event type (default: "error")
            reason: Reason for the event (default: "Error")
            **kwargs: Additional fields to include in the log
        """
        if error is not None:
            kwargs["error"] = sanitize_exception(error)
            kwargs["error_type"] = type(error).__name__
        self._log(logging.ERROR, meta, message, event, reason, **kwargs)

    def ensure_finalizer(self, meta: dict[str, Any], patch: kopf.Patch) -> bool:
        """Ensure finalizer is present in metadata.

        Returns:
            True if the finalizer was added by this call
        """
        finalizers = list(meta.get("finalizers") or [])
        if FINALIZER in finalizers:
            return False
        finalizers.append(FINALIZER)
        patch.metadata["finalizers"] = finalizers
        return True

    def remove_finalizer(self, meta: dict[str, Any], patch: kopf.Patch) -> None:
        """Remove finalizer from metadata."""
        finalizers = list(meta.get("finalizers") or [])
        if FINALIZER in finalizers:
            finalizers.remove(FINALIZER)
            patch.metadata["finalizers"] = finalizers if finalizers else None

    def reconcile_with_metrics(
        self,
        meta: dict[str, Any],
        reconcile_fn: Callable[[], None],
    ) -> None:
        """Execute one reconcile pass with metrics, tracing and error mapping.

        The pass holds the single-flight lock of its object key. Invariant
        violations surface as ``kopf.PermanentError``; kopf retries of
        ``TemporaryError`` are counted as errors but keep their delay.

        Args:
            meta: Kubernetes resource metadata
            reconcile_fn: Function to execute for reconciliation
        """
        ctx = self._get_resource_context(meta)
        with with_correlation_id(), single_flight(self.kind, ctx["namespace"], ctx["name"]):
            emit_reconcile_started(self.event_body(meta))
            metrics.reconcile_total.labels(kind=self.kind, result="started").inc()

            start_time = time.time()
            try:
                with trace_span(
                    f"reconcile_{self.kind.lower()}",
                    kind=self.kind,
                    attributes={"resource.name": ctx["name"], "resource.namespace": ctx["namespace"]},
                ):
                    reconcile_fn()
                metrics.reconcile_total.labels(kind=self.kind, result="success").inc()
            except Exception as e:
                sanitized_error = sanitize_exception(e)
                error_type = type(e).__name__
                metrics.error_total.labels(kind=self.kind, error_type=error_type).inc()
                metrics.reconcile_total.labels(kind=self.kind, result="error").inc()
                self.log_error(meta, "Reconciliation failed", error=e, reason="ReconciliationFailed")
                emit_reconcile_failed(self.event_body(meta), f"Reconciliation failed: {sanitized_error}")
                if isinstance(e, InvariantError):
                    raise kopf.PermanentError(f"invariant violated: {sanitized_error}") from e
                raise
            finally:
                duration = time.time() - start_time
                metrics.reconcile_duration_seconds.labels(kind=self.kind).observe(duration)

    def write_status(
        self,
        status: dict[str, Any],
        patch: kopf.Patch,
        new_status: dict[str, Any],
        ready: bool,
    ) -> bool:
        """Patch status only when the computed status differs from the stored one.

        Args:
            status: Current status as delivered by kopf
            patch: Kopf patch object
            new_status: Fully computed status for this pass
            ready: Whether the resource is ready

        Returns:
            True if a status patch was queued
        """
        metrics.resource_status_total.labels(
            kind=self.kind, status="ready" if ready else "not_ready"
        ).inc()

        current = copy.deepcopy(dict(status or {}))
        # kopf may keep its own bookkeeping under status.kopf
        current.pop("kopf", None)
        if current == new_status:
            metrics.status_writes_skipped_total.labels(kind=self.kind).inc()
            return False

        # Keys no longer computed are cleared explicitly in the merge patch.
        for key in current:
            if key not in new_status:
                patch.status[key] = None
        for key, value in new_status.items():
            if current.get(key) != value:
                patch.status[key] = value
        return True
