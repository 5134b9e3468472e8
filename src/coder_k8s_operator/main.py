"""Main entry point for the Coder Kubernetes Operator.

Run with ``kopf run -m coder_k8s_operator.main``.
"""

from __future__ import annotations

import os
from typing import Any

import kopf

from . import handlers  # noqa: F401
from . import health
from . import logging as structured_logging
from . import tracing
from .constants import CONTROLLER_NAME
from .utils.keylock import active_keys


@kopf.on.startup()
def configure(settings: kopf.OperatorSettings, **_: Any) -> None:
    """Configure the operator."""
    # Set up structured JSON logging
    structured_logging.setup_structured_logging()
    tracing.initialize_tracing(CONTROLLER_NAME)

    # Use annotations for kopf bookkeeping so status stays ours. kopf keeps its
    # own finalizer marker; FINALIZER belongs to CoderProvisioner cleanup only.
    settings.persistence.progress_storage = kopf.AnnotationsProgressStorage()
    settings.persistence.diffbase_storage = kopf.AnnotationsDiffBaseStorage()

    settings.posting.level = 0
    settings.networking.request_timeout = 30.0
    settings.execution.max_workers = int(os.getenv("MAX_WORKERS", "4"))

    # Start metrics HTTP server with health check endpoints on port 8080
    metrics_port = int(os.getenv("METRICS_PORT", "8080"))
    health.start_server(metrics_port)
    health.mark_ready()


@kopf.on.cleanup()
def shutdown(**_: Any) -> None:
    health.mark_not_ready()


@kopf.on.probe(id="inflight")
def inflight_reconciles(**_: Any) -> int:
    """Number of objects currently being reconciled."""
    return len(active_keys())
