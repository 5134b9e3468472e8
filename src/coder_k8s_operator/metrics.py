"""Prometheus metrics for the Coder Kubernetes Operator."""

from prometheus_client import Counter, Histogram

# Reconciliation metrics
reconcile_total = Counter(
    "coder_k8s_operator_reconcile_total",
    "Total number of reconciliations",
    ["kind", "result"],
)

reconcile_duration_seconds = Histogram(
    "coder_k8s_operator_reconcile_duration_seconds",
    "Duration of reconciliations in seconds",
    ["kind"],
    buckets=[0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
)

error_total = Counter(
    "coder_k8s_operator_error_total",
    "Total number of reconciliation errors",
    ["kind", "error_type"],
)

resource_status_total = Counter(
    "coder_k8s_operator_resource_status_total",
    "Resource readiness observations",
    ["kind", "status"],
)

status_writes_skipped_total = Counter(
    "coder_k8s_operator_status_writes_skipped_total",
    "Status writes skipped because nothing changed",
    ["kind"],
)

# Configuration drift detection metrics
drift_detected_total = Counter(
    "coder_k8s_operator_drift_detected_total",
    "Total number of provisioner key drift detections",
    ["kind", "field"],
)

# Credential lifecycle metrics
credential_operations_total = Counter(
    "coder_k8s_operator_credential_operations_total",
    "Total number of credential issue/rotate/revoke operations",
    ["provisioner", "operation", "result"],
)

# API call metrics
api_call_total = Counter(
    "coder_k8s_operator_api_call_total",
    "Total number of API calls",
    ["api_type", "operation", "result"],
)

api_call_duration_seconds = Histogram(
    "coder_k8s_operator_api_call_duration_seconds",
    "Duration of API calls in seconds",
    ["api_type", "operation"],
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0],
)

rate_limit_hits_total = Counter(
    "coder_k8s_operator_rate_limit_hits_total",
    "Total number of rate limit hits",
    ["api_type"],
)
