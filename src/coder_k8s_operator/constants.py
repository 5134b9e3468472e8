"""Constants for the Coder Kubernetes Operator."""

import os

# API Group
API_GROUP = "coder.com"
API_VERSION = "v1alpha1"
API_GROUP_VERSION = f"{API_GROUP}/{API_VERSION}"

# Resource Kinds
KIND_CONTROL_PLANE = "CoderControlPlane"
KIND_PROVISIONER = "CoderProvisioner"
KIND_WORKSPACE_PROXY = "CoderWorkspaceProxy"

# Resource plurals
PLURAL_CONTROL_PLANE = "codercontrolplanes"
PLURAL_PROVISIONER = "coderprovisioners"
PLURAL_WORKSPACE_PROXY = "coderworkspaceproxies"

# Labels
LABEL_NAME = "app.kubernetes.io/name"
LABEL_INSTANCE = "app.kubernetes.io/instance"
LABEL_MANAGED_BY = "app.kubernetes.io/managed-by"
MANAGED_BY_VALUE = "coder-k8s"
APP_NAME_CONTROL_PLANE = "coder-control-plane"
APP_NAME_PROVISIONER = "coder-provisioner"
APP_NAME_WORKSPACE_PROXY = "coder-workspace-proxy"

# Annotations
ANNOTATION_PROVISIONER_KEY_CHECKSUM = "checksum/provisioner-key"

# Finalizers
FINALIZER = f"{API_GROUP}/provisioner-key-cleanup"

# Field Manager
FIELD_MANAGER = "coder-k8s-operator"
CONTROLLER_NAME = "coder-k8s-operator"

# Workloads
DEFAULT_IMAGE = "ghcr.io/coder/coder:latest"
CONTROL_PLANE_PORT = 80
CONTROL_PLANE_TARGET_PORT = 3000
WORKSPACE_PROXY_PORT = 80
WORKSPACE_PROXY_TARGET_PORT = 3001
DEFAULT_SERVICE_TYPE = "ClusterIP"
DEFAULT_REPLICAS = 1
DEFAULT_TERMINATION_GRACE_PERIOD_SECONDS = 600
PROVISIONER_NAME_PREFIX = "provisioner-"
PROVISIONER_SERVICE_ACCOUNT_SUFFIX = "-provisioner"
PROVISIONER_KEY_SECRET_SUFFIX = "-provisioner-key"
WORKSPACE_PROXY_NAME_PREFIX = "wsproxy-"
WORKSPACE_PROXY_TOKEN_SECRET_SUFFIX = "-proxy-token"

# Length ceilings
MAX_RESOURCE_NAME_LENGTH = 63
MAX_KEY_NAME_LENGTH = 128
MAX_SECRET_NAME_LENGTH = 253

# Secret data keys
DEFAULT_TOKEN_SECRET_KEY = "token"
DEFAULT_PROVISIONER_KEY_SECRET_KEY = "key"
DEFAULT_LICENSE_SECRET_KEY = "license"

# Coder defaults
DEFAULT_ORGANIZATION_NAME = "default"
POSTGRES_URL_ENV_VAR = "CODER_PG_CONNECTION_URL"
ENTITLEMENT_EXTERNAL_PROVISIONERS = "external_provisioner_daemons"

# Operator access
OPERATOR_USERNAME = "coder-k8s-operator"
OPERATOR_EMAIL = "coder-k8s-operator@coder-k8s.invalid"
OPERATOR_TOKEN_NAME_PREFIX = "coder-k8s-operator"
OPERATOR_TOKEN_LIFETIME_SECONDS = 365 * 24 * 60 * 60
OPERATOR_TOKEN_SECRET_SUFFIX = "-operator-token"

# Requeue / timing
REQUEUE_DELAY_SECONDS = float(os.getenv("OPERATOR_ACCESS_RETRY_SECONDS", "30"))
RESYNC_INTERVAL_SECONDS = float(os.getenv("RESYNC_INTERVAL_SECONDS", "60"))

# Phases
PHASE_PENDING = "Pending"
PHASE_READY = "Ready"

# Condition Types
COND_CONTROL_PLANE_READY = "ControlPlaneReady"
COND_BOOTSTRAP_SECRET_READY = "BootstrapSecretReady"
COND_PROVISIONER_KEY_READY = "ProvisionerKeyReady"
COND_PROVISIONER_KEY_SECRET_READY = "ProvisionerKeySecretReady"
COND_DEPLOYMENT_READY = "DeploymentReady"
COND_EXTERNAL_PROVISIONERS_ENTITLED = "ExternalProvisionersEntitled"
COND_LICENSE_APPLIED = "LicenseApplied"

# Condition Reasons
REASON_CONTROL_PLANE_AVAILABLE = "ControlPlaneAvailable"
REASON_CONTROL_PLANE_UNAVAILABLE = "ControlPlaneUnavailable"
REASON_BOOTSTRAP_SECRET_AVAILABLE = "BootstrapSecretAvailable"
REASON_BOOTSTRAP_SECRET_UNAVAILABLE = "BootstrapSecretUnavailable"
REASON_PROVISIONER_KEY_READY = "ProvisionerKeyReady"
REASON_PROVISIONER_KEY_FAILED = "ProvisionerKeyFailed"
REASON_SECRET_READY = "SecretReady"
REASON_MINIMUM_REPLICAS_READY = "MinimumReplicasReady"
REASON_NO_REPLICAS_READY = "NoReplicasReady"
REASON_ENTITLED = "Entitled"
REASON_NOT_ENTITLED = "NotEntitled"
REASON_ENTITLEMENT_UNKNOWN = "EntitlementUnknown"
REASON_LICENSE_APPLIED = "Applied"
REASON_LICENSE_PENDING = "Pending"
REASON_LICENSE_SECRET_MISSING = "SecretMissing"
REASON_LICENSE_FORBIDDEN = "Forbidden"
REASON_LICENSE_NOT_SUPPORTED = "NotSupported"
REASON_LICENSE_ERROR = "Error"

# Event Reasons
EVENT_REASON_RECONCILE_STARTED = "ReconcileStarted"
EVENT_REASON_RECONCILE_FAILED = "ReconcileFailed"
EVENT_REASON_PROVISIONER_KEY_CREATED = "ProvisionerKeyCreated"
EVENT_REASON_PROVISIONER_KEY_ROTATED = "ProvisionerKeyRotated"
EVENT_REASON_PROVISIONER_KEY_DELETED = "ProvisionerKeyDeleted"
EVENT_REASON_OPERATOR_TOKEN_ISSUED = "OperatorTokenIssued"
EVENT_REASON_OPERATOR_TOKEN_REVOKED = "OperatorTokenRevoked"
EVENT_REASON_WORKSPACE_PROXY_REGISTERED = "WorkspaceProxyRegistered"
EVENT_REASON_LICENSE_APPLIED = "LicenseApplied"
EVENT_REASON_CLEANUP_SKIPPED = "CleanupSkipped"
