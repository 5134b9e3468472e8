"""Direct database access for the operator's own identity."""

from .operator_access import (
    OperatorAccessError,
    OperatorAccessRequest,
    OperatorRevokeRequest,
    PostgresOperatorAccessProvisioner,
)

__all__ = [
    "OperatorAccessError",
    "OperatorAccessRequest",
    "OperatorRevokeRequest",
    "PostgresOperatorAccessProvisioner",
]
