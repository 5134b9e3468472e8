"""Utilities for managing Kubernetes conditions."""

from __future__ import annotations

import copy
from datetime import datetime, timezone
from typing import Any


def update_condition(
    conditions: list[dict[str, Any]],
    condition_type: str,
    status: str,
    reason: str,
    message: str,
    observed_generation: int | None = None,
) -> list[dict[str, Any]]:
    """Update or add a condition to the conditions list.

    The list is copied, never mutated in place, so callers can compare the
    result with the stored status.

    Args:
        conditions: List of existing conditions
        condition_type: Type of condition
        status: Status of condition ("True", "False", "Unknown")
        reason: Reason for the condition
        message: Human-readable message
        observed_generation: Generation when condition was observed

    Returns:
        Updated list of conditions
    """
    now = datetime.now(timezone.utc).isoformat()
    updated = copy.deepcopy(conditions or [])

    new_condition = {
        "type": condition_type,
        "status": status,
        "reason": reason,
        "message": message,
        "lastTransitionTime": now,
    }
    if observed_generation is not None:
        new_condition["observedGeneration"] = observed_generation

    for idx, cond in enumerate(updated):
        if cond.get("type") == condition_type:
            # Only update lastTransitionTime if status changed
            if cond.get("status") == status:
                new_condition["lastTransitionTime"] = cond.get("lastTransitionTime", now)
            updated[idx] = new_condition
            break
    else:
        updated.append(new_condition)

    return updated


def set_condition(
    conditions: list[dict[str, Any]],
    condition_type: str,
    ok: bool,
    reason: str,
    message: str,
    observed_generation: int | None = None,
) -> list[dict[str, Any]]:
    """Set a boolean condition."""
    return update_condition(
        conditions,
        condition_type,
        "True" if ok else "False",
        reason,
        message,
        observed_generation,
    )
