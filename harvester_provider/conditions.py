"""Status conditions stored on a MachineRequest.

Conditions are kept as plain dicts so they round-trip through the JSON column
unchanged. Setting a condition replaces the entry of the same type; its
``last_transition_time`` only moves when ``status`` flips.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any


CONDITION_READY = "Ready"
CONDITION_PROGRESSING = "Progressing"

STATUS_TRUE = "True"
STATUS_FALSE = "False"

REASON_CREATING = "Creating"
REASON_WAITING_FOR_IP = "WaitingForIP"
REASON_RUNNING = "Running"
REASON_PROVIDER_ERROR = "ProviderError"
REASON_VM_DELETED = "VMDeleted"


@dataclass(frozen=True)
class Condition:
    type: str
    status: str
    reason: str
    message: str
    observed_generation: int = 0


def find_condition(
    conditions: list[dict[str, Any]], condition_type: str
) -> dict[str, Any] | None:
    for entry in conditions:
        if entry.get("type") == condition_type:
            return entry
    return None


def set_condition(
    conditions: list[dict[str, Any]], condition: Condition, now: datetime
) -> list[dict[str, Any]]:
    """Return a new list with ``condition`` applied; the input is not mutated."""
    existing = find_condition(conditions, condition.type)
    transition_time = now.isoformat()
    if existing is not None and existing.get("status") == condition.status:
        transition_time = existing.get("last_transition_time") or transition_time

    entry = {
        "type": condition.type,
        "status": condition.status,
        "reason": condition.reason,
        "message": condition.message,
        "observed_generation": condition.observed_generation,
        "last_transition_time": transition_time,
    }
    updated = [dict(c) for c in conditions if c.get("type") != condition.type]
    updated.append(entry)
    return updated
