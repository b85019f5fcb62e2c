"""Phase decisions for a MachineRequest.

Everything here is pure: the functions take a record snapshot and, where a
phase needs one, a fresh adapter outcome, and describe what should happen
next. Applying the result and talking to Harvester is the reconciler's job.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from harvester_provider.clients.errors import HarvesterError, NotFound
from harvester_provider.clients.harvester import ProvisionResult
from harvester_provider.clients.resources import InstanceStatus
from harvester_provider.conditions import (
    CONDITION_PROGRESSING,
    CONDITION_READY,
    REASON_CREATING,
    REASON_PROVIDER_ERROR,
    REASON_RUNNING,
    REASON_VM_DELETED,
    REASON_WAITING_FOR_IP,
    STATUS_FALSE,
    STATUS_TRUE,
    Condition,
    set_condition,
)
from harvester_provider.events import SEVERITY_NORMAL, SEVERITY_WARNING
from harvester_provider.models import MachinePhase, MachineRequest


PENDING = MachinePhase.PENDING.value
CREATING = MachinePhase.CREATING.value
RUNNING = MachinePhase.RUNNING.value
FAILED = MachinePhase.FAILED.value
DELETING = MachinePhase.DELETING.value

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    "": {PENDING, CREATING, FAILED, DELETING},
    PENDING: {CREATING, FAILED, DELETING},
    CREATING: {PENDING, RUNNING, FAILED, DELETING},
    RUNNING: {FAILED, DELETING},
    FAILED: {DELETING},
    DELETING: set(),
}


def can_transition(current: str, target: str) -> bool:
    if current == target:
        return True
    return target in ALLOWED_TRANSITIONS.get(current, set())


class Action(str, Enum):
    NONE = "none"
    ADD_FINALIZER = "add_finalizer"
    PROVISION = "provision"
    OBSERVE = "observe"
    DEPROVISION = "deprovision"
    RESET = "reset"


@dataclass(frozen=True)
class RequeuePolicy:
    short_sec: int = 10
    long_sec: int = 30


@dataclass(frozen=True)
class Notice:
    severity: str
    reason: str
    message: str


@dataclass
class Transition:
    phase: str | None = None
    updates: dict[str, Any] = field(default_factory=dict)
    notice: Notice | None = None
    requeue: bool = False
    requeue_after: int | None = None


def required_action(mr: MachineRequest) -> Action:
    if mr.being_deleted:
        # Without our finalizer the cleanup already ran.
        return Action.DEPROVISION if mr.has_finalizer() else Action.NONE
    if not mr.has_finalizer():
        return Action.ADD_FINALIZER
    if mr.phase in ("", PENDING):
        return Action.PROVISION
    if mr.phase in (CREATING, RUNNING):
        return Action.OBSERVE
    if mr.phase == FAILED:
        # Failed only moves again once the owner resets it.
        return Action.NONE
    return Action.RESET


def _condition(
    mr: MachineRequest, condition_type: str, status: str, reason: str, message: str
) -> Condition:
    return Condition(
        type=condition_type,
        status=status,
        reason=reason,
        message=message,
        observed_generation=mr.generation,
    )


def reset_to_pending(mr: MachineRequest, now: datetime) -> Transition:
    return Transition(phase=PENDING, updates={"last_updated": now}, requeue=True)


def mark_deleting(mr: MachineRequest, now: datetime) -> Transition:
    if mr.phase == DELETING:
        return Transition()
    return Transition(phase=DELETING, updates={"last_updated": now})


def mark_failed(
    mr: MachineRequest,
    reason: str,
    message: str,
    now: datetime,
    event_reason: str | None = None,
) -> Transition:
    conditions = set_condition(
        mr.conditions or [],
        _condition(mr, CONDITION_READY, STATUS_FALSE, reason, message),
        now,
    )
    return Transition(
        phase=FAILED,
        updates={
            "failure_reason": reason,
            "failure_message": message,
            "conditions": conditions,
            "last_updated": now,
        },
        notice=Notice(SEVERITY_WARNING, event_reason or reason, message),
    )


def after_provision(
    mr: MachineRequest,
    outcome: ProvisionResult | HarvesterError,
    policy: RequeuePolicy,
    now: datetime,
) -> Transition:
    if isinstance(outcome, HarvesterError):
        if outcome.transient:
            return Transition(requeue_after=policy.short_sec)
        return mark_failed(
            mr,
            REASON_PROVIDER_ERROR,
            str(outcome),
            now,
            event_reason="CreateFailed",
        )

    conditions = set_condition(
        mr.conditions or [],
        _condition(
            mr, CONDITION_PROGRESSING, STATUS_TRUE, REASON_CREATING, "VM is being created"
        ),
        now,
    )
    updates: dict[str, Any] = {
        "failure_reason": None,
        "failure_message": None,
        "conditions": conditions,
        "last_updated": now,
        "observed_generation": mr.generation,
    }
    if outcome.provider_id:
        updates["provider_id"] = outcome.provider_id
    return Transition(
        phase=CREATING,
        updates=updates,
        notice=Notice(SEVERITY_NORMAL, "Created", "VM creation initiated"),
        requeue_after=policy.short_sec,
    )


def _creating_observed(
    mr: MachineRequest, status: InstanceStatus, policy: RequeuePolicy, now: datetime
) -> Transition:
    ip_address = status.ip_address
    if not ip_address:
        conditions = set_condition(
            mr.conditions or [],
            _condition(
                mr,
                CONDITION_PROGRESSING,
                STATUS_TRUE,
                REASON_WAITING_FOR_IP,
                f"VM phase: {status.phase}, waiting for IP address",
            ),
            now,
        )
        return Transition(
            updates={"conditions": conditions}, requeue_after=policy.short_sec
        )

    message = f"VM is running with IP {ip_address}"
    conditions = set_condition(
        mr.conditions or [],
        _condition(mr, CONDITION_READY, STATUS_TRUE, REASON_RUNNING, message),
        now,
    )
    conditions = set_condition(
        conditions,
        _condition(
            mr, CONDITION_PROGRESSING, STATUS_FALSE, REASON_RUNNING, "VM creation complete"
        ),
        now,
    )
    return Transition(
        phase=RUNNING,
        updates={
            "ip_address": ip_address,
            "mac_address": status.mac_address,
            "conditions": conditions,
            "last_updated": now,
        },
        notice=Notice(SEVERITY_NORMAL, "Ready", message),
        requeue_after=policy.long_sec,
    )


def _running_observed(
    mr: MachineRequest, status: InstanceStatus, policy: RequeuePolicy, now: datetime
) -> Transition:
    ip_address = status.ip_address
    if not ip_address or ip_address == mr.ip_address:
        return Transition(requeue_after=policy.long_sec)

    conditions = set_condition(
        mr.conditions or [],
        _condition(
            mr,
            CONDITION_READY,
            STATUS_TRUE,
            REASON_RUNNING,
            f"VM is running with IP {ip_address}",
        ),
        now,
    )
    return Transition(
        updates={
            "ip_address": ip_address,
            "mac_address": status.mac_address,
            "conditions": conditions,
            "last_updated": now,
        },
        notice=Notice(
            SEVERITY_NORMAL,
            "AddressChanged",
            f"VM IP changed from {mr.ip_address or '<none>'} to {ip_address}",
        ),
        requeue_after=policy.long_sec,
    )


def after_observe(
    mr: MachineRequest,
    outcome: InstanceStatus | HarvesterError,
    policy: RequeuePolicy,
    now: datetime,
) -> Transition:
    running = mr.phase == RUNNING
    if isinstance(outcome, NotFound):
        if running:
            return mark_failed(mr, REASON_VM_DELETED, "VM was deleted externally", now)
        # Provisioning never finished from our point of view; start over.
        return Transition(phase=PENDING, updates={"last_updated": now}, requeue=True)
    if isinstance(outcome, HarvesterError):
        if outcome.transient:
            return Transition(
                requeue_after=policy.long_sec if running else policy.short_sec
            )
        return mark_failed(mr, REASON_PROVIDER_ERROR, str(outcome), now)

    if running:
        return _running_observed(mr, outcome, policy, now)
    return _creating_observed(mr, outcome, policy, now)
