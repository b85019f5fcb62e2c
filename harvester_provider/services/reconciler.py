import logging
from collections.abc import Callable
from dataclasses import dataclass

from harvester_provider.clients.errors import HarvesterError
from harvester_provider.clients.harvester import HarvesterClient, MachineOptions
from harvester_provider.config import get_settings
from harvester_provider.db import session_scope
from harvester_provider.events import SEVERITY_NORMAL, SEVERITY_WARNING, EventRecorder
from harvester_provider.metrics import metrics
from harvester_provider.models import (
    FINALIZER_NAME,
    PROVIDER_TYPE_HARVESTER,
    MachinePhase,
    MachineRequest,
    ProviderConfig,
)
from harvester_provider.repositories import (
    get_machine_request,
    get_provider_config,
    now_utc,
    update_finalizers,
    update_status,
)
from harvester_provider.state_machine import (
    Action,
    RequeuePolicy,
    Transition,
    after_observe,
    after_provision,
    can_transition,
    mark_deleting,
    mark_failed,
    required_action,
    reset_to_pending,
)


REASON_PROVIDER_CONFIG_ERROR = "ProviderConfigError"
REASON_CLIENT_ERROR = "HarvesterClientError"

PHASE_COUNTERS = {
    MachinePhase.CREATING.value: "machines_created_total",
    MachinePhase.RUNNING.value: "machines_ready_total",
    MachinePhase.FAILED.value: "machines_failed_total",
}

logger = logging.getLogger(__name__)

ClientFactory = Callable[[ProviderConfig], HarvesterClient]


@dataclass(frozen=True)
class ReconcileResult:
    requeue: bool = False
    requeue_after: int | None = None


def policy_from_settings() -> RequeuePolicy:
    settings = get_settings()
    return RequeuePolicy(
        short_sec=settings.requeue_short_sec, long_sec=settings.requeue_long_sec
    )


def _commit(
    mr: MachineRequest,
    transition: Transition,
    recorder: EventRecorder,
    *,
    reset: bool = False,
) -> ReconcileResult:
    """Apply ``transition`` to ``mr`` and persist it if anything changed."""
    result = ReconcileResult(
        requeue=transition.requeue, requeue_after=transition.requeue_after
    )
    changes = dict(transition.updates)
    if transition.phase is not None and transition.phase != mr.phase:
        if not reset and not can_transition(mr.phase, transition.phase):
            logger.error(
                "refusing phase transition machinerequest=%s/%s from=%s to=%s",
                mr.namespace,
                mr.name,
                mr.phase or "<none>",
                transition.phase,
            )
            return ReconcileResult()
        changes["phase"] = transition.phase

    changes = {k: v for k, v in changes.items() if getattr(mr, k) != v}
    if not any(k != "last_updated" for k in changes):
        return result

    previous_phase = mr.phase
    for key, value in changes.items():
        setattr(mr, key, value)
    with session_scope() as session:
        update_status(session, mr)

    if mr.phase != previous_phase:
        logger.info(
            "phase changed machinerequest=%s/%s from=%s to=%s",
            mr.namespace,
            mr.name,
            previous_phase or "<none>",
            mr.phase,
        )
        counter = PHASE_COUNTERS.get(mr.phase)
        if counter:
            metrics.inc(counter)
    if transition.notice is not None:
        recorder.event(
            mr,
            transition.notice.severity,
            transition.notice.reason,
            transition.notice.message,
        )
    return result


def _fail(
    mr: MachineRequest, reason: str, message: str, recorder: EventRecorder
) -> ReconcileResult:
    return _commit(mr, mark_failed(mr, reason, message, now_utc()), recorder)


def _machine_options(mr: MachineRequest) -> MachineOptions:
    return MachineOptions(
        name=mr.machine_name,
        cpu=mr.cpu,
        memory_mb=mr.memory_mb,
        disk_gb=mr.disk_gb,
        image=mr.image or "",
        network=mr.network or "",
        user_data=mr.user_data or "",
        network_data=mr.network_data or "",
        labels=dict(mr.labels or {}),
    )


def _reconcile_pending(
    mr: MachineRequest,
    harvester: HarvesterClient,
    recorder: EventRecorder,
    policy: RequeuePolicy,
) -> ReconcileResult:
    logger.info(
        "creating vm machinerequest=%s/%s vm=%s",
        mr.namespace,
        mr.name,
        mr.machine_name,
    )
    try:
        outcome = harvester.create_machine(_machine_options(mr))
    except HarvesterError as exc:
        if exc.transient:
            logger.warning("vm creation deferred vm=%s error=%s", mr.machine_name, exc)
        else:
            logger.error("vm creation failed vm=%s error=%s", mr.machine_name, exc)
        return _commit(mr, after_provision(mr, exc, policy, now_utc()), recorder)

    if outcome.already_existed:
        logger.info("vm already exists, checking status vm=%s", mr.machine_name)
    return _commit(mr, after_provision(mr, outcome, policy, now_utc()), recorder)


def _reconcile_observe(
    mr: MachineRequest,
    harvester: HarvesterClient,
    recorder: EventRecorder,
    policy: RequeuePolicy,
) -> ReconcileResult:
    try:
        outcome = harvester.get_instance_status(mr.machine_name)
    except HarvesterError as exc:
        logger.warning(
            "vm status unavailable machinerequest=%s/%s phase=%s error=%s",
            mr.namespace,
            mr.name,
            mr.phase,
            exc,
        )
        return _commit(mr, after_observe(mr, exc, policy, now_utc()), recorder)

    logger.debug(
        "vm status vm=%s ready=%s phase=%s ip=%s",
        mr.machine_name,
        outcome.ready,
        outcome.phase,
        outcome.ip_address,
    )
    return _commit(mr, after_observe(mr, outcome, policy, now_utc()), recorder)


def _reconcile_delete(
    mr: MachineRequest,
    harvester: HarvesterClient,
    recorder: EventRecorder,
    policy: RequeuePolicy,
) -> ReconcileResult:
    logger.info(
        "deleting vm machinerequest=%s/%s vm=%s",
        mr.namespace,
        mr.name,
        mr.machine_name,
    )
    _commit(mr, mark_deleting(mr, now_utc()), recorder)

    outcome = harvester.delete_machine(mr.machine_name)
    if any(error.transient for error in outcome.errors):
        for error in outcome.errors:
            logger.warning("vm deletion deferred vm=%s error=%s", mr.machine_name, error)
        return ReconcileResult(requeue_after=policy.short_sec)
    for error in outcome.errors:
        # Accepted risk: a disk that survives here is not revisited.
        logger.error("vm resource deletion failed vm=%s error=%s", mr.machine_name, error)
        recorder.event(mr, SEVERITY_WARNING, "DeleteFailed", str(error))

    mr.finalizers = [f for f in mr.finalizers or [] if f != FINALIZER_NAME]
    with session_scope() as session:
        removed = update_finalizers(session, mr)
    metrics.inc("machines_deleted_total")
    logger.info(
        "vm deleted machinerequest=%s/%s vm=%s record_removed=%s",
        mr.namespace,
        mr.name,
        mr.machine_name,
        removed,
    )
    recorder.event(mr, SEVERITY_NORMAL, "Deleted", "VM deleted")
    return ReconcileResult()


def reconcile(
    namespace: str,
    name: str,
    client_factory: ClientFactory,
    recorder: EventRecorder | None = None,
    policy: RequeuePolicy | None = None,
) -> ReconcileResult:
    recorder = recorder or EventRecorder()
    policy = policy or policy_from_settings()
    metrics.inc("reconciles_total")

    with session_scope() as session:
        mr = get_machine_request(session, namespace, name)
    if mr is None:
        return ReconcileResult()

    provider_namespace = mr.provider_ref_namespace or mr.namespace
    with session_scope() as session:
        provider_config = get_provider_config(
            session, provider_namespace, mr.provider_ref_name
        )
    if provider_config is None:
        message = (
            f"failed to get ProviderConfig {provider_namespace}/{mr.provider_ref_name}: "
            "not found"
        )
        logger.error("%s machinerequest=%s/%s", message, namespace, name)
        return _fail(mr, REASON_PROVIDER_CONFIG_ERROR, message, recorder)

    if provider_config.provider != PROVIDER_TYPE_HARVESTER:
        logger.debug(
            "skipping non-harvester machinerequest=%s/%s provider=%s",
            namespace,
            name,
            provider_config.provider,
        )
        return ReconcileResult()

    try:
        harvester = client_factory(provider_config)
    except Exception as exc:  # noqa: BLE001
        logger.error(
            "failed to create harvester client machinerequest=%s/%s error=%s",
            namespace,
            name,
            exc,
        )
        return _fail(mr, REASON_CLIENT_ERROR, str(exc), recorder)

    action = required_action(mr)
    if action is Action.DEPROVISION:
        return _reconcile_delete(mr, harvester, recorder, policy)
    if action is Action.ADD_FINALIZER:
        mr.finalizers = [*(mr.finalizers or []), FINALIZER_NAME]
        with session_scope() as session:
            update_finalizers(session, mr)
        return ReconcileResult(requeue=True)
    if action is Action.PROVISION:
        return _reconcile_pending(mr, harvester, recorder, policy)
    if action is Action.OBSERVE:
        return _reconcile_observe(mr, harvester, recorder, policy)
    if action is Action.RESET:
        logger.info(
            "unknown phase, resetting to Pending machinerequest=%s/%s phase=%s",
            namespace,
            name,
            mr.phase,
        )
        return _commit(mr, reset_to_pending(mr, now_utc()), recorder, reset=True)
    return ReconcileResult()
