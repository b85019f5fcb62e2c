import uuid
from datetime import UTC, datetime

from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session

from harvester_provider.clients.harvester import DEFAULT_NAMESPACE
from harvester_provider.credentials import DEFAULT_CREDENTIALS_KEY
from harvester_provider.models import Event, MachineRequest, ProviderConfig


class ConflictError(RuntimeError):
    """The record changed (or vanished) since it was read."""

    def __init__(self, namespace: str, name: str, expected_version: int):
        self.namespace = namespace
        self.name = name
        self.expected_version = expected_version
        super().__init__(
            f"machinerequest {namespace}/{name} was modified since resource_version {expected_version}"
        )


STATUS_FIELDS = (
    "phase",
    "provider_id",
    "ip_address",
    "mac_address",
    "failure_reason",
    "failure_message",
    "conditions",
    "last_updated",
    "observed_generation",
)


def now_utc() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


def write_event(
    session: Session,
    severity: str,
    reason: str,
    message: str,
    namespace: str | None = None,
    name: str | None = None,
) -> None:
    session.add(
        Event(
            namespace=namespace,
            name=name,
            severity=severity,
            reason=reason,
            message=message,
        )
    )


def list_events(
    session: Session,
    namespace: str | None = None,
    name: str | None = None,
    limit: int = 100,
) -> list[Event]:
    query = select(Event)
    if namespace:
        query = query.where(Event.namespace == namespace)
    if name:
        query = query.where(Event.name == name)
    return list(session.scalars(query.order_by(Event.id.desc()).limit(limit)))


def get_provider_config(
    session: Session, namespace: str, name: str
) -> ProviderConfig | None:
    return session.get(ProviderConfig, (namespace, name))


def list_provider_configs(session: Session) -> list[ProviderConfig]:
    return list(
        session.scalars(
            select(ProviderConfig).order_by(
                ProviderConfig.namespace.asc(), ProviderConfig.name.asc()
            )
        )
    )


def get_machine_request(
    session: Session, namespace: str, name: str
) -> MachineRequest | None:
    return session.get(MachineRequest, (namespace, name))


def list_machine_requests(
    session: Session, namespace: str | None = None, phase: str | None = None
) -> list[MachineRequest]:
    query = select(MachineRequest)
    if namespace:
        query = query.where(MachineRequest.namespace == namespace)
    if phase:
        query = query.where(MachineRequest.phase == phase)
    return list(
        session.scalars(
            query.order_by(MachineRequest.namespace.asc(), MachineRequest.name.asc())
        )
    )


def harvester_target(config: ProviderConfig) -> tuple[str, str, str, str]:
    """Cluster credentials plus VM namespace; equal targets share VM names."""
    return (
        config.credentials_ref_namespace or config.namespace,
        config.credentials_ref_name,
        config.credentials_ref_key or DEFAULT_CREDENTIALS_KEY,
        config.harvester_namespace or DEFAULT_NAMESPACE,
    )


def find_machine_name_owner(
    session: Session, machine_name: str, provider_ref_key: tuple[str, str]
) -> MachineRequest | None:
    """Record already claiming ``machine_name`` on the same Harvester target, if any.

    Records referencing the same ProviderConfig always collide. Records on
    different ProviderConfigs collide when both configs exist and point at the
    same credentials and namespace.
    """
    config = get_provider_config(session, *provider_ref_key)
    target = harvester_target(config) if config is not None else None
    candidates = list(
        session.scalars(
            select(MachineRequest).where(MachineRequest.machine_name == machine_name)
        )
    )
    for mr in candidates:
        if mr.provider_ref_key == provider_ref_key:
            return mr
        if target is None:
            continue
        other = get_provider_config(session, *mr.provider_ref_key)
        if other is not None and harvester_target(other) == target:
            return mr
    return None


def list_machine_request_keys(session: Session) -> list[tuple[str, str]]:
    rows = session.execute(select(MachineRequest.namespace, MachineRequest.name))
    return [(row[0], row[1]) for row in rows]


def new_uid() -> str:
    return uuid.uuid4().hex


def _compare_and_set(session: Session, mr: MachineRequest, values: dict) -> None:
    expected = mr.resource_version
    result = session.execute(
        update(MachineRequest)
        .where(
            MachineRequest.namespace == mr.namespace,
            MachineRequest.name == mr.name,
            MachineRequest.resource_version == expected,
        )
        .values(resource_version=expected + 1, **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ConflictError(mr.namespace, mr.name, expected)
    mr.resource_version = expected + 1


def update_status(session: Session, mr: MachineRequest) -> None:
    """Persist the status fields of ``mr``; raises ConflictError on a stale read."""
    values = {field: getattr(mr, field) for field in STATUS_FIELDS}
    values["conditions"] = [dict(c) for c in mr.conditions or []]
    _compare_and_set(session, mr, values)


def update_finalizers(session: Session, mr: MachineRequest) -> bool:
    """Persist ``mr.finalizers``.

    A record with deletion intent and no finalizers left is removed from the
    store; returns True when that happened.
    """
    finalizers = list(mr.finalizers or [])
    _compare_and_set(session, mr, {"finalizers": finalizers})
    if mr.deletion_timestamp is not None and not finalizers:
        session.execute(
            delete(MachineRequest)
            .where(
                MachineRequest.namespace == mr.namespace,
                MachineRequest.name == mr.name,
                MachineRequest.resource_version == mr.resource_version,
            )
            .execution_options(synchronize_session=False)
        )
        return True
    return False


def request_deletion(session: Session, mr: MachineRequest) -> bool:
    """Mark ``mr`` for deletion; records without finalizers go away at once.

    Returns True when the record was removed immediately.
    """
    if not mr.finalizers:
        session.delete(mr)
        return True
    if mr.deletion_timestamp is None:
        mr.deletion_timestamp = now_utc()
        mr.resource_version += 1
    return False
