import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from harvester_provider.db import SessionLocal
from harvester_provider.events import SEVERITY_NORMAL
from harvester_provider.loops import work_queue
from harvester_provider.metrics import metrics
from harvester_provider.models import MachinePhase, MachineRequest, ProviderConfig
from harvester_provider.repositories import (
    find_machine_name_owner,
    get_machine_request,
    get_provider_config,
    list_events,
    list_machine_requests,
    list_provider_configs,
    new_uid,
    now_utc,
    request_deletion,
    write_event,
)
from harvester_provider.schemas import (
    EventRead,
    MachineRequestCreate,
    MachineRequestRead,
    ProviderConfigRead,
    ProviderConfigWrite,
)


router = APIRouter()
logger = logging.getLogger(__name__)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _machine_request_or_404(db: Session, namespace: str, name: str) -> MachineRequest:
    mr = get_machine_request(db, namespace, name)
    if mr is None:
        raise HTTPException(status_code=404, detail="unknown machinerequest")
    return mr


@router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/metrics")
def metrics_endpoint() -> dict[str, int]:
    return metrics.snapshot()


@router.put(
    "/v1/namespaces/{namespace}/providerconfigs/{name}",
    response_model=ProviderConfigRead,
)
def put_provider_config(
    namespace: str, name: str, req: ProviderConfigWrite, db: Session = Depends(get_db)
) -> ProviderConfigRead:
    config = get_provider_config(db, namespace, name)
    if config is None:
        config = ProviderConfig(namespace=namespace, name=name)
    for field, value in req.model_dump().items():
        setattr(config, field, value)
    config.updated_at = now_utc()
    db.add(config)
    db.commit()

    # Records that failed on a missing config stay Failed until reset.
    for mr in list_machine_requests(db):
        if mr.provider_ref_key == (namespace, name):
            work_queue.add(mr.key)
    logger.info("providerconfig stored providerconfig=%s/%s", namespace, name)
    return ProviderConfigRead.model_validate(config)


@router.get(
    "/v1/namespaces/{namespace}/providerconfigs/{name}",
    response_model=ProviderConfigRead,
)
def get_provider_config_endpoint(
    namespace: str, name: str, db: Session = Depends(get_db)
) -> ProviderConfigRead:
    config = get_provider_config(db, namespace, name)
    if config is None:
        raise HTTPException(status_code=404, detail="unknown providerconfig")
    return ProviderConfigRead.model_validate(config)


@router.get("/v1/providerconfigs", response_model=list[ProviderConfigRead])
def get_provider_configs(db: Session = Depends(get_db)) -> list[ProviderConfigRead]:
    return [ProviderConfigRead.model_validate(c) for c in list_provider_configs(db)]


@router.post(
    "/v1/namespaces/{namespace}/machinerequests",
    response_model=MachineRequestRead,
    status_code=201,
)
def create_machine_request(
    namespace: str, req: MachineRequestCreate, db: Session = Depends(get_db)
) -> MachineRequestRead:
    if get_machine_request(db, namespace, req.name) is not None:
        raise HTTPException(status_code=409, detail="machinerequest already exists")

    machine_name = req.machine_name or req.name
    provider_ref_key = (req.provider_ref_namespace or namespace, req.provider_ref_name)
    owner = find_machine_name_owner(db, machine_name, provider_ref_key)
    if owner is not None:
        raise HTTPException(
            status_code=409,
            detail=f"machine {machine_name} already claimed by {owner.namespace}/{owner.name}",
        )

    mr = MachineRequest(
        namespace=namespace,
        name=req.name,
        uid=new_uid(),
        generation=1,
        resource_version=1,
        created_at=now_utc(),
        finalizers=[],
        machine_name=machine_name,
        provider_ref_name=req.provider_ref_name,
        provider_ref_namespace=req.provider_ref_namespace,
        cpu=req.cpu,
        memory_mb=req.memory_mb,
        disk_gb=req.disk_gb,
        image=req.image,
        network=req.network,
        user_data=req.user_data,
        network_data=req.network_data,
        labels=dict(req.labels),
        phase="",
        conditions=[],
        observed_generation=0,
    )
    db.add(mr)
    db.commit()
    work_queue.add(mr.key)
    logger.info("machinerequest created machinerequest=%s/%s", namespace, req.name)
    return MachineRequestRead.model_validate(mr)


@router.get(
    "/v1/namespaces/{namespace}/machinerequests/{name}",
    response_model=MachineRequestRead,
)
def get_machine_request_endpoint(
    namespace: str, name: str, db: Session = Depends(get_db)
) -> MachineRequestRead:
    return MachineRequestRead.model_validate(_machine_request_or_404(db, namespace, name))


@router.get("/v1/machinerequests", response_model=list[MachineRequestRead])
def get_machine_requests(
    namespace: str | None = Query(default=None),
    phase: str | None = Query(default=None),
    db: Session = Depends(get_db),
) -> list[MachineRequestRead]:
    return [
        MachineRequestRead.model_validate(mr)
        for mr in list_machine_requests(db, namespace=namespace, phase=phase)
    ]


@router.delete("/v1/namespaces/{namespace}/machinerequests/{name}")
def delete_machine_request(
    namespace: str, name: str, db: Session = Depends(get_db)
) -> dict[str, bool]:
    mr = _machine_request_or_404(db, namespace, name)
    removed = request_deletion(db, mr)
    db.commit()
    if not removed:
        work_queue.add((namespace, name))
    logger.info(
        "machinerequest deletion requested machinerequest=%s/%s removed=%s",
        namespace,
        name,
        removed,
    )
    return {"ok": True, "removed": removed}


@router.post(
    "/v1/namespaces/{namespace}/machinerequests/{name}/reset",
    response_model=MachineRequestRead,
)
def reset_machine_request(
    namespace: str, name: str, db: Session = Depends(get_db)
) -> MachineRequestRead:
    mr = _machine_request_or_404(db, namespace, name)
    if mr.phase != MachinePhase.FAILED.value:
        raise HTTPException(
            status_code=409, detail=f"machinerequest is {mr.phase or 'new'}, not Failed"
        )
    if mr.being_deleted:
        raise HTTPException(status_code=409, detail="machinerequest is being deleted")

    previous_reason = mr.failure_reason
    mr.phase = MachinePhase.PENDING.value
    mr.failure_reason = None
    mr.failure_message = None
    mr.last_updated = now_utc()
    mr.resource_version += 1
    db.add(mr)
    write_event(
        db,
        SEVERITY_NORMAL,
        "Reset",
        f"reset from Failed ({previous_reason or 'unknown'})",
        namespace=namespace,
        name=name,
    )
    db.commit()
    work_queue.add(mr.key)
    return MachineRequestRead.model_validate(mr)


@router.get("/v1/events", response_model=list[EventRead])
def get_events(
    namespace: str | None = Query(default=None),
    name: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
    db: Session = Depends(get_db),
) -> list[EventRead]:
    return [
        EventRead.model_validate(e)
        for e in list_events(db, namespace=namespace, name=name, limit=limit)
    ]
