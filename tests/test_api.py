import os

import pytest
from fastapi.testclient import TestClient

from harvester_provider.config import get_settings
from harvester_provider.db import Base, SessionLocal, engine
from harvester_provider.models import FINALIZER_NAME, MachineRequest
from harvester_provider.repositories import write_event


os.environ["DISABLE_BACKGROUND_LOOPS"] = "true"
get_settings.cache_clear()

from harvester_provider import api  # noqa: E402
from harvester_provider.main import app  # noqa: E402
from harvester_provider.services.workqueue import WorkQueue  # noqa: E402


BASE = "/v1/namespaces/team-a"


def setup_function() -> None:
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)


@pytest.fixture
def queue(monkeypatch) -> WorkQueue:
    fresh = WorkQueue()
    monkeypatch.setattr(api, "work_queue", fresh)
    return fresh


def _create(client: TestClient, **overrides):
    body = {
        "name": "alpha-cp-0",
        "provider_ref_name": "harvester",
        "cpu": 2,
        "memory_mb": 4096,
        "disk_gb": 20,
    }
    body.update(overrides)
    return client.post(f"{BASE}/machinerequests", json=body)


def _set_status(name: str, **fields) -> None:
    db = SessionLocal()
    mr = db.get(MachineRequest, ("team-a", name))
    assert mr is not None
    for key, value in fields.items():
        setattr(mr, key, value)
    db.commit()
    db.close()


def test_healthz():
    client = TestClient(app)
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_metrics_lists_reconcile_counters():
    client = TestClient(app)
    body = client.get("/metrics").json()
    assert body["reconciles_total"] == 0
    assert "machines_deleted_total" in body


def test_provider_config_upsert_and_read(queue):
    client = TestClient(app)
    response = client.put(
        f"{BASE}/providerconfigs/harvester",
        json={
            "credentials_ref_name": "harvester-kubeconfig",
            "harvester_namespace": "vms",
            "default_network": "default/vlan100",
        },
    )
    assert response.status_code == 200
    assert response.json()["provider"] == "harvester"

    response = client.put(
        f"{BASE}/providerconfigs/harvester",
        json={"credentials_ref_name": "other-kubeconfig"},
    )
    assert response.status_code == 200

    body = client.get(f"{BASE}/providerconfigs/harvester").json()
    assert body["credentials_ref_name"] == "other-kubeconfig"
    assert body["harvester_namespace"] is None
    assert len(client.get("/v1/providerconfigs").json()) == 1
    assert client.get(f"{BASE}/providerconfigs/missing").status_code == 404


def test_provider_config_change_enqueues_referencing_records(queue):
    client = TestClient(app)
    _create(client)
    _create(client, name="beta-cp-0", provider_ref_name="other")
    queue.get(timeout=0)
    queue.done(("team-a", "alpha-cp-0"))
    queue.get(timeout=0)
    queue.done(("team-a", "beta-cp-0"))

    client.put(
        f"{BASE}/providerconfigs/harvester",
        json={"credentials_ref_name": "harvester-kubeconfig"},
    )

    assert queue.get(timeout=0) == ("team-a", "alpha-cp-0")
    assert queue.get(timeout=0) is None


def test_create_machine_request(queue):
    client = TestClient(app)
    response = _create(client, labels={"role": "control-plane"})

    assert response.status_code == 201
    body = response.json()
    assert body["machine_name"] == "alpha-cp-0"
    assert body["phase"] == ""
    assert body["finalizers"] == []
    assert body["labels"] == {"role": "control-plane"}
    assert body["generation"] == 1
    assert queue.get(timeout=0) == ("team-a", "alpha-cp-0")


def test_create_duplicate_is_conflict(queue):
    client = TestClient(app)
    assert _create(client).status_code == 201
    assert _create(client).status_code == 409


def test_create_rejects_invalid_sizes(queue):
    client = TestClient(app)
    assert _create(client, cpu=0).status_code == 422
    assert _create(client, disk_gb=-1).status_code == 422


def test_get_and_list_machine_requests(queue):
    client = TestClient(app)
    _create(client)
    _create(client, name="alpha-cp-1")
    _set_status("alpha-cp-1", phase="Running", ip_address="10.0.0.7")

    assert client.get(f"{BASE}/machinerequests/alpha-cp-0").status_code == 200
    assert client.get(f"{BASE}/machinerequests/missing").status_code == 404

    running = client.get("/v1/machinerequests", params={"phase": "Running"}).json()
    assert [mr["name"] for mr in running] == ["alpha-cp-1"]
    assert running[0]["ip_address"] == "10.0.0.7"
    scoped = client.get("/v1/machinerequests", params={"namespace": "team-b"}).json()
    assert scoped == []


def test_delete_without_finalizer_removes_record(queue):
    client = TestClient(app)
    _create(client)
    queue.get(timeout=0)
    queue.done(("team-a", "alpha-cp-0"))

    response = client.delete(f"{BASE}/machinerequests/alpha-cp-0")

    assert response.json() == {"ok": True, "removed": True}
    assert client.get(f"{BASE}/machinerequests/alpha-cp-0").status_code == 404
    assert queue.get(timeout=0) is None


def test_delete_with_finalizer_marks_for_deletion(queue):
    client = TestClient(app)
    _create(client)
    _set_status("alpha-cp-0", finalizers=[FINALIZER_NAME], phase="Running")

    response = client.delete(f"{BASE}/machinerequests/alpha-cp-0")

    assert response.json() == {"ok": True, "removed": False}
    body = client.get(f"{BASE}/machinerequests/alpha-cp-0").json()
    assert body["deletion_timestamp"] is not None
    assert body["resource_version"] == 2
    assert queue.get(timeout=0) == ("team-a", "alpha-cp-0")


def test_reset_requires_failed_phase(queue):
    client = TestClient(app)
    _create(client)
    _set_status("alpha-cp-0", phase="Running")

    response = client.post(f"{BASE}/machinerequests/alpha-cp-0/reset")

    assert response.status_code == 409


def test_reset_failed_record(queue):
    client = TestClient(app)
    _create(client)
    _set_status(
        "alpha-cp-0",
        phase="Failed",
        failure_reason="VMDeleted",
        failure_message="VM was deleted externally",
    )

    response = client.post(f"{BASE}/machinerequests/alpha-cp-0/reset")

    assert response.status_code == 200
    body = response.json()
    assert body["phase"] == "Pending"
    assert body["failure_reason"] is None
    assert body["failure_message"] is None

    events = client.get("/v1/events", params={"name": "alpha-cp-0"}).json()
    assert events[0]["reason"] == "Reset"
    assert "VMDeleted" in events[0]["message"]


def test_events_are_latest_first(queue):
    db = SessionLocal()
    write_event(db, "Normal", "Created", "VM creation initiated", namespace="team-a", name="a")
    write_event(db, "Normal", "Ready", "VM is running", namespace="team-a", name="a")
    write_event(db, "Normal", "Created", "VM creation initiated", namespace="team-a", name="b")
    db.commit()
    db.close()

    client = TestClient(app)
    reasons = [e["reason"] for e in client.get("/v1/events", params={"name": "a"}).json()]
    assert reasons == ["Ready", "Created"]
    assert len(client.get("/v1/events").json()) == 3
    assert len(client.get("/v1/events", params={"limit": 1}).json()) == 1


def test_create_rejects_machine_name_taken_on_same_provider_config(queue):
    client = TestClient(app)
    assert _create(client).status_code == 201

    response = _create(client, name="alpha-cp-0-copy", machine_name="alpha-cp-0")

    assert response.status_code == 409
    assert "team-a/alpha-cp-0" in response.json()["detail"]
    assert client.get(f"{BASE}/machinerequests/alpha-cp-0-copy").status_code == 404


def test_create_rejects_machine_name_taken_on_same_harvester_target(queue):
    client = TestClient(app)
    for namespace in ("team-a", "team-b"):
        client.put(
            f"/v1/namespaces/{namespace}/providerconfigs/harvester",
            json={
                "credentials_ref_name": "harvester-kubeconfig",
                "credentials_ref_namespace": "infra",
                "harvester_namespace": "vms",
            },
        )
    assert _create(client).status_code == 201

    response = client.post(
        "/v1/namespaces/team-b/machinerequests",
        json={
            "name": "alpha-cp-0",
            "provider_ref_name": "harvester",
            "cpu": 2,
            "memory_mb": 4096,
            "disk_gb": 20,
        },
    )

    assert response.status_code == 409


def test_same_machine_name_on_distinct_targets_is_allowed(queue):
    client = TestClient(app)
    assert _create(client).status_code == 201

    response = client.post(
        "/v1/namespaces/team-b/machinerequests",
        json={
            "name": "alpha-cp-0",
            "provider_ref_name": "harvester",
            "cpu": 2,
            "memory_mb": 4096,
            "disk_gb": 20,
        },
    )

    assert response.status_code == 201
