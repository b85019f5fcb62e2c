import os
from typing import Any, cast

import pytest
from kubernetes.client.exceptions import ApiException  # type: ignore[import-untyped]


os.environ.setdefault("DATABASE_URL", "sqlite:///./test_harvester_provider.db")
os.environ["DISABLE_BACKGROUND_LOOPS"] = "true"

from harvester_provider.config import get_settings  # noqa: E402

get_settings.cache_clear()

from harvester_provider.clients.harvester import HarvesterClient  # noqa: E402
from harvester_provider.metrics import metrics  # noqa: E402


def api_error(status: int, reason: str = "") -> ApiException:
    return ApiException(status=status, reason=reason or f"status {status}")


class FakeCoreV1:
    """Just the PersistentVolumeClaim calls the client makes."""

    def __init__(self):
        self.pvcs: dict[tuple[str, str], dict] = {}
        self.deleted: list[str] = []
        self.fail_on: dict[str, Exception] = {}
        self.timeouts: list[float | None] = []

    def create_namespaced_persistent_volume_claim(
        self, namespace: str, body: dict, _request_timeout=None
    ):
        self.timeouts.append(_request_timeout)
        if "create" in self.fail_on:
            raise self.fail_on["create"]
        name = body["metadata"]["name"]
        if (namespace, name) in self.pvcs:
            raise api_error(409, "AlreadyExists")
        self.pvcs[(namespace, name)] = body
        return body

    def delete_namespaced_persistent_volume_claim(
        self, name: str, namespace: str, _request_timeout=None
    ):
        self.timeouts.append(_request_timeout)
        if "delete" in self.fail_on:
            raise self.fail_on["delete"]
        self.deleted.append(name)
        if (namespace, name) not in self.pvcs:
            raise api_error(404, "NotFound")
        del self.pvcs[(namespace, name)]


class FakeCustomObjects:
    """In-memory kubevirt.io objects keyed by (plural, namespace, name)."""

    def __init__(self):
        self.objects: dict[tuple[str, str, str], dict] = {}
        self.deleted: list[tuple[str, str]] = []
        self.fail_on: dict[tuple[str, str], Exception] = {}
        self.calls: list[tuple[str, str, str]] = []
        self.timeouts: list[float | None] = []

    def _maybe_fail(self, operation: str, plural: str) -> None:
        error = self.fail_on.get((operation, plural))
        if error is not None:
            raise error

    def create_namespaced_custom_object(
        self, group, version, namespace, plural, body, _request_timeout=None
    ):
        self.timeouts.append(_request_timeout)
        self.calls.append(("create", plural, body["metadata"]["name"]))
        self._maybe_fail("create", plural)
        name = body["metadata"]["name"]
        if (plural, namespace, name) in self.objects:
            raise api_error(409, "AlreadyExists")
        created = dict(body)
        created["metadata"] = {**body["metadata"], "uid": f"uid-{name}"}
        self.objects[(plural, namespace, name)] = created
        return created

    def get_namespaced_custom_object(
        self, group, version, namespace, plural, name, _request_timeout=None
    ):
        self.timeouts.append(_request_timeout)
        self.calls.append(("get", plural, name))
        self._maybe_fail("get", plural)
        obj = self.objects.get((plural, namespace, name))
        if obj is None:
            raise api_error(404, "NotFound")
        return obj

    def delete_namespaced_custom_object(
        self, group, version, namespace, plural, name, _request_timeout=None
    ):
        self.timeouts.append(_request_timeout)
        self.calls.append(("delete", plural, name))
        self._maybe_fail("delete", plural)
        self.deleted.append((plural, name))
        if self.objects.pop((plural, namespace, name), None) is None:
            raise api_error(404, "NotFound")

    def add_vm(self, name: str, namespace: str = "default", uid: str = "") -> dict:
        vm = {"metadata": {"name": name, "namespace": namespace, "uid": uid or f"uid-{name}"}}
        self.objects[("virtualmachines", namespace, name)] = vm
        return vm

    def set_interfaces(
        self, name: str, interfaces: list[dict], namespace: str = "default"
    ) -> None:
        self.objects[("virtualmachineinstances", namespace, name)] = {
            "metadata": {"name": name, "namespace": namespace},
            "status": {"phase": "Running", "interfaces": interfaces},
        }


@pytest.fixture
def core_v1() -> FakeCoreV1:
    return FakeCoreV1()


@pytest.fixture
def custom_objects() -> FakeCustomObjects:
    return FakeCustomObjects()


@pytest.fixture
def harvester(core_v1, custom_objects) -> HarvesterClient:
    return HarvesterClient(
        cast(Any, core_v1),
        cast(Any, custom_objects),
        namespace="default",
        default_image="default/ubuntu-22.04",
        default_network="default/vlan100",
    )


@pytest.fixture(autouse=True)
def reset_metrics():
    metrics.reset()
    yield
