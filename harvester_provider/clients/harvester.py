import logging
from dataclasses import dataclass, field
from typing import Any

import yaml
from kubernetes import client, config  # type: ignore[import-untyped]
from kubernetes.client.exceptions import ApiException  # type: ignore[import-untyped]

from harvester_provider.clients.errors import (
    CONNECTION_ERRORS,
    AlreadyExists,
    HarvesterError,
    InvalidSpec,
    NotFound,
    translate_api_error,
)
from harvester_provider.clients.resources import (
    KUBEVIRT_GROUP,
    KUBEVIRT_VERSION,
    VIRTUAL_MACHINE_INSTANCE_PLURAL,
    VIRTUAL_MACHINE_PLURAL,
    DiskRequest,
    InstanceStatus,
    NetworkInterface,
    VirtualMachineRequest,
    root_disk_name,
)
from harvester_provider.models import ProviderConfig


DEFAULT_NAMESPACE = "default"
DEFAULT_REQUEST_TIMEOUT = 10.0

logger = logging.getLogger(__name__)


@dataclass
class MachineOptions:
    name: str
    cpu: int
    memory_mb: int
    disk_gb: int
    image: str = ""
    network: str = ""
    user_data: str = ""
    network_data: str = ""
    labels: dict[str, str] = field(default_factory=dict)


@dataclass
class ProvisionResult:
    provider_id: str
    disk_name: str
    already_existed: bool = False


@dataclass
class DeleteResult:
    vm_error: HarvesterError | None = None
    disk_error: HarvesterError | None = None

    @property
    def errors(self) -> list[HarvesterError]:
        return [e for e in (self.vm_error, self.disk_error) if e is not None]


class HarvesterClient:
    """Create/read/delete of root disks and VirtualMachines on one Harvester cluster.

    Every method is a single round trip. Kubernetes API failures surface as
    ``HarvesterError`` subclasses; nothing here retries or touches records.
    """

    def __init__(
        self,
        core_v1: Any,
        custom_objects: Any,
        namespace: str = DEFAULT_NAMESPACE,
        default_image: str = "",
        default_network: str = "",
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ):
        self.core_v1 = core_v1
        self.custom_objects = custom_objects
        self.namespace = namespace or DEFAULT_NAMESPACE
        self.default_image = default_image
        self.default_network = default_network
        self.request_timeout = request_timeout

    @classmethod
    def from_kubeconfig(
        cls,
        kubeconfig: bytes,
        provider_config: ProviderConfig,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ) -> "HarvesterClient":
        try:
            config_dict = yaml.safe_load(kubeconfig)
        except yaml.YAMLError as exc:
            raise ValueError(f"invalid kubeconfig: {exc}") from exc
        if not isinstance(config_dict, dict):
            raise ValueError("invalid kubeconfig: expected a mapping")
        configuration = client.Configuration()
        config.load_kube_config_from_dict(config_dict, client_configuration=configuration)
        # urllib3 must not retry underneath us; the work queue owns retries.
        configuration.retries = 0
        api_client = client.ApiClient(configuration)
        return cls(
            core_v1=client.CoreV1Api(api_client),
            custom_objects=client.CustomObjectsApi(api_client),
            namespace=provider_config.harvester_namespace or DEFAULT_NAMESPACE,
            default_image=provider_config.default_image or "",
            default_network=provider_config.default_network or "",
            request_timeout=request_timeout,
        )

    def create_disk(self, name: str, image: str, size_gb: int) -> None:
        request = DiskRequest(
            name=name, namespace=self.namespace, image=image, size_gb=size_gb
        )
        try:
            self.core_v1.create_namespaced_persistent_volume_claim(
                namespace=self.namespace,
                body=request.to_manifest(),
                _request_timeout=self.request_timeout,
            )
        except (ApiException, *CONNECTION_ERRORS) as exc:
            raise translate_api_error(exc, "create", f"disk {name}") from exc

    def create_virtual_machine(self, request: VirtualMachineRequest) -> str:
        try:
            created = self.custom_objects.create_namespaced_custom_object(
                group=KUBEVIRT_GROUP,
                version=KUBEVIRT_VERSION,
                namespace=self.namespace,
                plural=VIRTUAL_MACHINE_PLURAL,
                body=request.to_manifest(),
                _request_timeout=self.request_timeout,
            )
        except (ApiException, *CONNECTION_ERRORS) as exc:
            raise translate_api_error(exc, "create", f"vm {request.name}") from exc
        return _uid(created)

    def get_virtual_machine(self, name: str) -> dict[str, Any]:
        try:
            return self.custom_objects.get_namespaced_custom_object(
                group=KUBEVIRT_GROUP,
                version=KUBEVIRT_VERSION,
                namespace=self.namespace,
                plural=VIRTUAL_MACHINE_PLURAL,
                name=name,
                _request_timeout=self.request_timeout,
            )
        except (ApiException, *CONNECTION_ERRORS) as exc:
            raise translate_api_error(exc, "get", f"vm {name}") from exc

    def _get_instance(self, name: str) -> dict[str, Any] | None:
        try:
            return self.custom_objects.get_namespaced_custom_object(
                group=KUBEVIRT_GROUP,
                version=KUBEVIRT_VERSION,
                namespace=self.namespace,
                plural=VIRTUAL_MACHINE_INSTANCE_PLURAL,
                name=name,
                _request_timeout=self.request_timeout,
            )
        except (ApiException, *CONNECTION_ERRORS) as exc:
            error = translate_api_error(exc, "get", f"vmi {name}")
            if isinstance(error, NotFound):
                return None
            raise error from exc

    def get_instance_status(self, name: str) -> InstanceStatus:
        vm = self.get_virtual_machine(name)
        vm_status = vm.get("status") or {}
        status = InstanceStatus(
            exists=True,
            ready=bool(vm_status.get("ready", False)),
            phase=str(vm_status.get("printableStatus") or ""),
        )

        # The instance only appears once the VM starts booting.
        vmi = self._get_instance(name)
        if vmi is None:
            return status
        for raw in (vmi.get("status") or {}).get("interfaces") or []:
            if isinstance(raw, dict):
                status.interfaces.append(NetworkInterface.from_status(raw))
        return status

    def delete_virtual_machine(self, name: str) -> None:
        try:
            self.custom_objects.delete_namespaced_custom_object(
                group=KUBEVIRT_GROUP,
                version=KUBEVIRT_VERSION,
                namespace=self.namespace,
                plural=VIRTUAL_MACHINE_PLURAL,
                name=name,
                _request_timeout=self.request_timeout,
            )
        except (ApiException, *CONNECTION_ERRORS) as exc:
            error = translate_api_error(exc, "delete", f"vm {name}")
            if not isinstance(error, NotFound):
                raise error from exc

    def delete_disk(self, name: str) -> None:
        try:
            self.core_v1.delete_namespaced_persistent_volume_claim(
                name=name,
                namespace=self.namespace,
                _request_timeout=self.request_timeout,
            )
        except (ApiException, *CONNECTION_ERRORS) as exc:
            error = translate_api_error(exc, "delete", f"disk {name}")
            if not isinstance(error, NotFound):
                raise error from exc

    def resolve_image(self, image: str) -> str:
        resolved = image or self.default_image
        if not resolved:
            raise InvalidSpec(
                operation="resolve",
                resource="image",
                detail="no image specified and no default image in provider config",
            )
        return resolved

    def resolve_network(self, network: str) -> str:
        resolved = network or self.default_network
        if not resolved:
            raise InvalidSpec(
                operation="resolve",
                resource="network",
                detail="no network specified and no default network in provider config",
            )
        return resolved

    def create_machine(self, opts: MachineOptions) -> ProvisionResult:
        """Create the root disk, then the VM booting from it.

        An existing disk or VM counts as created, so a redelivered request
        converges on the same pair. If the VM cannot be created the disk is
        rolled back before the VM error is raised.
        """
        image = self.resolve_image(opts.image)
        network = self.resolve_network(opts.network)
        disk_name = root_disk_name(opts.name)

        try:
            self.create_disk(disk_name, image, opts.disk_gb)
        except AlreadyExists:
            logger.info("disk already exists name=%s namespace=%s", disk_name, self.namespace)

        request = VirtualMachineRequest(
            name=opts.name,
            namespace=self.namespace,
            cpu=opts.cpu,
            memory_mb=opts.memory_mb,
            disk_name=disk_name,
            network=network,
            user_data=opts.user_data,
            network_data=opts.network_data,
            labels=dict(opts.labels),
        )
        try:
            provider_id = self.create_virtual_machine(request)
        except AlreadyExists:
            logger.info("vm already exists name=%s namespace=%s", opts.name, self.namespace)
            return ProvisionResult(
                provider_id=self._existing_uid(opts.name),
                disk_name=disk_name,
                already_existed=True,
            )
        except HarvesterError:
            self._rollback_disk(disk_name)
            raise
        return ProvisionResult(provider_id=provider_id, disk_name=disk_name)

    def _existing_uid(self, name: str) -> str:
        try:
            return _uid(self.get_virtual_machine(name))
        except HarvesterError as exc:
            logger.warning("could not read existing vm uid name=%s error=%s", name, exc)
            return ""

    def _rollback_disk(self, disk_name: str) -> None:
        try:
            self.delete_disk(disk_name)
        except HarvesterError as exc:
            logger.warning(
                "disk rollback failed name=%s namespace=%s error=%s",
                disk_name,
                self.namespace,
                exc,
            )

    def delete_machine(self, name: str) -> DeleteResult:
        """Delete the VM, then its root disk regardless of the VM outcome."""
        result = DeleteResult()
        try:
            self.delete_virtual_machine(name)
        except HarvesterError as exc:
            result.vm_error = exc
        try:
            self.delete_disk(root_disk_name(name))
        except HarvesterError as exc:
            result.disk_error = exc
        return result


def _uid(obj: Any) -> str:
    if isinstance(obj, dict):
        return str((obj.get("metadata") or {}).get("uid") or "")
    return ""
