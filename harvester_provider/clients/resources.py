import base64
import ipaddress
from dataclasses import dataclass, field
from typing import Any


KUBEVIRT_GROUP = "kubevirt.io"
KUBEVIRT_VERSION = "v1"
VIRTUAL_MACHINE_PLURAL = "virtualmachines"
VIRTUAL_MACHINE_INSTANCE_PLURAL = "virtualmachineinstances"

LABEL_MANAGED_BY = "butler.butlerlabs.dev/managed-by"
MANAGED_BY_VALUE = "butler-provider-harvester"
ANNOTATION_IMAGE_ID = "harvesterhci.io/imageId"
ANNOTATION_RUN_STRATEGY = "harvesterhci.io/vmRunStrategy"

STORAGE_CLASS_PREFIX = "longhorn"
ROOT_DISK_SUFFIX = "-rootdisk"
ROOT_DISK_VOLUME = "rootdisk"
CLOUD_INIT_VOLUME = "cloudinit"
DEFAULT_INTERFACE = "default"
CPU_REQUEST = "125m"

LINK_LOCAL_V4 = ipaddress.ip_network("169.254.0.0/16")


def root_disk_name(machine_name: str) -> str:
    return f"{machine_name}{ROOT_DISK_SUFFIX}"


def short_name(ref: str) -> str:
    """``namespace/name`` -> ``name``; bare names pass through."""
    return ref.split("/", 1)[1] if "/" in ref else ref


def _b64(value: str) -> str:
    return base64.b64encode(value.encode("utf-8")).decode("ascii")


@dataclass
class DiskRequest:
    name: str
    namespace: str
    image: str
    size_gb: int

    @property
    def storage_class_name(self) -> str:
        return f"{STORAGE_CLASS_PREFIX}-{short_name(self.image)}"

    def to_manifest(self) -> dict[str, Any]:
        return {
            "apiVersion": "v1",
            "kind": "PersistentVolumeClaim",
            "metadata": {
                "name": self.name,
                "namespace": self.namespace,
                "annotations": {ANNOTATION_IMAGE_ID: self.image},
                "labels": {LABEL_MANAGED_BY: MANAGED_BY_VALUE},
            },
            "spec": {
                "accessModes": ["ReadWriteMany"],
                "volumeMode": "Block",
                "storageClassName": self.storage_class_name,
                "resources": {"requests": {"storage": f"{self.size_gb}Gi"}},
            },
        }


@dataclass
class VirtualMachineRequest:
    name: str
    namespace: str
    cpu: int
    memory_mb: int
    disk_name: str
    network: str
    user_data: str = ""
    network_data: str = ""
    labels: dict[str, str] = field(default_factory=dict)

    def _labels(self) -> dict[str, str]:
        labels = {LABEL_MANAGED_BY: MANAGED_BY_VALUE}
        labels.update(self.labels)
        return labels

    def _volumes_and_disks(self) -> tuple[list[dict], list[dict]]:
        volumes: list[dict[str, Any]] = [
            {
                "name": ROOT_DISK_VOLUME,
                "persistentVolumeClaim": {"claimName": self.disk_name},
            }
        ]
        disks: list[dict[str, Any]] = [
            {"name": ROOT_DISK_VOLUME, "bootOrder": 1, "disk": {"bus": "virtio"}}
        ]
        if self.user_data or self.network_data:
            seed: dict[str, str] = {}
            if self.user_data:
                seed["userDataBase64"] = _b64(self.user_data)
            if self.network_data:
                seed["networkDataBase64"] = _b64(self.network_data)
            volumes.append({"name": CLOUD_INIT_VOLUME, "cloudInitNoCloud": seed})
            disks.append({"name": CLOUD_INIT_VOLUME, "disk": {"bus": "virtio"}})
        return volumes, disks

    def to_manifest(self) -> dict[str, Any]:
        labels = self._labels()
        volumes, disks = self._volumes_and_disks()
        memory = f"{self.memory_mb}Mi"
        return {
            "apiVersion": f"{KUBEVIRT_GROUP}/{KUBEVIRT_VERSION}",
            "kind": "VirtualMachine",
            "metadata": {
                "name": self.name,
                "namespace": self.namespace,
                "labels": labels,
                "annotations": {ANNOTATION_RUN_STRATEGY: "Always"},
            },
            "spec": {
                "runStrategy": "Always",
                "template": {
                    "metadata": {"labels": dict(labels)},
                    "spec": {
                        "domain": {
                            "cpu": {"cores": self.cpu, "sockets": 1, "threads": 1},
                            "memory": {"guest": memory},
                            "resources": {
                                "limits": {"cpu": str(self.cpu), "memory": memory},
                                "requests": {"cpu": CPU_REQUEST, "memory": memory},
                            },
                            "devices": {
                                "disks": disks,
                                "interfaces": [
                                    {"name": DEFAULT_INTERFACE, "bridge": {}}
                                ],
                            },
                        },
                        "networks": [
                            {
                                "name": DEFAULT_INTERFACE,
                                "multus": {"networkName": self.network},
                            }
                        ],
                        "volumes": volumes,
                    },
                },
            },
        }


@dataclass
class NetworkInterface:
    ip_address: str = ""
    mac: str = ""

    @classmethod
    def from_status(cls, raw: dict[str, Any]) -> "NetworkInterface":
        return cls(
            ip_address=str(raw.get("ipAddress") or ""),
            mac=str(raw.get("mac") or ""),
        )


def is_usable_ipv4(address: str) -> bool:
    if not address:
        return False
    try:
        parsed = ipaddress.ip_address(address)
    except ValueError:
        return False
    if parsed.version != 4:
        return False
    return parsed not in LINK_LOCAL_V4


def select_interface(interfaces: list[NetworkInterface]) -> NetworkInterface | None:
    for iface in interfaces:
        if is_usable_ipv4(iface.ip_address):
            return iface
    return None


@dataclass
class InstanceStatus:
    exists: bool = False
    ready: bool = False
    phase: str = ""
    interfaces: list[NetworkInterface] = field(default_factory=list)

    @property
    def primary_interface(self) -> NetworkInterface | None:
        return select_interface(self.interfaces)

    @property
    def ip_address(self) -> str:
        iface = self.primary_interface
        return iface.ip_address if iface else ""

    @property
    def mac_address(self) -> str:
        iface = self.primary_interface
        return iface.mac if iface else ""
