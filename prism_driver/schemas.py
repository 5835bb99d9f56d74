import logging
from datetime import datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


logger = logging.getLogger(__name__)

MIN_TIMEOUT_SEC = 300
MAX_DESCRIPTION_LEN = 1000
DEFAULT_DESCRIPTION = "VM created by prism-driver"
DEFAULT_VM_MEM_MIB = 2048
DEFAULT_VM_CPUS = 2
DEFAULT_VM_CORES = 1
DOCKER_PORT = 2376
MACHINE_NAME_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9._-]*$"


class ResourceKind(str, Enum):
    CLUSTER = "cluster"
    SUBNET = "subnet"
    IMAGE = "image"
    PROJECT = "project"
    STORAGE_CONTAINER = "storage_container"


class ResourceReference(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: ResourceKind
    uuid: str

    def to_wire(self) -> dict:
        return {"kind": self.kind.value, "uuid": self.uuid}


class BootType(str, Enum):
    LEGACY = "LEGACY"
    UEFI = "UEFI"


class DiskSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    image_ref: ResourceReference | None = None
    size_mib: int | None = Field(default=None, ge=1)
    storage_container_ref: ResourceReference | None = None
    size_bytes: int | None = Field(default=None, ge=1)

    @model_validator(mode="after")
    def _one_source(self) -> "DiskSpec":
        if (self.image_ref is None) == (self.storage_container_ref is None):
            raise ValueError("disk needs exactly one of image_ref or storage_container_ref")
        if self.storage_container_ref is not None and self.size_bytes is None:
            raise ValueError("disk on a storage container needs size_bytes")
        return self

    @classmethod
    def from_image(cls, image_ref: ResourceReference, size_gib: int = 0) -> "DiskSpec":
        return cls(image_ref=image_ref, size_mib=size_gib * 1024 if size_gib > 0 else None)

    @classmethod
    def on_container(cls, container_uuid: str, size_gib: int) -> "DiskSpec":
        return cls(
            storage_container_ref=ResourceReference(
                kind=ResourceKind.STORAGE_CONTAINER, uuid=container_uuid
            ),
            size_bytes=size_gib * 1024 * 1024 * 1024,
        )

    def to_wire(self) -> dict:
        if self.image_ref is not None:
            disk: dict = {"data_source_reference": self.image_ref.to_wire()}
            if self.size_mib:
                disk["disk_size_mib"] = self.size_mib
            return disk
        assert self.storage_container_ref is not None
        return {
            "disk_size_bytes": self.size_bytes,
            "storage_config": {
                "storage_container_reference": self.storage_container_ref.to_wire()
            },
        }


class NicSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    subnet_ref: ResourceReference

    def to_wire(self) -> dict:
        return {"subnet_reference": self.subnet_ref.to_wire()}


class GpuSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    device_id: int
    mode: str
    vendor: str

    def to_wire(self) -> dict:
        return {"device_id": self.device_id, "mode": self.mode, "vendor": self.vendor}


class CloudInitPayload(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_data: str
    meta_data: str | None = None

    def to_wire(self) -> dict:
        cloud_init = {"user_data": self.user_data}
        if self.meta_data:
            cloud_init["meta_data"] = self.meta_data
        return {"cloud_init": cloud_init}


class VMSpecification(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    description: str = ""
    memory_mib: int = Field(ge=1)
    vcpu_sockets: int = Field(ge=1)
    cores_per_socket: int = Field(ge=1)
    cpu_passthrough: bool = False
    serial_port: bool = False
    boot_type: BootType = BootType.LEGACY
    disk_list: list[DiskSpec] = Field(min_length=1)
    nic_list: list[NicSpec] = Field(min_length=1)
    gpu_list: list[GpuSpec] = Field(default_factory=list)
    guest_customization: CloudInitPayload
    categories: dict[str, list[str]] = Field(default_factory=dict)
    cluster_ref: ResourceReference
    project_ref: ResourceReference | None = None

    def to_intent(self) -> dict:
        boot_config: dict = {"boot_type": self.boot_type.value}
        if self.boot_type == BootType.LEGACY:
            boot_config["boot_device_order_list"] = ["DISK"]

        resources: dict = {
            "memory_size_mib": self.memory_mib,
            "num_sockets": self.vcpu_sockets,
            "num_vcpus_per_socket": self.cores_per_socket,
            "power_state": "ON",
            "boot_config": boot_config,
            "disk_list": [disk.to_wire() for disk in self.disk_list],
            "nic_list": [nic.to_wire() for nic in self.nic_list],
            "guest_customization": self.guest_customization.to_wire(),
        }
        if self.cpu_passthrough:
            resources["enable_cpu_passthrough"] = True
        if self.serial_port:
            resources["serial_port_list"] = [{"index": 0, "is_connected": True}]
        if self.gpu_list:
            resources["gpu_list"] = [gpu.to_wire() for gpu in self.gpu_list]

        metadata: dict = {"kind": "vm"}
        if self.project_ref is not None:
            metadata["project_reference"] = self.project_ref.to_wire()
        if self.categories:
            metadata["use_categories_mapping"] = True
            metadata["categories_mapping"] = {
                key: list(values) for key, values in self.categories.items()
            }

        return {
            "api_version": "3.1",
            "metadata": metadata,
            "spec": {
                "name": self.name,
                "description": self.description,
                "resources": resources,
                "cluster_reference": self.cluster_ref.to_wire(),
            },
        }


class TaskStatus(str, Enum):
    PENDING = "PENDING"
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    ABORTED = "ABORTED"


TERMINAL_TASK_STATUSES = {TaskStatus.SUCCEEDED, TaskStatus.FAILED, TaskStatus.ABORTED}


class Task(BaseModel):
    uuid: str
    status: TaskStatus
    error_detail: str | None = None

    @property
    def failed(self) -> bool:
        return self.status in {TaskStatus.FAILED, TaskStatus.ABORTED}


class PowerState(str, Enum):
    ON = "ON"
    OFF = "OFF"
    UNKNOWN = "UNKNOWN"


class ProvisionedVM(BaseModel):
    uuid: str
    power_state: PowerState = PowerState.UNKNOWN
    ip_address: str | None = None


class MachineStatus(str, Enum):
    RUNNING = "Running"
    STOPPED = "Stopped"
    UNKNOWN = "Unknown"
    ERROR = "Error"


class MachineConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1, max_length=80, pattern=MACHINE_NAME_PATTERN)
    cluster: str = Field(min_length=1)
    vm_mem: int = Field(default=DEFAULT_VM_MEM_MIB, ge=1)
    vm_cpus: int = Field(default=DEFAULT_VM_CPUS, ge=1)
    vm_cores: int = Field(default=DEFAULT_VM_CORES, ge=1)
    vm_cpu_passthrough: bool = False
    vm_network: list[str] = Field(min_length=1)
    vm_image: str = Field(min_length=1)
    vm_image_size: int = Field(default=0, ge=0)
    vm_categories: list[str] = Field(default_factory=list)
    storage_container: str = ""
    disk_size: int = Field(default=0, ge=0)
    cloud_init: str = ""
    vm_serial_port: bool = False
    project: str = ""
    boot_type: Literal["legacy", "uefi"] = "legacy"
    timeout: int = MIN_TIMEOUT_SEC
    vm_gpu: list[str] = Field(default_factory=list)
    vm_description: str = Field(default="", validate_default=True)

    @field_validator("cluster", "vm_image", "project", "storage_container")
    @classmethod
    def _strip(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped and value:
            raise ValueError("cannot be blank")
        return stripped

    @field_validator("vm_network")
    @classmethod
    def _clean_networks(cls, value: list[str]) -> list[str]:
        cleaned = [item.strip() for item in value if item.strip()]
        if not cleaned:
            raise ValueError("at least one network is required")
        return cleaned

    @field_validator("vm_gpu")
    @classmethod
    def _clean_gpus(cls, value: list[str]) -> list[str]:
        return [item.strip() for item in value if item.strip()]

    @field_validator("vm_categories")
    @classmethod
    def _check_categories(cls, value: list[str]) -> list[str]:
        for group in value:
            key, sep, _ = group.partition("=")
            if not sep or not key.strip():
                raise ValueError(f"malformed group {group}")
        return value

    @field_validator("timeout")
    @classmethod
    def _timeout_floor(cls, value: int) -> int:
        if value < MIN_TIMEOUT_SEC:
            logger.warning(
                "timeout too low, using minimum timeout=%s minimum=%s",
                value,
                MIN_TIMEOUT_SEC,
            )
            return MIN_TIMEOUT_SEC
        return value

    @field_validator("vm_description")
    @classmethod
    def _description(cls, value: str) -> str:
        if not value:
            return DEFAULT_DESCRIPTION
        return value[:MAX_DESCRIPTION_LEN]

    def categories_mapping(self) -> dict[str, list[str]]:
        mapping: dict[str, list[str]] = {}
        for group in self.vm_categories:
            key, _, value = group.partition("=")
            values = mapping.setdefault(key.strip(), [])
            if value.strip() not in values:
                values.append(value.strip())
        return mapping


class MachineRead(BaseModel):
    name: str
    vm_uuid: str | None
    ip_address: str | None
    state: str
    cluster: str
    url: str | None
    last_error: str | None
    created_at: datetime
    updated_at: datetime


class MachineStateRead(BaseModel):
    name: str
    state: MachineStatus
