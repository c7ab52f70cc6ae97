from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class VMStatus(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    PAUSED = "paused"
    ERROR = "error"


class Firmware(str, Enum):
    BIOS = "bios"
    UEFI = "uefi"


class AcceleratorType(str, Enum):
    NONE = "none"
    FRAMEBUFFER = "framebuffer"
    PASSTHROUGH = "passthrough"
    MEDIATED = "mediated"


class CPUConfig(BaseModel):
    cores: int = Field(1, description="Cores per socket")
    sockets: int = Field(1, description="Number of virtual sockets")
    model: str = Field("host-passthrough", description="libvirt CPU mode")
    features: list[str] = Field(default_factory=list, description="Required host CPU flags")
    pinning: list[int] = Field(
        default_factory=list,
        description="Physical core for each vCPU, by vCPU index",
    )
    numa_node: int = Field(0, description="Host NUMA node to place the guest on")

    @property
    def vcpus(self) -> int:
        return self.cores * self.sockets


class MemoryConfig(BaseModel):
    size_mb: int = Field(1024, description="RAM in MiB")


class DiskConfig(BaseModel):
    path: str = Field("", description="Image path on the host")
    size_gb: int = Field(0, description="Virtual size in GiB")
    format: str = "qcow2"
    bus: str = "virtio"
    cache: str = "none"


class CDROMConfig(BaseModel):
    path: str = ""


class StorageConfig(BaseModel):
    disks: list[DiskConfig] = Field(default_factory=list)
    cdroms: list[CDROMConfig] = Field(default_factory=list)

    @property
    def total_size_gb(self) -> int:
        return sum(disk.size_gb for disk in self.disks)


class NetworkInterfaceConfig(BaseModel):
    network: str = ""
    model: str = "virtio"
    vlan: int = Field(0, description="0 means untagged")
    mtu: int = Field(0, description="0 means hypervisor default")
    mac: Optional[str] = None


class NetworkConfig(BaseModel):
    interfaces: list[NetworkInterfaceConfig] = Field(default_factory=list)


class AcceleratorProfile(BaseModel):
    model: str
    profile: str
    memory_gb: int
    uuid: Optional[str] = Field(None, description="Existing mdev instance UUID")


class AcceleratorConfig(BaseModel):
    type: AcceleratorType = AcceleratorType.NONE
    profile: Optional[AcceleratorProfile] = None
    device: Optional[str] = Field(
        None,
        description="PCI address (e.g. 0000:0b:00.0) for passthrough",
    )

    @property
    def units(self) -> int:
        """Accelerator units counted against quota."""
        if self.type in (AcceleratorType.PASSTHROUGH, AcceleratorType.MEDIATED):
            return 1
        return 0


class VMSpec(BaseModel):
    """
    Identity-free description of the resources a VM should have.
    """

    name: str = ""
    description: str = ""
    cpu: CPUConfig = Field(default_factory=CPUConfig)
    memory: MemoryConfig = Field(default_factory=MemoryConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    network: NetworkConfig = Field(default_factory=NetworkConfig)
    accelerator: AcceleratorConfig = Field(default_factory=AcceleratorConfig)
    firmware: Firmware = Firmware.UEFI
    boot_order: list[str] = Field(default_factory=lambda: ["cdrom", "hd"])


class SchedulingHint(BaseModel):
    affinity: list[str] = Field(default_factory=list, description="VM IDs to co-locate with")
    anti_affinity: list[str] = Field(default_factory=list, description="VM IDs to avoid")
    overcommit: bool = False


class VMCreateSchema(VMSpec):
    """
    Payload for creating a new VM.

    'owner' is only consulted when the request carries no X-User-Id header.
    """

    scheduling: Optional[SchedulingHint] = None
    owner: Optional[str] = Field(
        default=None,
        description="Logical user identifier the quota is charged to",
    )

    def to_spec(self) -> VMSpec:
        return VMSpec.model_validate(self.model_dump(exclude={"scheduling", "owner"}))


class VMUpdateSchema(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    cpu: Optional[CPUConfig] = None
    memory: Optional[MemoryConfig] = None
    storage: Optional[StorageConfig] = None
    network: Optional[NetworkConfig] = None
    accelerator: Optional[AcceleratorConfig] = None
    firmware: Optional[Firmware] = None
    boot_order: Optional[list[str]] = None
    scheduling: Optional[SchedulingHint] = None

    def apply_to(self, spec: VMSpec) -> VMSpec:
        changes = {
            field: getattr(self, field)
            for field in self.model_fields_set
            if field != "scheduling" and getattr(self, field) is not None
        }
        return spec.model_copy(update=changes, deep=True)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class VMRecord(BaseModel):
    id: str
    spec: VMSpec
    status: VMStatus = VMStatus.STOPPED
    owner: str
    scheduling: SchedulingHint = Field(default_factory=SchedulingHint)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    last_error: Optional[str] = None

    def touch(self) -> None:
        self.updated_at = _utcnow()
