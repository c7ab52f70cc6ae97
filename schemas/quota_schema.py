from pydantic import BaseModel, Field

from schemas.vm_schema import VMSpec


class ResourceRequest(BaseModel):
    """Resources one VM holds against its owner's quota."""

    cpu: int = 0
    ram_mb: int = 0
    disk_gb: int = 0
    accelerators: int = 0

    @classmethod
    def from_spec(cls, spec: VMSpec) -> "ResourceRequest":
        return cls(
            cpu=spec.cpu.vcpus,
            ram_mb=spec.memory.size_mb,
            disk_gb=spec.storage.total_size_gb,
            accelerators=spec.accelerator.units,
        )


class QuotaEntry(BaseModel):
    principal: str
    cpu_limit: int
    ram_limit_mb: int
    disk_limit_gb: int
    accelerator_limit: int


class QuotaLimits(BaseModel):
    """Payload for changing a principal's limits."""

    cpu_limit: int = Field(..., ge=0)
    ram_limit_mb: int = Field(..., ge=0)
    disk_limit_gb: int = Field(..., ge=0)
    accelerator_limit: int = Field(..., ge=0)


class UsageEntry(BaseModel):
    principal: str
    cpu_used: int = 0
    ram_used_mb: int = 0
    disk_used_gb: int = 0
    accelerators_used: int = 0
    vms: list[str] = Field(default_factory=list)
