import pytest

from core.admission import AdmissionController
from core.host_info import HostCapability, StaticHostInfoProvider
from core.quota import QuotaLedger
from core.simulated_backend import SimulatedBackend
from core.vm_manager import VMManager
from schemas.vm_schema import (
    CPUConfig,
    DiskConfig,
    MemoryConfig,
    StorageConfig,
    VMRecord,
    VMSpec,
    VMStatus,
)

# 8 cores / 16 GiB, the host used throughout the capacity scenarios
HOST = HostCapability(
    cores=8,
    sockets=1,
    numa_nodes=1,
    memory_mb=16384,
    features=frozenset({"sse4_2", "avx", "avx2", "vmx"}),
)


@pytest.fixture
def host():
    return HOST


@pytest.fixture
def make_spec():
    """Factory for a valid spec; keyword overrides replace whole sections."""

    def _make(name="web-01", cores=1, sockets=1, memory_mb=1024, disk_gb=10, **overrides):
        fields = {
            "name": name,
            "cpu": CPUConfig(cores=cores, sockets=sockets),
            "memory": MemoryConfig(size_mb=memory_mb),
            "storage": StorageConfig(
                disks=[DiskConfig(path=f"/var/lib/libvirt/images/{name}.qcow2", size_gb=disk_gb)]
            ),
        }
        fields.update(overrides)
        return VMSpec(**fields)

    return _make


@pytest.fixture
def make_record(make_spec):
    def _make(vm_id, status=VMStatus.STOPPED, owner="root", **spec_kwargs):
        spec_kwargs.setdefault("name", f"vm-{vm_id}")
        return VMRecord(id=vm_id, spec=make_spec(**spec_kwargs), status=status, owner=owner)

    return _make


@pytest.fixture
def ledger():
    return QuotaLedger()


@pytest.fixture
def controller(host, ledger):
    return AdmissionController(StaticHostInfoProvider(host), ledger)


@pytest.fixture
def backend():
    return SimulatedBackend()


@pytest.fixture
def manager(backend, controller, ledger):
    vm_manager = VMManager(backend, controller, ledger, backend_timeout=5.0, max_workers=4)
    yield vm_manager
    vm_manager.close()
