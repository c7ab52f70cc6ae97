import xml.etree.ElementTree as ET

import pytest

libvirt = pytest.importorskip("libvirt")

from core.errors import DomainNotFound  # noqa: E402
from core.libvirt_backend import LibvirtBackend  # noqa: E402
from schemas.vm_schema import VMStatus  # noqa: E402


class NoDomainError(libvirt.libvirtError):
    def __init__(self):
        super().__init__("Domain not found")

    def get_error_code(self):
        return libvirt.VIR_ERR_NO_DOMAIN


class FakeDomain:
    def __init__(self, xml):
        self.xml = xml
        self.calls = []
        self.libvirt_state = libvirt.VIR_DOMAIN_SHUTOFF

    def create(self):
        self.calls.append("create")
        self.libvirt_state = libvirt.VIR_DOMAIN_RUNNING

    def destroy(self):
        self.calls.append("destroy")
        self.libvirt_state = libvirt.VIR_DOMAIN_SHUTOFF

    def suspend(self):
        self.calls.append("suspend")
        self.libvirt_state = libvirt.VIR_DOMAIN_PAUSED

    def resume(self):
        self.calls.append("resume")
        self.libvirt_state = libvirt.VIR_DOMAIN_RUNNING

    def undefineFlags(self, flags):
        self.calls.append(("undefineFlags", flags))

    def XMLDesc(self, flags):
        return self.xml

    def state(self):
        return self.libvirt_state, 0


class FakeConnection:
    def __init__(self):
        self.domains = {}
        self.closed = False

    def defineXML(self, xml):
        uuid = ET.fromstring(xml).findtext("uuid")
        domain = self.domains.get(uuid)
        if domain is None:
            domain = self.domains[uuid] = FakeDomain(xml)
        domain.xml = xml
        return domain

    def lookupByUUIDString(self, uuid):
        if uuid not in self.domains:
            raise NoDomainError()
        return self.domains[uuid]

    def close(self):
        self.closed = True


@pytest.fixture
def conn():
    return FakeConnection()


@pytest.fixture
def libvirt_backend(conn):
    return LibvirtBackend("test:///default", conn=conn, domain_type="qemu", uefi_loader="/fw/OVMF.fd")


def test_define_uses_vm_id_as_uuid(libvirt_backend, conn, make_spec):
    libvirt_backend.define("11111111-2222-3333-4444-555555555555", make_spec(cores=2))

    domain = conn.domains["11111111-2222-3333-4444-555555555555"]
    root = ET.fromstring(domain.xml)
    assert root.get("type") == "qemu"
    assert root.findtext("vcpu") == "2"


def test_transitions_map_to_domain_calls(libvirt_backend, conn, make_spec):
    libvirt_backend.define("vm-1", make_spec())
    domain = conn.domains["vm-1"]

    libvirt_backend.start("vm-1")
    assert libvirt_backend.state("vm-1") == VMStatus.RUNNING
    libvirt_backend.suspend("vm-1")
    assert libvirt_backend.state("vm-1") == VMStatus.PAUSED
    libvirt_backend.resume("vm-1")
    libvirt_backend.stop("vm-1")
    assert libvirt_backend.state("vm-1") == VMStatus.STOPPED

    assert domain.calls == ["create", "suspend", "resume", "destroy"]


def test_undefine_removes_managed_save_and_nvram(libvirt_backend, conn, make_spec):
    libvirt_backend.define("vm-1", make_spec())

    libvirt_backend.undefine("vm-1")

    expected = libvirt.VIR_DOMAIN_UNDEFINE_MANAGED_SAVE | libvirt.VIR_DOMAIN_UNDEFINE_NVRAM
    assert conn.domains["vm-1"].calls == [("undefineFlags", expected)]


def test_missing_domain_maps_to_not_found(libvirt_backend):
    with pytest.raises(DomainNotFound):
        libvirt_backend.start("ghost")


@pytest.mark.parametrize(
    "libvirt_state, status",
    [
        (libvirt.VIR_DOMAIN_NOSTATE, VMStatus.STOPPED),
        (libvirt.VIR_DOMAIN_BLOCKED, VMStatus.PAUSED),
        (libvirt.VIR_DOMAIN_SHUTDOWN, VMStatus.STOPPING),
        (libvirt.VIR_DOMAIN_CRASHED, VMStatus.ERROR),
        (libvirt.VIR_DOMAIN_PMSUSPENDED, VMStatus.PAUSED),
    ],
)
def test_state_mapping(libvirt_backend, conn, make_spec, libvirt_state, status):
    libvirt_backend.define("vm-1", make_spec())
    conn.domains["vm-1"].libvirt_state = libvirt_state

    assert libvirt_backend.state("vm-1") == status


def test_describe_parses_live_xml(libvirt_backend, make_spec):
    spec = make_spec(name="described", cores=2, memory_mb=2048, disk_gb=25)
    libvirt_backend.define("vm-1", spec)

    described = libvirt_backend.describe("vm-1")

    assert described.name == "described"
    assert described.memory.size_mb == 2048
    assert described.storage.disks[0].size_gb == 25


def test_close_closes_connection(libvirt_backend, conn):
    libvirt_backend.close()

    assert conn.closed
