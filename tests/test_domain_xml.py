import xml.etree.ElementTree as ET

import pytest

from core.domain_xml import METADATA_NS, build_domain_xml, parse_domain_xml
from schemas.vm_schema import (
    AcceleratorConfig,
    AcceleratorProfile,
    AcceleratorType,
    CDROMConfig,
    CPUConfig,
    DiskConfig,
    Firmware,
    MemoryConfig,
    NetworkConfig,
    NetworkInterfaceConfig,
    StorageConfig,
    VMSpec,
)

VM_ID = "5b0e8c1e-3a4f-4c2e-9d4e-0f7a1b2c3d4e"


@pytest.fixture
def full_spec():
    return VMSpec(
        name="gpu-worker",
        description="training node",
        cpu=CPUConfig(cores=2, sockets=1, features=["avx"], pinning=[0, 1]),
        memory=MemoryConfig(size_mb=4096),
        storage=StorageConfig(
            disks=[
                DiskConfig(path="/img/gpu-worker.qcow2", size_gb=40),
                DiskConfig(path="/img/scratch.raw", size_gb=100, format="raw", bus="sata"),
            ],
            cdroms=[CDROMConfig(path="/iso/ubuntu.iso")],
        ),
        network=NetworkConfig(
            interfaces=[NetworkInterfaceConfig(network="lan", mac="52:54:00:ab:cd:ef", vlan=100, mtu=1500)]
        ),
        accelerator=AcceleratorConfig(
            type=AcceleratorType.MEDIATED,
            profile=AcceleratorProfile(
                model="Tesla P100",
                profile="grid_p100-4q",
                memory_gb=4,
                uuid="c2d8a5e0-1111-2222-3333-444455556666",
            ),
        ),
        firmware=Firmware.UEFI,
        boot_order=["hd", "cdrom"],
    )


def test_build_emits_identity_and_sizing(full_spec):
    root = ET.fromstring(build_domain_xml(VM_ID, full_spec, domain_type="kvm", uefi_loader="/fw/OVMF.fd"))

    assert root.get("type") == "kvm"
    assert root.findtext("uuid") == VM_ID
    assert root.findtext("name") == "gpu-worker"
    assert root.find("memory").get("unit") == "MiB"
    assert root.findtext("memory") == "4096"
    assert root.findtext("vcpu") == "2"
    assert root.findtext("os/loader") == "/fw/OVMF.fd"
    assert [b.get("dev") for b in root.findall("os/boot")] == ["hd", "cdrom"]


def test_build_derives_target_devices_from_bus(full_spec):
    root = ET.fromstring(build_domain_xml(VM_ID, full_spec))

    targets = [(d.get("device"), d.find("target").get("dev")) for d in root.findall("devices/disk")]
    # the CD-ROM shares the SATA bus with the second disk
    assert targets == [("disk", "vda"), ("disk", "sda"), ("cdrom", "sdb")]


def test_build_network_and_accelerator(full_spec):
    root = ET.fromstring(build_domain_xml(VM_ID, full_spec))

    iface = root.find("devices/interface")
    assert iface.find("source").get("network") == "lan"
    assert iface.find("vlan/tag").get("id") == "100"
    assert iface.find("mtu").get("size") == "1500"

    mdev = root.find("devices/hostdev[@type='mdev']")
    assert mdev.find("source/address").get("uuid") == full_spec.accelerator.profile.uuid

    meta = root.find(f"metadata/{{{METADATA_NS}}}vm/{{{METADATA_NS}}}accelerator")
    assert meta.get("profile") == "grid_p100-4q"


def test_bios_has_no_loader_and_unnamed_network_uses_default(make_spec):
    spec = make_spec(
        firmware=Firmware.BIOS,
        network=NetworkConfig(interfaces=[NetworkInterfaceConfig(mac="52-54-00-AA-BB-CC")]),
    )

    root = ET.fromstring(build_domain_xml(VM_ID, spec, default_network="br-default"))

    assert root.find("os/loader") is None
    iface = root.find("devices/interface")
    assert iface.find("source").get("network") == "br-default"
    assert iface.find("mac").get("address") == "52:54:00:aa:bb:cc"


def test_parse_recovers_built_spec(full_spec):
    parsed = parse_domain_xml(build_domain_xml(VM_ID, full_spec))

    assert parsed == full_spec


def test_parse_tolerates_minimal_description():
    parsed = parse_domain_xml("<domain type='kvm'><name>bare</name></domain>")

    assert parsed.name == "bare"
    assert parsed.memory.size_mb == 0
    assert parsed.cpu.cores == 0
    assert parsed.cpu.sockets == 0
    assert parsed.storage.disks == []
    assert parsed.network.interfaces == []
    assert parsed.accelerator.type == AcceleratorType.NONE
    assert parsed.firmware == Firmware.BIOS
    assert parsed.boot_order == []


def test_parse_without_metadata_has_zero_disk_size():
    xml = """
    <domain type='kvm'>
      <name>foreign</name>
      <memory>2097152</memory>
      <vcpu>4</vcpu>
      <devices>
        <disk type='file' device='disk'>
          <source file='/img/foreign.qcow2'/>
          <target dev='vda' bus='virtio'/>
        </disk>
        <interface type='bridge'><source bridge='br0'/></interface>
      </devices>
    </domain>
    """

    parsed = parse_domain_xml(xml)

    # no unit attribute means KiB
    assert parsed.memory.size_mb == 2048
    assert parsed.cpu.vcpus == 4
    assert parsed.storage.disks[0].path == "/img/foreign.qcow2"
    assert parsed.storage.disks[0].size_gb == 0
    assert parsed.storage.disks[0].format == ""
    assert parsed.network.interfaces[0].network == "br0"
    assert parsed.network.interfaces[0].model == ""


@pytest.mark.parametrize("unit, value, expected", [("GiB", "4", 4096), ("MiB", "512", 512), ("KiB", "1048576", 1024)])
def test_parse_memory_units(unit, value, expected):
    xml = f"<domain><name>m</name><memory unit='{unit}'>{value}</memory></domain>"

    assert parse_domain_xml(xml).memory.size_mb == expected


def test_parse_pci_passthrough():
    xml = """
    <domain>
      <name>pt</name>
      <devices>
        <hostdev mode='subsystem' type='pci' managed='yes'>
          <source><address domain='0x0000' bus='0x0b' slot='0x00' function='0x0'/></source>
        </hostdev>
      </devices>
    </domain>
    """

    accel = parse_domain_xml(xml).accelerator

    assert accel.type == AcceleratorType.PASSTHROUGH
    assert accel.device == "0000:0b:00.0"


def test_parse_rejects_malformed_xml():
    with pytest.raises(ET.ParseError):
        parse_domain_xml("<domain><name>broken</domain>")
