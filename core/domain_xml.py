"""Translate between VMSpec and libvirt domain XML."""

import string
import xml.etree.ElementTree as ET
from typing import Dict, Optional

from config.settings import DEFAULT_NETWORK, LIBVIRT_DOMAIN_TYPE, UEFI_LOADER_PATH
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

METADATA_NS = "https://vm-control-plane.local/xmlns/domain/1.0"
ET.register_namespace("vmm", METADATA_NS)

_BUS_PREFIX = {"virtio": "vd", "sata": "sd", "scsi": "sd", "usb": "sd", "ide": "hd"}

_MEMORY_UNITS_TO_MIB = {
    "b": 1 / (1024 * 1024),
    "bytes": 1 / (1024 * 1024),
    "k": 1 / 1024,
    "kib": 1 / 1024,
    "kb": 1000 / (1024 * 1024),
    "m": 1,
    "mib": 1,
    "mb": 1000 * 1000 / (1024 * 1024),
    "g": 1024,
    "gib": 1024,
    "gb": 1000 ** 3 / (1024 * 1024),
}


def _ns(tag: str) -> str:
    return f"{{{METADATA_NS}}}{tag}"


def _target_dev(bus: str, index: int) -> str:
    prefix = _BUS_PREFIX.get(bus, "vd")
    return prefix + string.ascii_lowercase[index % 26]


def _to_int(value: Optional[str], default: int = 0) -> int:
    if value is None:
        return default
    try:
        return int(value, 0) if value.lower().startswith("0x") else int(value)
    except ValueError:
        return default


# ----------------------------------------------------------------------
# VMSpec -> XML
# ----------------------------------------------------------------------
def build_domain_xml(
    vm_id: str,
    spec: VMSpec,
    domain_type: str = LIBVIRT_DOMAIN_TYPE,
    uefi_loader: str = UEFI_LOADER_PATH,
    default_network: str = DEFAULT_NETWORK,
) -> str:
    domain = ET.Element("domain", type=domain_type)
    ET.SubElement(domain, "name").text = spec.name
    ET.SubElement(domain, "uuid").text = vm_id
    if spec.description:
        ET.SubElement(domain, "description").text = spec.description

    _build_metadata(domain, spec)

    ET.SubElement(domain, "memory", unit="MiB").text = str(spec.memory.size_mb)
    ET.SubElement(domain, "vcpu", placement="static").text = str(spec.cpu.vcpus)

    if spec.cpu.pinning:
        cputune = ET.SubElement(domain, "cputune")
        for vcpu, pcore in enumerate(spec.cpu.pinning):
            ET.SubElement(cputune, "vcpupin", vcpu=str(vcpu), cpuset=str(pcore))

    _build_os(domain, spec, uefi_loader)
    ET.SubElement(ET.SubElement(domain, "features"), "acpi")
    _build_cpu(domain, spec)

    devices = ET.SubElement(domain, "devices")
    _build_disks(devices, spec.storage)
    _build_interfaces(devices, spec.network, default_network)
    _build_accelerator(devices, spec.accelerator)
    ET.SubElement(devices, "graphics", type="vnc", port="-1", autoport="yes")
    ET.SubElement(devices, "console", type="pty")

    return ET.tostring(domain, encoding="unicode")


def _build_metadata(domain: ET.Element, spec: VMSpec) -> None:
    """Keep what the native description cannot express."""
    metadata = ET.SubElement(domain, "metadata")
    root = ET.SubElement(metadata, _ns("vm"))
    for disk in spec.storage.disks:
        ET.SubElement(root, _ns("disk"), path=disk.path, size_gb=str(disk.size_gb))
    accel = spec.accelerator
    node = ET.SubElement(root, _ns("accelerator"), type=accel.type.value)
    if accel.profile is not None:
        node.set("model", accel.profile.model)
        node.set("profile", accel.profile.profile)
        node.set("memory_gb", str(accel.profile.memory_gb))


def _build_os(domain: ET.Element, spec: VMSpec, uefi_loader: str) -> None:
    os_el = ET.SubElement(domain, "os")
    ET.SubElement(os_el, "type", arch="x86_64", machine="q35").text = "hvm"
    if spec.firmware == Firmware.UEFI:
        ET.SubElement(os_el, "loader", readonly="yes", type="pflash").text = uefi_loader
    for dev in spec.boot_order:
        ET.SubElement(os_el, "boot", dev=dev)


def _build_cpu(domain: ET.Element, spec: VMSpec) -> None:
    cpu = spec.cpu
    cpu_el = ET.SubElement(domain, "cpu", mode=cpu.model)
    ET.SubElement(cpu_el, "topology", sockets=str(cpu.sockets), dies="1", cores=str(cpu.cores), threads="1")
    for feature in cpu.features:
        ET.SubElement(cpu_el, "feature", policy="require", name=feature)
    if cpu.numa_node > 0:
        numa = ET.SubElement(cpu_el, "numa")
        ET.SubElement(
            numa,
            "cell",
            id=str(cpu.numa_node),
            cpus=f"0-{cpu.vcpus - 1}",
            memory=str(spec.memory.size_mb),
            unit="MiB",
        )


def _build_disks(devices: ET.Element, storage: StorageConfig) -> None:
    per_bus: Dict[str, int] = {}
    for disk in storage.disks:
        index = per_bus.get(disk.bus, 0)
        per_bus[disk.bus] = index + 1
        disk_el = ET.SubElement(devices, "disk", type="file", device="disk")
        ET.SubElement(disk_el, "driver", name="qemu", type=disk.format, cache=disk.cache)
        ET.SubElement(disk_el, "source", file=disk.path)
        ET.SubElement(disk_el, "target", dev=_target_dev(disk.bus, index), bus=disk.bus)

    # q35 has no IDE controller; CD-ROMs go on SATA after any SATA disks
    for cdrom in storage.cdroms:
        index = per_bus.get("sata", 0)
        per_bus["sata"] = index + 1
        cd_el = ET.SubElement(devices, "disk", type="file", device="cdrom")
        ET.SubElement(cd_el, "driver", name="qemu", type="raw")
        ET.SubElement(cd_el, "source", file=cdrom.path)
        ET.SubElement(cd_el, "target", dev=_target_dev("sata", index), bus="sata")
        ET.SubElement(cd_el, "readonly")


def _build_interfaces(devices: ET.Element, network: NetworkConfig, default_network: str) -> None:
    for iface in network.interfaces:
        iface_el = ET.SubElement(devices, "interface", type="network")
        if iface.mac:
            ET.SubElement(iface_el, "mac", address=iface.mac.replace("-", ":").lower())
        ET.SubElement(iface_el, "source", network=iface.network or default_network)
        ET.SubElement(iface_el, "model", type=iface.model)
        if iface.vlan > 0:
            vlan = ET.SubElement(iface_el, "vlan")
            ET.SubElement(vlan, "tag", id=str(iface.vlan))
        if iface.mtu > 0:
            ET.SubElement(iface_el, "mtu", size=str(iface.mtu))


def _build_accelerator(devices: ET.Element, accel: AcceleratorConfig) -> None:
    if accel.type == AcceleratorType.FRAMEBUFFER:
        video = ET.SubElement(devices, "video")
        ET.SubElement(video, "model", type="qxl")
    elif accel.type == AcceleratorType.PASSTHROUGH and accel.device:
        hostdev = ET.SubElement(devices, "hostdev", mode="subsystem", type="pci", managed="yes")
        ET.SubElement(ET.SubElement(hostdev, "source"), "address", **_pci_address(accel.device))
    elif accel.type == AcceleratorType.MEDIATED:
        hostdev = ET.SubElement(devices, "hostdev", mode="subsystem", type="mdev", model="vfio-pci")
        source = ET.SubElement(hostdev, "source")
        if accel.profile is not None and accel.profile.uuid:
            ET.SubElement(source, "address", uuid=accel.profile.uuid)


def _pci_address(address: str) -> Dict[str, str]:
    """'0000:0b:00.0' or '0b:00.0' -> libvirt address attributes."""
    parts = address.split(":")
    if len(parts) == 2:
        parts = ["0000"] + parts
    domain, bus, slot_func = parts[-3], parts[-2], parts[-1]
    slot, _, function = slot_func.partition(".")
    return {
        "domain": f"0x{domain}",
        "bus": f"0x{bus}",
        "slot": f"0x{slot}",
        "function": f"0x{function or '0'}",
    }


# ----------------------------------------------------------------------
# XML -> VMSpec
# ----------------------------------------------------------------------
def parse_domain_xml(xml_desc: str) -> VMSpec:
    """
    Rebuild a VMSpec from a domain description.

    Hypervisors return partially-populated descriptions (transient domains,
    other management tools, older drivers); anything missing becomes the
    zero value instead of an error. Only unparseable XML raises.
    """
    root = ET.fromstring(xml_desc)

    meta = root.find(f"metadata/{_ns('vm')}")
    disk_sizes: Dict[str, int] = {}
    if meta is not None:
        for node in meta.findall(_ns("disk")):
            disk_sizes[node.get("path", "")] = _to_int(node.get("size_gb"))

    return VMSpec(
        name=root.findtext("name", default="") or "",
        description=root.findtext("description", default="") or "",
        cpu=_parse_cpu(root),
        memory=MemoryConfig(size_mb=_parse_memory_mib(root.find("memory"))),
        storage=_parse_storage(root, disk_sizes),
        network=_parse_network(root),
        accelerator=_parse_accelerator(root, meta),
        firmware=Firmware.UEFI if root.find("os/loader") is not None else Firmware.BIOS,
        boot_order=[b.get("dev", "") for b in root.findall("os/boot") if b.get("dev")],
    )


def _parse_memory_mib(node: Optional[ET.Element]) -> int:
    if node is None or not (node.text or "").strip():
        return 0
    value = _to_int(node.text.strip())
    # libvirt reports KiB when no unit is given
    factor = _MEMORY_UNITS_TO_MIB.get(node.get("unit", "KiB").lower(), 1 / 1024)
    return int(value * factor)


def _parse_cpu(root: ET.Element) -> CPUConfig:
    cpu_el = root.find("cpu")
    topology = cpu_el.find("topology") if cpu_el is not None else None
    vcpus = _to_int(root.findtext("vcpu"))

    if topology is not None:
        sockets = _to_int(topology.get("sockets"), 1)
        cores = _to_int(topology.get("cores"), 0)
    else:
        sockets = 1 if vcpus else 0
        cores = vcpus

    pinning = []
    for pin in sorted(root.findall("cputune/vcpupin"), key=lambda p: _to_int(p.get("vcpu"))):
        cpuset = pin.get("cpuset", "")
        if cpuset.isdigit():
            pinning.append(int(cpuset))

    numa_cell = cpu_el.find("numa/cell") if cpu_el is not None else None
    return CPUConfig(
        cores=cores,
        sockets=sockets,
        model=cpu_el.get("mode", "") if cpu_el is not None else "",
        features=[
            f.get("name", "")
            for f in (cpu_el.findall("feature") if cpu_el is not None else [])
            if f.get("name") and f.get("policy", "require") in ("require", "force")
        ],
        pinning=pinning,
        numa_node=_to_int(numa_cell.get("id")) if numa_cell is not None else 0,
    )


def _parse_storage(root: ET.Element, disk_sizes: Dict[str, int]) -> StorageConfig:
    disks = []
    cdroms = []
    for disk_el in root.findall("devices/disk"):
        source = disk_el.find("source")
        path = ""
        if source is not None:
            path = source.get("file") or source.get("dev") or source.get("name") or ""
        if disk_el.get("device") == "cdrom":
            cdroms.append(CDROMConfig(path=path))
            continue
        if disk_el.get("device", "disk") != "disk":
            continue
        driver = disk_el.find("driver")
        target = disk_el.find("target")
        disks.append(
            DiskConfig(
                path=path,
                size_gb=disk_sizes.get(path, 0),
                format=driver.get("type", "") if driver is not None else "",
                cache=driver.get("cache", "") if driver is not None else "",
                bus=target.get("bus", "") if target is not None else "",
            )
        )
    return StorageConfig(disks=disks, cdroms=cdroms)


def _parse_network(root: ET.Element) -> NetworkConfig:
    interfaces = []
    for iface_el in root.findall("devices/interface"):
        source = iface_el.find("source")
        model = iface_el.find("model")
        mac = iface_el.find("mac")
        tag = iface_el.find("vlan/tag")
        mtu = iface_el.find("mtu")
        network = ""
        if source is not None:
            network = source.get("network") or source.get("bridge") or ""
        interfaces.append(
            NetworkInterfaceConfig(
                network=network,
                model=model.get("type", "") if model is not None else "",
                mac=mac.get("address") if mac is not None else None,
                vlan=_to_int(tag.get("id")) if tag is not None else 0,
                mtu=_to_int(mtu.get("size")) if mtu is not None else 0,
            )
        )
    return NetworkConfig(interfaces=interfaces)


def _parse_accelerator(root: ET.Element, meta: Optional[ET.Element]) -> AcceleratorConfig:
    accel_meta = meta.find(_ns("accelerator")) if meta is not None else None
    profile = None
    if accel_meta is not None and accel_meta.get("profile"):
        profile = AcceleratorProfile(
            model=accel_meta.get("model", ""),
            profile=accel_meta.get("profile", ""),
            memory_gb=_to_int(accel_meta.get("memory_gb")),
        )

    mdev = root.find("devices/hostdev[@type='mdev']")
    if mdev is not None:
        address = mdev.find("source/address")
        if address is not None and address.get("uuid"):
            profile = profile or AcceleratorProfile(model="", profile="", memory_gb=0)
            profile.uuid = address.get("uuid")
        return AcceleratorConfig(type=AcceleratorType.MEDIATED, profile=profile)

    pci = root.find("devices/hostdev[@type='pci']/source/address")
    if pci is not None:
        bus = pci.get("bus", "0x00").replace("0x", "")
        slot = pci.get("slot", "0x00").replace("0x", "")
        func = pci.get("function", "0x0").replace("0x", "")
        domain = pci.get("domain", "0x0000").replace("0x", "")
        return AcceleratorConfig(type=AcceleratorType.PASSTHROUGH, device=f"{domain}:{bus}:{slot}.{func}")

    if root.find("devices/video") is not None:
        return AcceleratorConfig(type=AcceleratorType.FRAMEBUFFER, profile=profile)

    return AcceleratorConfig(type=AcceleratorType.NONE, profile=profile)
