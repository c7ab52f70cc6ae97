import threading

import libvirt

from config.settings import DEFAULT_NETWORK, LIBVIRT_DOMAIN_TYPE, UEFI_LOADER_PATH
from core.backend import Backend
from core.domain_xml import build_domain_xml, parse_domain_xml
from core.errors import DomainNotFound
from core.logger import log_event
from schemas.vm_schema import VMSpec, VMStatus


class LibvirtConnectionError(Exception):
    """The hypervisor connection could not be opened."""


def _libvirt_error_handler(ctx, error):
    """
    Custom libvirt error handler to suppress noisy stderr messages like:
    'Domain not found: no domain with matching uuid ...'
    Errors still reach callers as libvirt.libvirtError.
    """


# libvirt states:
# 0: no state, 1: running, 2: blocked, 3: paused, 4: shutting down,
# 5: shut off, 6: crashed, 7: pmsuspended
STATE_MAP = {
    libvirt.VIR_DOMAIN_NOSTATE: VMStatus.STOPPED,
    libvirt.VIR_DOMAIN_RUNNING: VMStatus.RUNNING,
    libvirt.VIR_DOMAIN_BLOCKED: VMStatus.PAUSED,
    libvirt.VIR_DOMAIN_PAUSED: VMStatus.PAUSED,
    libvirt.VIR_DOMAIN_SHUTDOWN: VMStatus.STOPPING,
    libvirt.VIR_DOMAIN_SHUTOFF: VMStatus.STOPPED,
    libvirt.VIR_DOMAIN_CRASHED: VMStatus.ERROR,
    libvirt.VIR_DOMAIN_PMSUSPENDED: VMStatus.PAUSED,
}


class LibvirtBackend(Backend):
    """
    Hypervisor-backed VMs through a libvirt connection.

    VM ids are used as the libvirt domain UUID, so lookups never depend on
    the (user-editable) VM name.
    """

    name = "libvirt"

    def __init__(
        self,
        uri: str,
        conn=None,
        domain_type: str = LIBVIRT_DOMAIN_TYPE,
        uefi_loader: str = UEFI_LOADER_PATH,
        default_network: str = DEFAULT_NETWORK,
    ) -> None:
        self.uri = uri
        self.domain_type = domain_type
        self.uefi_loader = uefi_loader
        self.default_network = default_network
        # virConnect is thread-safe; this only serializes define/undefine
        # so a redefine never interleaves with an undefine of the same id
        self._define_lock = threading.Lock()

        if conn is not None:
            self.conn = conn
            return

        # Register global libvirt error handler to avoid noisy stderr prints
        libvirt.registerErrorHandler(_libvirt_error_handler, None)
        try:
            self.conn = libvirt.open(uri)
        except libvirt.libvirtError as e:
            raise LibvirtConnectionError(f"libvirt connection error for URI {uri}: {e}") from e
        if self.conn is None:
            raise LibvirtConnectionError(f"Failed to connect to hypervisor via libvirt URI: {uri}")
        log_event(f"[libvirt] Connected to hypervisor via libvirt URI={uri}")

    # ------------------------------------------------------------------
    # Utility methods
    # ------------------------------------------------------------------
    def _get_domain(self, vm_id: str):
        try:
            return self.conn.lookupByUUIDString(vm_id)
        except libvirt.libvirtError as e:
            if e.get_error_code() == libvirt.VIR_ERR_NO_DOMAIN:
                raise DomainNotFound(f"no domain with uuid {vm_id}") from e
            raise

    # ------------------------------------------------------------------
    # Backend contract
    # ------------------------------------------------------------------
    def define(self, vm_id: str, spec: VMSpec) -> None:
        domain_xml = build_domain_xml(
            vm_id,
            spec,
            domain_type=self.domain_type,
            uefi_loader=self.uefi_loader,
            default_network=self.default_network,
        )
        with self._define_lock:
            dom = self.conn.defineXML(domain_xml)
        if dom is None:
            raise libvirt.libvirtError("Failed to define libvirt domain from XML")
        log_event(
            f"[libvirt] Defined domain '{spec.name}' uuid={vm_id} "
            f"(memory={spec.memory.size_mb}MiB, vcpus={spec.cpu.vcpus})"
        )

    def start(self, vm_id: str) -> None:
        self._get_domain(vm_id).create()
        log_event(f"[libvirt] Started domain {vm_id}")

    def stop(self, vm_id: str) -> None:
        self._get_domain(vm_id).destroy()
        log_event(f"[libvirt] Destroyed (powered off) domain {vm_id}")

    def suspend(self, vm_id: str) -> None:
        self._get_domain(vm_id).suspend()
        log_event(f"[libvirt] Suspended domain {vm_id}")

    def resume(self, vm_id: str) -> None:
        self._get_domain(vm_id).resume()
        log_event(f"[libvirt] Resumed domain {vm_id}")

    def undefine(self, vm_id: str) -> None:
        dom = self._get_domain(vm_id)
        flags = libvirt.VIR_DOMAIN_UNDEFINE_MANAGED_SAVE | libvirt.VIR_DOMAIN_UNDEFINE_NVRAM
        with self._define_lock:
            dom.undefineFlags(flags)
        log_event(f"[libvirt] Undefined domain {vm_id}")

    def describe(self, vm_id: str) -> VMSpec:
        return parse_domain_xml(self._get_domain(vm_id).XMLDesc(0))

    def state(self, vm_id: str) -> VMStatus:
        state, _reason = self._get_domain(vm_id).state()
        return STATE_MAP.get(state, VMStatus.STOPPED)

    def close(self) -> None:
        if self.conn is not None:
            self.conn.close()
            log_event(f"[libvirt] Closed connection to {self.uri}")
