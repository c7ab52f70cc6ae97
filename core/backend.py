import logging
from abc import ABC, abstractmethod
from typing import Optional

from config.settings import LIBVIRT_URI, VM_BACKEND
from core.logger import log_event
from schemas.vm_schema import VMSpec, VMStatus


class Backend(ABC):
    """
    Executes VM state transitions.

    Implementations must tolerate concurrent calls for different VM ids.
    Failures are raised as-is; the lifecycle manager wraps them with the
    VM id and the attempted operation.
    """

    name = "abstract"

    @abstractmethod
    def define(self, vm_id: str, spec: VMSpec) -> None:
        """Register (or re-register) the VM without starting it."""

    @abstractmethod
    def start(self, vm_id: str) -> None: ...

    @abstractmethod
    def stop(self, vm_id: str) -> None:
        """Power the VM off immediately."""

    @abstractmethod
    def suspend(self, vm_id: str) -> None: ...

    @abstractmethod
    def resume(self, vm_id: str) -> None: ...

    @abstractmethod
    def undefine(self, vm_id: str) -> None: ...

    @abstractmethod
    def describe(self, vm_id: str) -> VMSpec: ...

    @abstractmethod
    def state(self, vm_id: str) -> VMStatus:
        """Status as reported by the backend itself."""

    def close(self) -> None:
        pass


def create_backend(kind: Optional[str] = None, uri: Optional[str] = None) -> Backend:
    """
    Pick the backend once, at startup.

    A libvirt connection failure falls back to the simulated backend so the
    API stays usable on hosts without a hypervisor.
    """
    from core.simulated_backend import SimulatedBackend

    kind = (kind or VM_BACKEND).lower()
    if kind == "simulated":
        log_event("[backend] Using simulated backend")
        return SimulatedBackend()
    if kind != "libvirt":
        raise ValueError(f"Unknown VM backend '{kind}' (expected 'simulated' or 'libvirt')")

    from core.libvirt_backend import LibvirtBackend, LibvirtConnectionError

    uri = uri or LIBVIRT_URI
    try:
        return LibvirtBackend(uri)
    except LibvirtConnectionError as e:
        log_event(f"[backend] {e}; falling back to simulated backend", logging.WARNING)
        return SimulatedBackend()
