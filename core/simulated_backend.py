import threading
from dataclasses import dataclass
from typing import Dict

from core.backend import Backend
from core.errors import DomainNotFound
from core.logger import log_event
from schemas.vm_schema import VMSpec, VMStatus


@dataclass
class _SimulatedDomain:
    spec: VMSpec
    status: VMStatus = VMStatus.STOPPED


class SimulatedBackend(Backend):
    """
    In-memory backend with the same state machine as a real hypervisor.

    Every call succeeds immediately unless the VM id is unknown.
    """

    name = "simulated"

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._domains: Dict[str, _SimulatedDomain] = {}

    def _get(self, vm_id: str) -> _SimulatedDomain:
        domain = self._domains.get(vm_id)
        if domain is None:
            raise DomainNotFound(f"no domain with id {vm_id}")
        return domain

    def _set_status(self, vm_id: str, status: VMStatus, action: str) -> None:
        with self._lock:
            self._get(vm_id).status = status
        log_event(f"[backend] {action} simulated VM {vm_id}")

    def define(self, vm_id: str, spec: VMSpec) -> None:
        with self._lock:
            existing = self._domains.get(vm_id)
            status = existing.status if existing else VMStatus.STOPPED
            self._domains[vm_id] = _SimulatedDomain(spec=spec.model_copy(deep=True), status=status)
        log_event(f"[backend] define simulated VM {vm_id} ({spec.name})")

    def start(self, vm_id: str) -> None:
        self._set_status(vm_id, VMStatus.RUNNING, "start")

    def stop(self, vm_id: str) -> None:
        self._set_status(vm_id, VMStatus.STOPPED, "stop")

    def suspend(self, vm_id: str) -> None:
        self._set_status(vm_id, VMStatus.PAUSED, "suspend")

    def resume(self, vm_id: str) -> None:
        self._set_status(vm_id, VMStatus.RUNNING, "resume")

    def undefine(self, vm_id: str) -> None:
        with self._lock:
            self._get(vm_id)
            del self._domains[vm_id]
        log_event(f"[backend] undefine simulated VM {vm_id}")

    def describe(self, vm_id: str) -> VMSpec:
        with self._lock:
            return self._get(vm_id).spec.model_copy(deep=True)

    def state(self, vm_id: str) -> VMStatus:
        with self._lock:
            return self._get(vm_id).status
