import logging
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Callable, Dict, List, Optional, Sequence

from config.settings import BACKEND_CALL_TIMEOUT, BACKEND_WORKERS, DEFAULT_PRINCIPAL
from core.admission import AdmissionController, Decision, capacity_snapshot, check_host_capacity
from core.backend import Backend
from core.errors import (
    AdmissionError,
    BackendError,
    BackendTimeout,
    CapacityError,
    DomainNotFound,
    HostInfoUnavailableError,
    NotFoundError,
    RejectReason,
    StateConflictError,
    ValidationError,
    VMManagerError,
)
from core.locks import ReadWriteLock
from core.logger import log_event
from core.metrics import record_admission_rejected, record_backend_failure
from core.quota import QuotaLedger, Reservation
from schemas.quota_schema import ResourceRequest, UsageEntry
from schemas.vm_schema import SchedulingHint, VMRecord, VMSpec, VMStatus, VMUpdateSchema

STARTABLE = (VMStatus.STOPPED, VMStatus.ERROR)
STOPPABLE = (VMStatus.RUNNING, VMStatus.PAUSED)
RESTARTABLE = (VMStatus.STOPPED, VMStatus.RUNNING, VMStatus.PAUSED, VMStatus.ERROR)
UPDATABLE = (VMStatus.STOPPED, VMStatus.ERROR)
DELETABLE = (VMStatus.STOPPED,)


class VMManager:
    """
    Owns the VM records and drives their state machine through a Backend.

    Locking:

    - the record set sits behind a read/write lock; list/get share it,
      every mutation takes it exclusively
    - the quota ledger has its own lock (taken after the record lock when
      both are needed)
    - the placement lock makes "check host capacity, then mark Starting"
      atomic across all starts
    - no lock is held while a backend call runs; a per-VM busy flag keeps
      two operations off the same VM instead
    """

    def __init__(
        self,
        backend: Backend,
        admission: AdmissionController,
        quota: QuotaLedger,
        backend_timeout: float = BACKEND_CALL_TIMEOUT,
        max_workers: int = BACKEND_WORKERS,
    ) -> None:
        self.backend = backend
        self.admission = admission
        self.quota = quota
        self.backend_timeout = backend_timeout

        self._records_lock = ReadWriteLock()
        self._vms: Dict[str, VMRecord] = {}
        self._busy: set[str] = set()
        self._pending_names: set[str] = set()
        self._placement_lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="vm-backend")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def _snapshot(self) -> List[VMRecord]:
        with self._records_lock.read():
            return [record.model_copy(deep=True) for record in self._vms.values()]

    def _get(self, vm_id: str) -> VMRecord:
        # caller holds the records lock
        record = self._vms.get(vm_id)
        if record is None:
            raise NotFoundError(vm_id)
        return record

    def list_vms(self) -> List[VMRecord]:
        return sorted(self._snapshot(), key=lambda r: r.created_at)

    def get_vm(self, vm_id: str) -> VMRecord:
        with self._records_lock.read():
            return self._get(vm_id).model_copy(deep=True)

    def get_usage(self, principal: str) -> UsageEntry:
        return self.quota.get_usage(principal)

    def describe_vm(self, vm_id: str, timeout: Optional[float] = None) -> VMSpec:
        """The VM as the backend sees it."""
        self.get_vm(vm_id)
        return self._call_backend(vm_id, "describe", self.backend.describe, vm_id, timeout=timeout)

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------
    def admit(
        self,
        spec: VMSpec,
        hint: Optional[SchedulingHint],
        principal: str,
        vm_id: Optional[str] = None,
    ) -> Decision:
        decision = self.admission.admit(spec, hint, principal, self._snapshot(), vm_id=vm_id)
        if not decision.accepted:
            record_admission_rejected(decision.reason or "unknown")
        return decision

    def _check_start_capacity(self, record: VMRecord) -> None:
        """Re-run the host capacity check right before a VM starts using the host."""
        if record.scheduling.overcommit:
            return
        host = self.admission.query_host()
        others = [r for r in self._snapshot() if r.id != record.id]
        try:
            check_host_capacity(record.spec, host, others)
        except AdmissionError as e:
            record_admission_rejected(str(e.reason))
            log_event(f"[vm] Start of VM {record.id} refused: {e.message}", logging.WARNING)
            raise

    def _reserve(self, principal: str, vm_id: str, spec: VMSpec) -> Reservation:
        """
        Hold quota for `spec`.

        Admission only checked the ledger, so a concurrent request may have
        taken the room since; that refusal is reported like an admission one.
        """
        request = ResourceRequest.from_spec(spec)
        try:
            return self.quota.reserve(principal, vm_id, request)
        except CapacityError as e:
            record_admission_rejected(str(e.reason))
            log_event(
                f"[vm] Quota reservation for '{spec.name}' refused (principal={principal}): {e.message}",
                logging.WARNING,
            )
            try:
                host = self.admission.query_host()
            except HostInfoUnavailableError:
                raise e
            others = [r for r in self._snapshot() if r.id != vm_id]
            e.details.update(capacity_snapshot(host, others, request))
            raise

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _call_backend(self, vm_id: str, operation: str, fn: Callable, *args, timeout: Optional[float] = None):
        timeout = self.backend_timeout if timeout is None else timeout
        future = self._executor.submit(fn, *args)
        try:
            return future.result(timeout=timeout)
        except FutureTimeoutError as e:
            future.cancel()
            record_backend_failure(operation)
            log_event(f"[vm] Backend {operation} for VM {vm_id} timed out after {timeout}s", logging.WARNING)
            raise BackendError(
                vm_id, operation, BackendTimeout(f"no answer within {timeout}s")
            ) from e
        except Exception as e:  # noqa: BLE001
            record_backend_failure(operation)
            log_event(f"[vm] Backend {operation} for VM {vm_id} failed: {e}", logging.WARNING)
            raise BackendError(vm_id, operation, e) from e

    def _begin(
        self,
        vm_id: str,
        operation: str,
        allowed: Sequence[VMStatus],
        transitional: Optional[VMStatus] = None,
    ) -> VMRecord:
        """Claim the VM for one operation; returns the record as it was."""
        with self._records_lock.write():
            record = self._get(vm_id)
            if vm_id in self._busy:
                raise StateConflictError(
                    f"VM '{vm_id}' has another operation in progress",
                    {"vm_id": vm_id, "status": record.status.value},
                )
            if record.status not in allowed:
                raise StateConflictError(
                    f"Cannot {operation} VM '{vm_id}' while it is {record.status.value}",
                    {
                        "vm_id": vm_id,
                        "status": record.status.value,
                        "allowed": [s.value for s in allowed],
                    },
                )
            before = record.model_copy(deep=True)
            self._busy.add(vm_id)
            if transitional is not None:
                record.status = transitional
                record.touch()
            return before

    def _set_status(self, vm_id: str, status: VMStatus) -> None:
        with self._records_lock.write():
            record = self._vms[vm_id]
            record.status = status
            record.touch()

    def _finish(self, vm_id: str, status: VMStatus, error: Optional[str] = None) -> VMRecord:
        with self._records_lock.write():
            record = self._vms[vm_id]
            record.status = status
            record.last_error = error
            record.touch()
            self._busy.discard(vm_id)
            return record.model_copy(deep=True)

    def _release(self, vm_id: str) -> None:
        """Drop the busy claim and leave the status untouched."""
        with self._records_lock.write():
            self._busy.discard(vm_id)

    def _drive(
        self,
        vm_id: str,
        operation: str,
        fn: Callable[[str], None],
        result: VMStatus,
        timeout: Optional[float],
    ) -> VMRecord:
        try:
            self._call_backend(vm_id, operation, fn, vm_id, timeout=timeout)
        except BackendError as e:
            self._finish(vm_id, VMStatus.ERROR, e.message)
            raise
        log_event(f"[vm] {operation} VM {vm_id} -> {result.value}")
        return self._finish(vm_id, result)

    def _claim_name(self, name: str, exclude_id: Optional[str] = None) -> None:
        with self._records_lock.write():
            taken = name in self._pending_names or any(
                r.spec.name == name for r in self._vms.values() if r.id != exclude_id
            )
            if taken:
                raise ValidationError(RejectReason.DUPLICATE_NAME, f"VM name '{name}' is already in use")
            self._pending_names.add(name)

    def _drop_name(self, name: str) -> None:
        with self._records_lock.write():
            self._pending_names.discard(name)

    # ------------------------------------------------------------------
    # Create / update / delete
    # ------------------------------------------------------------------
    def create_vm(
        self,
        spec: VMSpec,
        hint: Optional[SchedulingHint] = None,
        principal: str = DEFAULT_PRINCIPAL,
        timeout: Optional[float] = None,
    ) -> VMRecord:
        hint = hint or SchedulingHint()
        self.admit(spec, hint, principal).raise_if_rejected()

        vm_id = str(uuid.uuid4())
        self._claim_name(spec.name)
        try:
            reservation = self._reserve(principal, vm_id, spec)
            try:
                self._call_backend(vm_id, "define", self.backend.define, vm_id, spec, timeout=timeout)
            except BackendError:
                self.quota.cancel(reservation)
                raise

            record = VMRecord(
                id=vm_id,
                spec=spec.model_copy(deep=True),
                status=VMStatus.STOPPED,
                owner=principal,
                scheduling=hint.model_copy(deep=True),
            )
            with self._records_lock.write():
                self._vms[vm_id] = record
                self.quota.commit(reservation)
                created = record.model_copy(deep=True)
        finally:
            self._drop_name(spec.name)

        log_event(
            f"[vm] Created VM '{spec.name}' id={vm_id} (owner={principal}, "
            f"vcpus={spec.cpu.vcpus}, memory={spec.memory.size_mb}MiB, backend={self.backend.name})"
        )
        return created

    def update_vm(
        self,
        vm_id: str,
        changes: VMUpdateSchema,
        timeout: Optional[float] = None,
    ) -> VMRecord:
        record = self._begin(vm_id, "update", UPDATABLE)
        new_spec = changes.apply_to(record.spec)
        hint = changes.scheduling or record.scheduling
        renamed = new_spec.name != record.spec.name

        claimed = False
        try:
            self.admit(new_spec, hint, record.owner, vm_id=vm_id).raise_if_rejected()
            if renamed:
                self._claim_name(new_spec.name, exclude_id=vm_id)
                claimed = True
            reservation = self._reserve(record.owner, vm_id, new_spec)
        except VMManagerError:
            if claimed:
                self._drop_name(new_spec.name)
            self._release(vm_id)
            raise

        try:
            self._call_backend(vm_id, "define", self.backend.define, vm_id, new_spec, timeout=timeout)
        except BackendError as e:
            self.quota.cancel(reservation)
            if renamed:
                self._drop_name(new_spec.name)
            self._finish(vm_id, VMStatus.ERROR, e.message)
            raise

        with self._records_lock.write():
            current = self._vms[vm_id]
            current.spec = new_spec
            current.scheduling = hint.model_copy(deep=True)
            current.touch()
            self._busy.discard(vm_id)
            self._pending_names.discard(new_spec.name)
            self.quota.commit(reservation)
            updated = current.model_copy(deep=True)

        log_event(f"[vm] Updated VM {vm_id} ('{new_spec.name}')")
        return updated

    def delete_vm(self, vm_id: str, timeout: Optional[float] = None) -> VMRecord:
        """
        Undefine a stopped VM and return its resources to the owner's quota.

        A running VM is refused without touching the backend; callers stop it
        first. A domain that is already gone from the backend counts as
        undefined.
        """
        self._begin(vm_id, "delete", DELETABLE)
        try:
            self._call_backend(vm_id, "undefine", self.backend.undefine, vm_id, timeout=timeout)
        except BackendError as e:
            if not isinstance(e.cause, DomainNotFound):
                self._finish(vm_id, VMStatus.ERROR, e.message)
                raise
            log_event(f"[vm] VM {vm_id} has no backend domain; dropping the record", logging.WARNING)

        with self._records_lock.write():
            removed = self._vms.pop(vm_id)
            self._busy.discard(vm_id)
            self.quota.release(removed.owner, vm_id)

        log_event(f"[vm] Deleted VM '{removed.spec.name}' id={vm_id} (owner={removed.owner})")
        return removed

    # ------------------------------------------------------------------
    # State transitions
    # ------------------------------------------------------------------
    def start_vm(self, vm_id: str, timeout: Optional[float] = None) -> VMRecord:
        with self._placement_lock:
            record = self._begin(vm_id, "start", STARTABLE)
            try:
                self._check_start_capacity(record)
            except AdmissionError:
                self._release(vm_id)
                raise
            self._set_status(vm_id, VMStatus.STARTING)
        return self._drive(vm_id, "start", self.backend.start, VMStatus.RUNNING, timeout)

    def stop_vm(self, vm_id: str, timeout: Optional[float] = None) -> VMRecord:
        self._begin(vm_id, "stop", STOPPABLE, transitional=VMStatus.STOPPING)
        return self._drive(vm_id, "stop", self.backend.stop, VMStatus.STOPPED, timeout)

    def pause_vm(self, vm_id: str, timeout: Optional[float] = None) -> VMRecord:
        self._begin(vm_id, "pause", (VMStatus.RUNNING,))
        return self._drive(vm_id, "suspend", self.backend.suspend, VMStatus.PAUSED, timeout)

    def resume_vm(self, vm_id: str, timeout: Optional[float] = None) -> VMRecord:
        self._begin(vm_id, "resume", (VMStatus.PAUSED,))
        return self._drive(vm_id, "resume", self.backend.resume, VMStatus.RUNNING, timeout)

    def restart_vm(self, vm_id: str, timeout: Optional[float] = None) -> VMRecord:
        """
        Stop (if needed) then start, as two backend calls.

        Once the stop half has gone through, any failure of the start half
        leaves the VM in Error, never back in Stopped.
        """
        record = self._begin(vm_id, "restart", RESTARTABLE)
        stopped = False
        if record.status in STOPPABLE:
            self._set_status(vm_id, VMStatus.STOPPING)
            try:
                self._call_backend(vm_id, "stop", self.backend.stop, vm_id, timeout=timeout)
            except BackendError as e:
                self._finish(vm_id, VMStatus.ERROR, e.message)
                raise
            self._set_status(vm_id, VMStatus.STOPPED)
            stopped = True

        with self._placement_lock:
            try:
                self._check_start_capacity(record)
            except AdmissionError as e:
                if stopped:
                    self._finish(vm_id, VMStatus.ERROR, e.message)
                else:
                    self._release(vm_id)
                raise
            self._set_status(vm_id, VMStatus.STARTING)

        return self._drive(vm_id, "start", self.backend.start, VMStatus.RUNNING, timeout)

    def refresh_vm(self, vm_id: str, timeout: Optional[float] = None) -> VMRecord:
        """Adopt whatever status the backend reports for the VM."""
        record = self._begin(vm_id, "refresh", list(VMStatus))
        try:
            status = self._call_backend(vm_id, "state", self.backend.state, vm_id, timeout=timeout)
        except BackendError as e:
            if not isinstance(e.cause, DomainNotFound):
                self._finish(vm_id, VMStatus.ERROR, e.message)
                raise
            # nothing is running for it, so it can be deleted
            log_event(f"[vm] VM {vm_id} has no backend domain; marking it stopped", logging.WARNING)
            return self._finish(vm_id, VMStatus.STOPPED, e.message)
        if status != record.status:
            log_event(f"[vm] VM {vm_id} status reconciled {record.status.value} -> {status.value}")
        error = record.last_error if status == VMStatus.ERROR else None
        return self._finish(vm_id, status, error)

    def close(self) -> None:
        self._executor.shutdown(wait=False)
        self.backend.close()
