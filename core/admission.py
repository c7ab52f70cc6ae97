"""
Admission control for VM creation and update requests.

Stages run in a fixed order and stop at the first failure:

1. shape       - name, CPU/memory/disk ranges, MAC/VLAN/MTU, duplicate names
2. capability  - CPU features, pinning and NUMA node against the host
3. accelerator - mediated-device profile against the host catalogue
4. quota       - the principal's limits (checked only, nothing is reserved)
5. scheduling  - affinity references, disjointness, host capacity
6. affinity    - co-location / separation preconditions on referenced VMs

The controller never mutates records or the ledger. It only reads the
snapshot it is handed.
"""

import logging
import os
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence

from config.settings import ACCELERATOR_PROFILES, CHECK_ISO_EXISTS
from core.errors import (
    AdmissionError,
    CapacityError,
    HostInfoUnavailableError,
    RejectReason,
    SchedulingConflictError,
    ValidationError,
)
from core.host_info import HostCapability, HostInfoError, HostInfoProvider
from core.logger import log_event
from core.quota import QuotaLedger
from schemas.quota_schema import ResourceRequest
from schemas.vm_schema import AcceleratorType, SchedulingHint, VMRecord, VMSpec, VMStatus

NAME_RE = re.compile(r"^[A-Za-z0-9](?:[A-Za-z0-9_-]{1,61})[A-Za-z0-9]$")
MAC_RE = re.compile(r"^[0-9A-Fa-f]{2}([:-])(?:[0-9A-Fa-f]{2}\1){4}[0-9A-Fa-f]{2}$")

MIN_CPU_CORES, MAX_CPU_CORES = 1, 64
MIN_CPU_SOCKETS, MAX_CPU_SOCKETS = 1, 8
MIN_MEMORY_MB, MAX_MEMORY_MB = 128, 1024 * 1024
MIN_DISK_GB, MAX_DISK_GB = 1, 2048
MAX_VLAN = 4094
MIN_MTU, MAX_MTU = 576, 9000

# Records in these states hold host CPU and memory. A paused VM keeps its
# memory and a stopping one has not released it yet.
ACTIVE_STATUSES = (VMStatus.RUNNING, VMStatus.STARTING, VMStatus.PAUSED, VMStatus.STOPPING)


@dataclass
class Decision:
    accepted: bool
    reason: Optional[str] = None
    message: Optional[str] = None
    diagnostic: Dict[str, Any] = field(default_factory=dict)
    error: Optional[AdmissionError] = None

    @classmethod
    def accept(cls) -> "Decision":
        return cls(accepted=True)

    @classmethod
    def reject(cls, error: AdmissionError) -> "Decision":
        return cls(
            accepted=False,
            reason=str(error.reason),
            message=error.message,
            diagnostic=error.details,
            error=error,
        )

    def raise_if_rejected(self) -> None:
        if self.error is not None:
            raise self.error

    def to_dict(self) -> Dict[str, Any]:
        return {
            "accepted": self.accepted,
            "reason": self.reason,
            "message": self.message,
            "diagnostic": self.diagnostic,
        }


def capacity_snapshot(
    host: HostCapability,
    records: Iterable[VMRecord],
    request: Optional[ResourceRequest] = None,
) -> Dict[str, Any]:
    """Current host usage vs. capacity, for callers debugging a rejection."""
    used_cpu = 0
    used_memory = 0
    active = 0
    for record in records:
        if record.status in ACTIVE_STATUSES:
            used_cpu += record.spec.cpu.vcpus
            used_memory += record.spec.memory.size_mb
            active += 1

    snapshot: Dict[str, Any] = {
        "current_usage": {
            "running_vms": active,
            "used_cpu_cores": used_cpu,
            "used_memory_mb": used_memory,
        },
        "host_capacity": {
            "total_cpu_cores": host.total_cores,
            "total_memory_mb": host.memory_mb,
        },
    }
    if request is not None:
        snapshot["requested_resources"] = request.model_dump()
    return snapshot


def check_host_capacity(
    spec: VMSpec,
    host: HostCapability,
    records: Sequence[VMRecord],
) -> None:
    """
    Reject if the active fleet plus `spec` would use up the host.

    Equality is a rejection: the host keeps at least one core and some
    memory for itself.
    """
    snapshot = capacity_snapshot(host, records, ResourceRequest.from_spec(spec))
    usage = snapshot["current_usage"]
    requested_cpu = spec.cpu.vcpus
    requested_memory = spec.memory.size_mb

    if usage["used_cpu_cores"] + requested_cpu >= host.total_cores:
        raise CapacityError(
            RejectReason.INSUFFICIENT_CPU,
            f"insufficient CPU resources: requested {requested_cpu} cores, "
            f"available {host.total_cores - usage['used_cpu_cores']} cores "
            f"(used: {usage['used_cpu_cores']}, total: {host.total_cores})",
            snapshot,
        )
    if usage["used_memory_mb"] + requested_memory >= host.memory_mb:
        raise CapacityError(
            RejectReason.INSUFFICIENT_MEMORY,
            f"insufficient memory resources: requested {requested_memory} MB, "
            f"available {host.memory_mb - usage['used_memory_mb']} MB "
            f"(used: {usage['used_memory_mb']} MB, total: {host.memory_mb} MB)",
            snapshot,
        )


class AdmissionController:
    def __init__(
        self,
        host_info: HostInfoProvider,
        quota: QuotaLedger,
        accelerator_profiles: Optional[List[Dict[str, Any]]] = None,
        check_iso_exists: bool = CHECK_ISO_EXISTS,
    ) -> None:
        self.host_info = host_info
        self.quota = quota
        self.accelerator_profiles = list(
            ACCELERATOR_PROFILES if accelerator_profiles is None else accelerator_profiles
        )
        self.check_iso_exists = check_iso_exists

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def admit(
        self,
        spec: VMSpec,
        hint: Optional[SchedulingHint],
        principal: str,
        existing_records: Sequence[VMRecord],
        vm_id: Optional[str] = None,
    ) -> Decision:
        """
        Decide whether `spec` may be realized for `principal`.

        `vm_id` is set when re-admitting an existing VM for an update; its
        own record is then left out of the fleet and its current quota
        allocation is replaced rather than added to.
        """
        hint = hint or SchedulingHint()
        others = [r for r in existing_records if r.id != vm_id]
        try:
            self._validate_shape(spec, others)
            host = self._query_host()
            self._validate_capability(spec, host)
            self._validate_accelerator(spec)
            self._validate_quota(spec, principal, host, others, vm_id)
            self._validate_scheduling(spec, hint, host, others)
            self._enforce_affinity(hint, others)
        except AdmissionError as e:
            log_event(
                f"[admission] Rejected '{spec.name}' for principal={principal}: {e.reason}: {e.message}",
                logging.WARNING,
            )
            return Decision.reject(e)

        log_event(f"[admission] Accepted '{spec.name}' for principal={principal}")
        return Decision.accept()

    def query_host(self) -> HostCapability:
        return self._query_host()

    # ------------------------------------------------------------------
    # Stage 1: shape
    # ------------------------------------------------------------------
    def _validate_shape(self, spec: VMSpec, others: Sequence[VMRecord]) -> None:
        if not NAME_RE.fullmatch(spec.name):
            raise ValidationError(
                RejectReason.INVALID_NAME,
                "Invalid VM name. Must be 3-63 characters, alphanumeric, hyphens, "
                "underscores only, starting and ending with an alphanumeric",
            )
        if any(record.spec.name == spec.name for record in others):
            raise ValidationError(RejectReason.DUPLICATE_NAME, f"VM name '{spec.name}' is already in use")

        if not MIN_CPU_CORES <= spec.cpu.cores <= MAX_CPU_CORES:
            raise ValidationError(RejectReason.INVALID_CPU_CORES, "CPU cores must be 1-64")
        if not MIN_CPU_SOCKETS <= spec.cpu.sockets <= MAX_CPU_SOCKETS:
            raise ValidationError(RejectReason.INVALID_CPU_SOCKETS, "CPU sockets must be 1-8")
        if not MIN_MEMORY_MB <= spec.memory.size_mb <= MAX_MEMORY_MB:
            raise ValidationError(RejectReason.INVALID_MEMORY, "Memory size must be 128MB-1TB")

        self._validate_storage(spec)
        self._validate_network(spec)

    def _validate_storage(self, spec: VMSpec) -> None:
        disks = spec.storage.disks
        if not disks:
            raise ValidationError(RejectReason.NO_DISKS, "At least one disk is required")

        seen: set[str] = set()
        for i, disk in enumerate(disks, start=1):
            if not MIN_DISK_GB <= disk.size_gb <= MAX_DISK_GB:
                raise ValidationError(RejectReason.INVALID_DISK_SIZE, f"Disk {i} size must be 1-2048 GB")
            if not disk.path:
                raise ValidationError(RejectReason.MISSING_DISK_PATH, f"Disk {i} path is required")
            if disk.path in seen:
                raise ValidationError(RejectReason.DUPLICATE_DISK_PATH, f"Disk path {disk.path} is duplicated")
            seen.add(disk.path)

        for i, cdrom in enumerate(spec.storage.cdroms, start=1):
            if not cdrom.path:
                raise ValidationError(RejectReason.INVALID_CDROM, f"CDROM {i} path is required")
            if self.check_iso_exists and not os.path.exists(cdrom.path):
                raise ValidationError(RejectReason.INVALID_CDROM, f"ISO file {cdrom.path} does not exist")

    @staticmethod
    def _validate_network(spec: VMSpec) -> None:
        for i, iface in enumerate(spec.network.interfaces, start=1):
            if iface.mac and not MAC_RE.fullmatch(iface.mac):
                raise ValidationError(RejectReason.INVALID_MAC, f"Interface {i} MAC address invalid")
            if not 0 <= iface.vlan <= MAX_VLAN:
                raise ValidationError(RejectReason.INVALID_VLAN, f"Interface {i} VLAN must be 0-4094")
            if iface.mtu != 0 and not MIN_MTU <= iface.mtu <= MAX_MTU:
                raise ValidationError(RejectReason.INVALID_MTU, f"Interface {i} MTU must be 0 or 576-9000")

    # ------------------------------------------------------------------
    # Stage 2: host capability
    # ------------------------------------------------------------------
    def _query_host(self) -> HostCapability:
        try:
            return self.host_info.query()
        except HostInfoError as e:
            raise HostInfoUnavailableError(f"Host information unavailable: {e}") from e

    @staticmethod
    def _validate_capability(spec: VMSpec, host: HostCapability) -> None:
        missing = [f for f in spec.cpu.features if f not in host.features]
        if missing:
            raise ValidationError(
                RejectReason.UNSUPPORTED_CPU_FEATURE,
                f"Host does not support requested CPU feature: {missing[0]}",
                {"unsupported_features": missing},
            )

        for core in spec.cpu.pinning:
            if not 0 <= core < host.total_cores:
                raise ValidationError(
                    RejectReason.INVALID_CPU_PINNING,
                    f"Invalid CPU pinning core ID {core} (host has only {host.total_cores} cores)",
                )

        if not 0 <= spec.cpu.numa_node < host.numa_nodes:
            raise ValidationError(
                RejectReason.INVALID_NUMA_NODE,
                f"Invalid NUMA node {spec.cpu.numa_node} (host has {host.numa_nodes} NUMA nodes)",
            )

    # ------------------------------------------------------------------
    # Stage 3: accelerator
    # ------------------------------------------------------------------
    def _validate_accelerator(self, spec: VMSpec) -> None:
        accel = spec.accelerator
        if accel.type == AcceleratorType.MEDIATED and accel.profile is None:
            raise ValidationError(
                RejectReason.ACCELERATOR_PROFILE_REQUIRED,
                "A mediated accelerator needs a model/profile/memory_gb profile",
            )
        if accel.profile is None:
            return

        wanted = (accel.profile.model, accel.profile.profile, accel.profile.memory_gb)
        for entry in self.accelerator_profiles:
            if (entry.get("model"), entry.get("profile"), entry.get("memory_gb")) == wanted:
                return

        raise ValidationError(
            RejectReason.UNSUPPORTED_ACCELERATOR_PROFILE,
            "Invalid accelerator profile/model/memory for this host",
            {"requested": accel.profile.model_dump(exclude={"uuid"})},
        )

    # ------------------------------------------------------------------
    # Stage 4: quota
    # ------------------------------------------------------------------
    def _validate_quota(
        self,
        spec: VMSpec,
        principal: str,
        host: HostCapability,
        others: Sequence[VMRecord],
        vm_id: Optional[str],
    ) -> None:
        request = ResourceRequest.from_spec(spec)
        try:
            self.quota.check(principal, request, vm_id or "")
        except CapacityError as e:
            e.details.update(capacity_snapshot(host, others, request))
            raise

    # ------------------------------------------------------------------
    # Stage 5: scheduling
    # ------------------------------------------------------------------
    @staticmethod
    def _validate_scheduling(
        spec: VMSpec,
        hint: SchedulingHint,
        host: HostCapability,
        others: Sequence[VMRecord],
    ) -> None:
        known = {record.id for record in others}

        for vm_id in hint.affinity:
            if vm_id not in known:
                raise SchedulingConflictError(
                    RejectReason.ORPHAN_AFFINITY_REFERENCE,
                    f"affinity VM ID '{vm_id}' does not exist (orphan VM ID)",
                    {"vm_id": vm_id},
                )
        for vm_id in hint.anti_affinity:
            if vm_id not in known:
                raise SchedulingConflictError(
                    RejectReason.ORPHAN_ANTI_AFFINITY_REFERENCE,
                    f"anti-affinity VM ID '{vm_id}' does not exist (orphan VM ID)",
                    {"vm_id": vm_id},
                )

        both = sorted(set(hint.affinity) & set(hint.anti_affinity))
        if both:
            raise SchedulingConflictError(
                RejectReason.AFFINITY_CONFLICT,
                f"VM ID '{both[0]}' cannot be in both affinity and anti-affinity lists",
                {"vm_ids": both},
            )

        if not hint.overcommit:
            check_host_capacity(spec, host, others)

    # ------------------------------------------------------------------
    # Stage 6: affinity enforcement
    # ------------------------------------------------------------------
    @staticmethod
    def _enforce_affinity(hint: SchedulingHint, others: Sequence[VMRecord]) -> None:
        by_id = {record.id: record for record in others}

        for vm_id in hint.affinity:
            record = by_id[vm_id]
            if record.status != VMStatus.RUNNING:
                raise SchedulingConflictError(
                    RejectReason.AFFINITY_NOT_RUNNING,
                    f"affinity VM '{vm_id}' is not running (status: {record.status.value})",
                    {"vm_id": vm_id, "status": record.status.value},
                )
        for vm_id in hint.anti_affinity:
            record = by_id[vm_id]
            if record.status == VMStatus.RUNNING:
                raise SchedulingConflictError(
                    RejectReason.ANTI_AFFINITY_RUNNING,
                    f"anti-affinity VM '{vm_id}' is running on the same host",
                    {"vm_id": vm_id},
                )
