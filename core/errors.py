from enum import Enum
from typing import Any, Dict, Optional


class RejectReason(str, Enum):
    # shape
    INVALID_NAME = "invalid_name"
    DUPLICATE_NAME = "duplicate_name"
    INVALID_CPU_CORES = "invalid_cpu_cores"
    INVALID_CPU_SOCKETS = "invalid_cpu_sockets"
    INVALID_MEMORY = "invalid_memory"
    NO_DISKS = "no_disks"
    INVALID_DISK_SIZE = "invalid_disk_size"
    MISSING_DISK_PATH = "missing_disk_path"
    DUPLICATE_DISK_PATH = "duplicate_disk_path"
    INVALID_CDROM = "invalid_cdrom"
    INVALID_MAC = "invalid_mac"
    INVALID_VLAN = "invalid_vlan"
    INVALID_MTU = "invalid_mtu"
    # host capability
    HOST_INFO_UNAVAILABLE = "host_info_unavailable"
    UNSUPPORTED_CPU_FEATURE = "unsupported_cpu_feature"
    INVALID_CPU_PINNING = "invalid_cpu_pinning"
    INVALID_NUMA_NODE = "invalid_numa_node"
    # accelerator
    ACCELERATOR_PROFILE_REQUIRED = "accelerator_profile_required"
    UNSUPPORTED_ACCELERATOR_PROFILE = "unsupported_accelerator_profile"
    # quota / capacity
    QUOTA_EXCEEDED = "quota_exceeded"
    INSUFFICIENT_CPU = "insufficient_cpu"
    INSUFFICIENT_MEMORY = "insufficient_memory"
    # scheduling
    ORPHAN_AFFINITY_REFERENCE = "orphan_affinity_reference"
    ORPHAN_ANTI_AFFINITY_REFERENCE = "orphan_anti_affinity_reference"
    AFFINITY_CONFLICT = "affinity_conflict"
    AFFINITY_NOT_RUNNING = "affinity_not_running"
    ANTI_AFFINITY_RUNNING = "anti_affinity_running"


class VMManagerError(Exception):
    """Base class for every error the core surfaces to callers."""

    status_code = 500
    reason = "internal_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.message, "reason": str(self.reason)}
        if self.details:
            body["details"] = self.details
        return body


class AdmissionError(VMManagerError):
    """A request rejected before any backend or ledger mutation."""

    status_code = 400

    def __init__(
        self,
        reason: RejectReason,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, details)
        self.reason = reason.value


class ValidationError(AdmissionError):
    status_code = 400


class CapacityError(AdmissionError):
    """Quota or host capacity exceeded; details hold the diagnostic snapshot."""

    status_code = 403


class SchedulingConflictError(AdmissionError):
    status_code = 409


class HostInfoUnavailableError(AdmissionError):
    status_code = 503

    def __init__(self, message: str) -> None:
        super().__init__(RejectReason.HOST_INFO_UNAVAILABLE, message)


class NotFoundError(VMManagerError):
    status_code = 404
    reason = "not_found"

    def __init__(self, vm_id: str) -> None:
        super().__init__(f"VM '{vm_id}' not found", {"vm_id": vm_id})
        self.vm_id = vm_id


class StateConflictError(VMManagerError):
    status_code = 409
    reason = "state_conflict"


class BackendError(VMManagerError):
    reason = "backend_error"

    def __init__(self, vm_id: str, operation: str, cause: BaseException) -> None:
        super().__init__(
            f"Backend failed to {operation} VM '{vm_id}': {cause}",
            {"vm_id": vm_id, "operation": operation},
        )
        self.vm_id = vm_id
        self.operation = operation
        self.cause = cause


class BackendTimeout(Exception):
    """Raised in place of a backend result when the call exceeds its deadline."""


class DomainNotFound(LookupError):
    """Raised by a backend for an identifier it has no domain for."""
